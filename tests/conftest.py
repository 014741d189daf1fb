"""
Shared fixtures: a controllable clock, a quiet logger and config builders.
"""
import asyncio
import copy
import logging

import pytest

from basis_hedge.config import parse_config

BASE_CONFIG = {
    "system": {"environment": "live", "dry_run": False, "log_level": "DEBUG"},
    "trading": {
        "symbol": "BTC/USDT:USDT",
        "entry_gap_usd": 50.0,
        "exit_gap_usd": 10.0,
        "position_size_btc": 0.01,
        "min_hold_duration_seconds": 60,
        "max_hold_duration_seconds": 3600,
        "entry_timeout_ms": 200,
        "exit_timeout_ms": 200,
        "post_exit_cooldown_seconds": 30,
    },
    "funding": {"min_net_funding_per_hour": -0.0001, "check_interval_seconds": 300},
    "risk": {"max_leverage": 5, "min_margin_buffer_percent": 20, "max_data_age_seconds": 5},
    "retry": {"max_attempts": 3, "initial_delay_seconds": 0.01, "max_delay_seconds": 0.05,
              "backoff_multiplier": 2.0},
    "performance": {"fill_poll_interval_ms": 0, "market_data_timeout_ms": 500, "network_timeout_ms": 500},
    "audit": {"log_dir": "logs"},
    "exchanges": {
        "venue_a": {"api_key": "k", "secret": "s", "maker_fee_bps": 2.0, "taker_fee_bps": 5.0},
        "venue_b": {"api_key": "k", "secret": "s", "maker_fee_bps": 2.0, "taker_fee_bps": 5.0},
    },
}


def raw_config(**sections):
    """BASE_CONFIG with per-section overrides, e.g. raw_config(trading={"entry_gap_usd": 40})."""
    raw = copy.deepcopy(BASE_CONFIG)
    for name, values in sections.items():
        if values is None:
            raw.pop(name, None)
        elif isinstance(values, dict) and isinstance(raw.get(name), dict):
            raw[name].update(values)
        else:
            raw[name] = values
    return raw


def make_config(**sections):
    return parse_config(raw_config(**sections))


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float):
        self.now += int(seconds * 1000)


async def fast_sleep(_delay: float):
    await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def logger():
    log = logging.getLogger("basis_hedge.tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def config():
    return make_config()
