# basis_hedge/risk_engine.py
import asyncio
import logging
import time
from typing import Callable, Optional, Tuple

from .config import RiskConfig
from .exchange import ExchangeAdapter
from .models import MarketData, now_ms

ERROR_COOLDOWN_SECONDS = 60


class ErrorGovernor:
    """
    Circuit breaker for new entries.
    Any recorded failure blocks entries for a fixed window; the counter resets
    on the first check after the window has passed. Exits are never blocked here.
    """
    def __init__(self, clock: Callable[[], int] = now_ms, cooldown_seconds: float = ERROR_COOLDOWN_SECONDS):
        self.clock = clock
        self.cooldown_ms = int(cooldown_seconds * 1000)
        self.error_count = 0
        self.last_error_ms = 0

    def record_error(self):
        self.error_count += 1
        self.last_error_ms = self.clock()

    def should_block_trading(self) -> bool:
        elapsed = self.clock() - self.last_error_ms
        if self.error_count > 0 and elapsed < self.cooldown_ms:
            return True
        if elapsed >= self.cooldown_ms:
            self.error_count = 0
        return False

    def remaining_seconds(self) -> float:
        if self.error_count == 0:
            return 0.0
        return max(0.0, (self.cooldown_ms - (self.clock() - self.last_error_ms)) / 1000)


class RiskEngine:
    """
    Enforces risk limits and validates market data freshness.
    Separates the decision 'Can we trade?' from the logic of finding the trade.
    """
    def __init__(self, config: RiskConfig, logger: logging.Logger, wall_clock: Callable[[], float] = time.time):
        self.cfg = config
        self.logger = logger
        # Epoch seconds, the same clock MarketData timestamps are taken from
        self.wall_clock = wall_clock

    def validate_market_data(self, data: MarketData) -> bool:
        """
        Filter out stale or anomalous market data.
        """
        # 1. Latency Check
        if data.age_at(self.wall_clock()) > self.cfg.max_data_age_seconds:
            return False

        # 2. Anomaly Check (Zero, Negative or Crossed Prices)
        if data.bid_price <= 0 or data.ask_price <= 0 or data.bid_price > data.ask_price:
            return False

        return True

    def required_margin(self, size: float, price: float) -> float:
        notional = size * price
        return notional / self.cfg.max_leverage * (1 + self.cfg.min_margin_buffer_percent / 100)

    async def check_margin(self, venue: ExchangeAdapter, size: float, price: float) -> Tuple[bool, Optional[str]]:
        try:
            account = await venue.get_account_info()
        except Exception as e:
            self.logger.error(f"{venue.name}: Failed to check margin: {e}")
            return False, f"Failed to retrieve margin info on {venue.name}: {e}"

        required = self.required_margin(size, price)
        if account.available_margin < required:
            return False, (
                f"Insufficient margin on {venue.name}. "
                f"Available: {account.available_margin:.2f}, "
                f"Required: {required:.2f} (with {self.cfg.min_margin_buffer_percent}% buffer)"
            )

        self.logger.debug(
            f"{venue.name}: Margin check passed. Available: {account.available_margin:.2f}, Required: {required:.2f}"
        )
        return True, None

    async def pre_trade_check(
        self,
        cheap: ExchangeAdapter,
        expensive: ExchangeAdapter,
        size: float,
        cheap_price: float,
        expensive_price: float,
    ) -> Tuple[bool, Optional[str]]:
        """
        The Final Gatekeeper: can both legs of this hedge be carried?
        """
        if expensive_price - cheap_price < 0:
            return False, (
                f"Execution gap would be negative. Cheap side: {cheap_price:.2f}, "
                f"Expensive side: {expensive_price:.2f}"
            )

        results = await asyncio.gather(
            self.check_margin(cheap, size, cheap_price),
            self.check_margin(expensive, size, expensive_price),
        )
        for passed, reason in results:
            if not passed:
                return False, reason

        return True, None
