"""
End-to-end scenarios for the hedge coordinator against in-memory venues.
"""
import asyncio
import time

import pytest

from basis_hedge.exceptions import TransientNetworkError
from basis_hedge.models import BotState, MarketData
from basis_hedge.strategy import HedgeCoordinator

from conftest import fast_sleep, make_config
from helpers.fake_venue import FakeVenue, RecordingAuditLog


def set_gap(venues, gap):
    """venue_a mid 50000.5, venue_b mid 50000.5 + gap, 1 USD wide books."""
    venues["venue_a"].set_top(50000.0, 50001.0)
    venues["venue_b"].set_top(50000.0 + gap, 50001.0 + gap)


def build(clock, logger, config=None, wall_clock=time.time):
    venues = {"venue_a": FakeVenue("venue_a"), "venue_b": FakeVenue("venue_b")}
    audit = RecordingAuditLog()
    coordinator = HedgeCoordinator(
        config or make_config(), venues, logger, audit, clock=clock, sleep=fast_sleep, wall_clock=wall_clock
    )
    return coordinator, venues, audit


class TestEntryAndExit:
    def test_full_round_trip(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            set_gap(venues, 55.0)
            await coord.on_market_update()

            assert coord.tracker.state is BotState.OPEN
            pos = coord.tracker.current_position
            assert pos.cheap_venue == "venue_a"
            assert pos.expensive_venue == "venue_b"
            assert pos.entry_gap_usd == pytest.approx(55.0)
            assert pos.cheap_order_id == "venue_a-1"
            assert venues["venue_a"].position == pytest.approx(0.01)
            assert venues["venue_b"].position == pytest.approx(-0.01)

            clock.advance(120)
            set_gap(venues, 8.0)
            await coord.on_market_update()
            return coord, venues, audit

        coord, venues, audit = asyncio.run(run())
        assert coord.tracker.is_flat
        (trade,) = coord.tracker.trade_history
        assert trade.hold_duration_seconds == 120
        assert trade.exit_gap_usd == pytest.approx(8.0)
        assert audit.actions() == [("ENTRY", "SUCCESS"), ("EXIT", "SUCCESS")]
        exit_entry = audit.entries[1]
        assert exit_entry.trade_id == trade.id
        assert exit_entry.net_pnl_base == pytest.approx(trade.realized_pnl)
        assert exit_entry.hold_duration_seconds == 120
        assert venues["venue_a"].position == pytest.approx(0.0)
        assert venues["venue_b"].position == pytest.approx(0.0)

    def test_gap_below_threshold_does_nothing(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            set_gap(venues, 49.0)
            await coord.on_market_update()
            return coord, venues, audit

        coord, venues, audit = asyncio.run(run())
        assert coord.tracker.is_flat
        assert venues["venue_a"].placed == []
        assert audit.entries == []

    def test_entry_picks_cheap_side_either_way(self, clock, logger):
        async def run():
            coord, venues, _ = build(clock, logger)
            venues["venue_a"].set_top(50060.0, 50061.0)
            venues["venue_b"].set_top(50000.0, 50001.0)
            await coord.on_market_update()
            return coord

        pos = asyncio.run(run()).tracker.current_position
        assert pos.cheap_venue == "venue_b"
        assert pos.expensive_venue == "venue_a"

    def test_no_exit_before_min_hold(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            set_gap(venues, 55.0)
            await coord.on_market_update()
            clock.advance(30)
            set_gap(venues, 5.0)
            await coord.on_market_update()
            return coord, audit

        coord, audit = asyncio.run(run())
        assert coord.tracker.is_open
        assert audit.actions() == [("ENTRY", "SUCCESS")]

    def test_max_hold_forces_exit(self, clock, logger):
        config = make_config(trading={"max_hold_duration_seconds": 600})

        async def run():
            coord, venues, audit = build(clock, logger, config)
            set_gap(venues, 55.0)
            await coord.on_market_update()
            clock.advance(600)
            await coord.on_market_update()
            return coord

        coord = asyncio.run(run())
        assert coord.tracker.is_flat
        assert coord.tracker.trade_history[0].exit_gap_usd == pytest.approx(55.0)

    def test_sustained_bad_funding_forces_exit(self, clock, logger):
        config = make_config(funding={"force_exit_after_checks": 2})

        async def run():
            coord, venues, _ = build(clock, logger, config)
            set_gap(venues, 55.0)
            await coord.on_market_update()
            venues["venue_a"].funding_rate_per_hour = 0.001
            await coord.funding.check()
            await coord.on_market_update()
            assert coord.tracker.is_open
            await coord.funding.check()
            await coord.on_market_update()
            return coord

        assert asyncio.run(run()).tracker.is_flat

    def test_funding_streak_starts_over_for_the_next_hedge(self, clock, logger):
        config = make_config(funding={"force_exit_after_checks": 2})

        async def run():
            coord, venues, _ = build(clock, logger, config)
            set_gap(venues, 55.0)
            await coord.on_market_update()
            venues["venue_a"].funding_rate_per_hour = 0.001
            await coord.funding.check()
            await coord.funding.check()
            await coord.on_market_update()
            assert coord.tracker.is_flat
            assert coord.funding.unfavorable_streak == 0
            assert coord.funding.last_warning is None

            clock.advance(31)
            await coord.on_market_update()
            assert coord.tracker.is_open
            clock.advance(1)
            await coord.on_market_update()
            return coord

        assert asyncio.run(run()).tracker.is_open

    def test_post_exit_cooldown(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            set_gap(venues, 55.0)
            await coord.on_market_update()
            clock.advance(120)
            set_gap(venues, 8.0)
            await coord.on_market_update()

            set_gap(venues, 60.0)
            clock.advance(10)
            await coord.on_market_update()
            assert coord.tracker.is_flat
            clock.advance(25)
            await coord.on_market_update()
            return coord

        assert asyncio.run(run()).tracker.is_open

    def test_insufficient_margin_blocks_entry(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            venues["venue_b"].available_margin = 10.0
            set_gap(venues, 55.0)
            await coord.on_market_update()
            return coord, venues

        coord, venues = asyncio.run(run())
        assert coord.tracker.is_flat
        assert venues["venue_a"].placed == []


class TestFailures:
    def test_one_leg_filled_is_flattened(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            venues["venue_b"].limit_mode = "rest"
            set_gap(venues, 55.0)
            await coord.on_market_update()
            return coord, venues, audit

        coord, venues, audit = asyncio.run(run())
        assert coord.tracker.is_flat
        assert audit.actions() == [("UNHEDGED_CLOSE", "PARTIAL")]
        assert venues["venue_a"].position == pytest.approx(0.0)
        corrective = venues["venue_a"].placed[-1]
        assert corrective["price"] is None and corrective["reduce_only"]
        assert coord.unhedged is None

        assert coord.governor.should_block_trading()
        clock.advance(59)
        assert coord.governor.should_block_trading()
        clock.advance(1)
        assert not coord.governor.should_block_trading()

    def test_lost_ack_on_entry_still_opens_the_hedge(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            venues["venue_b"].lost_acks = 1
            set_gap(venues, 55.0)
            await coord.on_market_update()
            return coord, venues, audit

        coord, venues, audit = asyncio.run(run())
        assert coord.tracker.is_open
        assert audit.actions() == [("ENTRY", "SUCCESS")]
        assert venues["venue_b"].position == pytest.approx(-0.01)
        assert coord.tracker.current_position.expensive_order_id == "venue_b-1"

    def test_cooldown_stops_new_entries(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            venues["venue_b"].limit_mode = "rest"
            set_gap(venues, 55.0)
            await coord.on_market_update()
            venues["venue_b"].limit_mode = "fill"
            placed = len(venues["venue_a"].placed)
            clock.advance(30)
            await coord.on_market_update()
            assert len(venues["venue_a"].placed) == placed
            clock.advance(31)
            await coord.on_market_update()
            return coord

        assert asyncio.run(run()).tracker.is_open

    def test_no_fills_records_failed_entry(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            venues["venue_a"].limit_mode = "reject"
            venues["venue_b"].limit_mode = "reject"
            set_gap(venues, 55.0)
            await coord.on_market_update()
            return coord, audit

        coord, audit = asyncio.run(run())
        assert coord.tracker.is_flat
        assert audit.actions() == [("ENTRY", "FAILED")]
        assert "rejected" in audit.entries[0].notes
        assert coord.governor.should_block_trading()

    def test_failed_corrective_close_halts_trading(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            venues["venue_b"].limit_mode = "rest"
            venues["venue_a"].market_mode = "rest"
            set_gap(venues, 55.0)
            await coord.on_market_update()

            clock.advance(120)
            placed = len(venues["venue_a"].placed)
            await coord.on_market_update()
            assert len(venues["venue_a"].placed) == placed

            coord.clear_unhedged()
            return coord, audit

        coord, audit = asyncio.run(run())
        assert audit.actions() == [("EMERGENCY_CLOSE", "UNHEDGED")]
        assert coord.unhedged is None

    def test_exit_with_no_fills_stays_open(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            set_gap(venues, 55.0)
            await coord.on_market_update()
            venues["venue_a"].limit_mode = "reject"
            venues["venue_b"].limit_mode = "reject"
            clock.advance(120)
            set_gap(venues, 8.0)
            await coord.on_market_update()
            return coord, audit

        coord, audit = asyncio.run(run())
        assert coord.tracker.is_open
        assert audit.actions() == [("ENTRY", "SUCCESS"), ("EXIT", "FAILED")]

    def test_exit_with_one_leg_filled_finishes_with_market_close(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            set_gap(venues, 55.0)
            await coord.on_market_update()
            venues["venue_b"].limit_mode = "rest"
            clock.advance(120)
            set_gap(venues, 8.0)
            await coord.on_market_update()
            return coord, venues, audit

        coord, venues, audit = asyncio.run(run())
        assert coord.tracker.is_flat
        assert audit.actions() == [("ENTRY", "SUCCESS"), ("UNHEDGED_CLOSE", "PARTIAL")]
        assert venues["venue_b"].position == pytest.approx(0.0)
        assert len(coord.tracker.trade_history) == 1

    def test_market_data_error_is_logged_and_lock_released(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            venues["venue_a"].book_error = TransientNetworkError("venue_a", "down")
            handled = await coord.on_market_update()
            return coord, handled

        coord, handled = asyncio.run(run())
        assert handled is True
        assert not coord._guard.locked()
        assert coord.tracker.is_flat


class TestReentrancy:
    def test_update_during_evaluation_is_dropped(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            set_gap(venues, 55.0)
            async with coord._guard:
                dropped = await coord.on_market_update()
            handled = await coord.on_market_update()
            return coord, dropped, handled

        coord, dropped, handled = asyncio.run(run())
        assert dropped is False
        assert handled is True
        assert coord.tracker.is_open

    def test_concurrent_ticks_open_one_position(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            set_gap(venues, 55.0)
            results = await asyncio.gather(*(coord.on_market_update() for _ in range(5)))
            return coord, venues, results

        coord, venues, results = asyncio.run(run())
        assert results.count(True) == 1
        assert len(venues["venue_a"].placed) == 1

    def test_pushed_ticker_is_used_when_fresh(self, clock, logger):
        async def run():
            coord, venues, audit = build(clock, logger)
            set_gap(venues, 0.0)
            await coord.on_ticker_update(MarketData("venue_b", "BTC/USDT:USDT", 50055.0, 50056.0, time.time()))
            return coord

        assert asyncio.run(run()).tracker.is_open

    def test_pushed_ticker_ages_out_on_the_injected_wall_clock(self, clock, logger):
        wall = [time.time()]

        async def run():
            coord, venues, audit = build(clock, logger, wall_clock=lambda: wall[0])
            set_gap(venues, 0.0)
            wall[0] += 1.0
            ticker = MarketData("venue_b", "BTC/USDT:USDT", 50055.0, 50056.0, wall[0] - 6.0)
            await coord.on_ticker_update(ticker)
            return coord, venues

        coord, venues = asyncio.run(run())
        # The REST book shows no gap once the pushed quote is stale
        assert coord.tracker.is_flat
        assert venues["venue_b"].placed == []
        assert coord.last_gap_usd == pytest.approx(0.0)


class TestReconciliation:
    def test_flat_venues_start_flat(self, clock, logger):
        async def run():
            coord, venues, _ = build(clock, logger)
            await coord.initialize()
            return coord

        coord = asyncio.run(run())
        assert coord.tracker.is_flat
        assert coord.unhedged is None

    def test_balanced_positions_are_adopted(self, clock, logger):
        async def run():
            coord, venues, _ = build(clock, logger)
            set_gap(venues, 30.0)
            venues["venue_a"].position = -0.01
            venues["venue_b"].position = 0.01
            await coord.initialize()
            return coord

        pos = asyncio.run(run()).tracker.current_position
        assert pos.cheap_venue == "venue_b"
        assert pos.expensive_venue == "venue_a"
        assert pos.size == pytest.approx(0.01)

    def test_one_sided_position_halts(self, clock, logger):
        async def run():
            coord, venues, _ = build(clock, logger)
            venues["venue_a"].position = 0.02
            await coord.initialize()
            set_gap(venues, 55.0)
            await coord.on_market_update()
            return coord, venues

        coord, venues = asyncio.run(run())
        assert coord.unhedged is not None
        assert coord.unhedged.venue == "venue_a"
        assert coord.unhedged.size == pytest.approx(0.02)
        assert venues["venue_a"].placed == []


def test_shutdown_report_leaves_position_open(clock, logger, caplog):
    async def run():
        coord, venues, _ = build(clock, logger)
        set_gap(venues, 55.0)
        await coord.on_market_update()
        return coord, venues

    coord, venues = asyncio.run(run())
    with caplog.at_level("INFO"):
        coord.report_shutdown()
    assert "OPEN position" in caplog.text
    assert "Final stats" in caplog.text
    assert venues["venue_a"].position == pytest.approx(0.01)
