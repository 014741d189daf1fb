# basis_hedge/strategy.py
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .config import BotConfig
from .exceptions import InvalidStateError, UnhedgedExposureError
from .exchange import ExchangeAdapter
from .execution import RETRYABLE_ERRORS, ExecutionService, exit_pnl, limit_price
from .funding import FundingMonitor
from .logger import TradeAuditLog
from .models import LegFill, MarketData, Side, SpreadPosition, TradeAction, TradeLogEntry, TradeStatus, now_ms, utc_from_ms
from .risk_engine import ErrorGovernor, RiskEngine
from .state import PositionTracker

# Venue positions smaller than this are treated as flat during reconciliation.
POSITION_TOLERANCE = 0.001


class HedgeCoordinator:
    """
    Event-Driven Strategy.
    Listens to market updates and decides whether to open or close the hedge.
    Keeps a local cache of pushed top-of-book data (OrderBook Lite) and falls
    back to REST order books when the cache is stale.

    At most one evaluation runs at a time: an update that arrives while a
    decision or execution is in flight is dropped, not queued.
    """
    def __init__(
        self,
        config: BotConfig,
        venues: Dict[str, ExchangeAdapter],
        logger: logging.Logger,
        audit_log: TradeAuditLog,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        wall_clock: Callable[[], float] = time.time,
    ):
        if len(venues) != 2:
            raise ValueError(f"exactly two venues required, got {len(venues)}")
        self.config = config
        self.venues = venues
        self.logger = logger
        self.audit_log = audit_log
        self.clock = clock

        self.tracker = PositionTracker(logger, clock)
        self.governor = ErrorGovernor(clock)
        self.risk = RiskEngine(config.risk, logger, wall_clock)
        self.execution = ExecutionService(venues, config, logger, sleep)
        self.funding = FundingMonitor(
            venues,
            self.tracker,
            config.trading.symbol,
            config.funding.min_net_funding_per_hour,
            logger,
            retry_options=config.retry.options,
            retry_on=RETRYABLE_ERRORS,
            timeout=config.performance.network_timeout_ms / 1000,
        )

        self.market_cache: Dict[str, MarketData] = {}
        self.last_gap_usd: Optional[float] = None
        self.last_status = "Waiting for market data"
        self.unhedged: Optional[UnhedgedExposureError] = None
        self._guard = asyncio.Lock()

    @property
    def venue_names(self) -> Tuple[str, str]:
        names = list(self.venues)
        return names[0], names[1]

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------
    async def initialize(self):
        """
        Reconciles with the venues before the first tick.
        A balanced long/short pair is adopted as the open hedge; anything
        else that is not flat is treated as unhedged exposure.
        """
        symbol = self.config.trading.symbol
        a, b = self.venue_names
        pos_a, pos_b = await asyncio.gather(
            self.execution._call(lambda: self.venues[a].get_position(symbol), self.execution.read_timeout),
            self.execution._call(lambda: self.venues[b].get_position(symbol), self.execution.read_timeout),
        )
        self.logger.info(
            f"Venue positions - {a}: {pos_a.side or 'flat'} {pos_a.size}, {b}: {pos_b.side or 'flat'} {pos_b.size}"
        )

        flat_a = pos_a.size < POSITION_TOLERANCE
        flat_b = pos_b.size < POSITION_TOLERANCE
        if flat_a and flat_b:
            self.logger.info("✅ No existing positions. Starting FLAT.")
            return

        balanced = (
            not flat_a and not flat_b
            and {pos_a.side, pos_b.side} == {"long", "short"}
            and abs(pos_a.size - pos_b.size) < POSITION_TOLERANCE
        )
        if balanced:
            long_pos, short_pos = (pos_a, pos_b) if pos_a.side == "long" else (pos_b, pos_a)
            tops = await self._market_snapshot()
            cheap_px = tops[long_pos.venue].mid_price
            expensive_px = tops[short_pos.venue].mid_price
            self.tracker.open_position(
                expensive_px - cheap_px, long_pos.venue, short_pos.venue, long_pos.size, cheap_px, expensive_px
            )
            self.funding.reset()
            self.logger.warning(
                f"Adopted existing hedge: LONG {long_pos.size} on {long_pos.venue}, "
                f"SHORT {short_pos.size} on {short_pos.venue}. Entry prices set to current mids."
            )
            return

        # Whatever is left over is naked exposure on one side.
        if flat_b or (not flat_a and pos_a.size >= pos_b.size):
            bigger, other = pos_a, pos_b
        else:
            bigger, other = pos_b, pos_a
        excess = bigger.size + other.size if other.side == bigger.side else bigger.size - other.size
        self._escalate(UnhedgedExposureError(
            venue=bigger.venue,
            side=Side.BUY.value if bigger.side == "long" else Side.SELL.value,
            size=excess,
            price=0.0,
            reason="unbalanced venue positions found at startup",
        ))

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------
    async def on_ticker_update(self, ticker: MarketData):
        """Feed callback: caches the pushed top of book and evaluates."""
        self.market_cache[ticker.venue] = ticker
        await self.on_market_update()

    async def on_market_update(self) -> bool:
        """
        Evaluates entry or exit once. Returns False when the update was
        dropped because another evaluation is still running.
        """
        if self._guard.locked():
            self.logger.debug("Evaluation in progress - update dropped")
            return False

        async with self._guard:
            try:
                if self.tracker.is_flat:
                    await self._evaluate_entry()
                else:
                    await self._evaluate_exit()
            except InvalidStateError:
                raise
            except Exception as e:
                self.logger.error(f"Error in market update handler: {e}")
        return True

    async def run_loop(self, interval: float):
        """Timer-driven evaluation, for when no push feed is running."""
        while True:
            await self.on_market_update()
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------
    async def _top_of_book(self, venue_name: str) -> MarketData:
        cached = self.market_cache.get(venue_name)
        if cached is not None and self.risk.validate_market_data(cached):
            return cached
        top = await self.execution.fetch_top(venue_name)
        if not self.risk.validate_market_data(top):
            age = top.age_at(self.risk.wall_clock())
            raise ValueError(
                f"{venue_name}: rejected market data (bid {top.bid_price}, ask {top.ask_price}, age {age:.1f}s)"
            )
        return top

    async def _market_snapshot(self) -> Dict[str, MarketData]:
        a, b = self.venue_names
        top_a, top_b = await asyncio.gather(self._top_of_book(a), self._top_of_book(b))
        return {a: top_a, b: top_b}

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------
    async def _evaluate_entry(self):
        if self.unhedged is not None:
            self.last_status = "[bold red]HALTED: unhedged exposure[/bold red]"
            return

        if self.governor.should_block_trading():
            self.last_status = f"[yellow]Error cooldown ({self.governor.remaining_seconds():.0f}s)[/yellow]"
            self.logger.debug("Trading blocked by error cooldown")
            return

        last_exit = self.tracker.last_exit_ms
        cooldown_ms = self.config.trading.post_exit_cooldown_seconds * 1000
        if last_exit is not None and self.clock() - last_exit < cooldown_ms:
            self.last_status = "[yellow]Post-exit cooldown[/yellow]"
            return

        tops = await self._market_snapshot()
        a, b = self.venue_names
        cheap, expensive = (a, b) if tops[a].mid_price <= tops[b].mid_price else (b, a)
        gap = tops[expensive].mid_price - tops[cheap].mid_price
        self.last_gap_usd = gap

        entry_gap = self.config.trading.entry_gap_usd
        self.logger.debug(
            f"Gap: {gap:.2f} USD ({cheap} {tops[cheap].mid_price:.2f} / {expensive} {tops[expensive].mid_price:.2f})"
        )
        if gap < entry_gap:
            self.last_status = f"Watching: gap {gap:.2f} < {entry_gap:.2f}"
            return

        self.logger.info(f"🎯 GAP DETECTED: {gap:.2f} USD >= {entry_gap:.2f} USD. Buy {cheap}, sell {expensive}")

        size = self.config.trading.position_size_btc
        cross = self.config.trading.entry_cross_bps
        cheap_px = limit_price(Side.BUY, tops[cheap], cross)
        expensive_px = limit_price(Side.SELL, tops[expensive], cross)

        passed, reason = await self.risk.pre_trade_check(
            self.venues[cheap], self.venues[expensive], size, cheap_px, expensive_px
        )
        if not passed:
            self.last_status = f"[yellow]Risk check failed: {reason}[/yellow]"
            self.logger.warning(f"Pre-trade check failed: {reason}")
            return

        await self._execute_entry(cheap, expensive, gap, size, cheap_px, expensive_px)

    async def _execute_entry(self, cheap: str, expensive: str, gap: float, size: float,
                             cheap_px: float, expensive_px: float):
        timeout = self.config.trading.entry_timeout_ms / 1000
        long_leg, short_leg = await self.execution.execute_pair(
            cheap, expensive, size, cheap_px, expensive_px, timeout
        )

        if long_leg.filled and short_leg.filled:
            fees = long_leg.fee_usd + short_leg.fee_usd
            position = self.tracker.open_position(
                gap, cheap, expensive, size, long_leg.price, short_leg.price, fees
            )
            self.tracker.attach_order_ids(long_leg.order_id, short_leg.order_id)
            self.funding.reset()
            self.last_status = f"[green]OPEN: long {cheap} / short {expensive} @ gap {gap:.2f}[/green]"
            await self._audit(
                TradeAction.ENTRY, TradeStatus.SUCCESS, f"trade-{position.entry_timestamp}",
                cheap, expensive, size, entry_gap_usd=gap,
                long_leg=long_leg, short_leg=short_leg, total_fees_usd=fees,
            )
            return

        self.governor.record_error()
        trade_id = f"attempt-{self.clock()}"

        if not long_leg.has_exposure and not short_leg.has_exposure:
            self.last_status = "[red]Entry failed, no fills[/red]"
            self.logger.error(f"Entry failed, no legs filled. {self._leg_errors(long_leg, short_leg)}")
            await self._audit(
                TradeAction.ENTRY, TradeStatus.FAILED, trade_id, cheap, expensive, size,
                entry_gap_usd=gap, long_leg=long_leg, short_leg=short_leg,
                notes=self._leg_errors(long_leg, short_leg),
            )
            return

        exposed = [leg for leg in (long_leg, short_leg) if leg.has_exposure]
        self.logger.error(
            "🚨 CRITICAL: UNHEDGED ENTRY. "
            + ", ".join(f"{leg.side.value.upper()} {leg.filled_size} on {leg.venue}" for leg in exposed)
            + ". Initiating neutralization."
        )
        closes, failure = await self._flatten_all(exposed)
        gross, fees = self._unwind_pnl(exposed, closes)
        fees += long_leg.fee_usd + short_leg.fee_usd

        if failure is not None:
            self._escalate(failure)
            await self._audit(
                TradeAction.EMERGENCY_CLOSE, TradeStatus.UNHEDGED, trade_id, cheap, expensive, size,
                entry_gap_usd=gap, long_leg=long_leg, short_leg=short_leg, notes=str(failure),
            )
            return

        self.last_status = "[yellow]Unhedged entry neutralized[/yellow]"
        await self._audit(
            TradeAction.UNHEDGED_CLOSE, TradeStatus.PARTIAL, trade_id, cheap, expensive, size,
            entry_gap_usd=gap, long_leg=long_leg, short_leg=short_leg,
            gross_pnl_usd=gross, total_fees_usd=fees, net_pnl_usd=gross - fees,
            notes=self._close_notes(closes),
        )

    # ------------------------------------------------------------------
    # Exit
    # ------------------------------------------------------------------
    def _exit_reason(self, gap: float, hold: int) -> Optional[str]:
        trading = self.config.trading
        if gap <= trading.exit_gap_usd and hold >= trading.min_hold_duration_seconds:
            return f"gap {gap:.2f} <= {trading.exit_gap_usd:.2f}"
        if trading.max_hold_duration_seconds is not None and hold >= trading.max_hold_duration_seconds:
            return f"max hold {trading.max_hold_duration_seconds:.0f}s reached"
        if self.funding.sustained_unfavorable(self.config.funding.force_exit_after_checks):
            return f"funding unfavorable for {self.funding.unfavorable_streak} checks"
        return None

    async def _evaluate_exit(self):
        if self.unhedged is not None:
            self.last_status = "[bold red]HALTED: unhedged exposure[/bold red]"
            return

        position = self.tracker.current_position
        hold = self.tracker.hold_duration_seconds()
        forced = self.funding.sustained_unfavorable(self.config.funding.force_exit_after_checks)
        if hold < self.config.trading.min_hold_duration_seconds and not forced:
            self.last_status = f"[green]OPEN[/green] hold {hold}s (min {self.config.trading.min_hold_duration_seconds:.0f}s)"
            return

        tops = await self._market_snapshot()
        gap = tops[position.expensive_venue].mid_price - tops[position.cheap_venue].mid_price
        self.last_gap_usd = gap

        reason = self._exit_reason(gap, hold)
        if reason is None:
            self.last_status = f"[green]OPEN[/green] gap {gap:.2f}, hold {hold}s"
            return

        self.logger.info(f"📉 EXIT SIGNAL: {reason}. Hold {hold}s")
        cross = self.config.trading.exit_cross_bps
        long_px = limit_price(Side.SELL, tops[position.cheap_venue], cross)
        short_px = limit_price(Side.BUY, tops[position.expensive_venue], cross)
        await self._execute_exit(position, gap, long_px, short_px, reason)

    async def _execute_exit(self, position: SpreadPosition, gap: float, long_px: float, short_px: float,
                            reason: str):
        timeout = self.config.trading.exit_timeout_ms / 1000
        trade_id = f"trade-{position.entry_timestamp}"
        long_leg, short_leg = await self.execution.execute_pair(
            position.cheap_venue, position.expensive_venue, position.size, long_px, short_px, timeout, closing=True
        )

        if long_leg.filled and short_leg.filled:
            await self._finish_exit(position, gap, long_leg, short_leg, TradeAction.EXIT, TradeStatus.SUCCESS,
                                    trade_id, reason)
            return

        self.governor.record_error()
        if not long_leg.has_exposure and not short_leg.has_exposure:
            self.logger.warning(f"Exit failed, position remains OPEN. {self._leg_errors(long_leg, short_leg)}")
            self.last_status = "[red]Exit failed, retrying[/red]"
            await self._audit(
                TradeAction.EXIT, TradeStatus.FAILED, trade_id,
                position.cheap_venue, position.expensive_venue, position.size,
                entry_gap_usd=position.entry_gap_usd, exit_gap_usd=gap,
                hold_duration_seconds=self.tracker.hold_duration_seconds(),
                long_leg=long_leg, short_leg=short_leg, notes=self._leg_errors(long_leg, short_leg),
            )
            return

        # One side is (partly) closed. Whatever is still open on either side is naked now.
        self.logger.error("🚨 CRITICAL: PARTIAL EXIT. Flattening the remaining exposure.")
        remaining: List[LegFill] = []
        for leg, entry_side, entry_price in (
            (long_leg, Side.BUY, position.cheap_price),
            (short_leg, Side.SELL, position.expensive_price),
        ):
            left = position.size - leg.filled_size
            if not leg.filled and left > 0:
                remaining.append(LegFill(
                    venue=leg.venue, side=entry_side, requested_size=left, price=entry_price,
                    client_order_id="", filled_size=left, filled=True,
                ))
        closes, failure = await self._flatten_all(remaining)

        if failure is not None:
            self._escalate(failure)
            await self._audit(
                TradeAction.EMERGENCY_CLOSE, TradeStatus.UNHEDGED, trade_id,
                position.cheap_venue, position.expensive_venue, position.size,
                entry_gap_usd=position.entry_gap_usd, exit_gap_usd=gap,
                hold_duration_seconds=self.tracker.hold_duration_seconds(),
                long_leg=long_leg, short_leg=short_leg, notes=str(failure),
            )
            return

        merged = {close.venue: close for close in closes}
        long_exit = self._merge(long_leg, merged.get(long_leg.venue))
        short_exit = self._merge(short_leg, merged.get(short_leg.venue))
        await self._finish_exit(position, gap, long_exit, short_exit, TradeAction.UNHEDGED_CLOSE,
                                TradeStatus.PARTIAL, trade_id, self._close_notes(closes))

    async def _finish_exit(self, position: SpreadPosition, gap: float, long_exit: LegFill, short_exit: LegFill,
                           action: TradeAction, status: TradeStatus, trade_id: str, notes: str):
        pnl = exit_pnl(position, long_exit, short_exit)
        trade = self.tracker.close_position(gap, pnl.net_base)
        self.funding.reset()
        self.last_status = f"Closed {trade.id}: net {pnl.net_usd:+.2f} USD"
        self.logger.info(
            f"💰 P&L: gross {pnl.gross_usd:.2f} USD, fees {pnl.fees_usd:.2f} USD, "
            f"net {pnl.net_usd:.2f} USD ({pnl.net_base:.8f} BTC)"
        )
        await self._audit(
            action, status, trade_id, position.cheap_venue, position.expensive_venue, position.size,
            entry_gap_usd=position.entry_gap_usd, exit_gap_usd=gap,
            hold_duration_seconds=trade.hold_duration_seconds,
            long_leg=long_exit, short_leg=short_exit,
            gross_pnl_usd=pnl.gross_usd, total_fees_usd=pnl.fees_usd,
            net_pnl_usd=pnl.net_usd, net_pnl_base=pnl.net_base, notes=notes,
        )

    # ------------------------------------------------------------------
    # Unhedged handling
    # ------------------------------------------------------------------
    async def _flatten_all(self, exposures: List[LegFill]) -> Tuple[List[LegFill], Optional[UnhedgedExposureError]]:
        results = await asyncio.gather(
            *(self.execution.flatten(leg) for leg in exposures), return_exceptions=True
        )
        closes: List[LegFill] = []
        failure: Optional[UnhedgedExposureError] = None
        for result in results:
            if isinstance(result, UnhedgedExposureError):
                self.logger.critical(str(result))
                failure = failure or result
            elif isinstance(result, BaseException):
                raise result
            else:
                closes.append(result)
        return closes, failure

    @staticmethod
    def _unwind_pnl(exposures: List[LegFill], closes: List[LegFill]) -> Tuple[float, float]:
        by_venue = {close.venue: close for close in closes}
        gross = 0.0
        fees = 0.0
        for leg in exposures:
            close = by_venue.get(leg.venue)
            if close is None:
                continue
            direction = 1 if leg.side is Side.BUY else -1
            gross += direction * (close.price - leg.price) * close.filled_size
            fees += close.fee_usd
        return gross, fees

    @staticmethod
    def _merge(leg: LegFill, close: Optional[LegFill]) -> LegFill:
        """Combines a partly filled exit leg with the market order that finished it."""
        if close is None:
            return leg
        total = leg.filled_size + close.filled_size
        price = (leg.price * leg.filled_size + close.price * close.filled_size) / total if total else close.price
        return LegFill(
            venue=leg.venue,
            side=leg.side,
            requested_size=leg.requested_size,
            price=price,
            client_order_id=close.client_order_id,
            order_id=close.order_id,
            filled_size=total,
            filled=True,
            fee_usd=leg.fee_usd + close.fee_usd,
            status=close.status,
        )

    def _escalate(self, error: UnhedgedExposureError):
        self.unhedged = error
        self.last_status = f"[bold red]HALTED: {error}[/bold red]"
        self.logger.critical("=" * 70)
        self.logger.critical(f"🚨🚨🚨 {error}")
        self.logger.critical("MANUAL INTERVENTION REQUIRED. Close the exposure on the venue by hand.")
        self.logger.critical("Trading is halted until clear_unhedged() is called or the bot restarts.")
        self.logger.critical("=" * 70)

    def clear_unhedged(self):
        """Operator acknowledgement that the exposure was handled by hand."""
        if self.unhedged is not None:
            self.logger.warning(f"Unhedged halt cleared by operator: {self.unhedged}")
        self.unhedged = None

    @staticmethod
    def _leg_errors(long_leg: LegFill, short_leg: LegFill) -> str:
        parts = [f"{leg.venue}: {leg.error}" for leg in (long_leg, short_leg) if leg.error]
        return "; ".join(parts)

    @staticmethod
    def _close_notes(closes: List[LegFill]) -> str:
        return "; ".join(
            f"corrective {c.side.value} {c.filled_size} on {c.venue} @ {c.price:.2f}" for c in closes
        )

    async def _audit(self, action: TradeAction, status: TradeStatus, trade_id: str, cheap: str, expensive: str,
                     size: float, **fields):
        entry = TradeLogEntry(
            timestamp=utc_from_ms(self.clock()),
            trade_id=trade_id,
            action=action,
            status=status,
            cheap_venue=cheap,
            expensive_venue=expensive,
            size=size,
            **fields,
        )
        await self.audit_log.log_trade(entry)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def status(self) -> Dict:
        """Snapshot for the dashboard."""
        stats = self.tracker.get_trade_stats()
        return {
            "state": self.tracker.state.value,
            "position": self.tracker.current_position,
            "hold_seconds": self.tracker.hold_duration_seconds(),
            "last_gap_usd": self.last_gap_usd,
            "last_status": self.last_status,
            "cooldown_seconds": self.governor.remaining_seconds(),
            "funding": self.funding.last_check,
            "unhedged": self.unhedged,
            "stats": stats,
        }

    def log_status(self):
        self.tracker.log_status()
        if self.unhedged is not None:
            self.logger.critical(f"Still HALTED on unhedged exposure: {self.unhedged}")
        if self.governor.should_block_trading():
            self.logger.info(f"Error cooldown active: {self.governor.remaining_seconds():.0f}s left")

    def report_shutdown(self):
        """Final report. Open positions are left on the venues."""
        position = self.tracker.current_position
        if position is not None:
            self.logger.warning(
                f"Shutting down with an OPEN position: LONG {position.size} on {position.cheap_venue}, "
                f"SHORT {position.size} on {position.expensive_venue}. Close it manually if needed."
            )
        if self.unhedged is not None:
            self.logger.critical(f"Shutting down with UNHEDGED exposure: {self.unhedged}")

        stats = self.tracker.get_trade_stats()
        self.logger.info(
            f"Final stats: {stats.count} trades, Total PnL: {stats.total_pnl:.6f} BTC, "
            f"Avg hold: {stats.average_hold_seconds:.0f}s, Win rate: {stats.win_rate * 100:.1f}%"
        )
