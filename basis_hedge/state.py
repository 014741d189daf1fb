# basis_hedge/state.py
import logging
import math
from typing import Callable, List, Optional, Tuple

from .exceptions import InvalidStateError, NoPositionError
from .models import BotState, SpreadPosition, TradeHistory, TradeStats, now_ms


class PositionTracker:
    """
    Holds the FLAT/OPEN state, the open hedge and the closed-trade history.
    OPEN and "a position exists" are always the same thing; every mutator checks it.
    Only the coordinator mutates it. Readers get snapshots.
    """
    def __init__(self, logger: logging.Logger, clock: Callable[[], int] = now_ms):
        self.logger = logger
        self.clock = clock
        self._state = BotState.FLAT
        self._position: Optional[SpreadPosition] = None
        self._history: List[TradeHistory] = []
        # Set on every close. Read by the post-exit cooldown.
        self.last_exit_ms: Optional[int] = None

    @property
    def state(self) -> BotState:
        return self._state

    @property
    def is_flat(self) -> bool:
        return self._state is BotState.FLAT

    @property
    def is_open(self) -> bool:
        return self._state is BotState.OPEN

    @property
    def current_position(self) -> Optional[SpreadPosition]:
        """A copy of the open position, or None. Safe to hold across awaits."""
        return self._position.snapshot() if self._position else None

    @property
    def trade_history(self) -> Tuple[TradeHistory, ...]:
        return tuple(self._history)

    def open_position(
        self,
        entry_gap_usd: float,
        cheap_venue: str,
        expensive_venue: str,
        size: float,
        cheap_price: float,
        expensive_price: float,
        entry_fees_usd: float = 0.0,
    ) -> SpreadPosition:
        if self._state is not BotState.FLAT:
            raise InvalidStateError("Cannot open position: already in OPEN state")
        if cheap_venue == expensive_venue:
            raise ValueError(f"cheap and expensive venue must differ (both {cheap_venue})")
        if size <= 0:
            raise ValueError(f"position size must be positive, got {size}")

        self._position = SpreadPosition(
            entry_gap_usd=entry_gap_usd,
            entry_timestamp=self.clock(),
            cheap_venue=cheap_venue,
            expensive_venue=expensive_venue,
            size=size,
            cheap_price=cheap_price,
            expensive_price=expensive_price,
            entry_fees_usd=entry_fees_usd,
        )
        self._state = BotState.OPEN

        self.logger.info(
            f"Position OPENED: {entry_gap_usd:.2f} USD gap, "
            f"LONG {size} on {cheap_venue} @ {cheap_price:.2f}, "
            f"SHORT {size} on {expensive_venue} @ {expensive_price:.2f}"
        )
        return self._position.snapshot()

    def attach_order_ids(self, cheap_order_id: Optional[str], expensive_order_id: Optional[str]):
        if self._state is not BotState.OPEN or self._position is None:
            raise NoPositionError("No current position to attach order ids to")
        self._position.cheap_order_id = cheap_order_id
        self._position.expensive_order_id = expensive_order_id

    def close_position(self, exit_gap_usd: float, realized_pnl: float) -> TradeHistory:
        if self._state is not BotState.OPEN or self._position is None:
            raise InvalidStateError("Cannot close position: not in OPEN state")

        pos = self._position
        exit_ts = self.clock()
        hold = max(0, (exit_ts - pos.entry_timestamp) // 1000)

        trade = TradeHistory(
            id=f"trade-{pos.entry_timestamp}",
            entry_timestamp=pos.entry_timestamp,
            exit_timestamp=exit_ts,
            entry_gap_usd=pos.entry_gap_usd,
            exit_gap_usd=exit_gap_usd,
            cheap_venue=pos.cheap_venue,
            expensive_venue=pos.expensive_venue,
            size=pos.size,
            realized_pnl=realized_pnl,
            hold_duration_seconds=int(hold),
        )
        self._history.append(trade)
        self._position = None
        self._state = BotState.FLAT
        self.last_exit_ms = exit_ts

        self.logger.info(
            f"Position CLOSED: Exit gap {exit_gap_usd:.2f} USD, "
            f"Hold duration {trade.hold_duration_seconds}s, "
            f"Realized PnL: {realized_pnl:.6f} BTC"
        )
        return trade

    def hold_duration_seconds(self) -> int:
        if self._position is None:
            return 0
        return max(0, (self.clock() - self._position.entry_timestamp) // 1000)

    def get_trade_stats(self) -> TradeStats:
        if not self._history:
            return TradeStats()
        count = len(self._history)
        total_pnl = math.fsum(t.realized_pnl for t in self._history)
        avg_hold = sum(t.hold_duration_seconds for t in self._history) / count
        wins = sum(1 for t in self._history if t.realized_pnl > 0)
        return TradeStats(
            count=count,
            total_pnl=total_pnl,
            average_hold_seconds=avg_hold,
            win_rate=wins / count,
        )

    def log_status(self):
        pos = self._position
        if pos is None:
            self.logger.info("Status: FLAT (no open position)")
        else:
            self.logger.info(
                f"Status: OPEN | Entry gap: {pos.entry_gap_usd:.2f} USD | "
                f"Hold: {self.hold_duration_seconds()}s | "
                f"Long {pos.cheap_venue}, Short {pos.expensive_venue}"
            )

        stats = self.get_trade_stats()
        if stats.count > 0:
            self.logger.info(
                f"Stats: {stats.count} trades, "
                f"Total PnL: {stats.total_pnl:.6f} BTC, "
                f"Avg hold: {stats.average_hold_seconds:.0f}s, "
                f"Win rate: {stats.win_rate * 100:.1f}%"
            )
