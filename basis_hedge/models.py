# basis_hedge/models.py
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple
import time


def now_ms() -> int:
    """Wall clock in epoch milliseconds. Every component takes this as its default clock."""
    return int(time.time() * 1000)


class BotState(Enum):
    FLAT = "FLAT"
    OPEN = "OPEN"


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class TradeAction(Enum):
    """
    Lifecycle event recorded in the audit log.
    """
    ENTRY = "ENTRY"
    EXIT = "EXIT"
    EMERGENCY_CLOSE = "EMERGENCY_CLOSE"
    UNHEDGED_CLOSE = "UNHEDGED_CLOSE"


class TradeStatus(Enum):
    """
    Outcome of a lifecycle event.
    """
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"
    UNHEDGED = "UNHEDGED"


class OrderStatus(str, Enum):
    OPEN = "open"
    FILLED = "filled"
    PARTIALLY_FILLED = "partially_filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @property
    def is_final(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.REJECTED)


@dataclass(slots=True)
class MarketData:
    """
    Top-of-book snapshot for one venue.
    Pushed by the WebSocket feeds or derived from a REST order book.
    """
    venue: str
    symbol: str
    bid_price: float
    ask_price: float
    timestamp: float  # epoch seconds, local receive time

    @property
    def mid_price(self) -> float:
        return (self.bid_price + self.ask_price) / 2

    def age_at(self, now: float) -> float:
        return now - self.timestamp

    @property
    def age(self) -> float:
        """Returns the age of the data in seconds, against the wall clock the feeds stamp with."""
        return self.age_at(time.time())


@dataclass(slots=True)
class OrderBook:
    venue: str
    symbol: str
    bids: List[Tuple[float, float]]  # [(price, size)], best first
    asks: List[Tuple[float, float]]
    timestamp: float

    def top(self) -> MarketData:
        if not self.bids or not self.asks:
            raise ValueError(f"{self.venue}: order book for {self.symbol} is empty")
        return MarketData(
            venue=self.venue,
            symbol=self.symbol,
            bid_price=self.bids[0][0],
            ask_price=self.asks[0][0],
            timestamp=self.timestamp,
        )


@dataclass(slots=True)
class FundingRate:
    venue: str
    rate_per_hour: float
    timestamp: float


@dataclass(slots=True)
class VenuePosition:
    venue: str
    symbol: str
    side: Optional[str]  # 'long' / 'short' / None when flat
    size: float


@dataclass(slots=True)
class AccountInfo:
    venue: str
    balance: float
    available_margin: float


@dataclass(slots=True)
class OrderResult:
    """
    Normalized view of a venue order, as returned by every adapter call.
    """
    order_id: str
    client_order_id: Optional[str]
    symbol: str
    side: Side
    size: float
    filled_size: float
    average_price: Optional[float]
    status: OrderStatus
    fee_usd: Optional[float] = None  # venue-reported fee in quote currency, when available

    @property
    def is_filled(self) -> bool:
        return self.status is OrderStatus.FILLED or self.filled_size >= self.size - 1e-12

    @property
    def is_final(self) -> bool:
        return self.status.is_final


@dataclass(slots=True)
class LegFill:
    """
    Outcome of one leg of a two-leg operation.
    A leg that timed out or was rejected has filled=False; filled_size may still be
    non-zero if the venue filled part of it before the cancel landed.
    """
    venue: str
    side: Side
    requested_size: float
    price: float
    client_order_id: str
    order_id: Optional[str] = None
    filled_size: float = 0.0
    filled: bool = False
    fee_usd: float = 0.0
    reported_fee_usd: Optional[float] = None
    status: Optional[OrderStatus] = None
    # A placement attempt failed in transit, so an order may exist on the venue
    unconfirmed: bool = False
    error: Optional[str] = None

    @property
    def has_exposure(self) -> bool:
        return self.filled_size > 0


@dataclass(slots=True)
class SpreadPosition:
    """
    The single open hedge. Exists only while the bot is OPEN.
    """
    entry_gap_usd: float
    entry_timestamp: int  # epoch ms
    cheap_venue: str
    expensive_venue: str
    size: float
    cheap_price: float
    expensive_price: float
    entry_fees_usd: float = 0.0
    cheap_order_id: Optional[str] = None
    expensive_order_id: Optional[str] = None

    def snapshot(self) -> "SpreadPosition":
        return replace(self)


@dataclass(frozen=True, slots=True)
class TradeHistory:
    id: str
    entry_timestamp: int
    exit_timestamp: int
    entry_gap_usd: float
    exit_gap_usd: float
    cheap_venue: str
    expensive_venue: str
    size: float
    realized_pnl: float  # base-asset units
    hold_duration_seconds: int


@dataclass(frozen=True, slots=True)
class TradeStats:
    count: int = 0
    total_pnl: float = 0.0
    average_hold_seconds: float = 0.0
    win_rate: float = 0.0


def _fmt(value, digits: Optional[int] = None) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    if digits is not None and isinstance(value, (int, float)):
        return f"{value:.{digits}f}"
    return str(value)


@dataclass(slots=True)
class TradeLogEntry:
    """
    One audit record per lifecycle event. The long leg is always the cheap venue,
    the short leg the expensive venue.
    """
    timestamp: datetime
    trade_id: str
    action: TradeAction
    status: TradeStatus
    cheap_venue: Optional[str] = None
    expensive_venue: Optional[str] = None
    size: Optional[float] = None
    entry_gap_usd: Optional[float] = None
    exit_gap_usd: Optional[float] = None
    hold_duration_seconds: Optional[int] = None
    long_leg: Optional[LegFill] = None
    short_leg: Optional[LegFill] = None
    gross_pnl_usd: Optional[float] = None
    total_fees_usd: Optional[float] = None
    net_pnl_usd: Optional[float] = None
    net_pnl_base: Optional[float] = None
    notes: Optional[str] = None

    HEADERS = [
        "Timestamp", "Trade ID", "Action", "Status",
        "Cheap Venue", "Expensive Venue", "Size",
        "Entry Gap USD", "Exit Gap USD", "Hold Duration (s)",
        "Long Side", "Long Order ID", "Long Size", "Long Price", "Long Filled", "Long Fee USD",
        "Short Side", "Short Order ID", "Short Size", "Short Price", "Short Filled", "Short Fee USD",
        "Gross P&L USD", "Total Fees USD", "Net P&L USD", "Net P&L Base", "Notes",
    ]

    @staticmethod
    def _leg_columns(leg: Optional[LegFill]) -> List[str]:
        if leg is None:
            return [""] * 6
        return [
            leg.side.value,
            _fmt(leg.order_id),
            _fmt(leg.filled_size),
            _fmt(leg.price),
            _fmt(leg.filled),
            _fmt(leg.fee_usd, 2),
        ]

    def to_row(self) -> List[str]:
        return [
            self.timestamp.isoformat(),
            self.trade_id,
            self.action.value,
            self.status.value,
            _fmt(self.cheap_venue),
            _fmt(self.expensive_venue),
            _fmt(self.size),
            _fmt(self.entry_gap_usd, 2),
            _fmt(self.exit_gap_usd, 2),
            _fmt(self.hold_duration_seconds),
            *self._leg_columns(self.long_leg),
            *self._leg_columns(self.short_leg),
            _fmt(self.gross_pnl_usd, 2),
            _fmt(self.total_fees_usd, 2),
            _fmt(self.net_pnl_usd, 2),
            _fmt(self.net_pnl_base, 8),
            _fmt(self.notes),
        ]


def utc_from_ms(ts_ms: int) -> datetime:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
