"""
In-memory venue for coordinator and execution tests.

Behaviour is scripted per venue:
    limit_mode   'fill' | 'rest' | 'reject' | 'partial'
    market_mode  'fill' | 'rest'
    place_failures  number of TransientNetworkError raised before a placement lands
    lost_acks       number of placements that land but answer with TransientNetworkError
"""
import time
from typing import Dict, List, Optional

from basis_hedge.exceptions import TransientNetworkError
from basis_hedge.exchange import ExchangeAdapter
from basis_hedge.models import (
    AccountInfo,
    FundingRate,
    OrderBook,
    OrderResult,
    OrderStatus,
    Side,
    VenuePosition,
)


class FakeVenue(ExchangeAdapter):
    def __init__(self, name: str, bid: float = 50000.0, ask: float = 50001.0):
        super().__init__(name)
        self.bid = bid
        self.ask = ask
        self.limit_mode = "fill"
        self.market_mode = "fill"
        self.partial_fraction = 0.4
        self.place_failures = 0
        self.lost_acks = 0
        self.book_error: Optional[Exception] = None
        self.funding_rate_per_hour = 0.0
        self.funding_error: Optional[Exception] = None
        self.available_margin = 100_000.0
        self.reported_fee_usd: Optional[float] = None
        self.position = 0.0  # signed, base currency

        self.orders: Dict[str, OrderResult] = {}
        self.placed: List[dict] = []
        self.cancelled: List[str] = []
        self._seq = 0

    def set_top(self, bid: float, ask: float):
        self.bid = bid
        self.ask = ask

    async def initialize(self) -> bool:
        return True

    async def close(self):
        pass

    def _fill(self, order: OrderResult, size: float, price: float):
        order.filled_size = size
        order.average_price = price
        self.position += size if order.side is Side.BUY else -size

    async def place_order(self, symbol, side, size, price=None, reduce_only=False, client_order_id=None):
        self.placed.append({
            "side": side, "size": size, "price": price,
            "reduce_only": reduce_only, "client_order_id": client_order_id,
        })
        if self.place_failures > 0:
            self.place_failures -= 1
            raise TransientNetworkError(self.name, "connection reset")

        if client_order_id and client_order_id in self.orders:
            raise RuntimeError(f"{self.name}: duplicate clientOrderId {client_order_id}")

        market = price is None
        mode = self.market_mode if market else self.limit_mode
        if mode == "reject":
            raise RuntimeError(f"{self.name}: order rejected")

        self._seq += 1
        order = OrderResult(
            order_id=f"{self.name}-{self._seq}",
            client_order_id=client_order_id,
            symbol=symbol,
            side=side,
            size=size,
            filled_size=0.0,
            average_price=None,
            status=OrderStatus.OPEN,
            fee_usd=self.reported_fee_usd,
        )
        fill_price = price if price is not None else (self.ask if side is Side.BUY else self.bid)
        if mode == "fill":
            self._fill(order, size, fill_price)
            order.status = OrderStatus.FILLED
        elif mode == "partial":
            self._fill(order, size * self.partial_fraction, fill_price)
            order.status = OrderStatus.PARTIALLY_FILLED
        self.orders[client_order_id or order.order_id] = order
        if self.lost_acks > 0:
            self.lost_acks -= 1
            raise TransientNetworkError(self.name, "read timed out")
        return self._copy(order)

    @staticmethod
    def _copy(order: OrderResult) -> OrderResult:
        return OrderResult(
            order.order_id, order.client_order_id, order.symbol, order.side, order.size,
            order.filled_size, order.average_price, order.status, order.fee_usd,
        )

    def _find(self, order_id, client_order_id) -> OrderResult:
        if client_order_id and client_order_id in self.orders:
            return self.orders[client_order_id]
        for order in self.orders.values():
            if order.order_id == order_id:
                return order
        raise KeyError(order_id or client_order_id)

    async def get_order(self, symbol, order_id=None, client_order_id=None):
        return self._copy(self._find(order_id, client_order_id))

    async def cancel_order(self, symbol, order_id=None, client_order_id=None):
        order = self._find(order_id, client_order_id)
        self.cancelled.append(order.order_id)
        if not order.status.is_final:
            order.status = OrderStatus.CANCELLED

    async def get_order_book(self, symbol):
        if self.book_error is not None:
            raise self.book_error
        return OrderBook(self.name, symbol, [(self.bid, 1.0)], [(self.ask, 1.0)], time.time())

    async def get_funding_rate(self, symbol):
        if self.funding_error is not None:
            raise self.funding_error
        return FundingRate(self.name, self.funding_rate_per_hour, time.time())

    async def get_position(self, symbol):
        side = None
        if self.position > 0:
            side = "long"
        elif self.position < 0:
            side = "short"
        return VenuePosition(self.name, symbol, side, abs(self.position))

    async def get_account_info(self):
        return AccountInfo(self.name, self.available_margin, self.available_margin)

    async def subscribe_to_market_data(self, symbol, on_update):
        pass


class RecordingAuditLog:
    """Stands in for TradeAuditLog; keeps the entries in memory."""

    def __init__(self):
        self.entries = []

    async def log_trade(self, entry):
        self.entries.append(entry)

    def actions(self):
        return [(e.action.value, e.status.value) for e in self.entries]
