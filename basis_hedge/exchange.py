# basis_hedge/exchange.py
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from .models import AccountInfo, FundingRate, MarketData, OrderBook, OrderResult, Side, VenuePosition

MarketDataCallback = Callable[[MarketData], Awaitable[None]]


class ExchangeAdapter(ABC):
    """
    What the coordinator needs from a venue. Adapters raise
    TransientNetworkError for network-level failures so the retry governor
    can tell them apart from rejections.
    """
    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def initialize(self) -> bool:
        ...

    @abstractmethod
    async def close(self):
        ...

    @abstractmethod
    async def place_order(
        self,
        symbol: str,
        side: Side,
        size: float,
        price: Optional[float] = None,
        reduce_only: bool = False,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        """Limit order at `price`, or a market order when price is None."""

    @abstractmethod
    async def get_order(self, symbol: str, order_id: Optional[str] = None,
                        client_order_id: Optional[str] = None) -> OrderResult:
        """Looks an order up by venue id, or by client id when the venue id is unknown."""

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: Optional[str] = None,
                           client_order_id: Optional[str] = None):
        ...

    @abstractmethod
    async def get_order_book(self, symbol: str) -> OrderBook:
        ...

    @abstractmethod
    async def get_funding_rate(self, symbol: str) -> FundingRate:
        """Funding rate normalized to per hour."""

    @abstractmethod
    async def get_position(self, symbol: str) -> VenuePosition:
        ...

    @abstractmethod
    async def get_account_info(self) -> AccountInfo:
        ...

    @abstractmethod
    async def subscribe_to_market_data(self, symbol: str, on_update: MarketDataCallback):
        ...
