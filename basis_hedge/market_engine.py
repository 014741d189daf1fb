# basis_hedge/market_engine.py
import ccxt.async_support as ccxt
import asyncio
import time
import uuid
from typing import Dict, Optional

from .config import BotConfig, VenueConfig
from .exceptions import TransientNetworkError
from .exchange import ExchangeAdapter, MarketDataCallback
from .models import AccountInfo, FundingRate, OrderBook, OrderResult, OrderStatus, Side, VenuePosition
from .websocket_engine import WebSocketEngine

PAPER_BALANCE_USD = 100_000.0

_CCXT_STATUS = {
    'open': OrderStatus.OPEN,
    'closed': OrderStatus.FILLED,
    'canceled': OrderStatus.CANCELLED,
    'cancelled': OrderStatus.CANCELLED,
    'expired': OrderStatus.CANCELLED,
    'rejected': OrderStatus.REJECTED,
}


class CcxtVenue(ExchangeAdapter):
    """
    Perpetual-swap venue on top of a ccxt async client.
    Sizes are in base currency (BTC) and converted to contracts with the
    market's contract size. ccxt network errors surface as TransientNetworkError.

    In paper mode orders never reach the venue: they fill at once at the
    limit (or at the touch for market orders) and the position is kept locally.
    Market data and funding still come from the live venue.
    """
    def __init__(self, venue_cfg: VenueConfig, client: ccxt.Exchange, feed: Optional[WebSocketEngine] = None,
                 paper: bool = False):
        super().__init__(venue_cfg.name)
        self.cfg = venue_cfg
        self.client = client
        self.feed = feed
        self.paper = paper
        self._paper_orders: Dict[str, OrderResult] = {}
        self._paper_position = 0.0  # signed, base currency

    async def _guard(self, coro):
        try:
            return await coro
        except ccxt.NetworkError as e:
            raise TransientNetworkError(self.name, str(e)) from e

    def _contract_size(self, symbol: str) -> float:
        market = self.client.market(symbol)
        return float(market.get('contractSize') or 1.0)

    def _to_result(self, order: dict, symbol: str, client_order_id: Optional[str]) -> OrderResult:
        contract = self._contract_size(symbol)
        amount = float(order.get('amount') or 0.0) * contract
        filled = float(order.get('filled') or 0.0) * contract
        status = _CCXT_STATUS.get(order.get('status'), OrderStatus.OPEN)
        if status is OrderStatus.OPEN and 0 < filled < amount:
            status = OrderStatus.PARTIALLY_FILLED
        fee = order.get('fee') or {}
        fee_usd = None
        if fee.get('cost') is not None and fee.get('currency') in ('USDT', 'USD', 'USDC'):
            fee_usd = float(fee['cost'])
        return OrderResult(
            order_id=str(order.get('id') or ''),
            client_order_id=order.get('clientOrderId') or client_order_id,
            symbol=symbol,
            side=Side(order.get('side') or Side.BUY.value),
            size=amount,
            filled_size=filled,
            average_price=order.get('average') or order.get('price'),
            status=status,
            fee_usd=fee_usd,
        )

    async def initialize(self) -> bool:
        await self._guard(self.client.load_markets())
        return True

    async def close(self):
        await self.client.close()

    async def place_order(
        self,
        symbol: str,
        side: Side,
        size: float,
        price: Optional[float] = None,
        reduce_only: bool = False,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        if self.paper:
            return await self._paper_fill(symbol, side, size, price, client_order_id)

        params = {}
        if reduce_only:
            params['reduceOnly'] = True
        if client_order_id:
            params['clientOrderId'] = client_order_id
        amount = size / self._contract_size(symbol)
        order_type = 'market' if price is None else 'limit'
        order = await self._guard(
            self.client.create_order(symbol, order_type, side.value, amount, price, params)
        )
        return self._to_result(order, symbol, client_order_id)

    async def get_order(self, symbol: str, order_id: Optional[str] = None,
                        client_order_id: Optional[str] = None) -> OrderResult:
        if self.paper:
            return self._paper_orders[client_order_id or order_id]
        params = {} if order_id else {'clientOrderId': client_order_id}
        order = await self._guard(self.client.fetch_order(order_id or '', symbol, params))
        return self._to_result(order, symbol, client_order_id)

    async def cancel_order(self, symbol: str, order_id: Optional[str] = None,
                           client_order_id: Optional[str] = None):
        if self.paper:
            return
        params = {} if order_id else {'clientOrderId': client_order_id}
        try:
            await self._guard(self.client.cancel_order(order_id or '', symbol, params))
        except ccxt.OrderNotFound:
            # Already filled or gone; the caller re-reads the order.
            pass

    async def get_order_book(self, symbol: str) -> OrderBook:
        book = await self._guard(self.client.fetch_order_book(symbol, 5))
        return OrderBook(
            venue=self.name,
            symbol=symbol,
            bids=[(float(p), float(s)) for p, s, *_ in book['bids']],
            asks=[(float(p), float(s)) for p, s, *_ in book['asks']],
            timestamp=time.time(),
        )

    async def get_funding_rate(self, symbol: str) -> FundingRate:
        data = await self._guard(self.client.fetch_funding_rate(symbol))
        rate = float(data.get('fundingRate') or 0.0)
        return FundingRate(
            venue=self.name,
            rate_per_hour=rate / self.cfg.funding_interval_hours,
            timestamp=time.time(),
        )

    async def get_position(self, symbol: str) -> VenuePosition:
        if self.paper:
            side = None
            if self._paper_position > 0:
                side = 'long'
            elif self._paper_position < 0:
                side = 'short'
            return VenuePosition(self.name, symbol, side, abs(self._paper_position))

        positions = await self._guard(self.client.fetch_positions([symbol]))
        contract = self._contract_size(symbol)
        for p in positions:
            contracts = float(p.get('contracts') or 0.0)
            if p.get('symbol') == symbol and contracts > 0:
                return VenuePosition(self.name, symbol, p.get('side'), contracts * contract)
        return VenuePosition(self.name, symbol, None, 0.0)

    async def get_account_info(self) -> AccountInfo:
        if self.paper:
            return AccountInfo(self.name, PAPER_BALANCE_USD, PAPER_BALANCE_USD)
        balance = await self._guard(self.client.fetch_balance())
        usdt = balance.get('USDT') or {}
        return AccountInfo(
            venue=self.name,
            balance=float(usdt.get('total') or 0.0),
            available_margin=float(usdt.get('free') or 0.0),
        )

    async def subscribe_to_market_data(self, symbol: str, on_update: MarketDataCallback):
        if self.feed is None:
            raise RuntimeError(f"{self.name}: no WebSocket feed configured")
        self.feed.subscribe(self.name, symbol, on_update)

    async def _paper_fill(self, symbol: str, side: Side, size: float, price: Optional[float],
                          client_order_id: Optional[str]) -> OrderResult:
        if price is None:
            top = (await self.get_order_book(symbol)).top()
            price = top.ask_price if side is Side.BUY else top.bid_price
        fee = size * price * self.cfg.taker_fee_bps / 10000
        result = OrderResult(
            order_id=f"paper-{uuid.uuid4().hex[:12]}",
            client_order_id=client_order_id,
            symbol=symbol,
            side=side,
            size=size,
            filled_size=size,
            average_price=price,
            status=OrderStatus.FILLED,
            fee_usd=fee,
        )
        self._paper_orders[client_order_id or result.order_id] = result
        self._paper_position += size if side is Side.BUY else -size
        return result


class MarketEngine:
    """
    Manages REST API connections to exchanges.
    Responsible for initial diagnostics, authentication verification,
    and providing the venue adapters to the coordinator.
    """
    def __init__(self, config: BotConfig, logger, feed: Optional[WebSocketEngine] = None):
        self.venues: Dict[str, CcxtVenue] = {}
        self.cfg = config
        self.logger = logger
        self.feed = feed

    def _build_client(self, venue_cfg: VenueConfig) -> ccxt.Exchange:
        ex_class = getattr(ccxt, venue_cfg.name)
        client = ex_class({
            'apiKey': venue_cfg.api_key,
            'secret': venue_cfg.secret,
            'password': venue_cfg.password,  # OKX requires password
            'timeout': self.cfg.performance.network_timeout_ms,
            'enableRateLimit': True,
            'options': {'defaultType': 'swap'}
        })
        if self.cfg.system.environment == 'testnet':
            client.set_sandbox_mode(True)
        return client

    async def initialize(self) -> bool:
        """
        Connects to exchanges and performs a robust connectivity test.
        Returns False if ANY exchange fails the diagnostic.
        """
        paper = self.cfg.system.dry_run
        symbol = self.cfg.trading.symbol
        all_connected = True

        self.logger.info("📡 TESTING EXCHANGE CONNECTIONS...")

        for venue_cfg in self.cfg.venues:
            name = venue_cfg.name
            client = None
            try:
                client = self._build_client(venue_cfg)

                # --- DIAGNOSTIC PHASE 1: PUBLIC API ---
                # Checks internet connection, exchange status and that the perpetual is listed
                await client.load_markets()
                if symbol not in client.markets:
                    raise ccxt.BadSymbol(f"{symbol} is not listed on {name}")

                # --- DIAGNOSTIC PHASE 2: PRIVATE API ---
                # Paper trading needs no keys
                if not paper:
                    await client.fetch_balance()

                self.venues[name] = CcxtVenue(venue_cfg, client, self.feed, paper=paper)
                latency_info = (client.last_response_headers or {}).get('Date', 'OK')
                auth = "PAPER" if paper else "OK"
                self.logger.info(f"   ✅ {name.upper():<12} | Latency: {latency_info} | Auth: {auth}")

            except ccxt.AuthenticationError:
                self.logger.critical(f"   ❌ {name.upper():<12} | AUTH FAILED: Invalid API Key or Secret.")
                all_connected = False

            except ccxt.PermissionDenied:
                self.logger.critical(f"   ❌ {name.upper():<12} | PERMISSION DENIED: Key missing 'Futures Trading' or 'IP Whitelist' permissions.")
                all_connected = False

            except ccxt.AccountSuspended:
                self.logger.critical(f"   ❌ {name.upper():<12} | ACCOUNT SUSPENDED: Contact support immediately.")
                all_connected = False

            except ccxt.BadSymbol as e:
                self.logger.critical(f"   ❌ {name.upper():<12} | BAD SYMBOL: {e}")
                all_connected = False

            except ccxt.RequestTimeout:
                self.logger.error(f"   ❌ {name.upper():<12} | TIMEOUT: Exchange API is slow or down.")
                all_connected = False

            except ccxt.ExchangeNotAvailable:
                self.logger.error(f"   ❌ {name.upper():<12} | MAINTENANCE: Exchange is currently offline.")
                all_connected = False

            except Exception as e:
                self.logger.critical(f"   ❌ {name.upper():<12} | UNKNOWN ERROR: {str(e)}")
                all_connected = False

            if name not in self.venues and client is not None:
                await client.close()

        return all_connected

    async def shutdown(self):
        """
        Gracefully closes all REST API sessions. Positions are left untouched.
        """
        await asyncio.gather(*(v.close() for v in self.venues.values()), return_exceptions=True)
