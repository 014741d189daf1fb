# basis_hedge/websocket_engine.py
import asyncio
import aiohttp
import json
import time
from typing import List, Optional, Tuple

from .exchange import MarketDataCallback
from .models import MarketData


def split_symbol(symbol: str) -> Tuple[str, str]:
    """'BTC/USDT:USDT' -> ('BTC', 'USDT')"""
    pair = symbol.split(':')[0]
    base, quote = pair.split('/')
    return base, quote


class ExchangeStream:
    """
    One top-of-book stream for one venue and one perpetual.
    `connect` returns when the socket closes; the engine reconnects.
    """
    url = ""
    testnet_url = ""

    def __init__(self, venue: str, symbol: str, callback: MarketDataCallback, testnet: bool = False):
        self.venue = venue
        self.symbol = symbol
        self.callback = callback
        self.testnet = testnet
        self.ws = None

    @property
    def endpoint(self) -> str:
        return self.testnet_url if self.testnet else self.url

    def _ticker(self, bid: float, ask: float) -> MarketData:
        return MarketData(
            venue=self.venue,
            symbol=self.symbol,
            bid_price=bid,
            ask_price=ask,
            timestamp=time.time(),
        )

    async def connect(self, session: aiohttp.ClientSession):
        raise NotImplementedError


class BinanceFuturesStream(ExchangeStream):
    url = "wss://fstream.binance.com/ws"
    testnet_url = "wss://stream.binancefuture.com/ws"

    async def connect(self, session: aiohttp.ClientSession):
        # Format: btcusdt@bookTicker
        base, quote = split_symbol(self.symbol)
        url = f"{self.endpoint}/{(base + quote).lower()}@bookTicker"

        async with session.ws_connect(url, heartbeat=30) as ws:
            self.ws = ws
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    data = json.loads(msg.data)
                    if 'b' in data and 'a' in data:
                        await self.callback(self._ticker(float(data['b']), float(data['a'])))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break


class OkxSwapStream(ExchangeStream):
    url = "wss://ws.okx.com:8443/ws/v5/public"
    testnet_url = "wss://wspap.okx.com:8443/ws/v5/public"

    async def connect(self, session: aiohttp.ClientSession):
        # OKX Format: BTC-USDT-SWAP
        base, quote = split_symbol(self.symbol)
        inst_id = f"{base}-{quote}-SWAP"

        async with session.ws_connect(self.endpoint, heartbeat=25) as ws:
            self.ws = ws
            await ws.send_json({"op": "subscribe", "args": [{"channel": "tickers", "instId": inst_id}]})

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    data = json.loads(msg.data)
                    if data.get('event') == 'error':
                        raise ConnectionError(f"okx subscribe failed: {data.get('msg')}")
                    if 'data' in data:
                        t = data['data'][0]
                        if t.get('bidPx') and t.get('askPx'):
                            await self.callback(self._ticker(float(t['bidPx']), float(t['askPx'])))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break


class BybitLinearStream(ExchangeStream):
    url = "wss://stream.bybit.com/v5/public/linear"
    testnet_url = "wss://stream-testnet.bybit.com/v5/public/linear"

    async def connect(self, session: aiohttp.ClientSession):
        # Bybit Format: BTCUSDT
        base, quote = split_symbol(self.symbol)
        topic = f"tickers.{base}{quote}"
        bid: Optional[float] = None
        ask: Optional[float] = None

        async with session.ws_connect(self.endpoint, heartbeat=20) as ws:
            self.ws = ws
            await ws.send_json({"op": "subscribe", "args": [topic], "req_id": "basis-hedge"})

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    data = json.loads(msg.data)
                    if data.get('topic') != topic:
                        continue
                    # Linear tickers send a snapshot and then deltas with only the changed fields
                    t = data['data']
                    if t.get('bid1Price'):
                        bid = float(t['bid1Price'])
                    if t.get('ask1Price'):
                        ask = float(t['ask1Price'])
                    if bid is not None and ask is not None:
                        await self.callback(self._ticker(bid, ask))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break


STREAMS = {
    'binanceusdm': BinanceFuturesStream,
    'okx': OkxSwapStream,
    'bybit': BybitLinearStream,
}


class WebSocketEngine:
    """
    Push feed of top-of-book updates. Every update is handed straight to the
    subscriber's callback. Streams reconnect until shutdown.
    """
    def __init__(self, logger, testnet: bool = False, reconnect_delay: float = 2.0):
        self.logger = logger
        self.testnet = testnet
        self.reconnect_delay = reconnect_delay
        self.streams: List[ExchangeStream] = []

        self.running = False
        self._session = None
        self.tasks = []

    @staticmethod
    def supports(venue: str) -> bool:
        return venue in STREAMS

    def subscribe(self, venue: str, symbol: str, callback: MarketDataCallback):
        if venue not in STREAMS:
            raise ValueError(f"No WebSocket stream for {venue}. Supported: {', '.join(STREAMS)}")

        self.streams.append(STREAMS[venue](venue, symbol, callback, self.testnet))

    async def start(self):
        self.running = True
        self._session = aiohttp.ClientSession()
        self.logger.info(f"⚡ CONNECTING {len(self.streams)} STREAMS...")
        self.tasks = [asyncio.create_task(self._run_stream_forever(s)) for s in self.streams]

    async def _run_stream_forever(self, stream: ExchangeStream):
        while self.running:
            try:
                await stream.connect(self._session)
                self.logger.warning(f"WS {stream.venue}: connection closed")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"WS Error ({stream.venue}): {e}")
            if self.running:
                await asyncio.sleep(self.reconnect_delay)

    async def shutdown(self):
        self.running = False
        for t in self.tasks:
            t.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        if self._session:
            await self._session.close()
