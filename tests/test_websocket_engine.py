"""
Tests for the push-feed registry. No sockets are opened.
"""
import asyncio

import pytest

from basis_hedge.websocket_engine import (
    BybitLinearStream,
    OkxSwapStream,
    WebSocketEngine,
    split_symbol,
)


async def on_update(ticker):
    pass


def test_split_symbol():
    assert split_symbol("BTC/USDT:USDT") == ("BTC", "USDT")
    assert split_symbol("ETH/USDC") == ("ETH", "USDC")


def test_supported_venues():
    assert WebSocketEngine.supports("okx")
    assert WebSocketEngine.supports("binanceusdm")
    assert not WebSocketEngine.supports("kraken")


def test_subscribe_hands_updates_to_the_callback(logger):
    engine = WebSocketEngine(logger, testnet=True)
    engine.subscribe("bybit", "BTC/USDT:USDT", on_update)
    stream = engine.streams[0]
    assert isinstance(stream, BybitLinearStream)
    assert stream.callback is on_update
    assert stream.endpoint == BybitLinearStream.testnet_url


def test_ticker_is_stamped_with_the_venue(logger):
    stream = OkxSwapStream("okx", "BTC/USDT:USDT", on_update)
    ticker = stream._ticker(50000.0, 50001.0)
    assert (ticker.venue, ticker.symbol) == ("okx", "BTC/USDT:USDT")
    assert ticker.mid_price == 50000.5
    assert stream.endpoint == OkxSwapStream.url


def test_unknown_venue_is_rejected(logger):
    engine = WebSocketEngine(logger)
    with pytest.raises(ValueError, match="No WebSocket stream for kraken"):
        engine.subscribe("kraken", "BTC/USDT:USDT", on_update)


def test_shutdown_without_start(logger):
    engine = WebSocketEngine(logger)
    asyncio.run(engine.shutdown())
    assert not engine.running
