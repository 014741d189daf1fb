# basis_hedge/execution.py
import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

from .config import BotConfig
from .exceptions import TransientNetworkError, UnhedgedExposureError
from .exchange import ExchangeAdapter
from .models import LegFill, MarketData, OrderResult, Side, SpreadPosition
from .retry import retry_with_backoff

# Only network-level failures are worth another attempt. Rejections are final.
RETRYABLE_ERRORS = (TransientNetworkError, asyncio.TimeoutError)


@dataclass(frozen=True, slots=True)
class ExitPnl:
    gross_usd: float
    fees_usd: float
    net_usd: float
    net_base: float


def limit_price(side: Side, top: MarketData, cross_bps: float) -> float:
    """Aggressive limit that crosses the touch by `cross_bps` so the leg fills immediately."""
    if side is Side.BUY:
        return top.ask_price * (1 + cross_bps / 10000)
    return top.bid_price * (1 - cross_bps / 10000)


def exit_pnl(position: SpreadPosition, long_exit: LegFill, short_exit: LegFill) -> ExitPnl:
    """
    Long leg earns (exit - entry), short leg earns (entry - exit), both on the
    position size. Fees are entry + exit. Base-unit figure uses the average entry price.
    """
    size = position.size
    long_pnl = (long_exit.price - position.cheap_price) * size
    short_pnl = (position.expensive_price - short_exit.price) * size
    gross = long_pnl + short_pnl
    fees = position.entry_fees_usd + long_exit.fee_usd + short_exit.fee_usd
    net = gross - fees
    avg_entry = (position.cheap_price + position.expensive_price) / 2
    return ExitPnl(gross_usd=gross, fees_usd=fees, net_usd=net, net_base=net / avg_entry if avg_entry else 0.0)


class ExecutionService:
    """
    Places and confirms the legs of the hedge.
    Both legs go out concurrently; each leg is placed, polled until filled and
    cancelled if its time budget runs out. Legs never raise: the outcome is in
    the returned LegFill and the coordinator classifies it. Calls to the same
    venue are serialized so a placement never races a cancel.
    """
    def __init__(
        self,
        venues: Dict[str, ExchangeAdapter],
        config: BotConfig,
        logger: logging.Logger,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.venues = venues
        self.logger = logger
        self.sleep = sleep
        self.symbol = config.trading.symbol
        self.retry_options = config.retry.options
        self.exit_timeout = config.trading.exit_timeout_ms / 1000
        self.read_timeout = config.performance.market_data_timeout_ms / 1000
        self.poll_interval = config.performance.fill_poll_interval_ms / 1000
        self.fee_bps = {v.name: (v.maker_fee_bps, v.taker_fee_bps) for v in config.venues}
        self._venue_locks = {name: asyncio.Lock() for name in venues}

    def fee_usd(self, venue: str, size: float, price: float, maker: bool = False) -> float:
        maker_bps, taker_bps = self.fee_bps.get(venue, (0.0, 0.0))
        return size * price * (maker_bps if maker else taker_bps) / 10000

    async def _call(self, fn: Callable[[], Awaitable], timeout: float):
        return await retry_with_backoff(
            lambda: asyncio.wait_for(fn(), timeout),
            self.retry_options,
            self.logger,
            retry_on=RETRYABLE_ERRORS,
            sleep=self.sleep,
        )

    async def fetch_top(self, venue_name: str) -> MarketData:
        venue = self.venues[venue_name]
        book = await self._call(lambda: venue.get_order_book(self.symbol), self.read_timeout)
        return book.top()

    @staticmethod
    def _apply(leg: LegFill, order: OrderResult):
        leg.order_id = order.order_id or leg.order_id
        leg.status = order.status
        leg.filled_size = order.filled_size
        leg.filled = order.is_filled
        if order.average_price:
            leg.price = order.average_price
        if order.fee_usd is not None:
            leg.reported_fee_usd = order.fee_usd

    async def _place_and_confirm(self, venue: ExchangeAdapter, leg: LegFill, limit: Optional[float],
                                 reduce_only: bool):
        async def place():
            try:
                return await venue.place_order(
                    self.symbol, leg.side, leg.requested_size, limit, reduce_only, leg.client_order_id
                )
            except RETRYABLE_ERRORS:
                leg.unconfirmed = True
                raise

        # The client id is reused across retries so a venue can reject a duplicate.
        order = await retry_with_backoff(
            place,
            self.retry_options,
            self.logger,
            retry_on=RETRYABLE_ERRORS,
            sleep=self.sleep,
        )
        self._apply(leg, order)
        self.logger.info(f"{venue.name}: {leg.side.value.upper()} order placed (orderId: {leg.order_id})")

        while not order.is_filled and not order.is_final:
            await self.sleep(self.poll_interval)
            order_id = leg.order_id
            order = await self._call(
                lambda: venue.get_order(self.symbol, order_id, leg.client_order_id), self.read_timeout
            )
            self._apply(leg, order)

    async def _cancel_resting(self, venue: ExchangeAdapter, leg: LegFill):
        try:
            await self._call(
                lambda: venue.cancel_order(self.symbol, leg.order_id, leg.client_order_id), self.read_timeout
            )
            self.logger.info(f"{venue.name}: Cancelled order {leg.order_id or leg.client_order_id}")
        except Exception as e:
            self.logger.warning(f"{venue.name}: Failed to cancel order {leg.order_id or leg.client_order_id}: {e}")

        # Re-read after the cancel: a fill that raced it must not be orphaned.
        try:
            order = await self._call(
                lambda: venue.get_order(self.symbol, leg.order_id, leg.client_order_id), self.read_timeout
            )
            self._apply(leg, order)
        except Exception as e:
            self.logger.warning(
                f"{venue.name}: Could not confirm final state of {leg.order_id or leg.client_order_id}: {e}"
            )

    async def execute_leg(
        self,
        venue_name: str,
        side: Side,
        size: float,
        price: float,
        timeout: float,
        reduce_only: bool = False,
        market: bool = False,
    ) -> LegFill:
        """
        Runs one leg to completion within `timeout` seconds. `price` is the limit,
        or only the reference price when `market` is set.
        """
        venue = self.venues[venue_name]
        leg = LegFill(
            venue=venue_name,
            side=side,
            requested_size=size,
            price=price,
            client_order_id=f"bh{uuid.uuid4().hex[:20]}",
        )
        limit = None if market else price
        uncertain = False

        async with self._venue_locks[venue_name]:
            try:
                await asyncio.wait_for(self._place_and_confirm(venue, leg, limit, reduce_only), timeout)
            except asyncio.TimeoutError:
                uncertain = True
                leg.error = f"not filled within {timeout:.1f}s"
                self.logger.warning(f"{venue_name}: {side.value.upper()} {size} {leg.error}")
            except TransientNetworkError as e:
                uncertain = True
                leg.error = str(e)
                self.logger.error(f"{venue_name}: {side.value.upper()} leg failed after retries: {e}")
            except Exception as e:
                leg.error = str(e)
                self.logger.error(f"{venue_name}: {side.value.upper()} leg rejected: {e}")

            final = leg.status is not None and leg.status.is_final
            # Looked up by client id, so an order whose ack was lost is still found
            if not leg.filled and not final and (uncertain or leg.unconfirmed or leg.order_id is not None):
                await self._cancel_resting(venue, leg)

        if leg.reported_fee_usd is not None:
            leg.fee_usd = leg.reported_fee_usd
        else:
            leg.fee_usd = self.fee_usd(venue_name, leg.filled_size, leg.price)
        return leg

    async def execute_pair(
        self,
        cheap_venue: str,
        expensive_venue: str,
        size: float,
        cheap_price: float,
        expensive_price: float,
        timeout: float,
        closing: bool = False,
    ) -> Tuple[LegFill, LegFill]:
        """
        Fires both legs at the same time. Opening buys cheap / sells expensive,
        closing reverses the sides with reduce-only orders.
        Returns (long leg, short leg), i.e. (cheap venue, expensive venue).
        """
        long_side = Side.SELL if closing else Side.BUY
        self.logger.info(
            f"⚡ {'EXIT' if closing else 'ENTRY'}: {long_side.value.upper()} {size} on {cheap_venue} "
            f"@ {cheap_price:.2f} | {long_side.opposite.value.upper()} {size} on {expensive_venue} "
            f"@ {expensive_price:.2f}"
        )
        long_leg, short_leg = await asyncio.gather(
            self.execute_leg(cheap_venue, long_side, size, cheap_price, timeout, reduce_only=closing),
            self.execute_leg(expensive_venue, long_side.opposite, size, expensive_price, timeout,
                             reduce_only=closing),
        )
        return long_leg, short_leg

    async def flatten(self, exposure: LegFill, size: Optional[float] = None) -> LegFill:
        """
        Panic logic to unwind a stuck leg.
        Market, reduce-only, opposite side. Prioritizes exiting the market over profit.
        Raises UnhedgedExposureError when the exposure could not be removed.
        """
        size = exposure.filled_size if size is None else size
        close_side = exposure.side.opposite
        self.logger.warning(
            f"Orphan: {exposure.side.value.upper()} {size} on {exposure.venue}. "
            f"Action: MARKET {close_side.value.upper()} reduce-only."
        )

        close = await self.execute_leg(
            exposure.venue, close_side, size, exposure.price, self.exit_timeout,
            reduce_only=True, market=True,
        )
        if close.filled:
            self.logger.info(f"🏳️ NEUTRALIZED: {size} closed on {exposure.venue} @ {close.price:.2f}")
            return close

        remaining = size - close.filled_size
        raise UnhedgedExposureError(
            venue=exposure.venue,
            side=exposure.side.value,
            size=remaining,
            price=exposure.price,
            reason=close.error or "corrective close not filled",
            close_leg=close,
        )
