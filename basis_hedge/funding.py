# basis_hedge/funding.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .exceptions import FundingRiskWarning
from .exchange import ExchangeAdapter
from .retry import RetryOptions, retry_with_backoff
from .state import PositionTracker


@dataclass(slots=True)
class NetFunding:
    cheap_venue: str
    expensive_venue: str
    cheap_rate: float
    expensive_rate: float
    net_per_hour: float
    is_favorable: bool


def estimate_funding_cost(net_funding_per_hour: float, size: float, hold_hours: float, price: float) -> float:
    """Funding earned (positive) or paid (negative) in quote currency over `hold_hours`."""
    return size * price * net_funding_per_hour * hold_hours


class FundingMonitor:
    """
    Watches the funding differential of the open hedge.

    Long on the cheap venue pays its rate, short on the expensive venue receives
    its rate, so net per hour = expensive rate - cheap rate. Below the threshold
    a FundingRiskWarning is logged and the unfavorable streak grows; acting on it
    is the coordinator's call. Only reads position state.
    """
    def __init__(
        self,
        venues: Dict[str, ExchangeAdapter],
        tracker: PositionTracker,
        symbol: str,
        min_net_funding_per_hour: float,
        logger: logging.Logger,
        retry_options: Optional[RetryOptions] = None,
        retry_on: tuple = (Exception,),
        timeout: float = 5.0,
    ):
        self.venues = venues
        self.tracker = tracker
        self.symbol = symbol
        self.threshold = min_net_funding_per_hour
        self.logger = logger
        self.retry_options = retry_options
        self.retry_on = retry_on
        self.timeout = timeout
        self.unfavorable_streak = 0
        self.last_warning: Optional[FundingRiskWarning] = None
        self.last_check: Optional[NetFunding] = None

    async def _fetch_rate(self, venue: ExchangeAdapter) -> float:
        funding = await retry_with_backoff(
            lambda: asyncio.wait_for(venue.get_funding_rate(self.symbol), self.timeout),
            self.retry_options,
            self.logger,
            retry_on=self.retry_on,
        )
        return funding.rate_per_hour

    async def check(self) -> Optional[NetFunding]:
        position = self.tracker.current_position
        if position is None:
            self.unfavorable_streak = 0
            return None

        cheap = self.venues[position.cheap_venue]
        expensive = self.venues[position.expensive_venue]
        try:
            cheap_rate, expensive_rate = await asyncio.gather(
                self._fetch_rate(cheap), self._fetch_rate(expensive)
            )
        except Exception as e:
            self.logger.error(f"Failed to monitor funding rates: {e}")
            return None

        current = self.tracker.current_position
        if current is None or current.entry_timestamp != position.entry_timestamp:
            # The hedge changed while the rates were in flight
            return None

        net = expensive_rate - cheap_rate
        result = NetFunding(
            cheap_venue=position.cheap_venue,
            expensive_venue=position.expensive_venue,
            cheap_rate=cheap_rate,
            expensive_rate=expensive_rate,
            net_per_hour=net,
            is_favorable=net >= self.threshold,
        )
        self.last_check = result

        self.logger.debug(
            f"Funding rates - LONG {cheap.name}: {cheap_rate * 100:.4f}%/hr, "
            f"SHORT {expensive.name}: {expensive_rate * 100:.4f}%/hr, "
            f"Net: {net * 100:.4f}%/hr"
        )

        if result.is_favorable:
            self.unfavorable_streak = 0
            if net > 0:
                self.logger.info(f"Funding favorable: earning {net * 100:.4f}%/hr")
        else:
            self.unfavorable_streak += 1
            self.last_warning = FundingRiskWarning(net, self.threshold)
            self.logger.warning(f"⚠ {self.last_warning} [{self.unfavorable_streak} in a row]")
        return result

    def reset(self):
        """Forgets the streak. Called whenever a hedge opens or closes."""
        self.unfavorable_streak = 0
        self.last_warning = None
        self.last_check = None

    def sustained_unfavorable(self, checks: Optional[int]) -> bool:
        return checks is not None and self.unfavorable_streak >= checks

    async def run_loop(self, interval: float):
        while True:
            await self.check()
            await asyncio.sleep(interval)
