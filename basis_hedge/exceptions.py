class BasisHedgeError(Exception):
    """Base class for every error raised by the bot."""


class ConfigurationError(BasisHedgeError):
    """Invalid or missing configuration. Fatal at startup."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class TransientNetworkError(BasisHedgeError):
    """Network-level failure talking to a venue. Safe to retry."""

    def __init__(self, venue: str, message: str):
        self.venue = venue
        super().__init__(f"{venue}: {message}")


class InvalidStateError(BasisHedgeError):
    """A lifecycle transition was attempted from the wrong state. Always a logic fault."""


class NoPositionError(InvalidStateError):
    """An operation needed an open position and there was none."""


class UnhedgedExposureError(BasisHedgeError):
    """
    One leg is filled and the corrective close failed too.
    Carries the outstanding exposure so the operator can flatten it by hand.
    """

    def __init__(self, venue: str, side: str, size: float, price: float, reason: str, close_leg=None):
        self.venue = venue
        self.side = side
        self.size = size
        self.price = price
        self.reason = reason
        self.close_leg = close_leg
        super().__init__(
            f"UNHEDGED {side.upper()} {size} on {venue} @ {price:.2f}: {reason}"
        )


class FundingRiskWarning(UserWarning):
    """Net funding on the open hedge is worse than the configured threshold."""

    def __init__(self, net_funding_per_hour: float, threshold: float):
        self.net_funding_per_hour = net_funding_per_hour
        self.threshold = threshold
        super().__init__(
            f"Funding now unfavorable: {net_funding_per_hour * 100:.4f}%/hr "
            f"(threshold: {threshold * 100:.4f}%/hr)"
        )
