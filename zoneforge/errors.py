"""ZoneForge — exception hierarchy.

Only ``ConfigurationError`` is fatal.  Every other error degrades the current
cycle to "do nothing" and is logged by the component that catches it.
"""


class ZoneForgeError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(ZoneForgeError, ValueError):
    """Invalid startup parameters — the engine never activates."""


class DataUnavailable(ZoneForgeError):
    """A bar, quote, or indicator fetch returned nothing usable."""


class CapacityExceeded(ZoneForgeError):
    """The zone registry is full; the new zone was dropped."""


class OrderRejected(ZoneForgeError):
    """A sizing guard failed or the venue refused the order.

    Args:
        reason: Short machine-readable reason, e.g. ``"below_min_lot"``.
        detail: Optional human-readable context.
    """

    def __init__(self, reason: str, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        message = f"{reason}: {detail}" if detail else reason
        super().__init__(message)


class ExternalFailure(ZoneForgeError):
    """A venue call (order, modify, partial close) failed."""
