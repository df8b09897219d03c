"""
Exceptions raised by the kayvee shipper.

Configuration and encoding errors surface synchronously to the caller.
Everything that happens on a flush thread is reported to the shipper's
error reporter instead.
"""


class ShipperError(Exception):
    """Base error for the kayvee shipper."""

    pass


class ConfigurationError(ShipperError, ValueError):
    """Invalid or incomplete shipper configuration."""

    pass


class EncodingError(ShipperError, ValueError):
    """A log entry could not be decoded or re-encoded."""

    pass


class ShipperClosedError(ShipperError):
    """Write attempted on a shipper that is closing or closed."""

    pass


class TransportError(ShipperError):
    """Whole-call transport failure that is safe to retry."""

    pass


class SinkError(ShipperError):
    """Whole-call failure that must not be retried."""

    pass


class RetriesExhaustedError(ShipperError):
    """Retryable errors persisted through every allowed attempt."""

    def __init__(self, attempts: int, message: str | None = None):
        self.attempts = attempts
        super().__init__(message or f"gave up after {attempts} attempts")


class SendTimeoutError(ShipperError):
    """A batch could not be delivered before its deadline."""

    def __init__(self, remaining: int, last_error: Exception | None = None):
        self.remaining = remaining
        self.last_error = last_error
        message = f"timed out sending events: {remaining} remaining"
        if last_error is not None:
            message += f" (last error: {last_error})"
        super().__init__(message)


class DrainTimeoutError(ShipperError):
    """In-flight flushes did not finish before the close timeout."""

    pass
