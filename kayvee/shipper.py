"""
Kayvee Shipper - batched, retrying delivery of structured logs to a stream.

Buffers formatted log entries and sends them in batches no larger than the
destination allows. Batches go out when they fill up or when they have been
waiting for ``max_staleness`` seconds, each on its own thread, so writers
never wait on the network. Rejected records are resent until they are
accepted or the batch's deadline passes; failures that cannot be recovered
are handed to an error reporter.

Usage:
    from kayvee import Shipper, ShipperConfig, setup_logging

    # Option 1: Behind standard logging (recommended)
    shipper = Shipper(ShipperConfig(environment="production", db_name="events", region="us-west-2"))
    setup_logging(shipper)

    import logging
    logging.getLogger(__name__).info("payment-processed", extra={"user_id": "u123"})

    # Option 2: Direct API
    shipper = Shipper(ShipperConfig(stream_name="events", backend="kinesis", region="us-west-2"))
    shipper.write({"user_id": "u123", "partition_key": "u123"})
    shipper.close()  # Drain everything still buffered
"""

import atexit
import logging
import os
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .buffer import BatchBuffer
from .errors import ConfigurationError, DrainTimeoutError, SendTimeoutError, ShipperClosedError
from .formatting import KayveeFormatter
from .records import Record, encode_record
from .resilience import BackoffConfig, Retrier, send_batch
from .scheduler import FlushScheduler
from .sinks import Sink, create_sink

logger = logging.getLogger(__name__)

# Default max time an entry may wait in the buffer before its batch is sent
DEFAULT_MAX_STALENESS = 10 * 60.0

# Default time a flush thread keeps retrying before giving up on its batch
DEFAULT_SEND_TIMEOUT = 60.0

SEND_BATCH_ERROR_EVENT = "send-batch-error"

ErrorReporter = Callable[[dict[str, Any]], None]

# Marks the threads that deliver batches; anything they log is about shipping
_delivery = threading.local()


def log_error_event(event: dict[str, Any]):
    """Default error reporter: log the event through standard logging."""
    logger.error(f"{event['event']}: stream={event['stream']} error={event['error']}", extra={"kv": event})


class ShipperState(Enum):
    """Shipper lifecycle states."""

    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True)
class ShipperConfig:
    """Configuration for a Shipper."""

    # Destination: either stream_name, or db_name within environment
    stream_name: str | None = None
    db_name: str | None = None
    environment: str | None = None

    # Delivery: an injected sink, or a backend built in region
    sink: Sink | None = None
    region: str | None = None
    backend: str = "firehose"  # firehose, kinesis
    endpoint_url: str | None = None

    # Batching; zero means the sink's service limit
    max_batch_records: int = 0
    max_batch_bytes: int = 0
    max_staleness: float = DEFAULT_MAX_STALENESS

    # Retrying
    send_timeout: float = DEFAULT_SEND_TIMEOUT
    retry: BackoffConfig = field(default_factory=BackoffConfig)

    error_reporter: ErrorReporter | None = None

    def resolve_stream(self) -> str:
        """Destination stream name, validating the naming options."""
        if self.db_name and self.stream_name:
            raise ConfigurationError("cannot specify both db_name and stream_name in shipper config")
        if not self.db_name and not self.stream_name:
            raise ConfigurationError("must specify either db_name or stream_name in shipper config")
        if self.stream_name:
            return self.stream_name
        if not self.environment:
            raise ConfigurationError("environment is required when shipping to a db_name")
        return f"{self.environment}--{self.db_name}"


class Shipper:
    """
    Batched stream shipper for kayvee logs.

    Thread-safe: any number of threads may call ``write``. ``close`` drains
    every buffered and in-flight batch before returning.
    """

    def __init__(self, config: ShipperConfig):
        """
        Initialize the Shipper and start its flush scheduler.

        Raises:
            ConfigurationError: If the destination or delivery settings are invalid.
        """
        self.config = config
        self.stream = config.resolve_stream()

        if config.max_staleness <= 0:
            raise ConfigurationError("max_staleness must be positive")
        if config.send_timeout <= 0:
            raise ConfigurationError("send_timeout must be positive")

        if config.sink is not None:
            self._sink = config.sink
            self._owns_sink = False
        elif config.region:
            self._sink = create_sink(config.backend, config.region, config.endpoint_url)
            self._owns_sink = True
        else:
            raise ConfigurationError("must provide a sink or region in shipper config")

        self.max_batch_records = _clamp(config.max_batch_records, self._sink.max_batch_records)
        self.max_batch_bytes = _clamp(config.max_batch_bytes, self._sink.max_batch_bytes)

        self._report_error = config.error_reporter or log_error_event
        self._retrier = Retrier(config.retry)
        self._buffer = BatchBuffer(self.max_batch_records, self.max_batch_bytes)

        self._state = ShipperState.OPEN
        self._state_lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._inflight = 0
        self._inflight_cond = threading.Condition()

        # Stats
        self._stats_lock = threading.Lock()
        self._sent_count = 0
        self._failed_count = 0
        self._batches_sent = 0
        self._batches_failed = 0
        self._last_error: str | None = None

        self._scheduler = FlushScheduler(
            config.max_staleness,
            self.flush,
            name=f"kayvee-flush-{self.stream}",
        )
        self._scheduler.start()

        atexit.register(self.close)
        logger.info(
            f"Shipper for {self.stream} started "
            f"(max_records={self.max_batch_records}, max_bytes={self.max_batch_bytes}, "
            f"max_staleness={config.max_staleness}s)"
        )

    @property
    def state(self) -> ShipperState:
        return self._state

    @property
    def in_flight(self) -> int:
        """Number of batches currently being delivered."""
        with self._inflight_cond:
            return self._inflight

    @property
    def max_staleness(self) -> float:
        return self._scheduler.interval

    def set_max_staleness(self, seconds: float):
        """Change how long entries may wait before their batch is sent."""
        self._scheduler.interval = seconds

    def write(self, payload: bytes | str | Mapping[str, Any]) -> int:
        """
        Buffer one formatted log entry.

        Returns immediately; delivery happens on a background thread.

        Returns:
            Number of encoded bytes buffered.

        Raises:
            EncodingError: If the entry cannot be decoded or re-encoded.
            ShipperClosedError: If the shipper is closing or closed.
        """
        # Closed shippers refuse writes before looking at the payload
        if self._state is not ShipperState.OPEN:
            raise self._closed_error()

        record = encode_record(payload, with_partition_key=self._sink.uses_partition_keys)
        with self._state_lock:
            if self._state is not ShipperState.OPEN:
                raise self._closed_error()
            should_flush = self._buffer.add(record)

        if should_flush:
            self.flush()
        return len(record.data)

    def _closed_error(self) -> ShipperClosedError:
        return ShipperClosedError(f"shipper for {self.stream} is {self._state.value}")

    def flush(self):
        """Hand every buffered batch to a delivery thread without waiting."""
        self._scheduler.touch()
        with self._inflight_cond:
            batches = self._buffer.take_snapshot()
            self._inflight += len(batches)

        for batch in batches:
            logger.debug(f"Flushing {len(batch)} records to {self.stream}")
            thread = threading.Thread(
                target=self._send,
                args=(batch, time.monotonic() + self.config.send_timeout),
                name=f"kayvee-send-{self.stream}",
                daemon=True,
            )
            thread.start()

    def _send(self, batch: list[Record], deadline: float):
        """Deliver one batch; runs on its own thread."""
        _delivery.active = True
        try:
            send_batch(batch, self._sink, self.stream, deadline, self._retrier)
        except Exception as e:
            with self._stats_lock:
                self._failed_count += e.remaining if isinstance(e, SendTimeoutError) else len(batch)
                self._batches_failed += 1
                self._last_error = str(e)
            try:
                self._report_error({"event": SEND_BATCH_ERROR_EVENT, "stream": self.stream, "error": str(e)})
            except Exception as report_error:
                logger.warning(f"Error reporter failed: {report_error}")
        else:
            with self._stats_lock:
                self._sent_count += len(batch)
                self._batches_sent += 1
        finally:
            with self._inflight_cond:
                self._inflight -= 1
                if self._inflight == 0:
                    self._inflight_cond.notify_all()

    def close(self, timeout: float | None = None):
        """
        Stop the scheduler, flush what is buffered and wait for delivery.

        Safe to call more than once and from several threads; every caller
        waits for the drain.

        Args:
            timeout: Seconds to wait for in-flight batches (None waits until
                each batch succeeds or reaches its own deadline)

        Raises:
            DrainTimeoutError: If ``timeout`` elapsed before delivery finished.
        """
        # Later callers must not start waiting before the final flush is in flight
        with self._close_lock:
            with self._state_lock:
                first_close = self._state is ShipperState.OPEN
                if first_close:
                    self._state = ShipperState.CLOSING

            if first_close:
                atexit.unregister(self.close)
                self._scheduler.stop()
                self.flush()

        with self._inflight_cond:
            drained = self._inflight_cond.wait_for(lambda: self._inflight == 0, timeout)
        if not drained:
            raise DrainTimeoutError(f"{self.in_flight} batches still in flight for {self.stream}")

        with self._state_lock:
            just_closed = self._state is ShipperState.CLOSING
            self._state = ShipperState.CLOSED

        if just_closed:
            if self._owns_sink:
                self._sink.close()
            logger.info(f"Shipper for {self.stream} closed. Stats: {self.get_stats()}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def get_stats(self) -> dict:
        """Get delivery statistics."""
        with self._stats_lock:
            stats = {
                "stream": self.stream,
                "state": self._state.value,
                "sent_count": self._sent_count,
                "failed_count": self._failed_count,
                "batches_sent": self._batches_sent,
                "batches_failed": self._batches_failed,
                "last_error": self._last_error,
            }
        stats["buffered_records"] = len(self._buffer)
        stats["in_flight"] = self.in_flight
        return stats


def _clamp(override: int | None, ceiling: int) -> int:
    """Apply a size override, never exceeding the service ceiling."""
    if not override or override <= 0:
        return ceiling
    return min(override, ceiling)


def _not_about_shipping(record: logging.LogRecord) -> bool:
    """
    Drop records that would feed back into the shipper.

    That is anything from this package, and anything logged on a delivery
    thread, such as the HTTP or AWS client reporting the request it just
    made for a batch.
    """
    if record.name.partition(".")[0] == __package__:
        return False
    return not getattr(_delivery, "active", False)


class ShipperHandler(logging.Handler):
    """
    Python logging handler that ships records through a Shipper.

    Records are rendered with KayveeFormatter unless another formatter is
    set; the shipper strips the logger's bookkeeping keys, so only the
    ``extra`` data reaches the stream.
    """

    def __init__(self, shipper: Shipper, level: int = logging.INFO):
        super().__init__(level=level)
        self.shipper = shipper
        self.setFormatter(KayveeFormatter())
        self.addFilter(_not_about_shipping)

    def emit(self, record: logging.LogRecord):
        """Emit a log record."""
        try:
            self.shipper.write(self.format(record))
        except Exception:
            self.handleError(record)


def setup_logging(
    shipper: Shipper,
    target: logging.Logger | None = None,
    level: int = logging.INFO,
    source: str | None = None,
    context: Mapping[str, Any] | None = None,
) -> ShipperHandler:
    """
    Route a logger's records to ``shipper``.

    Args:
        shipper: Shipper to write to
        target: Logger to attach to (default: root logger)
        level: Minimum level to ship
        source: Source name for formatted entries (default: logger name)
        context: Global fields added to every entry

    Returns:
        The attached handler.
    """
    handler = ShipperHandler(shipper, level=level)
    handler.setFormatter(KayveeFormatter(source=source, context=context))

    target = target or logging.getLogger()
    target.addHandler(handler)
    if target.level == logging.NOTSET or target.level > level:
        target.setLevel(level)

    return handler


def from_env(
    db_name: str | None = None,
    stream_name: str | None = None,
    environ: Mapping[str, str] | None = None,
    **config_kwargs: Any,
) -> Shipper:
    """
    Create a Shipper from environment variables.

    Environment variables:
        KAYVEE_STREAM_NAME: Stream name (used if neither name is passed)
        _DEPLOY_ENV: Environment prefix for db_name streams
        _POD_REGION: AWS region (used if no sink or region is passed)

    Raises:
        ConfigurationError: If required values are missing.
    """
    environ = os.environ if environ is None else environ

    if not db_name and not stream_name:
        stream_name = environ.get("KAYVEE_STREAM_NAME")
    if db_name and not config_kwargs.get("environment"):
        config_kwargs["environment"] = environ.get("_DEPLOY_ENV")
        if not config_kwargs["environment"]:
            raise ConfigurationError("env could not be set (either pass in explicit environment, or set _DEPLOY_ENV)")
    if config_kwargs.get("sink") is None and not config_kwargs.get("region"):
        config_kwargs["region"] = environ.get("_POD_REGION")

    return Shipper(ShipperConfig(db_name=db_name, stream_name=stream_name, **config_kwargs))
