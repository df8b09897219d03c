"""
kayvee - structured logging shipped to streams in batches.

This package provides:
- Shipper: Batched, retrying delivery to Firehose, Kinesis or an HTTP endpoint
- sinks: The per-backend delivery adapters
- resilience: Exponential backoff, error classification and the batch send loop
- formatting: Kayvee JSON formatting for standard logging

Usage:
    from kayvee import Shipper, ShipperConfig, setup_logging

    shipper = Shipper(ShipperConfig(environment="production", db_name="events", region="us-west-2"))
    setup_logging(shipper)

    import logging
    logger = logging.getLogger(__name__)
    logger.info("service-started", extra={"version": "1.2.0"})
"""

from .errors import (
    ConfigurationError,
    DrainTimeoutError,
    EncodingError,
    RetriesExhaustedError,
    SendTimeoutError,
    ShipperClosedError,
    ShipperError,
    SinkError,
    TransportError,
)
from .formatting import KayveeFormatter, context_from_env, format_kv, format_log
from .records import Record, encode_record
from .resilience import BackoffConfig, RequestErrorClassifier, Retrier, send_batch
from .shipper import (
    Shipper,
    ShipperConfig,
    ShipperHandler,
    ShipperState,
    from_env,
    setup_logging,
)
from .sinks import FirehoseSink, HttpSink, KinesisSink, RecordOutcome, Sink, create_sink

__all__ = [
    # Shipper
    "Shipper",
    "ShipperConfig",
    "ShipperHandler",
    "ShipperState",
    "setup_logging",
    "from_env",
    # Records and sinks
    "Record",
    "encode_record",
    "Sink",
    "RecordOutcome",
    "FirehoseSink",
    "KinesisSink",
    "HttpSink",
    "create_sink",
    # Resilience
    "BackoffConfig",
    "Retrier",
    "RequestErrorClassifier",
    "send_batch",
    # Formatting
    "KayveeFormatter",
    "format_kv",
    "format_log",
    "context_from_env",
    # Errors
    "ShipperError",
    "ConfigurationError",
    "EncodingError",
    "ShipperClosedError",
    "TransportError",
    "SinkError",
    "RetriesExhaustedError",
    "SendTimeoutError",
    "DrainTimeoutError",
]

__version__ = "1.0.0"
