"""
Batch sinks: the remote delivery side of the kayvee shipper.

A sink takes an ordered batch of records and reports, per record, whether
the destination accepted it. Whole-call failures are raised as
TransportError (safe to retry) or SinkError (not safe to retry).
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import boto3
import httpx
from botocore.exceptions import ConnectionError as BotoConnectionError
from botocore.exceptions import HTTPClientError

from .errors import ConfigurationError, SinkError, TransportError
from .records import Record

logger = logging.getLogger(__name__)

# AWS limits for PutRecordBatch.
# https://docs.aws.amazon.com/firehose/latest/APIReference/API_PutRecordBatch.html
FIREHOSE_MAX_BATCH_RECORDS = 500
FIREHOSE_MAX_BATCH_BYTES = 4_000_000

# AWS limits for PutRecords.
# https://docs.aws.amazon.com/kinesis/latest/APIReference/API_PutRecords.html
KINESIS_MAX_BATCH_RECORDS = 500
KINESIS_MAX_BATCH_BYTES = 5_000_000

_BOTO_TRANSPORT_ERRORS = (BotoConnectionError, HTTPClientError)

# Characters that cannot appear in an environment variable name
_NOT_ENV_VAR_CHARS = re.compile(r"[^a-zA-Z0-9_]+")


@dataclass(frozen=True)
class RecordOutcome:
    """Result of delivering one record; no error code means accepted."""

    error_code: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_code is None


ACCEPTED = RecordOutcome()


class Sink(ABC):
    """
    Abstract base class for batch sinks.

    Implementations must be safe to call from several flush threads at
    once and must return one outcome per input record, in input order.
    """

    # Service ceilings; shipper overrides are clamped to these
    max_batch_records: int = FIREHOSE_MAX_BATCH_RECORDS
    max_batch_bytes: int = FIREHOSE_MAX_BATCH_BYTES

    # Whether records need a partition key before they reach this sink
    uses_partition_keys: bool = False

    @abstractmethod
    def put_batch(self, stream: str, records: Sequence[Record]) -> list[RecordOutcome]:
        """Deliver ``records`` to ``stream``."""
        ...

    def close(self):
        """Release client resources."""
        pass


def _env_var_part(value: str) -> str:
    return _NOT_ENV_VAR_CHARS.sub("_", value).upper()


def resolve_endpoint(service: str, region: str, environ: Mapping[str, str] | None = None) -> str:
    """
    Endpoint URL for an AWS service in a region.

    ``AWS_<SERVICE>_<REGION>_ENDPOINT`` (e.g. AWS_KINESIS_US_WEST_1_ENDPOINT)
    overrides the public endpoint, typically to route through a VPC endpoint.
    """
    environ = os.environ if environ is None else environ
    override = environ.get(f"AWS_{_env_var_part(service)}_{_env_var_part(region)}_ENDPOINT")
    if override:
        return override
    return f"https://{service}.{region}.amazonaws.com"


def _outcomes(entries: list[dict[str, Any]]) -> list[RecordOutcome]:
    return [
        RecordOutcome(entry.get("ErrorCode"), entry.get("ErrorMessage")) if entry.get("ErrorCode") else ACCEPTED
        for entry in entries
    ]


class FirehoseSink(Sink):
    """Delivers batches with Kinesis Data Firehose PutRecordBatch."""

    max_batch_records = FIREHOSE_MAX_BATCH_RECORDS
    max_batch_bytes = FIREHOSE_MAX_BATCH_BYTES

    def __init__(self, client: Any = None, region: str | None = None, endpoint_url: str | None = None):
        if client is None:
            if not region:
                raise ConfigurationError("must provide a firehose client or region")
            client = boto3.client(
                "firehose",
                region_name=region,
                endpoint_url=endpoint_url or resolve_endpoint("firehose", region),
            )
        self.client = client

    def put_batch(self, stream: str, records: Sequence[Record]) -> list[RecordOutcome]:
        try:
            response = self.client.put_record_batch(
                DeliveryStreamName=stream,
                Records=[{"Data": record.data} for record in records],
            )
        except _BOTO_TRANSPORT_ERRORS as e:
            raise TransportError(str(e)) from e

        if not response.get("FailedPutCount"):
            return [ACCEPTED] * len(records)
        return _outcomes(response.get("RequestResponses", []))


class KinesisSink(Sink):
    """Delivers batches with Kinesis Data Streams PutRecords."""

    max_batch_records = KINESIS_MAX_BATCH_RECORDS
    max_batch_bytes = KINESIS_MAX_BATCH_BYTES
    uses_partition_keys = True

    def __init__(self, client: Any = None, region: str | None = None, endpoint_url: str | None = None):
        if client is None:
            if not region:
                raise ConfigurationError("must provide a kinesis client or region")
            client = boto3.client(
                "kinesis",
                region_name=region,
                endpoint_url=endpoint_url or resolve_endpoint("kinesis", region),
            )
        self.client = client

    def put_batch(self, stream: str, records: Sequence[Record]) -> list[RecordOutcome]:
        entries = []
        for record in records:
            if record.partition_key is None:
                raise SinkError("kinesis records require a partition key")
            entries.append({"Data": record.data, "PartitionKey": record.partition_key})

        try:
            response = self.client.put_records(StreamName=stream, Records=entries)
        except _BOTO_TRANSPORT_ERRORS as e:
            raise TransportError(str(e)) from e

        if not response.get("FailedRecordCount"):
            return [ACCEPTED] * len(records)
        return _outcomes(response.get("Records", []))


class HttpSink(Sink):
    """
    Delivers batches as NDJSON to an HTTP ingest endpoint.

    The endpoint accepts or refuses a batch as a whole. Rate limiting and
    server errors are retried; authentication and other client errors are
    not.
    """

    def __init__(
        self,
        endpoint: str,
        token: str | None = None,
        timeout: float = 10.0,
        max_batch_records: int = FIREHOSE_MAX_BATCH_RECORDS,
        max_batch_bytes: int = FIREHOSE_MAX_BATCH_BYTES,
        client: httpx.Client | None = None,
    ):
        if not endpoint:
            raise ConfigurationError("HttpSink requires an endpoint")
        self.endpoint = endpoint
        self.max_batch_records = max_batch_records
        self.max_batch_bytes = max_batch_bytes

        headers = {"Content-Type": "application/x-ndjson"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._headers = headers
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def put_batch(self, stream: str, records: Sequence[Record]) -> list[RecordOutcome]:
        try:
            response = self._client.post(
                self.endpoint,
                content=b"".join(record.data for record in records),
                headers={**self._headers, "X-Stream-Name": stream},
            )
        except httpx.TransportError as e:
            raise TransportError(str(e)) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransportError(f"HTTP {response.status_code}: {response.reason_phrase}")
        if response.status_code >= 300:
            raise SinkError(f"HTTP {response.status_code}: {response.reason_phrase}")

        return [ACCEPTED] * len(records)

    def close(self):
        if self._owns_client:
            self._client.close()


SINK_BACKENDS: dict[str, type[Sink]] = {
    "firehose": FirehoseSink,
    "kinesis": KinesisSink,
}


def create_sink(backend: str, region: str, endpoint_url: str | None = None) -> Sink:
    """Build an AWS sink for ``backend`` ("firehose" or "kinesis") in ``region``."""
    sink_class = SINK_BACKENDS.get(backend)
    if sink_class is None:
        raise ConfigurationError(f"unknown sink backend {backend!r} (expected one of {sorted(SINK_BACKENDS)})")
    logger.info(f"Creating {backend} sink in {region}")
    return sink_class(region=region, endpoint_url=endpoint_url)
