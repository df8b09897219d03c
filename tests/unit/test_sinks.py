"""Tests for the Firehose, Kinesis and HTTP sinks."""

import json
from unittest.mock import MagicMock

import boto3
import httpx
import pytest
from botocore.exceptions import EndpointConnectionError
from botocore.stub import Stubber

from kayvee.errors import ConfigurationError, SinkError, TransportError
from kayvee.records import Record
from kayvee.sinks import (
    ACCEPTED,
    FirehoseSink,
    HttpSink,
    KinesisSink,
    create_sink,
    resolve_endpoint,
)


def aws_client(service: str):
    return boto3.client(
        service,
        region_name="us-west-2",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def firehose_client():
    client = aws_client("firehose")
    with Stubber(client) as stubber:
        yield client, stubber
        stubber.assert_no_pending_responses()


@pytest.fixture
def kinesis_client():
    client = aws_client("kinesis")
    with Stubber(client) as stubber:
        yield client, stubber
        stubber.assert_no_pending_responses()


class TestResolveEndpoint:
    """Tests for resolve_endpoint."""

    def test_default_endpoint(self):
        """Without an override the public endpoint is used."""
        assert resolve_endpoint("kinesis", "us-west-1", environ={}) == "https://kinesis.us-west-1.amazonaws.com"

    def test_environment_override(self):
        """AWS_<SERVICE>_<REGION>_ENDPOINT wins."""
        environ = {"AWS_FIREHOSE_US_WEST_1_ENDPOINT": "https://vpce-123.firehose.internal"}
        assert resolve_endpoint("firehose", "us-west-1", environ=environ) == "https://vpce-123.firehose.internal"

    def test_override_name_normalizes_characters(self):
        """Dashes and dots become underscores, letters are upper-cased."""
        environ = {"AWS_S3_EU_CENTRAL_1_ENDPOINT": "http://localhost:4566"}
        assert resolve_endpoint("s3", "eu-central-1", environ=environ) == "http://localhost:4566"

    def test_empty_override_ignored(self):
        """An empty variable falls back to the default."""
        environ = {"AWS_KINESIS_US_EAST_1_ENDPOINT": ""}
        assert resolve_endpoint("kinesis", "us-east-1", environ=environ) == "https://kinesis.us-east-1.amazonaws.com"


class TestFirehoseSink:
    """Tests for FirehoseSink."""

    def test_service_limits(self):
        """Firehose ceilings are 500 records and 4,000,000 bytes."""
        assert FirehoseSink.max_batch_records == 500
        assert FirehoseSink.max_batch_bytes == 4_000_000
        assert FirehoseSink.uses_partition_keys is False

    def test_requires_client_or_region(self):
        """Without a client there must be a region to build one."""
        with pytest.raises(ConfigurationError):
            FirehoseSink()

    def test_builds_client_from_region(self):
        """A region is enough to create the boto3 client."""
        sink = FirehoseSink(region="us-west-2")
        assert sink.client.meta.region_name == "us-west-2"
        assert sink.client.meta.endpoint_url == "https://firehose.us-west-2.amazonaws.com"

    def test_put_batch_success(self, firehose_client):
        """Records are sent as Data blobs to the delivery stream."""
        client, stubber = firehose_client
        stubber.add_response(
            "put_record_batch",
            {"FailedPutCount": 0, "RequestResponses": [{"RecordId": "r1"}]},
            {"DeliveryStreamName": "testenv--testdb", "Records": [{"Data": b'{"foo":"bar"}\n'}]},
        )

        outcomes = FirehoseSink(client=client).put_batch("testenv--testdb", [Record(data=b'{"foo":"bar"}\n')])

        assert outcomes == [ACCEPTED]

    def test_put_batch_partial_failure(self, firehose_client):
        """Per-record error codes become failed outcomes in order."""
        client, stubber = firehose_client
        stubber.add_response(
            "put_record_batch",
            {
                "FailedPutCount": 1,
                "RequestResponses": [
                    {"ErrorCode": "ServiceUnavailableException", "ErrorMessage": "Slow down."},
                    {"RecordId": "r2"},
                ],
            },
        )

        outcomes = FirehoseSink(client=client).put_batch(
            "stream", [Record(data=b"a\n"), Record(data=b"b\n")]
        )

        assert [outcome.ok for outcome in outcomes] == [False, True]
        assert outcomes[0].error_code == "ServiceUnavailableException"

    def test_service_error_is_fatal(self, firehose_client):
        """API errors are not transport errors and are raised unchanged."""
        client, stubber = firehose_client
        stubber.add_client_error("put_record_batch", service_error_code="ResourceNotFoundException")

        with pytest.raises(Exception) as exc_info:
            FirehoseSink(client=client).put_batch("missing", [Record(data=b"a\n")])
        assert not isinstance(exc_info.value, TransportError)

    def test_connection_error_is_transport_error(self):
        """Connection failures are translated to retryable errors."""
        client = MagicMock()
        client.put_record_batch.side_effect = EndpointConnectionError(endpoint_url="https://firehose")

        with pytest.raises(TransportError):
            FirehoseSink(client=client).put_batch("stream", [Record(data=b"a\n")])


class TestKinesisSink:
    """Tests for KinesisSink."""

    def test_service_limits(self):
        """Kinesis ceilings are 500 records and 5,000,000 bytes, keyed by partition."""
        assert KinesisSink.max_batch_records == 500
        assert KinesisSink.max_batch_bytes == 5_000_000
        assert KinesisSink.uses_partition_keys is True

    def test_put_batch_sends_partition_keys(self, kinesis_client):
        """Each entry carries its data and partition key."""
        client, stubber = kinesis_client
        stubber.add_response(
            "put_records",
            {"FailedRecordCount": 0, "Records": [{"SequenceNumber": "1", "ShardId": "shardId-000000000000"}]},
            {
                "StreamName": "testenv--testdb",
                "Records": [{"Data": b'{"foo":"bar"}\n', "PartitionKey": "1"}],
            },
        )

        outcomes = KinesisSink(client=client).put_batch(
            "testenv--testdb", [Record(data=b'{"foo":"bar"}\n', partition_key="1")]
        )

        assert outcomes == [ACCEPTED]

    def test_put_batch_partial_failure(self, kinesis_client):
        """Throttled records are reported as failures."""
        client, stubber = kinesis_client
        stubber.add_response(
            "put_records",
            {
                "FailedRecordCount": 1,
                "Records": [
                    {"SequenceNumber": "1", "ShardId": "shardId-000000000000"},
                    {"ErrorCode": "ProvisionedThroughputExceededException", "ErrorMessage": "Rate exceeded"},
                ],
            },
        )

        outcomes = KinesisSink(client=client).put_batch(
            "stream",
            [Record(data=b"a\n", partition_key="1"), Record(data=b"b\n", partition_key="2")],
        )

        assert [outcome.ok for outcome in outcomes] == [True, False]
        assert outcomes[1].error_message == "Rate exceeded"

    def test_missing_partition_key_is_fatal(self):
        """Kinesis cannot place a record without a key."""
        with pytest.raises(SinkError):
            KinesisSink(client=MagicMock()).put_batch("stream", [Record(data=b"a\n")])

    def test_connection_error_is_transport_error(self):
        """Connection failures are translated to retryable errors."""
        client = MagicMock()
        client.put_records.side_effect = EndpointConnectionError(endpoint_url="https://kinesis")

        with pytest.raises(TransportError):
            KinesisSink(client=client).put_batch("stream", [Record(data=b"a\n", partition_key="1")])


class TestHttpSink:
    """Tests for HttpSink."""

    def make_sink(self, handler, **kwargs) -> HttpSink:
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return HttpSink("https://lens.example/api/v1/logs/ingest", token="svc_test", client=client, **kwargs)

    def test_requires_endpoint(self):
        """An endpoint is mandatory."""
        with pytest.raises(ConfigurationError):
            HttpSink("")

    def test_posts_ndjson(self):
        """The batch is posted as newline-delimited JSON with a bearer token."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"accepted": 2, "rejected": 0, "errors": []})

        sink = self.make_sink(handler)
        outcomes = sink.put_batch("events", [Record(data=b'{"a":1}\n'), Record(data=b'{"b":2}\n')])

        assert outcomes == [ACCEPTED, ACCEPTED]
        request = requests[0]
        assert request.headers["Authorization"] == "Bearer svc_test"
        assert request.headers["Content-Type"] == "application/x-ndjson"
        assert request.headers["X-Stream-Name"] == "events"
        assert [json.loads(line) for line in request.content.splitlines()] == [{"a": 1}, {"b": 2}]

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_retryable_statuses(self, status):
        """Throttling and server errors are transport errors."""
        sink = self.make_sink(lambda request: httpx.Response(status))
        with pytest.raises(TransportError):
            sink.put_batch("events", [Record(data=b"{}\n")])

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_client_errors_are_fatal(self, status):
        """Auth and request errors are not retried."""
        sink = self.make_sink(lambda request: httpx.Response(status))
        with pytest.raises(SinkError):
            sink.put_batch("events", [Record(data=b"{}\n")])

    def test_connection_failure_is_transport_error(self):
        """Network failures are retryable."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        sink = self.make_sink(handler)
        with pytest.raises(TransportError):
            sink.put_batch("events", [Record(data=b"{}\n")])

    def test_custom_limits(self):
        """Limits are configurable per endpoint."""
        sink = self.make_sink(lambda request: httpx.Response(200), max_batch_records=100, max_batch_bytes=1_000_000)
        assert sink.max_batch_records == 100
        assert sink.max_batch_bytes == 1_000_000

    def test_close_leaves_injected_client_open(self):
        """Only clients the sink created are closed by it."""
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        sink = HttpSink("https://lens.example/ingest", client=client)
        sink.close()
        assert not client.is_closed


class TestCreateSink:
    """Tests for create_sink."""

    @pytest.mark.parametrize("backend, sink_class", [("firehose", FirehoseSink), ("kinesis", KinesisSink)])
    def test_builds_backend(self, backend, sink_class):
        """Known backends produce the matching sink."""
        assert isinstance(create_sink(backend, "us-west-2"), sink_class)

    def test_endpoint_url_passed_through(self):
        """An explicit endpoint is used for the client."""
        sink = create_sink("kinesis", "us-west-2", endpoint_url="http://localhost:4566")
        assert sink.client.meta.endpoint_url == "http://localhost:4566"

    def test_unknown_backend(self):
        """Unknown backends are a configuration error."""
        with pytest.raises(ConfigurationError):
            create_sink("pubsub", "us-west-2")
