"""Pytest configuration and shared fixtures for kayvee tests."""

from __future__ import annotations

from collections.abc import Generator

import pytest

from kayvee import BackoffConfig, Shipper, ShipperConfig
from mocks import ErrorCollector, FakeSink


@pytest.fixture
def fake_sink() -> FakeSink:
    """A sink that accepts everything unless scripted otherwise."""
    return FakeSink()


@pytest.fixture
def kinesis_like_sink() -> FakeSink:
    """A sink that requires partition keys."""
    return FakeSink(uses_partition_keys=True, max_batch_bytes=5_000_000)


@pytest.fixture
def errors() -> ErrorCollector:
    """Collects events passed to a shipper's error reporter."""
    return ErrorCollector()


@pytest.fixture
def fast_retry() -> BackoffConfig:
    """Backoff short enough for tests."""
    return BackoffConfig(initial_delay=0.01, max_delay=0.05, max_retries=2)


@pytest.fixture
def make_shipper(fake_sink, errors, fast_retry) -> Generator:
    """Factory for shippers that are closed at teardown."""
    shippers: list[Shipper] = []

    def factory(**overrides) -> Shipper:
        options = {
            "stream_name": "test-stream",
            "sink": fake_sink,
            "max_staleness": 3600,
            "retry": fast_retry,
            "error_reporter": errors,
            **overrides,
        }
        shipper = Shipper(ShipperConfig(**options))
        shippers.append(shipper)
        return shipper

    yield factory

    for shipper in shippers:
        shipper.close(timeout=10)


@pytest.fixture
def sample_entry() -> dict:
    """Return a formatted log entry as the logger would produce it."""
    return {
        "source": "test-service",
        "level": "info",
        "title": "payment-processed",
        "deploy_env": "testing",
        "wf_id": "wf-123",
        "user_id": "u123",
        "amount": 99.99,
    }
