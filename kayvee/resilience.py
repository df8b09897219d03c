"""
Retry patterns for the kayvee shipper.

Provides exponential backoff, an error classifier deciding which sink
failures are worth retrying, and the batch delivery loop that narrows a
batch down to its rejected records until everything is accepted or the
deadline passes.

Usage:
    from kayvee.resilience import BackoffConfig, Retrier, send_batch

    retrier = Retrier(BackoffConfig(initial_delay=0.1, max_retries=5))
    send_batch(records, sink, "prod--events", time.monotonic() + 60, retrier)
"""

import logging
import random
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from .errors import RetriesExhaustedError, SendTimeoutError, SinkError, TransportError
from .records import Record
from .sinks import Sink

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Action(Enum):
    """What to do with the outcome of an attempt."""

    SUCCEED = "succeed"
    RETRY = "retry"
    FAIL = "fail"


@dataclass
class BackoffConfig:
    """Configuration for exponential backoff."""

    initial_delay: float = 0.1  # Starting delay in seconds
    max_delay: float = 300.0  # Maximum delay (5 minutes)
    multiplier: float = 2.0  # Exponential multiplier
    jitter: float = 0.0  # Random jitter factor (0-1)
    max_retries: int = 5  # Retries after the first attempt

    def delay(self, attempt: int) -> float:
        """Sleep before retry number ``attempt`` (0-based), capped and jittered."""
        delay = min(self.initial_delay * (self.multiplier**attempt), self.max_delay)
        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay += random.uniform(-jitter_range, jitter_range)
        return max(0, delay)


class RequestErrorClassifier:
    """
    Retry connection-level failures, fail fast on everything else.

    Sinks translate their client library's connection errors into
    TransportError; a bare ConnectionError (reset by peer, refused) is
    treated the same way.
    """

    retryable: tuple[type[BaseException], ...] = (TransportError, ConnectionError)

    def classify(self, error: BaseException | None) -> Action:
        if error is None:
            return Action.SUCCEED
        if isinstance(error, self.retryable):
            return Action.RETRY
        return Action.FAIL


class Retrier:
    """
    Runs a callable, retrying classified-retryable errors with backoff.

    Every call to ``run`` starts a fresh backoff sequence.
    """

    def __init__(
        self,
        config: BackoffConfig | None = None,
        classifier: RequestErrorClassifier | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or BackoffConfig()
        self.classifier = classifier or RequestErrorClassifier()
        self._sleep = sleep
        self._clock = clock

    def run(self, work: Callable[[], T], deadline: float | None = None) -> T:
        """
        Call ``work`` until it succeeds, fails fatally, or retries run out.

        Args:
            work: Zero-argument callable to attempt
            deadline: Optional clock value after which no retry is started

        Raises:
            RetriesExhaustedError: Retryable errors persisted; chained to the last one.
            Exception: Any error the classifier marks as fatal, unchanged.
        """
        attempt = 0

        while True:
            attempt += 1
            try:
                return work()
            except Exception as e:
                if self.classifier.classify(e) is not Action.RETRY:
                    raise
                if attempt > self.config.max_retries:
                    raise RetriesExhaustedError(attempt) from e

                delay = self.config.delay(attempt - 1)
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        raise RetriesExhaustedError(attempt, "deadline reached while retrying") from e
                    delay = min(delay, remaining)

                logger.warning(f"Retryable sink error (attempt {attempt}), retrying in {delay:.2f}s: {e}")
                self._sleep(delay)

    def pause(self, deadline: float):
        """Wait one base delay between runs, never past ``deadline``."""
        remaining = deadline - self._clock()
        if remaining > 0:
            self._sleep(min(self.config.initial_delay, remaining))


def send_batch(
    batch: Sequence[Record],
    sink: Sink,
    stream: str,
    deadline: float,
    retrier: Retrier | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """
    Deliver a batch, resending rejected records until none remain.

    Args:
        batch: Records to deliver, in order
        sink: Destination capability
        stream: Stream or delivery stream name
        deadline: ``clock()`` value after which delivery is abandoned
        retrier: Retry policy wrapped around each sink call

    Raises:
        SendTimeoutError: The deadline passed with records still unsent.
        SinkError: The sink failed in a way that must not be retried.
    """
    batch = list(batch)
    if not batch:
        return

    retrier = retrier or Retrier(clock=clock)
    last_error: Exception | None = None

    while clock() < deadline:
        try:
            outcomes = retrier.run(lambda: sink.put_batch(stream, batch), deadline=deadline)
        except RetriesExhaustedError as e:
            last_error = e.__cause__ or e
            retrier.pause(deadline)
            continue

        if len(outcomes) != len(batch):
            raise SinkError(f"sink returned {len(outcomes)} outcomes for {len(batch)} records")

        rejected = [record for record, outcome in zip(batch, outcomes) if not outcome.ok]
        if not rejected:
            return

        codes = sorted({outcome.error_code for outcome in outcomes if not outcome.ok})
        logger.warning(f"{len(rejected)}/{len(batch)} records rejected by {stream} ({', '.join(codes)}), resending")
        last_error = None
        batch = rejected

    raise SendTimeoutError(len(batch), last_error)
