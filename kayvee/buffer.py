"""Size-bounded batch buffer shared by concurrent writers."""

import threading

from .records import Record

# Fraction of the byte ceiling a batch may fill before it is flushed. The
# rest is headroom for per-record protocol overhead added by the sink.
FLUSH_BYTES_RATIO = 0.9


class BatchBuffer:
    """
    Accumulates records into batches under a single lock.

    The open batch never holds more than ``max_records`` records or more
    than ``max_bytes`` bytes. A record that would break either bound seals
    the open batch and starts a new one; sealed batches wait for the next
    snapshot. The lock is only ever held for constant-time work.
    """

    def __init__(self, max_records: int, max_bytes: int):
        if max_records < 1:
            raise ValueError("max_records must be at least 1")
        if max_bytes < 1:
            raise ValueError("max_bytes must be at least 1")

        self.max_records = max_records
        self.max_bytes = max_bytes

        self._lock = threading.Lock()
        self._records: list[Record] = []
        self._bytes = 0
        self._sealed: list[list[Record]] = []
        self._sealed_count = 0

    def add(self, record: Record) -> bool:
        """
        Append a record to the open batch.

        Returns:
            True if a batch is ready and should be flushed now.
        """
        size = len(record.data)

        with self._lock:
            if self._records and (
                len(self._records) >= self.max_records
                or self._bytes + size > self.max_bytes
            ):
                self._seal()

            self._records.append(record)
            self._bytes += size

            return (
                bool(self._sealed)
                or len(self._records) >= self.max_records
                or self._bytes > FLUSH_BYTES_RATIO * self.max_bytes
            )

    def _seal(self):
        """Move the open batch to the sealed list (caller holds the lock)."""
        self._sealed.append(self._records)
        self._sealed_count += len(self._records)
        self._records = []
        self._bytes = 0

    def take_snapshot(self) -> list[list[Record]]:
        """
        Atomically hand over every pending batch and reset the buffer.

        Returns:
            Non-empty batches, oldest first. The buffer keeps no reference
            to them.
        """
        with self._lock:
            batches = self._sealed
            if self._records:
                batches.append(self._records)
            self._sealed = []
            self._sealed_count = 0
            self._records = []
            self._bytes = 0
            return batches

    def __len__(self) -> int:
        with self._lock:
            return self._sealed_count + len(self._records)

    @property
    def size_bytes(self) -> int:
        """Bytes held in the open batch."""
        with self._lock:
            return self._bytes
