"""
Record codec for the kayvee shipper.

Turns a formatted kayvee log entry into the bytes that go on the wire,
dropping the bookkeeping fields the logging layer adds and pulling out
an optional partition key.
"""

import json
import random
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .errors import EncodingError

# Fields added by the logger that the destination stream does not need.
IGNORED_FIELDS = ("level", "source", "title", "deploy_env", "wf_id")

# Entries carrying this field use it to pick a shard; it is never shipped.
PARTITION_KEY_FIELD = "partition_key"

_MAX_PARTITION_KEY = 2**63 - 1


def _reject_constant(name: str):
    # NaN and Infinity are not JSON
    raise ValueError(f"invalid JSON constant {name}")


@dataclass(frozen=True)
class Record:
    """A single encoded log entry, ready to be batched."""

    data: bytes
    partition_key: str | None = None

    def __len__(self) -> int:
        return len(self.data)


def generate_partition_key() -> str:
    """Random decimal partition key, spreading entries across shards."""
    return str(random.randint(0, _MAX_PARTITION_KEY))


def decode_entry(payload: bytes | str | Mapping[str, Any]) -> dict[str, Any]:
    """Parse a payload into a mutable dict, whatever form it arrived in."""
    if isinstance(payload, Mapping):
        return dict(payload)

    try:
        entry = json.loads(payload, parse_constant=_reject_constant)
    except (TypeError, ValueError) as e:
        raise EncodingError(f"log entry is not valid JSON: {e}") from e

    if not isinstance(entry, dict):
        raise EncodingError(f"log entry must be a JSON object, got {type(entry).__name__}")
    return entry


def encode_record(
    payload: bytes | str | Mapping[str, Any],
    with_partition_key: bool = False,
) -> Record:
    """
    Build a Record from a formatted log entry.

    Args:
        payload: JSON object as bytes/str, or an already-decoded mapping
        with_partition_key: Generate a key when the entry does not carry one

    Returns:
        Record holding compact, key-sorted JSON terminated by a newline.

    Raises:
        EncodingError: If the payload cannot be decoded or re-encoded.
    """
    entry = decode_entry(payload)

    for name in IGNORED_FIELDS:
        entry.pop(name, None)

    partition_key = entry.pop(PARTITION_KEY_FIELD, None)
    if not isinstance(partition_key, str):
        partition_key = generate_partition_key() if with_partition_key else None

    try:
        data = json.dumps(entry, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
        encoded = (data + "\n").encode("utf-8")
    except (TypeError, ValueError) as e:
        raise EncodingError(f"log entry could not be encoded: {e}") from e

    return Record(data=encoded, partition_key=partition_key)
