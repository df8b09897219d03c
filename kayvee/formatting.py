"""
Kayvee formatting: structured log entries as single-line JSON.

Usage:
    import logging
    from kayvee.formatting import KayveeFormatter

    handler = logging.StreamHandler()
    handler.setFormatter(KayveeFormatter(source="my-service"))
    logging.getLogger().addHandler(handler)

    logging.getLogger(__name__).info("payment-processed", extra={"amount": 99})
"""

import json
import logging
import os
from collections.abc import Mapping
from typing import Any

# Environment variables describing where the process runs, and the key
# each one is logged under.
CONTEXT_ENV_VARS = {
    "deploy_env": ("_DEPLOY_ENV", "DEPLOY_ENV"),
    "wf_id": ("_EXECUTION_NAME",),
    "pod-id": ("_POD_ID",),
    "pod-shortname": ("_POD_SHORTNAME",),
    "pod-region": ("_POD_REGION",),
    "pod-account": ("_POD_ACCOUNT",),
}

LEVEL_NAMES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warning",
    logging.ERROR: "error",
    logging.CRITICAL: "critical",
}

# LogRecord attributes that are not user data
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}


def context_from_env(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Collect deployment context (environment, workflow, pod) from env vars."""
    environ = os.environ if environ is None else environ
    context = {}
    for key, names in CONTEXT_ENV_VARS.items():
        for name in names:
            if environ.get(name):
                context[key] = environ[name]
                break
    return context


def format_kv(data: Mapping[str, Any], context: Mapping[str, Any] | None = None) -> str:
    """
    Render ``data`` as a compact JSON object.

    Context values fill in keys missing from ``data``. A value that cannot
    be serialized is replaced by a description of the failure instead of
    dropping the whole line.
    """
    entry = {**(context or {}), **data}
    try:
        return json.dumps(entry, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError):
        for key, value in entry.items():
            try:
                json.dumps(value, allow_nan=False)
            except (TypeError, ValueError) as e:
                entry[key] = f"Error marshaling value in map, err: {e}, value: {value!r}"
        return json.dumps(entry, separators=(",", ":"), default=str)


def format_log(
    source: str,
    level: str,
    title: str,
    data: Mapping[str, Any] | None = None,
    context: Mapping[str, Any] | None = None,
) -> str:
    """Like format_kv, with the reserved source/level/title keys set."""
    entry = dict(data or {})
    entry["source"] = source
    entry["level"] = level
    entry["title"] = title
    return format_kv(entry, context)


def record_data(record: logging.LogRecord) -> dict[str, Any]:
    """Extract the ``extra`` fields attached to a log record."""
    return {key: value for key, value in record.__dict__.items() if key not in _RECORD_ATTRS}


class KayveeFormatter(logging.Formatter):
    """
    Formats log records as kayvee JSON lines.

    The record message becomes the title, ``extra`` fields become data,
    and the logger name is the source unless one is given.
    """

    def __init__(self, source: str | None = None, context: Mapping[str, Any] | None = None):
        super().__init__()
        self.source = source
        self.context = dict(context or {})

    def format(self, record: logging.LogRecord) -> str:
        data = record_data(record)
        if record.exc_info:
            data.setdefault("error", self.formatException(record.exc_info))
        level = LEVEL_NAMES.get(record.levelno, record.levelname.lower())
        return format_log(
            self.source or record.name,
            level,
            record.getMessage(),
            data,
            self.context,
        )
