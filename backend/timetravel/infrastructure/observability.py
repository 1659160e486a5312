"""Structured Logging: JSON formatter and setup for engine observability.

Invariants:
    - All logs include timestamp, level, logger name, and message
    - Extra fields (session_id, timeline_id, branch_id, node_id, reward, ...) surfaced when present
    - JSON format by default, human-readable when log_format != "json"

Design Decisions:
    - JSONFormatter on stdlib logging: no logging dependency for an embeddable core
    - setup_logging called once by runtime.build_time_machine
"""

import logging
import json
from datetime import datetime, timezone


EXTRA_FIELDS: tuple[str, ...] = (
    "session_id", "timeline_id", "branch_id", "node_id", "snapshot_id",
    "error_code", "reward", "attempt", "input_tokens", "output_tokens",
)


class JSONFormatter(logging.Formatter):
    """Format logs as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in EXTRA_FIELDS:
            val = record.__dict__.get(key)
            if val is not None:
                log[key] = str(val) if key.endswith("_id") else val
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, ensure_ascii=False)


def setup_logging(level: str = "INFO", fmt: str = "json"):
    """Configure root logging for the engine."""
    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
        ))
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))
