"""
Structured JSON logging.

Logs go to stdout as one JSON object per line so that the hosting platform's
log collector can index the fields (subject, tool, decision, failure kind).
Structured fields are attached with:

    logger.info("Tool call authorized", extra={"log_data": {"tool": name}})

Bearer tokens are never logged. Only their shape and length are.
"""

import json
import logging
import sys


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Example output:

        {"timestamp": "2026-02-06 10:30:00,123", "level": "WARNING",
         "logger": "tool_gateway.auth", "message": "Token verification failed",
         "kind": "issuer_mismatch"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "log_data"):
            log_entry.update(record.log_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "info") -> None:
    """Install the JSON formatter on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONLogFormatter())

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[handler],
        force=True,
    )
