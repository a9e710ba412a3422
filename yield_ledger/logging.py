"""Structured logging configuration for yield-ledger.

Ledger code passes the entity a message is about through ``extra=``, e.g.
``logger.info(..., extra={"account_id": ..., "batch_id": ...})``. The JSON
formatter lifts those keys into top-level fields; the standard format shows
the account id between the logger name and the message.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Context keys lifted from ``extra=`` into JSON log lines
LEDGER_FIELDS = (
    "account_id",
    "batch_id",
    "deposit_id",
    "source_identity",
    "period_key",
    "entry_count",
    "removed_count",
    "version",
)

STANDARD_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(account_id)s | %(message)s"


def setup_logging(
    level: str = "INFO",
    format_type: str = "standard",
) -> None:
    """Configure logging for yield-ledger.

    Parameters
    ----------
    level : str
        Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    format_type : str
        Format type: "standard" or "json".
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    if format_type == "json":
        console_handler.setFormatter(JsonFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter(fmt=STANDARD_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        )
        console_handler.addFilter(AccountContextFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(console_handler)

    logging.getLogger("yield_ledger").setLevel(log_level)

    # Reduce noise from external libraries
    logging.getLogger("confluent_kafka").setLevel(logging.WARNING)
    logging.getLogger("psycopg").setLevel(logging.WARNING)
    logging.getLogger("faker").setLevel(logging.WARNING)


class AccountContextFilter(logging.Filter):
    """Give records logged without an account a ``-`` placeholder."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "account_id"):
            record.account_id = "-"
        return True


class JsonFormatter(logging.Formatter):
    """JSON log formatter carrying ledger context fields."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key in LEDGER_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value

        if hasattr(record, "extra"):
            log_data.update(record.extra)

        # Decimal amounts and dates render as their string form
        return json.dumps(log_data, default=str)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name.

    Parameters
    ----------
    name : str
        Logger name (usually __name__).

    Returns
    -------
    logging.Logger
        Configured logger.
    """
    return logging.getLogger(name)
