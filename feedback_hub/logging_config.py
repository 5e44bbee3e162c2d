"""
Structured logging configuration.

Outputs logs in JSON format for log aggregators when enabled, standard
formatted lines otherwise. Job context (job_id, lane, worker_id) passed via
``extra`` is carried into the JSON payload.
"""

import json
import logging
import sys
from datetime import datetime
from typing import Any, Dict

# Record attributes promoted to top-level JSON fields
CONTEXT_FIELDS = ("job_id", "lane", "worker_id", "attempt", "user_id", "duration_ms")


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per log record.

    Each entry includes timestamp (ISO 8601), level, logger name, message,
    and any job context fields present on the record.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        log_data["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        return json.dumps(log_data, default=str)


def configure_structured_logging(
    level: str = "INFO",
    enable_json: bool = False,
) -> None:
    """
    Configure root logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_json: If True, use JSON format. If False, use standard format.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper()))

    if enable_json:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            fmt="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)


def job_log_context(job) -> Dict[str, Any]:
    """
    Build the ``extra`` mapping for log calls about a job.

    Usage:
        logger.info("Job completed", extra=job_log_context(job))
    """
    return {
        "job_id": job.job_id,
        "lane": job.lane.value,
        "attempt": job.attempts_made,
    }
