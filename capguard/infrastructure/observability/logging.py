"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from pythonjsonlogger import jsonlogger

from capguard.config import settings
from capguard.domain.models import AccrualReport, DisbursementReport

logger = logging.getLogger("capguard.reports")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    root = logging.getLogger()
    numeric_level = logging.getLevelName(level.upper())
    root.setLevel(numeric_level if isinstance(numeric_level, int) else logging.INFO)

    # Remove existing handlers
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    handler.setFormatter(formatter)
    root.addHandler(handler)

    # Per-request chatter from the HTTP and RPC libraries
    for noisy in ("httpx", "httpcore", "web3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def log_accrual_report(report: AccrualReport) -> None:
    """Emit accrual counts for the alerting consumer"""
    level = logging.ERROR if report.errors else logging.INFO
    logger.log(
        level,
        "Daily accrual completed",
        extra={"step": "accrual_complete", "error_count": len(report.errors), **report.as_dict()},
    )


def log_disbursement_report(report: DisbursementReport) -> None:
    """Emit settlement pass counts for the alerting consumer"""
    level = logging.ERROR if report.errors else logging.INFO
    logger.log(
        level,
        "Settlement pass completed",
        extra={"step": "settlement_complete", "error_count": len(report.errors), **report.as_dict()},
    )


def log_job_outcome(job_name: str, success: bool, duration_ms: float, error: str | None = None) -> None:
    """Log structured job outcome"""
    logger.log(
        logging.INFO if success else logging.ERROR,
        "Job finished",
        extra={
            "job": job_name,
            "step": "job_complete",
            "outcome": "success" if success else "failure",
            "duration_ms": duration_ms,
            "job_error": error,
        },
    )
