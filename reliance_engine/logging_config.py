"""
Logging configuration for the Reliance Engine.

Provides structured JSON logging and a typed event logger for the
security-relevant moments of the trust lifecycle.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from pathlib import Path
from typing import Optional

from .util import mask_sensitive, utc_rfc3339

# Libraries whose INFO chatter drowns out engine events
QUIET_LOGGERS = ("apscheduler", "urllib3", "botocore")

request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """One JSON object per line; event fields are merged in at top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": utc_rfc3339(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class EventLogger:
    """
    Specialized logger for reliance events.

    Key material, shards and PII never pass through here. Credential
    tokens are reduced to a masked suffix.
    """

    def __init__(self, name: str = "reliance.events"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, message: str = "", **fields) -> None:
        # stacklevel 3 attributes the record to the engine code that raised the event
        self._logger.log(
            level,
            "%s: %s", event_type, message,
            extra={"extra_fields": {"event_type": event_type, **fields}},
            stacklevel=3,
        )

    def onboarding_accepted(
        self,
        transaction_id: str,
        counterparty_id: str,
        reliance_status: str,
        manual_review_required: bool
    ) -> None:
        level = logging.WARNING if manual_review_required else logging.INFO
        self._log(
            level,
            "ONBOARDING_ACCEPTED",
            transaction_id=transaction_id,
            counterparty_id=counterparty_id,
            reliance_status=reliance_status,
            manual_review_required=manual_review_required,
            message=f"Onboarding {transaction_id} accepted"
        )

    def onboarding_rejected(
        self,
        transaction_id: str,
        counterparty_id: str,
        reason: str
    ) -> None:
        self._log(
            logging.WARNING,
            "ONBOARDING_REJECTED",
            transaction_id=transaction_id,
            counterparty_id=counterparty_id,
            reason=reason,
            message=f"Onboarding {transaction_id} rejected: {reason}"
        )

    def credential_revoked(self, token: str) -> None:
        self._log(
            logging.INFO,
            "CREDENTIAL_REVOKED",
            token_ref=mask_sensitive(token),
            message="Credential added to revocation list"
        )

    def trust_state_changed(
        self,
        counterparty_id: str,
        previous: str,
        current: str,
        reason: str
    ) -> None:
        level = {
            "ACTIVE": logging.INFO,
            "WARNING": logging.WARNING,
            "SUSPENDED": logging.CRITICAL,
        }.get(current, logging.WARNING)
        self._log(
            level,
            "TRUST_STATE_CHANGED",
            counterparty_id=counterparty_id,
            previous_state=previous,
            state=current,
            reason=reason,
            message=f"Reliance {previous} -> {current}: {reason}"
        )

    def probe_failed(self, counterparty_id: str, attempt: int, max_attempts: int, reason: str) -> None:
        self._log(
            logging.WARNING,
            "LIVENESS_PROBE_FAILED",
            counterparty_id=counterparty_id,
            attempt=attempt,
            max_attempts=max_attempts,
            reason=reason,
            message=f"Liveness attempt {attempt}/{max_attempts} failed: {reason}"
        )

    def ledger_write_failed(self, transaction_id: str, action: str, error: str) -> None:
        """Audit history is at risk; always CRITICAL."""
        self._log(
            logging.CRITICAL,
            "LEDGER_WRITE_FAILED",
            transaction_id=transaction_id,
            action=action,
            error=error,
            message="Failed to write to audit ledger"
        )

    def wal_write_failed(self, event_id: str, error: str) -> None:
        self._log(
            logging.CRITICAL,
            "WAL_WRITE_FAILED",
            event_id=event_id,
            error=error,
            message=f"Failed to persist event {event_id}; data loss risk"
        )

    def delivery_failed(self, event_id: str, retry_count: int, reason: str) -> None:
        self._log(
            logging.WARNING,
            "DELIVERY_FAILED",
            event_id=event_id,
            retry_count=retry_count,
            reason=reason,
            message=f"Delivery of {event_id} failed: {reason}"
        )

    def dead_lettered(self, event_id: str, retry_count: int, reference_id: Optional[str]) -> None:
        self._log(
            logging.CRITICAL,
            "DEAD_LETTER",
            event_id=event_id,
            retry_count=retry_count,
            reference_id=reference_id,
            message=f"Event {event_id} moved to dead letter; manual intervention required"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure root logging for the engine process.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: StructuredFormatter lines instead of plain text
        log_file: Optional file that receives the same records as stdout
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id (the caller's X-Request-ID, or a fresh UUID) to the current context."""
    if not request_id:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


event_log = EventLogger()
