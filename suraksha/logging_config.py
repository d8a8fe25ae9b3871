"""
Logging configuration for Suraksha.

Provides structured JSON logging for audit trails and debugging.
"""

import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Optional

from .security import sanitize_for_logging
from .util import mask_sensitive

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for audit events.

    Records authentication decisions, alert and complaint lifecycle
    changes, and security-relevant degradations. Phone numbers are
    masked; codes, tokens and key material are never passed in.
    """

    def __init__(self, name: str = "suraksha.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, message: str = "", **kwargs) -> None:
        """Internal logging method with extra fields. Secret-named fields are redacted."""
        if not self._logger.isEnabledFor(level):
            return
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **sanitize_for_logging(kwargs)
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {message}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def identity_registered(self, phone: str) -> None:
        self._log(
            logging.INFO,
            "IDENTITY_REGISTERED",
            phone=mask_sensitive(phone),
            message="Identity registered with new key pair"
        )

    def otp_issued(self, phone: str, expires_at: int) -> None:
        self._log(
            logging.INFO,
            "OTP_ISSUED",
            phone=mask_sensitive(phone),
            expires_at=expires_at,
            message="One-time code issued"
        )

    def otp_rejected(self, phone: str, reason: str, remaining_attempts: Optional[int] = None) -> None:
        self._log(
            logging.WARNING,
            "OTP_REJECTED",
            phone=mask_sensitive(phone),
            reason=reason,
            remaining_attempts=remaining_attempts,
            message=f"One-time code rejected: {reason}"
        )

    def login_succeeded(self, phone: str, role: str) -> None:
        self._log(
            logging.INFO,
            "LOGIN_SUCCEEDED",
            phone=mask_sensitive(phone),
            role=role,
            message="Session token issued"
        )

    def responder_login_failed(self, username: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "RESPONDER_LOGIN_FAILED",
            username=username,
            reason=reason,
            message=f"Responder sign-in refused: {reason}"
        )

    def responder_created(self, username: str, role: str) -> None:
        self._log(
            logging.INFO,
            "RESPONDER_CREATED",
            username=username,
            role=role,
            message=f"Responder account created with role {role}"
        )

    def responder_deactivated(self, username: str) -> None:
        self._log(
            logging.INFO,
            "RESPONDER_DEACTIVATED",
            username=username,
            message="Responder account deactivated"
        )

    def token_rejected(self, reason: str) -> None:
        self._log(
            logging.WARNING,
            "TOKEN_REJECTED",
            reason=reason,
            message=f"Bearer token rejected: {reason}"
        )

    def access_denied(self, subject: str, role: str, required: Any) -> None:
        self._log(
            logging.WARNING,
            "ACCESS_DENIED",
            subject=subject,
            role=role,
            required=list(required),
            message=f"Role {role} may not perform this operation"
        )

    def alert_submitted(self, owner: str, incident_id: str, encrypted: bool, replaced: bool) -> None:
        self._log(
            logging.INFO,
            "ALERT_SUBMITTED",
            owner=mask_sensitive(owner),
            incident_id=incident_id,
            encrypted=encrypted,
            replaced=replaced,
            message="Emergency alert replaced" if replaced else "Emergency alert created"
        )

    def encryption_fallback(self, owner: str, record_type: str, reason: str) -> None:
        """Log that a record was stored without envelope encryption."""
        self._log(
            logging.WARNING,
            "ENCRYPTION_FALLBACK",
            owner=mask_sensitive(owner),
            record_type=record_type,
            reason=reason,
            message=f"{record_type} stored in plaintext: {reason}"
        )

    def alert_status_changed(self, owner: str, status: str) -> None:
        self._log(
            logging.INFO,
            "ALERT_STATUS_CHANGED",
            owner=mask_sensitive(owner),
            status=status,
            message=f"Emergency alert now {status}"
        )

    def alert_resolved(self, owner: str, incident_id: str, resolved_by: str) -> None:
        self._log(
            logging.INFO,
            "ALERT_RESOLVED",
            owner=mask_sensitive(owner),
            incident_id=incident_id,
            resolved_by=resolved_by,
            message=f"Emergency alert archived by {resolved_by}"
        )

    def complaint_filed(self, owner: str, complaint_id: int, encrypted: bool) -> None:
        self._log(
            logging.INFO,
            "COMPLAINT_FILED",
            owner=mask_sensitive(owner),
            complaint_id=complaint_id,
            encrypted=encrypted,
            message=f"Complaint {complaint_id} filed"
        )

    def complaint_transition(self, complaint_id: int, status: str, actor: Optional[str] = None) -> None:
        self._log(
            logging.INFO,
            "COMPLAINT_TRANSITION",
            complaint_id=complaint_id,
            status=status,
            actor=actor,
            message=f"Complaint {complaint_id} moved to {status}"
        )

    def decryption_failed(self, owner: str, record_type: str, record_id: Any, reason: str) -> None:
        self._log(
            logging.ERROR,
            "DECRYPTION_FAILED",
            owner=mask_sensitive(owner),
            record_type=record_type,
            record_id=record_id,
            reason=reason,
            message=f"Could not decrypt {record_type} {record_id}"
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
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

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
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


@contextmanager
def request_context(request_id: Optional[str] = None) -> Iterator[str]:
    """
    Tag every log record emitted inside the block with a request ID.

    Args:
        request_id: Request ID to use, or None to generate one

    Yields:
        The request ID in effect
    """
    request_id = request_id or uuid.uuid4().hex
    token = request_id_var.set(request_id)
    try:
        yield request_id
    finally:
        request_id_var.reset(token)


# Global audit logger instance
audit_log = AuditLogger()
