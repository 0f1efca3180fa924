"""
Logging configuration for the CIAM session client.

This module provides structured logging with an authentication audit trail
and configurable output formats. Audit events never carry secrets: passwords,
OTP codes and tokens are not accepted by any AuditLogger method.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum

from ciam_shared.exceptions import CiamClientError


class LogLevel(Enum):
    """Log level enumeration."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(Enum):
    """Log format enumeration."""
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """Authentication events that are audited."""
    LOGIN_ATTEMPT = "login_attempt"
    LOGIN_OUTCOME = "login_outcome"
    MFA_INITIATED = "mfa_initiated"
    MFA_VERIFIED = "mfa_verified"
    MFA_REJECTED = "mfa_rejected"
    MFA_EXPIRED = "mfa_expired"
    ESIGN_ACCEPTED = "esign_accepted"
    ESIGN_DECLINED = "esign_declined"
    DEVICE_BOUND = "device_bound"
    TOKEN_REFRESH = "token_refresh"
    LOGOUT = "logout"
    SESSION_EXPIRED = "session_expired"
    SESSION_REVOKED = "session_revoked"
    ERROR_EVENT = "error_event"


_STANDARD_RECORD_FIELDS = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'taskName', 'getMessage',
    'exc_info', 'exc_text', 'stack_info', 'error_info', 'audit_info'
])


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per record.
    """

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'process': {'pid': os.getpid()},
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info)
            }

        error = getattr(record, 'error_info', None)
        if isinstance(error, CiamClientError):
            log_entry['error'] = {
                'code': error.error_code.value,
                'severity': error.severity.value,
                'context': error.context,
                'recovery_actions': [action.value for action in error.recovery_actions],
                'user_message': error.user_message
            }

        if hasattr(record, 'audit_info'):
            log_entry['audit'] = record.audit_info

        if self.include_extra_fields:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _STANDARD_RECORD_FIELDS
            }
            if extra_fields:
                log_entry['extra'] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """
    Human-readable formatter that appends structured error and audit details.
    """

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-28s | %(funcName)-20s:%(lineno)-4d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)

        error = getattr(record, 'error_info', None)
        if isinstance(error, CiamClientError):
            formatted += f"\n  Error Code: {error.error_code.value}"
            formatted += f"\n  Severity: {error.severity.value}"
            if error.context:
                formatted += f"\n  Context: {json.dumps(error.context, indent=2, default=str)}"
            if error.recovery_actions:
                actions = [action.value for action in error.recovery_actions]
                formatted += f"\n  Recovery Actions: {', '.join(actions)}"

        if hasattr(record, 'audit_info'):
            formatted += f"\n  Audit: {json.dumps(record.audit_info, indent=2, default=str)}"

        return formatted


class AuditLogger:
    """
    Specialized logger for authentication audit events.
    """

    def __init__(self, logger_name: str = "ciam.audit"):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        username: Optional[str] = None,
        transaction_id: Optional[str] = None,
        result: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ):
        """
        Log an audit event with structured information.

        Args:
            event_type: Type of audit event
            message: Human-readable message
            username: Username the event concerns, if known
            transaction_id: Challenge or login transaction identifier
            result: Result of the step (success, failure, ...)
            additional_context: Additional non-secret context
        """
        audit_info = {
            'event_type': event_type.value,
            'timestamp': datetime.now().isoformat(),
            'username': username,
            'transaction_id': transaction_id,
            'result': result,
            'context': additional_context or {}
        }
        audit_info = {k: v for k, v in audit_info.items() if v is not None}

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_login_attempt(self, username: str):
        self.log_event(
            AuditEventType.LOGIN_ATTEMPT,
            f"Login attempt for {username}",
            username=username,
            result="started"
        )

    def log_login_outcome(self, username: Optional[str], outcome: str, failure_kind: Optional[str] = None):
        """Log the result of a login step (success, mfa_required, failure, ...)."""
        context = {'failure_kind': failure_kind} if failure_kind else None
        self.log_event(
            AuditEventType.LOGIN_OUTCOME,
            f"Login for {username or 'unknown user'}: {outcome}",
            username=username,
            result=outcome,
            additional_context=context
        )

    def log_mfa(
        self,
        event_type: AuditEventType,
        method: str,
        transaction_id: Optional[str] = None,
        username: Optional[str] = None
    ):
        self.log_event(
            event_type,
            f"MFA {method}: {event_type.value}",
            username=username,
            transaction_id=transaction_id,
            result=event_type.value,
            additional_context={'method': method}
        )

    def log_esign(self, accepted: bool, document_ref: str, username: Optional[str] = None):
        event_type = AuditEventType.ESIGN_ACCEPTED if accepted else AuditEventType.ESIGN_DECLINED
        self.log_event(
            event_type,
            f"eSign document {document_ref} {'accepted' if accepted else 'declined'}",
            username=username,
            result="accepted" if accepted else "declined",
            additional_context={'document_ref': document_ref}
        )

    def log_device_bind(self, trusted: bool, username: Optional[str] = None):
        self.log_event(
            AuditEventType.DEVICE_BOUND,
            f"Device {'trusted' if trusted else 'not trusted'}",
            username=username,
            result="trusted" if trusted else "skipped"
        )

    def log_refresh(self, success: bool, subject: Optional[str] = None):
        self.log_event(
            AuditEventType.TOKEN_REFRESH,
            f"Token refresh {'successful' if success else 'failed'}",
            username=subject,
            result="success" if success else "failure"
        )

    def log_logout(self, subject: Optional[str] = None, remote_ok: bool = True):
        self.log_event(
            AuditEventType.LOGOUT,
            "Logged out",
            username=subject,
            result="success" if remote_ok else "local_only"
        )

    def log_session_expired(self, subject: Optional[str] = None):
        self.log_event(
            AuditEventType.SESSION_EXPIRED,
            "Session expired",
            username=subject,
            result="expired"
        )

    def log_session_revoked(self, session_id: str, subject: Optional[str] = None, current: bool = False):
        self.log_event(
            AuditEventType.SESSION_REVOKED,
            f"Session {session_id} revoked",
            username=subject,
            result="revoked",
            additional_context={'session_id': session_id, 'current': current}
        )

    def log_error(self, error: CiamClientError, transaction_id: Optional[str] = None):
        """Log error events."""
        self.log_event(
            AuditEventType.ERROR_EVENT,
            f"Error occurred: {error.message}",
            transaction_id=transaction_id,
            result="error",
            additional_context={
                'error_code': error.error_code.value,
                'severity': error.severity.value,
                'context': error.context,
                'recovery_actions': [action.value for action in error.recovery_actions]
            }
        )


def setup_logging(
    log_level: LogLevel = LogLevel.INFO,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    enable_console: bool = True,
    enable_audit: bool = True,
    audit_file: Optional[str] = None
) -> Dict[str, logging.Logger]:
    """
    Set up logging for the client.

    Args:
        log_level: Minimum log level to capture
        log_format: Format for log output
        log_file: Path to main log file (optional)
        max_file_size: Maximum size of log files before rotation
        backup_count: Number of backup files to keep
        enable_console: Whether to enable console logging
        enable_audit: Whether to enable audit logging
        audit_file: Path to audit log file (optional)

    Returns:
        Dictionary of configured loggers
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.value))

    if log_format == LogFormat.JSON:
        formatter = StructuredFormatter()
    elif log_format == LogFormat.DETAILED:
        formatter = DetailedFormatter()
    else:  # STANDARD
        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handlers = []

    if enable_console:
        # stderr keeps stdout free for the CLI's own output
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for handler in handlers:
        root_logger.addHandler(handler)

    loggers = {
        'root': root_logger,
        'client': logging.getLogger('ciam_client'),
        'shared': logging.getLogger('ciam_shared'),
    }

    if enable_audit:
        audit_logger = logging.getLogger('ciam.audit')
        audit_logger.setLevel(logging.INFO)
        for handler in audit_logger.handlers[:]:
            audit_logger.removeHandler(handler)

        if audit_file:
            Path(audit_file).parent.mkdir(parents=True, exist_ok=True)
            audit_handler = logging.handlers.RotatingFileHandler(
                audit_file,
                maxBytes=max_file_size,
                backupCount=backup_count,
                encoding='utf-8'
            )
            audit_handler.setFormatter(StructuredFormatter())
            audit_logger.addHandler(audit_handler)
            audit_logger.propagate = False

        loggers['audit'] = audit_logger

    return loggers


def log_structured_error(
    logger: logging.Logger,
    error: CiamClientError,
    transaction_id: Optional[str] = None
):
    """
    Log a structured error with full context information.

    Args:
        logger: Logger instance to use
        error: The structured error to log
        transaction_id: Optional transaction identifier for context
    """
    extra = {'error_info': error}
    if transaction_id:
        extra['transaction_id'] = transaction_id
    logger.error(error.message, extra=extra)
