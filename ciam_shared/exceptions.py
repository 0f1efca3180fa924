"""
Exception hierarchy for the CIAM session client.

This module defines structured exceptions with error codes, context information,
and recovery suggestions. Domain outcomes of the login protocol (invalid
credentials, rejected challenges, declined eSign, ...) are NOT exceptions; they
are reported as ErrorState values on the session. The classes here cover
transport failures, storage problems, configuration problems and caller misuse.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the CIAM session client."""

    # Session state errors (1000-1099)
    SESSION_INVALID_STATE = "SESSION_1001"
    SESSION_NO_ACTIVE_TRANSACTION = "SESSION_1002"
    SESSION_WRONG_CHALLENGE_METHOD = "SESSION_1003"

    # Network and transport errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"
    NETWORK_SERVER_ERROR = "NETWORK_2003"
    NETWORK_RETRIES_EXHAUSTED = "NETWORK_2004"
    NETWORK_REQUEST_REJECTED = "NETWORK_2005"

    # Protocol errors (3000-3099)
    PROTOCOL_MALFORMED_RESPONSE = "PROTOCOL_3001"
    PROTOCOL_UNKNOWN_RESPONSE_TYPE = "PROTOCOL_3002"

    # Storage errors (4000-4099)
    STORAGE_READ_FAILED = "STORAGE_4001"
    STORAGE_WRITE_FAILED = "STORAGE_4002"
    STORAGE_KEY_UNAVAILABLE = "STORAGE_4003"

    # Configuration errors (8000-8099)
    CONFIG_FILE_NOT_FOUND = "CONFIG_8001"
    CONFIG_INVALID_VALUE = "CONFIG_8004"

    # Internal errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    RESTART_LOGIN = "restart_login"
    USER_INTERVENTION = "user_intervention"
    FIX_CALLER = "fix_caller"
    CONTACT_ADMIN = "contact_admin"
    IGNORE = "ignore"


class CiamClientError(Exception):
    """
    Base exception class for all CIAM session client errors.

    Provides structured error information including error codes, context,
    and recovery suggestions for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }


class TransportError(CiamClientError):
    """
    A call to the Identity Service failed before producing a recognized outcome.

    ``retryable`` is True for network errors, timeouts, 5xx responses and
    malformed bodies; False for unclassified 4xx responses.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.NETWORK_CONNECTION_FAILED,
        retryable: bool = True,
        status: Optional[int] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        if status is not None:
            context['status'] = status

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY_WITH_BACKOFF] if retryable else [RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )
        self.retryable = retryable
        self.status = status


class RetryExhaustedError(TransportError):
    """All attempts allowed for a call failed with retryable transport errors."""

    def __init__(self, message: str, attempts: int, last_error: Optional[Exception] = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.NETWORK_RETRIES_EXHAUSTED,
            retryable=False,
            context={'attempts': attempts},
            cause=last_error,
            user_message="Network unavailable. Please check your connection and try again."
        )
        self.attempts = attempts
        self.last_error = last_error


class ProtocolError(TransportError):
    """The Identity Service answered with a body that cannot be interpreted."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.PROTOCOL_MALFORMED_RESPONSE, **kwargs):
        super().__init__(message=message, error_code=error_code, retryable=True, **kwargs)


class InvalidSessionStateError(CiamClientError):
    """
    A public orchestrator method was called in a session state that forbids it.

    This is caller misuse and is always raised, never converted into an
    ErrorState.
    """

    def __init__(self, operation: str, state: str, error_code: ErrorCode = ErrorCode.SESSION_INVALID_STATE, **kwargs):
        super().__init__(
            message=f"Cannot {operation} while session is {state}",
            error_code=error_code,
            severity=ErrorSeverity.CRITICAL,
            recovery_actions=[RecoveryAction.FIX_CALLER],
            context={'operation': operation, 'state': state},
            **kwargs
        )
        self.operation = operation
        self.state = state


class StorageError(CiamClientError):
    """Durable client-side storage errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.IGNORE],
            **kwargs
        )


class ConfigurationError(CiamClientError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.CONFIG_INVALID_VALUE, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION, RecoveryAction.CONTACT_ADMIN],
            context=context,
            **kwargs
        )


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> CiamClientError:
    """
    Convert a generic exception to a structured CiamClientError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured CiamClientError
    """
    if isinstance(exception, CiamClientError):
        return exception

    if isinstance(exception, (ConnectionError, TimeoutError)):
        error_code = (ErrorCode.NETWORK_TIMEOUT if isinstance(exception, TimeoutError)
                      else ErrorCode.NETWORK_CONNECTION_FAILED)
        return TransportError(
            message=str(exception) or type(exception).__name__,
            error_code=error_code,
            retryable=True,
            context=context,
            cause=exception
        )

    if isinstance(exception, (PermissionError, FileNotFoundError)):
        return StorageError(
            message=str(exception),
            error_code=ErrorCode.STORAGE_READ_FAILED,
            context=context,
            cause=exception
        )

    return CiamClientError(
        message=str(exception),
        error_code=default_error_code,
        context=context,
        cause=exception
    )
