"""
Core data models for the CIAM session client.

This module defines the session states, the credential and challenge
transaction records, and the closed set of outcomes the Identity Service can
report for each step of the login handshake.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any
from enum import Enum


class SessionState(Enum):
    """Top-level state of one orchestrator's session."""
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    MFA_PENDING = "mfa_pending"
    CHALLENGE_ACTIVE = "challenge_active"
    ESIGN_PENDING = "esign_pending"
    DEVICE_BIND_PENDING = "device_bind_pending"
    AUTHENTICATED = "authenticated"
    ERROR = "error"


class ChallengeMethod(Enum):
    """Mechanism used to prove a second factor."""
    OTP = "otp"
    PUSH = "push"

    @property
    def is_polling(self) -> bool:
        return self is ChallengeMethod.PUSH


class ChallengeStatus(Enum):
    """Server-side status of a challenge transaction."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class OutcomeType(Enum):
    """Tags of the outcome union."""
    SUCCESS = "SUCCESS"
    MFA_REQUIRED = "MFA_REQUIRED"
    ESIGN_REQUIRED = "ESIGN_REQUIRED"
    DEVICE_BIND_REQUIRED = "DEVICE_BIND_REQUIRED"
    PENDING = "MFA_PENDING"
    FAILURE = "FAILURE"


class FailureKind(Enum):
    """Classified failure kinds. Every error that reaches a session is one of these."""
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    MFA_LOCKED = "MFA_LOCKED"
    MISSING_CREDENTIALS = "MISSING_CREDENTIALS"
    INVALID_PROOF = "INVALID_PROOF"
    CHALLENGE_REJECTED = "CHALLENGE_REJECTED"
    CHALLENGE_EXPIRED = "CHALLENGE_EXPIRED"
    ESIGN_DECLINED = "ESIGN_DECLINED"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    NETWORK_UNAVAILABLE = "NETWORK_UNAVAILABLE"
    SERVICE_ERROR = "SERVICE_ERROR"


DEFAULT_FAILURE_MESSAGES: Dict[FailureKind, str] = {
    FailureKind.INVALID_CREDENTIALS: "Invalid username or password",
    FailureKind.ACCOUNT_LOCKED: "Account is temporarily locked",
    FailureKind.MFA_LOCKED: (
        "Your MFA has been locked due to too many failed attempts. "
        "Please call our call center at 1-800-SUPPORT to reset your MFA setup."
    ),
    FailureKind.MISSING_CREDENTIALS: "Username and password are required",
    FailureKind.INVALID_PROOF: "Invalid verification code. Please try again with the correct code.",
    FailureKind.CHALLENGE_REJECTED: "The sign-in request was rejected on your device",
    FailureKind.CHALLENGE_EXPIRED: "The sign-in request expired before it was approved",
    FailureKind.ESIGN_DECLINED: "The terms must be accepted to sign in. Please log in again.",
    FailureKind.TRANSACTION_NOT_FOUND: "The verification request is no longer valid",
    FailureKind.SESSION_EXPIRED: "Session expired",
    FailureKind.NETWORK_UNAVAILABLE: "Network unavailable. Please check your connection and try again.",
    FailureKind.SERVICE_ERROR: "An error occurred during authentication",
}

# Kinds the caller can act on without starting over from the password step.
RETRYABLE_FAILURES = frozenset({
    FailureKind.NETWORK_UNAVAILABLE,
    FailureKind.SERVICE_ERROR,
    FailureKind.INVALID_CREDENTIALS,
    FailureKind.MISSING_CREDENTIALS,
    FailureKind.CHALLENGE_REJECTED,
    FailureKind.CHALLENGE_EXPIRED,
})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Credential:
    """Access token plus the claims derived from it."""
    access_token: str
    subject: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    last_login_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    id_token: Optional[str] = None
    token_type: str = "Bearer"
    # server-side session the token belongs to (sid claim), if the token says
    session_id: Optional[str] = None

    def __post_init__(self):
        if not self.access_token:
            raise ValueError("Access token cannot be empty")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at

    def to_profile(self) -> Dict[str, Any]:
        """Non-secret view of the credential, suitable for display or logging."""
        return {
            'subject': self.subject,
            'display_name': self.display_name,
            'email': self.email,
            'roles': list(self.roles),
            'last_login_at': self.last_login_at.isoformat() if self.last_login_at else None,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass(frozen=True)
class TransactionRef:
    """Server-issued handle tying together the steps of one login flow."""
    context_id: str
    transaction_id: str


@dataclass(frozen=True)
class MfaOption:
    """One OTP delivery channel offered by the Identity Service."""
    value: str
    option_id: Optional[int] = None


@dataclass
class Transaction:
    """One in-flight challenge. Also serves as the handle returned to callers."""
    transaction_id: str
    method: ChallengeMethod
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    display_value: Optional[int] = None
    selected_value: Optional[int] = None
    status: ChallengeStatus = ChallengeStatus.PENDING
    remaining_seconds: Optional[float] = None

    def __post_init__(self):
        if not self.transaction_id:
            raise ValueError("Transaction ID cannot be empty")


@dataclass(frozen=True)
class ChallengeInitiation:
    """Identity Service answer to a challenge initiation."""
    transaction_id: str
    expires_at: Optional[datetime] = None
    display_value: Optional[int] = None
    selected_value: Optional[int] = None


@dataclass(frozen=True)
class PendingLoginContext:
    """Non-secret user input carried across asynchronous login steps."""
    username: str
    remember_username: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {'username': self.username, 'remember_username': self.remember_username}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingLoginContext":
        return cls(
            username=data['username'],
            remember_username=bool(data.get('remember_username', False))
        )


@dataclass(frozen=True)
class ErrorState:
    """Classified failure attached to a session."""
    kind: FailureKind
    message: str
    retryable: bool = False

    @classmethod
    def from_kind(cls, kind: FailureKind, message: Optional[str] = None) -> "ErrorState":
        return cls(
            kind=kind,
            message=message or DEFAULT_FAILURE_MESSAGES[kind],
            retryable=kind in RETRYABLE_FAILURES
        )


@dataclass(frozen=True)
class EsignDocument:
    """Document the user must accept before the session is issued."""
    document_ref: str
    transaction_ref: TransactionRef
    document_url: Optional[str] = None
    mandatory: bool = True


@dataclass(frozen=True)
class SessionInfo:
    """One server-side session of the authenticated user, as listed by the Identity Service."""
    session_id: str
    created_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'last_seen_at': self.last_seen_at.isoformat() if self.last_seen_at else None,
            'device_id': self.device_id,
            'ip_address': self.ip_address,
            'user_agent': self.user_agent,
            'location': self.location,
        }


@dataclass(frozen=True)
class SessionVerification:
    """Identity Service verdict on one session."""
    valid: bool
    message: Optional[str] = None
    expires_at: Optional[datetime] = None


# Outcome union

@dataclass(frozen=True)
class Outcome:
    """Base of the closed outcome union. Use ``outcome_type`` to dispatch."""

    @property
    def outcome_type(self) -> OutcomeType:
        raise NotImplementedError


@dataclass(frozen=True)
class Success(Outcome):
    credential: Credential

    @property
    def outcome_type(self) -> OutcomeType:
        return OutcomeType.SUCCESS


@dataclass(frozen=True)
class MfaRequired(Outcome):
    methods: List[ChallengeMethod]
    transaction_ref: TransactionRef
    otp_options: List[MfaOption] = field(default_factory=list)

    @property
    def outcome_type(self) -> OutcomeType:
        return OutcomeType.MFA_REQUIRED


@dataclass(frozen=True)
class EsignRequired(Outcome):
    document_ref: str
    transaction_ref: TransactionRef
    document_url: Optional[str] = None
    mandatory: bool = True

    @property
    def outcome_type(self) -> OutcomeType:
        return OutcomeType.ESIGN_REQUIRED


@dataclass(frozen=True)
class DeviceBindRequired(Outcome):
    transaction_ref: TransactionRef

    @property
    def outcome_type(self) -> OutcomeType:
        return OutcomeType.DEVICE_BIND_REQUIRED


@dataclass(frozen=True)
class Pending(Outcome):
    expires_at: Optional[datetime] = None
    server_time: Optional[datetime] = None
    retry_after: Optional[float] = None

    @property
    def outcome_type(self) -> OutcomeType:
        return OutcomeType.PENDING


@dataclass(frozen=True)
class Failure(Outcome):
    kind: FailureKind
    message: Optional[str] = None

    @property
    def outcome_type(self) -> OutcomeType:
        return OutcomeType.FAILURE

    def to_error_state(self) -> ErrorState:
        return ErrorState.from_kind(self.kind, self.message)
