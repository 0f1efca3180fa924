"""
Core interfaces for the CIAM session client.

This module defines the abstract collaborators the session orchestrator
depends on, so the HTTP client and the durable stores can be replaced in
tests or by alternative implementations.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Union

from .models import (
    Outcome, Failure, ChallengeInitiation, ChallengeMethod, TransactionRef,
    PendingLoginContext, SessionInfo, SessionVerification
)


class IIdentityService(ABC):
    """
    Interface to the remote Identity Service.

    Every method performs exactly one request. Recognized protocol answers are
    returned as values of the outcome union; anything else (network error,
    timeout, 5xx, malformed body) is raised as a TransportError.
    """

    @abstractmethod
    async def login(self, username: str, password: str) -> Outcome:
        """Submit primary credentials."""
        pass

    @abstractmethod
    async def initiate_challenge(
        self,
        transaction_ref: TransactionRef,
        method: ChallengeMethod,
        option_id: Optional[int] = None
    ) -> Union[ChallengeInitiation, Failure]:
        """Start a challenge of the given method."""
        pass

    @abstractmethod
    async def verify_challenge(
        self,
        transaction_ref: TransactionRef,
        method: ChallengeMethod,
        proof: Optional[str] = None
    ) -> Outcome:
        """Verify an OTP proof, or check the status of a push challenge when proof is None."""
        pass

    @abstractmethod
    async def accept_esign(self, transaction_ref: TransactionRef, document_ref: str) -> Outcome:
        """Accept the pending eSign document."""
        pass

    @abstractmethod
    async def decline_esign(
        self,
        transaction_ref: TransactionRef,
        document_ref: str,
        reason: Optional[str] = None
    ) -> Outcome:
        """Decline the pending eSign document."""
        pass

    @abstractmethod
    async def bind_device(self, transaction_ref: TransactionRef, trust: bool) -> Outcome:
        """Answer the device-trust question."""
        pass

    @abstractmethod
    async def refresh(self) -> Outcome:
        """Obtain a new credential using the refresh cookie held by the service."""
        pass

    @abstractmethod
    async def logout(self, access_token: Optional[str] = None) -> None:
        """Invalidate the remote session."""
        pass

    @abstractmethod
    async def get_user_info(self, access_token: str) -> Dict[str, Any]:
        """Fetch profile claims for the given access token."""
        pass

    @abstractmethod
    async def list_sessions(self, access_token: str) -> List[SessionInfo]:
        """List the server-side sessions of the user the token belongs to."""
        pass

    @abstractmethod
    async def revoke_session(self, access_token: str, session_id: str) -> None:
        """Revoke one session of the user the token belongs to."""
        pass

    @abstractmethod
    async def verify_session(self, session_id: str, access_token: Optional[str] = None) -> SessionVerification:
        """Ask whether a session is still valid."""
        pass

    async def close(self) -> None:
        """Release network resources. Implementations without any may keep this no-op."""
        pass


class IPendingLoginStore(ABC):
    """Interface for durable storage of the pending-login context."""

    @abstractmethod
    def get(self) -> Optional[PendingLoginContext]:
        """Return the stored context, or None."""
        pass

    @abstractmethod
    def set(self, context: PendingLoginContext) -> None:
        """Replace the stored context."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove any stored context."""
        pass


class IUsernameStore(ABC):
    """Interface for the remembered-username store."""

    @abstractmethod
    def get(self) -> Optional[str]:
        pass

    @abstractmethod
    def save(self, username: str) -> None:
        pass

    @abstractmethod
    def remove(self) -> None:
        pass


class IConfigurationManager(ABC):
    """Interface for configuration management."""

    @abstractmethod
    def get_identity_url(self) -> str:
        """Get Identity Service base URL."""
        pass

    @abstractmethod
    def set_config(self, key: str, value: Any) -> None:
        """Set configuration value."""
        pass

    @abstractmethod
    def get_config(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        pass
