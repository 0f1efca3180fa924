"""
Shared fixtures for the CIAM session client tests.
"""

import sys
import tempfile
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from ciam_shared.interfaces import IIdentityService
from ciam_shared.models import (
    Credential, ChallengeMethod, ChallengeInitiation, TransactionRef, MfaOption,
    MfaRequired, utc_now
)
from ciam_client.auth.pending_login import PendingLoginStore, RememberedUsernameStore
from ciam_client.orchestrator import SessionOrchestrator
from ciam_client.retry_transport import RetryTransport, RetryConfig


LOGIN_REF = TransactionRef("ctx-1", "tx-login")


def make_credential(subject: str = "alice", minutes: int = 15, token: str = None) -> Credential:
    return Credential(
        access_token=token or f"access-{subject}",
        subject=subject,
        display_name=subject.title(),
        email=f"{subject}@example.com",
        roles=["customer"],
        expires_at=utc_now() + timedelta(minutes=minutes)
    )


def initiation(transaction_id: str, seconds: int = 120) -> ChallengeInitiation:
    return ChallengeInitiation(
        transaction_id=transaction_id,
        expires_at=utc_now() + timedelta(seconds=seconds),
        display_value=42
    )


def mfa_required(*methods: ChallengeMethod) -> MfaRequired:
    return MfaRequired(
        methods=list(methods or (ChallengeMethod.OTP, ChallengeMethod.PUSH)),
        transaction_ref=LOGIN_REF,
        otp_options=[MfaOption("***-***-1234", 1), MfaOption("a***@example.com", 2)]
    )


@pytest.fixture
def storage_dir():
    """Temporary directory for the durable stores."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield temp_dir


@pytest.fixture
def identity():
    """Identity Service double; every method is an AsyncMock. User info adds nothing by default."""
    service = AsyncMock(spec=IIdentityService)
    service.get_user_info.return_value = {}
    return service


@pytest.fixture
def transport():
    """Retry transport that does not actually wait between attempts."""
    return RetryTransport(RetryConfig(), sleep=AsyncMock())


@pytest.fixture
def pending_store(storage_dir):
    return PendingLoginStore(storage_dir, service_name="ciam-client-test", use_keyring=False)


@pytest.fixture
def username_store(storage_dir):
    return RememberedUsernameStore(storage_dir)


@pytest.fixture
def make_orchestrator(identity, transport, pending_store, username_store):
    """Factory building an orchestrator wired to the test doubles."""
    def factory(**kwargs) -> SessionOrchestrator:
        options = dict(
            identity_service=identity,
            transport=transport,
            pending_store=pending_store,
            username_store=username_store,
            poll_interval=0.01,
            invalid_proof_reset_delay=0.05,
        )
        options.update(kwargs)
        return SessionOrchestrator(**options)
    return factory
