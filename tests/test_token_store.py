"""
Tests for credential construction and the in-memory token store.
"""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from ciam_shared.models import Credential, utc_now
from ciam_client.auth.token_store import TokenStore, credential_from_tokens, merge_user_info, parse_token_claims

from conftest import make_credential


def make_jwt(claims) -> str:
    return jwt.encode(claims, "test-secret-key", algorithm="HS256")


class TestClaims:
    """Tests for reading token claims."""

    def test_unverified_claims(self):
        token = make_jwt({'sub': 'alice', 'email': 'alice@example.com'})

        assert parse_token_claims(token) == {'sub': 'alice', 'email': 'alice@example.com'}

    def test_opaque_token_has_no_claims(self):
        assert parse_token_claims("not-a-jwt") == {}
        assert parse_token_claims(None) == {}

    def test_credential_from_tokens(self):
        exp = int((utc_now() + timedelta(minutes=10)).timestamp())
        access = make_jwt({'sub': 'alice', 'exp': exp, 'roles': ['customer']})
        id_token = make_jwt({'sub': 'alice', 'given_name': 'Alice', 'family_name': 'Smith',
                             'email': 'alice@example.com', 'lastLoginAt': '2024-05-01T10:00:00Z'})

        credential = credential_from_tokens(access, id_token)

        assert credential.subject == 'alice'
        assert credential.display_name == 'Alice Smith'
        assert credential.email == 'alice@example.com'
        assert credential.roles == ['customer']
        assert credential.last_login_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        assert credential.expires_at == datetime.fromtimestamp(exp, tz=timezone.utc)
        assert credential.token_type == 'Bearer'

    def test_user_info_overrides_token_claims(self):
        access = make_jwt({'sub': 'alice', 'name': 'Old Name'})

        credential = credential_from_tokens(access, user_info={'name': 'Alice A.'}, expires_in=900)

        assert credential.display_name == 'Alice A.'
        remaining = (credential.expires_at - utc_now()).total_seconds()
        assert 890 < remaining <= 900

    def test_empty_access_token_rejected(self):
        with pytest.raises(ValueError):
            Credential(access_token="")

    def test_session_claim(self):
        credential = credential_from_tokens(make_jwt({'sub': 'alice', 'sid': 's-1'}))

        assert credential.session_id == 's-1'

    def test_malformed_expires_in(self):
        with pytest.raises(ValueError):
            credential_from_tokens(make_jwt({'sub': 'alice'}), expires_in='fifteen minutes')


class TestMergeUserInfo:
    """Tests for completing a credential from a user info answer."""

    def test_present_fields_override(self):
        credential = make_credential("alice")
        credential.session_id = "s-1"

        merged = merge_user_info(credential, {
            'name': 'Alice Liddell',
            'roles': ['admin', 'auditor'],
            'lastLoginAt': '2024-05-01T10:00:00Z',
            'email': None,
        })

        assert merged is not credential
        assert merged.display_name == 'Alice Liddell'
        assert merged.roles == ['admin', 'auditor']
        assert merged.last_login_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        assert merged.email == 'alice@example.com'
        assert merged.access_token == credential.access_token
        assert merged.expires_at == credential.expires_at
        assert merged.session_id == 's-1'
        assert credential.display_name == 'Alice'

    @pytest.mark.parametrize("user_info", [None, {}, ['alice'], 'alice'])
    def test_nothing_to_merge(self, user_info):
        credential = make_credential("alice")

        assert merge_user_info(credential, user_info) is credential


class TestTokenStore:
    """Tests for TokenStore."""

    def test_set_get_clear(self):
        store = TokenStore()
        credential = make_credential()

        store.set(credential)
        assert store.get() is credential

        store.clear()
        assert store.get() is None
        assert store.is_expired()

    def test_needs_refresh_within_threshold(self):
        store = TokenStore()
        now = utc_now()
        store.set(Credential(access_token="t", expires_at=now + timedelta(seconds=30)))

        assert store.needs_refresh(60, now)
        assert not store.needs_refresh(10, now)
        assert store.seconds_until_refresh(10, now) == 20.0
        assert store.seconds_until_refresh(60, now) == 0.0

    def test_unknown_expiry(self):
        store = TokenStore()
        store.set(Credential(access_token="t"))

        assert not store.is_expired()
        assert not store.needs_refresh(60)
        assert store.seconds_until_refresh(60) is None
