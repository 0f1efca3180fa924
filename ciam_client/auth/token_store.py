"""
In-memory token store for the CIAM session client.

The access credential lives only in process memory. The long-lived refresh
token is an HTTP-only cookie held by the HTTP session, never by this store.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List

from jose import jwt, JWTError

from ciam_shared.models import Credential, utc_now

logger = logging.getLogger(__name__)


def _timestamp_to_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.debug(f"Timestamp out of range: {value!r}")
            return None
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _display_name(claims: Dict[str, Any]) -> Optional[str]:
    display_name = claims.get('name')
    if not display_name:
        parts = [claims.get('given_name'), claims.get('family_name')]
        display_name = ' '.join(str(p) for p in parts if p) or claims.get('preferred_username')
    return str(display_name) if display_name else None


def _roles(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(role) for role in value]
    return []


def _last_login(claims: Dict[str, Any]) -> Optional[datetime]:
    return _timestamp_to_datetime(claims.get('lastLoginAt') or claims.get('last_login_at'))


def parse_token_claims(token: Optional[str]) -> Dict[str, Any]:
    """
    Read the payload of a JWT without verifying its signature.

    Args:
        token: JWT string, may be None

    Returns:
        Claims dictionary, empty when the token is absent or not a JWT
    """
    if not token:
        return {}
    try:
        return jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.debug(f"Token is not a readable JWT: {e}")
        return {}


def credential_from_tokens(
    access_token: str,
    id_token: Optional[str] = None,
    token_type: Optional[str] = None,
    expires_in: Optional[float] = None,
    user_info: Optional[Dict[str, Any]] = None
) -> Credential:
    """
    Build a Credential from issued tokens and optional profile claims.

    Claims are merged in increasing priority: access token, id token, user info.

    Raises:
        ValueError: If ``expires_in`` is not a number
    """
    access_claims = parse_token_claims(access_token)
    claims: Dict[str, Any] = dict(access_claims)
    claims.update(parse_token_claims(id_token))
    if user_info:
        claims.update({k: v for k, v in user_info.items() if v is not None})

    expires_at = None
    if expires_in is not None:
        expires_at = utc_now() + timedelta(seconds=float(expires_in))
    elif 'exp' in access_claims:
        expires_at = _timestamp_to_datetime(access_claims['exp'])

    session_id = claims.get('sid') or claims.get('session_id')

    return Credential(
        access_token=access_token,
        subject=claims.get('sub'),
        display_name=_display_name(claims),
        email=claims.get('email'),
        roles=_roles(claims.get('roles')),
        last_login_at=_last_login(claims),
        expires_at=expires_at,
        id_token=id_token,
        token_type=token_type or 'Bearer',
        session_id=str(session_id) if session_id else None
    )


def merge_user_info(credential: Credential, user_info: Any) -> Credential:
    """
    Return ``credential`` with its profile completed from a /userinfo answer.

    Fields the answer leaves out keep the values read from the tokens. The
    token itself, its expiry and its session are never changed.
    """
    if not isinstance(user_info, dict) or not user_info:
        return credential
    claims = {k: v for k, v in user_info.items() if v is not None}
    return replace(
        credential,
        subject=claims.get('sub') or credential.subject,
        display_name=_display_name(claims) or credential.display_name,
        email=claims.get('email') or credential.email,
        roles=_roles(claims.get('roles')) or list(credential.roles),
        last_login_at=_last_login(claims) or credential.last_login_at
    )


class TokenStore:
    """
    Holds the current access credential in memory.
    """

    def __init__(self):
        self._credential: Optional[Credential] = None

    def get(self) -> Optional[Credential]:
        return self._credential

    def set(self, credential: Credential) -> None:
        self._credential = credential
        logger.debug(f"Credential stored for subject {credential.subject}")

    def clear(self) -> None:
        if self._credential is not None:
            logger.debug("Credential cleared")
        self._credential = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True when no credential is held or the held one has expired."""
        if self._credential is None:
            return True
        return self._credential.is_expired(now)

    def needs_refresh(self, threshold_seconds: float, now: Optional[datetime] = None) -> bool:
        """
        Check if the credential should be refreshed soon.

        Args:
            threshold_seconds: Refresh when fewer seconds than this remain
            now: Reference time, defaults to the current UTC time

        Returns:
            True if a credential is held and expires within the threshold
        """
        if self._credential is None or self._credential.expires_at is None:
            return False
        time_until_expiry = self._credential.expires_at - (now or utc_now())
        return time_until_expiry <= timedelta(seconds=threshold_seconds)

    def seconds_until_refresh(self, threshold_seconds: float, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds until needs_refresh() turns true, or None when expiry is unknown."""
        if self._credential is None or self._credential.expires_at is None:
            return None
        remaining = self._credential.expires_at - (now or utc_now()) - timedelta(seconds=threshold_seconds)
        return max(0.0, remaining.total_seconds())
