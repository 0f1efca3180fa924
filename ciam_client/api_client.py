"""
HTTP client for the CIAM Identity Service.

This module implements IIdentityService over aiohttp. Each method performs
exactly one request; retrying is the job of RetryTransport. Recognized
protocol answers come back as outcome values, everything else is raised as
a TransportError.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple, Union
from urllib.parse import quote

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from ciam_shared.exceptions import TransportError, ProtocolError, ErrorCode
from ciam_shared.interfaces import IIdentityService
from ciam_shared.models import (
    Outcome, Failure, FailureKind, ChallengeInitiation, ChallengeMethod,
    TransactionRef, SessionInfo, SessionVerification, DEFAULT_FAILURE_MESSAGES
)
from ciam_client.wire_compat import (
    parse_outcome, parse_challenge_initiation, parse_http_date, parse_sessions,
    parse_session_verification
)

logger = logging.getLogger(__name__)


class IdentityServiceClient(IIdentityService):
    """
    aiohttp client for the Identity Service.

    The refresh token is an HTTP-only cookie; the session's cookie jar keeps it
    and sends it back on /auth/refresh.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        app_id: str = "ciam-client",
        app_version: str = "1.0.0",
        session: Optional[ClientSession] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = ClientTimeout(total=timeout)
        self.app_id = app_id
        self.app_version = app_version

        self._session: Optional[ClientSession] = session
        self._owns_session = session is None

        logger.info(f"Identity Service client initialized for: {self.base_url}")

    @classmethod
    def from_config(cls, config) -> "IdentityServiceClient":
        return cls(
            base_url=config.get_identity_url(),
            timeout=config.get_timeout(),
            app_id=config.get_app_id(),
            app_version=config.get_app_version()
        )

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> ClientSession:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                keepalive_timeout=30,
                enable_cleanup_closed=True
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                # accept cookies from IP-address hosts as well
                cookie_jar=aiohttp.CookieJar(unsafe=True),
                headers={'User-Agent': f'CiamSessionClient/{self.app_version}'}
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed and self._owns_session:
            await self._session.close()
        self._session = None

    def clear_cookies(self) -> None:
        if self._session is not None and not self._session.closed:
            self._session.cookie_jar.clear()

    async def _make_request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None
    ) -> Tuple[int, Any, Optional[datetime]]:
        """
        Make one HTTP request.

        Args:
            method: HTTP method
            path: Path below the base URL
            data: JSON request body
            access_token: Bearer token to send, if any

        Returns:
            Tuple of (status, decoded body, server time from the Date header)

        Raises:
            TransportError: On network failure, timeout or a 5xx without a readable body
        """
        session = await self._ensure_session()
        url = f"{self.base_url}{path}"
        headers = {}
        if access_token:
            headers['Authorization'] = f'Bearer {access_token}'

        logger.debug(f"{method} {path}")

        try:
            async with session.request(method, url, json=data, headers=headers) as response:
                server_time = parse_http_date(response.headers.get('Date'))
                text = await response.text()
                status = response.status
        except asyncio.TimeoutError as e:
            logger.warning(f"Timeout on {method} {path}")
            raise TransportError(
                f"Request to {path} timed out",
                error_code=ErrorCode.NETWORK_TIMEOUT,
                cause=e
            )
        except (ClientError, OSError) as e:
            logger.warning(f"Network error on {method} {path}: {e}")
            raise TransportError(
                f"Request to {path} failed: {e}",
                error_code=ErrorCode.NETWORK_CONNECTION_FAILED,
                cause=e
            )

        body: Any = {}
        if text:
            try:
                body = json.loads(text)
            except ValueError as e:
                if status >= 500:
                    raise TransportError(
                        f"Server error ({status}) on {path}",
                        error_code=ErrorCode.NETWORK_SERVER_ERROR,
                        status=status
                    )
                raise ProtocolError(f"Malformed response from {path}: {e}", status=status)

        logger.debug(f"{method} {path} -> {status}")
        return status, body, server_time

    def _to_outcome(
        self,
        path: str,
        status: int,
        body: Any,
        server_time: Optional[datetime],
        fallback_ref: Optional[TransactionRef] = None
    ) -> Outcome:
        """Classify a response: outcome value, or TransportError."""
        if status >= 500:
            raise TransportError(
                f"Server error ({status}) on {path}",
                error_code=ErrorCode.NETWORK_SERVER_ERROR,
                status=status
            )

        try:
            outcome = parse_outcome(body, server_time=server_time, fallback_ref=fallback_ref)
        except ProtocolError as e:
            if status >= 400:
                raise TransportError(
                    f"Request to {path} rejected ({status})",
                    error_code=ErrorCode.NETWORK_REQUEST_REJECTED,
                    retryable=False,
                    status=status,
                    cause=e
                )
            raise

        if outcome is None:
            raise TransportError(
                f"Request to {path} rejected ({status}) with unrecognized error",
                error_code=ErrorCode.NETWORK_REQUEST_REJECTED,
                retryable=False,
                status=status,
                context={'service_error_code': body.get('error_code') if isinstance(body, dict) else None}
            )
        return outcome

    async def login(self, username: str, password: str) -> Outcome:
        path = '/auth/login'
        status, body, server_time = await self._make_request('POST', path, {
            'username': username,
            'password': password,
            'app_id': self.app_id,
            'app_version': self.app_version
        })
        return self._to_outcome(path, status, body, server_time)

    async def initiate_challenge(
        self,
        transaction_ref: TransactionRef,
        method: ChallengeMethod,
        option_id: Optional[int] = None
    ) -> Union[ChallengeInitiation, Failure]:
        path = '/auth/mfa/initiate'
        request = {
            'context_id': transaction_ref.context_id,
            'transaction_id': transaction_ref.transaction_id,
            'method': method.value
        }
        if option_id is not None:
            request['mfa_option_id'] = option_id

        status, body, _ = await self._make_request('POST', path, request)
        if status >= 500:
            raise TransportError(
                f"Server error ({status}) on {path}",
                error_code=ErrorCode.NETWORK_SERVER_ERROR,
                status=status
            )

        result = parse_challenge_initiation(body)
        if result is None:
            raise TransportError(
                f"Challenge initiation rejected ({status})",
                error_code=ErrorCode.NETWORK_REQUEST_REJECTED,
                retryable=False,
                status=status
            )
        return result

    async def verify_challenge(
        self,
        transaction_ref: TransactionRef,
        method: ChallengeMethod,
        proof: Optional[str] = None
    ) -> Outcome:
        if method is ChallengeMethod.OTP:
            path = '/auth/mfa/otp/verify'
            request = {
                'context_id': transaction_ref.context_id,
                'transaction_id': transaction_ref.transaction_id,
                'code': proof
            }
        else:
            path = f'/auth/mfa/transactions/{transaction_ref.transaction_id}'
            request = {'context_id': transaction_ref.context_id}

        status, body, server_time = await self._make_request('POST', path, request)
        return self._to_outcome(path, status, body, server_time, fallback_ref=transaction_ref)

    async def accept_esign(self, transaction_ref: TransactionRef, document_ref: str) -> Outcome:
        path = '/auth/esign/accept'
        status, body, server_time = await self._make_request('POST', path, {
            'context_id': transaction_ref.context_id,
            'transaction_id': transaction_ref.transaction_id,
            'document_id': document_ref
        })
        return self._to_outcome(path, status, body, server_time, fallback_ref=transaction_ref)

    async def decline_esign(
        self,
        transaction_ref: TransactionRef,
        document_ref: str,
        reason: Optional[str] = None
    ) -> Outcome:
        path = '/auth/esign/decline'
        status, body, server_time = await self._make_request('POST', path, {
            'context_id': transaction_ref.context_id,
            'transaction_id': transaction_ref.transaction_id,
            'document_id': document_ref,
            'reason': reason
        })
        if status < 400 and not body:
            return Failure(FailureKind.ESIGN_DECLINED, DEFAULT_FAILURE_MESSAGES[FailureKind.ESIGN_DECLINED])
        return self._to_outcome(path, status, body, server_time, fallback_ref=transaction_ref)

    async def bind_device(self, transaction_ref: TransactionRef, trust: bool) -> Outcome:
        path = '/auth/device/bind'
        status, body, server_time = await self._make_request('POST', path, {
            'context_id': transaction_ref.context_id,
            'transaction_id': transaction_ref.transaction_id,
            'bind_device': trust
        })
        return self._to_outcome(path, status, body, server_time, fallback_ref=transaction_ref)

    async def refresh(self) -> Outcome:
        path = '/auth/refresh'
        status, body, server_time = await self._make_request('POST', path)
        try:
            return self._to_outcome(path, status, body, server_time)
        except TransportError as e:
            if status == 401 and not e.retryable:
                return Failure(FailureKind.SESSION_EXPIRED, DEFAULT_FAILURE_MESSAGES[FailureKind.SESSION_EXPIRED])
            raise

    async def logout(self, access_token: Optional[str] = None) -> None:
        path = '/auth/logout'
        try:
            status, _, _ = await self._make_request('POST', path, access_token=access_token)
        finally:
            self.clear_cookies()
        self._raise_for_status(status, "Logout")

    async def get_user_info(self, access_token: str) -> Dict[str, Any]:
        status, body, _ = await self._make_request('GET', '/userinfo', access_token=access_token)
        self._raise_for_status(status, "User info request")
        if not isinstance(body, dict):
            raise ProtocolError("User info response is not a JSON object", status=status)
        return body

    async def list_sessions(self, access_token: str) -> List[SessionInfo]:
        status, body, _ = await self._make_request('GET', '/sessions', access_token=access_token)
        self._raise_for_status(status, "Session listing")
        return parse_sessions(body)

    async def revoke_session(self, access_token: str, session_id: str) -> None:
        path = f"/sessions/{quote(session_id, safe='')}"
        status, _, _ = await self._make_request('DELETE', path, access_token=access_token)
        self._raise_for_status(status, f"Revoking session {session_id}")

    async def verify_session(self, session_id: str, access_token: Optional[str] = None) -> SessionVerification:
        path = f"/session/verify?sessionId={quote(session_id, safe='')}"
        status, body, _ = await self._make_request('GET', path, access_token=access_token)
        self._raise_for_status(status, "Session verification")
        return parse_session_verification(body)

    def _raise_for_status(self, status: int, what: str) -> None:
        """Raise for an error status on calls that answer with data rather than an outcome."""
        if status >= 400:
            raise TransportError(
                f"{what} failed ({status})",
                error_code=ErrorCode.NETWORK_SERVER_ERROR if status >= 500 else ErrorCode.NETWORK_REQUEST_REJECTED,
                retryable=status >= 500,
                status=status
            )
