"""
Tests for the aiohttp Identity Service client.

Each test runs a small aiohttp application standing in for the Identity
Service and checks the requests the client sends and the outcomes it returns.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from jose import jwt

from ciam_shared.exceptions import TransportError, ProtocolError, ErrorCode
from ciam_shared.models import (
    Success, MfaRequired, Pending, Failure, FailureKind, ChallengeMethod,
    ChallengeInitiation, TransactionRef
)
from ciam_client.api_client import IdentityServiceClient


ACCESS_TOKEN = jwt.encode({'sub': 'alice'}, "test-secret-key", algorithm="HS256")
REF = TransactionRef('ctx-1', 'tx-1')


@asynccontextmanager
async def identity_service(*routes):
    """Run an Identity Service stand-in and yield a client pointed at it."""
    app = web.Application()
    app['requests'] = []
    app.router.add_routes(list(routes))
    server = TestServer(app)
    await server.start_server()
    client = IdentityServiceClient(str(server.make_url('')), timeout=5, app_id='test-app', app_version='9.9')
    try:
        yield client, app['requests']
    finally:
        await client.close()
        await server.close()


async def record(request):
    body = await request.json() if request.can_read_body else None
    request.app['requests'].append((request.method, request.path, body, dict(request.headers)))
    return body


class TestLogin:
    """Tests for the login request."""

    @pytest.mark.asyncio
    async def test_login_success(self):
        async def login(request):
            await record(request)
            response = web.json_response({'response_type_code': 'SUCCESS', 'access_token': ACCESS_TOKEN})
            response.set_cookie('refresh_token', 'rt-1', httponly=True)
            return response

        async with identity_service(web.post('/auth/login', login)) as (client, requests):
            outcome = await client.login('alice', 'secret')

        assert isinstance(outcome, Success)
        assert outcome.credential.subject == 'alice'
        method, path, body, _ = requests[0]
        assert (method, path) == ('POST', '/auth/login')
        assert body == {'username': 'alice', 'password': 'secret', 'app_id': 'test-app', 'app_version': '9.9'}

    @pytest.mark.asyncio
    async def test_login_mfa_required(self):
        async def login(request):
            return web.json_response({
                'responseTypeCode': 'MFA_REQUIRED',
                'sessionId': 'ctx-1',
                'transactionId': 'tx-1',
                'availableMethods': ['OTP'],
            })

        async with identity_service(web.post('/auth/login', login)) as (client, _):
            outcome = await client.login('alice', 'secret')

        assert isinstance(outcome, MfaRequired)
        assert outcome.transaction_ref == REF

    @pytest.mark.asyncio
    async def test_invalid_credentials_on_401(self):
        async def login(request):
            return web.json_response({'error_code': 'CIAM_E01_01_001', 'message': 'Invalid username or password'},
                                     status=401)

        async with identity_service(web.post('/auth/login', login)) as (client, _):
            outcome = await client.login('bob', 'wrong')

        assert outcome == Failure(FailureKind.INVALID_CREDENTIALS, 'Invalid username or password')

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        async def login(request):
            return web.Response(status=503, text='<html>Service Unavailable</html>')

        async with identity_service(web.post('/auth/login', login)) as (client, _):
            with pytest.raises(TransportError) as exc_info:
                await client.login('alice', 'secret')

        assert exc_info.value.retryable is True
        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_unrecognized_client_error_is_not_retryable(self):
        async def login(request):
            return web.json_response({'error_code': 'BRAND_NEW_ERROR'}, status=400)

        async with identity_service(web.post('/auth/login', login)) as (client, _):
            with pytest.raises(TransportError) as exc_info:
                await client.login('alice', 'secret')

        assert exc_info.value.retryable is False
        assert exc_info.value.error_code is ErrorCode.NETWORK_REQUEST_REJECTED

    @pytest.mark.asyncio
    async def test_malformed_success_body(self):
        async def login(request):
            return web.Response(status=200, text='not json', content_type='application/json')

        async with identity_service(web.post('/auth/login', login)) as (client, _):
            with pytest.raises(ProtocolError):
                await client.login('alice', 'secret')

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        client = IdentityServiceClient('http://127.0.0.1:9', timeout=2)
        try:
            with pytest.raises(TransportError) as exc_info:
                await client.login('alice', 'secret')
        finally:
            await client.close()

        assert exc_info.value.retryable is True


    @pytest.mark.asyncio
    async def test_malformed_field_is_protocol_error(self):
        async def login(request):
            return web.json_response({
                'response_type_code': 'SUCCESS',
                'access_token': ACCESS_TOKEN,
                'expires_in': 'fifteen minutes',
            })

        async with identity_service(web.post('/auth/login', login)) as (client, _):
            with pytest.raises(ProtocolError) as exc_info:
                await client.login('alice', 'secret')

        assert exc_info.value.retryable is True


class TestChallenges:
    """Tests for challenge initiation and verification requests."""

    @pytest.mark.asyncio
    async def test_initiate_push(self):
        async def initiate(request):
            await record(request)
            return web.json_response({
                'success': True,
                'transaction_id': 'tx-push',
                'expires_at': '2024-05-01T12:02:00Z',
                'display_number': 42,
            })

        async with identity_service(web.post('/auth/mfa/initiate', initiate)) as (client, requests):
            result = await client.initiate_challenge(REF, ChallengeMethod.PUSH)

        assert isinstance(result, ChallengeInitiation)
        assert result.display_value == 42
        assert requests[0][2] == {'context_id': 'ctx-1', 'transaction_id': 'tx-1', 'method': 'push'}

    @pytest.mark.asyncio
    async def test_initiate_otp_with_option(self):
        async def initiate(request):
            await record(request)
            return web.json_response({'success': True, 'transaction_id': 'tx-otp'})

        async with identity_service(web.post('/auth/mfa/initiate', initiate)) as (client, requests):
            await client.initiate_challenge(REF, ChallengeMethod.OTP, option_id=2)

        assert requests[0][2]['mfa_option_id'] == 2

    @pytest.mark.asyncio
    async def test_verify_otp(self):
        async def verify(request):
            await record(request)
            return web.json_response({'error_code': 'INVALID_MFA_CODE'}, status=400)

        async with identity_service(web.post('/auth/mfa/otp/verify', verify)) as (client, requests):
            outcome = await client.verify_challenge(REF, ChallengeMethod.OTP, '000000')

        assert outcome.kind is FailureKind.INVALID_PROOF
        assert requests[0][2] == {'context_id': 'ctx-1', 'transaction_id': 'tx-1', 'code': '000000'}

    @pytest.mark.asyncio
    async def test_push_status_uses_server_date(self):
        async def status(request):
            await record(request)
            return web.json_response(
                {'challenge_status': 'PENDING', 'expires_at': '2024-05-01T12:02:00Z', 'retry_after': 2000},
                headers={'Date': 'Wed, 01 May 2024 12:01:00 GMT'}
            )

        async with identity_service(web.post('/auth/mfa/transactions/{transaction_id}', status)) as (client, requests):
            outcome = await client.verify_challenge(REF, ChallengeMethod.PUSH)

        assert isinstance(outcome, Pending)
        assert (outcome.expires_at - outcome.server_time).total_seconds() == 60
        assert outcome.retry_after == 2.0
        assert requests[0][1] == '/auth/mfa/transactions/tx-1'


class TestSessionRequests:
    """Tests for refresh, logout and user info."""

    @pytest.mark.asyncio
    async def test_refresh_sends_cookie_from_login(self):
        async def login(request):
            response = web.json_response({'response_type_code': 'SUCCESS', 'access_token': ACCESS_TOKEN})
            response.set_cookie('refresh_token', 'rt-1', httponly=True)
            return response

        async def refresh(request):
            if request.cookies.get('refresh_token') != 'rt-1':
                return web.json_response({'error_code': 'CIAM_E01_02_001'}, status=401)
            return web.json_response({'access_token': ACCESS_TOKEN, 'expires_in': 900})

        routes = (web.post('/auth/login', login), web.post('/auth/refresh', refresh))
        async with identity_service(*routes) as (client, _):
            before = await client.refresh()
            await client.login('alice', 'secret')
            after = await client.refresh()

        assert before.kind is FailureKind.SESSION_EXPIRED
        assert isinstance(after, Success)

    @pytest.mark.asyncio
    async def test_refresh_401_without_code_is_session_expired(self):
        async def refresh(request):
            return web.json_response({'detail': 'Unauthorized'}, status=401)

        async with identity_service(web.post('/auth/refresh', refresh)) as (client, _):
            outcome = await client.refresh()

        assert outcome.kind is FailureKind.SESSION_EXPIRED

    @pytest.mark.asyncio
    async def test_logout_sends_bearer_and_clears_cookies(self):
        async def login(request):
            response = web.json_response({'response_type_code': 'SUCCESS', 'access_token': ACCESS_TOKEN})
            response.set_cookie('refresh_token', 'rt-1', httponly=True)
            return response

        async def logout(request):
            await record(request)
            return web.Response(status=204)

        routes = (web.post('/auth/login', login), web.post('/auth/logout', logout))
        async with identity_service(*routes) as (client, requests):
            await client.login('alice', 'secret')
            await client.logout(ACCESS_TOKEN)
            remaining = len(client._session.cookie_jar)

        assert requests[0][3]['Authorization'] == f'Bearer {ACCESS_TOKEN}'
        assert remaining == 0

    @pytest.mark.asyncio
    async def test_logout_failure_raises(self):
        async def logout(request):
            return web.Response(status=500)

        async with identity_service(web.post('/auth/logout', logout)) as (client, _):
            with pytest.raises(TransportError):
                await client.logout('token')

    @pytest.mark.asyncio
    async def test_user_info(self):
        async def userinfo(request):
            return web.json_response({'sub': 'alice', 'email': 'alice@example.com'})

        async with identity_service(web.get('/userinfo', userinfo)) as (client, _):
            info = await client.get_user_info(ACCESS_TOKEN)

        assert info['email'] == 'alice@example.com'

    @pytest.mark.asyncio
    async def test_user_info_rejected(self):
        async def userinfo(request):
            return web.json_response({'detail': 'Forbidden'}, status=403)

        async with identity_service(web.get('/userinfo', userinfo)) as (client, _):
            with pytest.raises(TransportError) as exc_info:
                await client.get_user_info(ACCESS_TOKEN)

        assert exc_info.value.status == 403
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_user_info_not_an_object(self):
        async def userinfo(request):
            return web.json_response(['alice'])

        async with identity_service(web.get('/userinfo', userinfo)) as (client, _):
            with pytest.raises(ProtocolError):
                await client.get_user_info(ACCESS_TOKEN)


class TestSessionManagement:
    """Tests for the session list, revocation and verification requests."""

    @pytest.mark.asyncio
    async def test_list_sessions(self):
        async def sessions(request):
            await record(request)
            return web.json_response({'sessions': [
                {'sessionId': 's-1', 'lastSeenAt': '2024-05-01T12:00:00Z', 'ipAddress': '10.0.0.1'},
                {'session_id': 's-2', 'user_agent': 'curl/8.0'},
            ]})

        async with identity_service(web.get('/sessions', sessions)) as (client, requests):
            result = await client.list_sessions(ACCESS_TOKEN)

        assert [s.session_id for s in result] == ['s-1', 's-2']
        assert result[0].ip_address == '10.0.0.1'
        assert result[0].last_seen_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        assert result[1].user_agent == 'curl/8.0'
        assert requests[0][3]['Authorization'] == f'Bearer {ACCESS_TOKEN}'

    @pytest.mark.asyncio
    async def test_list_sessions_unauthorized(self):
        async def sessions(request):
            return web.json_response({'detail': 'Unauthorized'}, status=401)

        async with identity_service(web.get('/sessions', sessions)) as (client, _):
            with pytest.raises(TransportError) as exc_info:
                await client.list_sessions('expired-token')

        assert exc_info.value.status == 401

    @pytest.mark.asyncio
    async def test_revoke_session(self):
        async def revoke(request):
            await record(request)
            return web.Response(status=204)

        async with identity_service(web.delete('/sessions/{session_id}', revoke)) as (client, requests):
            await client.revoke_session(ACCESS_TOKEN, 's-2')

        method, path, _, headers = requests[0]
        assert (method, path) == ('DELETE', '/sessions/s-2')
        assert headers['Authorization'] == f'Bearer {ACCESS_TOKEN}'

    @pytest.mark.asyncio
    async def test_revoke_unknown_session(self):
        async def revoke(request):
            return web.json_response({'detail': 'Not found'}, status=404)

        async with identity_service(web.delete('/sessions/{session_id}', revoke)) as (client, _):
            with pytest.raises(TransportError) as exc_info:
                await client.revoke_session(ACCESS_TOKEN, 's-9')

        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_verify_session(self):
        async def verify(request):
            request.app['requests'].append(request.query.get('sessionId'))
            return web.json_response({'isValid': False, 'message': 'Session revoked'})

        async with identity_service(web.get('/session/verify', verify)) as (client, requests):
            result = await client.verify_session('s 1', ACCESS_TOKEN)

        assert result.valid is False
        assert result.message == 'Session revoked'
        assert requests == ['s 1']
