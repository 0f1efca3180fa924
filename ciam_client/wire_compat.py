"""
Wire compatibility for Identity Service response bodies.

Three body variants are in the field: v1 and v2 use camelCase keys
(``responseTypeCode``, ``sessionId``, ``transactionId``), v3 uses snake_case
(``response_type_code``, ``context_id``, ``transaction_id``) and describes
the MFA methods as ``otp_methods`` plus ``mobile_approve_status``. Everything
here turns one of those bodies into a value of the outcome union, so no other
module needs to know which version answered.
"""

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Dict, Any, List, Union

from ciam_shared.exceptions import ProtocolError, ErrorCode
from ciam_shared.models import (
    Outcome, Success, MfaRequired, EsignRequired, DeviceBindRequired, Pending,
    Failure, FailureKind, ChallengeMethod, ChallengeInitiation, MfaOption,
    TransactionRef, SessionInfo, SessionVerification, DEFAULT_FAILURE_MESSAGES
)
from ciam_client.auth.token_store import credential_from_tokens

logger = logging.getLogger(__name__)


ERROR_CODE_MAP: Dict[str, FailureKind] = {
    'CIAM_E01_01_001': FailureKind.INVALID_CREDENTIALS,
    'INVALID_CREDENTIALS': FailureKind.INVALID_CREDENTIALS,
    'CIAM_E01_01_002': FailureKind.ACCOUNT_LOCKED,
    'ACCOUNT_LOCKED': FailureKind.ACCOUNT_LOCKED,
    'CIAM_E01_01_005': FailureKind.MFA_LOCKED,
    'MFA_LOCKED': FailureKind.MFA_LOCKED,
    'MISSING_CREDENTIALS': FailureKind.MISSING_CREDENTIALS,
    'INVALID_MFA_CODE': FailureKind.INVALID_PROOF,
    'PUSH_REJECTED': FailureKind.CHALLENGE_REJECTED,
    'TRANSACTION_EXPIRED': FailureKind.CHALLENGE_EXPIRED,
    'TRANSACTION_NOT_FOUND': FailureKind.TRANSACTION_NOT_FOUND,
    'INVALID_TRANSACTION': FailureKind.TRANSACTION_NOT_FOUND,
    'CHALLENGE_NOT_FOUND': FailureKind.TRANSACTION_NOT_FOUND,
    'ESIGN_DECLINED': FailureKind.ESIGN_DECLINED,
    # refresh cookie missing or rejected
    'CIAM_E01_02_001': FailureKind.SESSION_EXPIRED,
    'CIAM_E01_02_002': FailureKind.SESSION_EXPIRED,
    'SESSION_EXPIRED': FailureKind.SESSION_EXPIRED,
}

_CHALLENGE_STATUS_FAILURES = {
    'REJECTED': FailureKind.CHALLENGE_REJECTED,
    'EXPIRED': FailureKind.CHALLENGE_EXPIRED,
}

# conversions of a present but malformed field raise one of these
FIELD_ERRORS = (ValueError, TypeError, OverflowError, OSError)


def _pick(body: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present, non-None value among ``keys``."""
    for key in keys:
        value = body.get(key)
        if value is not None:
            return value
    return default


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string or an epoch number (seconds or milliseconds).

    Returns:
        Timezone-aware datetime, or None for empty or unreadable values
    """
    if value is None or value == '':
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        logger.debug(f"Unreadable timestamp in response: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an HTTP ``Date`` header."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def response_type(body: Dict[str, Any]) -> Optional[str]:
    return _pick(body, 'response_type_code', 'responseTypeCode')


def error_code(body: Dict[str, Any]) -> Optional[str]:
    code = _pick(body, 'error_code', 'errorCode', 'error', 'code')
    return code if isinstance(code, str) else None


def transaction_ref(body: Dict[str, Any], fallback: Optional[TransactionRef] = None) -> TransactionRef:
    """
    Read the context and transaction identifiers of a multi-step outcome.

    Args:
        body: Response body
        fallback: Reference to reuse for identifiers the body leaves out

    Raises:
        ProtocolError: If neither the body nor the fallback provide an identifier
    """
    context_id = _pick(body, 'context_id', 'contextId', 'sessionId', 'session_id')
    transaction_id = _pick(body, 'transaction_id', 'transactionId')

    if fallback is not None:
        context_id = context_id or fallback.context_id
        transaction_id = transaction_id or fallback.transaction_id

    if not context_id and not transaction_id:
        raise ProtocolError("Response is missing context and transaction identifiers")

    return TransactionRef(context_id=context_id or '', transaction_id=transaction_id or '')


def parse_methods(body: Dict[str, Any]) -> List[ChallengeMethod]:
    """Read the offered MFA methods from either method list format."""
    methods: List[ChallengeMethod] = []

    available = _pick(body, 'available_methods', 'availableMethods')
    if isinstance(available, list):
        for name in available:
            try:
                method = ChallengeMethod(str(name).lower())
            except ValueError:
                logger.debug(f"Ignoring unknown MFA method: {name}")
                continue
            if method not in methods:
                methods.append(method)
        return methods

    if _pick(body, 'otp_methods', 'otpMethods'):
        methods.append(ChallengeMethod.OTP)
    if _pick(body, 'mobile_approve_status', 'mobileApproveStatus') == 'ENABLED':
        methods.append(ChallengeMethod.PUSH)
    return methods


def parse_otp_options(body: Dict[str, Any]) -> List[MfaOption]:
    options = []
    for entry in _pick(body, 'otp_methods', 'otpMethods', default=[]) or []:
        if isinstance(entry, dict) and entry.get('value'):
            options.append(MfaOption(
                value=str(entry['value']),
                option_id=_pick(entry, 'mfa_option_id', 'mfaOptionId')
            ))
    return options


def failure_from_code(code: str, message: Optional[str] = None) -> Optional[Failure]:
    """Map a service error code to a Failure, or None if the code is not recognized."""
    kind = ERROR_CODE_MAP.get(code)
    if kind is None:
        return None
    return Failure(kind=kind, message=message or DEFAULT_FAILURE_MESSAGES[kind])


def _success(body: Dict[str, Any], user_info: Optional[Dict[str, Any]] = None) -> Success:
    access_token = _pick(body, 'access_token', 'accessToken')
    if not access_token:
        raise ProtocolError("Success response carries no access token")
    return Success(credential=credential_from_tokens(
        access_token=access_token,
        id_token=_pick(body, 'id_token', 'idToken'),
        token_type=_pick(body, 'token_type', 'tokenType'),
        expires_in=_pick(body, 'expires_in', 'expiresIn'),
        user_info=user_info
    ))


def _pending(body: Dict[str, Any], server_time: Optional[datetime]) -> Pending:
    retry_after = _pick(body, 'retry_after', 'retryAfter')
    if retry_after is not None:
        # milliseconds on the wire
        retry_after = float(retry_after) / 1000.0
    return Pending(
        expires_at=parse_timestamp(_pick(body, 'expires_at', 'expiresAt')),
        server_time=server_time,
        retry_after=retry_after
    )


def parse_outcome(
    body: Any,
    server_time: Optional[datetime] = None,
    fallback_ref: Optional[TransactionRef] = None
) -> Optional[Outcome]:
    """
    Normalize a response body into the outcome union.

    Args:
        body: Decoded JSON body
        server_time: Server clock reading taken from the response, if any
        fallback_ref: Reference of the request, used when the body omits identifiers

    Returns:
        The outcome, or None when the body carries an error code that is not
        recognized (the caller decides how to classify the HTTP status)

    Raises:
        ProtocolError: If the body is not an object or is internally inconsistent
    """
    if not isinstance(body, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(body).__name__}")
    try:
        return _parse_outcome(body, server_time, fallback_ref)
    except FIELD_ERRORS as e:
        raise ProtocolError(f"Malformed field in response: {e}", cause=e)


def _parse_outcome(
    body: Dict[str, Any],
    server_time: Optional[datetime],
    fallback_ref: Optional[TransactionRef]
) -> Optional[Outcome]:
    kind = response_type(body)
    message = body.get('message')

    if kind == 'SUCCESS':
        return _success(body)

    if kind == 'MFA_REQUIRED':
        methods = parse_methods(body)
        if not methods:
            raise ProtocolError("MFA required but no usable method offered")
        return MfaRequired(
            methods=methods,
            transaction_ref=transaction_ref(body, fallback_ref),
            otp_options=parse_otp_options(body)
        )

    if kind == 'ESIGN_REQUIRED':
        document_ref = _pick(body, 'esign_document_id', 'esignDocumentId', 'document_id', 'documentId')
        if not document_ref:
            raise ProtocolError("eSign required but no document identifier given")
        return EsignRequired(
            document_ref=str(document_ref),
            transaction_ref=transaction_ref(body, fallback_ref),
            document_url=_pick(body, 'esign_url', 'esignUrl'),
            mandatory=bool(_pick(body, 'is_mandatory', 'isMandatory', default=True))
        )

    if kind == 'DEVICE_BIND_REQUIRED':
        return DeviceBindRequired(transaction_ref=transaction_ref(body, fallback_ref))

    if kind == 'MFA_PENDING':
        return _pending(body, server_time)

    if kind is not None and kind in ERROR_CODE_MAP:
        return failure_from_code(kind, message)

    status = _pick(body, 'challenge_status', 'challengeStatus')
    if isinstance(status, str):
        status = status.upper()
        if status == 'PENDING':
            return _pending(body, server_time)
        if status in _CHALLENGE_STATUS_FAILURES:
            failure_kind = _CHALLENGE_STATUS_FAILURES[status]
            return Failure(kind=failure_kind, message=message or DEFAULT_FAILURE_MESSAGES[failure_kind])
        if status == 'APPROVED':
            return _success(body)

    code = error_code(body)
    if code is not None:
        failure = failure_from_code(code, message)
        if failure is None:
            logger.debug(f"Unrecognized error code from Identity Service: {code}")
        return failure

    if _pick(body, 'access_token', 'accessToken'):
        # v1 success bodies sometimes omit the type code
        return _success(body)

    raise ProtocolError(
        f"Unknown response type: {kind!r}",
        error_code=ErrorCode.PROTOCOL_UNKNOWN_RESPONSE_TYPE
    )


def parse_challenge_initiation(body: Any) -> Union[ChallengeInitiation, Failure, None]:
    """
    Normalize the answer to a challenge initiation.

    Returns:
        ChallengeInitiation on success, Failure for a recognized error code,
        None for an unrecognized error code

    Raises:
        ProtocolError: If the body is malformed
    """
    if not isinstance(body, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(body).__name__}")

    code = error_code(body)
    if body.get('success') is False or (code and not _pick(body, 'transaction_id', 'transactionId')):
        return failure_from_code(code, body.get('message')) if code else None

    transaction_id = _pick(body, 'transaction_id', 'transactionId')
    if not transaction_id:
        raise ProtocolError("Challenge initiation response has no transaction identifier")

    display_value = _pick(body, 'display_number', 'displayNumber')
    selected_value = _pick(body, 'selected_number', 'selectedNumber')
    try:
        return ChallengeInitiation(
            transaction_id=str(transaction_id),
            expires_at=parse_timestamp(_pick(body, 'expires_at', 'expiresAt')),
            display_value=int(display_value) if display_value is not None else None,
            selected_value=int(selected_value) if selected_value is not None else None
        )
    except FIELD_ERRORS as e:
        raise ProtocolError(f"Malformed challenge initiation: {e}", cause=e)


def _session_info(entry: Any) -> SessionInfo:
    if not isinstance(entry, dict):
        raise ProtocolError(f"Expected a session object, got {type(entry).__name__}")
    session_id = _pick(entry, 'session_id', 'sessionId', 'id')
    if not session_id:
        raise ProtocolError("Session entry has no identifier")
    return SessionInfo(
        session_id=str(session_id),
        created_at=parse_timestamp(_pick(entry, 'created_at', 'createdAt')),
        last_seen_at=parse_timestamp(_pick(entry, 'last_seen_at', 'lastSeenAt')),
        device_id=_pick(entry, 'device_id', 'deviceId'),
        ip_address=_pick(entry, 'ip_address', 'ipAddress', 'ip'),
        user_agent=_pick(entry, 'user_agent', 'userAgent'),
        location=_pick(entry, 'location')
    )


def parse_sessions(body: Any) -> List[SessionInfo]:
    """
    Normalize the session list of the authenticated user.

    Raises:
        ProtocolError: If the body has no session list or an entry is malformed
    """
    sessions = _pick(body, 'sessions') if isinstance(body, dict) else None
    if not isinstance(sessions, list):
        raise ProtocolError("Session list response has no sessions array")
    try:
        return [_session_info(entry) for entry in sessions]
    except FIELD_ERRORS as e:
        raise ProtocolError(f"Malformed session entry: {e}", cause=e)


def parse_session_verification(body: Any) -> SessionVerification:
    if not isinstance(body, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(body).__name__}")
    valid = _pick(body, 'is_valid', 'isValid', 'valid')
    if not isinstance(valid, bool):
        raise ProtocolError("Session verification response has no validity flag")
    try:
        expires_at = parse_timestamp(_pick(body, 'expires_at', 'expiresAt'))
    except FIELD_ERRORS as e:
        raise ProtocolError(f"Malformed session verification: {e}", cause=e)
    return SessionVerification(valid=valid, message=body.get('message'), expires_at=expires_at)
