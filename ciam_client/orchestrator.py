"""
Session orchestrator for the CIAM login handshake.

The orchestrator is the only owner of the session state. It sequences
password login, multi-factor challenge, eSign and device binding against the
Identity Service, keeps the access credential fresh, and reports progress to
its caller through registered callbacks.

All transitions happen on the event loop thread in reaction to an awaited
call or a timer. Every awaited call captures the flow epoch; a result that
comes back after logout, cancel_challenge or a new login is discarded.
"""

import asyncio
import logging
from typing import Optional, List, Callable, Any, Awaitable, Tuple

from ciam_shared.exceptions import (
    CiamClientError, TransportError, RetryExhaustedError, InvalidSessionStateError,
    StorageError, ErrorCode, handle_exception
)
from ciam_shared.interfaces import IIdentityService, IPendingLoginStore, IUsernameStore
from ciam_shared.logging_config import AuditLogger, AuditEventType, log_structured_error
from ciam_shared.models import (
    SessionState, Credential, ChallengeMethod, ChallengeStatus, MfaOption,
    TransactionRef, Transaction, PendingLoginContext, ErrorState, FailureKind,
    EsignDocument, Outcome, Success, MfaRequired, EsignRequired,
    DeviceBindRequired, Pending, Failure, ChallengeInitiation, SessionInfo,
    utc_now, DEFAULT_FAILURE_MESSAGES
)
from ciam_client.auth.token_store import TokenStore, merge_user_info
from ciam_client.auth.pending_login import PendingLoginStore, RememberedUsernameStore
from ciam_client.challenge_poller import ChallengePoller
from ciam_client.retry_transport import RetryTransport, RetryConfig, Urgency
from ciam_client.scheduling import CancellableTimer, cancel_task

logger = logging.getLogger(__name__)


# Failures after which the login flow cannot continue and must restart from the password step.
FLOW_ENDING_FAILURES = frozenset({
    FailureKind.INVALID_CREDENTIALS,
    FailureKind.ACCOUNT_LOCKED,
    FailureKind.MFA_LOCKED,
    FailureKind.MISSING_CREDENTIALS,
    FailureKind.TRANSACTION_NOT_FOUND,
    FailureKind.ESIGN_DECLINED,
    FailureKind.SESSION_EXPIRED,
})


class SessionOrchestrator:
    """
    State machine driving one user session.

    Construct one instance per session and hand it to every consumer; there is
    no module-level instance.
    """

    # floor for the automatic refresh loop so a token that is always "about to expire" cannot spin
    min_refresh_delay = 1.0

    def __init__(
        self,
        identity_service: IIdentityService,
        transport: Optional[RetryTransport] = None,
        token_store: Optional[TokenStore] = None,
        pending_store: Optional[IPendingLoginStore] = None,
        username_store: Optional[IUsernameStore] = None,
        audit_logger: Optional[AuditLogger] = None,
        poll_interval: float = 2.0,
        invalid_proof_reset_delay: float = 2.0,
        auto_refresh: bool = False,
        refresh_threshold: float = 60.0,
        refresh_interval: float = 300.0
    ):
        self._identity = identity_service
        self._transport = transport or RetryTransport()
        self._tokens = token_store or TokenStore()
        self._pending_store = pending_store or PendingLoginStore()
        self._username_store = username_store or RememberedUsernameStore()
        self._audit = audit_logger or AuditLogger()

        self.poll_interval = poll_interval
        self.invalid_proof_reset_delay = invalid_proof_reset_delay
        self.auto_refresh = auto_refresh
        self.refresh_threshold = refresh_threshold
        self.refresh_interval = refresh_interval

        self._state = SessionState.UNAUTHENTICATED
        self._error: Optional[ErrorState] = None

        # Flow state
        self._epoch = 0
        self._authenticated_notified = False
        self._flow_ref: Optional[TransactionRef] = None
        self._methods: List[ChallengeMethod] = []
        self._otp_options: List[MfaOption] = []
        self._transaction: Optional[Transaction] = None
        self._esign: Optional[EsignDocument] = None
        # (operation, epoch) of the awaited call in progress, if any
        self._in_flight: Optional[Tuple[str, int]] = None
        self._reset_timer: Optional[CancellableTimer] = None

        # Refresh state
        self._refresh_task: Optional[asyncio.Task] = None
        self._auto_refresh_task: Optional[asyncio.Task] = None

        self._poller = ChallengePoller(
            fetch=self._fetch_challenge_status,
            on_update=self._on_challenge_pending,
            on_terminal=self._on_challenge_terminal
        )

        # Callbacks
        self._authenticated_callbacks: List[Callable[[Credential], None]] = []
        self._error_callbacks: List[Callable[[ErrorState], None]] = []
        self._session_expired_callbacks: List[Callable[[ErrorState], None]] = []
        self._state_change_callbacks: List[Callable[[SessionState, SessionState], None]] = []
        self._challenge_update_callbacks: List[Callable[[Transaction], None]] = []
        self._logout_callbacks: List[Callable[[], None]] = []

        logger.info("Session orchestrator initialized")

    @classmethod
    def from_config(
        cls,
        config,
        identity_service: IIdentityService,
        use_keyring: bool = True
    ) -> "SessionOrchestrator":
        """
        Build an orchestrator wired to the stores and policies named in ``config``.

        Args:
            config: ClientConfiguration instance
            identity_service: Identity Service implementation
            use_keyring: Whether the pending-login key may live in the system keyring
        """
        storage_dir = config.get_storage_dir()
        return cls(
            identity_service=identity_service,
            transport=RetryTransport(RetryConfig.from_config(config)),
            pending_store=PendingLoginStore(storage_dir, config.get_keyring_service(), use_keyring),
            username_store=RememberedUsernameStore(storage_dir),
            poll_interval=config.get_poll_interval(),
            invalid_proof_reset_delay=config.get_invalid_proof_reset_delay(),
            auto_refresh=config.is_auto_refresh_enabled(),
            refresh_threshold=config.get_refresh_threshold(),
            refresh_interval=config.get_refresh_interval()
        )

    # Callback registration

    def add_authenticated_callback(self, callback: Callable[[Credential], None]) -> None:
        """
        Add callback fired once per flow when the session becomes authenticated.

        Args:
            callback: Function called with the new credential
        """
        self._authenticated_callbacks.append(callback)

    def add_error_callback(self, callback: Callable[[ErrorState], None]) -> None:
        self._error_callbacks.append(callback)

    def add_session_expired_callback(self, callback: Callable[[ErrorState], None]) -> None:
        self._session_expired_callbacks.append(callback)

    def add_state_change_callback(self, callback: Callable[[SessionState, SessionState], None]) -> None:
        """
        Add callback for session state changes.

        Args:
            callback: Function called with (old_state, new_state)
        """
        self._state_change_callbacks.append(callback)

    def add_challenge_update_callback(self, callback: Callable[[Transaction], None]) -> None:
        self._challenge_update_callbacks.append(callback)

    def add_logout_callback(self, callback: Callable[[], None]) -> None:
        self._logout_callbacks.append(callback)

    def _notify(self, callbacks: List[Callable], *args: Any) -> None:
        for callback in list(callbacks):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Error in session callback {getattr(callback, '__name__', callback)}: {e}")

    # Read-only view

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def credential(self) -> Optional[Credential]:
        return self._tokens.get()

    @property
    def transaction(self) -> Optional[Transaction]:
        return self._transaction

    @property
    def error_state(self) -> Optional[ErrorState]:
        return self._error

    @property
    def available_methods(self) -> List[ChallengeMethod]:
        return list(self._methods)

    @property
    def otp_options(self) -> List[MfaOption]:
        return list(self._otp_options)

    @property
    def esign_document(self) -> Optional[EsignDocument]:
        return self._esign

    @property
    def pending_login(self) -> Optional[PendingLoginContext]:
        try:
            return self._pending_store.get()
        except StorageError as e:
            log_structured_error(logger, e)
            return None

    @property
    def remembered_username(self) -> Optional[str]:
        try:
            return self._username_store.get()
        except StorageError as e:
            log_structured_error(logger, e)
            return None

    @property
    def is_authenticated(self) -> bool:
        return self._state is SessionState.AUTHENTICATED

    # State helpers

    def _require_state(self, operation: str, *allowed: SessionState) -> None:
        if self._state not in allowed:
            raise InvalidSessionStateError(operation, self._state.value)

    def _set_state(self, new_state: SessionState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        logger.info(f"Session state: {old_state.value} -> {new_state.value}")
        self._notify(self._state_change_callbacks, old_state, new_state)

    def _set_error(self, error: ErrorState, state: Optional[SessionState] = None) -> None:
        self._error = error
        if state is not None:
            self._set_state(state)
        logger.warning(f"Session error {error.kind.value}: {error.message}")
        self._notify(self._error_callbacks, error)

    def _begin_flow(self) -> int:
        """Invalidate everything belonging to the previous flow and start a new one."""
        self._epoch += 1
        self._authenticated_notified = False
        self._clear_flow()
        self._error = None
        return self._epoch

    def _clear_flow(self) -> None:
        """Drop challenge, eSign and device-bind context. Credential and pending context untouched."""
        self._poller.stop()
        self._cancel_reset_timer()
        self._transaction = None
        self._flow_ref = None
        self._methods = []
        self._otp_options = []
        self._esign = None

    def _clear_transaction(self) -> None:
        self._poller.stop()
        self._transaction = None

    def _cancel_reset_timer(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None

    def _is_stale(self, epoch: int, operation: str) -> bool:
        if epoch != self._epoch:
            logger.debug(f"Discarding stale {operation} result")
            return True
        return False

    def _is_in_flight(self, operation: Optional[str] = None) -> bool:
        """True while a call of the current flow is awaited. Calls of an abandoned flow do not count."""
        if self._in_flight is None or self._in_flight[1] != self._epoch:
            return False
        return operation is None or self._in_flight[0] == operation

    def _enter_operation(self, operation: str) -> Tuple[str, int]:
        if self._is_in_flight():
            raise InvalidSessionStateError(
                operation, f"{self._state.value} ({self._in_flight[0]} in progress)"
            )
        self._in_flight = (operation, self._epoch)
        return self._in_flight

    def _leave_operation(self, in_flight: Tuple[str, int]) -> None:
        if self._in_flight is in_flight:
            self._in_flight = None

    # Pending-login context

    def _store_pending(self, context: PendingLoginContext) -> None:
        try:
            self._pending_store.set(context)
        except StorageError as e:
            log_structured_error(logger, e)

    def _clear_pending(self) -> None:
        try:
            self._pending_store.clear()
        except StorageError as e:
            log_structured_error(logger, e)

    def _apply_remember_choice(self) -> None:
        """Save or forget the username according to the pending-login context."""
        context = self.pending_login
        if context is None:
            return
        try:
            if context.remember_username:
                self._username_store.save(context.username)
            else:
                self._username_store.remove()
        except StorageError as e:
            log_structured_error(logger, e)

    def _pending_username(self) -> Optional[str]:
        context = self.pending_login
        return context.username if context else None

    # Identity Service calls

    async def _call(self, operation: Callable[[], Awaitable[Any]], urgency: Urgency, description: str) -> Any:
        """
        Run one Identity Service call under the retry policy for ``urgency``.

        Whatever the call raises comes out as a CiamClientError, so a step can
        always classify the failure and leave its in-progress state. A Success
        has its profile completed from the user info endpoint.
        """
        try:
            result = await self._transport.call(operation, urgency, description)
        except CiamClientError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error during {description}: {e}")
            raise handle_exception(e, context={'operation': description}) from e

        if isinstance(result, Success):
            result = await self._load_profile(result)
        return result

    async def _load_profile(self, outcome: Success) -> Success:
        """Merge /userinfo claims into a new credential. A failed lookup keeps the token claims."""
        credential = outcome.credential
        try:
            user_info = await self._transport.call(
                lambda: self._identity.get_user_info(credential.access_token),
                Urgency.POLL,
                "user info"
            )
        except Exception as e:
            logger.warning(f"User info unavailable, using token claims: {e}")
            return outcome
        return Success(merge_user_info(credential, user_info))

    # Error classification

    def _classify_transport_error(self, error: CiamClientError) -> Failure:
        if isinstance(error, RetryExhaustedError) or (isinstance(error, TransportError) and error.retryable):
            kind = FailureKind.NETWORK_UNAVAILABLE
        else:
            kind = FailureKind.SERVICE_ERROR
        log_structured_error(logger, error)
        return Failure(kind, DEFAULT_FAILURE_MESSAGES[kind])

    # Outcome handling shared by every step

    def _apply_outcome(self, outcome: Outcome, step: str) -> Outcome:
        """
        Transition on an outcome returned by login, challenge verification,
        eSign acceptance or device binding.
        """
        username = self._pending_username()
        if isinstance(outcome, Success):
            self._complete(outcome.credential)
        elif isinstance(outcome, MfaRequired):
            self._clear_transaction()
            self._flow_ref = outcome.transaction_ref
            self._methods = list(outcome.methods)
            self._otp_options = list(outcome.otp_options)
            self._error = None
            self._set_state(SessionState.MFA_PENDING)
        elif isinstance(outcome, EsignRequired):
            self._clear_transaction()
            self._flow_ref = outcome.transaction_ref
            self._esign = EsignDocument(
                document_ref=outcome.document_ref,
                transaction_ref=outcome.transaction_ref,
                document_url=outcome.document_url,
                mandatory=outcome.mandatory
            )
            self._error = None
            self._set_state(SessionState.ESIGN_PENDING)
        elif isinstance(outcome, DeviceBindRequired):
            self._clear_transaction()
            self._flow_ref = outcome.transaction_ref
            self._esign = None
            self._error = None
            self._set_state(SessionState.DEVICE_BIND_PENDING)
        elif isinstance(outcome, Pending):
            logger.debug(f"{step} still pending")
        elif isinstance(outcome, Failure):
            self._apply_failure(outcome, step)
        else:
            raise TypeError(f"Unsupported outcome {outcome!r}")

        self._audit.log_login_outcome(
            username,
            outcome.outcome_type.value.lower(),
            outcome.kind.value if isinstance(outcome, Failure) else None
        )
        return outcome

    def _apply_failure(self, failure: Failure, step: str) -> None:
        error = failure.to_error_state()

        if failure.kind is FailureKind.INVALID_PROOF:
            self._transaction = None
            self._set_error(error, SessionState.ERROR)
            self._schedule_invalid_proof_reset()
            return

        if failure.kind in (FailureKind.CHALLENGE_REJECTED, FailureKind.CHALLENGE_EXPIRED):
            # method selection stays available through cancel_challenge
            method = self._transaction.method.value if self._transaction else 'unknown'
            transaction_id = self._transaction.transaction_id if self._transaction else None
            event = (AuditEventType.MFA_REJECTED if failure.kind is FailureKind.CHALLENGE_REJECTED
                     else AuditEventType.MFA_EXPIRED)
            self._audit.log_mfa(event, method, transaction_id, self._pending_username())
            self._clear_transaction()
            self._set_error(error, SessionState.ERROR)
            return

        if failure.kind not in FLOW_ENDING_FAILURES:
            logger.warning(f"Failure {failure.kind.value} during {step}, restarting login")
        self._clear_flow()
        self._clear_pending()
        self._set_error(error, SessionState.ERROR)

    def _complete(self, credential: Credential, update_remembered: bool = True) -> None:
        """Single entry into AUTHENTICATED for a flow."""
        self._tokens.set(credential)
        self._clear_flow()
        if update_remembered:
            self._apply_remember_choice()
        self._clear_pending()
        self._error = None
        self._set_state(SessionState.AUTHENTICATED)

        if not self._authenticated_notified:
            self._authenticated_notified = True
            logger.info(f"Authenticated as {credential.subject}")
            self._notify(self._authenticated_callbacks, credential)
        else:
            logger.debug("Flow already reported authenticated")

        if self.auto_refresh:
            self.start_auto_refresh()

    def _schedule_invalid_proof_reset(self) -> None:
        self._cancel_reset_timer()
        epoch = self._epoch
        self._reset_timer = CancellableTimer(
            self.invalid_proof_reset_delay,
            lambda: self._reset_after_invalid_proof(epoch),
            name="invalid-proof-reset"
        )

    def _reset_after_invalid_proof(self, epoch: int) -> None:
        self._reset_timer = None
        if self._is_stale(epoch, "invalid proof reset") or self._state is not SessionState.ERROR:
            return
        logger.info("Resetting login after invalid verification code")
        self._clear_flow()
        self._clear_pending()
        self._set_state(SessionState.UNAUTHENTICATED)

    # Public operations

    async def login(self, username: str, password: str, remember_username: bool = False) -> Outcome:
        """
        Start a new login flow.

        Args:
            username: Username as entered
            password: Password as entered; never stored or logged
            remember_username: Whether to remember the username once the flow succeeds

        Returns:
            Success, MfaRequired, EsignRequired or Failure

        Raises:
            InvalidSessionStateError: If the session is not UNAUTHENTICATED or ERROR
        """
        self._require_state("log in", SessionState.UNAUTHENTICATED, SessionState.ERROR)
        in_flight = self._enter_operation("login")
        try:
            epoch = self._begin_flow()

            if not username or not password:
                failure = Failure(FailureKind.MISSING_CREDENTIALS,
                                  DEFAULT_FAILURE_MESSAGES[FailureKind.MISSING_CREDENTIALS])
                self._clear_pending()
                self._set_error(failure.to_error_state(), SessionState.ERROR)
                return failure

            self._store_pending(PendingLoginContext(username=username, remember_username=remember_username))
            self._set_state(SessionState.AUTHENTICATING)
            self._audit.log_login_attempt(username)

            try:
                outcome = await self._call(
                    lambda: self._identity.login(username, password),
                    Urgency.INTERACTIVE,
                    "login"
                )
            except CiamClientError as e:
                failure = self._classify_transport_error(e)
                if not self._is_stale(epoch, "login"):
                    self._clear_pending()
                    self._set_error(failure.to_error_state(), SessionState.ERROR)
                return failure

            if self._is_stale(epoch, "login"):
                return outcome
            if isinstance(outcome, Pending):
                logger.warning("Unexpected MFA_PENDING answer to login")
                outcome = Failure(FailureKind.SERVICE_ERROR, DEFAULT_FAILURE_MESSAGES[FailureKind.SERVICE_ERROR])
            return self._apply_outcome(outcome, "login")
        finally:
            self._leave_operation(in_flight)

    async def select_mfa_method(self, method: ChallengeMethod, option_id: Optional[int] = None) -> Optional[Transaction]:
        """
        Create a challenge transaction for the chosen method.

        Args:
            method: Challenge method, one of available_methods
            option_id: OTP delivery option, one of otp_options

        Returns:
            The new transaction (the challenge handle), or None when the
            challenge could not be created; error_state then says why

        Raises:
            InvalidSessionStateError: If the session is not MFA_PENDING or the
                method was not offered
        """
        self._require_state("select an MFA method", SessionState.MFA_PENDING)
        if method not in self._methods:
            raise InvalidSessionStateError(
                f"select MFA method {method.value}",
                self._state.value,
                error_code=ErrorCode.SESSION_WRONG_CHALLENGE_METHOD
            )
        if option_id is None and method is ChallengeMethod.OTP and self._otp_options:
            option_id = self._otp_options[0].option_id

        in_flight = self._enter_operation("select_mfa_method")
        try:
            epoch = self._epoch
            flow_ref = self._flow_ref
            try:
                result = await self._call(
                    lambda: self._identity.initiate_challenge(flow_ref, method, option_id),
                    Urgency.INTERACTIVE,
                    f"{method.value} challenge initiation"
                )
            except CiamClientError as e:
                failure = self._classify_transport_error(e)
                if not self._is_stale(epoch, "challenge initiation"):
                    self._set_error(failure.to_error_state())
                return None

            if self._is_stale(epoch, "challenge initiation"):
                return None

            if isinstance(result, Failure):
                if result.kind in FLOW_ENDING_FAILURES:
                    self._apply_failure(result, "challenge initiation")
                else:
                    self._set_error(result.to_error_state())
                return None

            return self._activate_challenge(method, result)
        finally:
            self._leave_operation(in_flight)

    def _activate_challenge(self, method: ChallengeMethod, initiation: ChallengeInitiation) -> Transaction:
        now = utc_now()
        transaction = Transaction(
            transaction_id=initiation.transaction_id,
            method=method,
            created_at=now,
            expires_at=initiation.expires_at,
            display_value=initiation.display_value,
            selected_value=initiation.selected_value,
            remaining_seconds=(initiation.expires_at - now).total_seconds() if initiation.expires_at else None
        )
        self._transaction = transaction
        self._error = None
        self._set_state(SessionState.CHALLENGE_ACTIVE)
        self._audit.log_mfa(AuditEventType.MFA_INITIATED, method.value, transaction.transaction_id,
                            self._pending_username())
        self._notify(self._challenge_update_callbacks, transaction)

        if method.is_polling:
            self._poller.start(transaction.transaction_id, self.poll_interval, transaction.expires_at)
        return transaction

    async def submit_challenge_proof(self, proof: str) -> Outcome:
        """
        Submit the code for the active OTP challenge.

        Returns:
            The verification outcome. An invalid code puts the session in
            ERROR and resets it to UNAUTHENTICATED after
            invalid_proof_reset_delay seconds unless cancel_challenge is called
            first.

        Raises:
            InvalidSessionStateError: If no OTP challenge is active
        """
        self._require_state("submit a challenge proof", SessionState.CHALLENGE_ACTIVE)
        transaction = self._transaction
        if transaction is None:
            raise InvalidSessionStateError(
                "submit a challenge proof", self._state.value,
                error_code=ErrorCode.SESSION_NO_ACTIVE_TRANSACTION
            )
        if transaction.method.is_polling:
            raise InvalidSessionStateError(
                f"submit a proof for a {transaction.method.value} challenge", self._state.value,
                error_code=ErrorCode.SESSION_WRONG_CHALLENGE_METHOD
            )

        in_flight = self._enter_operation("submit_challenge_proof")
        try:
            epoch = self._epoch
            ref = TransactionRef(self._flow_ref.context_id, transaction.transaction_id)
            try:
                outcome = await self._call(
                    lambda: self._identity.verify_challenge(ref, transaction.method, proof),
                    Urgency.INTERACTIVE,
                    "OTP verification"
                )
            except CiamClientError as e:
                failure = self._classify_transport_error(e)
                if not self._is_stale(epoch, "OTP verification"):
                    self._set_error(failure.to_error_state())
                return failure

            if self._is_stale(epoch, "OTP verification"):
                return outcome

            if not isinstance(outcome, Failure):
                transaction.status = ChallengeStatus.APPROVED
                self._audit.log_mfa(AuditEventType.MFA_VERIFIED, transaction.method.value,
                                    transaction.transaction_id, self._pending_username())
            return self._apply_outcome(outcome, "OTP verification")
        finally:
            self._leave_operation(in_flight)

    def cancel_challenge(self) -> None:
        """
        Abandon the active challenge and return to method selection.

        Always safe and idempotent. Pre-empts a pending invalid-code reset.
        The pending-login context is kept so the user can pick a method again.
        """
        has_mfa_context = bool(self._methods)
        cancellable = (
            self._transaction is not None
            or self._state is SessionState.CHALLENGE_ACTIVE
            or (self._state is SessionState.MFA_PENDING and self._is_in_flight("select_mfa_method"))
            or (self._state is SessionState.ERROR and has_mfa_context)
        )

        self._poller.stop()
        self._cancel_reset_timer()
        if not cancellable:
            logger.debug("No challenge to cancel")
            return

        self._epoch += 1
        if self._transaction is not None:
            self._transaction.status = ChallengeStatus.EXPIRED
            logger.info(f"Challenge {self._transaction.transaction_id} cancelled")
        self._transaction = None
        self._error = None
        self._set_state(SessionState.MFA_PENDING)

    async def respond_to_esign(self, accept: bool, reason: Optional[str] = None) -> Outcome:
        """
        Accept or decline the pending eSign document.

        Declining ends the flow: the session returns to UNAUTHENTICATED with an
        ESIGN_DECLINED error, and a fresh login is needed.

        Raises:
            InvalidSessionStateError: If the session is not ESIGN_PENDING
        """
        self._require_state("respond to eSign", SessionState.ESIGN_PENDING)
        document = self._esign

        in_flight = self._enter_operation("respond_to_esign")
        try:
            epoch = self._epoch
            if not accept:
                return await self._decline_esign(document, reason)

            try:
                outcome = await self._call(
                    lambda: self._identity.accept_esign(document.transaction_ref, document.document_ref),
                    Urgency.INTERACTIVE,
                    "eSign acceptance"
                )
            except CiamClientError as e:
                failure = self._classify_transport_error(e)
                if not self._is_stale(epoch, "eSign acceptance"):
                    self._set_error(failure.to_error_state())
                return failure

            if self._is_stale(epoch, "eSign acceptance"):
                return outcome
            if not isinstance(outcome, Failure):
                self._audit.log_esign(True, document.document_ref, self._pending_username())
            return self._apply_outcome(outcome, "eSign acceptance")
        finally:
            self._leave_operation(in_flight)

    async def _decline_esign(self, document: EsignDocument, reason: Optional[str]) -> Outcome:
        username = self._pending_username()
        epoch = self._epoch
        try:
            await self._call(
                lambda: self._identity.decline_esign(document.transaction_ref, document.document_ref, reason),
                Urgency.POLL,
                "eSign decline"
            )
        except CiamClientError as e:
            logger.warning(f"Remote eSign decline failed, ending flow locally: {e.message}")

        failure = Failure(FailureKind.ESIGN_DECLINED, DEFAULT_FAILURE_MESSAGES[FailureKind.ESIGN_DECLINED])
        if self._is_stale(epoch, "eSign decline"):
            return failure

        self._audit.log_esign(False, document.document_ref, username)
        self._clear_flow()
        self._clear_pending()
        self._set_error(failure.to_error_state(), SessionState.UNAUTHENTICATED)
        return failure

    async def respond_to_device_bind(self, trust: bool) -> Outcome:
        """
        Answer the device-trust question. Either answer completes the flow.

        Raises:
            InvalidSessionStateError: If the session is not DEVICE_BIND_PENDING
        """
        self._require_state("respond to device binding", SessionState.DEVICE_BIND_PENDING)

        in_flight = self._enter_operation("respond_to_device_bind")
        try:
            epoch = self._epoch
            flow_ref = self._flow_ref
            try:
                outcome = await self._call(
                    lambda: self._identity.bind_device(flow_ref, trust),
                    Urgency.INTERACTIVE,
                    "device binding"
                )
            except CiamClientError as e:
                failure = self._classify_transport_error(e)
                if not self._is_stale(epoch, "device binding"):
                    self._set_error(failure.to_error_state())
                return failure

            if self._is_stale(epoch, "device binding"):
                return outcome
            if isinstance(outcome, Success):
                self._audit.log_device_bind(trust, self._pending_username())
            return self._apply_outcome(outcome, "device binding")
        finally:
            self._leave_operation(in_flight)

    async def refresh(self) -> Optional[Credential]:
        """
        Replace the access credential with a fresh one.

        Concurrent callers share one in-flight request and observe the same
        result. On failure the session is cleared, moves to UNAUTHENTICATED
        and session-expired callbacks fire.

        Returns:
            The new credential, or None if the refresh failed

        Raises:
            InvalidSessionStateError: If the session is not AUTHENTICATED
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._require_state("refresh", SessionState.AUTHENTICATED)
            self._refresh_task = asyncio.create_task(self._run_refresh(self._epoch))
        return await asyncio.shield(self._refresh_task)

    async def _run_refresh(self, epoch: int) -> Optional[Credential]:
        subject = self.credential.subject if self.credential else None
        try:
            outcome = await self._call(self._identity.refresh, Urgency.BACKGROUND, "token refresh")
        except CiamClientError as e:
            log_structured_error(logger, e)
            outcome = Failure(FailureKind.SESSION_EXPIRED, DEFAULT_FAILURE_MESSAGES[FailureKind.SESSION_EXPIRED])

        if self._is_stale(epoch, "token refresh"):
            return None

        if isinstance(outcome, Success):
            self._tokens.set(outcome.credential)
            self._audit.log_refresh(True, outcome.credential.subject)
            logger.info("Token refresh successful")
            return outcome.credential

        self._audit.log_refresh(False, subject)
        self._expire_session(subject)
        return None

    def _expire_session(self, subject: Optional[str]) -> None:
        logger.warning("Session expired, clearing local state")
        self._epoch += 1
        self._stop_auto_refresh_nowait()
        self._clear_flow()
        self._tokens.clear()
        self._clear_pending()
        error = ErrorState.from_kind(FailureKind.SESSION_EXPIRED)
        self._error = error
        self._set_state(SessionState.UNAUTHENTICATED)
        self._audit.log_session_expired(subject)
        self._notify(self._session_expired_callbacks, error)

    async def logout(self) -> None:
        """
        End the session. Always leaves the session UNAUTHENTICATED with no
        credential, whether or not the Identity Service acknowledges.
        """
        credential = self._tokens.get()
        access_token = credential.access_token if credential else None

        self._epoch += 1
        self._stop_auto_refresh_nowait()
        self._clear_flow()
        self._tokens.clear()
        self._clear_pending()
        self._error = None
        self._set_state(SessionState.UNAUTHENTICATED)
        self._notify(self._logout_callbacks)

        remote_ok = True
        try:
            await self._call(
                lambda: self._identity.logout(access_token),
                Urgency.POLL,
                "logout"
            )
        except Exception as e:
            # local logout already happened and must stand
            remote_ok = False
            logger.warning(f"Remote logout failed: {e}")

        self._audit.log_logout(credential.subject if credential else None, remote_ok)
        logger.info("Logged out")

    async def restore(self) -> bool:
        """
        Try to resume a session silently using the refresh cookie.

        Returns:
            True if the session is now AUTHENTICATED
        """
        self._require_state("restore a session", SessionState.UNAUTHENTICATED)
        in_flight = self._enter_operation("restore")
        try:
            epoch = self._begin_flow()
            self._set_state(SessionState.AUTHENTICATING)
            try:
                outcome = await self._call(self._identity.refresh, Urgency.BACKGROUND, "session restore")
            except CiamClientError as e:
                logger.info(f"No session to restore: {e.message}")
                outcome = None

            if self._is_stale(epoch, "session restore"):
                return False

            if isinstance(outcome, Success):
                self._complete(outcome.credential, update_remembered=False)
                return True

            self._set_state(SessionState.UNAUTHENTICATED)
            return False
        finally:
            self._leave_operation(in_flight)

    def clear_error(self) -> None:
        """
        Dismiss the current error. From ERROR, returns to method selection when
        an MFA context is held, otherwise to UNAUTHENTICATED.
        """
        if self._state is SessionState.ERROR:
            if self._methods:
                self.cancel_challenge()
            else:
                self._cancel_reset_timer()
                self._set_state(SessionState.UNAUTHENTICATED)
        self._error = None

    # Session management

    def _session_call_failed(self, error: CiamClientError, epoch: int, description: str) -> None:
        """Report a failed session-management call. Only a rejected credential ends the session."""
        if self._is_stale(epoch, description):
            return
        if isinstance(error, TransportError) and error.status == 401:
            log_structured_error(logger, error)
            credential = self._tokens.get()
            self._expire_session(credential.subject if credential else None)
            return
        failure = self._classify_transport_error(error)
        self._set_error(failure.to_error_state())

    async def list_sessions(self) -> Optional[List[SessionInfo]]:
        """
        List the server-side sessions of the signed-in user.

        Returns:
            The sessions, or None when they could not be loaded; error_state
            then says why

        Raises:
            InvalidSessionStateError: If the session is not AUTHENTICATED
        """
        self._require_state("list sessions", SessionState.AUTHENTICATED)
        access_token = self._tokens.get().access_token
        epoch = self._epoch
        try:
            sessions = await self._call(
                lambda: self._identity.list_sessions(access_token),
                Urgency.INTERACTIVE,
                "session listing"
            )
        except CiamClientError as e:
            self._session_call_failed(e, epoch, "session listing")
            return None
        return sessions

    async def revoke_session(self, session_id: str) -> bool:
        """
        Revoke one session of the signed-in user.

        Revoking the session this client is using ends it locally as well:
        the state becomes UNAUTHENTICATED and session-expired callbacks fire.

        Returns:
            True if the Identity Service revoked the session

        Raises:
            InvalidSessionStateError: If the session is not AUTHENTICATED
        """
        self._require_state("revoke a session", SessionState.AUTHENTICATED)
        credential = self._tokens.get()
        epoch = self._epoch
        try:
            await self._call(
                lambda: self._identity.revoke_session(credential.access_token, session_id),
                Urgency.INTERACTIVE,
                "session revocation"
            )
        except CiamClientError as e:
            self._session_call_failed(e, epoch, "session revocation")
            return False

        current = session_id == credential.session_id
        self._audit.log_session_revoked(session_id, credential.subject, current)
        if current and not self._is_stale(epoch, "session revocation"):
            logger.info("Current session revoked")
            self._expire_session(credential.subject)
        return True

    async def revoke_other_sessions(self) -> int:
        """
        Revoke every session of the signed-in user except the current one.

        The current session is the one named by the credential, or the most
        recently seen one when the credential does not name it. Stops at the
        first failed revocation.

        Returns:
            Number of sessions revoked

        Raises:
            InvalidSessionStateError: If the session is not AUTHENTICATED
        """
        sessions = await self.list_sessions()
        if not sessions:
            return 0

        current_id = self._tokens.get().session_id
        if current_id is None:
            seen = [s for s in sessions if s.last_seen_at is not None]
            current_id = max(seen, key=lambda s: s.last_seen_at).session_id if seen else None

        revoked = 0
        for session in sessions:
            if session.session_id == current_id:
                continue
            if self._state is not SessionState.AUTHENTICATED:
                break
            if not await self.revoke_session(session.session_id):
                break
            revoked += 1
        logger.info(f"Revoked {revoked} other session(s)")
        return revoked

    async def verify_session(self, session_id: Optional[str] = None) -> bool:
        """
        Ask the Identity Service whether a session is still valid.

        Args:
            session_id: Session to check, defaults to the current one

        Returns:
            True only if the service confirms the session; any failure counts
            as not valid

        Raises:
            InvalidSessionStateError: If the session is not AUTHENTICATED
        """
        self._require_state("verify a session", SessionState.AUTHENTICATED)
        credential = self._tokens.get()
        target = session_id or credential.session_id
        if not target:
            logger.debug("No session identifier to verify")
            return False
        try:
            verification = await self._call(
                lambda: self._identity.verify_session(target, credential.access_token),
                Urgency.INTERACTIVE,
                "session verification"
            )
        except CiamClientError as e:
            log_structured_error(logger, e)
            return False
        return verification.valid

    # Automatic refresh

    def start_auto_refresh(self) -> None:
        if self._auto_refresh_task is not None and not self._auto_refresh_task.done():
            return
        self._auto_refresh_task = asyncio.create_task(self._auto_refresh_loop())

    async def stop_auto_refresh(self) -> None:
        task, self._auto_refresh_task = self._auto_refresh_task, None
        await cancel_task(task)

    def _stop_auto_refresh_nowait(self) -> None:
        task, self._auto_refresh_task = self._auto_refresh_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _auto_refresh_loop(self) -> None:
        try:
            while self._state is SessionState.AUTHENTICATED:
                delay = self._tokens.seconds_until_refresh(self.refresh_threshold)
                if delay is None:
                    delay = self.refresh_interval
                delay = max(self.min_refresh_delay, delay)

                logger.debug(f"Token refresh check in {delay:.0f} seconds")
                await asyncio.sleep(delay)

                if self._state is not SessionState.AUTHENTICATED:
                    break
                logger.info("Automatic token refresh triggered")
                if await self.refresh() is None:
                    break
        except asyncio.CancelledError:
            logger.debug("Token refresh task cancelled")
        except CiamClientError as e:
            logger.error(f"Error in token refresh loop: {e}")

    # Challenge poller hooks

    async def _fetch_challenge_status(self, transaction_id: str) -> Outcome:
        ref = TransactionRef(self._flow_ref.context_id if self._flow_ref else '', transaction_id)
        return await self._call(
            lambda: self._identity.verify_challenge(ref, ChallengeMethod.PUSH, None),
            Urgency.POLL,
            "push status check"
        )

    def _on_challenge_pending(self, transaction_id: str, remaining: Optional[float], pending: Pending) -> None:
        transaction = self._transaction
        if transaction is None or transaction.transaction_id != transaction_id:
            return
        if pending.expires_at is not None:
            transaction.expires_at = pending.expires_at
        transaction.remaining_seconds = remaining
        self._notify(self._challenge_update_callbacks, transaction)

    def _on_challenge_terminal(self, transaction_id: str, outcome: Outcome) -> None:
        transaction = self._transaction
        if (self._state is not SessionState.CHALLENGE_ACTIVE
                or transaction is None or transaction.transaction_id != transaction_id):
            logger.debug(f"Ignoring outcome for inactive transaction {transaction_id}")
            return

        if isinstance(outcome, Failure):
            transaction.status = (ChallengeStatus.REJECTED if outcome.kind is FailureKind.CHALLENGE_REJECTED
                                  else ChallengeStatus.EXPIRED)
        else:
            transaction.status = ChallengeStatus.APPROVED
            self._audit.log_mfa(AuditEventType.MFA_VERIFIED, transaction.method.value,
                                transaction_id, self._pending_username())
        self._notify(self._challenge_update_callbacks, transaction)
        self._apply_outcome(outcome, "push approval")

    async def shutdown(self) -> None:
        """Stop background work and release the Identity Service connection."""
        logger.info("Shutting down session orchestrator")
        self._poller.stop()
        self._cancel_reset_timer()
        await self.stop_auto_refresh()
        await cancel_task(self._refresh_task)
        self._refresh_task = None
        await self._identity.close()
