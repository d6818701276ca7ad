"""
auth/session.py -- Session/Auth State Machine.

Orchestrates the Credential Gateway, the OTC service and the Account Status
Oracle into one lifecycle:

    Anonymous --sign_in--> AuthenticatedActive | AuthenticatedFirstLogin
    Anonymous --request_code--> AwaitingOtc(email) --verify_code--> Authenticated*
    AuthenticatedFirstLogin --update_password--> AuthenticatedActive
    any --sign_out--> Anonymous
    authenticated --(account found inactive)--> Rejected(account_inactive)

Rejected is a resting state equivalent to Anonymous for every purpose except
reporting why the last session ended; sign_in and request_code are allowed
from it. Failures that do not end a session (wrong password, rate limit,
transport) leave the state untouched and come back in AuthOutcome.error.

Design decisions:
  Serialized transitions: one threading.Lock guards every transition. A
      second caller blocks until the first finishes, so intermediate steps
      ("gateway said yes, status check pending") are never observable.

  No optimistic transitions: the new state is assigned only after every
      call it depends on has returned. An exception escaping a collaborator
      leaves the pre-call state in place.

  Fail closed on grant: if the status check cannot be answered after the
      gateway granted a session, the session is signed out again and the
      caller gets a transport error. Access is never granted unchecked.

  Counter asymmetry: the OTC request counter is reset on a full password
      login and on completing the first-login password change, never on
      code verification alone.

  No retries: every failure is returned to the caller as a typed error.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from auth.errors import AuthError, ErrorKind, InvalidTransition
from auth.gateway import CredentialGateway
from auth.models import AccountRecord, Session
from auth.oracle import AccountStatusOracle
from auth.otc import GENERIC_REQUEST_FAILURE, OtcService
from auth.store import AccountStore, StoreError
from auth.tokens import check_password_strength, password_strength_message

logger = logging.getLogger("orgaccess.auth.session")

# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------


class AuthStatus(str, Enum):
    anonymous = "anonymous"
    awaiting_otc = "awaiting_otc"
    authenticated_active = "authenticated_active"
    authenticated_first_login = "authenticated_first_login"
    rejected = "rejected"


class PasswordUpdateKind(str, Enum):
    first_time_login = "first_time_login"
    password_reset = "password_reset"


@dataclass(frozen=True)
class AuthState:
    """Snapshot of the machine. Immutable: every transition builds a new one."""

    status: AuthStatus
    email: Optional[str] = None  # awaiting_otc
    reason: Optional[ErrorKind] = None  # rejected
    session: Optional[Session] = None  # authenticated states
    account: Optional[AccountRecord] = None  # authenticated states

    @classmethod
    def anonymous(cls) -> "AuthState":
        return cls(AuthStatus.anonymous)

    @classmethod
    def awaiting_otc(cls, email: str) -> "AuthState":
        return cls(AuthStatus.awaiting_otc, email=email)

    @classmethod
    def rejected(cls, reason: ErrorKind) -> "AuthState":
        return cls(AuthStatus.rejected, reason=reason)

    @classmethod
    def authenticated(cls, session: Session, account: AccountRecord) -> "AuthState":
        status = AuthStatus.authenticated_first_login if account.is_first_login else AuthStatus.authenticated_active
        return cls(status, session=session, account=account)

    @property
    def is_authenticated(self) -> bool:
        return self.status in (AuthStatus.authenticated_active, AuthStatus.authenticated_first_login)

    @property
    def is_anonymous(self) -> bool:
        return self.status in (AuthStatus.anonymous, AuthStatus.rejected)

    @property
    def identity_id(self) -> Optional[str]:
        return self.session.identity.id if self.session else None


@dataclass(frozen=True)
class AuthOutcome:
    """Result of one transition: the state after it, plus what went wrong if anything."""

    state: AuthState
    error: Optional[AuthError] = None
    message: str = ""
    cooldown_seconds: Optional[int] = None
    remaining_requests: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


_SIGN_IN_FROM = (AuthStatus.anonymous, AuthStatus.rejected, AuthStatus.awaiting_otc)
_AUTHENTICATED = (AuthStatus.authenticated_active, AuthStatus.authenticated_first_login)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Machine
# ---------------------------------------------------------------------------


class SessionStateMachine:
    """Single owner of the client's session lifecycle.

    Usage:
        machine = SessionStateMachine(gateway, otc, oracle, store)
        machine.init()
        outcome = machine.sign_in("a@example.org", "secret")
        if outcome.state.status is AuthStatus.authenticated_first_login:
            machine.update_password("N3w-password!")
        machine.teardown()
    """

    def __init__(
        self,
        gateway: CredentialGateway,
        otc: OtcService,
        oracle: AccountStatusOracle,
        store: AccountStore,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.gateway = gateway
        self.otc = otc
        self.oracle = oracle
        self.store = store
        self._clock = clock
        self._state = AuthState.anonymous()
        self._lock = threading.Lock()
        self._closed = False

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def current_state(self) -> AuthState:
        return self._state

    @property
    def access_token(self) -> Optional[str]:
        """Token of the held session; the remote OTC client uses it as its bearer."""
        session = self._state.session
        return session.access_token if session else None

    @contextmanager
    def _transition(self, name: str, allowed: Optional[tuple[AuthStatus, ...]] = None) -> Iterator[AuthState]:
        with self._lock:
            if self._closed:
                raise InvalidTransition(name, "closed")
            if allowed is not None and self._state.status not in allowed:
                raise InvalidTransition(name, self._state.status.value)
            yield self._state

    def _settle(self, state: AuthState, **outcome) -> AuthOutcome:
        self._state = state
        error = outcome.get("error")
        if error is not None and not outcome.get("message"):
            outcome["message"] = error.message
        return AuthOutcome(state=state, **outcome)

    def _force_sign_out(self, reason: ErrorKind = ErrorKind.account_inactive) -> AuthOutcome:
        self.gateway.sign_out()
        return self._settle(AuthState.rejected(reason), error=AuthError(reason))

    def _admit(self, before: AuthState, session: Session, full_login: bool) -> AuthOutcome:
        """Decide what a freshly granted session is worth.

        Runs the status check, rejects inactive accounts and picks the
        authenticated state from is_first_login. full_login resets the OTC
        counter for accounts that are past their first login.
        """
        status = self.oracle.check_status(identity_id=session.identity.id)
        if status.error is not None:
            logger.warning("Status check failed after grant; signing out again")
            self.gateway.sign_out()
            return self._settle(before, error=status.error)
        if not status.exists or not status.is_active:
            logger.warning("Session refused for inactive account %s", session.identity.id)
            return self._force_sign_out()

        account = status.account
        if full_login and not account.is_first_login:
            now = self._clock()
            try:
                self.store.record_login(account.identity_id, now)
                account = replace(account, otp_requests_count=0, last_login=now.isoformat())
            except StoreError as exc:
                logger.warning("Could not record login for %s: %s", account.identity_id, exc)
        return self._settle(AuthState.authenticated(session, account))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self) -> AuthOutcome:
        """Restore an existing session, if the gateway holds one, and re-check the account."""
        return self.refresh()

    def teardown(self) -> None:
        """Close collaborators. Later transitions raise InvalidTransition."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.gateway.close()
            self.otc.close()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def sign_in(self, email: str, password: str) -> AuthOutcome:
        with self._transition("sign_in", _SIGN_IN_FROM) as before:
            result = self.gateway.sign_in_with_password(email, password)
            if isinstance(result, AuthError):
                logger.info("Sign-in refused (%s)", result.kind.value)
                return self._settle(before, error=result)
            return self._admit(before, result, full_login=True)

    def request_code(self, email: str) -> AuthOutcome:
        """Ask for a one-time code after confirming the account is usable.

        Unknown and deactivated emails get the same generic message; only the
        error kind differs, for the caller's logs.
        """
        with self._transition("request_code", _SIGN_IN_FROM) as before:
            status = self.oracle.check_status(email=email)
            if status.error is not None:
                return self._settle(before, error=status.error)
            if not status.exists:
                return self._settle(before, error=AuthError(ErrorKind.no_such_account, GENERIC_REQUEST_FAILURE))
            if not status.is_active:
                return self._settle(before, error=AuthError(ErrorKind.account_inactive, GENERIC_REQUEST_FAILURE))

            result = self.otc.request_code(email)
            if not result.success:
                error = result.error or AuthError(ErrorKind.validation, result.message)
                return self._settle(
                    before,
                    error=error,
                    message=result.message,
                    cooldown_seconds=result.cooldown_seconds,
                    remaining_requests=result.remaining_requests,
                )
            return self._settle(
                AuthState.awaiting_otc(email),
                message=result.message,
                remaining_requests=result.remaining_requests,
            )

    def verify_code(self, code: str) -> AuthOutcome:
        with self._transition("verify_code", (AuthStatus.awaiting_otc,)) as before:
            result = self.otc.verify_code(before.email, code)
            if not result.success or result.session is None:
                error = result.error or AuthError(ErrorKind.invalid_credentials, result.message)
                return self._settle(before, error=error, message=result.message)
            self.gateway.set_session(result.session)
            return self._admit(before, result.session, full_login=False)

    def update_password(self, new_password: str, kind: Optional[PasswordUpdateKind] = None) -> AuthOutcome:
        with self._transition("update_password", _AUTHENTICATED) as before:
            first_login = before.status is AuthStatus.authenticated_first_login or (
                kind is PasswordUpdateKind.first_time_login
            )
            problems = check_password_strength(new_password)
            if problems:
                return self._settle(
                    before, error=AuthError(ErrorKind.weak_password, password_strength_message(problems))
                )

            error = self.gateway.update_password(new_password)
            if error is not None:
                return self._settle(before, error=error)

            status = self.oracle.check_status(identity_id=before.identity_id)
            if status.error is not None:
                return self._settle(before, error=status.error)
            if not status.exists or not status.is_active:
                logger.warning("Account %s deactivated during session; signing out", before.identity_id)
                return self._force_sign_out()

            account = status.account
            now = self._clock()
            try:
                if first_login:
                    self.store.complete_first_login(account.identity_id, now)
                    account = replace(
                        account,
                        is_first_login=False,
                        password_updated=True,
                        otp_requests_count=0,
                        last_login=now.isoformat(),
                    )
                else:
                    self.store.record_login(account.identity_id, now)
                    account = replace(account, otp_requests_count=0, last_login=now.isoformat())
            except StoreError as exc:
                logger.warning("Could not record password change for %s: %s", account.identity_id, exc)
                if first_login:
                    return self._settle(before, error=AuthError(ErrorKind.transport))
            return self._settle(AuthState.authenticated(before.session, account), message="Password updated.")

    def sign_out(self) -> AuthOutcome:
        """End the session unconditionally. Safe to call in any state, any number of times."""
        with self._transition("sign_out"):
            self.gateway.sign_out()
            return self._settle(AuthState.anonymous())

    def refresh(self) -> AuthOutcome:
        """Refresh the held session and re-check the account.

        Transport failures keep the current state (callers may retry). A
        session the provider no longer honours drops an authenticated
        client back to Anonymous.
        """
        with self._transition("refresh") as before:
            result = self.gateway.refresh_session()
            if isinstance(result, AuthError):
                return self._settle(before, error=result)
            if result is None:
                if before.is_authenticated:
                    logger.info("Session expired for %s", before.identity_id)
                    return self._settle(AuthState.anonymous())
                return self._settle(before)
            return self._admit(before, result, full_login=False)

    def recheck(self) -> AuthOutcome:
        """Re-run the status check for the held session without refreshing it."""
        with self._transition("recheck") as before:
            if not before.is_authenticated:
                return self._settle(before)
            status = self.oracle.check_status(identity_id=before.identity_id)
            if status.error is not None:
                return self._settle(before, error=status.error)
            if not status.exists or not status.is_active:
                logger.warning("Account %s deactivated during session; signing out", before.identity_id)
                return self._force_sign_out()
            return self._settle(AuthState.authenticated(before.session, status.account))
