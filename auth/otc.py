"""
auth/otc.py -- One-time code services.

Two implementations of one interface (OtcService):

  RemoteOtcService -- HTTP client of the notification/verification endpoint
      ({base}/send-otp, {base}/verify-otp). Authenticates with the user's
      access token when a session exists, otherwise with the service key.

  LocalOtcService -- the same contract implemented in-process: rate limiting
      through AccountStore.consume_otc_slot(), codes from the secrets CSPRNG
      held only as bcrypt hashes, delivery through a CodeSender, and a
      session on successful verification (from the identity provider when a
      SessionIssuer is wired, otherwise minted here). The HTTP endpoint in
      api/routes/v1/otc.py serves this implementation.

Messages for refused requests are generic: nothing in a failure says
whether the email exists, is deactivated, or simply had a wrong code. The
rate-limit message is the exception, because the limiter only runs for
accounts that passed the existence check.

Wire shape (stable field names): success, message, cooldownMinutes,
remainingRequests, session.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Union

import requests

from auth.errors import AuthError, ErrorKind
from auth.models import AccountRecord, Identity, OtcRequestResult, OtcVerifyResult, Session
from auth.store import AccountStore, OtcLimits, StoreError
from auth.tokens import (
    _DUMMY_HASH,
    create_session_token,
    generate_code,
    generate_refresh_token,
    hash_code,
    verify_code_hash,
)
from core.config import Settings

logger = logging.getLogger("orgaccess.auth.otc")

GENERIC_REQUEST_FAILURE = "Unable to send a verification code. Please check the email address and try again."
GENERIC_VERIFY_FAILURE = "Invalid or expired verification code."
CODE_SENT = "Verification code sent to your email."
CODE_VERIFIED = "Code verified successfully."
NO_SESSION_FROM_SERVER = "No session found from server"


def rate_limit_message(cooldown_minutes: int, remaining_requests: int) -> str:
    minute_word = "minute" if cooldown_minutes == 1 else "minutes"
    request_word = "request" if remaining_requests == 1 else "requests"
    return (
        f"Please wait {cooldown_minutes} {minute_word} before requesting another code. "
        f"You have {remaining_requests} {request_word} remaining."
    )


class OtcService(Protocol):
    def request_code(self, email: str) -> OtcRequestResult: ...

    def verify_code(self, email: str, code: str) -> OtcVerifyResult: ...

    def close(self) -> None: ...


def _transport_request() -> OtcRequestResult:
    error = AuthError(ErrorKind.transport)
    return OtcRequestResult(success=False, message=error.message, error=error)


def _transport_verify() -> OtcVerifyResult:
    error = AuthError(ErrorKind.transport)
    return OtcVerifyResult(success=False, message=error.message, error=error)


# ---------------------------------------------------------------------------
# Remote endpoint client
# ---------------------------------------------------------------------------


class RemoteOtcService:
    """Client of the notification/verification endpoint.

    token_provider returns the current user access token, or None when
    nobody is signed in; the service key is used in that case.
    """

    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout: float = 10.0,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("Verification endpoint URL is not configured (OTC_ENDPOINT_URL).")
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.timeout = timeout
        self.token_provider = token_provider
        if http is None:
            http = requests.Session()
            http.max_redirects = 3
        self._http = http

    def _bearer(self) -> str:
        token = self.token_provider() if self.token_provider else None
        return token or self.service_key

    def _post(self, path: str, payload: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        resp = self._http.post(
            f"{self.base_url}{path}",
            json=payload,
            headers={"Authorization": f"Bearer {self._bearer()}", "Content-Type": "application/json"},
            timeout=self.timeout,
        )
        try:
            body = resp.json()
        except ValueError:
            body = {}
        return resp.status_code, body if isinstance(body, dict) else {}

    def request_code(self, email: str) -> OtcRequestResult:
        try:
            status, body = self._post("/send-otp", {"email": email})
        except requests.RequestException as exc:
            logger.warning("Code request failed: %s", exc)
            return _transport_request()
        message = str(body.get("message") or "")
        remaining = body.get("remainingRequests")
        remaining = int(remaining) if isinstance(remaining, (int, float)) else None

        if status == 429:
            minutes = body.get("cooldownMinutes")
            cooldown = int(minutes) * 60 if isinstance(minutes, (int, float)) else None
            remaining = 0 if remaining is None else remaining
            if not message:
                message = rate_limit_message((cooldown or 60) // 60, remaining)
            logger.info("Code request rate limited (cooldown %ss)", cooldown)
            return OtcRequestResult(
                success=False,
                message=message,
                cooldown_seconds=cooldown,
                remaining_requests=remaining,
                error=AuthError(ErrorKind.rate_limited, message, cooldown),
            )
        if status >= 500:
            logger.warning("Verification endpoint answered code request with HTTP %d", status)
            return _transport_request()
        if status >= 400 or body.get("success") is False:
            message = message or GENERIC_REQUEST_FAILURE
            return OtcRequestResult(
                success=False,
                message=message,
                remaining_requests=remaining,
                error=AuthError(ErrorKind.validation, message),
            )
        return OtcRequestResult(success=True, message=message or CODE_SENT, remaining_requests=remaining)

    def verify_code(self, email: str, code: str) -> OtcVerifyResult:
        try:
            status, body = self._post("/verify-otp", {"email": email, "otp": code})
        except requests.RequestException as exc:
            logger.warning("Code verification failed: %s", exc)
            return _transport_verify()
        if status >= 500:
            logger.warning("Verification endpoint answered code verification with HTTP %d", status)
            return _transport_verify()
        message = str(body.get("message") or "")
        if status >= 400 or body.get("success") is False:
            message = message or GENERIC_VERIFY_FAILURE
            return OtcVerifyResult(
                success=False, message=message, error=AuthError(ErrorKind.invalid_credentials, message)
            )
        raw_session = body.get("session")
        if not raw_session:
            return OtcVerifyResult(
                success=False,
                message=NO_SESSION_FROM_SERVER,
                error=AuthError(ErrorKind.transport, NO_SESSION_FROM_SERVER),
            )
        try:
            session = Session.from_dict(raw_session)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Verification endpoint returned an unreadable session: %s", exc)
            return _transport_verify()
        return OtcVerifyResult(success=True, message=message or CODE_VERIFIED, session=session)

    def close(self) -> None:
        self._http.close()


# ---------------------------------------------------------------------------
# Code delivery
# ---------------------------------------------------------------------------


class CodeDeliveryError(Exception):
    """The code could not be handed to the delivery channel."""


class CodeSender(Protocol):
    def send(self, email: str, code: str, display_name: str = "") -> None: ...


class EmailCodeSender:
    """Delivers codes through a Resend-compatible transactional email API."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        sender: str,
        organization_name: str = "orgaccess",
        code_ttl_minutes: int = 60,
        timeout: float = 10.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.organization_name = organization_name
        self.code_ttl_minutes = code_ttl_minutes
        self.timeout = timeout
        if http is None:
            http = requests.Session()
            http.max_redirects = 3
        self._http = http

    def _body(self, email: str, code: str, display_name: str) -> dict[str, Any]:
        greeting = display_name or email
        text = (
            f"Hello {greeting},\n\n"
            f"Your {self.organization_name} verification code is: {code}\n\n"
            f"This code expires in {self.code_ttl_minutes} minutes. "
            "If you did not request it, you can ignore this email."
        )
        html = (
            f"<p>Hello {greeting},</p>"
            f"<p>Your {self.organization_name} verification code is:</p>"
            f"<p style=\"font-size:24px;font-weight:bold;letter-spacing:4px\">{code}</p>"
            f"<p>This code expires in {self.code_ttl_minutes} minutes. "
            "If you did not request it, you can ignore this email.</p>"
        )
        return {
            "from": self.sender,
            "to": [email],
            "subject": f"Your {self.organization_name} verification code",
            "text": text,
            "html": html,
        }

    def send(self, email: str, code: str, display_name: str = "") -> None:
        try:
            resp = self._http.post(
                self.api_url,
                json=self._body(email, code, display_name),
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise CodeDeliveryError(f"Email delivery failed: {exc}") from exc


class LogCodeSender:
    """Development sender: writes codes to the log. Never use in production."""

    def __init__(self) -> None:
        logger.warning("No EMAIL_API_KEY configured -- verification codes will be written to the log.")

    def send(self, email: str, code: str, display_name: str = "") -> None:
        logger.warning("Verification code for %s: %s", email, code)


def build_code_sender(settings: Settings) -> CodeSender:
    if settings.email_api_key:
        return EmailCodeSender(
            api_url=settings.email_api_url,
            api_key=settings.email_api_key,
            sender=settings.email_sender,
            organization_name=settings.organization_name,
            code_ttl_minutes=max(1, settings.otc_code_ttl_seconds // 60),
            timeout=settings.http_timeout_seconds,
        )
    return LogCodeSender()


# ---------------------------------------------------------------------------
# In-process implementation
# ---------------------------------------------------------------------------


@dataclass
class _PendingCode:
    code_hash: str
    expires_at: float
    attempts: int = 0


class SessionIssuer(Protocol):
    """Exchanges a verified email for a session the identity provider honours."""

    def issue_session(self, email: str) -> Union[Session, AuthError]: ...


class LocalOtcService:
    """OtcService backed by the account store.

    Pending codes live in memory only, keyed by lower-cased email; a new
    request replaces the previous code. A code is consumed by the first
    successful verification and discarded after max_attempts wrong guesses.
    Expired codes are swept on every request.

    With a session_issuer (HttpCredentialGateway.issue_session) a verified
    code yields a provider session. Without one the service mints its own
    HS256 session, which only this server's endpoints accept.
    """

    def __init__(
        self,
        store: AccountStore,
        sender: CodeSender,
        limits: OtcLimits = OtcLimits(),
        code_length: int = 6,
        code_ttl_seconds: int = 3600,
        session_ttl_seconds: int = 3600,
        max_attempts: int = 5,
        clock: Callable[[], float] = time.time,
        session_issuer: Optional[SessionIssuer] = None,
    ) -> None:
        self.store = store
        self.sender = sender
        self.limits = limits
        self.code_length = code_length
        self.code_ttl_seconds = code_ttl_seconds
        self.session_ttl_seconds = session_ttl_seconds
        self.max_attempts = max_attempts
        self.session_issuer = session_issuer
        self._clock = clock
        self._pending: dict[str, _PendingCode] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        store: AccountStore,
        settings: Settings,
        sender: Optional[CodeSender] = None,
        session_issuer: Optional[SessionIssuer] = None,
    ) -> "LocalOtcService":
        return cls(
            store=store,
            sender=sender or build_code_sender(settings),
            limits=OtcLimits.from_settings(settings),
            code_length=settings.otc_code_length,
            code_ttl_seconds=settings.otc_code_ttl_seconds,
            session_ttl_seconds=settings.session_ttl_seconds,
            session_issuer=session_issuer,
        )

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _sweep_expired(self, now: float) -> None:
        # Caller holds self._lock.
        for key in [k for k, p in self._pending.items() if p.expires_at <= now]:
            del self._pending[key]

    def request_code(self, email: str) -> OtcRequestResult:
        key = email.strip().lower()
        refused = OtcRequestResult(
            success=False,
            message=GENERIC_REQUEST_FAILURE,
            error=AuthError(ErrorKind.no_such_account, GENERIC_REQUEST_FAILURE),
        )
        with self._lock:
            self._sweep_expired(self._clock())
        try:
            account = self.store.get_account_by_email(key)
            if account is None or not account.is_active:
                return refused
            slot = self.store.consume_otc_slot(key, self._now(), self.limits)
        except StoreError:
            return _transport_request()
        if slot is None:
            return refused

        if not slot.granted:
            minutes = (slot.cooldown_seconds or 60) // 60
            message = rate_limit_message(minutes, slot.remaining_requests)
            logger.info("Code request for account %s rate limited", account.identity_id)
            return OtcRequestResult(
                success=False,
                message=message,
                cooldown_seconds=slot.cooldown_seconds,
                remaining_requests=slot.remaining_requests,
                error=AuthError(ErrorKind.rate_limited, message, slot.cooldown_seconds),
            )

        code = generate_code(self.code_length)
        pending = _PendingCode(hash_code(code), self._clock() + self.code_ttl_seconds)
        with self._lock:
            self._pending[key] = pending
        try:
            self.sender.send(key, code, account.display_name)
        except CodeDeliveryError as exc:
            logger.warning("Code delivery for account %s failed: %s", account.identity_id, exc)
            with self._lock:
                if self._pending.get(key) is pending:
                    del self._pending[key]
            return _transport_request()
        return OtcRequestResult(success=True, message=CODE_SENT, remaining_requests=slot.remaining_requests)

    def _check_code(self, key: str, code: str) -> bool:
        """Verify and consume the pending code. Always spends one bcrypt check [C1].

        The entry is taken out under the lock and hashed outside it, so one
        slow check never holds up verifications for other emails. A guess
        arriving while another check for the same email is in flight finds
        no code and fails.
        """
        with self._lock:
            pending = self._pending.pop(key, None)
        if pending is None or pending.expires_at <= self._clock():
            verify_code_hash(code, _DUMMY_HASH)
            return False
        if verify_code_hash(code, pending.code_hash):
            return True
        pending.attempts += 1
        if pending.attempts < self.max_attempts:
            with self._lock:
                # A code requested meanwhile wins over the one just guessed at.
                self._pending.setdefault(key, pending)
        return False

    def _session_for(self, account: AccountRecord) -> Union[Session, AuthError]:
        if self.session_issuer is not None:
            issued = self.session_issuer.issue_session(account.email)
            if isinstance(issued, Session) and issued.identity.id != account.identity_id:
                logger.warning("Identity provider issued a session for another identity than %s", account.identity_id)
                return AuthError(ErrorKind.invalid_credentials)
            return issued
        identity = Identity(id=account.identity_id, email=account.email)
        token, expires_at = create_session_token(identity, self.session_ttl_seconds)
        return Session(
            access_token=token,
            refresh_token=generate_refresh_token(),
            expires_at=expires_at,
            identity=identity,
        )

    def verify_code(self, email: str, code: str) -> OtcVerifyResult:
        key = email.strip().lower()
        failed = OtcVerifyResult(
            success=False,
            message=GENERIC_VERIFY_FAILURE,
            error=AuthError(ErrorKind.invalid_credentials, GENERIC_VERIFY_FAILURE),
        )
        if not code.isdigit() or len(code) != self.code_length:
            verify_code_hash(code, _DUMMY_HASH)
            return failed
        if not self._check_code(key, code):
            return failed
        try:
            account = self.store.get_account_by_email(key)
        except StoreError:
            return _transport_verify()
        if account is None or not account.is_active:
            return failed
        session = self._session_for(account)
        if isinstance(session, AuthError):
            if session.kind is ErrorKind.transport:
                return _transport_verify()
            return failed
        return OtcVerifyResult(success=True, message=CODE_VERIFIED, session=session)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def close(self) -> None:
        with self._lock:
            self._pending.clear()
