"""
auth/gateway.py -- Credential/Session Gateway over the identity provider.

Wraps the provider's REST API (GoTrue-style: /auth/v1/token, /auth/v1/user,
/auth/v1/logout, and the admin link exchange behind issue_session()). The
gateway owns exactly one piece of state: the current Session, held in
memory. issue_session() never touches it.

Failure semantics:
  - The provider refusing the credentials (400/401/422) is invalid_credentials.
  - Anything else that goes wrong on the wire (timeouts, connection errors,
    5xx, unparseable bodies) is transport. A network failure is never
    reported as a wrong password.
  - sign_out() clears the local session even if the remote call fails.
  - No call is retried here; retries are a caller decision.

Outbound calls share one requests.Session with an explicit timeout and
max_redirects=3: the provider is a known host, three hops is generous.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol, Union

import requests

from auth.errors import AuthError, ErrorKind
from auth.models import Session

logger = logging.getLogger("orgaccess.auth.gateway")

RefreshResult = Union[Session, AuthError, None]


class CredentialGateway(Protocol):
    """What the state machine needs from an identity provider."""

    def sign_in_with_password(self, email: str, password: str) -> Union[Session, AuthError]: ...

    def sign_out(self) -> None: ...

    def update_password(self, new_password: str) -> Optional[AuthError]: ...

    def refresh_session(self) -> RefreshResult: ...

    def set_session(self, session: Session) -> None: ...

    def current_session(self) -> Optional[Session]: ...

    def close(self) -> None: ...


def _error_message(resp: requests.Response) -> str:
    """Best-effort human message from a provider error body."""
    try:
        body = resp.json()
    except ValueError:
        return ""
    if not isinstance(body, dict):
        return ""
    for key in ("error_description", "msg", "message", "error"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


class HttpCredentialGateway:
    """Credential gateway backed by a GoTrue-compatible REST API.

    Usage:
        gateway = HttpCredentialGateway("https://id.example.org", service_key="anon-key")
        result = gateway.sign_in_with_password("a@example.org", "secret")
    """

    _REJECTED_STATUSES = (400, 401, 422)

    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout: float = 10.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("Identity provider URL is not configured (IDENTITY_PROVIDER_URL).")
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.timeout = timeout
        if http is None:
            http = requests.Session()
            http.max_redirects = 3
        self._http = http
        self._session: Optional[Session] = None

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _headers(self, bearer: Optional[str] = None) -> dict[str, str]:
        return {
            "apikey": self.service_key,
            "Authorization": f"Bearer {bearer or self.service_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, *, bearer: Optional[str] = None, **kwargs: Any) -> requests.Response:
        return self._http.request(
            method,
            f"{self.base_url}{path}",
            headers=self._headers(bearer),
            timeout=self.timeout,
            **kwargs,
        )

    def _session_from(self, resp: requests.Response) -> Union[Session, AuthError]:
        try:
            return Session.from_dict(resp.json())
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Identity provider returned an unreadable session: %s", exc)
            return AuthError(ErrorKind.transport)

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def sign_in_with_password(self, email: str, password: str) -> Union[Session, AuthError]:
        try:
            resp = self._request(
                "POST",
                "/auth/v1/token",
                params={"grant_type": "password"},
                json={"email": email, "password": password},
            )
        except requests.RequestException as exc:
            logger.warning("Sign-in request failed: %s", exc)
            return AuthError(ErrorKind.transport)
        if resp.status_code in self._REJECTED_STATUSES:
            return AuthError(ErrorKind.invalid_credentials)
        if not resp.ok:
            logger.warning("Identity provider answered sign-in with HTTP %d", resp.status_code)
            return AuthError(ErrorKind.transport)
        result = self._session_from(resp)
        if isinstance(result, Session):
            self._session = result
        return result

    def sign_out(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            resp = self._request("POST", "/auth/v1/logout", bearer=session.access_token)
            if not resp.ok and resp.status_code != 401:
                logger.warning("Remote sign-out answered HTTP %d", resp.status_code)
        except requests.RequestException as exc:
            logger.warning("Remote sign-out failed, local session cleared anyway: %s", exc)

    def update_password(self, new_password: str) -> Optional[AuthError]:
        """Change the password of the signed-in user. None means success.

        Provider refusals (e.g. "New password should be different from the
        old password.") come back verbatim as password_rejected.
        """
        if self._session is None:
            return AuthError(ErrorKind.password_rejected, "No active session.")
        try:
            resp = self._request(
                "PUT",
                "/auth/v1/user",
                bearer=self._session.access_token,
                json={"password": new_password},
            )
        except requests.RequestException as exc:
            logger.warning("Password update request failed: %s", exc)
            return AuthError(ErrorKind.transport)
        if 400 <= resp.status_code < 500:
            return AuthError(ErrorKind.password_rejected, _error_message(resp))
        if not resp.ok:
            logger.warning("Identity provider answered password update with HTTP %d", resp.status_code)
            return AuthError(ErrorKind.transport)
        return None

    def refresh_session(self) -> RefreshResult:
        """Exchange the refresh token for a new session.

        Returns the new Session, None when there is no session to restore
        (or the provider no longer honours it), or a transport AuthError.
        Safe to retry: a failed call changes nothing.
        """
        if self._session is None:
            return None
        try:
            resp = self._request(
                "POST",
                "/auth/v1/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": self._session.refresh_token},
            )
        except requests.RequestException as exc:
            logger.warning("Session refresh failed: %s", exc)
            return AuthError(ErrorKind.transport)
        if resp.status_code in self._REJECTED_STATUSES:
            self._session = None
            return None
        if not resp.ok:
            return AuthError(ErrorKind.transport)
        result = self._session_from(resp)
        if isinstance(result, Session):
            self._session = result
        return result

    def issue_session(self, email: str) -> Union[Session, AuthError]:
        """Obtain a provider session for an account that proved control of its email.

        Used after an in-process code check. Two calls with the service key:
        /auth/v1/admin/generate_link yields a hashed magic-link token without
        sending any mail, and /auth/v1/verify redeems it for a session. The
        tokens are the provider's own, so update_password() and
        refresh_session() accept them. The gateway's current session is left
        alone; the caller adopts the result with set_session().
        """
        try:
            resp = self._request(
                "POST",
                "/auth/v1/admin/generate_link",
                json={"type": "magiclink", "email": email},
            )
            if 400 <= resp.status_code < 500:
                logger.warning("Identity provider refused a sign-in link (HTTP %d)", resp.status_code)
                return AuthError(ErrorKind.invalid_credentials)
            if not resp.ok:
                logger.warning("Identity provider answered generate_link with HTTP %d", resp.status_code)
                return AuthError(ErrorKind.transport)
            body = resp.json()
            # GoTrue returns the link fields at top level; some proxies nest them.
            token_hash = body.get("hashed_token") or (body.get("properties") or {}).get("hashed_token")
            if not token_hash:
                logger.warning("Identity provider returned no hashed_token")
                return AuthError(ErrorKind.transport)
            resp = self._request(
                "POST",
                "/auth/v1/verify",
                json={"type": "magiclink", "token_hash": token_hash},
            )
        except requests.RequestException as exc:
            logger.warning("Session exchange failed: %s", exc)
            return AuthError(ErrorKind.transport)
        except (ValueError, AttributeError) as exc:
            logger.warning("Identity provider returned an unreadable link: %s", exc)
            return AuthError(ErrorKind.transport)
        if 400 <= resp.status_code < 500:
            return AuthError(ErrorKind.invalid_credentials)
        if not resp.ok:
            logger.warning("Identity provider answered verify with HTTP %d", resp.status_code)
            return AuthError(ErrorKind.transport)
        return self._session_from(resp)

    def set_session(self, session: Session) -> None:
        """Adopt a session issued elsewhere (e.g. by code verification)."""
        self._session = session

    def current_session(self) -> Optional[Session]:
        return self._session

    def close(self) -> None:
        self._http.close()
