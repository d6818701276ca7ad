"""
auth/models.py -- Domain dataclasses for the session lifecycle.

Pattern: Data class (pure data container, near-zero logic). Mirrors the
approach in access/models.py -- dataclasses own domain shape; the store,
gateway, OTC services and state machine do the work.

Timestamps are ISO 8601 strings in UTC, the same representation the store
writes, so rows map onto these classes without conversion.

Layer rule: stdlib + auth.errors only.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from auth.errors import AuthError


@dataclass(frozen=True)
class Identity:
    """A principal issued by the identity provider. Read-only here."""

    id: str
    email: str


@dataclass
class Session:
    """Proof of authentication held in memory by one client process.

    access_token is opaque to this package except for sessions minted by the
    local OTC service, which are JWTs (see auth/tokens.py). expires_at is a
    Unix timestamp in seconds.
    """

    access_token: str
    refresh_token: str
    expires_at: int
    identity: Identity
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password

    def expires_in(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(0, int(self.expires_at - now))

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.expires_in(now) <= 0

    def to_dict(self) -> dict[str, Any]:
        """Wire shape shared by the identity provider and the verification endpoint."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in(),
            "expires_at": self.expires_at,
            "user": {"id": self.identity.id, "email": self.identity.email},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        """Build a Session from the wire shape.

        Raises KeyError/TypeError/ValueError on a malformed payload; callers
        treat that as a transport failure.
        """
        user = data["user"]
        expires_at = data.get("expires_at")
        if expires_at is None:
            expires_at = int(time.time()) + int(data.get("expires_in") or 0)
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=str(data.get("refresh_token") or ""),
            expires_at=int(expires_at),
            identity=Identity(id=str(user["id"]), email=str(user.get("email") or "")),
            token_type=str(data.get("token_type") or "bearer"),
        )


@dataclass
class AccountRecord:
    """Per-identity account row.

    is_active=False means the identity must never hold a Session.
    otp_requests_count and last_otp_request drive OTC rate limiting;
    the count resets only on a full login, never on code verification alone.

    id is None before the record is written to the database.
    """

    identity_id: str
    email: str
    display_name: str = ""
    is_active: bool = True
    is_first_login: bool = True
    password_updated: bool = False
    otp_requests_count: int = 0
    last_otp_request: Optional[str] = None  # ISO 8601
    last_login: Optional[str] = None  # ISO 8601
    id: Optional[int] = None
    created_at: str = ""  # ISO 8601, set by store on insert


@dataclass(frozen=True)
class AccountStatus:
    """Answer of the Account Status Oracle.

    error is set only for lookup failures; exists=False with error=None is a
    legitimate negative answer. account carries the row when it was found.
    """

    exists: bool
    is_active: bool
    error: Optional[AuthError] = None
    account: Optional[AccountRecord] = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.error is None and self.exists and self.is_active


@dataclass(frozen=True)
class OtcSlot:
    """Outcome of one atomic increment-and-check of the OTC counter."""

    granted: bool
    request_count: int
    remaining_requests: int
    cooldown_seconds: Optional[int] = None


@dataclass(frozen=True)
class OtcRequestResult:
    success: bool
    message: str
    cooldown_seconds: Optional[int] = None
    remaining_requests: Optional[int] = None
    error: Optional[AuthError] = None

    @property
    def cooldown_minutes(self) -> Optional[int]:
        if self.cooldown_seconds is None:
            return None
        return math.ceil(self.cooldown_seconds / 60)

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.cooldown_seconds is not None:
            body["cooldownMinutes"] = self.cooldown_minutes
        if self.remaining_requests is not None:
            body["remainingRequests"] = self.remaining_requests
        return body


@dataclass(frozen=True)
class OtcVerifyResult:
    success: bool
    message: str
    session: Optional[Session] = None
    error: Optional[AuthError] = None

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.session is not None:
            body["session"] = self.session.to_dict()
        return body
