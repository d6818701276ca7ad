"""
auth/errors.py -- Typed failures of the session lifecycle.

Expected failures are values, not exceptions: gateways, the status oracle,
the OTC services and the state machine all return an AuthError describing
what went wrong. Exceptions are reserved for programming errors
(InvalidTransition, ValueError from bad arguments) and for record-store
failures inside the store itself (auth.store.StoreError).

transport is always retryable and never a negative security result: a
timed-out status check must not be reported as "account inactive".
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    invalid_credentials = "invalid_credentials"
    account_inactive = "account_inactive"
    no_such_account = "no_such_account"
    rate_limited = "rate_limited"
    transport = "transport"
    validation = "validation"
    weak_password = "weak_password"
    password_rejected = "password_rejected"


# User-facing defaults. OTC request refusals deliberately share one message so
# that callers cannot tell an unknown email from a deactivated one.
DEFAULT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.invalid_credentials: "Invalid email or password.",
    ErrorKind.account_inactive: "Your account has been deactivated. Please contact your administrator.",
    ErrorKind.no_such_account: "Unable to send a code to this email address.",
    ErrorKind.rate_limited: "Too many code requests. Please try again later.",
    ErrorKind.transport: "Service temporarily unavailable. Please try again.",
    ErrorKind.validation: "Invalid request.",
    ErrorKind.weak_password: "Password does not meet the strength requirements.",
    ErrorKind.password_rejected: "Password update failed.",
}


@dataclass(frozen=True)
class AuthError:
    kind: ErrorKind
    message: str = ""
    retry_after_seconds: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.message:
            object.__setattr__(self, "message", DEFAULT_MESSAGES[self.kind])

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.transport, ErrorKind.rate_limited)


class InvalidTransition(RuntimeError):
    """Raised when a transition is requested from a state that does not admit it."""

    def __init__(self, transition: str, status: str) -> None:
        self.transition = transition
        self.status = status
        super().__init__(f"{transition}() is not allowed in state {status}")
