"""
API request and response models for the orgaccess verification endpoint.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Field names of the code endpoints are part of a stable wire contract shared
with existing clients (success, message, cooldownMinutes, remainingRequests,
session), hence the camelCase.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: deliverability is the mail provider's problem. The
# pattern only rejects values that cannot be an address at all.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
CODE_PATTERN = r"^\d{4,10}$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SendCodeRequest(BaseModel):
    """Request body for POST /api/v1/otc/send-otp."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320, pattern=EMAIL_PATTERN)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class VerifyCodeRequest(BaseModel):
    """Request body for POST /api/v1/otc/verify-otp."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320, pattern=EMAIL_PATTERN)
    otp: str = Field(pattern=CODE_PATTERN)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SendCodeResponse(BaseModel):
    """Response for POST /api/v1/otc/send-otp. Absent fields are omitted, not null."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    cooldownMinutes: Optional[int] = None  # noqa: N815 -- wire contract
    remainingRequests: Optional[int] = None  # noqa: N815 -- wire contract


class UserInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str


class SessionInfo(BaseModel):
    """Session as handed to the client after successful verification."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    expires_at: int
    user: UserInfo


class VerifyCodeResponse(BaseModel):
    """Response for POST /api/v1/otc/verify-otp."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    session: Optional[SessionInfo] = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, Any] = Field(default_factory=dict)
