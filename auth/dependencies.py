"""
auth/dependencies.py -- FastAPI Depends() helpers for the verification endpoint.

Two bearer credentials are accepted, checked in order:
  1. The service key (SERVICE_KEY) -- callers with no user session yet.
  2. A session JWT issued by this server's local OTC service.

Identity-provider tokens are opaque to this package and are not accepted.

try_get_caller() is the soft variant (returns None on failure).
require_caller() wraps it and raises HTTP 401 if unauthenticated. The 401
body never says which check failed.

Layer rule: may import from fastapi (Depends/HTTPException/Request) because
this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from auth.tokens import decode_session_token
from core.config import get_settings


@dataclass(frozen=True)
class Caller:
    """Who is calling: the service credential, or the holder of a session."""

    kind: str  # "service" | "session"
    identity_id: Optional[str] = None
    email: Optional[str] = None


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_caller(request: Request) -> Optional[Caller]:
    """Authenticate the request's bearer token. Never raises."""
    token = _bearer_token(request)
    if not token:
        return None

    service_key = get_settings().service_key
    if service_key and hmac.compare_digest(token.encode("utf-8"), service_key.encode("utf-8")):
        return Caller(kind="service")

    payload = decode_session_token(token)
    if payload:
        return Caller(kind="session", identity_id=payload["sub"], email=payload.get("email"))
    return None


def require_caller(request: Request) -> Caller:
    """Require a valid bearer credential. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.post("/otc/send-otp")
        async def route(caller: Caller = Depends(require_caller)): ...
    """
    caller = try_get_caller(request)
    if caller is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return caller
