"""
api/routes/v1/otc.py -- One-time code endpoints.

Routes:
  POST /api/v1/otc/send-otp    -- issue and deliver a code
  POST /api/v1/otc/verify-otp  -- verify a code; returns a session on success

Status codes:
  200 success | 400 refused (generic message) | 429 per-account quota
  exhausted | 503 store or delivery failure | 401 missing/invalid bearer

Security:
  [H2] Both routes are rate-limited per client IP (SEND_CODE_RATE_LIMIT),
       independently of the per-account quota enforced by the store.
  [M5] Cache-Control: no-store on every response (codes and sessions).
  Unknown and deactivated emails get the same 400 body as any other refusal.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import SendCodeRequest, SendCodeResponse, VerifyCodeRequest, VerifyCodeResponse
from auth.dependencies import Caller, require_caller
from auth.errors import ErrorKind
from auth.otc import LocalOtcService
from core.config import get_settings

logger = logging.getLogger("orgaccess.api.otc")

_settings = get_settings()

router = APIRouter()


def _no_store(status_code: int, content: dict, retry_after: int | None = None) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    if retry_after:
        resp.headers["Retry-After"] = str(retry_after)
    return resp


@limiter.limit(_settings.send_code_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/otc/send-otp", response_model=SendCodeResponse, response_model_exclude_none=True)
def send_code(request: Request, body: SendCodeRequest, caller: Caller = Depends(require_caller)) -> JSONResponse:
    """Issue a one-time code for an active account and deliver it by email."""
    otc: LocalOtcService = request.app.state.otc
    result = otc.request_code(body.email)
    payload = SendCodeResponse(**result.to_wire()).model_dump(exclude_none=True)

    if result.success:
        return _no_store(200, payload)
    kind = result.error.kind if result.error else ErrorKind.validation
    if kind is ErrorKind.rate_limited:
        return _no_store(429, payload, retry_after=result.cooldown_seconds)
    if kind is ErrorKind.transport:
        return _no_store(503, payload)
    return _no_store(400, payload)


@limiter.limit(_settings.send_code_rate_limit)  # [H2]
@router.post("/otc/verify-otp", response_model=VerifyCodeResponse, response_model_exclude_none=True)
def verify_code(request: Request, body: VerifyCodeRequest, caller: Caller = Depends(require_caller)) -> JSONResponse:
    """Verify a code. Success returns a session usable immediately; there is no exchange step."""
    otc: LocalOtcService = request.app.state.otc
    result = otc.verify_code(body.email, body.otp)
    payload = VerifyCodeResponse(**result.to_wire()).model_dump(exclude_none=True)

    if result.success:
        logger.info("Code verified for %s", result.session.identity.id)
        return _no_store(200, payload)
    if result.error is not None and result.error.kind is ErrorKind.transport:
        return _no_store(503, payload)
    return _no_store(400, payload)
