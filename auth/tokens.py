"""
auth/tokens.py -- Session tokens, one-time code hashing, and password rules.

Security design decisions:
  Session JWT: python-jose with HS256. Sessions minted by the local OTC
       service carry identity id, email and expiry, signed with SECRET_KEY.
       Verification returns None on any failure -- the route layer turns
       that into a 401. Tokens issued by the external identity provider are
       opaque here and never decoded.

  Codes: bcrypt via the bcrypt package directly. A six-digit code has little
       entropy, so its hash must be slow to brute-force if process memory is
       ever dumped. The _DUMMY_HASH constant enables timing equalization in
       LocalOtcService.verify_code() so response time does not reveal whether
       a code is pending for an email [C1].

  Refresh tokens: secrets.token_urlsafe(32), opaque, never persisted.

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup [M6].

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is
the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.models import Identity
from core.config import get_settings

logger = logging.getLogger("orgaccess.auth.tokens")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
_TOKEN_TYPE = "access"  # noqa: S105 # nosec B105 -- claim value, not a password

# ---------------------------------------------------------------------------
# One-time code hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_code(code: str) -> str:
    """Return a bcrypt hash of a one-time code."""
    return bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_code_hash(code: str, hashed: str) -> bool:
    """Return True if code matches the bcrypt hash. Malformed hashes never match."""
    try:
        return bcrypt.checkpw(code.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load. verify_code_hash() always runs, even when no code
# is pending for the email, so an unknown email costs the same bcrypt work.
_DUMMY_HASH: str = hash_code("000000")


def generate_code(length: int) -> str:
    """Return a numeric code of exactly length digits from the secrets CSPRNG."""
    if length < 1:
        raise ValueError("Code length must be positive.")
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# Session JWT encode / decode
# ---------------------------------------------------------------------------


def create_session_token(identity: Identity, expire_seconds: int = 0) -> tuple[str, int]:
    """Encode a signed session JWT for identity.

    Returns (token, expires_at) where expires_at is a Unix timestamp. If
    expire_seconds is 0 (default), Settings.session_ttl_seconds is used.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.session_ttl_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": identity.id,
        "email": identity.email,
        "typ": _TOKEN_TYPE,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM), int(expire.timestamp())


def decode_session_token(token: str) -> dict | None:
    """Decode and verify a session JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("typ") != _TOKEN_TYPE or "sub" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Password strength
# ---------------------------------------------------------------------------

MIN_PASSWORD_LENGTH = 8
_SPECIAL_CHARS = re.compile(r'[!@#$%^&*(),.?":{}|<>]')

_PASSWORD_RULES: tuple[tuple[str, "re.Pattern[str]"], ...] = (
    ("an uppercase letter", re.compile(r"[A-Z]")),
    ("a lowercase letter", re.compile(r"[a-z]")),
    ("a number", re.compile(r"\d")),
    ("a special character", _SPECIAL_CHARS),
)


def check_password_strength(password: str) -> list[str]:
    """Return the unmet password requirements; an empty list means acceptable."""
    problems: list[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"at least {MIN_PASSWORD_LENGTH} characters")
    problems.extend(label for label, pattern in _PASSWORD_RULES if not pattern.search(password))
    return problems


def password_strength_message(problems: list[str]) -> str:
    return "Password must contain " + ", ".join(problems) + "."
