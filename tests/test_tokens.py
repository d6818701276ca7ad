"""Tests for auth/tokens.py.

Covers:
- code hashing round trip and malformed hashes
- generated codes are numeric with the requested length
- session JWTs decode; tampered or foreign tokens do not
- password strength rules
"""

import pytest
from jose import jwt

from auth import tokens
from auth.models import Identity
from auth.tokens import (
    check_password_strength,
    create_session_token,
    decode_session_token,
    generate_code,
    hash_code,
    password_strength_message,
    verify_code_hash,
)


def test_code_hash_round_trip():
    hashed = hash_code("482913")
    assert verify_code_hash("482913", hashed)
    assert not verify_code_hash("482914", hashed)
    assert not verify_code_hash("482913", "not-a-bcrypt-hash")


@pytest.mark.parametrize("length", [4, 6, 10])
def test_generate_code(length):
    code = generate_code(length)
    assert len(code) == length
    assert code.isdigit()


def test_generate_code_rejects_zero_length():
    with pytest.raises(ValueError):
        generate_code(0)


def test_session_token_round_trip():
    token, expires_at = create_session_token(Identity(id="user-1", email="member@example.org"), 120)
    claims = decode_session_token(token)
    assert claims["sub"] == "user-1"
    assert claims["email"] == "member@example.org"
    assert claims["exp"] == expires_at


def test_foreign_or_tampered_tokens_are_rejected():
    token, _ = create_session_token(Identity(id="user-1", email="member@example.org"), 120)
    header, body, _ = token.split(".")
    assert decode_session_token(f"{header}.{body}.c2lnbmF0dXJl") is None
    assert decode_session_token("garbage") is None
    foreign = jwt.encode({"sub": "user-1", "typ": "access"}, "some-other-secret-of-sufficient-length!", "HS256")
    assert decode_session_token(foreign) is None


def test_expired_token_is_rejected():
    token, _ = create_session_token(Identity(id="user-1", email="member@example.org"), 1)
    payload = jwt.get_unverified_claims(token)
    assert payload["typ"] == "access"
    stale = jwt.encode({**payload, "exp": 1}, tokens._settings.secret_key, algorithm="HS256")
    assert decode_session_token(stale) is None


@pytest.mark.parametrize(
    ("password", "missing"),
    [
        ("Str0ng!pass", []),
        ("short1!", ["at least 8 characters", "an uppercase letter"]),
        ("alllowercase", ["an uppercase letter", "a number", "a special character"]),
        ("NOLOWER1!", ["a lowercase letter"]),
    ],
)
def test_password_strength(password, missing):
    assert check_password_strength(password) == missing


def test_password_strength_message():
    assert password_strength_message(["a number"]) == "Password must contain a number."
