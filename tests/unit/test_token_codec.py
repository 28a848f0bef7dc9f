import time
from concurrent.futures import ThreadPoolExecutor

import jwt
import pytest

from evently.application.token_service import TokenCodec
from evently.domain.auth import Role
from evently.domain.exceptions import (
    AuthError,
    BadSignatureError,
    MalformedTokenError,
    TokenExpiredError,
    UnsupportedTokenError,
    ValidationError,
)

SECRET = "unit-test-secret-0123456789abcdef0123456789abcdef"


@pytest.fixture
def codec():
    return TokenCodec(SECRET, default_ttl_seconds=3600)


def test_issue_and_verify_round_trip(codec):
    token = codec.issue("alice", Role.ORGANIZER, "42")

    claims = codec.verify(token)

    assert claims.subject == "alice"
    assert claims.role is Role.ORGANIZER
    assert claims.user_id == "42"
    assert claims.expires_at > claims.issued_at


def test_expired_token(codec):
    now = int(time.time())
    token = jwt.encode(
        {"sub": "alice", "role": "USER", "userId": "42", "iat": now - 120, "exp": now - 60},
        SECRET,
        algorithm="HS256",
    )

    with pytest.raises(TokenExpiredError):
        codec.verify(token)


def test_tampered_signature(codec):
    token = codec.issue("alice", Role.USER, "42")
    other = TokenCodec("another-secret-0123456789abcdef0123456789abcdef")

    with pytest.raises(BadSignatureError):
        other.verify(token)


@pytest.mark.parametrize("token", ["", "not-a-token", "a.b.c"])
def test_malformed_token(codec, token):
    with pytest.raises(MalformedTokenError):
        codec.verify(token)


def test_missing_claim_is_malformed(codec):
    now = int(time.time())
    token = jwt.encode({"sub": "alice", "role": "USER", "iat": now, "exp": now + 60}, SECRET, algorithm="HS256")

    with pytest.raises(MalformedTokenError):
        codec.verify(token)


def test_unsupported_algorithm(codec):
    now = int(time.time())
    token = jwt.encode(
        {"sub": "alice", "role": "USER", "userId": "42", "iat": now, "exp": now + 60},
        SECRET,
        algorithm="HS512",
    )

    with pytest.raises(UnsupportedTokenError):
        codec.verify(token)


def test_unknown_role_is_unsupported(codec):
    now = int(time.time())
    token = jwt.encode(
        {"sub": "alice", "role": "SUPERUSER", "userId": "42", "iat": now, "exp": now + 60},
        SECRET,
        algorithm="HS256",
    )

    with pytest.raises(UnsupportedTokenError):
        codec.verify(token)


def test_role_is_case_insensitive(codec):
    now = int(time.time())
    token = jwt.encode(
        {"sub": "alice", "role": "admin", "userId": "1", "iat": now, "exp": now + 60},
        SECRET,
        algorithm="HS256",
    )

    assert codec.verify(token).role is Role.ADMIN


def test_every_failure_is_an_auth_error():
    for error_type in (TokenExpiredError, MalformedTokenError, BadSignatureError, UnsupportedTokenError):
        assert issubclass(error_type, AuthError)
        assert str(error_type()) == "Unauthorized"


def test_non_positive_ttl_rejected(codec):
    with pytest.raises(ValidationError):
        codec.issue("alice", Role.USER, "42", ttl_seconds=0)


def test_verify_is_safe_across_threads(codec):
    tokens = [codec.issue(f"user{i}", Role.USER, str(i)) for i in range(20)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        claims = list(pool.map(codec.verify, tokens))

    assert [c.user_id for c in claims] == [str(i) for i in range(20)]
