"""Signed bearer tokens shared by every service.

Verification is local: signature, expiry and claim shape are checked against
the shared secret with no network call and no shared state, so one codec can
serve any number of threads.
"""

import logging
from datetime import datetime, timedelta, timezone

import jwt

from evently.domain.auth import AuthClaims, Role
from evently.domain.exceptions import (
    BadSignatureError,
    MalformedTokenError,
    TokenExpiredError,
    UnsupportedTokenError,
    ValidationError,
)

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ["sub", "role", "userId", "iat", "exp"]


class TokenCodec:

    ALGORITHM = "HS256"

    def __init__(self, secret: str, default_ttl_seconds: int = 86400):
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret
        self.default_ttl_seconds = default_ttl_seconds

    def issue(
        self,
        subject: str,
        role: Role,
        user_id: str,
        ttl_seconds: int | None = None,
    ) -> str:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValidationError("Token ttl must be positive")
        if not subject or not user_id:
            raise ValidationError("Token subject and user id are required")

        now = datetime.now(timezone.utc)
        payload = {
            "sub": subject,
            "role": Role(role).value,
            "userId": str(user_id),
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ttl)).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=self.ALGORITHM)

    def verify(self, token: str) -> AuthClaims:
        if not token or not isinstance(token, str):
            raise MalformedTokenError()

        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError as exc:
            raise MalformedTokenError() from exc
        if header.get("alg") != self.ALGORITHM:
            raise UnsupportedTokenError()

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.ALGORITHM],
                options={"require": REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except jwt.InvalidSignatureError as exc:
            raise BadSignatureError() from exc
        except jwt.InvalidTokenError as exc:
            raise MalformedTokenError() from exc

        try:
            role = Role.parse(payload["role"])
        except ValueError as exc:
            raise UnsupportedTokenError() from exc

        subject = payload["sub"]
        user_id = payload["userId"]
        if not isinstance(subject, str) or not subject or user_id in (None, ""):
            raise MalformedTokenError()

        try:
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError) as exc:
            raise MalformedTokenError() from exc

        return AuthClaims(
            subject=subject,
            role=role,
            user_id=str(user_id),
            issued_at=issued_at,
            expires_at=expires_at,
        )
