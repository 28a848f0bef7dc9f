"""
Boundary filter for bearer tokens.

Every inbound ``X-User-*`` header is dropped first, so the only identity
headers a route can see are the ones injected here after the token verified.
"""

from __future__ import annotations

import logging

from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from evently.application.token_service import TokenCodec
from evently.domain.exceptions import AuthError

security_logger = logging.getLogger("evently.security")

USER_ID_HEADER = "x-user-id"
USER_ROLE_HEADER = "x-user-role"
USERNAME_HEADER = "x-user-username"
PUBLIC_PATHS = frozenset({"/health", "/payments/webhook"})

_FORWARDED_PREFIX = b"x-user-"


def _bearer_token(headers: list[tuple[bytes, bytes]]) -> str | None:
    for name, value in headers:
        if name.lower() == b"authorization":
            scheme, _, token = value.decode("latin-1").partition(" ")
            if scheme.lower() == "bearer" and token.strip():
                return token.strip()
            return None
    return None


class BearerTokenMiddleware:

    def __init__(self, app: ASGIApp, codec: TokenCodec, public_paths: frozenset[str] = PUBLIC_PATHS):
        self.app = app
        self.codec = codec
        self.public_paths = public_paths

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        headers = [
            (name, value)
            for name, value in scope.get("headers", [])
            if not name.lower().startswith(_FORWARDED_PREFIX)
        ]
        path = scope.get("path", "")

        if path not in self.public_paths:
            try:
                claims = self.codec.verify(_bearer_token(headers))
            except AuthError as exc:
                security_logger.warning(
                    "Rejected bearer token. method=%s path=%s reason=%s",
                    scope.get("method"),
                    path,
                    exc.__class__.__name__,
                )
                response = JSONResponse(
                    {"detail": "Unauthorized"},
                    status_code=401,
                    headers={"WWW-Authenticate": "Bearer"},
                )
                return await response(scope, receive, send)

            headers.extend(
                [
                    (USER_ID_HEADER.encode("latin-1"), claims.user_id.encode("latin-1")),
                    (USER_ROLE_HEADER.encode("latin-1"), claims.role.value.encode("latin-1")),
                    (USERNAME_HEADER.encode("latin-1"), claims.subject.encode("latin-1")),
                ]
            )

        await self.app(dict(scope, headers=headers), receive, send)
