"""Gateway-identity middleware for FastAPI.

Authentication happens upstream: the gateway verifies the session and
forwards the user id in ``X-Authenticated-User``.  This middleware copies
it to ``request.state.auth`` for ``get_current_user``; protected requests
without it are rejected with 401.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from fitsync.dependencies import AuthContext
from fitsync.sync.errors import AuthRequired

logger = logging.getLogger("fitsync.auth")

AUTH_HEADER = "X-Authenticated-User"

# Paths that do not require authentication
PUBLIC_PATHS: set[str] = {
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
}


def _is_public(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith("/docs") or path.startswith("/redoc")


class AuthContextMiddleware(BaseHTTPMiddleware):
    """Populate request.state.auth from the gateway header."""

    def __init__(self, app: Any, header_name: str = AUTH_HEADER) -> None:
        super().__init__(app)
        self._header_name = header_name

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if _is_public(request.url.path) or request.method == "OPTIONS":
            return await call_next(request)

        user_id = (request.headers.get(self._header_name) or "").strip()
        if not user_id or "/" in user_id:
            logger.info("Rejected %s %s: no authenticated user", request.method, request.url.path)
            error = AuthRequired()
            return Response(
                content=json.dumps({"detail": str(error), "error_kind": error.kind.value}),
                status_code=401,
                media_type="application/json",
            )

        request.state.auth = AuthContext(user_id=user_id)
        return await call_next(request)
