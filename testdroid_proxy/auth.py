"""API key authentication middleware.

When an API key is configured, it is required on all endpoints except the
health check and docs. Supports both Authorization: Bearer <key> and
X-API-Key: <key> headers. Without a key every request passes.
"""

from __future__ import annotations

import hmac

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

PUBLIC_PATHS = ("/", "/health", "/docs", "/redoc", "/openapi.json")


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Middleware that validates the API key on non-public requests."""

    def __init__(self, app, api_key: str) -> None:  # noqa: ANN001
        super().__init__(app)
        self.api_key = api_key

    def _matches(self, candidate: str) -> bool:
        return hmac.compare_digest(candidate.encode(), self.api_key.encode())

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if not self.api_key or request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer ") and self._matches(auth_header[7:]):
            return await call_next(request)

        if self._matches(request.headers.get("X-API-Key", "")):
            return await call_next(request)

        return JSONResponse(
            status_code=401,
            content={"detail": "Invalid or missing API key"},
        )
