import asyncio
import hmac
import math

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from download_guard.api.modules.ratelimit.exceptions import RequestTimeoutError

_EXEMPT_PATHS = frozenset(
    {"/rate-limit/collector.js", "/health", "/openapi.json", "/docs", "/redoc"}
)


class ApiKeyMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, api_key: str) -> None:  # noqa: ANN001
        super().__init__(app)
        self._api_key = api_key

    async def dispatch(self, request: Request, call_next) -> Response:  # noqa: ANN001
        if request.method == "OPTIONS" or request.url.path in _EXEMPT_PATHS:
            return await call_next(request)

        provided = request.headers.get("X-API-Key", "")
        if not hmac.compare_digest(provided, self._api_key):
            return JSONResponse(
                {"detail": "Invalid or missing API key"},
                status_code=401,
            )

        return await call_next(request)


class RequestTimeoutMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, timeout_seconds: float) -> None:  # noqa: ANN001
        super().__init__(app)
        self._timeout_seconds = timeout_seconds

    async def dispatch(self, request: Request, call_next) -> Response:  # noqa: ANN001
        try:
            return await asyncio.wait_for(call_next(request), self._timeout_seconds)
        except TimeoutError:
            return JSONResponse(
                {"detail": RequestTimeoutError.code, "retryable": True},
                status_code=RequestTimeoutError.status_code,
                headers={"Retry-After": str(max(1, math.ceil(self._timeout_seconds)))},
            )
