from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One structured line and one metric sample per request; 4xx log at WARNING, 5xx at ERROR."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._record(request, method, 500, started, exc_info=True)
            raise

        self._record(request, method, response.status_code, started)
        return response

    @staticmethod
    def _record(request: Request, method: str, status_code: int, started: float, *, exc_info: bool = False) -> None:
        duration = time.perf_counter() - started
        # Resolved after dispatch so the matched route template is available.
        path = resolve_http_path_label(request)
        observe_http_request(method=method, path=path, status=status_code, duration=duration)
        logger.log(
            _level_for(status_code),
            "http.request",
            exc_info=exc_info,
            extra={
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": round(duration * 1000, 2),
            },
        )
