"""HTTP request logging with correlation ids."""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING

from starlette.middleware.base import BaseHTTPMiddleware

from agentcluster.logging import get_logger, set_correlation_id

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import Request
    from starlette.responses import Response

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every HTTP request with its duration and status.

    The correlation id is taken from the ``X-Correlation-ID`` header or
    generated, bound to the logging context for the request, and echoed in
    the response headers. Long-poll output requests are logged at debug
    level since clients issue them continuously.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        path = request.url.path
        log = logger.debug if path.endswith("/output") else logger.info
        start = time.perf_counter()
        try:
            response = await call_next(request)
            log(
                "request_completed",
                method=request.method,
                path=path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=path,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
                error=str(exc),
                exc_info=True,
            )
            raise
        finally:
            set_correlation_id(None)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
