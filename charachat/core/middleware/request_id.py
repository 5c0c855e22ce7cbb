import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from charachat.core.logging import latency_bucket_ms, request_id_ctx_var

logger = logging.getLogger("charachat.http")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Correlate logs and responses by request id.

    Reuses the caller's x-request-id when present, echoes it on the response
    and logs one request.complete line per request.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = rid
            logger.info(
                "request.complete",
                extra={
                    "request_id": rid,
                    "account_id": getattr(request.state, "user_id", None),
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
                },
            )
            return response
        finally:
            request_id_ctx_var.reset(token)
