import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from quizcast.core.logging import latency_bucket_ms, request_id_ctx_var

REQUEST_ID_HEADER = "x-request-id"
_MAX_INBOUND_ID_CHARS = 128

logger = logging.getLogger("quizcast.http")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Correlate every request: reuse a caller-supplied x-request-id (bounded length) or
    mint one, expose it on request.state and the response, and log one
    request.complete line with the verified user once the route has run.
    """

    def __init__(self, app, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        inbound = (request.headers.get(self.header_name) or "").strip()
        rid = inbound[:_MAX_INBOUND_ID_CHARS] or uuid4().hex
        request.state.request_id = rid

        rid_token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = rid
            logger.info(
                "request.complete",
                extra={
                    "request_id": rid,
                    "user_id": getattr(request.state, "user_id", None),
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
                },
            )
            return response
        finally:
            request_id_ctx_var.reset(rid_token)
