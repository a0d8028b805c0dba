import time
import uuid
import logging
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from core.logging import request_id_var

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
LATENCY_HEADER = "X-API-Latency-ms"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Per-request context:
    - request_id: incoming X-Request-ID, else a fresh req_<hex>; bound to
      request.state and to the logging context for the request's duration
    - latency: returned in X-API-Latency-ms and logged with the status code
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        start_time = time.perf_counter()

        try:
            response: Response = await call_next(request)
            latency_ms = int((time.perf_counter() - start_time) * 1000)

            response.headers[REQUEST_ID_HEADER] = request_id
            response.headers[LATENCY_HEADER] = str(latency_ms)

            # logged before the reset so the line carries this request's id
            log = logger.warning if response.status_code >= 500 else logger.debug
            log(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} in {latency_ms}ms")
        finally:
            request_id_var.reset(token)

        return response
