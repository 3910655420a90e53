import json
import logging
import time
import uuid
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

# polling endpoints log at DEBUG so a client watching a job does not flood the log
QUIET_PATH_PREFIXES = ("/upload/status/", "/health")


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """One structured JSON log line per request (request id, route, status, latency) and an x-request-id response header."""

    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        start = time.perf_counter()

        # attach to request state for handlers if needed
        request.state.request_id = rid

        response = await call_next(request)

        record = {
            "request_id": rid,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round((time.perf_counter() - start) * 1000.0, 2),
            "client": request.client.host if request.client else None,
        }
        if response.status_code >= 500:
            level = logging.WARNING
        elif request.url.path.startswith(QUIET_PATH_PREFIXES):
            level = logging.DEBUG
        else:
            level = logging.INFO
        logger.log(level, "%s", json.dumps(record))
        response.headers["x-request-id"] = rid
        return response
