"""Access logging middleware: one JSON line per request, tagged with request ID and rules version."""

import json
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("resolution.access")

MAX_REQUEST_ID_LENGTH = 64
QUIET_PATHS = {"/api/v1/health"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        # Reuse the caller's X-Request-ID when supplied
        request_id = request.headers.get("X-Request-ID", "")[:MAX_REQUEST_ID_LENGTH] or uuid.uuid4().hex[:8]
        request.state.request_id = request_id
        rules_version = getattr(request.app.state, "rules_version", None)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(json.dumps({
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "rules_version": rules_version,
            }))
            raise

        entry = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            "rules_version": rules_version,
        }
        if response.status_code >= 500:
            logger.warning(json.dumps(entry))
        elif request.url.path in QUIET_PATHS:
            logger.debug(json.dumps(entry))
        else:
            logger.info(json.dumps(entry))

        response.headers["X-Request-ID"] = request_id
        if rules_version:
            response.headers["X-Rules-Version"] = rules_version
        return response
