"""
backend/kickoff/middleware/logging.py

Purpose:
    One JSON access-log line per HTTP request and the process-wide logging
    setup. A caller-supplied X-Request-ID is kept so operator tooling can
    correlate its own logs with ours; otherwise a short id is generated.
"""

import json
import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("kickoff.http")

_REQUEST_ID = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")
_ADMIN_PREFIX = "/api/admin"


def _request_id(request: Request) -> str:
    incoming = request.headers.get("x-request-id", "")
    if _REQUEST_ID.match(incoming):
        return incoming
    return uuid.uuid4().hex[:8]


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _request_id(request)
        request.state.request_id = request_id
        start = time.perf_counter()

        response: Response = await call_next(request)

        path = request.url.path
        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": path,
            "status": response.status_code,
            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
        }
        if path.startswith(_ADMIN_PREFIX):
            log_data["admin"] = True
            log_data["admin_key_sent"] = "x-admin-key" in request.headers

        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(level, json.dumps(log_data))

        response.headers["X-Request-ID"] = request_id
        return response


def setup_logging(level: str | int = logging.INFO) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    # httpx logs full request URLs, query keys included, at INFO.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
