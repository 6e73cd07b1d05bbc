"""
Structured JSON logging.

One JSON object per line on stdout. Records emitted while a request is being
handled carry its request_id; the request log line also carries the webhook
outcome (event, instance, ticket_id, result) when the route attached one.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import Request, Response
from pythonjsonlogger.json import JsonFormatter
from starlette.middleware.base import BaseHTTPMiddleware

from ticket_router.metrics import record_http_request

REQUEST_ID_HEADER = "X-Request-ID"

# Chatty third-party loggers; httpx logs every gateway call at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

request_logger = logging.getLogger("ticket_router.requests")


class CustomJsonFormatter(JsonFormatter):
    """Adds `ts` (ISO-8601 UTC), `level` and the current request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = ts.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route the root logger and uvicorn's loggers through one JSON handler.

    The uvicorn access log is disabled; RequestLoggingMiddleware writes the
    per-request line instead.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))

    return root


def _route_template(request: Request) -> str:
    """'/tickets/{ticket_id}/messages' rather than the concrete path, to bound label cardinality."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request id (reusing an inbound X-Request-ID when present),
    echoes it on the response, records HTTP metrics and writes one
    "Request completed" line with method, path, status and latency_ms.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers[REQUEST_ID_HEADER] = request_id

            path = _route_template(request)
            if path != "/metrics":
                record_http_request(request.method, path, response.status_code, elapsed)

            fields = {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            fields.update(getattr(request.state, "webhook_log_data", {}))

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            request_logger.log(level, "Request completed", extra=fields)
            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(request: Request, **fields: Any) -> None:
    """
    Attach webhook outcome fields (event, instance, message_id, ticket_id,
    result) to the request log line. None values are dropped.
    """
    request.state.webhook_log_data = {k: v for k, v in fields.items() if v is not None}
