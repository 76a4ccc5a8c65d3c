"""
Structured logging and per-request context.

Each HTTP request gets a request id (taken from ``X-Request-ID`` when the
caller sends one) held in a ContextVar, so every log line emitted while the
request is handled carries it without passing loggers around.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from pythonjsonlogger.json import JsonFormatter
from starlette.middleware.base import BaseHTTPMiddleware

from messaging_service.metrics import record_http_request

REQUEST_ID_HEADER = "X-Request-ID"

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

request_logger = logging.getLogger("messaging_service.requests")


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RequestContextFilter(logging.Filter):
    """Stamp every record with the current request id (or None outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = request_id_ctx.get()
        return True


class CustomJsonFormatter(JsonFormatter):
    """One JSON object per line with ts, level, name, message and request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            log_record["ts"] = _utc_timestamp()
        log_record["level"] = record.levelname
        if log_record.get("request_id") is None:
            log_record.pop("request_id", None)


class PlainTextFormatter(logging.Formatter):
    """Human readable lines for local development."""

    def format(self, record: logging.LogRecord) -> str:
        request_id = getattr(record, "request_id", None)
        prefix = f"{_utc_timestamp()} [{record.levelname}]"
        if request_id:
            prefix += f" [{request_id}]"
        line = f"{prefix} {record.name}: {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> logging.Logger:
    """
    Route the root logger and uvicorn's loggers through a single stdout handler.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_format: "json" for structured output, "text" for development
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestContextFilter())
    if log_format.lower() == "text":
        handler.setFormatter(PlainTextFormatter())
    else:
        handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # Access lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    return root


def _route_path(request: Request) -> str:
    # Template of the matched route keeps metric label cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assign a request id, record HTTP metrics and emit one line per request.

    Log keys: request_id, method, path, status, latency_ms, plus whatever
    the route attached with log_ingest_data (message_id,
    provider_message_id, dup, result).
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

            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=_route_path(request),
                    status=response.status_code,
                    latency_seconds=elapsed,
                )

            self._log(request, response.status_code, elapsed)
            return response
        finally:
            request_id_ctx.reset(token)

    @staticmethod
    def _log(request: Request, status: int, elapsed: float) -> None:
        fields = {
            "method": request.method,
            "path": request.url.path,
            "status": status,
            "latency_ms": round(elapsed * 1000, 2),
        }
        fields.update(getattr(request.state, "ingest_log_data", {}))

        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        request_logger.log(level, "Request completed", extra=fields)


def log_ingest_data(
    request: Request,
    message_id: Optional[str] = None,
    provider_message_id: Optional[str] = None,
    dup: bool = False,
    result: Optional[str] = None,
) -> None:
    """Attach ingestion outcome fields to the request line the middleware writes."""
    data = {"dup": dup}
    if message_id is not None:
        data["message_id"] = message_id
    if provider_message_id is not None:
        data["provider_message_id"] = provider_message_id
    if result is not None:
        data["result"] = result
    request.state.ingest_log_data = data
