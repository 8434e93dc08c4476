"""
Structured JSON logging for the chat relay.

Every log line is a JSON object with ts, level, name and message. Lines
written while an HTTP request or a WebSocket session is being handled also
carry its request_id or session_id, set through log_context().
"""

import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from chat_relay.metrics import record_http_request


# Correlation ids attached to every log line emitted inside log_context()
CONTEXT_FIELDS: Dict[str, ContextVar[Optional[str]]] = {
    "request_id": ContextVar("request_id", default=None),
    "session_id": ContextVar("session_id", default=None),
}

UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


@contextmanager
def log_context(**ids: str) -> Iterator[None]:
    """
    Tag log lines emitted inside the block with correlation ids.

    Example:
        with log_context(session_id=session.id):
            logger.info("Session connected")

    Raises:
        KeyError: an id name that is not in CONTEXT_FIELDS
    """
    tokens = [(CONTEXT_FIELDS[name], CONTEXT_FIELDS[name].set(value)) for name, value in ids.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def current_context() -> Dict[str, str]:
    """Correlation ids bound in the current context."""
    return {name: var.get() for name, var in CONTEXT_FIELDS.items() if var.get()}


class RelayJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding an ISO-8601 ts, the level name and correlation ids."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault("ts", _iso_now())
        log_record["level"] = record.levelname
        for name, value in current_context().items():
            log_record.setdefault(name, value)


def _iso_now() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send all logging, uvicorn's included, to stdout as JSON.

    uvicorn's access log is switched off; RequestLoggingMiddleware writes one
    line per HTTP request instead.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(RelayJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in UVICORN_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs each HTTP request once it completes and records its metrics.

    Adds an X-Request-ID header to the response; the same id is attached to
    every line logged while the request is handled. WebSocket traffic is not
    seen here: the chat endpoint tags its lines with the session id.
    """

    logger = logging.getLogger("chat_relay.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex
        request.state.request_id = request_id

        with log_context(request_id=request_id):
            started = time.perf_counter()
            response = await call_next(request)
            elapsed = time.perf_counter() - started

            response.headers["X-Request-ID"] = request_id
            path = request.url.path

            # /metrics scrapes are left out of their own numbers
            if path != "/metrics":
                record_http_request(request.method, path, response.status_code, elapsed)

            self.logger.log(
                _level_for_status(response.status_code),
                "Request completed",
                extra={
                    "method": request.method,
                    "path": path,
                    "status": response.status_code,
                    "latency_ms": round(elapsed * 1000, 2),
                },
            )
            return response


def _level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO
