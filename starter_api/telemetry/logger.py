from __future__ import annotations

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

from fastapi import Request
from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from ..config import Settings

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_TEXT_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s [%(request_id)s] %(message)s"
_JSON_FORMAT = "%(asctime)s %(name)s %(levelname)s %(request_id)s %(message)s"

access_log = logging.getLogger("starter_api.access")


def current_request_id() -> Optional[str]:
    return _request_id.get()


class RequestIdFilter(logging.Filter):
    """Stamps the active request id on every record that lacks one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = _request_id.get() or "-"
        return True


def configure_logging(settings: Settings) -> None:
    """Install a single stdout handler on the root logger (JSON or text)."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for existing in list(root.handlers):
        if getattr(existing, "_starter_api", False):
            root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler._starter_api = True
    handler.addFilter(RequestIdFilter())
    if settings.log_format == "json":
        handler.setFormatter(jsonlogger.JsonFormatter(
            _JSON_FORMAT,
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        ))
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    root.addHandler(handler)

    for noisy in ("httpx", "httpcore", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Assigns each request a correlation id (reusing an inbound
    ``X-Request-ID``), exposes it to logging, and writes the access log.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        token = _request_id.set(request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - start
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{elapsed:.4f}"
            access_log.info(
                "%s %s %d %.3fs",
                request.method, request.url.path, response.status_code, elapsed,
            )
            return response
        finally:
            _request_id.reset(token)
