"""
Structured logging configuration

Every record is emitted as one JSON object carrying the service identity,
the request/checkout context taken from context variables and any
``extra_fields`` passed by the caller.
"""

import json
import logging
import logging.handlers
import re
import sys
import time
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

# Context variables for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
checkout_id_var: ContextVar[Optional[str]] = ContextVar('checkout_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)

_service_identity: Dict[str, str] = {
    "service": "shopflow",
    "version": "1.0.0",
    "environment": "development",
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter understood by ELK, CloudWatch Insights and Datadog."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "@timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_service_identity,
        }

        trace_context = self._get_trace_context()
        if trace_context:
            log_obj["trace"] = trace_context

        log_obj["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
            "module": record.module,
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_obj["error"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "stacktrace": traceback.format_exception(*record.exc_info),
            }

        if hasattr(record, 'extra_fields'):
            log_obj["custom"] = record.extra_fields

        if hasattr(record, 'duration_ms'):
            log_obj["performance"] = {"duration_ms": record.duration_ms}

        return json.dumps(log_obj, default=str)

    def _get_trace_context(self) -> Optional[Dict[str, Any]]:
        context = {
            "request_id": request_id_var.get(),
            "checkout_id": checkout_id_var.get(),
            "user_id": user_id_var.get(),
        }
        context = {key: value for key, value in context.items() if value}
        return context or None


class PerformanceFilter(logging.Filter):
    """Converts a ``duration`` attribute in seconds into ``duration_ms``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if hasattr(record, 'duration'):
            record.duration_ms = record.duration * 1000
        return True


class SecurityFilter(logging.Filter):
    """Redacts payment tokens and credentials written as ``key=value``."""

    SENSITIVE_FIELDS = [
        'token', 'secret', 'api_key', 'password', 'client_secret',
        'authorization', 'source',
    ]
    _pattern = re.compile(
        r"\b(" + "|".join(SENSITIVE_FIELDS) + r")=([^\s,;]+)",
        re.IGNORECASE,
    )

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self._pattern.sub(r"\1=***REDACTED***", message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def setup_logging(
    service_name: str,
    level: str = "INFO",
    version: str = "1.0.0",
    environment: str = "development",
    enable_console: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Setup structured logging for the service

    Args:
        service_name: Name reported in every record
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        version: Service version reported in every record
        environment: Deployment environment (development/staging/production)
        enable_console: Enable stdout output
        log_file: Optional path of a rotating log file
    """
    _service_identity.update(
        service=service_name, version=version, environment=environment
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers = []

    formatter = StructuredFormatter()
    handlers: list[logging.Handler] = []

    if enable_console:
        handlers.append(logging.StreamHandler(sys.stdout))

    if log_file:
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=5,
        ))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(PerformanceFilter())
        handler.addFilter(SecurityFilter())
        root_logger.addHandler(handler)

    logging.getLogger('uvicorn').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialized",
        extra={
            'extra_fields': {
                'service': service_name,
                'level': level,
                'handlers': {'console': enable_console, 'file': bool(log_file)},
            }
        },
    )


class LoggerAdapter(logging.LoggerAdapter):
    """Injects the current request/checkout context into ``extra``."""

    def process(self, msg, kwargs):
        extra = kwargs.get('extra', {})

        for key, var in (
            ('request_id', request_id_var),
            ('checkout_id', checkout_id_var),
            ('user_id', user_id_var),
        ):
            value = var.get()
            if value:
                extra[key] = value

        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str) -> LoggerAdapter:
    return LoggerAdapter(logging.getLogger(name), {})


_UNSET = object()


def set_request_context(
    request_id: Optional[str] = None,
    checkout_id: Optional[str] = None,
    user_id: Any = _UNSET,
) -> None:
    """Bind ids to the current context.

    ``user_id`` is always replaced when given; ``None`` clears it (guests).
    """
    if request_id:
        request_id_var.set(request_id)
    if checkout_id:
        checkout_id_var.set(checkout_id)
    if user_id is not _UNSET:
        user_id_var.set(None if user_id is None else str(user_id))


def generate_request_id() -> str:
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with its duration and echoes ``X-Request-ID``."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get('X-Request-ID', generate_request_id())
        set_request_context(request_id=request_id)

        logger = get_logger(__name__)
        logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra={
                'extra_fields': {
                    'method': request.method,
                    'path': request.url.path,
                    'client_host': request.client.host if request.client else None,
                }
            },
        )

        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                exc_info=True,
                extra={
                    'extra_fields': {
                        'method': request.method,
                        'path': request.url.path,
                        'duration_ms': (time.time() - start_time) * 1000,
                    }
                },
            )
            raise

        logger.info(
            f"Request completed: {request.method} {request.url.path}",
            extra={
                'extra_fields': {
                    'method': request.method,
                    'path': request.url.path,
                    'status_code': response.status_code,
                    'duration_ms': (time.time() - start_time) * 1000,
                }
            },
        )
        response.headers['X-Request-ID'] = request_id
        return response
