from __future__ import annotations

from contextvars import ContextVar
import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

DEFAULT_QUIET_PATHS = ("/healthz", "/readyz", "/metrics")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s %(message)s"

_trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
_otel_configured = False
_access_filter_configured = False
_logging_configured = False


def set_trace_id(trace_id: str) -> None:
    _trace_id_ctx.set(trace_id)


def get_trace_id() -> str:
    return _trace_id_ctx.get()


class TraceIdLogFilter(logging.Filter):
    """Stamp every record with the trace id of the request being served ("-" outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "trace_id", None):
            record.trace_id = get_trace_id() or "-"
        return True


class QuietPathAccessLogFilter(logging.Filter):
    """Drop uvicorn access lines for successful hits on scrape and health paths.

    uvicorn formats access records with args ``(client, method, path, http_version, status)``.
    Anything not shaped like that passes through untouched.
    """

    def __init__(self, quiet_paths: tuple[str, ...] = DEFAULT_QUIET_PATHS) -> None:
        super().__init__()
        self._quiet_paths = frozenset(_route_of(path) for path in quiet_paths)

    def filter(self, record: logging.LogRecord) -> bool:
        args = record.args
        if not isinstance(args, tuple) or len(args) < 5 or not isinstance(args[2], str):
            return True
        try:
            status = int(args[4])
        except (TypeError, ValueError):
            return True
        return not (200 <= status < 300 and _route_of(args[2]) in self._quiet_paths)


def _route_of(path: str) -> str:
    route = path.partition("?")[0]
    return route.rstrip("/") or "/"


def configure_otel(service_name: str) -> None:
    global _otel_configured
    if _otel_configured:
        return
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    trace.set_tracer_provider(provider)
    _otel_configured = True


def configure_access_log_filter(quiet_paths: tuple[str, ...] = DEFAULT_QUIET_PATHS) -> None:
    global _access_filter_configured
    if _access_filter_configured:
        return
    logging.getLogger("uvicorn.access").addFilter(QuietPathAccessLogFilter(quiet_paths))
    _access_filter_configured = True


def configure_logging(level: str = "INFO") -> logging.Handler | None:
    """Attach one stderr handler to the root logger that prints the request trace id."""
    global _logging_configured
    if _logging_configured:
        return None
    handler = logging.StreamHandler()
    handler.addFilter(TraceIdLogFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    _logging_configured = True
    return handler
