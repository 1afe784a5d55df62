from __future__ import annotations

from time import perf_counter
from uuid import uuid4

from devkit.observability import set_trace_id
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from facility_upload_service.ingestion import IngestionFailure, IngestionResult, IngestionSuccess
from facility_upload_service.metrics import ApiRequestMetric, MetricsCollector

TRACE_HEADER = "x-trace-id"


def upload_span_attributes(result: IngestionResult | None) -> dict[str, str | int]:
    """Span attributes describing how an upload ended; empty for requests that ran no upload."""
    if isinstance(result, IngestionSuccess):
        return {"facility_upload.result": result.result, "facility_upload.rows": result.rows_processed}
    if isinstance(result, IngestionFailure):
        return {"facility_upload.result": result.result, "facility_upload.error": result.error}
    return {}


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Trace id propagation, one span per request and request metrics.

    Upload handlers leave their ``IngestionResult`` on ``request.state.upload_result`` so the
    span and the request metric carry the upload outcome.
    """

    def __init__(self, app, collector: MetricsCollector) -> None:
        super().__init__(app)
        self._collector = collector
        self._tracer = trace.get_tracer("facility_upload_service")

    async def dispatch(self, request: Request, call_next) -> Response:
        trace_id = request.headers.get(TRACE_HEADER) or uuid4().hex
        set_trace_id(trace_id)
        started = perf_counter()
        with self._tracer.start_as_current_span(f"{request.method} {request.url.path}") as span:
            span.set_attribute("http.method", request.method)
            span.set_attribute("http.route", request.url.path)
            span.set_attribute("facility_upload.trace_id", trace_id)
            try:
                response = await call_next(request)
            except Exception:
                span.set_attribute("http.status_code", 500)
                self._record(request, 500, started, trace_id)
                raise
            span.set_attribute("http.status_code", response.status_code)
            result = getattr(request.state, "upload_result", None)
            span.set_attributes(upload_span_attributes(result))

        response.headers[TRACE_HEADER] = trace_id
        self._record(request, response.status_code, started, trace_id, result)
        return response

    def _record(
        self,
        request: Request,
        status_code: int,
        started: float,
        trace_id: str,
        result: IngestionResult | None = None,
    ) -> None:
        self._collector.observe(
            ApiRequestMetric(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=(perf_counter() - started) * 1000.0,
                trace_id=trace_id,
                upload_result=result.result if result is not None else None,
            )
        )
