from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from pathlib import Path
from typing import Any

from devkit.config import ServiceSettings, load_settings
from devkit.observability import configure_access_log_filter, configure_logging, configure_otel
from fastapi import FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from facility_upload_service.errors import StorageError
from facility_upload_service.ingestion import IngestionFailure, IngestionPipeline
from facility_upload_service.metrics import (
    CompositeMetricsCollector,
    InMemoryMetricsCollector,
    PrometheusMetricsCollector,
)
from facility_upload_service.middleware import ObservabilityMiddleware
from facility_upload_service.response import error_response, upload_success_response
from facility_upload_service.schemas import ErrorResponse, UploadSuccessResponse
from facility_upload_service.store import FacilityStore

logger = logging.getLogger(__name__)


def create_app(settings: ServiceSettings | None = None) -> FastAPI:
    settings = settings or load_settings("facility-upload-service")
    configure_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.upload_dir.mkdir(parents=True, exist_ok=True)
        yield
        await app.state.store.close()

    app = FastAPI(title="Facility Upload Service", version="0.1.0", lifespan=lifespan)
    configure_otel(service_name=settings.SERVICE_NAME)
    configure_access_log_filter()

    app.state.settings = settings
    app.state.store = FacilityStore(settings.resolve_database_url())
    app.state.upload_dir = Path(settings.UPLOAD_DIR)
    app.state.api_metrics = InMemoryMetricsCollector()
    app.state.prom_metrics = PrometheusMetricsCollector()
    app.state.composite_metrics = CompositeMetricsCollector([app.state.api_metrics, app.state.prom_metrics])

    app.add_middleware(ObservabilityMiddleware, collector=app.state.composite_metrics)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def build_pipeline() -> IngestionPipeline:
        return IngestionPipeline(
            app.state.store,
            upload_dir=app.state.upload_dir,
            allowed_content_types=app.state.settings.allowed_content_types,
            metrics=app.state.composite_metrics,
        )

    async def fetch_or_500(fetch, failure_message: str) -> Any:
        try:
            return await fetch()
        except StorageError:
            logger.exception("facility_query_failed", extra={"error": failure_message})
            return JSONResponse(status_code=500, content=error_response(failure_message))

    @app.get("/healthz")
    async def healthz() -> dict[str, object]:
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz() -> dict[str, object]:
        return {"status": "ready"}

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = app.state.prom_metrics.render()
        return Response(content=payload, media_type="text/plain; version=0.0.4")

    @app.get("/api/facilities")
    async def list_facilities() -> Any:
        return await fetch_or_500(app.state.store.list_facilities, "Failed to fetch facilities")

    @app.get("/api/facility-types")
    async def list_facility_types() -> Any:
        return await fetch_or_500(app.state.store.list_facility_types, "Failed to fetch facility types")

    @app.get("/api/uploaded-facilities")
    async def list_uploaded_facilities() -> Any:
        return await fetch_or_500(app.state.store.list_staged_facilities, "Failed to fetch uploaded facilities")

    @app.post(
        "/api/upload-csv",
        response_model=UploadSuccessResponse,
        responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    )
    async def upload_csv(request: Request, file: UploadFile | None = File(default=None)) -> Any:
        result = await build_pipeline().run(file)
        request.state.upload_result = result
        if isinstance(result, IngestionFailure):
            return JSONResponse(status_code=result.status_code, content=error_response(result.error, result.details))
        return upload_success_response(result.rows_processed)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        message = "; ".join(err["msg"] for err in exc.errors())
        return JSONResponse(status_code=422, content=error_response("Validation error", message))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_error", extra={"path": request.url.path}, exc_info=exc)
        return JSONResponse(status_code=500, content=error_response("Server error", str(exc)))

    return app


app = create_app()
