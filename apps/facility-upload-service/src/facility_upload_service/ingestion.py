from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import logging
from pathlib import Path
from time import perf_counter
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from devkit.observability import get_trace_id
from fastapi import UploadFile

from facility_upload_service import errors
from facility_upload_service.csv_reader import FacilityRecord, read_facility_records, remove_upload, save_upload
from facility_upload_service.errors import ErrorKind, StorageError, UniqueViolationError, UploadError
from facility_upload_service.metrics import MetricsCollector
from facility_upload_service.validation import DuplicateDetector, validate_required_fields

R = TypeVar("R")
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestionSuccess:
    rows_processed: int

    @property
    def result(self) -> str:
        return "committed"


@dataclass(frozen=True)
class IngestionFailure:
    kind: ErrorKind
    status_code: int
    error: str
    details: Any = None

    @classmethod
    def from_error(cls, exc: UploadError) -> IngestionFailure:
        return cls(kind=exc.kind, status_code=exc.status_code, error=exc.error, details=exc.details)

    @property
    def result(self) -> str:
        return self.kind.value


IngestionResult = IngestionSuccess | IngestionFailure


class StagingStore(Protocol):
    async def find_staged_uids(self, uids: Sequence[str]) -> list[str]: ...

    async def stage_batch(self, records: Sequence[Mapping[str, str]]) -> int: ...


def _content_type(upload: UploadFile) -> str:
    raw = upload.content_type or ""
    return raw.split(";", 1)[0].strip().lower()


class IngestionPipeline:
    """Parse an uploaded CSV, reject it on duplicate uids or missing fields, else stage every row at once.

    The uploaded artifact is removed before ``run`` returns, whatever the outcome.
    """

    def __init__(
        self,
        store: StagingStore,
        *,
        upload_dir: Path,
        allowed_content_types: frozenset[str] = frozenset({"text/csv"}),
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._store = store
        self._detector = DuplicateDetector(store)
        self._upload_dir = upload_dir
        self._allowed_content_types = allowed_content_types
        self._metrics = metrics

    async def run(self, upload: UploadFile | None) -> IngestionResult:
        if upload is None:
            return self._reject(errors.no_file_uploaded())
        if _content_type(upload) not in self._allowed_content_types:
            return self._reject(errors.invalid_file_type())

        path: Path | None = None
        try:
            path = await self._time_async("receive", lambda: save_upload(upload, self._upload_dir))
            records = await self._time_async("parse", lambda: asyncio.to_thread(read_facility_records, path))
            await self._check_duplicates(records)
            self._time_sync("validate", lambda: self._check_required_fields(records))
            saved_count = await self._time_async("persist", lambda: self._persist(records))
        except UploadError as exc:
            return self._reject(exc, upload_filename=upload.filename)
        finally:
            if path is not None:
                remove_upload(path)

        if self._metrics:
            self._metrics.record_upload("committed", saved_count)
        logger.info(
            "csv_upload_committed",
            extra={
                "component": "ingestion",
                "upload_filename": upload.filename,
                "rows": saved_count,
                "trace_id": get_trace_id(),
            },
        )
        return IngestionSuccess(rows_processed=saved_count)

    async def _check_duplicates(self, records: list[FacilityRecord]) -> None:
        try:
            report = await self._time_async("duplicate_check", lambda: self._detector.check(records))
        except StorageError as exc:
            raise errors.database_error(exc.code, message="Failed to check existing UIDs in database") from exc
        if report.has_duplicates:
            raise errors.duplicate_uids(report.duplicates)

    def _check_required_fields(self, records: list[FacilityRecord]) -> None:
        messages = validate_required_fields(records)
        if messages:
            raise errors.validation_errors(messages)

    async def _persist(self, records: list[FacilityRecord]) -> int:
        try:
            return await self._store.stage_batch(records)
        except UniqueViolationError as exc:
            raise errors.duplicate_entry(exc.constraint) from exc
        except StorageError as exc:
            raise errors.database_error(exc.code) from exc

    def _reject(self, exc: UploadError, *, upload_filename: str | None = None) -> IngestionFailure:
        failure = IngestionFailure.from_error(exc)
        if self._metrics:
            self._metrics.record_upload(failure.result)
        log = logger.error if failure.kind is ErrorKind.INFRASTRUCTURE else logger.warning
        log(
            "csv_upload_rejected",
            extra={
                "component": "ingestion",
                "upload_filename": upload_filename,
                "trace_id": get_trace_id(),
                "error": failure.error,
                "kind": failure.kind.value,
                "status_code": failure.status_code,
            },
            exc_info=exc.__cause__ if failure.kind is ErrorKind.INFRASTRUCTURE else None,
        )
        return failure

    async def _time_async(self, stage: str, action: Callable[[], Awaitable[R]]) -> R:
        started = perf_counter()
        result = await action()
        self._observe(stage, (perf_counter() - started) * 1000.0)
        return result

    def _time_sync(self, stage: str, action: Callable[[], R]) -> R:
        started = perf_counter()
        result = action()
        self._observe(stage, (perf_counter() - started) * 1000.0)
        return result

    def _observe(self, stage: str, duration_ms: float) -> None:
        if self._metrics:
            self._metrics.observe_stage_duration(stage, duration_ms)
