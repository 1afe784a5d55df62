from __future__ import annotations

import csv
from collections.abc import Iterator
import logging
from pathlib import Path
import time
from uuid import uuid4

from fastapi import UploadFile

from facility_upload_service.errors import csv_processing_error

FacilityRecord = dict[str, str]

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


async def save_upload(upload: UploadFile, upload_dir: Path) -> Path:
    """Copy the received multipart file into ``upload_dir`` and return its path."""
    original_name = Path(upload.filename or "upload.csv").name or "upload.csv"
    target = upload_dir / f"{int(time.time() * 1000)}-{uuid4().hex[:8]}-{original_name}"
    try:
        upload_dir.mkdir(parents=True, exist_ok=True)
        with target.open("wb") as handle:
            while True:
                chunk = await upload.read(_CHUNK_SIZE)
                if not chunk:
                    break
                handle.write(chunk)
    except OSError as exc:
        remove_upload(target)
        raise csv_processing_error(f"failed to store uploaded file: {exc}") from exc
    return target


def remove_upload(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.warning("csv_upload_cleanup_failed", extra={"path": str(path)}, exc_info=True)
        return
    logger.debug("csv_upload_removed", extra={"path": str(path)})


def _read_header(reader: Iterator[list[str]]) -> list[str]:
    header = next(reader, None)
    if header is None:
        return []
    columns = [name.strip() for name in header]
    if any(not name for name in columns):
        raise csv_processing_error("CSV header contains an empty column name")
    seen: set[str] = set()
    for name in columns:
        if name in seen:
            raise csv_processing_error(f"CSV header contains duplicate column '{name}'")
        seen.add(name)
    return columns


def iter_facility_records(path: Path, *, encoding: str = "utf-8-sig") -> Iterator[FacilityRecord]:
    """Yield one trimmed record per data row of the CSV at ``path``, skipping empty lines.

    Each call reopens the file, so the sequence can be consumed again. A row
    shorter than the header only carries the columns it has values for.
    """
    try:
        with path.open("r", encoding=encoding, newline="") as handle:
            reader = csv.reader(handle)
            columns = _read_header(reader)
            for values in reader:
                if not values:
                    continue
                if len(values) > len(columns):
                    raise csv_processing_error(
                        f"Line {reader.line_num}: expected at most {len(columns)} fields, found {len(values)}"
                    )
                yield {column: value.strip() for column, value in zip(columns, values)}
    except (csv.Error, UnicodeDecodeError, OSError) as exc:
        raise csv_processing_error(str(exc)) from exc


def read_facility_records(path: Path) -> list[FacilityRecord]:
    return list(iter_facility_records(path))
