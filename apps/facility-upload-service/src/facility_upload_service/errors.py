from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from facility_upload_service.schemas import DatabaseErrorDetails, DuplicateEntryDetails, DuplicateUidDetails


class ErrorKind(str, Enum):
    CLIENT = "client"
    CONFLICT = "conflict"
    INFRASTRUCTURE = "infrastructure"


@dataclass
class UploadError(Exception):
    error: str
    details: Any = None
    status_code: int = 400
    kind: ErrorKind = ErrorKind.CLIENT


class StorageError(Exception):
    """Raised by the facility store when the database rejects an operation."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class UniqueViolationError(StorageError):
    def __init__(self, message: str, constraint: str | None = None, code: str | None = "23505") -> None:
        super().__init__(message, code=code)
        self.constraint = constraint


def no_file_uploaded() -> UploadError:
    return UploadError("No file uploaded")


def invalid_file_type() -> UploadError:
    return UploadError("Invalid file type", "Only CSV files are allowed")


def duplicate_uids(duplicates: list[str]) -> UploadError:
    return UploadError("Duplicate UIDs detected", DuplicateUidDetails(duplicateUIDs=duplicates).model_dump())


def validation_errors(messages: list[str]) -> UploadError:
    return UploadError("Validation errors", list(messages))


def duplicate_entry(constraint: str | None) -> UploadError:
    return UploadError(
        "Duplicate entry",
        DuplicateEntryDetails(constraint=constraint).model_dump(),
        kind=ErrorKind.CONFLICT,
    )


def database_error(error_code: str | None, message: str = "Failed to insert data into database") -> UploadError:
    return UploadError(
        "Database error",
        DatabaseErrorDetails(message=message, errorCode=error_code).model_dump(),
        status_code=500,
        kind=ErrorKind.INFRASTRUCTURE,
    )


def csv_processing_error(message: str) -> UploadError:
    return UploadError("CSV processing error", message, status_code=500, kind=ErrorKind.INFRASTRUCTURE)
