from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class UploadSuccessResponse(BaseModel):
    message: str = "CSV data successfully uploaded"
    rowsProcessed: int = Field(ge=0)


class ErrorResponse(BaseModel):
    error: str
    details: Any = None


class DuplicateUidDetails(BaseModel):
    message: str = "The following UIDs already exist in the database or are duplicated in the CSV:"
    duplicateUIDs: list[str]


class DuplicateEntryDetails(BaseModel):
    message: str = "A record with this UID already exists in the database."
    constraint: str | None = None


class DatabaseErrorDetails(BaseModel):
    message: str = "Failed to insert data into database"
    errorCode: str | None = None
