from __future__ import annotations

from facility_upload_service.schemas import UploadSuccessResponse


def upload_success_response(rows_processed: int) -> dict[str, object]:
    return UploadSuccessResponse(rowsProcessed=rows_processed).model_dump()


def error_response(error: str, details: object | None = None) -> dict[str, object]:
    body: dict[str, object] = {"error": error}
    if details is not None:
        body["details"] = details
    return body
