from __future__ import annotations

from collections.abc import Mapping, Sequence
import logging
from typing import Any

from devkit.db import AsyncDatabaseManager, db_constraint_name, db_error_code, is_unique_violation
from sqlalchemy import column, insert, select, table, text
from sqlalchemy.exc import SQLAlchemyError

from facility_upload_service.errors import StorageError, UniqueViolationError
from facility_upload_service.validation import IDENTIFIER_FIELD

logger = logging.getLogger(__name__)

FACILITIES_TABLE = "health_facilities"
STAGING_TABLE = "temp_upload"
STAGING_UID_CONSTRAINT = "temp_upload_uid_key"

LIST_FACILITIES_SQL = text(f"SELECT * FROM {FACILITIES_TABLE}")
LIST_FACILITY_TYPES_SQL = text(
    f"SELECT DISTINCT facility_type FROM {FACILITIES_TABLE} WHERE facility_type IS NOT NULL"
)
LIST_STAGED_SQL = text(f"SELECT * FROM {STAGING_TABLE} ORDER BY county")

_staging = table(STAGING_TABLE, column(IDENTIFIER_FIELD))

_SAMPLE_FACILITIES: list[dict[str, Any]] = [
    {
        "uid": "HF-0001",
        "name": "Kenyatta National Hospital",
        "facility_type": "National Referral Hospital",
        "county": "Nairobi",
        "latitude": -1.3005,
        "longitude": 36.8070,
    },
    {
        "uid": "HF-0002",
        "name": "Coast General Teaching and Referral Hospital",
        "facility_type": "County Referral Hospital",
        "county": "Mombasa",
        "latitude": -4.0547,
        "longitude": 39.6766,
    },
    {
        "uid": "HF-0003",
        "name": "Kisumu East Dispensary",
        "facility_type": "Dispensary",
        "county": "Kisumu",
        "latitude": -0.0917,
        "longitude": 34.7680,
    },
]


def staging_insert(record: Mapping[str, str]):
    """INSERT into the staging table targeting exactly the record's own columns."""
    target = table(STAGING_TABLE, *(column(name) for name in record))
    return insert(target).values(dict(record))


def _storage_error(exc: SQLAlchemyError, message: str) -> StorageError:
    code = db_error_code(exc)
    if is_unique_violation(exc):
        return UniqueViolationError(message, constraint=db_constraint_name(exc), code=code or "23505")
    return StorageError(message, code=code)


class FacilityStore:
    """Facility reads and the staged-upload writes.

    Without a DSN the store keeps everything in memory, seeded with a few sample
    facilities, and enforces the staging ``uid`` uniqueness itself.
    """

    def __init__(self, dsn: str | None = None, *, db: AsyncDatabaseManager | None = None) -> None:
        self._db = db if db is not None else (AsyncDatabaseManager(dsn) if dsn else None)
        self._facilities: list[dict[str, Any]] = [dict(item) for item in _SAMPLE_FACILITIES]
        self._staged: list[dict[str, str]] = []

    @property
    def uses_database(self) -> bool:
        return self._db is not None

    async def close(self) -> None:
        if self._db is not None:
            await self._db.disconnect()

    async def list_facilities(self) -> list[dict[str, Any]]:
        if self._db is None:
            return [dict(item) for item in self._facilities]
        return await self._fetch_rows(LIST_FACILITIES_SQL, "failed to fetch facilities")

    async def list_facility_types(self) -> list[dict[str, Any]]:
        if self._db is None:
            types = dict.fromkeys(
                item["facility_type"] for item in self._facilities if item.get("facility_type") is not None
            )
            return [{"facility_type": value} for value in types]
        return await self._fetch_rows(LIST_FACILITY_TYPES_SQL, "failed to fetch facility types")

    async def list_staged_facilities(self) -> list[dict[str, Any]]:
        if self._db is None:
            # ORDER BY county puts NULLs last
            return sorted(
                (dict(row) for row in self._staged),
                key=lambda row: (row.get("county") is None, row.get("county") or ""),
            )
        return await self._fetch_rows(LIST_STAGED_SQL, "failed to fetch uploaded facilities")

    async def find_staged_uids(self, uids: Sequence[str]) -> list[str]:
        if not uids:
            return []
        if self._db is None:
            wanted = set(uids)
            return [row[IDENTIFIER_FIELD] for row in self._staged if row.get(IDENTIFIER_FIELD) in wanted]

        # one attempt; the upload fails on the first error
        stmt = select(_staging.c.uid).where(_staging.c.uid.in_(list(uids)))
        try:
            async with self._db.session() as session:
                return [str(value) for value in (await session.scalars(stmt)).all()]
        except SQLAlchemyError as exc:
            raise _storage_error(exc, "failed to look up staged uids") from exc

    async def stage_batch(self, records: Sequence[Mapping[str, str]]) -> int:
        """Insert every record in one transaction; any failure leaves the staging table untouched."""
        if self._db is None:
            return self._stage_in_memory(records)

        try:
            async with self._db.session() as session:
                for record in records:
                    await session.execute(staging_insert(record))
        except SQLAlchemyError as exc:
            logger.warning(
                "staging_insert_rolled_back",
                extra={"rows": len(records), "error_code": db_error_code(exc)},
            )
            raise _storage_error(exc, "failed to insert staged facilities") from exc
        return len(records)

    def _stage_in_memory(self, records: Sequence[Mapping[str, str]]) -> int:
        staged_uids = {row.get(IDENTIFIER_FIELD) for row in self._staged}
        pending: list[dict[str, str]] = []
        for record in records:
            uid = record.get(IDENTIFIER_FIELD)
            if uid in staged_uids:
                raise UniqueViolationError(
                    f'duplicate key value violates unique constraint "{STAGING_UID_CONSTRAINT}"',
                    constraint=STAGING_UID_CONSTRAINT,
                )
            staged_uids.add(uid)
            pending.append(dict(record))
        self._staged.extend(pending)
        return len(pending)

    async def _fetch_rows(self, statement, message: str) -> list[dict[str, Any]]:
        assert self._db is not None

        async def _run(session):
            result = await session.execute(statement)
            return [dict(row) for row in result.mappings().all()]

        try:
            return await self._db.run_with_session(_run)
        except SQLAlchemyError as exc:
            raise _storage_error(exc, message) from exc
