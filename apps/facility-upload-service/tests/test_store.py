from __future__ import annotations

from contextlib import asynccontextmanager

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError

from facility_upload_service.errors import StorageError, UniqueViolationError
from facility_upload_service.store import STAGING_UID_CONSTRAINT, FacilityStore, staging_insert


class FakeDiag:
    def __init__(self, constraint_name: str | None) -> None:
        self.constraint_name = constraint_name


class FakeDriverError(Exception):
    def __init__(self, message: str, sqlstate: str, constraint_name: str | None = None) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate
        self.diag = FakeDiag(constraint_name)


class FakeResult:
    def __init__(self, rows: list[dict]) -> None:
        self._rows = rows

    def mappings(self) -> FakeResult:
        return self

    def all(self) -> list:
        return self._rows


class FakeSession:
    def __init__(self, *, rows: list[dict] | None = None, fail_on: int | None = None, error: Exception | None = None) -> None:
        self.rows = rows or []
        self.fail_on = fail_on
        self.error = error
        self.statements: list = []

    async def execute(self, statement):
        self.statements.append(statement)
        if self.fail_on is not None and len(self.statements) == self.fail_on:
            raise self.error
        return FakeResult(self.rows)

    async def scalars(self, statement):
        self.statements.append(statement)
        return FakeResult([row["uid"] for row in self.rows])


class FakeDatabase:
    def __init__(self, session: FakeSession) -> None:
        self._session = session
        self.commits = 0
        self.rollbacks = 0
        self.disconnected = False

    @asynccontextmanager
    async def session(self):
        try:
            yield self._session
            self.commits += 1
        except Exception:
            self.rollbacks += 1
            raise

    async def run_with_session(self, fn):
        async with self.session() as session:
            return await fn(session)

    async def disconnect(self) -> None:
        self.disconnected = True


def _compiled(statement) -> str:
    return " ".join(str(statement.compile(dialect=postgresql.dialect())).split())


def test_staging_insert_targets_the_rows_own_columns() -> None:
    statement = staging_insert({"uid": "A1", "name": "Alpha", "facility_type": "Clinic"})

    assert _compiled(statement).startswith("INSERT INTO temp_upload (uid, name, facility_type) VALUES")
    assert statement.compile().params == {"uid": "A1", "name": "Alpha", "facility_type": "Clinic"}


def test_staging_insert_quotes_unusual_column_names() -> None:
    statement = staging_insert({"uid": "A1", "Sub County": "Kibra"})

    assert _compiled(statement).startswith('INSERT INTO temp_upload (uid, "Sub County") VALUES')


@pytest.mark.asyncio
async def test_in_memory_store_serves_sample_facilities_and_types() -> None:
    store = FacilityStore()

    facilities = await store.list_facilities()
    types = await store.list_facility_types()

    assert store.uses_database is False
    assert {item["uid"] for item in facilities} == {"HF-0001", "HF-0002", "HF-0003"}
    assert {"facility_type": "Dispensary"} in types
    assert len(types) == len({item["facility_type"] for item in types})


@pytest.mark.asyncio
async def test_in_memory_staging_orders_by_county_with_nulls_last() -> None:
    store = FacilityStore()
    await store.stage_batch(
        [
            {"uid": "A1", "name": "Alpha", "facility_type": "Clinic", "county": "Nakuru"},
            {"uid": "A2", "name": "Beta", "facility_type": "Clinic"},
            {"uid": "A3", "name": "Gamma", "facility_type": "Clinic", "county": "Kiambu"},
        ]
    )

    staged = await store.list_staged_facilities()

    assert [row["uid"] for row in staged] == ["A3", "A1", "A2"]
    assert await store.find_staged_uids(["A1", "Z9"]) == ["A1"]
    assert await store.find_staged_uids([]) == []


@pytest.mark.asyncio
async def test_in_memory_staging_is_all_or_nothing_on_uid_collision() -> None:
    store = FacilityStore()
    await store.stage_batch([{"uid": "A1", "name": "Alpha", "facility_type": "Clinic"}])

    with pytest.raises(UniqueViolationError) as exc_info:
        await store.stage_batch(
            [
                {"uid": "B2", "name": "Beta", "facility_type": "Clinic"},
                {"uid": "A1", "name": "Alpha again", "facility_type": "Clinic"},
            ]
        )

    assert exc_info.value.constraint == STAGING_UID_CONSTRAINT
    assert [row["uid"] for row in await store.list_staged_facilities()] == ["A1"]


@pytest.mark.asyncio
async def test_database_staging_commits_once_for_the_batch() -> None:
    session = FakeSession()
    database = FakeDatabase(session)
    store = FacilityStore(db=database)

    saved = await store.stage_batch(
        [
            {"uid": "A1", "name": "Alpha", "facility_type": "Clinic", "county": "Nairobi"},
            {"uid": "A2", "name": "Beta", "facility_type": "Hospital"},
        ]
    )

    assert saved == 2
    assert database.commits == 1
    assert database.rollbacks == 0
    assert _compiled(session.statements[0]).startswith("INSERT INTO temp_upload (uid, name, facility_type, county)")
    assert _compiled(session.statements[1]).startswith("INSERT INTO temp_upload (uid, name, facility_type)")


@pytest.mark.asyncio
async def test_database_unique_violation_rolls_back_and_names_constraint() -> None:
    error = IntegrityError(
        "INSERT",
        {},
        FakeDriverError("duplicate key value", "23505", constraint_name="temp_upload_uid_key"),
    )
    database = FakeDatabase(FakeSession(fail_on=2, error=error))
    store = FacilityStore(db=database)

    with pytest.raises(UniqueViolationError) as exc_info:
        await store.stage_batch(
            [
                {"uid": "A1", "name": "Alpha", "facility_type": "Clinic"},
                {"uid": "A2", "name": "Beta", "facility_type": "Clinic"},
            ]
        )

    assert exc_info.value.constraint == "temp_upload_uid_key"
    assert exc_info.value.code == "23505"
    assert database.commits == 0
    assert database.rollbacks == 1


@pytest.mark.asyncio
async def test_database_generic_failure_carries_error_code() -> None:
    error = OperationalError("INSERT", {}, FakeDriverError('column "bogus" does not exist', "42703"))
    database = FakeDatabase(FakeSession(fail_on=1, error=error))
    store = FacilityStore(db=database)

    with pytest.raises(StorageError) as exc_info:
        await store.stage_batch([{"uid": "A1", "name": "Alpha", "facility_type": "Clinic", "bogus": "x"}])

    assert not isinstance(exc_info.value, UniqueViolationError)
    assert exc_info.value.code == "42703"
    assert database.rollbacks == 1


@pytest.mark.asyncio
async def test_database_reads_return_plain_rows() -> None:
    rows = [{"uid": "A1", "name": "Alpha", "facility_type": "Clinic", "county": "Nairobi"}]
    session = FakeSession(rows=rows)
    store = FacilityStore(db=FakeDatabase(session))

    assert await store.list_staged_facilities() == rows
    assert await store.find_staged_uids(["A1", "B2"]) == ["A1"]
    assert "ORDER BY county" in str(session.statements[0])
    assert "temp_upload.uid IN" in _compiled(session.statements[1])


class RetryingDatabase(FakeDatabase):
    """Counts session openings; ``run_with_session`` retries like the real manager."""

    def __init__(self, session: FakeSession) -> None:
        super().__init__(session)
        self.sessions_opened = 0

    @asynccontextmanager
    async def session(self):
        self.sessions_opened += 1
        async with super().session() as session:
            yield session

    async def run_with_session(self, fn):
        for _ in range(3):
            try:
                return await super().run_with_session(fn)
            except OperationalError:
                continue
        raise AssertionError("retried past the last attempt")


class FailingScalarsSession(FakeSession):
    async def scalars(self, statement):
        self.statements.append(statement)
        raise self.error


@pytest.mark.asyncio
async def test_staged_uid_lookup_makes_a_single_attempt() -> None:
    error = OperationalError("SELECT", {}, FakeDriverError("connection refused", "08006"))
    session = FailingScalarsSession(error=error)
    database = RetryingDatabase(session)
    store = FacilityStore(db=database)

    with pytest.raises(StorageError) as exc_info:
        await store.find_staged_uids(["A1"])

    assert exc_info.value.code == "08006"
    assert database.sessions_opened == 1
    assert len(session.statements) == 1
    assert database.rollbacks == 1


@pytest.mark.asyncio
async def test_database_read_failure_is_a_storage_error() -> None:
    error = OperationalError("SELECT", {}, FakeDriverError("connection refused", "08006"))
    store = FacilityStore(db=FakeDatabase(FakeSession(fail_on=1, error=error)))

    with pytest.raises(StorageError):
        await store.list_facilities()


@pytest.mark.asyncio
async def test_close_disconnects_database() -> None:
    database = FakeDatabase(FakeSession())
    store = FacilityStore(db=database)

    await store.close()

    assert database.disconnected is True
