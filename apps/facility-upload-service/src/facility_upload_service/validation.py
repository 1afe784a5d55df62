from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol

IDENTIFIER_FIELD = "uid"
REQUIRED_FIELDS: tuple[str, ...] = (IDENTIFIER_FIELD, "name", "facility_type")
FIRST_DATA_ROW = 2


@dataclass(frozen=True)
class DuplicateReport:
    has_duplicates: bool
    duplicates: list[str] = field(default_factory=list)


class StagedIdentifierLookup(Protocol):
    async def find_staged_uids(self, uids: Sequence[str]) -> list[str]: ...


def missing_required_fields(record: Mapping[str, object]) -> list[str]:
    missing: list[str] = []
    for name in REQUIRED_FIELDS:
        value = record.get(name)
        if value is None or not str(value).strip():
            missing.append(name)
    return missing


def validate_required_fields(records: Sequence[Mapping[str, object]]) -> list[str]:
    """Return one message per record lacking a required field, numbered as in the source file."""
    errors: list[str] = []
    for row_number, record in enumerate(records, start=FIRST_DATA_ROW):
        missing = missing_required_fields(record)
        if missing:
            errors.append(f"Row {row_number}: Missing required fields: {', '.join(missing)}")
    return errors


def extract_identifiers(records: Sequence[Mapping[str, object]]) -> list[str]:
    identifiers: list[str] = []
    for record in records:
        value = record.get(IDENTIFIER_FIELD)
        if value is None or not str(value).strip():
            continue
        identifiers.append(str(value))
    return identifiers


def find_repeated(identifiers: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    repeated: dict[str, None] = {}
    for identifier in identifiers:
        if identifier in seen:
            repeated[identifier] = None
        seen.add(identifier)
    return list(repeated)


class DuplicateDetector:
    def __init__(self, lookup: StagedIdentifierLookup) -> None:
        self._lookup = lookup

    async def check(self, records: Sequence[Mapping[str, object]]) -> DuplicateReport:
        identifiers = extract_identifiers(records)
        distinct = list(dict.fromkeys(identifiers))
        if len(distinct) < len(identifiers):
            return DuplicateReport(has_duplicates=True, duplicates=find_repeated(identifiers))
        if not distinct:
            return DuplicateReport(has_duplicates=False)

        existing = set(await self._lookup.find_staged_uids(distinct))
        if existing:
            return DuplicateReport(
                has_duplicates=True,
                duplicates=[identifier for identifier in distinct if identifier in existing],
            )
        return DuplicateReport(has_duplicates=False)
