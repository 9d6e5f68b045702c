"""
Pytest configuration and fixtures for refdata-bridge tests

This module provides shared fixtures for unit and integration tests, most
importantly an in-memory record store that behaves like the remote one:
cursor paging, natural-key upserts, referential checks on write, and
instrumentation for concurrency and failure injection.
"""

import asyncio
import contextlib
from collections.abc import Callable, Sequence
from itertools import count

import pytest

from refdata_migration.migration.models import KeyMode, OperationOutcome, Record, Reference, Value
from refdata_migration.migration.store import QueryPage, RecordResult
from refdata_migration.resources import EntityDefinition, get_default_entities
from refdata_migration.utils.retry import RetryPolicy


# =======================
# PYTEST CONFIGURATION
# =======================


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "unit: Unit tests that run against in-memory fakes")
    config.addinivalue_line(
        "markers", "integration: End-to-end migration runs between two in-memory stores"
    )


# =======================
# IN-MEMORY RECORD STORE
# =======================


class InMemoryRecordStore:
    """A RecordStore kept in dictionaries.

    Surrogate ids are prefixed with the store name so ids of two stores never
    coincide by accident.

    Attributes:
        query_failures: entity type -> exception raised by every query of that type
        upsert_failures: exceptions raised by the next batch_upsert calls, in order
        record_failure: optional callable(record) -> error text (or None) for per-record failures
        delay: seconds every batch call sleeps while counted as in flight
        max_in_flight: highest number of concurrent calls observed
    """

    def __init__(self, name: str, definitions: Sequence[EntityDefinition] | None = None):
        self.name = name
        self.key_fields = {
            definition.name: list(definition.key_fields)
            for definition in (definitions or get_default_entities())
        }
        self.tables: dict[str, dict[str, dict[str, Value]]] = {}
        self._ids = count(1)

        self.query_failures: dict[str, Exception] = {}
        self.upsert_failures: list[Exception] = []
        self.record_failure: Callable[[Record], str | None] | None = None
        self.delay = 0.0

        self.calls: list[tuple[str, str]] = []
        self.batch_sizes: list[int] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    # Seeding and inspection

    def insert(self, entity_type: str, surrogate_id: str | None = None, **fields: Value) -> str:
        """Store a record as-is (no uniqueness check) and return its id."""
        sid = surrogate_id or f"{self.name}-{next(self._ids)}"
        self.tables.setdefault(entity_type, {})[sid] = dict(fields)
        return sid

    def rows(self, entity_type: str) -> dict[str, dict[str, Value]]:
        return self.tables.get(entity_type, {})

    def count(self, entity_type: str) -> int:
        return len(self.rows(entity_type))

    def find(self, entity_type: str, **criteria: Value) -> list[tuple[str, dict[str, Value]]]:
        return [
            (sid, fields)
            for sid, fields in self.rows(entity_type).items()
            if all(fields.get(name) == value for name, value in criteria.items())
        ]

    def ref(self, entity_type: str, **criteria: Value) -> Reference:
        """Reference to the single record matching criteria."""
        matches = self.find(entity_type, **criteria)
        assert len(matches) == 1, f"expected one {entity_type} matching {criteria}, got {matches}"
        return Reference(entity_type, matches[0][0])

    # Instrumentation

    @contextlib.asynccontextmanager
    async def _call(self):
        """Count one store call as in flight, including a cancelled delay."""
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield
        finally:
            self.in_flight -= 1

    # RecordStore protocol

    async def query(
        self,
        entity_type: str,
        fields: Sequence[str],
        page_size: int,
        cursor: str | None = None,
    ) -> QueryPage:
        self.calls.append(("query", entity_type))
        if entity_type in self.query_failures:
            raise self.query_failures[entity_type]

        async with self._call():
            items = list(self.rows(entity_type).items())
            start = int(cursor or 0)
            end = start + page_size
            page = [
                Record(
                    entity_type=entity_type,
                    surrogate_id=sid,
                    fields={name: data[name] for name in fields if name in data},
                )
                for sid, data in items[start:end]
            ]
            return QueryPage(records=page, next_cursor=str(end) if end < len(items) else None)

    def _missing_reference(self, record: Record) -> str | None:
        for name, value in record.fields.items():
            if isinstance(value, Reference) and value.surrogate_id not in self.rows(value.entity_type):
                return f"Field '{name}': {value.entity_type} {value.surrogate_id} does not exist"
        return None

    def _upsert_one(self, entity_type: str, record: Record, key_mode: KeyMode) -> RecordResult:
        table = self.tables.setdefault(entity_type, {})

        if key_mode is KeyMode.SURROGATE:
            existing = record.surrogate_id if record.surrogate_id in table else None
        else:
            key = tuple(record.fields.get(name) for name in self.key_fields[entity_type])
            existing = next(
                (
                    sid
                    for sid, data in table.items()
                    if tuple(data.get(name) for name in self.key_fields[entity_type]) == key
                ),
                None,
            )

        if existing is not None:
            table[existing].update(record.fields)
            return RecordResult(0, OperationOutcome.UPDATED, existing)

        sid = self.insert(entity_type, **record.fields)
        return RecordResult(0, OperationOutcome.CREATED, sid)

    async def batch_upsert(
        self,
        entity_type: str,
        records: Sequence[Record],
        key_mode: KeyMode = KeyMode.NATURAL_KEY,
    ) -> list[RecordResult]:
        self.calls.append(("upsert", entity_type))
        async with self._call():
            if self.upsert_failures:
                raise self.upsert_failures.pop(0)
            self.batch_sizes.append(len(records))

            results = []
            for index, record in enumerate(records):
                error = self._missing_reference(record)
                if error is None and self.record_failure is not None:
                    error = self.record_failure(record)
                if error is not None:
                    results.append(RecordResult(index, OperationOutcome.FAILED, error=error))
                    continue
                outcome = self._upsert_one(entity_type, record, key_mode)
                results.append(RecordResult(index, outcome.outcome, outcome.surrogate_id))
            return results

    async def batch_delete(self, entity_type: str, surrogate_ids: Sequence[str]) -> list[RecordResult]:
        self.calls.append(("delete", entity_type))
        async with self._call():
            table = self.tables.setdefault(entity_type, {})
            results = []
            for index, sid in enumerate(surrogate_ids):
                if table.pop(sid, None) is None:
                    results.append(
                        RecordResult(index, OperationOutcome.FAILED, error=f"{sid} not found")
                    )
                else:
                    results.append(RecordResult(index, OperationOutcome.SUCCESS, sid))
            return results

    async def close(self) -> None:
        self.closed = True


# =======================
# FIXTURES
# =======================


@pytest.fixture
def geo_entities() -> list[EntityDefinition]:
    """Built-in Region -> City -> PostalCode definitions"""
    return get_default_entities()


@pytest.fixture
def source_store(geo_entities) -> InMemoryRecordStore:
    return InMemoryRecordStore("src", geo_entities)


@pytest.fixture
def target_store(geo_entities) -> InMemoryRecordStore:
    return InMemoryRecordStore("tgt", geo_entities)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy without backoff so retry tests do not sleep"""
    return RetryPolicy(max_attempts=3, backoff_seconds=0)


def seed_geo(store: InMemoryRecordStore) -> dict[str, str]:
    """Seed two regions, two cities and three postal codes.

    Returns:
        Mapping of a short label to the surrogate id of each seeded record
    """
    ids: dict[str, str] = {}
    ids["CA"] = store.insert("region", abbreviation="CA", name="California")
    ids["OR"] = store.insert("region", abbreviation="OR", name="Oregon")

    ids["LA"] = store.insert("city", name="Los Angeles", region=Reference("region", ids["CA"]))
    ids["PDX"] = store.insert("city", name="Portland", region=Reference("region", ids["OR"]))

    ids["90001"] = store.insert(
        "postal_code",
        code="90001",
        county="Los Angeles",
        latitude=33.97,
        longitude=-118.24,
        region=Reference("region", ids["CA"]),
        city=Reference("city", ids["LA"]),
    )
    ids["90002"] = store.insert(
        "postal_code",
        code="90002",
        county="Los Angeles",
        latitude=33.94,
        longitude=-118.24,
        region=Reference("region", ids["CA"]),
        city=Reference("city", ids["LA"]),
    )
    ids["97201"] = store.insert(
        "postal_code",
        code="97201",
        county="Multnomah",
        latitude=45.50,
        longitude=-122.69,
        region=Reference("region", ids["OR"]),
        city=Reference("city", ids["PDX"]),
    )
    return ids


@pytest.fixture
def source_ids(source_store) -> dict[str, str]:
    """Seed the geo dataset into source_store and return its surrogate ids"""
    return seed_geo(source_store)


@pytest.fixture
def make_store(geo_entities) -> Callable[..., InMemoryRecordStore]:
    """Factory for additional stores"""

    def factory(name: str, definitions: Sequence[EntityDefinition] | None = None):
        return InMemoryRecordStore(name, definitions or geo_entities)

    return factory
