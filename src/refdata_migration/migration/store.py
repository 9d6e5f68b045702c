"""The record store interface the migration core is written against.

``client.store_client.RecordStoreClient`` implements it over HTTP.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from refdata_migration.migration.models import KeyMode, OperationOutcome, Record


@dataclass
class QueryPage:
    """One page of a cursor-paginated query."""

    records: list[Record] = field(default_factory=list)
    next_cursor: str | None = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


@dataclass(frozen=True)
class RecordResult:
    """Per-record result reported by a batch call.

    ``index`` is the record's position inside the submitted batch.
    """

    index: int
    outcome: OperationOutcome
    surrogate_id: str | None = None
    error: str | None = None


@runtime_checkable
class RecordStore(Protocol):
    """A remote record store."""

    async def query(
        self,
        entity_type: str,
        fields: Sequence[str],
        page_size: int,
        cursor: str | None = None,
    ) -> QueryPage:
        """Fetch one page of records; ``cursor`` None starts from the beginning."""
        ...

    async def batch_upsert(
        self,
        entity_type: str,
        records: Sequence[Record],
        key_mode: KeyMode = KeyMode.NATURAL_KEY,
    ) -> list[RecordResult]:
        """Create or update records, identified by ``key_mode``."""
        ...

    async def batch_delete(
        self,
        entity_type: str,
        surrogate_ids: Sequence[str],
    ) -> list[RecordResult]:
        """Delete records by surrogate id."""
        ...
