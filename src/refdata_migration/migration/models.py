"""In-memory data model for a migration run.

Records, references and per-record outcomes live only for the duration of a
single run; nothing here is persisted.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Union


@dataclass(frozen=True)
class Reference:
    """A typed pointer to another record.

    Only meaningful inside the store that issued ``surrogate_id``.
    """

    entity_type: str
    surrogate_id: str


# Closed set of field value types
Value = Union[str, int, float, Decimal, bool, datetime, Reference, None]

NaturalKey = tuple[str, ...]


def render_natural_key(key: NaturalKey) -> str:
    """Render a natural key the way it appears in logs and reports."""
    return "|".join(key)


@dataclass
class Record:
    """One entity instance.

    ``surrogate_id`` is None for records built for a target store that have
    not been written yet; ``natural_key`` is None until it has been resolved.
    ``key_fields`` names the fields a natural-key upsert identifies the record by.
    """

    entity_type: str
    surrogate_id: str | None = None
    fields: dict[str, Value] = field(default_factory=dict)
    natural_key: NaturalKey | None = None
    key_fields: tuple[str, ...] = ()

    def get(self, name: str) -> Value:
        """Return a field value or None."""
        return self.fields.get(name)

    @property
    def key_attributes(self) -> dict[str, Value]:
        """Field values that identify this record in a natural-key upsert."""
        return {name: self.fields.get(name) for name in self.key_fields}

    def reference(self, name: str) -> Reference | None:
        """Return a field value if it is a Reference."""
        value = self.fields.get(name)
        return value if isinstance(value, Reference) else None


class KeyMode(str, Enum):
    """Identity used by a batch upsert."""

    SURROGATE = "surrogate"
    NATURAL_KEY = "natural_key"


class OperationOutcome(str, Enum):
    """Per-record result of one write attempt."""

    SUCCESS = "success"
    CREATED = "created"
    UPDATED = "updated"
    FAILED = "failed"

    @property
    def succeeded(self) -> bool:
        return self is not OperationOutcome.FAILED


@dataclass(frozen=True)
class BatchError:
    """A failed record: its index in the submitted sequence and the error text."""

    index: int
    message: str


@dataclass
class BulkOperationResult:
    """Aggregated outcome of one executor call."""

    total: int = 0
    success_count: int = 0
    created_count: int = 0
    updated_count: int = 0
    failure_count: int = 0
    errors: list[BatchError] = field(default_factory=list)
    duration: float = 0.0
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return self.success_count + self.failure_count

    def error_samples(self, limit: int = 5) -> list[str]:
        """First ``limit`` errors, lowest index first."""
        ordered = sorted(self.errors, key=lambda error: error.index)
        return [f"index {error.index}: {error.message}" for error in ordered[:limit]]


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time view of an operation's progress."""

    processed: int
    total: int
    elapsed: float
    rate_per_second: float
    estimated_remaining: float | None  # None = unknown

    @property
    def percent_complete(self) -> float:
        if self.total <= 0:
            return 100.0
        return min(100.0, self.processed / self.total * 100)
