"""Builds target-ready records from source records.

Every reference is re-resolved through natural keys. A record whose required
reference cannot be translated is skipped and reported separately from
failures; an optional reference that cannot be translated is nulled.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from refdata_migration.migration.models import (
    BatchError,
    Record,
    Reference,
    Value,
    render_natural_key,
)
from refdata_migration.migration.resolver import NaturalKeyMap, translate
from refdata_migration.resources import EntityDefinition
from refdata_migration.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class UnresolvedReference:
    """A source record left out because a required reference has no target."""

    index: int
    source_id: str | None
    natural_key: str
    field: str
    reason: str


@dataclass
class BuildResult:
    """Output of building one entity type."""

    entity_type: str
    records: list[Record] = field(default_factory=list)
    skipped: list[UnresolvedReference] = field(default_factory=list)
    invalid: list[BatchError] = field(default_factory=list)
    nulled_references: int = 0

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)


class EntityBuilder:
    """Translates the records of one entity type for the target store."""

    def __init__(
        self,
        definition: EntityDefinition,
        source_maps: Mapping[str, NaturalKeyMap],
        target_maps: Mapping[str, NaturalKeyMap],
    ):
        """Initialize builder.

        Args:
            definition: Definition of the entity type being built
            source_maps: Source-store maps of every referenced entity type
            target_maps: Target-store maps of every referenced entity type
        """
        missing = [
            parent
            for parent in definition.parent_types
            if parent not in source_maps or parent not in target_maps
        ]
        if missing:
            raise ValueError(
                f"Cannot build '{definition.name}' before maps for {', '.join(missing)} exist"
            )
        self.definition = definition
        self.source_maps = source_maps
        self.target_maps = target_maps

    def _copy_plain_fields(self, record: Record) -> dict[str, Value]:
        references = self.definition.reference_map
        fields: dict[str, Value] = {}
        for name in [*self.definition.key_fields, *self.definition.fields]:
            if name in references or name not in record.fields:
                continue
            value = record.fields[name]
            fields[name] = value.strip() if isinstance(value, str) else value
        return fields

    def build(self, records: Sequence[Record]) -> BuildResult:
        """Build target records, skipping those with unresolved required references.

        Args:
            records: Source records with natural keys assigned by the resolver

        Returns:
            BuildResult with the records to upsert and what was left out
        """
        entity_type = self.definition.name
        result = BuildResult(entity_type=entity_type)
        key_fields = tuple(self.definition.key_fields)

        for index, record in enumerate(records):
            if record.natural_key is None:
                result.invalid.append(
                    BatchError(
                        index=index,
                        message=f"Record {record.surrogate_id} has no natural key "
                        f"({', '.join(key_fields)} missing or blank)",
                    )
                )
                continue

            fields = self._copy_plain_fields(record)
            skipped: UnresolvedReference | None = None

            for ref_def in self.definition.references:
                source_ref = record.reference(ref_def.field)
                target_id: str | None = None
                reason = "reference is empty"

                if source_ref is not None:
                    target_id = translate(
                        source_ref,
                        self.source_maps[ref_def.entity_type],
                        self.target_maps[ref_def.entity_type],
                    )
                    reason = f"{ref_def.entity_type} {source_ref.surrogate_id} has no match in target"

                if target_id is not None:
                    fields[ref_def.field] = Reference(ref_def.entity_type, target_id)
                elif ref_def.required:
                    skipped = UnresolvedReference(
                        index=index,
                        source_id=record.surrogate_id,
                        natural_key=render_natural_key(record.natural_key),
                        field=ref_def.field,
                        reason=reason,
                    )
                    break
                else:
                    fields[ref_def.field] = None
                    result.nulled_references += 1

            if skipped is not None:
                result.skipped.append(skipped)
                continue

            result.records.append(
                Record(
                    entity_type=entity_type,
                    fields=fields,
                    natural_key=record.natural_key,
                    key_fields=key_fields,
                )
            )

        if result.skipped:
            logger.warning(
                "unresolved_references_skipped",
                entity_type=entity_type,
                skipped=len(result.skipped),
                sample=[f"{s.natural_key} ({s.field}: {s.reason})" for s in result.skipped[:5]],
            )

        logger.info(
            "entity_built",
            entity_type=entity_type,
            source_records=len(records),
            built=len(result.records),
            skipped_unresolved=len(result.skipped),
            invalid=len(result.invalid),
            nulled_references=result.nulled_references,
        )
        return result
