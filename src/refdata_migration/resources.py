"""Entity type definitions - the declared dependency order of a migration.

An entity definition tells the pipeline how to extract an entity type, which
fields form its natural key and which fields reference other entity types.
The order of a definition list IS the dependency order: it is configuration,
never inferred from the reference graph.

The built-in dataset is the geographic reference data the tool was first
written for: Region -> City -> PostalCode.
"""

from collections.abc import Sequence

from pydantic import BaseModel, Field, field_validator, model_validator

from refdata_migration.client.exceptions import DependencyError


class ReferenceField(BaseModel):
    """A field holding a reference to another entity type."""

    field: str = Field(..., description="Field name on the referencing record")
    entity_type: str = Field(..., description="Entity type the field points at")
    required: bool = Field(
        default=True,
        description="Skip the record when the reference cannot be translated (else null it)",
    )


class EntityDefinition(BaseModel):
    """How one entity type is extracted, keyed and written."""

    name: str = Field(..., description="Entity type name in the record store")
    key_fields: list[str] = Field(
        ...,
        min_length=1,
        description="Ordered natural-key fields; reference fields resolve to the parent key",
    )
    fields: list[str] = Field(
        default_factory=list, description="Non-key, non-reference fields to copy"
    )
    references: list[ReferenceField] = Field(default_factory=list)
    dedup_field: str | None = Field(
        default=None,
        description="Field normalized and deduplicated during extraction",
    )
    display_name: str | None = Field(default=None, description="Name used in reports")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate entity name is not blank."""
        if not v.strip():
            raise ValueError("Entity name cannot be empty")
        return v.strip()

    @model_validator(mode="after")
    def validate_key_fields(self) -> "EntityDefinition":
        """Ensure key and dedup fields are part of the projection."""
        if len(set(self.key_fields)) != len(self.key_fields):
            raise ValueError(f"Duplicate key fields for {self.name}")
        if self.dedup_field and self.dedup_field not in self.projection:
            raise ValueError(f"Dedup field {self.dedup_field!r} is not projected for {self.name}")
        return self

    @property
    def label(self) -> str:
        """Human-readable name."""
        return self.display_name or self.name

    @property
    def reference_map(self) -> dict[str, ReferenceField]:
        """References keyed by field name."""
        return {ref.field: ref for ref in self.references}

    @property
    def projection(self) -> list[str]:
        """Every field that has to be extracted, in a stable order."""
        ordered: list[str] = []
        for name in [*self.key_fields, *self.fields, *(ref.field for ref in self.references)]:
            if name not in ordered:
                ordered.append(name)
        return ordered

    @property
    def parent_types(self) -> list[str]:
        """Entity types this definition references."""
        return [ref.entity_type for ref in self.references]


def validate_dependency_order(definitions: Sequence[EntityDefinition]) -> None:
    """Check that every referenced entity type is declared before its referrer.

    Args:
        definitions: Entity definitions in declared order

    Raises:
        DependencyError: If a name is declared twice or a parent comes later
    """
    seen: set[str] = set()
    for definition in definitions:
        if definition.name in seen:
            raise DependencyError(f"Entity type '{definition.name}' is declared twice")
        for ref in definition.references:
            if ref.entity_type not in seen:
                raise DependencyError(
                    f"Entity type '{definition.name}' references '{ref.entity_type}' "
                    f"(field '{ref.field}') which is not declared before it"
                )
        for key_field in definition.key_fields:
            ref = definition.reference_map.get(key_field)
            if ref is not None and not ref.required:
                raise DependencyError(
                    f"Key field '{key_field}' of '{definition.name}' must be a required reference"
                )
        seen.add(definition.name)


def cleanup_order(definitions: Sequence[EntityDefinition]) -> list[EntityDefinition]:
    """Return definitions in reverse dependency order (children first)."""
    return list(reversed(definitions))


# Built-in geographic reference dataset
REGION = EntityDefinition(
    name="region",
    display_name="Region",
    key_fields=["abbreviation"],
    fields=["name"],
    dedup_field="abbreviation",
)

CITY = EntityDefinition(
    name="city",
    display_name="City",
    key_fields=["name", "region"],
    references=[ReferenceField(field="region", entity_type="region")],
)

POSTAL_CODE = EntityDefinition(
    name="postal_code",
    display_name="PostalCode",
    key_fields=["code"],
    fields=["county", "latitude", "longitude"],
    references=[
        ReferenceField(field="region", entity_type="region"),
        ReferenceField(field="city", entity_type="city"),
    ],
    dedup_field="code",
)

GEO_ENTITIES: list[EntityDefinition] = [REGION, CITY, POSTAL_CODE]


def get_default_entities() -> list[EntityDefinition]:
    """Return fresh copies of the built-in dataset definitions."""
    return [definition.model_copy(deep=True) for definition in GEO_ENTITIES]
