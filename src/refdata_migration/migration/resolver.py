"""Natural-key resolution between two independent surrogate id spaces.

Surrogate ids are only meaningful in the store that issued them. To carry a
reference from the source store into the target store it is first turned
into the referenced record's natural key (via the source map) and then back
into a surrogate id (via the target map).

Composite keys that include a reference (a city is ``name + region``) embed
the parent's natural key, so maps must be built parents first.
"""

from collections.abc import Iterable, Mapping
from decimal import Decimal

from refdata_migration.client.exceptions import AmbiguousNaturalKeyError
from refdata_migration.migration.extractor import PaginatedExtractor
from refdata_migration.migration.models import NaturalKey, Record, Reference
from refdata_migration.migration.store import RecordStore
from refdata_migration.resources import EntityDefinition
from refdata_migration.utils.logging import get_logger

logger = get_logger(__name__)


class NaturalKeyMap:
    """Bidirectional natural key <-> surrogate id map for one entity type in one store."""

    def __init__(self, entity_type: str):
        self.entity_type = entity_type
        self._by_key: dict[NaturalKey, str] = {}
        self._by_id: dict[str, NaturalKey] = {}
        # Surrogate ids of records whose natural key could not be computed
        self.unkeyed: list[str] = []

    def add(self, natural_key: NaturalKey, surrogate_id: str) -> None:
        """Register a record.

        Raises:
            AmbiguousNaturalKeyError: If the key already belongs to another record
        """
        existing = self._by_key.get(natural_key)
        if existing is not None and existing != surrogate_id:
            raise AmbiguousNaturalKeyError(
                self.entity_type, natural_key, [existing, surrogate_id]
            )
        self._by_key[natural_key] = surrogate_id
        self._by_id[surrogate_id] = natural_key

    def get_id(self, natural_key: NaturalKey) -> str | None:
        return self._by_key.get(natural_key)

    def get_key(self, surrogate_id: str) -> NaturalKey | None:
        return self._by_id.get(surrogate_id)

    def keys(self) -> Iterable[NaturalKey]:
        return self._by_key.keys()

    def __len__(self) -> int:
        return len(self._by_key)

    def __contains__(self, natural_key: object) -> bool:
        return natural_key in self._by_key

    def __repr__(self) -> str:
        return f"NaturalKeyMap({self.entity_type!r}, keys={len(self)}, unkeyed={len(self.unkeyed)})"


def _key_part(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    return str(value)


def compute_natural_key(
    record: Record,
    definition: EntityDefinition,
    parent_maps: Mapping[str, NaturalKeyMap],
) -> NaturalKey | None:
    """Compute a record's natural key within its own store.

    Reference components are replaced by the parent's natural key, looked up
    in the parent map of the same store.

    Returns:
        The key, or None if a component is blank or its parent is unknown
    """
    parts: list[str] = []
    references = definition.reference_map

    for key_field in definition.key_fields:
        ref_def = references.get(key_field)
        if ref_def is None:
            part = _key_part(record.get(key_field))
            if part is None:
                return None
            parts.append(part)
            continue

        ref = record.reference(key_field)
        parent_map = parent_maps.get(ref_def.entity_type)
        if ref is None or parent_map is None:
            return None
        parent_key = parent_map.get_key(ref.surrogate_id)
        if parent_key is None:
            return None
        parts.extend(parent_key)

    return tuple(parts)


def build_natural_key_map(
    records: Iterable[Record],
    definition: EntityDefinition,
    parent_maps: Mapping[str, NaturalKeyMap] | None = None,
) -> NaturalKeyMap:
    """Fold extracted records into a NaturalKeyMap, assigning ``record.natural_key``.

    Args:
        records: Records of ``definition.name`` from one store
        definition: Entity definition describing the key
        parent_maps: Maps of referenced entity types from the same store

    Returns:
        NaturalKeyMap for the entity type

    Raises:
        AmbiguousNaturalKeyError: If two records share a natural key
    """
    parent_maps = parent_maps or {}
    key_map = NaturalKeyMap(definition.name)

    for record in records:
        natural_key = compute_natural_key(record, definition, parent_maps)
        if natural_key is None or record.surrogate_id is None:
            key_map.unkeyed.append(record.surrogate_id or "<no id>")
            continue
        record.natural_key = natural_key
        key_map.add(natural_key, record.surrogate_id)

    if key_map.unkeyed:
        logger.warning(
            "records_without_natural_key",
            entity_type=definition.name,
            count=len(key_map.unkeyed),
            sample=key_map.unkeyed[:5],
        )

    logger.debug(
        "natural_key_map_built",
        entity_type=definition.name,
        keys=len(key_map),
        unkeyed=len(key_map.unkeyed),
    )
    return key_map


def translate(
    ref: Reference,
    source_map: NaturalKeyMap,
    target_map: NaturalKeyMap,
) -> str | None:
    """Translate a source-store reference into the target store's surrogate id.

    Returns:
        Target surrogate id, or None if the reference cannot be resolved
    """
    if ref.entity_type != source_map.entity_type or ref.entity_type != target_map.entity_type:
        raise ValueError(
            f"Reference to '{ref.entity_type}' cannot be translated with maps for "
            f"'{source_map.entity_type}' -> '{target_map.entity_type}'"
        )
    natural_key = source_map.get_key(ref.surrogate_id)
    if natural_key is None:
        return None
    return target_map.get_id(natural_key)


class NaturalKeyResolver:
    """Builds natural-key maps straight from a store."""

    def __init__(self, extractor: PaginatedExtractor):
        self.extractor = extractor

    async def build_map(
        self,
        store: RecordStore,
        definition: EntityDefinition,
        parent_maps: Mapping[str, NaturalKeyMap] | None = None,
    ) -> NaturalKeyMap:
        """Extract the key fields of an entity type and fold them into a map.

        Raises:
            ExtractionError: If extraction fails
            AmbiguousNaturalKeyError: If two records share a natural key
        """
        extraction = await self.extractor.extract(store, definition.name, definition.key_fields)
        return build_natural_key_map(extraction.records, definition, parent_maps)
