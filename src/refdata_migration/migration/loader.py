"""Loads the geographic dataset from a flat CSV file into a record store.

Each CSV row describes one postal code together with its city and region:

    code,city,state,county,lat,lon[,state_name]

Regions are the distinct ``state`` values and cities the distinct
(``city``, ``state``) pairs. Postal codes are deduplicated on the trimmed
``code``; the first row wins. The rows become file-side records with
synthetic ids, so the same builder and executor a store-to-store migration
uses translate and write them, parents first.
"""

import csv
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path

from refdata_migration.client.exceptions import InputFileError
from refdata_migration.migration.builder import EntityBuilder
from refdata_migration.migration.coordinator import MigrationPhase
from refdata_migration.migration.executor import BatchUpsertExecutor
from refdata_migration.migration.extractor import PaginatedExtractor, deduplicate_records
from refdata_migration.migration.models import KeyMode, ProgressSnapshot, Record, Reference, Value
from refdata_migration.migration.resolver import (
    NaturalKeyMap,
    NaturalKeyResolver,
    build_natural_key_map,
)
from refdata_migration.migration.store import RecordStore
from refdata_migration.resources import EntityDefinition, get_default_entities
from refdata_migration.utils.logging import get_logger, log_migration_progress

logger = get_logger(__name__)

REQUIRED_COLUMNS = ("code", "city", "state")

# Prefix of the ids given to records read from a file
FILE_ID_PREFIX = "file"

ProgressListener = Callable[[str, MigrationPhase, ProgressSnapshot], None]


@dataclass
class GeoFileRecords:
    """Records derived from the rows of one file, per entity type."""

    rows: int = 0
    rows_skipped: int = 0
    duplicates_removed: int = 0
    records: dict[str, list[Record]] = field(default_factory=dict)


@dataclass
class EntityLoadResult:
    """Outcome of loading one entity type."""

    entity_type: str
    label: str
    planned: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    skipped_unresolved: int = 0
    error_samples: list[str] = field(default_factory=list)


@dataclass
class LoadResult:
    """Outcome of loading a file."""

    rows: int = 0
    rows_skipped: int = 0
    duplicates_removed: int = 0
    entities: dict[str, EntityLoadResult] = field(default_factory=dict)
    elapsed: float = 0.0

    @property
    def total_failed(self) -> int:
        return sum(entity.failed for entity in self.entities.values())


def read_geo_rows(path: Path, limit: int | None = None) -> list[dict[str, str]]:
    """Read the rows of a geographic CSV file.

    Args:
        path: CSV file with a header row
        limit: Read at most this many data rows

    Returns:
        Rows as column -> raw string value

    Raises:
        InputFileError: If the file cannot be read or lacks a required column
    """
    try:
        with open(path, newline="", encoding="utf-8-sig") as f:
            reader = csv.DictReader(f)
            header = [column.strip() for column in reader.fieldnames or []]
            missing = [column for column in REQUIRED_COLUMNS if column not in header]
            if missing:
                raise InputFileError(str(path), f"missing column(s): {', '.join(missing)}")
            reader.fieldnames = header

            rows: list[dict[str, str]] = []
            for row in reader:
                if limit is not None and len(rows) >= limit:
                    break
                rows.append({name: (value or "") for name, value in row.items() if name})
    except OSError as e:
        raise InputFileError(str(path), e.strerror or str(e)) from e

    logger.info("geo_file_read", path=str(path), rows=len(rows), limit=limit)
    return rows


def _coordinate(row: dict[str, str], column: str, line: int, source: str) -> Decimal | None:
    raw = row.get(column, "").strip()
    if not raw:
        return None
    try:
        return Decimal(raw)
    except InvalidOperation as e:
        raise InputFileError(source, f"line {line}: {column} {raw!r} is not a number") from e


def build_geo_records(rows: Sequence[dict[str, str]], source: str = "<rows>") -> GeoFileRecords:
    """Derive region, city and postal code records from CSV rows.

    Rows with an empty state or city are skipped. Region and city records
    reference each other through ids made up from their keys.

    Raises:
        InputFileError: If a coordinate is not a number
    """
    derived = GeoFileRecords(rows=len(rows))
    regions: dict[str, Record] = {}
    cities: dict[tuple[str, str], Record] = {}
    postal_codes: list[Record] = []

    # The header is line 1
    for line, row in enumerate(rows, start=2):
        state = row.get("state", "").strip()
        city = row.get("city", "").strip()
        if not state or not city:
            derived.rows_skipped += 1
            continue

        region_id = f"{FILE_ID_PREFIX}:region:{state}"
        if state not in regions:
            name = row.get("state_name", "").strip() or state
            regions[state] = Record(
                entity_type="region",
                surrogate_id=region_id,
                fields={"abbreviation": state, "name": name},
            )

        city_id = f"{FILE_ID_PREFIX}:city:{state}:{city}"
        if (city, state) not in cities:
            cities[(city, state)] = Record(
                entity_type="city",
                surrogate_id=city_id,
                fields={"name": city, "region": Reference("region", region_id)},
            )

        fields: dict[str, Value] = {
            "code": row.get("code", ""),
            "county": row.get("county", "").strip() or None,
            "latitude": _coordinate(row, "lat", line, source),
            "longitude": _coordinate(row, "lon", line, source),
            "region": Reference("region", region_id),
            "city": Reference("city", city_id),
        }
        postal_codes.append(
            Record(
                entity_type="postal_code",
                surrogate_id=f"{FILE_ID_PREFIX}:row:{line}",
                fields=fields,
            )
        )

    postal_codes, removed = deduplicate_records(postal_codes, "code")
    derived.duplicates_removed = len(removed)
    if removed:
        logger.warning(
            "duplicate_postal_codes_removed",
            count=len(removed),
            sample=[str(code) for code in removed[:5]],
        )

    derived.records = {
        "region": sorted(regions.values(), key=lambda r: str(r.get("abbreviation"))),
        "city": list(cities.values()),
        "postal_code": postal_codes,
    }
    return derived


class GeoFileLoader:
    """Writes records derived from a file into a target store, parents first."""

    def __init__(
        self,
        target: RecordStore,
        extractor: PaginatedExtractor,
        executor: BatchUpsertExecutor,
        definitions: Sequence[EntityDefinition] | None = None,
        max_parallel: int = 4,
        batch_size: int = 100,
    ):
        self.target = target
        self.resolver = NaturalKeyResolver(extractor)
        self.executor = executor
        self.definitions = list(definitions or get_default_entities())
        self.max_parallel = max_parallel
        self.batch_size = batch_size

    async def load(
        self,
        derived: GeoFileRecords,
        states_only: bool = False,
        progress: ProgressListener | None = None,
    ) -> LoadResult:
        """Upsert the derived records by natural key.

        Args:
            derived: Records built by ``build_geo_records``
            states_only: Load regions and nothing below them
            progress: Optional callable(entity_type, phase, snapshot), as the migration uses

        Returns:
            LoadResult with per-entity counts
        """
        start_time = time.monotonic()
        result = LoadResult(
            rows=derived.rows,
            rows_skipped=derived.rows_skipped,
            duplicates_removed=derived.duplicates_removed,
        )
        file_maps: dict[str, NaturalKeyMap] = {}
        target_maps: dict[str, NaturalKeyMap] = {}

        definitions = self.definitions[:1] if states_only else self.definitions
        for definition in definitions:
            records = derived.records.get(definition.name, [])
            entity = EntityLoadResult(entity_type=definition.name, label=definition.label)
            result.entities[definition.name] = entity

            file_maps[definition.name] = build_natural_key_map(records, definition, file_maps)
            await self._refresh_target_map(definition, target_maps)

            build = EntityBuilder(definition, file_maps, target_maps).build(records)
            entity.planned = len(build.records)
            entity.skipped_unresolved = build.skipped_count
            entity.failed = len(build.invalid)
            entity.error_samples.extend(error.message for error in build.invalid[:5])

            if build.records:
                upsert = await self.executor.execute(
                    self.target,
                    definition.name,
                    build.records,
                    max_parallel=self.max_parallel,
                    batch_size=self.batch_size,
                    key_mode=KeyMode.NATURAL_KEY,
                    progress=self._progress_for(definition.name, progress),
                )
                entity.created += upsert.created_count
                entity.updated += upsert.updated_count
                entity.failed += upsert.failure_count
                entity.error_samples.extend(upsert.error_samples(5 - len(entity.error_samples)))

            await self._refresh_target_map(definition, target_maps)
            logger.info(
                "entity_loaded",
                entity_type=definition.name,
                planned=entity.planned,
                created=entity.created,
                updated=entity.updated,
                failed=entity.failed,
                skipped_unresolved=entity.skipped_unresolved,
            )

        result.elapsed = time.monotonic() - start_time
        return result

    async def _refresh_target_map(
        self, definition: EntityDefinition, target_maps: dict[str, NaturalKeyMap]
    ) -> None:
        target_maps[definition.name] = await self.resolver.build_map(
            self.target, definition, target_maps
        )

    @staticmethod
    def _progress_for(
        entity_type: str, progress: ProgressListener | None
    ) -> Callable[[ProgressSnapshot], None]:
        def report(snapshot: ProgressSnapshot) -> None:
            log_migration_progress(logger, MigrationPhase.UPSERTING.value, entity_type, snapshot)
            if progress is not None:
                progress(entity_type, MigrationPhase.UPSERTING, snapshot)

        return report


async def load_geo_file(
    target: RecordStore,
    path: Path,
    extractor: PaginatedExtractor,
    executor: BatchUpsertExecutor,
    limit: int | None = None,
    states_only: bool = False,
    max_parallel: int = 4,
    batch_size: int = 100,
    definitions: Sequence[EntityDefinition] | None = None,
    progress: ProgressListener | None = None,
) -> LoadResult:
    """Read a geographic CSV file and upsert its contents into ``target``."""
    rows = read_geo_rows(path, limit=limit)
    derived = build_geo_records(rows, source=str(path))
    loader = GeoFileLoader(
        target,
        extractor,
        executor,
        definitions=definitions,
        max_parallel=max_parallel,
        batch_size=batch_size,
    )
    return await loader.load(derived, states_only=states_only, progress=progress)
