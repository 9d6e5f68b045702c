"""Migration orchestrator for the full reference-data pipeline.

This module sequences extraction, natural-key resolution, translation and
batch upserts for every entity type in declared dependency order:

    source extraction -> source maps -> [target cleaning] ->
    per type: target map -> translate -> upsert -> rebuild target map ->
    verification

Fatal errors (an entity type that cannot be extracted, a natural key shared
by two records) stop the run in FAILED. Everything below that level, failed
records, failed batches, unresolved references, is counted and reported.
"""

import asyncio
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from refdata_migration.client.exceptions import RefDataMigrationError
from refdata_migration.config import MAX_REQUEST_RECORDS, MigrationConfig
from refdata_migration.migration.builder import EntityBuilder
from refdata_migration.migration.executor import BatchUpsertExecutor
from refdata_migration.migration.extractor import ExtractionResult, PaginatedExtractor
from refdata_migration.migration.models import (
    BulkOperationResult,
    KeyMode,
    ProgressSnapshot,
    Record,
    render_natural_key,
)
from refdata_migration.migration.resolver import NaturalKeyMap, build_natural_key_map
from refdata_migration.migration.store import RecordStore
from refdata_migration.resources import (
    EntityDefinition,
    cleanup_order,
    get_default_entities,
    validate_dependency_order,
)
from refdata_migration.utils.logging import get_logger, log_migration_progress
from refdata_migration.utils.retry import RetryPolicy

logger = get_logger(__name__)

# Error samples kept per entity type and phase
MAX_ERROR_SAMPLES = 5

# Prefix of the stand-in target ids a dry run assigns to records it would create
DRY_RUN_ID_PREFIX = "dry-run:"


class MigrationPhase(str, Enum):
    """Observable state of a migration run."""

    IDLE = "idle"
    EXTRACTING_SOURCE = "extracting_source"
    RESOLVING_SOURCE = "resolving_source"
    CLEANING_TARGET = "cleaning_target"
    EXTRACTING_TARGET = "extracting_target"
    RESOLVING_TARGET = "resolving_target"
    TRANSLATING = "translating"
    UPSERTING = "upserting"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


# (entity_type, phase, snapshot)
MigrationProgressCallback = Callable[[str, MigrationPhase, ProgressSnapshot], None]


@dataclass
class MigrationOptions:
    """Tuning knobs of one run."""

    max_parallel: int = 4
    batch_size: int = 1000
    page_size: int = 5000
    dry_run: bool = False
    clean_target_first: bool = False
    retry_attempts: int = 3
    retry_backoff_seconds: float = 2.0
    progress_interval: float = 3.0

    def __post_init__(self) -> None:
        if self.max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        if not 1 <= self.batch_size <= MAX_REQUEST_RECORDS:
            raise ValueError(f"batch_size must be between 1 and {MAX_REQUEST_RECORDS}")
        if not 1 <= self.page_size <= MAX_REQUEST_RECORDS:
            raise ValueError(f"page_size must be between 1 and {MAX_REQUEST_RECORDS}")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")

    @classmethod
    def from_config(cls, config: MigrationConfig, **overrides: Any) -> "MigrationOptions":
        """Build options from a loaded configuration.

        Args:
            config: Migration configuration
            **overrides: Values that win over the configuration (None is ignored)
        """
        perf = config.performance
        values: dict[str, Any] = {
            "max_parallel": perf.max_parallel,
            "batch_size": perf.batch_size,
            "page_size": perf.page_size,
            "dry_run": config.dry_run,
            "clean_target_first": config.clean_target,
            "retry_attempts": perf.retry_attempts,
            "retry_backoff_seconds": perf.retry_backoff_seconds,
            "progress_interval": perf.progress_interval_seconds,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class VerificationResult:
    """Source versus target record count of one entity type."""

    label: str
    source_count: int
    target_count: int

    @property
    def matched(self) -> bool:
        return self.source_count == self.target_count

    def __str__(self) -> str:
        verdict = "match" if self.matched else "mismatch"
        return f"{self.label}: {self.target_count}/{self.source_count} {verdict}"


@dataclass
class EntityMigrationResult:
    """What happened to one entity type."""

    entity_type: str
    label: str
    source_count: int = 0
    duplicates_removed: int = 0
    planned: int = 0
    created: int = 0
    updated: int = 0
    upserted: int = 0
    failed: int = 0
    skipped_unresolved: int = 0
    invalid: int = 0
    deleted: int = 0
    duration: float = 0.0
    error_samples: dict[MigrationPhase, list[str]] = field(default_factory=dict)
    verification: VerificationResult | None = None

    def add_error_samples(self, phase: MigrationPhase, samples: Sequence[str]) -> None:
        kept = self.error_samples.setdefault(phase, [])
        kept.extend(samples[: MAX_ERROR_SAMPLES - len(kept)])

    def iter_error_samples(self) -> Iterator[str]:
        """Kept samples of every phase, prefixed with the phase name."""
        for phase, samples in self.error_samples.items():
            for sample in samples:
                yield f"{phase.value}: {sample}"

    def apply_upsert(self, upsert: BulkOperationResult) -> None:
        """Add an upsert aggregate (complete or cut short) to the counters."""
        self.created += upsert.created_count
        self.updated += upsert.updated_count
        self.upserted += upsert.success_count
        self.failed += upsert.failure_count
        self.add_error_samples(MigrationPhase.UPSERTING, upsert.error_samples(MAX_ERROR_SAMPLES))

    def apply_deletion(self, deletion: BulkOperationResult) -> None:
        self.deleted += deletion.success_count
        self.add_error_samples(
            MigrationPhase.CLEANING_TARGET, deletion.error_samples(MAX_ERROR_SAMPLES)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "source_count": self.source_count,
            "duplicates_removed": self.duplicates_removed,
            "planned": self.planned,
            "created": self.created,
            "updated": self.updated,
            "upserted": self.upserted,
            "failed": self.failed,
            "skipped_unresolved": self.skipped_unresolved,
            "invalid": self.invalid,
            "deleted": self.deleted,
            "duration_seconds": round(self.duration, 2),
            "error_samples": {
                phase.value: list(samples) for phase, samples in self.error_samples.items()
            },
            "verification": str(self.verification) if self.verification else None,
        }


@dataclass
class MigrationResult:
    """Outcome of a whole run."""

    state: MigrationPhase = MigrationPhase.IDLE
    dry_run: bool = False
    entities: dict[str, EntityMigrationResult] = field(default_factory=dict)
    elapsed: float = 0.0
    warnings: list[str] = field(default_factory=list)
    fatal_error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is MigrationPhase.SUCCEEDED

    @property
    def verification_passed(self) -> bool:
        """True when every entity type was verified and its counts match."""
        if not self.entities:
            return False
        return all(
            entity.verification is not None and entity.verification.matched
            for entity in self.entities.values()
        )

    @property
    def total_failed(self) -> int:
        return sum(entity.failed for entity in self.entities.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "dry_run": self.dry_run,
            "succeeded": self.succeeded,
            "verification_passed": self.verification_passed,
            "elapsed_seconds": round(self.elapsed, 2),
            "fatal_error": self.fatal_error,
            "warnings": list(self.warnings),
            "entities": [entity.to_dict() for entity in self.entities.values()],
        }


class MigrationOrchestrator:
    """Runs one migration from a source store into a target store.

    The orchestrator is single use: ``run`` may be called once. ``state``
    holds the current MigrationPhase and ``result`` the result being built,
    which stays available when the run is cancelled.
    """

    def __init__(
        self,
        source: RecordStore,
        target: RecordStore,
        entities: Sequence[EntityDefinition],
        options: MigrationOptions | None = None,
        progress_callback: MigrationProgressCallback | None = None,
    ):
        """Initialize orchestrator.

        Args:
            source: Store to read from
            target: Store to write to
            entities: Entity definitions in dependency order (parents first)
            options: Run options (defaults if omitted)
            progress_callback: Receives (entity_type, phase, snapshot) during batch phases

        Raises:
            DependencyError: If an entity references a type declared after it
        """
        validate_dependency_order(entities)

        self.source = source
        self.target = target
        self.entities = list(entities)
        self.options = options or MigrationOptions()
        self.progress_callback = progress_callback

        retry_policy = RetryPolicy(
            max_attempts=self.options.retry_attempts,
            backoff_seconds=self.options.retry_backoff_seconds,
        )
        self.extractor = PaginatedExtractor(self.options.page_size, retry_policy)
        self.executor = BatchUpsertExecutor(retry_policy, self.options.progress_interval)

        self.state = MigrationPhase.IDLE
        self.result: MigrationResult | None = None
        self.source_maps: dict[str, NaturalKeyMap] = {}
        self.target_maps: dict[str, NaturalKeyMap] = {}
        self._source_data: dict[str, ExtractionResult] = {}
        # Entity type and phase of the executor call in progress
        self._active_call: tuple[str, MigrationPhase] | None = None

        logger.info(
            "migration_orchestrator_initialized",
            entity_types=[definition.name for definition in self.entities],
            dry_run=self.options.dry_run,
            clean_target_first=self.options.clean_target_first,
            max_parallel=self.options.max_parallel,
            batch_size=self.options.batch_size,
        )

    def _transition(self, phase: MigrationPhase, entity_type: str | None = None) -> None:
        previous = self.state
        self.state = phase
        logger.info(
            "migration_state_changed",
            from_state=previous.value,
            to_state=phase.value,
            entity_type=entity_type,
        )

    def _progress_for(
        self, entity_type: str, phase: MigrationPhase
    ) -> Callable[[ProgressSnapshot], None]:
        def report(snapshot: ProgressSnapshot) -> None:
            log_migration_progress(logger, phase.value, entity_type, snapshot)
            if self.progress_callback is not None:
                self.progress_callback(entity_type, phase, snapshot)

        return report

    async def run(self) -> MigrationResult:
        """Execute the migration.

        Returns:
            MigrationResult in state SUCCEEDED or FAILED

        Raises:
            asyncio.CancelledError: If the run is cancelled (state becomes CANCELLED)
        """
        if self.state is not MigrationPhase.IDLE:
            raise RuntimeError(f"Migration already ran (state: {self.state.value})")

        result = MigrationResult(dry_run=self.options.dry_run)
        result.entities = {
            definition.name: EntityMigrationResult(definition.name, definition.label)
            for definition in self.entities
        }
        self.result = result
        start_time = time.monotonic()

        logger.info(
            "migration_started",
            dry_run=self.options.dry_run,
            entity_types=len(self.entities),
        )

        try:
            await self._extract_source(result)
            self._resolve_source(result)

            if self.options.clean_target_first:
                if self.options.dry_run:
                    result.warnings.append("Dry run: target cleaning skipped")
                else:
                    await self._clean_target(result)

            for definition in self.entities:
                await self._migrate_entity(definition, result)

            await self._verify(result)
            self._transition(MigrationPhase.SUCCEEDED)

        except asyncio.CancelledError:
            self._keep_partial_call(result)
            self._transition(MigrationPhase.CANCELLED)
            result.state = self.state
            result.elapsed = time.monotonic() - start_time
            logger.warning("migration_cancelled", elapsed_seconds=round(result.elapsed, 2))
            raise

        except RefDataMigrationError as e:
            failed_in = self.state
            self._transition(MigrationPhase.FAILED)
            result.fatal_error = str(e)
            logger.error(
                "migration_failed",
                phase=failed_in.value,
                error_type=type(e).__name__,
                error=str(e),
            )

        except Exception as e:
            self._transition(MigrationPhase.FAILED)
            result.state = self.state
            result.fatal_error = str(e)
            result.elapsed = time.monotonic() - start_time
            logger.error("migration_crashed", error=str(e), exc_info=True)
            raise

        result.state = self.state
        result.elapsed = time.monotonic() - start_time

        logger.info(
            "migration_completed",
            state=result.state.value,
            dry_run=result.dry_run,
            elapsed_seconds=round(result.elapsed, 2),
            verification_passed=result.verification_passed,
            warnings=len(result.warnings),
        )
        return result

    async def _extract_source(self, result: MigrationResult) -> None:
        """Extract every entity type from the source before anything is written."""
        self._transition(MigrationPhase.EXTRACTING_SOURCE)

        for definition in self.entities:
            extraction = await self.extractor.extract(
                self.source,
                definition.name,
                definition.projection,
                key_field=definition.dedup_field,
            )
            self._source_data[definition.name] = extraction

            entity = result.entities[definition.name]
            entity.source_count = extraction.count
            entity.duplicates_removed = extraction.duplicates_removed
            if extraction.duplicates_removed:
                result.warnings.append(
                    f"{definition.label}: removed {extraction.duplicates_removed} "
                    f"duplicate or empty {definition.dedup_field} values from source"
                )

    def _resolve_source(self, result: MigrationResult) -> None:
        self._transition(MigrationPhase.RESOLVING_SOURCE)

        for definition in self.entities:
            records = self._source_data[definition.name].records
            key_map = build_natural_key_map(records, definition, self.source_maps)
            self.source_maps[definition.name] = key_map
            if key_map.unkeyed:
                result.warnings.append(
                    f"{definition.label}: {len(key_map.unkeyed)} source records have no natural key"
                )

    async def _clean_target(self, result: MigrationResult) -> None:
        """Delete every record of the managed entity types from the target, children first."""
        self._transition(MigrationPhase.CLEANING_TARGET)

        for definition in cleanup_order(self.entities):
            self._active_call = (definition.name, MigrationPhase.CLEANING_TARGET)
            deletion = await delete_entity_records(
                self.target,
                definition,
                self.extractor,
                self.executor,
                self.options,
                progress=self._progress_for(definition.name, MigrationPhase.CLEANING_TARGET),
            )
            self._active_call = None
            if deletion is None:
                continue

            result.entities[definition.name].apply_deletion(deletion)
            if deletion.failure_count:
                result.warnings.append(
                    f"{definition.label}: {deletion.failure_count} of {deletion.total} "
                    f"target records could not be deleted"
                )

    def _keep_partial_call(self, result: MigrationResult) -> None:
        """Fold the counts of an executor call cut short by cancellation into its entity."""
        partial = self.executor.last_result
        if self._active_call is None or partial is None or not partial.cancelled:
            return

        entity_type, phase = self._active_call
        entity = result.entities[entity_type]
        if phase is MigrationPhase.UPSERTING:
            entity.apply_upsert(partial)
        else:
            entity.apply_deletion(partial)
        logger.warning(
            "partial_batch_result_kept",
            entity_type=entity_type,
            phase=phase.value,
            processed=partial.processed,
            total=partial.total,
        )

    def _plan_dry_run_keys(self, definition: EntityDefinition, records: Sequence[Record]) -> int:
        """Register the keys a real run would create so children resolve against them."""
        key_map = self.target_maps[definition.name]
        planned = 0
        for record in records:
            if record.natural_key is None or record.natural_key in key_map:
                continue
            key_map.add(
                record.natural_key,
                f"{DRY_RUN_ID_PREFIX}{definition.name}:{render_natural_key(record.natural_key)}",
            )
            planned += 1
        return planned

    async def _build_target_map(self, definition: EntityDefinition) -> NaturalKeyMap:
        self._transition(MigrationPhase.EXTRACTING_TARGET, definition.name)
        extraction = await self.extractor.extract(
            self.target, definition.name, definition.key_fields
        )

        self._transition(MigrationPhase.RESOLVING_TARGET, definition.name)
        key_map = build_natural_key_map(extraction.records, definition, self.target_maps)
        self.target_maps[definition.name] = key_map
        return key_map

    async def _migrate_entity(self, definition: EntityDefinition, result: MigrationResult) -> None:
        """Translate and upsert one entity type, then refresh its target map."""
        entity = result.entities[definition.name]
        start_time = time.monotonic()

        await self._build_target_map(definition)

        self._transition(MigrationPhase.TRANSLATING, definition.name)
        builder = EntityBuilder(definition, self.source_maps, self.target_maps)
        build = builder.build(self._source_data[definition.name].records)

        entity.planned = len(build.records)
        entity.skipped_unresolved = build.skipped_count
        entity.invalid = len(build.invalid)
        entity.failed = len(build.invalid)
        entity.add_error_samples(
            MigrationPhase.TRANSLATING, [error.message for error in build.invalid]
        )

        if build.skipped:
            result.warnings.append(
                f"{definition.label}: {build.skipped_count} records skipped "
                f"(unresolved references)"
            )

        if self.options.dry_run:
            would_create = self._plan_dry_run_keys(definition, build.records)
            logger.info(
                "dry_run_upsert_skipped",
                entity_type=definition.name,
                would_upsert=entity.planned,
                would_create=would_create,
            )
            entity.duration = time.monotonic() - start_time
            return

        self._transition(MigrationPhase.UPSERTING, definition.name)
        if build.records:
            self._active_call = (definition.name, MigrationPhase.UPSERTING)
            upsert = await self.executor.execute(
                self.target,
                definition.name,
                build.records,
                max_parallel=self.options.max_parallel,
                batch_size=self.options.batch_size,
                key_mode=KeyMode.NATURAL_KEY,
                progress=self._progress_for(definition.name, MigrationPhase.UPSERTING),
            )
            self._active_call = None
            entity.apply_upsert(upsert)

        if entity.failed:
            result.warnings.append(f"{definition.label}: {entity.failed} records failed")

        # Children resolve against the parents that now exist in the target
        await self._build_target_map(definition)

        entity.duration = time.monotonic() - start_time
        logger.info(
            "entity_migrated",
            entity_type=definition.name,
            source=entity.source_count,
            created=entity.created,
            updated=entity.updated,
            failed=entity.failed,
            skipped_unresolved=entity.skipped_unresolved,
            duration_seconds=round(entity.duration, 2),
        )

    async def _verify(self, result: MigrationResult) -> None:
        """Compare target counts with deduplicated source counts."""
        self._transition(MigrationPhase.VERIFYING)

        for definition in self.entities:
            entity = result.entities[definition.name]
            target_count = await self.extractor.count(self.target, definition.name)
            entity.verification = VerificationResult(
                label=definition.label,
                source_count=entity.source_count,
                target_count=target_count,
            )

            if entity.verification.matched:
                logger.info("verification_passed", entity_type=definition.name, count=target_count)
            else:
                result.warnings.append(str(entity.verification))
                logger.warning(
                    "verification_mismatch",
                    entity_type=definition.name,
                    source_count=entity.source_count,
                    target_count=target_count,
                )


async def delete_entity_records(
    store: RecordStore,
    definition: EntityDefinition,
    extractor: PaginatedExtractor,
    executor: BatchUpsertExecutor,
    options: MigrationOptions,
    progress: Callable[[ProgressSnapshot], None] | None = None,
) -> BulkOperationResult | None:
    """Delete every record of one entity type.

    Returns:
        The delete result, or None if the entity type was already empty

    Raises:
        ExtractionError: If the entity type cannot be listed
    """
    extraction = await extractor.extract(store, definition.name, fields=[])
    ids = [record.surrogate_id for record in extraction.records if record.surrogate_id]

    if not ids:
        logger.info("store_entity_already_empty", entity_type=definition.name)
        return None

    deletion = await executor.execute_delete(
        store,
        definition.name,
        ids,
        max_parallel=options.max_parallel,
        batch_size=options.batch_size,
        progress=progress,
    )
    logger.info(
        "store_entity_cleaned",
        entity_type=definition.name,
        deleted=deletion.success_count,
        failed=deletion.failure_count,
    )
    return deletion


async def clean_store(
    store: RecordStore,
    entities: Sequence[EntityDefinition],
    extractor: PaginatedExtractor,
    executor: BatchUpsertExecutor,
    options: MigrationOptions,
    progress_for: Callable[[str], Callable[[ProgressSnapshot], None] | None] | None = None,
) -> dict[str, BulkOperationResult]:
    """Delete every record of the given entity types, children first.

    Args:
        store: Store to purge
        entities: Entity definitions in dependency order (parents first)
        extractor: Extractor used to list surrogate ids
        executor: Executor running the batched deletes
        options: Batch size and parallelism
        progress_for: Optional factory of per-entity progress callbacks

    Returns:
        Delete result per entity type (types that were already empty are omitted)

    Raises:
        ExtractionError: If an entity type cannot be listed
    """
    deletions: dict[str, BulkOperationResult] = {}

    for definition in cleanup_order(entities):
        deletion = await delete_entity_records(
            store,
            definition,
            extractor,
            executor,
            options,
            progress=progress_for(definition.name) if progress_for else None,
        )
        if deletion is not None:
            deletions[definition.name] = deletion

    return deletions


async def run_migration(
    source: RecordStore,
    target: RecordStore,
    entities: Sequence[EntityDefinition] | None = None,
    options: MigrationOptions | None = None,
    progress_callback: MigrationProgressCallback | None = None,
) -> MigrationResult:
    """Run a migration with a fresh orchestrator.

    Args:
        source: Store to read from
        target: Store to write to
        entities: Entity definitions in dependency order (built-in geo dataset if omitted)
        options: Run options
        progress_callback: Receives (entity_type, phase, snapshot)

    Returns:
        MigrationResult
    """
    orchestrator = MigrationOrchestrator(
        source,
        target,
        entities if entities is not None else get_default_entities(),
        options,
        progress_callback,
    )
    return await orchestrator.run()
