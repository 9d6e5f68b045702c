"""
Migration module for refdata-bridge.

This module provides extraction, natural-key resolution, batch execution and
the orchestrator that sequences them into one migration run.
"""

from refdata_migration.migration.builder import BuildResult, EntityBuilder
from refdata_migration.migration.coordinator import (
    EntityMigrationResult,
    MigrationOptions,
    MigrationOrchestrator,
    MigrationPhase,
    MigrationResult,
    VerificationResult,
    clean_store,
    delete_entity_records,
    run_migration,
)
from refdata_migration.migration.executor import BatchUpsertExecutor, chunk_records
from refdata_migration.migration.extractor import (
    ExtractionResult,
    PaginatedExtractor,
    deduplicate_records,
)
from refdata_migration.migration.loader import (
    GeoFileLoader,
    LoadResult,
    build_geo_records,
    load_geo_file,
    read_geo_rows,
)
from refdata_migration.migration.models import (
    BatchError,
    BulkOperationResult,
    KeyMode,
    OperationOutcome,
    ProgressSnapshot,
    Record,
    Reference,
)
from refdata_migration.migration.resolver import (
    NaturalKeyMap,
    NaturalKeyResolver,
    build_natural_key_map,
    translate,
)

__all__ = [
    # Models
    "Record",
    "Reference",
    "KeyMode",
    "OperationOutcome",
    "BatchError",
    "BulkOperationResult",
    "ProgressSnapshot",
    # Extraction
    "PaginatedExtractor",
    "ExtractionResult",
    "deduplicate_records",
    # Resolution
    "NaturalKeyMap",
    "NaturalKeyResolver",
    "build_natural_key_map",
    "translate",
    # Building and execution
    "EntityBuilder",
    "BuildResult",
    "BatchUpsertExecutor",
    "chunk_records",
    # Orchestration
    "MigrationOrchestrator",
    "MigrationOptions",
    "MigrationPhase",
    "MigrationResult",
    "EntityMigrationResult",
    "VerificationResult",
    "clean_store",
    "delete_entity_records",
    "run_migration",
    # Flat-file loading
    "GeoFileLoader",
    "LoadResult",
    "build_geo_records",
    "load_geo_file",
    "read_geo_rows",
]
