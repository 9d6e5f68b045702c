"""
Flat-file load command.

Reads a geographic CSV file (one postal code per row, with its city and
state) and upserts regions, cities and postal codes into the target store.
"""

import asyncio
from pathlib import Path

import click

from refdata_migration.cli.context import MigrationContext
from refdata_migration.cli.decorators import handle_errors, pass_context, requires_config
from refdata_migration.cli.utils import (
    echo_error,
    echo_info,
    echo_success,
    echo_warning,
    format_count,
    print_table,
)
from refdata_migration.migration.coordinator import MigrationOptions
from refdata_migration.migration.executor import BatchUpsertExecutor
from refdata_migration.migration.extractor import PaginatedExtractor
from refdata_migration.migration.loader import LoadResult, load_geo_file
from refdata_migration.reporting.live_progress import MigrationProgressDisplay
from refdata_migration.utils.retry import RetryPolicy


async def _load(
    ctx: MigrationContext,
    path: Path,
    options: MigrationOptions,
    limit: int | None,
    states_only: bool,
    show_progress: bool,
) -> LoadResult:
    retry_policy = RetryPolicy(options.retry_attempts, options.retry_backoff_seconds)
    display = MigrationProgressDisplay(enabled=show_progress, title="Geographic Data Load")
    try:
        with display:
            return await load_geo_file(
                ctx.target_client,
                path,
                PaginatedExtractor(options.page_size, retry_policy),
                BatchUpsertExecutor(retry_policy, options.progress_interval),
                limit=limit,
                states_only=states_only,
                max_parallel=options.max_parallel,
                batch_size=options.batch_size,
                progress=display,
            )
    finally:
        await ctx.aclose()


@click.command(name="load")
@click.argument("csv_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Load only the first N rows of the file",
)
@click.option(
    "--states-only",
    is_flag=True,
    default=False,
    help="Load regions only, skip cities and postal codes",
)
@click.option(
    "--max-parallel",
    type=click.IntRange(1, 64),
    default=None,
    help="Maximum batch calls in flight (default: from config)",
)
@click.option(
    "--batch-size",
    type=click.IntRange(1, 5000),
    default=None,
    help="Records per batch call (default: from config)",
)
@pass_context
@requires_config
@handle_errors
def load(
    ctx: MigrationContext,
    csv_file: Path,
    limit: int | None,
    states_only: bool,
    max_parallel: int | None,
    batch_size: int | None,
) -> None:
    """Load regions, cities and postal codes from a CSV file into the target store.

    The file needs a header with at least code, city and state columns;
    county, lat, lon and state_name are used when present. Records are
    upserted by natural key, so loading the same file twice updates
    instead of duplicating.

    Examples:

        \b
        refdata-bridge -c config.yaml load zip_codes.csv
        refdata-bridge -c config.yaml load zip_codes.csv --limit 1000
        refdata-bridge -c config.yaml load zip_codes.csv --states-only
    """
    config = ctx.config
    options = MigrationOptions.from_config(config, max_parallel=max_parallel, batch_size=batch_size)

    echo_info(f"File: {csv_file}")
    echo_info(f"Target: {config.target.label}")

    result = asyncio.run(
        _load(
            ctx,
            csv_file,
            options,
            limit,
            states_only,
            show_progress=not config.logging.disable_progress,
        )
    )

    rows = [
        [
            entity.label,
            format_count(entity.planned),
            format_count(entity.created),
            format_count(entity.updated),
            format_count(entity.failed),
            format_count(entity.skipped_unresolved),
        ]
        for entity in result.entities.values()
    ]
    print_table(
        "Geographic Data Load",
        ["Entity", "Planned", "Created", "Updated", "Failed", "Skipped"],
        rows,
    )

    echo_info(f"Rows read: {format_count(result.rows)}")
    if result.rows_skipped:
        echo_warning(f"{format_count(result.rows_skipped)} rows skipped (empty state or city)")
    if result.duplicates_removed:
        echo_warning(
            f"{format_count(result.duplicates_removed)} duplicate or empty postal codes removed"
        )
    for entity in result.entities.values():
        for sample in entity.error_samples:
            echo_error(f"{entity.label}: {sample}")

    if result.total_failed:
        echo_warning(f"Load finished in {result.elapsed:.1f}s with failures")
        raise click.exceptions.Exit(1)
    echo_success(f"Load complete in {result.elapsed:.1f}s")
