"""
Cleanup command to delete migrated records from the target store.

Entity types are purged in reverse dependency order (children first) so a
parent is never deleted while records still reference it.
"""

import asyncio

import click

from refdata_migration.cli.context import MigrationContext
from refdata_migration.cli.decorators import (
    confirm_action,
    handle_errors,
    pass_context,
    requires_config,
)
from refdata_migration.cli.utils import echo_success, echo_warning, format_count, print_table
from refdata_migration.migration.coordinator import MigrationOptions, clean_store
from refdata_migration.migration.executor import BatchUpsertExecutor
from refdata_migration.migration.extractor import PaginatedExtractor
from refdata_migration.migration.models import BulkOperationResult
from refdata_migration.utils.retry import RetryPolicy


async def _clean(ctx: MigrationContext, options: MigrationOptions) -> dict[str, BulkOperationResult]:
    retry_policy = RetryPolicy(options.retry_attempts, options.retry_backoff_seconds)
    try:
        return await clean_store(
            ctx.target_client,
            ctx.config.entities,
            PaginatedExtractor(options.page_size, retry_policy),
            BatchUpsertExecutor(retry_policy, options.progress_interval),
            options,
        )
    finally:
        await ctx.aclose()


@click.command(name="clean")
@click.option("--yes", "-y", is_flag=True, default=False, help="Skip confirmation prompt")
@pass_context
@requires_config
@handle_errors
@confirm_action("This deletes every managed record in the target store. Continue?")
def clean(ctx: MigrationContext, yes: bool) -> None:
    """Delete all records of the configured entity types from the target store."""
    options = MigrationOptions.from_config(ctx.config)
    deletions = asyncio.run(_clean(ctx, options))

    if not deletions:
        echo_success("Target store holds no managed records")
        return

    rows = []
    failed = 0
    for definition in reversed(ctx.config.entities):
        deletion = deletions.get(definition.name)
        if deletion is None:
            continue
        failed += deletion.failure_count
        rows.append(
            [
                definition.label,
                format_count(deletion.success_count),
                format_count(deletion.failure_count),
            ]
        )
    print_table("Target Cleanup", ["Entity", "Deleted", "Failed"], rows)

    if failed:
        echo_warning(f"{format_count(failed)} records could not be deleted; see the log for details")
        raise click.exceptions.Exit(1)
    echo_success("Target store cleaned")
