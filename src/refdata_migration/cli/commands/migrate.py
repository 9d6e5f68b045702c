"""
Migration execution command.

This module provides the command that runs a migration from the source
record store into the target record store.
"""

import asyncio
from pathlib import Path

import click

from refdata_migration.cli.context import MigrationContext
from refdata_migration.cli.decorators import handle_errors, pass_context, requires_config
from refdata_migration.cli.utils import echo_info, print_migration_result
from refdata_migration.migration.coordinator import (
    MigrationOptions,
    MigrationResult,
    run_migration,
)
from refdata_migration.reporting.live_progress import MigrationProgressDisplay
from refdata_migration.reporting.report import generate_migration_report


async def _run(ctx: MigrationContext, options: MigrationOptions, show_progress: bool) -> MigrationResult:
    display = MigrationProgressDisplay(enabled=show_progress)
    try:
        with display:
            return await run_migration(
                ctx.source_client,
                ctx.target_client,
                ctx.config.entities,
                options,
                progress_callback=display,
            )
    finally:
        await ctx.aclose()


@click.command(name="migrate")
@click.option("--dry-run", is_flag=True, default=False, help="Run every phase except writes")
@click.option(
    "--clean-target",
    is_flag=True,
    default=False,
    help="Delete target records (children first) before migrating",
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
@click.option(
    "--report-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Write JSON and Markdown reports to this directory",
)
@click.option("--yes", "-y", is_flag=True, default=False, help="Skip confirmation prompts")
@pass_context
@requires_config
@handle_errors
def migrate(
    ctx: MigrationContext,
    dry_run: bool,
    clean_target: bool,
    max_parallel: int | None,
    batch_size: int | None,
    report_dir: Path | None,
    yes: bool,
) -> None:
    """Migrate reference data from the source into the target store.

    Entity types run in the order they are declared in the configuration
    (parents first). Records are upserted by natural key, so running the
    command again updates instead of duplicating.

    Examples:

        \b
        # Preview what would be written
        refdata-bridge -c config.yaml migrate --dry-run

        \b
        # Purge the target first, without prompting
        refdata-bridge -c config.yaml migrate --clean-target --yes
    """
    config = ctx.config
    options = MigrationOptions.from_config(
        config,
        dry_run=True if dry_run else None,
        clean_target_first=True if clean_target else None,
        max_parallel=max_parallel,
        batch_size=batch_size,
    )

    if options.clean_target_first and not options.dry_run and not yes:
        click.confirm(
            f"This deletes every managed record in {config.target.label}. Continue?",
            abort=True,
        )

    echo_info(f"Source: {config.source.label}")
    echo_info(f"Target: {config.target.label}")
    echo_info(f"Entity types: {', '.join(d.label for d in config.entities)}")

    result = asyncio.run(_run(ctx, options, show_progress=not config.logging.disable_progress))

    print_migration_result(result)

    if report_dir is not None:
        files = generate_migration_report(result, output_dir=str(report_dir))
        for path in files.values():
            echo_info(f"Report written: {path}")

    if not result.succeeded or (not result.dry_run and not result.verification_passed):
        raise click.exceptions.Exit(1)
