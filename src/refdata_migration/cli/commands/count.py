"""
Record count command.

Counts the records of every configured entity type in the source store,
the target store, or both side by side.
"""

import asyncio

import click

from refdata_migration.cli.context import MigrationContext
from refdata_migration.cli.decorators import handle_errors, pass_context, requires_config
from refdata_migration.cli.utils import format_count, print_table
from refdata_migration.migration.extractor import PaginatedExtractor
from refdata_migration.utils.retry import RetryPolicy

ENVIRONMENTS = ("source", "target")


async def count_records(ctx: MigrationContext, environments: list[str]) -> dict[str, dict[str, int]]:
    """Count records per entity type.

    Returns:
        Mapping of environment -> entity type -> count
    """
    perf = ctx.config.performance
    extractor = PaginatedExtractor(
        page_size=perf.page_size,
        retry_policy=RetryPolicy(perf.retry_attempts, perf.retry_backoff_seconds),
    )

    counts: dict[str, dict[str, int]] = {}
    try:
        for env in environments:
            store = ctx.source_client if env == "source" else ctx.target_client
            counts[env] = {
                definition.name: await extractor.count(store, definition.name)
                for definition in ctx.config.entities
            }
    finally:
        await ctx.aclose()

    return counts


@click.command(name="count")
@click.option(
    "--env",
    "env",
    type=click.Choice(["source", "target", "both"], case_sensitive=False),
    default="both",
    help="Store(s) to count",
)
@pass_context
@requires_config
@handle_errors
def count(ctx: MigrationContext, env: str) -> None:
    """Show record counts per entity type."""
    environments = list(ENVIRONMENTS) if env.lower() == "both" else [env.lower()]
    counts = asyncio.run(count_records(ctx, environments))

    columns = ["Entity", *[e.title() for e in environments]]
    rows = [
        [definition.label, *[format_count(counts[e][definition.name]) for e in environments]]
        for definition in ctx.config.entities
    ]
    print_table("Record Counts", columns, rows)
