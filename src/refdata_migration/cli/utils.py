"""Console output for CLI commands: status lines, tables and the run summary."""

from typing import Any

from rich.console import Console
from rich.table import Table

from refdata_migration.migration.coordinator import MigrationResult
from refdata_migration.reporting.colors import SEVERITY_ICONS, MigrationColors
from refdata_migration.reporting.report import MigrationReport

console = Console(highlight=False)
error_console = Console(stderr=True, highlight=False)


def _emit(style: str, message: str, target: Console | None = None) -> None:
    (target or console).print(f"{SEVERITY_ICONS[style]} {message}", style=style, markup=False)


def echo_info(message: str) -> None:
    _emit(MigrationColors.INFO, message)


def echo_success(message: str) -> None:
    _emit(MigrationColors.SUCCESS, message)


def echo_warning(message: str) -> None:
    _emit(MigrationColors.WARNING, message)


def echo_error(message: str) -> None:
    _emit(MigrationColors.ERROR, message, error_console)


def format_count(count: int) -> str:
    return f"{count:,}"


def print_table(title: str, columns: list[str], rows: list[list[Any]]) -> None:
    """Print rows under a titled header; the first column is the entity label."""
    table = Table(
        title=title,
        title_style=MigrationColors.TABLE_HEADER,
        border_style=MigrationColors.TABLE_BORDER,
    )
    table.add_column(columns[0], style=MigrationColors.ENTITY)
    for column in columns[1:]:
        table.add_column(column, justify="right")
    for row in rows:
        table.add_row(*(str(cell) for cell in row))
    console.print(table)


def print_migration_result(result: MigrationResult) -> None:
    """Print the summary table, warnings, error samples and the closing verdict."""
    console.print(MigrationReport(result).build_table())

    for warning in result.warnings:
        echo_warning(warning)

    for entity in result.entities.values():
        for sample in entity.iter_error_samples():
            echo_error(f"{entity.label}: {sample}")

    if result.fatal_error:
        echo_error(f"Migration failed: {result.fatal_error}")
    elif result.dry_run:
        echo_info("Dry run complete. No changes were made to the target store.")
    elif result.verification_passed:
        echo_success(f"Migration complete in {result.elapsed:.1f}s, all counts match")
    else:
        echo_warning(f"Migration complete in {result.elapsed:.1f}s, with count mismatches")
