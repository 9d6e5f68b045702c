"""Migration report generation.

Turns a MigrationResult into a Rich summary table for the console and into
JSON or Markdown files for later review.
"""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from rich.table import Table

from refdata_migration.migration.coordinator import MigrationResult
from refdata_migration.reporting.colors import MigrationColors
from refdata_migration.utils.logging import get_logger

logger = get_logger(__name__)

REPORT_FORMATS = ("json", "markdown")


def format_duration(seconds: float | None) -> str:
    """Format duration in human-readable format."""
    if seconds is None:
        return "N/A"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    elif minutes > 0:
        return f"{minutes}m {secs}s"
    else:
        return f"{secs}s"


class MigrationReport:
    """Renders one migration result in several formats."""

    def __init__(self, result: MigrationResult):
        self.result = result
        self.generated_at = datetime.now(UTC)

    def build_table(self) -> Table:
        """Build the per-entity summary table shown after a run."""
        title = "Migration Summary (dry run)" if self.result.dry_run else "Migration Summary"
        table = Table(title=title, title_style=MigrationColors.TABLE_HEADER, border_style=MigrationColors.TABLE_BORDER)
        table.add_column("Entity", style=MigrationColors.PHASE)
        table.add_column("Source", justify="right", style=MigrationColors.ENTITY)
        table.add_column("Dupes", justify="right")
        table.add_column("Created", justify="right", style=MigrationColors.SUCCESS)
        table.add_column("Updated", justify="right", style=MigrationColors.SUCCESS)
        table.add_column("Failed", justify="right", style=MigrationColors.ERROR)
        table.add_column("Skipped", justify="right", style=MigrationColors.SKIPPED)
        table.add_column("Verification")

        for entity in self.result.entities.values():
            if entity.verification is None:
                verification = f"[{MigrationColors.NOT_RUN}]not run[/{MigrationColors.NOT_RUN}]"
            elif entity.verification.matched:
                verification = f"[{MigrationColors.SUCCESS}]{entity.verification}[/{MigrationColors.SUCCESS}]"
            else:
                verification = f"[{MigrationColors.WARNING}]{entity.verification}[/{MigrationColors.WARNING}]"

            table.add_row(
                entity.label,
                f"{entity.source_count:,}",
                f"{entity.duplicates_removed:,}",
                f"{entity.created:,}",
                f"{entity.updated:,}",
                f"{entity.failed:,}",
                f"{entity.skipped_unresolved:,}",
                verification,
            )

        return table

    def generate_json(self, output_path: str | None = None) -> str:
        """Generate JSON report.

        Args:
            output_path: Optional path to save report

        Returns:
            JSON report as string
        """
        report: dict[str, Any] = {
            "report_version": "1.0",
            "generated_at": self.generated_at.isoformat(),
            "result": self.result.to_dict(),
            "recommendations": self.recommendations(),
        }

        json_str = json.dumps(report, indent=2, default=str)

        if output_path:
            Path(output_path).write_text(json_str)
            logger.info("json_report_saved", path=output_path)

        return json_str

    def generate_markdown(self, output_path: str | None = None) -> str:
        """Generate Markdown report.

        Args:
            output_path: Optional path to save report

        Returns:
            Markdown report as string
        """
        result = self.result
        lines = [
            "# Reference Data Migration Report",
            "",
            f"**Generated:** {self.generated_at.strftime('%Y-%m-%d %H:%M:%S UTC')}  ",
            f"**State:** {result.state.value}  ",
            f"**Dry Run:** {'Yes' if result.dry_run else 'No'}  ",
            f"**Duration:** {format_duration(result.elapsed)}  ",
            "",
        ]

        if result.fatal_error:
            lines.extend(["## Fatal Error", "", f"`{result.fatal_error}`", ""])

        lines.extend(
            [
                "## Entities",
                "",
                "| Entity | Source | Created | Updated | Failed | Skipped | Verification |",
                "|--------|-------:|--------:|--------:|-------:|--------:|--------------|",
            ]
        )
        for entity in result.entities.values():
            lines.append(
                f"| {entity.label} | {entity.source_count:,} | {entity.created:,} "
                f"| {entity.updated:,} | {entity.failed:,} | {entity.skipped_unresolved:,} "
                f"| {entity.verification or 'not run'} |"
            )
        lines.append("")

        samples = [
            (entity.label, sample)
            for entity in result.entities.values()
            for sample in entity.iter_error_samples()
        ]
        if samples:
            lines.extend(["## Error Samples", ""])
            lines.extend(f"- **{label}:** {sample}" for label, sample in samples)
            lines.append("")

        if result.warnings:
            lines.extend(["## Warnings", ""])
            lines.extend(f"- {warning}" for warning in result.warnings)
            lines.append("")

        lines.extend(["## Recommendations", ""])
        lines.extend(f"- {rec}" for rec in self.recommendations())
        lines.append("")

        markdown = "\n".join(lines)

        if output_path:
            Path(output_path).write_text(markdown)
            logger.info("markdown_report_saved", path=output_path)

        return markdown

    def recommendations(self) -> list[str]:
        """Generate recommendations based on the result."""
        result = self.result
        recommendations = []

        if result.fatal_error:
            recommendations.append(
                "The run stopped early. Fix the reported error and run the migration again; "
                "upserts are idempotent so completed entity types are not duplicated."
            )

        if result.total_failed:
            recommendations.append(
                f"{result.total_failed} records failed. Review the error samples and logs for details."
            )

        skipped = sum(entity.skipped_unresolved for entity in result.entities.values())
        if skipped:
            recommendations.append(
                f"{skipped} records were skipped because a referenced record is missing in the "
                "target. Re-running after the parents are migrated picks them up."
            )

        if result.dry_run:
            recommendations.append(
                "This was a dry run. No changes were made to the target store. "
                "Run without --dry-run to perform the migration."
            )
        elif result.succeeded and not result.verification_passed:
            recommendations.append("Source and target counts differ. Check the verification rows.")

        if not recommendations:
            recommendations.append("Migration completed and all entity counts match.")

        return recommendations


def generate_migration_report(
    result: MigrationResult,
    output_dir: str = "./reports",
    formats: list[str] | None = None,
) -> dict[str, str]:
    """Write migration reports in multiple formats.

    Args:
        result: Result of the run
        output_dir: Directory to save reports
        formats: Formats to generate (json, markdown). Default: all

    Returns:
        Dictionary mapping format to file path
    """
    if formats is None:
        formats = list(REPORT_FORMATS)

    unknown = set(formats) - set(REPORT_FORMATS)
    if unknown:
        raise ValueError(f"Unknown report format(s): {', '.join(sorted(unknown))}")

    report = MigrationReport(result)
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    generated_files = {}
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    base_filename = f"migration_report_{timestamp}"

    if "json" in formats:
        json_path = output_path / f"{base_filename}.json"
        report.generate_json(str(json_path))
        generated_files["json"] = str(json_path)

    if "markdown" in formats:
        md_path = output_path / f"{base_filename}.md"
        report.generate_markdown(str(md_path))
        generated_files["markdown"] = str(md_path)

    logger.info("migration_reports_generated", formats=formats, files=generated_files)
    return generated_files
