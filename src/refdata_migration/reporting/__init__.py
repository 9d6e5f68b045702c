"""Progress tracking and reporting for reference data migration."""

from refdata_migration.reporting.progress import ProgressReporter, format_eta

__all__ = [
    "ProgressReporter",
    "format_eta",
]
