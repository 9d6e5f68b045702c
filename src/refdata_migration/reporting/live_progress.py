"""Live progress display using Rich library.

Renders the ProgressSnapshot values the orchestrator emits as one progress row
per entity type and batch phase (cleaning, upserting). The display is a
plain progress callback: pass the instance itself as ``progress_callback``.

Key rules for the Rich Live display:
    1. Create the Live instance once, never recreate it
    2. Only ever update() tasks, never reset() them
    3. Remove the console log handler while Live is running so log lines do
       not tear the display; file logging keeps going
"""

import logging
from datetime import datetime

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    ProgressColumn,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
)
from rich.logging import RichHandler
from rich.text import Text

from refdata_migration.migration.coordinator import MigrationPhase
from refdata_migration.migration.models import ProgressSnapshot
from refdata_migration.reporting.colors import MigrationColors
from refdata_migration.reporting.progress import format_eta


class StatusIconColumn(ProgressColumn):
    """Checkmark for complete rows, bullet for rows that have not started.

    Running rows render nothing here; the SpinnerColumn covers them.
    """

    def render(self, task):
        status = task.fields.get("status_text", "pending")

        if status == "complete":
            return Text("✓", style=MigrationColors.BAR_DONE)
        if status == "running":
            return Text("")
        return Text("•", style=MigrationColors.BAR_WAITING)


def format_metrics(snapshot: ProgressSnapshot) -> str:
    """Format rate, ETA and elapsed time for one progress row."""
    return (
        f"[{MigrationColors.RATE}]{snapshot.rate_per_second:>7.1f}/s[/{MigrationColors.RATE}]"
        f" [{MigrationColors.TIME}]ETA {format_eta(snapshot.estimated_remaining)}"
        f"[/{MigrationColors.TIME}]"
        f" [{MigrationColors.TIME}]{snapshot.elapsed:>6.1f}s[/{MigrationColors.TIME}]"
    )


class MigrationProgressDisplay:
    """Live progress display for a migration run.

    Example:
        >>> with MigrationProgressDisplay() as display:
        >>>     result = await run_migration(source, target, progress_callback=display)
    """

    def __init__(self, enabled: bool = True, title: str = "Reference Data Migration"):
        """Initialize progress display.

        Args:
            enabled: Whether to show live progress (set False for CI/CD)
            title: Display title for the progress panel
        """
        self.enabled = enabled
        self.title = title

        # Tracked even when disabled so callers can inspect the latest state
        self.snapshots: dict[str, ProgressSnapshot] = {}
        self.tasks: dict[str, TaskID] = {}
        self._original_log_handlers: list[logging.Handler] = []
        self._live_started = False

        if not self.enabled:
            return

        self.console = Console(stderr=True, width=120)

        self.progress = Progress(
            TextColumn("[{task.fields[start_time]}]", style="dim"),
            StatusIconColumn(),
            SpinnerColumn(style=MigrationColors.SPINNER),
            TaskProgressColumn(style=MigrationColors.BAR),
            TextColumn("{task.description:<28}", style=MigrationColors.PHASE),
            BarColumn(bar_width=20, style=MigrationColors.BAR),
            TextColumn("{task.completed:>7}/{task.total:<7}"),
            TextColumn("{task.fields[metrics]}"),
            console=self.console,
        )

        self.live = Live(
            Group(
                Panel(
                    self.progress,
                    title=self.title,
                    title_align="left",
                    border_style=MigrationColors.TABLE_BORDER,
                )
            ),
            console=self.console,
            refresh_per_second=4,
        )

    @staticmethod
    def task_key(entity_type: str, phase: MigrationPhase) -> str:
        return f"{phase.value}:{entity_type}"

    def start(self) -> None:
        """Detach the console log handler and start the live display."""
        if not self.enabled or self._live_started:
            return

        root_logger = logging.getLogger()
        self._original_log_handlers = root_logger.handlers[:]
        for handler in root_logger.handlers[:]:
            if isinstance(handler, RichHandler):
                root_logger.removeHandler(handler)

        self.live.start()
        self._live_started = True

    def stop(self) -> None:
        """Stop the live display and restore console logging."""
        if not self.enabled:
            return

        if self._live_started:
            self.live.stop()
            self._live_started = False

        if self._original_log_handlers:
            root_logger = logging.getLogger()
            for handler in self._original_log_handlers:
                if handler not in root_logger.handlers:
                    root_logger.addHandler(handler)
            self._original_log_handlers = []

    def update(self, entity_type: str, phase: MigrationPhase, snapshot: ProgressSnapshot) -> None:
        """Render one snapshot.

        Args:
            entity_type: Entity type the snapshot belongs to
            phase: Batch phase that produced it
            snapshot: Latest snapshot
        """
        key = self.task_key(entity_type, phase)
        self.snapshots[key] = snapshot

        if not self.enabled:
            return

        complete = snapshot.processed >= snapshot.total
        status_text = "complete" if complete else "running"

        if key not in self.tasks:
            verb = "Cleaning" if phase is MigrationPhase.CLEANING_TARGET else "Upserting"
            self.tasks[key] = self.progress.add_task(
                description=f"{verb} {entity_type}",
                total=snapshot.total,
                completed=0,
                start_time=datetime.now().strftime("%H:%M:%S"),
                status_text=status_text,
                metrics="",
            )

        self.progress.update(
            self.tasks[key],
            total=snapshot.total,
            completed=snapshot.processed,
            status_text=status_text,
            metrics=format_metrics(snapshot),
        )

    def __call__(self, entity_type: str, phase: MigrationPhase, snapshot: ProgressSnapshot) -> None:
        self.update(entity_type, phase, snapshot)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False
