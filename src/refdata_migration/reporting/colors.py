"""Rich styles used by the progress display, the result table and CLI messages.

Style names follow https://rich.readthedocs.io/en/stable/appendix/colors.html
"""


class MigrationColors:
    """Console styles keyed by what they mark up."""

    # Message severities
    INFO = "cyan"
    SUCCESS = "green"
    WARNING = "yellow"
    ERROR = "red"

    # Progress bars
    SPINNER = "dark_slate_gray1"
    BAR = "blue"
    PHASE = "magenta"
    BAR_DONE = "green"
    BAR_WAITING = "dim"
    RATE = "bright_blue"
    TIME = "bright_magenta"

    # Result table
    TABLE_BORDER = "blue"
    TABLE_HEADER = "bold bright_white"
    ENTITY = "bright_cyan"
    SKIPPED = "dark_orange"
    NOT_RUN = "dim"


SEVERITY_ICONS = {
    MigrationColors.INFO: "ℹ",
    MigrationColors.SUCCESS: "✓",
    MigrationColors.WARNING: "⚠",
    MigrationColors.ERROR: "✗",
}
