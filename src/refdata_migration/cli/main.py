"""
Command-line entry point: ``refdata-bridge``.

Global options set up logging and the shared MigrationContext; the
subcommands live in ``cli.commands``.
"""

import sys
from pathlib import Path

import click
from dotenv import load_dotenv

from refdata_migration import __version__
from refdata_migration.cli.commands.clean import clean
from refdata_migration.cli.commands.count import count
from refdata_migration.cli.commands.load import load
from refdata_migration.cli.commands.migrate import migrate
from refdata_migration.cli.context import MigrationContext
from refdata_migration.utils.logging import configure_logging, get_logger

# Tokens are usually referenced as ${VAR} in the config file
load_dotenv()

logger = get_logger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="refdata-bridge")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    envvar="REFDATA_BRIDGE_CONFIG",
    help="Configuration file (YAML)",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    envvar="REFDATA_BRIDGE_LOG_LEVEL",
    help="Console log level [default: logging.level from the config, else WARNING]",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    envvar="REFDATA_BRIDGE_LOG_FILE",
    help="Log file [default: logging.file from the config]",
)
@click.pass_context
def cli(ctx: click.Context, config: Path | None, log_level: str | None, log_file: Path | None) -> None:
    """Copy hierarchical reference data from one record store to another.

    Every reference is re-resolved through natural keys, and records are
    upserted parents first. Records are matched by natural key, so running
    a migration twice updates instead of duplicating.

    Examples:

        \b
        refdata-bridge -c config.yaml count
        refdata-bridge -c config.yaml migrate --dry-run
        refdata-bridge -c config.yaml migrate --clean-target --yes
        refdata-bridge -c config.yaml load zip_codes.csv
    """
    # Until the config file is read; MigrationContext reconfigures afterwards
    configure_logging(level=log_level or "WARNING", log_file=str(log_file) if log_file else None)

    ctx.obj = MigrationContext(config_path=config, log_level=log_level, log_file=log_file)
    logger.debug("cli_started", command=ctx.invoked_subcommand, config=str(config) if config else None)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


for command in (migrate, count, clean, load):
    cli.add_command(command)


def main() -> int:
    """Console script entry point; returns the process exit code."""
    try:
        result = cli(standalone_mode=False)
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except click.ClickException as e:
        e.show()
        return e.exit_code
    # standalone_mode=False hands back the code of a raised Exit
    return result if isinstance(result, int) else 0


if __name__ == "__main__":
    sys.exit(main())
