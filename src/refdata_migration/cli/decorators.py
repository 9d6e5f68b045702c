"""
Decorators shared by the CLI commands.

Stack them in this order, outermost first::

    @click.command()
    @pass_context
    @requires_config
    @handle_errors
    def command(ctx: MigrationContext, ...): ...
"""

import functools
from collections.abc import Callable

import click

from refdata_migration.cli.context import MigrationContext
from refdata_migration.client.exceptions import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    MigrationError,
    NetworkError,
)
from refdata_migration.utils.logging import get_logger

logger = get_logger(__name__)

# Checked in order; the first matching class decides label, exit code and hint
ERROR_EXIT_CODES: list[tuple[tuple[type[Exception], ...], str, int, str | None]] = [
    (
        (ConfigurationError,),
        "Configuration Error",
        2,
        "Check the configuration file and make sure every required field is set.",
    ),
    (
        (AuthenticationError, AuthorizationError),
        "Authentication Error",
        3,
        "Verify the store tokens in the configuration file.",
    ),
    ((APIError,), "API Error", 4, None),
    ((NetworkError,), "Network Error", 4, "Check that both stores are reachable."),
    ((MigrationError,), "Migration Error", 5, None),
]

pass_context = click.make_pass_decorator(MigrationContext)


def handle_errors(f: Callable) -> Callable:
    """
    Turn known exceptions into an error message and an exit code.

    Exit codes:
        1: Unexpected error
        2: Configuration error
        3: Authentication or permission error
        4: Store API or network error
        5: Migration error
    """

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except (click.exceptions.Exit, click.exceptions.Abort, click.ClickException):
            raise
        except Exception as e:
            for error_types, label, exit_code, hint in ERROR_EXIT_CODES:
                if isinstance(e, error_types):
                    break
            else:
                label, exit_code, hint = (
                    "Unexpected Error",
                    1,
                    "Check the log file for the full traceback.",
                )

            logger.error(
                "command_failed",
                command=f.__name__,
                error_type=type(e).__name__,
                error=str(e),
                exit_code=exit_code,
                exc_info=exit_code == 1,
            )
            click.echo(f"{label}: {e}", err=True)
            if hint:
                click.echo(hint, err=True)
            raise click.exceptions.Exit(exit_code) from e

    return wrapper


def requires_config(f: Callable) -> Callable:
    """Load the configuration before the command runs; exit with 2 if that fails."""

    @functools.wraps(f)
    def wrapper(ctx: MigrationContext, *args, **kwargs):
        try:
            ctx.config
        except ConfigurationError as e:
            click.echo(f"Error loading configuration: {e}", err=True)
            raise click.exceptions.Exit(2) from e
        return f(ctx, *args, **kwargs)

    return wrapper


def confirm_action(message: str, abort_message: str = "Operation cancelled.") -> Callable:
    """
    Ask for confirmation unless the command was given ``--yes``.

    Declining prints ``abort_message`` and exits with code 0.
    """

    def decorator(f: Callable) -> Callable:
        @functools.wraps(f)
        def wrapper(*args, **kwargs):
            if not click.get_current_context().params.get("yes") and not click.confirm(message):
                click.echo(abort_message)
                raise click.exceptions.Exit(0)
            return f(*args, **kwargs)

        return wrapper

    return decorator
