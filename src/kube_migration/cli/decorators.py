"""
Decorators for CLI commands.

This module provides decorators for error handling and context passing.
"""

import functools
from collections.abc import Callable

import click

from kube_migration.cli.context import BridgeContext
from kube_migration.client.exceptions import (
    APIError,
    AuthenticationError,
    ConfigurationError,
    NetworkError,
    OutputError,
    TransferError,
)
from kube_migration.utils.logging import get_logger

logger = get_logger(__name__)

EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_AUTH = 3
EXIT_API = 4
EXIT_TRANSFER = 6


def pass_context(f: Callable) -> Callable:
    """
    Decorator to pass BridgeContext to command function.

    Usage:
        @click.command()
        @pass_context
        def my_command(ctx: BridgeContext):
            print(ctx.config)
    """

    @click.pass_context
    @functools.wraps(f)
    def wrapper(click_ctx: click.Context, *args, **kwargs):
        bridge_ctx: BridgeContext = click_ctx.obj
        return f(bridge_ctx, *args, **kwargs)

    return wrapper


def handle_errors(f: Callable) -> Callable:
    """
    Decorator to handle common errors in CLI commands.

    Exit codes:
        0: Success
        1: Aggregate or unexpected failure
        2: Configuration error
        3: Authentication error
        4: API or network error
        6: Transfer failure
    """

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)

        except (click.exceptions.Exit, click.ClickException):
            raise

        except ConfigurationError as e:
            logger.error("configuration_error", error=str(e))
            click.echo(f"Configuration Error: {e}", err=True)
            click.echo("\nCheck the configuration file, kubeconfig and context names.", err=True)
            raise click.exceptions.Exit(EXIT_CONFIG) from e

        except AuthenticationError as e:
            logger.error("authentication_error", error=str(e))
            click.echo(f"Authentication Error: {e}", err=True)
            click.echo("\nVerify the credentials of the selected kubeconfig context.", err=True)
            raise click.exceptions.Exit(EXIT_AUTH) from e

        except (APIError, NetworkError) as e:
            logger.error("api_error", error=str(e))
            click.echo(f"API Error: {e}", err=True)
            raise click.exceptions.Exit(EXIT_API) from e

        except OutputError as e:
            logger.error("output_error", error=str(e))
            click.echo(f"Output Error: {e}", err=True)
            raise click.exceptions.Exit(EXIT_FAILURE) from e

        except TransferError as e:
            logger.error("transfer_error", error=str(e))
            click.echo(f"Transfer Error: {e}", err=True)
            raise click.exceptions.Exit(EXIT_TRANSFER) from e

        except Exception as e:
            logger.error("unexpected_error", error=str(e), exc_info=True)
            click.echo(f"Unexpected Error: {e}", err=True)
            click.echo("\nAn unexpected error occurred. Please check the logs for details.", err=True)
            raise click.exceptions.Exit(EXIT_FAILURE) from e

    return wrapper
