"""
Main CLI entry point for Kube Bridge.

This module provides the command-line interface for migrating the
workloads of a namespace, and the data in its volumes, from one
Kubernetes cluster to another.
"""

import sys
from pathlib import Path

import click
from dotenv import load_dotenv

from kube_migration import __version__
from kube_migration.cli.commands import apply as apply_commands
from kube_migration.cli.commands import export as export_commands
from kube_migration.cli.commands import transfer as transfer_commands
from kube_migration.cli.commands import transform as transform_commands
from kube_migration.cli.context import BridgeContext
from kube_migration.utils.logging import configure_logging, get_logger

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name="kube-bridge")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file",
    envvar="KUBE_BRIDGE_CONFIG",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Set console logging level (file logging stays at DEBUG)",
    envvar="KUBE_BRIDGE_LOG_LEVEL",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Also write structured logs to this file",
    envvar="KUBE_BRIDGE_LOG_FILE",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    log_level: str,
    log_file: Path | None,
) -> None:
    """Kube Bridge - Migrate a namespace between Kubernetes clusters.

    The migration runs as independent stages that communicate through
    directories on disk: export reads the source cluster, transform
    rewrites the manifests with plugins, apply writes them to the
    destination cluster and transfer copies persistent volume data.

    Examples:

        # Export a namespace
        kube-bridge export -n shop --context source

        # Transform the export with built-in and external plugins
        kube-bridge transform --plugin-dir plugins/

        # Preview, then apply to the destination cluster
        kube-bridge apply --context destination --dry-run
        kube-bridge apply --context destination

        # Copy a volume
        kube-bridge transfer --source-context source --destination-context destination \\
            --pvc-name data --pvc-namespace shop
    """
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)

    configure_logging(level=log_level, log_file=str(log_file) if log_file else None)

    ctx.obj = BridgeContext(
        config_path=config,
        log_level=log_level,
        log_file=log_file,
    )

    logger.debug(
        "cli_initialized",
        config=str(config) if config else None,
        log_level=log_level,
    )


@cli.command()
def version() -> None:
    """Show the Kube Bridge version."""
    click.echo(f"kube-bridge {__version__}")


# Register standalone commands
cli.add_command(export_commands.export)
cli.add_command(transform_commands.transform)
cli.add_command(apply_commands.apply)
cli.add_command(transfer_commands.transfer)


def main() -> int:
    """Main entry point for CLI."""
    try:
        result = cli(standalone_mode=False)
        return result if isinstance(result, int) else 0
    except click.exceptions.Exit as e:
        return e.exit_code
    except click.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except Exception as e:
        logger.error("unexpected_error", error=str(e), exc_info=True)
        click.echo(f"Error: {e}", err=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
