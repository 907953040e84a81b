"""Transform commands.

Reads an export tree, runs the plugin chain over every manifest and writes
the transform tree (``resources/``, ``failures/`` and ``report.json``).

Architecture:
    Export → export tree → Transform (plugins) → transform tree → Apply
"""

import asyncio
from collections.abc import Callable
from pathlib import Path

import click
from rich.table import Table

from kube_migration.cli.context import BridgeContext
from kube_migration.cli.decorators import EXIT_FAILURE, handle_errors, pass_context
from kube_migration.cli.utils import (
    console,
    echo_error,
    echo_info,
    echo_success,
    echo_warning,
    load_flags_file,
    step_progress,
)
from kube_migration.migration.transformer import REPORT_FILE, TransformEngine, build_plugin_chain
from kube_migration.reporting.report import render_transform_summary, transform_report
from kube_migration.utils.logging import get_logger

logger = get_logger(__name__)

PLUGIN_DIR_OPTION = click.option(
    "--plugin-dir",
    "-p",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory of external plugin executables (default: paths.plugin_dir)",
)


def tree_options(f: Callable) -> Callable:
    """Options shared by the commands that run the plugin chain."""
    f = click.option(
        "--flags-file",
        "-f",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="YAML/JSON mapping of extra flag values passed to plugins",
    )(f)
    f = PLUGIN_DIR_OPTION(f)
    f = click.option(
        "--transform-dir",
        "-t",
        type=click.Path(file_okay=False, path_type=Path),
        help="Output directory (default: paths.transform_dir)",
    )(f)
    f = click.option(
        "--export-dir",
        "-e",
        type=click.Path(file_okay=False, path_type=Path),
        help="Export tree to read (default: paths.export_dir)",
    )(f)
    return f


def run_transform(
    ctx: BridgeContext,
    export_dir: Path | None,
    transform_dir: Path | None,
    plugin_dir: Path | None,
    flags_file: Path | None,
    optionals: list[str] | None = None,
    all_optionals: bool = False,
) -> None:
    """Build the chain, transform the tree and report the outcome."""
    config = ctx.config
    source = export_dir or Path(config.paths.export_dir)
    target = transform_dir or Path(config.paths.transform_dir)
    plugins_path = plugin_dir or Path(config.paths.plugin_dir)

    if not source.is_dir():
        raise click.BadParameter(f"Export directory {source} does not exist", param_hint="--export-dir")

    chain, load_errors = build_plugin_chain(plugins_path, timeout=config.transform.plugin_timeout)
    for name, error in load_errors.items():
        echo_warning(f"Plugin {name} not loaded: {error}")

    extras = {**config.transform.extras, **load_flags_file(flags_file)}
    engine = TransformEngine(chain, extras=extras, max_concurrent=config.performance.max_concurrent)

    available = engine.optional_groups()
    if all_optionals:
        enabled = available
    else:
        enabled = list(optionals or [])
        unknown = sorted(set(enabled) - set(available))
        if unknown:
            raise click.BadParameter(
                f"Unknown optional group(s): {', '.join(unknown)}. "
                f"Available: {', '.join(available) or 'none'}",
                param_hint="--optional",
            )
    engine.enabled_optionals = list(dict.fromkeys(enabled))

    echo_info(f"Transforming {source} into {target} with {len(chain)} plugins")
    if engine.enabled_optionals:
        echo_info(f"Optional groups enabled: {', '.join(engine.enabled_optionals)}")

    with step_progress("Running the plugin chain"):
        report = asyncio.run(engine.run(source, target))
    report.plugin_load_errors = load_errors
    max_failure_ratio = config.transform.max_failure_ratio
    transform_report(report, max_failure_ratio).generate_json(target / REPORT_FILE)

    render_transform_summary(report, console)

    if not report.succeeded(max_failure_ratio):
        echo_error(
            f"{report.errors} of {len(report.outcomes)} resources had plugin errors "
            f"(see {target / REPORT_FILE})"
        )
        raise click.exceptions.Exit(EXIT_FAILURE)
    if report.errors:
        echo_warning(f"{report.errors} resources had plugin errors (see {target / REPORT_FILE})")

    echo_success(f"Transformed {report.transformed} resources ({report.whiteouts} whiteouts)")


@click.group(name="transform", invoke_without_command=True)
@tree_options
@pass_context
@handle_errors
def transform(
    ctx: BridgeContext,
    export_dir: Path | None,
    transform_dir: Path | None,
    plugin_dir: Path | None,
    flags_file: Path | None,
) -> None:
    """Transform exported manifests with the plugin chain.

    Optional patch groups are not applied; use 'transform apply-optionals'
    to enable them.

    Examples:

        kube-bridge transform -e export/ -t transform/

        kube-bridge transform --plugin-dir plugins/ --flags-file flags.yaml
    """
    click_ctx = click.get_current_context()
    if click_ctx.invoked_subcommand is not None:
        return
    run_transform(ctx, export_dir, transform_dir, plugin_dir, flags_file)


@transform.command(name="list-plugins")
@PLUGIN_DIR_OPTION
@pass_context
@handle_errors
def list_plugins(ctx: BridgeContext, plugin_dir: Path | None) -> None:
    """List the plugin chain in execution order."""
    config = ctx.config
    chain, load_errors = build_plugin_chain(
        plugin_dir or Path(config.paths.plugin_dir), timeout=config.transform.plugin_timeout
    )

    table = Table(title="Plugins")
    table.add_column("Name")
    table.add_column("Source")
    table.add_column("Priority", justify="right")
    table.add_column("Version")
    table.add_column("Optional fields")
    for plugin in chain:
        table.add_row(
            plugin.name,
            plugin.source,
            str(plugin.priority),
            plugin.metadata.version,
            ", ".join(plugin.metadata.optional_groups) or "-",
        )
    console.print(table)

    for name, error in load_errors.items():
        echo_warning(f"Plugin {name} not loaded: {error}")


@transform.command(name="apply-optionals")
@tree_options
@click.option("--optional", "-o", "optionals", multiple=True, help="Optional group to enable (repeatable)")
@click.option("--all", "all_optionals", is_flag=True, help="Enable every optional group")
@pass_context
@handle_errors
def apply_optionals(
    ctx: BridgeContext,
    export_dir: Path | None,
    transform_dir: Path | None,
    plugin_dir: Path | None,
    flags_file: Path | None,
    optionals: tuple[str, ...],
    all_optionals: bool,
) -> None:
    """Re-run the transform with optional patch groups enabled.

    Examples:

        kube-bridge transform apply-optionals --optional registry-replacement -f flags.yaml

        kube-bridge transform apply-optionals --all
    """
    if not optionals and not all_optionals:
        raise click.UsageError("Specify --optional NAME or --all")
    run_transform(
        ctx,
        export_dir,
        transform_dir,
        plugin_dir,
        flags_file,
        optionals=list(optionals),
        all_optionals=all_optionals,
    )
