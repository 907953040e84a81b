"""Export command.

Discovers every exportable kind in a namespace and writes the sanitized
manifests into the export tree (``resources/`` and ``failures/``).
"""

import asyncio
from pathlib import Path

import click

from kube_migration.cli.context import BridgeContext
from kube_migration.cli.decorators import EXIT_FAILURE, handle_errors, pass_context
from kube_migration.cli.utils import (
    console,
    echo_error,
    echo_info,
    echo_success,
    echo_warning,
    step_progress,
)
from kube_migration.migration.exporter import NamespaceExporter
from kube_migration.migration.models import ExportResult
from kube_migration.reporting.report import export_report, render_export_summary
from kube_migration.utils.logging import get_logger

logger = get_logger(__name__)


@click.command(name="export")
@click.option("--namespace", "-n", required=True, help="Namespace to export")
@click.option(
    "--export-dir",
    "-e",
    type=click.Path(file_okay=False, path_type=Path),
    help="Export directory (default: paths.export_dir)",
)
@click.option("--context", "kube_context", help="Kubeconfig context of the source cluster")
@click.option("--kubeconfig", type=click.Path(dir_okay=False), help="Path to kubeconfig")
@click.option(
    "--cluster-scoped-rbac",
    is_flag=True,
    help="Also export ClusterRoles/ClusterRoleBindings bound to the namespace's service accounts",
)
@click.option("--include-kind", multiple=True, help="Only export these kinds (repeatable)")
@click.option("--exclude-kind", multiple=True, help="Skip these kinds (repeatable)")
@click.option(
    "--label-selector",
    "-l",
    help="Only export objects matching this label selector (cluster RBAC bindings included)",
)
@click.option("--qps", type=float, help="Client queries per second")
@click.option("--burst", type=int, help="Client burst size (also sizes the worker pool)")
@click.option(
    "--report",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write a JSON export report to this file",
)
@pass_context
@handle_errors
def export(
    ctx: BridgeContext,
    namespace: str,
    export_dir: Path | None,
    kube_context: str | None,
    kubeconfig: str | None,
    cluster_scoped_rbac: bool,
    include_kind: tuple[str, ...],
    exclude_kind: tuple[str, ...],
    label_selector: str | None,
    qps: float | None,
    burst: int | None,
    report: Path | None,
) -> None:
    """Export the namespace resources.

    Examples:

        kube-bridge export -n shop --context source -e export/

        kube-bridge export -n shop --exclude-kind secrets --cluster-scoped-rbac
    """
    config = ctx.config
    output = export_dir or Path(config.paths.export_dir)
    client = ctx.cluster_client(kube_context or config.source_context, kubeconfig, qps=qps, burst=burst)

    async def run_export() -> ExportResult:
        try:
            exporter = NamespaceExporter(client, output, config.export)
            return await exporter.export(
                namespace,
                include_kinds=include_kind,
                exclude_kinds=exclude_kind,
                label_selector=label_selector,
                cluster_scoped_rbac=cluster_scoped_rbac,
            )
        finally:
            await client.close()

    echo_info(f"Exporting namespace '{namespace}' from {client.cluster_name} into {output}")
    with step_progress(f"Exporting namespace '{namespace}'"):
        result = asyncio.run(run_export())

    render_export_summary(result, console)
    if report:
        export_report(result, config.export.max_failure_ratio).generate_json(report)

    if result.total == 0:
        echo_warning(f"Namespace '{namespace}' has nothing to export")
    if not result.succeeded(config.export.max_failure_ratio):
        echo_error(
            f"Export failed: {len(result.failures)} of {result.total} units failed "
            f"(see {output / 'failures' / namespace})"
        )
        raise click.exceptions.Exit(EXIT_FAILURE)

    echo_success(
        f"Exported {len(result.exported)} resources"
        + (f" ({len(result.failures)} failures recorded)" if result.failures else "")
    )
