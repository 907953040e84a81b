"""Apply command.

Applies a transform (or export) tree to the destination cluster tier by
tier, creating missing objects and updating drifted ones.
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
from kube_migration.migration.applier import ApplyEngine
from kube_migration.migration.models import ApplyResult
from kube_migration.reporting.report import apply_report, render_apply_summary
from kube_migration.utils.logging import get_logger

logger = get_logger(__name__)


@click.command(name="apply")
@click.option(
    "--input-dir",
    "-i",
    type=click.Path(file_okay=False, path_type=Path),
    help="Tree to apply (default: paths.transform_dir)",
)
@click.option("--target-namespace", help="Apply every namespaced resource into this namespace")
@click.option("--skip-namespaced", is_flag=True, help="Do not apply namespaced resources")
@click.option("--skip-cluster-scoped", is_flag=True, help="Do not apply cluster-scoped resources")
@click.option("--dry-run", is_flag=True, help="Plan and diff without changing the cluster")
@click.option("--context", "kube_context", help="Kubeconfig context of the destination cluster")
@click.option("--kubeconfig", type=click.Path(dir_okay=False), help="Path to kubeconfig")
@click.option("--qps", type=float, help="Client queries per second")
@click.option("--burst", type=int, help="Client burst size (also sizes the worker pool)")
@click.option(
    "--report",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write a JSON apply report to this file",
)
@click.option("--verbose", "-v", is_flag=True, help="Also list unchanged resources")
@pass_context
@handle_errors
def apply(
    ctx: BridgeContext,
    input_dir: Path | None,
    target_namespace: str | None,
    skip_namespaced: bool,
    skip_cluster_scoped: bool,
    dry_run: bool,
    kube_context: str | None,
    kubeconfig: str | None,
    qps: float | None,
    burst: int | None,
    report: Path | None,
    verbose: bool,
) -> None:
    """Apply manifests to the destination cluster.

    Examples:

        kube-bridge apply --context destination --dry-run

        kube-bridge apply -i transform/ --target-namespace shop-staging
    """
    if skip_namespaced and skip_cluster_scoped:
        raise click.UsageError("--skip-namespaced and --skip-cluster-scoped leave nothing to apply")

    config = ctx.config
    tree = input_dir or Path(config.paths.transform_dir)
    if not (tree / "resources").is_dir():
        raise click.BadParameter(f"{tree} has no resources/ directory", param_hint="--input-dir")

    performance = ctx.performance(qps, burst)
    client = ctx.cluster_client(
        kube_context or config.destination_context, kubeconfig, qps=qps, burst=burst
    )

    async def run_apply() -> ApplyResult:
        try:
            engine = ApplyEngine(
                client,
                config.apply,
                max_concurrent=performance.max_concurrent,
                target_namespace=target_namespace,
                skip_namespaced=skip_namespaced,
                skip_cluster_scoped=skip_cluster_scoped,
                dry_run=dry_run,
            )
            return await engine.apply(tree)
        finally:
            await client.close()

    mode = " (dry run)" if dry_run else ""
    echo_info(f"Applying {tree} to {client.cluster_name}{mode}")
    with step_progress(f"Applying tiers to {client.cluster_name}"):
        result = asyncio.run(run_apply())

    render_apply_summary(result, console, verbose=verbose)
    if report:
        apply_report(result).generate_json(report)

    if not result.items:
        echo_warning("Nothing to apply")
    if result.failed:
        echo_error(f"{len(result.failed)} of {len(result.items)} resources failed to apply")
        raise click.exceptions.Exit(EXIT_FAILURE)

    echo_success(f"Applied {len(result.items)} resources{mode}")
