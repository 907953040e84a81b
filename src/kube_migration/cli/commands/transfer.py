"""Transfer command.

Copies the data of one persistent volume claim from the source cluster to
the destination cluster over an rsync session tunnelled through stunnel.
"""

import asyncio
from pathlib import Path

import click

from kube_migration.cli.context import BridgeContext
from kube_migration.cli.decorators import EXIT_TRANSFER, handle_errors, pass_context
from kube_migration.cli.utils import (
    console,
    echo_error,
    echo_info,
    echo_success,
    echo_warning,
    format_duration,
    split_pair,
)
from kube_migration.config import parse_mapping_pairs
from kube_migration.migration.transfer.session import ClaimRef, PVCTransfer, TransferSession
from kube_migration.reporting.report import render_transfer_summary, transfer_report
from kube_migration.utils.logging import get_logger

logger = get_logger(__name__)


@click.command(name="transfer")
@click.option("--source-context", help="Kubeconfig context of the source cluster")
@click.option("--destination-context", help="Kubeconfig context of the destination cluster")
@click.option("--kubeconfig", type=click.Path(dir_okay=False), help="Path to kubeconfig")
@click.option("--pvc-name", required=True, help="Claim name, or SRC:DEST when the names differ")
@click.option("--pvc-namespace", required=True, help="Claim namespace, or SRC:DEST when they differ")
@click.option(
    "--endpoint",
    type=click.Choice(["load-balancer", "route"]),
    help="How the destination exposes the tunnel (default: transfer.endpoint)",
)
@click.option("--source-path", help="Copy only this sub-path of the source volume")
@click.option("--dest-path", help="Copy into this sub-path of the destination volume")
@click.option(
    "--storage-class-map",
    multiple=True,
    help="OLD=NEW storage class remap used when the destination claim is created (repeatable)",
)
@click.option("--timeout", type=click.IntRange(min=10), help="Session deadline in seconds")
@click.option("--no-verify", is_flag=True, help="Skip the checksum comparison")
@click.option(
    "--report",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write a JSON transfer report to this file",
)
@pass_context
@handle_errors
def transfer(
    ctx: BridgeContext,
    source_context: str | None,
    destination_context: str | None,
    kubeconfig: str | None,
    pvc_name: str,
    pvc_namespace: str,
    endpoint: str | None,
    source_path: str | None,
    dest_path: str | None,
    storage_class_map: tuple[str, ...],
    timeout: int | None,
    no_verify: bool,
    report: Path | None,
) -> None:
    """Transfer the data of a persistent volume claim.

    The destination claim is created when missing, sized like the source
    and with its storage class remapped.

    Examples:

        kube-bridge transfer --source-context source --destination-context destination \\
            --pvc-name data --pvc-namespace shop

        kube-bridge transfer --pvc-name data:data-v2 --pvc-namespace shop:shop-staging \\
            --endpoint route --storage-class-map gp2=gp3
    """
    config = ctx.config
    source_name, destination_name = split_pair(pvc_name)
    source_namespace, destination_namespace = split_pair(pvc_namespace)

    try:
        class_map = parse_mapping_pairs(storage_class_map)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--storage-class-map") from e

    overrides: dict = {"storage_class_map": {**config.transfer.storage_class_map, **class_map}}
    if endpoint:
        overrides["endpoint"] = endpoint
    if timeout:
        overrides["timeout_seconds"] = timeout
    if no_verify:
        overrides["verify_checksum"] = False
    transfer_config = config.transfer.model_copy(update=overrides)

    source = ctx.cluster_client(source_context or config.source_context, kubeconfig)
    destination = ctx.cluster_client(destination_context or config.destination_context, kubeconfig)

    async def run_transfer() -> TransferSession:
        try:
            job = PVCTransfer(
                source,
                destination,
                ClaimRef(source_namespace, source_name),
                ClaimRef(destination_namespace, destination_name),
                config=transfer_config,
                source_path=source_path,
                dest_path=dest_path,
            )
            echo_info(
                f"Transfer session {job.session.session_id}: "
                f"{source.cluster_name} {job.session.source_claim} → "
                f"{destination.cluster_name} {job.session.destination_claim}"
            )
            return await job.run()
        finally:
            await source.close()
            await destination.close()

    session = asyncio.run(run_transfer())

    render_transfer_summary(session, console)
    if report:
        transfer_report(session).generate_json(report)

    if session.teardown_errors:
        echo_warning(
            f"{len(session.teardown_errors)} transient objects could not be removed; "
            f"delete objects labelled kube-bridge.io/session={session.session_id}"
        )

    if not session.succeeded:
        failed_stage = session.failed_stage.value if session.failed_stage else "unknown"
        echo_error(f"Transfer failed during {failed_stage}: {session.error}")
        raise click.exceptions.Exit(EXIT_TRANSFER)

    elapsed = ""
    if session.started_at and session.finished_at:
        elapsed = f" in {format_duration((session.finished_at - session.started_at).total_seconds())}"
    echo_success(f"Transferred {session.bytes_transferred:,} bytes{elapsed}")
