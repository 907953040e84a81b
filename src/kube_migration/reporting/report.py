"""Run reports.

JSON reports are written for every stage (transform always writes
``report.json`` into its tree; export, apply and transfer reports are
optional) and summaries are rendered as Rich tables on the console.
"""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table

from kube_migration import __version__
from kube_migration.migration.manifest import write_atomic
from kube_migration.migration.models import ApplyAction, ApplyResult, ExportResult
from kube_migration.migration.transfer.session import TransferSession
from kube_migration.migration.transformer import TransformReport
from kube_migration.utils.logging import get_logger

logger = get_logger(__name__)

ACTION_STYLES = {
    ApplyAction.CREATED: "green",
    ApplyAction.UPDATED: "cyan",
    ApplyAction.UNCHANGED: "dim",
    ApplyAction.FAILED: "red",
    ApplyAction.SKIPPED: "yellow",
}


class RunReport:
    """JSON report of one stage run."""

    def __init__(self, stage: str, summary: dict[str, Any], details: dict[str, Any] | None = None):
        """Initialize report.

        Args:
            stage: Pipeline stage (export, transform, apply, transfer)
            summary: Headline counts
            details: Stage-specific body
        """
        self.stage = stage
        self.summary = summary
        self.details = details or {}
        self.generated_at = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_version": "1.0",
            "tool_version": __version__,
            "stage": self.stage,
            "generated_at": self.generated_at.isoformat(),
            "summary": self.summary,
            **self.details,
        }

    def generate_json(self, output_path: str | Path | None = None) -> str:
        """Render the report and optionally save it.

        Args:
            output_path: Optional path to save report

        Returns:
            JSON report as string
        """
        json_str = json.dumps(self.to_dict(), indent=2, default=str)
        if output_path:
            write_atomic(Path(output_path), json_str + "\n")
            logger.info("json_report_saved", stage=self.stage, path=str(output_path))
        return json_str


def export_report(result: ExportResult, max_failure_ratio: float) -> RunReport:
    return RunReport(
        "export",
        {
            "namespace": result.namespace,
            "kinds_listed": result.kinds_listed,
            "exported": len(result.exported),
            "failed": len(result.failures),
            "succeeded": result.succeeded(max_failure_ratio),
        },
        {
            "kinds": result.counts_by_kind(),
            "failed_groups": result.failed_groups,
            "failures": [
                {"kind": u.descriptor.qualified_kind, "name": u.name, "reason": u.reason}
                for u in result.failures
            ],
        },
    )


def transform_report(report: TransformReport, max_failure_ratio: float = 1.0) -> RunReport:
    body = report.to_dict()
    summary = body.pop("summary")
    summary["succeeded"] = report.succeeded(max_failure_ratio)
    return RunReport("transform", summary, body)


def apply_report(result: ApplyResult) -> RunReport:
    return RunReport(
        "apply",
        {"dry_run": result.dry_run, **result.summary()},
        {"resources": [item.to_dict() for item in result.items]},
    )


def transfer_report(session: TransferSession) -> RunReport:
    return RunReport(
        "transfer",
        {"state": session.state.value, "bytes_transferred": session.bytes_transferred},
        {"session": session.to_dict()},
    )


def render_export_summary(result: ExportResult, console: Console) -> None:
    table = Table(title=f"Export: {result.namespace}")
    table.add_column("Kind")
    table.add_column("Exported", justify="right")
    table.add_column("Failed", justify="right")
    for kind, counts in result.counts_by_kind().items():
        failed = counts["failed"]
        table.add_row(kind, str(counts["exported"]), f"[red]{failed}[/red]" if failed else "0")
    console.print(table)

    if result.failed_groups:
        groups = Table(title="Undiscoverable API groups")
        groups.add_column("Group version")
        groups.add_column("Error")
        for group_version, error in result.failed_groups.items():
            groups.add_row(group_version, error)
        console.print(groups)


def render_transform_summary(report: TransformReport, console: Console) -> None:
    table = Table(title="Transform")
    table.add_column("Resources", justify="right")
    table.add_column("Transformed", justify="right")
    table.add_column("Whiteouts", justify="right")
    table.add_column("Errors", justify="right")
    table.add_row(
        str(len(report.outcomes)),
        str(report.transformed),
        str(report.whiteouts),
        f"[red]{report.errors}[/red]" if report.errors else "0",
    )
    console.print(table)

    failed = [o for o in report.outcomes if o.failed]
    if failed:
        errors = Table(title="Plugin errors")
        errors.add_column("Resource")
        errors.add_column("Plugin")
        errors.add_column("Error")
        for outcome in failed:
            for error in outcome.errors:
                errors.add_row(outcome.path, error["plugin"] or "-", error["error"])
        console.print(errors)


def render_apply_summary(result: ApplyResult, console: Console, verbose: bool = False) -> None:
    title = "Apply (dry run)" if result.dry_run else "Apply"
    table = Table(title=title)
    table.add_column("Tier", justify="right")
    table.add_column("Kind")
    table.add_column("Namespace")
    table.add_column("Name")
    table.add_column("Action")
    table.add_column("Detail")
    for item in result.items:
        if not verbose and item.action == ApplyAction.UNCHANGED:
            continue
        style = ACTION_STYLES[item.action]
        detail = item.error or ", ".join(item.diff_paths[:3])
        table.add_row(
            str(item.tier),
            item.kind,
            item.namespace or "-",
            item.name,
            f"[{style}]{item.action.value}[/{style}]",
            detail,
        )
    console.print(table)
    console.print(
        "  ".join(f"{action}: {count}" for action, count in result.summary().items())
    )


def render_transfer_summary(session: TransferSession, console: Console) -> None:
    table = Table(title=f"Transfer session {session.session_id}", show_header=False)
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("State", session.state.value)
    table.add_row("Source", f"{session.source_cluster} {session.source_claim}")
    table.add_row("Destination", f"{session.destination_cluster} {session.destination_claim}")
    table.add_row("Endpoint", f"{session.endpoint} {session.endpoint_address or ''}".strip())
    table.add_row("Bytes transferred", f"{session.bytes_transferred:,}")
    if session.source_checksum:
        table.add_row("Checksum", session.source_checksum)
    if session.error:
        table.add_row("Error", f"[red]{session.error}[/red]")
    for error in session.teardown_errors:
        table.add_row("Teardown", f"[yellow]{error}[/yellow]")
    console.print(table)
