"""Run reports and console summaries for Kube Bridge stages."""

from kube_migration.reporting.report import (
    RunReport,
    apply_report,
    export_report,
    transfer_report,
    transform_report,
)

__all__ = [
    "RunReport",
    "export_report",
    "transform_report",
    "apply_report",
    "transfer_report",
]
