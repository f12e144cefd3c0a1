"""Report output: JSON and CSV exports."""

from .report_writer import (
    ReportWriter,
    export_dependencies_csv,
    export_entity_csv,
    write_report_json,
)

__all__ = [
    "ReportWriter",
    "export_dependencies_csv",
    "export_entity_csv",
    "write_report_json",
]
