"""Report writer for dependency analysis output.

Writes an analysis to disk in a timestamped directory:
- report.json: full report (summary, buckets, entity mapping)
- dependencies.csv: one row per unique dependency
- data_extensions.csv: one row per audited Data Extension
"""

import asyncio
import csv
import logging
from datetime import datetime
from io import StringIO
from pathlib import Path
from typing import Any, Optional

from .. import __version__
from ..core.jsonutil import json_dumps
from ..types.models import AnalysisReport, Classification, ClassifiedDependency, TargetEntity

logger = logging.getLogger(__name__)

DEPENDENCY_COLUMNS = [
    ("type", "Dependency Type"),
    ("name", "Dependency Name"),
    ("id", "Dependency ID"),
    ("status", "Status"),
    ("classification", "Classification"),
    ("recommendation", "Recommendation"),
    ("reason", "Reason"),
    ("lastRunTime", "Last Run Time"),
    ("daysSinceLastRun", "Days Since Last Run"),
    ("affectedCount", "Affected DE Count"),
    ("affected", "Affected DEs"),
]

ENTITY_COLUMNS = [
    ("name", "DE Name"),
    ("customerKey", "DE CustomerKey"),
    ("folderPath", "Folder Path"),
    ("rowCount", "Row Count"),
    ("total", "Total Dependencies"),
    ("safe", "Safe to Delete"),
    ("review", "Requires Review"),
    ("blocking", "Blocking Dependencies"),
    ("recommendation", "Recommendation"),
    ("details", "Dependency Details"),
]

RECOMMENDATIONS = {
    Classification.SAFE_TO_DELETE: "Safe to Delete",
    Classification.REQUIRES_REVIEW: "Review Required",
    Classification.UNKNOWN: "Unknown - Manual Review",
}

MAX_BLOCKING_LISTED = 5
MAX_DETAILS_LISTED = 10


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    return str(value)


def _truncated(items: list[str], limit: int) -> str:
    text = "; ".join(items[:limit])
    if len(items) > limit:
        text += f" (+{len(items) - limit} more)"
    return text


def _to_csv(columns: list[tuple[str, str]], rows: list[dict[str, Any]]) -> str:
    output = StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow([header for _, header in columns])
    for row in rows:
        writer.writerow([_cell(row.get(field)) for field, _ in columns])
    return output.getvalue()


def export_dependencies_csv(report: AnalysisReport, include_affected: bool = True) -> str:
    """One row per unique dependency.

    Args:
        report: Analysis report.
        include_affected: Include the list of affected Data Extensions.

    Returns:
        CSV content.
    """
    columns = DEPENDENCY_COLUMNS if include_affected else DEPENDENCY_COLUMNS[:-1]
    rows = []
    for dep in report.all:
        metadata = dep.verdict.metadata
        rows.append({
            "type": dep.type.value,
            "name": dep.name,
            "id": dep.id,
            "status": dep.status,
            "classification": dep.classification.value,
            "recommendation": RECOMMENDATIONS[dep.classification],
            "reason": dep.verdict.reason,
            "lastRunTime": metadata.get("lastRunTime"),
            "daysSinceLastRun": metadata.get("daysSinceLastRun"),
            "affectedCount": len(dep.affected_entities),
            "affected": "; ".join(e.name or e.customer_key for e in dep.affected_entities),
        })
    return _to_csv(columns, rows)


def export_entity_csv(entities: list[TargetEntity], report: AnalysisReport) -> str:
    """One row per Data Extension with its dependency summary.

    Args:
        entities: The audited Data Extensions, in report order.
        report: Analysis report for those entities.

    Returns:
        CSV content.
    """
    by_key: dict[tuple[str, str], ClassifiedDependency] = {dep.dedup_key: dep for dep in report.all}
    rows = []

    for entity in entities:
        refs = report.entity_mapping.get(entity.customer_key, [])
        safe = 0
        review = 0
        blocking: list[str] = []

        for ref in refs:
            key = (ref.type.value, ref.id) if ref.id else (ref.type.value, f"name:{ref.name or ''}")
            dep = by_key.get(key)
            if dep is None:
                continue
            if dep.classification == Classification.SAFE_TO_DELETE:
                safe += 1
            else:
                review += 1
                blocking.append(f"{dep.type.value}: {dep.name}")

        if review > 0:
            recommendation = "Review Required - Has Blocking Dependencies"
        elif safe > 0:
            recommendation = "Safe to Delete (dependencies can be auto-deleted)"
        else:
            recommendation = "Safe to Delete"

        rows.append({
            "name": entity.name,
            "customerKey": entity.customer_key,
            "folderPath": entity.folder_path,
            "rowCount": entity.row_count,
            "total": len(refs),
            "safe": safe,
            "review": review,
            "blocking": _truncated(blocking, MAX_BLOCKING_LISTED),
            "recommendation": recommendation,
            "details": _truncated([f"{r.type.value}: {r.name}" for r in refs], MAX_DETAILS_LISTED),
        })

    return _to_csv(ENTITY_COLUMNS, rows)


def report_to_dict(report: AnalysisReport) -> dict[str, Any]:
    """JSON-ready report with a tool version header."""
    data = report.model_dump(mode="json")
    data["toolVersion"] = __version__
    return data


def write_report_json(report: AnalysisReport, path: Path) -> Path:
    """Write the full report as formatted JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(json_dumps(report_to_dict(report)))
    return path


class ReportWriter:
    """Writes analysis reports to a timestamped output directory."""

    def __init__(self, output_dir: Path, account_id: Optional[str] = None):
        """Initialize the report writer.

        Args:
            output_dir: Base output directory.
            account_id: SFMC account/MID, used in the directory name.
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        if account_id:
            self._output_dir = Path(output_dir) / f"dependency_report_{account_id}_{timestamp}"
        else:
            self._output_dir = Path(output_dir) / f"dependency_report_{timestamp}"

    @property
    def output_dir(self) -> Path:
        """Get the output directory path."""
        return self._output_dir

    def write(
        self,
        report: AnalysisReport,
        entities: list[TargetEntity],
        formats: tuple[str, ...] = ("json", "csv"),
    ) -> dict[str, Path]:
        """Write the requested formats.

        Returns:
            Mapping of file label to written path.
        """
        self._output_dir.mkdir(parents=True, exist_ok=True)
        written: dict[str, Path] = {}

        if "json" in formats:
            written["report"] = write_report_json(report, self._output_dir / "report.json")

        if "csv" in formats:
            deps_path = self._output_dir / "dependencies.csv"
            deps_path.write_text(export_dependencies_csv(report), encoding="utf-8")
            written["dependencies"] = deps_path

            entity_path = self._output_dir / "data_extensions.csv"
            entity_path.write_text(export_entity_csv(entities, report), encoding="utf-8")
            written["data_extensions"] = entity_path

        logger.info(f"Wrote dependency report to {self._output_dir}")
        return written

    async def write_async(
        self,
        report: AnalysisReport,
        entities: list[TargetEntity],
        formats: tuple[str, ...] = ("json", "csv"),
    ) -> dict[str, Path]:
        """Write in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self.write(report, entities, formats))
