"""Tests for JSON and CSV report output."""

import csv
from datetime import datetime
from io import StringIO

import orjson
import pytest

from sfmc_de_audit.analysis.analyzer import build_report
from sfmc_de_audit.analysis.classifier import StalenessThreshold
from sfmc_de_audit.output.report_writer import (
    ReportWriter,
    export_dependencies_csv,
    export_entity_csv,
    write_report_json,
)
from sfmc_de_audit.types.dataset import BulkDataset
from sfmc_de_audit.types.models import TargetEntity

NOW = datetime(2025, 6, 1)


@pytest.fixture
def entities():
    return [
        TargetEntity(customer_key="DE_A", name="Alpha", object_id="obj-a", folder_path="Data/Orders", row_count=120),
        TargetEntity(customer_key="DE_B", name="Beta", object_id="obj-b"),
        TargetEntity(customer_key="DE_C"),
    ]


@pytest.fixture
def report(entities):
    dataset = BulkDataset(
        automations=[{
            "id": "auto-1",
            "name": "Old Sync",
            "status": "Scheduled",
            "lastRunTime": "2023-01-01T00:00:00Z",
            "note": "DE_A DE_B",
        }],
        query_activities=[{"ObjectID": f"q-{i}", "Name": f"Query {i}", "QueryText": "select * from [Beta]"}
                          for i in range(7)],
    )
    return build_report(entities, dataset, StalenessThreshold.from_days(365, now=NOW))


def read_csv(content):
    return list(csv.DictReader(StringIO(content)))


class TestDependenciesCSV:
    """Tests for the per-dependency export."""

    def test_rows(self, report):
        rows = read_csv(export_dependencies_csv(report))

        assert len(rows) == 8
        auto = next(r for r in rows if r["Dependency Type"] == "Automation")
        assert auto["Dependency Name"] == "Old Sync"
        assert auto["Dependency ID"] == "auto-1"
        assert auto["Classification"] == "safe_to_delete"
        assert auto["Recommendation"] == "Safe to Delete"
        assert auto["Reason"] == "Automation has not run in over a year"
        assert auto["Last Run Time"] == "2023-01-01T00:00:00Z"
        assert int(auto["Days Since Last Run"]) > 365
        assert auto["Affected DE Count"] == "2"
        assert auto["Affected DEs"] == "Alpha; Beta"

    def test_review_row(self, report):
        rows = read_csv(export_dependencies_csv(report))

        query = next(r for r in rows if r["Dependency ID"] == "q-0")
        assert query["Recommendation"] == "Review Required"
        assert query["Last Run Time"] == ""

    def test_without_affected_column(self, report):
        rows = read_csv(export_dependencies_csv(report, include_affected=False))

        assert "Affected DEs" not in rows[0]


class TestEntityCSV:
    """Tests for the per-entity export."""

    def test_entity_rows(self, entities, report):
        rows = {r["DE CustomerKey"]: r for r in read_csv(export_entity_csv(entities, report))}

        alpha = rows["DE_A"]
        assert alpha["DE Name"] == "Alpha"
        assert alpha["Folder Path"] == "Data/Orders"
        assert alpha["Row Count"] == "120"
        assert alpha["Total Dependencies"] == "1"
        assert alpha["Safe to Delete"] == "1"
        assert alpha["Requires Review"] == "0"
        assert alpha["Blocking Dependencies"] == ""
        assert alpha["Recommendation"] == "Safe to Delete (dependencies can be auto-deleted)"
        assert alpha["Dependency Details"] == "Automation: Old Sync"

    def test_blocking_dependencies_truncated(self, entities, report):
        rows = {r["DE CustomerKey"]: r for r in read_csv(export_entity_csv(entities, report))}

        beta = rows["DE_B"]
        assert beta["Total Dependencies"] == "8"
        assert beta["Requires Review"] == "7"
        assert beta["Recommendation"] == "Review Required - Has Blocking Dependencies"
        assert beta["Blocking Dependencies"].endswith(" (+2 more)")
        assert beta["Blocking Dependencies"].count("Query Activity:") == 5
        assert beta["Dependency Details"].count("; ") == 7

    def test_entity_without_dependencies(self, entities, report):
        rows = {r["DE CustomerKey"]: r for r in read_csv(export_entity_csv(entities, report))}

        assert rows["DE_C"]["Total Dependencies"] == "0"
        assert rows["DE_C"]["Recommendation"] == "Safe to Delete"


class TestReportWriter:
    """Tests for writing report files."""

    def test_write_report_json(self, report, tmp_path):
        path = write_report_json(report, tmp_path / "out" / "report.json")

        data = orjson.loads(path.read_bytes())
        assert data["summary"]["unique_dependencies"] == 8
        assert data["summary"]["unknown"] == 0
        assert "toolVersion" in data
        assert set(data["entity_mapping"]) == {"DE_A", "DE_B", "DE_C"}

    def test_writes_all_formats(self, entities, report, tmp_path):
        writer = ReportWriter(tmp_path, account_id="123")

        written = writer.write(report, entities)

        assert writer.output_dir.parent == tmp_path
        assert writer.output_dir.name.startswith("dependency_report_123_")
        assert set(written) == {"report", "dependencies", "data_extensions"}
        assert all(p.exists() for p in written.values())

    def test_json_only(self, entities, report, tmp_path):
        written = ReportWriter(tmp_path).write(report, entities, formats=("json",))

        assert list(written) == ["report"]

    @pytest.mark.asyncio
    async def test_write_async(self, entities, report, tmp_path):
        written = await ReportWriter(tmp_path).write_async(report, entities, formats=("csv",))

        assert set(written) == {"dependencies", "data_extensions"}
