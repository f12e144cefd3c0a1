"""Tests for the dependency scanner and match strategies."""

from datetime import datetime

import pytest

from sfmc_de_audit.analysis.classifier import StalenessThreshold, classify
from sfmc_de_audit.analysis.matching import ExactField, MatchTarget, SerializedText, TextContains, get_field
from sfmc_de_audit.analysis.scanner import DependencyScanner, scan
from sfmc_de_audit.types.dataset import BulkDataset
from sfmc_de_audit.types.models import (
    Classification,
    DependencyType,
    ReasonCode,
    TargetEntity,
)

NOW = datetime(2025, 6, 1)


@pytest.fixture
def orders_de():
    """Data Extension under audit."""
    return TargetEntity(
        customer_key="DE_KEY_ORDERS",
        name="Orders Archive",
        object_id="obj-orders",
    )


@pytest.fixture
def threshold():
    return StalenessThreshold.from_days(365, now=NOW)


class TestScenarios:
    """End-to-end scan + classify scenarios."""

    def test_entity_with_no_references(self, orders_de):
        """An entity nothing references yields no dependencies."""
        dataset = BulkDataset(
            automations=[{"id": "auto-9", "name": "Unrelated", "steps": []}],
            query_activities=[{"ObjectID": "q-9", "Name": "Other", "QueryText": "SELECT 1 FROM [Customers]"}],
            journeys=[{"id": "j-1", "name": "Welcome", "status": "Published"}],
        )
        assert scan(orders_de, dataset) == []

    def test_stale_automation_is_safe(self, orders_de, threshold):
        """An automation last run 400+ days ago is safe to delete."""
        dataset = BulkDataset(
            automations=[{
                "id": "auto-1",
                "name": "Nightly Load",
                "status": "Scheduled",
                "statusId": 6,
                "lastRunTime": "2024-04-20T10:00:00Z",
                "steps": [{"activities": [{"name": "Load", "targetDataExtensions": [{"key": "DE_KEY_ORDERS"}]}]}],
            }],
        )

        deps = scan(orders_de, dataset)

        assert len(deps) == 1
        assert deps[0].type == DependencyType.AUTOMATION
        assert deps[0].details == "Referenced in Automation"

        verdict = classify(deps[0], dataset, threshold)
        assert verdict.classification == Classification.SAFE_TO_DELETE
        assert verdict.reason_code == ReasonCode.STALE_AUTOMATION
        assert verdict.metadata["daysSinceLastRun"] >= 400
        assert verdict.can_delete is True

    def test_filter_in_recent_automation_requires_review(self, orders_de, threshold):
        """A filter used by an active, recently run automation blocks deletion."""
        dataset = BulkDataset(
            filter_activities=[{
                "filterActivityId": "flt-1",
                "name": "Orders Filter",
                "sourceObjectId": "OBJ-ORDERS",
                "destinationObjectId": "obj-other",
                "statusId": 1,
            }],
            automations=[{
                "id": "auto-2",
                "name": "Daily Segment",
                "status": "Running",
                "statusId": 3,
                "lastRunTime": "2025-05-28T08:00:00.000Z",
                "steps": [{"activities": [{"id": "act-9", "activityObjectId": "flt-1", "name": "Orders Filter"}]}],
            }],
        )

        deps = scan(orders_de, dataset)

        assert len(deps) == 1
        dep = deps[0]
        assert dep.type == DependencyType.FILTER_ACTIVITY
        assert dep.id == "flt-1"
        assert dep.details == "Source DE"
        assert dep.status == "Active"

        verdict = classify(dep, dataset, threshold)
        assert verdict.classification == Classification.REQUIRES_REVIEW
        assert verdict.reason_code == ReasonCode.FILTER_IN_ACTIVE_AUTOMATION
        assert verdict.reason == "Filter used in active automation(s): Daily Segment"

    def test_query_referencing_name_in_sql(self, orders_de, threshold):
        """A query that only names the entity in its SQL needs review."""
        dataset = BulkDataset(
            query_activities=[{
                "ObjectID": "q-1",
                "Name": "Monthly Rollup",
                "Status": "Active",
                "DataExtensionTarget": {"CustomerKey": "DE_ROLLUP", "Name": "Rollup"},
                "QueryText": "SELECT OrderId FROM [Orders Archive] WHERE Total > 0",
            }],
        )

        deps = scan(orders_de, dataset)

        assert len(deps) == 1
        assert deps[0].type == DependencyType.QUERY_ACTIVITY
        assert deps[0].details == "Referenced in SQL (by Name)"

        verdict = classify(deps[0], dataset, threshold)
        assert verdict.classification == Classification.REQUIRES_REVIEW
        assert verdict.reason_code == ReasonCode.QUERY_ACTIVITY


class TestSourceRules:
    """Tests for per-source matching rules."""

    def test_filter_source_and_destination(self, orders_de):
        """A filter reading and writing the same DE is labelled once."""
        dataset = BulkDataset(filter_activities=[{
            "filterActivityId": "flt-2",
            "name": "Self Filter",
            "sourceObjectId": "obj-orders",
            "destinationObjectId": "obj-orders",
            "statusId": 2,
        }])

        deps = scan(orders_de, dataset)

        assert deps[0].details == "Source & Destination DE"
        assert deps[0].status == "Status 2"

    def test_filter_not_matched_without_object_id(self):
        """Filters reference DEs by ObjectID only."""
        entity = TargetEntity(customer_key="obj-orders")
        dataset = BulkDataset(filter_activities=[{
            "filterActivityId": "flt-3",
            "name": "F",
            "sourceObjectId": "obj-orders",
        }])
        assert scan(entity, dataset) == []

    def test_query_target_by_key(self, orders_de):
        """Query targeting the DE by key, also referencing it in SQL."""
        dataset = BulkDataset(query_activities=[{
            "ObjectID": "q-2",
            "Name": "Build Orders",
            "DataExtensionTarget.CustomerKey": "de_key_orders",
            "QueryText": "SELECT * FROM DE_KEY_ORDERS_STAGING",
        }])

        deps = scan(orders_de, dataset)

        assert deps[0].details == "Query Target, Referenced in SQL (by Key)"
        assert deps[0].raw_data["targetDeKey"] == "de_key_orders"

    def test_import_destination(self, orders_de):
        """Imports match on destination key or ObjectID."""
        dataset = BulkDataset(import_activities=[
            {"ObjectID": "imp-1", "Name": "By Key", "DestinationObject": {"CustomerKey": "DE_KEY_ORDERS"}},
            {"ObjectID": "imp-2", "Name": "By Id", "DestinationObject": {"ObjectID": "OBJ-ORDERS"}},
            {"ObjectID": "imp-3", "Name": "Other", "DestinationObject": {"CustomerKey": "DE_OTHER"}},
        ])

        deps = scan(orders_de, dataset)

        assert [d.id for d in deps] == ["imp-1", "imp-2"]
        assert all(d.details == "Import Destination" for d in deps)

    def test_triggered_send_explicit_field_wins(self, orders_de):
        """Explicit sendable DE match takes precedence over serialized text."""
        dataset = BulkDataset(triggered_sends=[
            {
                "ObjectID": "ts-1",
                "Name": "Order Confirmation",
                "TriggeredSendStatus": "Active",
                "SendableDataExtension": {"CustomerKey": "DE_KEY_ORDERS"},
            },
            {
                "ObjectID": "ts-2",
                "Name": "Legacy",
                "Description": "Reads from DE_KEY_ORDERS",
            },
        ])

        deps = scan(orders_de, dataset)

        assert [d.details for d in deps] == ["Sendable Data Extension", "Referenced in Triggered Send"]
        assert deps[0].status == "Active"

    def test_triggered_send_as_retrieved_uses_serialized_match(self, orders_de):
        """Retrieved definitions carry no sendable DE identity, only field names."""
        dataset = BulkDataset(triggered_sends=[{
            "ObjectID": "ts-3",
            "CustomerKey": "TS_DE_KEY_ORDERS",
            "Name": "Receipt",
            "TriggeredSendStatus": "Active",
            "Email": {"ID": "101"},
            "List": {"ID": "202"},
            "SendableDataExtensionField": {"Name": "EmailAddress"},
            "SendableSubscriberField": {"Name": "_SubscriberKey"},
        }])

        deps = scan(orders_de, dataset)

        assert [(d.id, d.details) for d in deps] == [("ts-3", "Referenced in Triggered Send")]

    def test_journey_and_data_extract(self, orders_de):
        """Journeys and data extracts match anywhere in the record."""
        dataset = BulkDataset(
            journeys=[{"id": "j-1", "name": "Welcome", "status": "Published",
                       "triggers": [{"metaData": {"eventDefinitionKey": "x", "dataExtensionKey": "de_key_orders"}}]}],
            data_extracts=[{"dataExtractDefinitionId": "dx-1", "name": "Nightly Export",
                            "dataFields": [{"name": "DECustomerKey", "value": "DE_KEY_ORDERS"}]}],
        )

        deps = scan(orders_de, dataset)

        assert [(d.type, d.id) for d in deps] == [
            (DependencyType.JOURNEY, "j-1"),
            (DependencyType.DATA_EXTRACT, "dx-1"),
        ]

    def test_source_order(self, orders_de):
        """Results follow the fixed source order."""
        dataset = BulkDataset(
            data_extracts=[{"id": "dx-1", "name": "X", "key": "DE_KEY_ORDERS"}],
            automations=[{"id": "a-1", "name": "A", "note": "DE_KEY_ORDERS"}],
            filter_activities=[{"filterActivityId": "f-1", "name": "F", "sourceObjectId": "obj-orders"}],
        )

        deps = scan(orders_de, dataset)

        assert [d.type for d in deps] == [
            DependencyType.FILTER_ACTIVITY,
            DependencyType.AUTOMATION,
            DependencyType.DATA_EXTRACT,
        ]


class TestMalformedRecords:
    """Tests for records the scanner cannot use."""

    def test_malformed_records_are_skipped(self, orders_de):
        """Non-objects and anonymous matches are skipped and counted."""
        dataset = BulkDataset(
            automations=[{"steps": "DE_KEY_ORDERS"}, {"id": "a-1", "name": "Good", "x": "DE_KEY_ORDERS"}],
            journeys=["not a record"],
        )
        scanner = DependencyScanner(dataset)

        deps = scanner.scan(orders_de)

        assert [d.id for d in deps] == ["a-1"]
        assert scanner.skipped_records == 2

    def test_record_without_id_is_unknown(self, orders_de, threshold):
        """A named record without an id is kept but cannot be classified."""
        dataset = BulkDataset(automations=[{"name": "Orphan", "description": "uses DE_KEY_ORDERS"}])

        deps = scan(orders_de, dataset)

        assert deps[0].id is None
        assert deps[0].dedup_key == ("Automation", "name:Orphan")
        verdict = classify(deps[0], dataset, threshold)
        assert verdict.classification == Classification.UNKNOWN
        assert verdict.reason_code == ReasonCode.NO_METADATA


class TestMatchHelpers:
    """Tests for field access and strategies."""

    def test_get_field_flattened_and_nested(self):
        assert get_field({"A.B": 1}, "A.B") == 1
        assert get_field({"A": {"B": 2}}, "A.B") == 2
        assert get_field({"A": "x"}, "A.B") is None

    def test_exact_field_is_case_insensitive(self, orders_de):
        target = MatchTarget.from_entity(orders_de)
        strategy = ExactField(("Key",), "key", "Label")
        assert strategy.match({"Key": "De_Key_Orders"}, target, SerializedText()) == ["Label"]
        assert strategy.match({"Key": "DE_KEY_ORDERS_2"}, target, SerializedText()) == []

    def test_text_contains_reports_key_and_name(self, orders_de):
        target = MatchTarget.from_entity(orders_de)
        strategy = TextContains("QueryText", "by key", "by name")
        record = {"QueryText": "select * from de_key_orders join [ORDERS ARCHIVE]"}
        assert strategy.match(record, target, SerializedText()) == ["by key", "by name"]

    def test_serialized_text_is_cached(self):
        serialized = SerializedText()
        record = {"a": "B"}
        first = serialized(record)
        record["a"] = "C"
        assert serialized(record) == first == '{"a":"b"}'
