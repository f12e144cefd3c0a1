"""Match strategies and per-source matching rules.

Each metadata source is scanned with a tuple of strategies:
- ExactField: case-insensitive equality of an entity attribute against
  explicit record fields
- TextContains: case-insensitive substring of the entity key or name inside
  a text body (query SQL)
- SerializedContains: case-insensitive substring of the entity key anywhere
  in the record's JSON form
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional

import orjson

from ..types.models import DependencyType, TargetEntity


@dataclass(frozen=True)
class MatchTarget:
    """Lower-cased identifiers of the entity being scanned."""

    key: str
    name: Optional[str]
    object_id: Optional[str]

    @classmethod
    def from_entity(cls, entity: TargetEntity) -> "MatchTarget":
        return cls(
            key=entity.customer_key.lower(),
            name=entity.name.lower() if entity.name else None,
            object_id=entity.object_id.lower() if entity.object_id else None,
        )

    def attribute(self, attribute: str) -> Optional[str]:
        return getattr(self, attribute)


def get_field(record: dict[str, Any], path: str) -> Any:
    """Read a dotted field, flattened (``"A.B"`` key) or nested.

    SOAP records may carry either shape depending on how they were parsed.
    """
    if path in record:
        return record[path]

    value: Any = record
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class SerializedText:
    """Lazily computed, lower-cased JSON form of records.

    One instance is shared across all entities of a scan so each record is
    serialized at most once.
    """

    def __init__(self):
        self._cache: dict[int, str] = {}

    def __call__(self, record: dict[str, Any]) -> str:
        key = id(record)
        text = self._cache.get(key)
        if text is None:
            text = orjson.dumps(record, default=str).decode("utf-8").lower()
            self._cache[key] = text
        return text


class MatchStrategy:
    """Base class for a way of deciding a record references an entity."""

    def match(self, record: dict[str, Any], target: MatchTarget, serialized: SerializedText) -> list[str]:
        """Return the detail labels produced by this strategy, empty if no match."""
        raise NotImplementedError


@dataclass(frozen=True)
class ExactField(MatchStrategy):
    """Equality of one entity attribute against any of several record fields."""

    fields: tuple[str, ...]
    attribute: str  # "key", "name" or "object_id"
    label: str

    def match(self, record, target, serialized):
        wanted = target.attribute(self.attribute)
        if not wanted:
            return []
        for path in self.fields:
            value = get_field(record, path)
            if value is not None and str(value).lower() == wanted:
                return [self.label]
        return []


@dataclass(frozen=True)
class TextContains(MatchStrategy):
    """Substring search of the entity key and name within a text field."""

    field: str
    by_key_label: str
    by_name_label: str

    def match(self, record, target, serialized):
        text = get_field(record, self.field)
        if not isinstance(text, str) or not text:
            return []

        lowered = text.lower()
        labels = []
        if target.key in lowered:
            labels.append(self.by_key_label)
        if target.name and target.name in lowered:
            labels.append(self.by_name_label)
        return labels


@dataclass(frozen=True)
class SerializedContains(MatchStrategy):
    """Substring search of the entity key within the whole record."""

    label: str

    def match(self, record, target, serialized):
        if target.key in serialized(record):
            return [self.label]
        return []


def join_unique(labels: list[str]) -> str:
    """Join labels with ", ", dropping repeats but keeping order."""
    seen: list[str] = []
    for label in labels:
        if label not in seen:
            seen.append(label)
    return ", ".join(seen)


def combine_filter_labels(labels: list[str]) -> str:
    if "Source DE" in labels and "Destination DE" in labels:
        return "Source & Destination DE"
    return join_unique(labels)


def _filter_status(record: dict[str, Any]) -> Optional[str]:
    status_id = record.get("statusId")
    if status_id is None:
        return record.get("status")
    return "Active" if status_id == 1 else f"Status {status_id}"


def _subset(record: dict[str, Any], mapping: dict[str, str]) -> dict[str, Any]:
    return {out: get_field(record, src) for out, src in mapping.items()}


@dataclass(frozen=True)
class RecordShape:
    """How to pull identity and report fields out of one source's records."""

    id_fields: tuple[str, ...]
    name_field: str
    status: Callable[[dict[str, Any]], Optional[str]]
    raw_data: Callable[[dict[str, Any]], dict[str, Any]]

    def record_id(self, record: dict[str, Any]) -> Optional[str]:
        for path in self.id_fields:
            value = get_field(record, path)
            if value:
                return str(value)
        return None


@dataclass(frozen=True)
class SourceRule:
    """Matching rule for one metadata collection.

    With ``first_match_only`` the strategies are tried in order and the first
    that matches decides the details; otherwise all labels are collected.
    """

    dependency_type: DependencyType
    collection: str
    strategies: tuple[MatchStrategy, ...]
    shape: RecordShape
    combine: Callable[[list[str]], str] = join_unique
    first_match_only: bool = False

    def details_for(
        self,
        record: dict[str, Any],
        target: MatchTarget,
        serialized: SerializedText,
    ) -> Optional[str]:
        labels: list[str] = []
        for strategy in self.strategies:
            found = strategy.match(record, target, serialized)
            if found and self.first_match_only:
                return self.combine(found)
            labels.extend(found)
        return self.combine(labels) if labels else None


SOURCE_RULES: tuple[SourceRule, ...] = (
    SourceRule(
        dependency_type=DependencyType.FILTER_ACTIVITY,
        collection="filter_activities",
        strategies=(
            ExactField(("sourceObjectId",), "object_id", "Source DE"),
            ExactField(("destinationObjectId",), "object_id", "Destination DE"),
        ),
        shape=RecordShape(
            id_fields=("filterActivityId", "id"),
            name_field="name",
            status=_filter_status,
            raw_data=lambda r: _subset(r, {
                "filterActivityId": "filterActivityId",
                "sourceObjectId": "sourceObjectId",
                "destinationObjectId": "destinationObjectId",
                "customerKey": "customerKey",
                "createdDate": "createdDate",
                "modifiedDate": "modifiedDate",
            }),
        ),
        combine=combine_filter_labels,
    ),
    SourceRule(
        dependency_type=DependencyType.QUERY_ACTIVITY,
        collection="query_activities",
        strategies=(
            ExactField(("DataExtensionTarget.CustomerKey", "DataExtensionTarget.Name"), "key", "Query Target"),
            ExactField(("DataExtensionTarget.Name",), "name", "Query Target"),
            TextContains("QueryText", "Referenced in SQL (by Key)", "Referenced in SQL (by Name)"),
        ),
        shape=RecordShape(
            id_fields=("ObjectID",),
            name_field="Name",
            status=lambda r: r.get("Status"),
            raw_data=lambda r: _subset(r, {
                "objectId": "ObjectID",
                "customerKey": "CustomerKey",
                "targetDeKey": "DataExtensionTarget.CustomerKey",
                "createdDate": "CreatedDate",
                "modifiedDate": "ModifiedDate",
            }),
        ),
    ),
    SourceRule(
        dependency_type=DependencyType.IMPORT_ACTIVITY,
        collection="import_activities",
        strategies=(
            ExactField(("DestinationObject.CustomerKey",), "key", "Import Destination"),
            ExactField(("DestinationObject.ObjectID",), "object_id", "Import Destination"),
        ),
        shape=RecordShape(
            id_fields=("ObjectID",),
            name_field="Name",
            status=lambda r: r.get("Status"),
            raw_data=lambda r: _subset(r, {
                "objectId": "ObjectID",
                "customerKey": "CustomerKey",
                "createdDate": "CreatedDate",
                "modifiedDate": "ModifiedDate",
            }),
        ),
    ),
    SourceRule(
        dependency_type=DependencyType.TRIGGERED_SEND,
        collection="triggered_sends",
        # The Retrieve returns no sendable DE identity, so the exact fields only
        # fire on records enriched upstream; retrieved ones hit the serialized rule.
        strategies=(
            ExactField(
                ("SendableDataExtension.CustomerKey", "DataExtension.CustomerKey"),
                "key",
                "Sendable Data Extension",
            ),
            ExactField(
                ("SendableDataExtension.ObjectID", "DataExtension.ObjectID"),
                "object_id",
                "Sendable Data Extension",
            ),
            SerializedContains("Referenced in Triggered Send"),
        ),
        shape=RecordShape(
            id_fields=("ObjectID",),
            name_field="Name",
            status=lambda r: r.get("TriggeredSendStatus"),
            raw_data=lambda r: _subset(r, {
                "objectId": "ObjectID",
                "customerKey": "CustomerKey",
                "status": "TriggeredSendStatus",
            }),
        ),
        first_match_only=True,
    ),
    SourceRule(
        dependency_type=DependencyType.AUTOMATION,
        collection="automations",
        strategies=(SerializedContains("Referenced in Automation"),),
        shape=RecordShape(
            id_fields=("id",),
            name_field="name",
            status=lambda r: r.get("status"),
            raw_data=lambda r: _subset(r, {
                "id": "id",
                "key": "key",
                "status": "status",
                "statusId": "statusId",
                "lastRunTime": "lastRunTime",
                "createdDate": "createdDate",
                "modifiedDate": "modifiedDate",
            }),
        ),
    ),
    SourceRule(
        dependency_type=DependencyType.JOURNEY,
        collection="journeys",
        strategies=(SerializedContains("Referenced in Journey"),),
        shape=RecordShape(
            id_fields=("id",),
            name_field="name",
            status=lambda r: r.get("status"),
            raw_data=lambda r: _subset(r, {
                "id": "id",
                "key": "key",
                "status": "status",
                "version": "version",
            }),
        ),
    ),
    SourceRule(
        dependency_type=DependencyType.DATA_EXTRACT,
        collection="data_extracts",
        strategies=(SerializedContains("Referenced in Data Extract"),),
        shape=RecordShape(
            id_fields=("dataExtractDefinitionId", "id"),
            name_field="name",
            status=lambda r: r.get("status"),
            raw_data=lambda r: dict(r),
        ),
    ),
)
