"""In-memory snapshot of the seven metadata collections.

The dataset is built once per load and treated as read-only afterwards.
Lookup indices are derived in __post_init__, so a dataset restored from the
persisted cache carries the same indices as a freshly fetched one.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

# Collection attribute name -> persisted cache key
COLLECTION_KEYS: dict[str, str] = {
    "automations": "automations",
    "filter_activities": "filterActivities",
    "query_activities": "queryActivities",
    "import_activities": "importActivities",
    "triggered_sends": "triggeredSends",
    "journeys": "journeys",
    "data_extracts": "dataExtracts",
}


def extract_activity_ids(steps: Optional[list[dict[str, Any]]]) -> list[str]:
    """Flatten the activity ids referenced by an automation's steps.

    Both ``activityObjectId`` (the underlying definition) and ``id`` (the
    step activity) are collected.
    """
    ids: list[str] = []
    if not isinstance(steps, list):
        return ids

    for step in steps:
        if not isinstance(step, dict):
            continue
        for activity in step.get("activities") or []:
            if not isinstance(activity, dict):
                continue
            if activity.get("activityObjectId"):
                ids.append(str(activity["activityObjectId"]))
            if activity.get("id"):
                ids.append(str(activity["id"]))
    return ids


def filter_id(record: dict[str, Any]) -> Optional[str]:
    """Identifier of a filter activity record."""
    value = record.get("filterActivityId") or record.get("id")
    return str(value) if value else None


@dataclass
class BulkDataset:
    """All metadata needed to scan and classify dependencies."""

    automations: list[dict[str, Any]] = field(default_factory=list)
    filter_activities: list[dict[str, Any]] = field(default_factory=list)
    query_activities: list[dict[str, Any]] = field(default_factory=list)
    import_activities: list[dict[str, Any]] = field(default_factory=list)
    triggered_sends: list[dict[str, Any]] = field(default_factory=list)
    journeys: list[dict[str, Any]] = field(default_factory=list)
    data_extracts: list[dict[str, Any]] = field(default_factory=list)
    loaded_at: datetime = field(default_factory=datetime.now)

    # Derived indices
    automations_by_id: dict[str, dict[str, Any]] = field(init=False, repr=False)
    filters_by_id: dict[str, dict[str, Any]] = field(init=False, repr=False)
    activity_ids: dict[str, list[str]] = field(init=False, repr=False)

    def __post_init__(self):
        self.automations_by_id = {}
        self.activity_ids = {}
        for auto in self.automations:
            auto_id = auto.get("id")
            if not auto_id:
                continue
            self.automations_by_id[str(auto_id)] = auto
            ids = auto.get("activityIds")
            if not isinstance(ids, list):
                ids = extract_activity_ids(auto.get("steps"))
            self.activity_ids[str(auto_id)] = [str(i) for i in ids]

        self.filters_by_id = {}
        for record in self.filter_activities:
            fid = filter_id(record)
            if fid:
                self.filters_by_id[fid] = record

    def counts(self) -> dict[str, int]:
        """Item count per collection, keyed by persisted name."""
        return {key: len(getattr(self, attr)) for attr, key in COLLECTION_KEYS.items()}

    def summary(self) -> dict[str, Any]:
        """Collection counts plus load time."""
        result: dict[str, Any] = dict(self.counts())
        result["loadedAt"] = self.loaded_at.isoformat()
        return result

    def to_cache_payload(self) -> dict[str, Any]:
        """JSON-ready form for the persisted cache (indices omitted)."""
        payload: dict[str, Any] = {
            key: getattr(self, attr) for attr, key in COLLECTION_KEYS.items()
        }
        payload["loadedAt"] = self.loaded_at.isoformat()
        return payload

    @classmethod
    def from_cache_payload(cls, payload: dict[str, Any]) -> "BulkDataset":
        """Rebuild a dataset, indices included, from a cached payload."""
        collections = {
            attr: list(payload.get(key) or []) for attr, key in COLLECTION_KEYS.items()
        }
        loaded_at = datetime.now()
        raw_loaded_at = payload.get("loadedAt")
        if isinstance(raw_loaded_at, str):
            try:
                loaded_at = datetime.fromisoformat(raw_loaded_at.replace("Z", "+00:00"))
            except ValueError:
                pass
        return cls(loaded_at=loaded_at, **collections)
