"""Classification engine.

Decides, per deduplicated dependency, whether it blocks deleting the
Data Extensions it references:
- Automations: never run or stale -> safe; otherwise review
- Filters: standalone or only in inactive/stale automations -> safe;
  in any active, recently run automation -> review
- Queries, imports, triggered sends, journeys, data extracts -> review
- Missing or unparseable identifying metadata -> unknown

classify() is a pure function of (record, dataset, threshold). All day
counts are taken against the threshold's reference time.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ..core.errors import InsufficientMetadataError
from ..loader.bulk_loader import find_automations_containing_activity
from ..types.dataset import BulkDataset
from ..types.models import (
    REASON_TEXT,
    Classification,
    ClassificationVerdict,
    DependencyRecord,
    DependencyType,
    ReasonCode,
)

logger = logging.getLogger(__name__)

DEFAULT_STALE_DAYS = 365

# Automation statusIds treated as not running: paused, stopped, inactive
INACTIVE_STATUS_IDS = frozenset({4, 5, 8})
INACTIVE_STATUS_WORDS = ("paused", "stopped", "inactive")

# Types that always need a human look
REVIEW_REASONS: dict[DependencyType, ReasonCode] = {
    DependencyType.QUERY_ACTIVITY: ReasonCode.QUERY_ACTIVITY,
    DependencyType.IMPORT_ACTIVITY: ReasonCode.IMPORT_ACTIVITY,
    DependencyType.TRIGGERED_SEND: ReasonCode.TRIGGERED_SEND,
    DependencyType.JOURNEY: ReasonCode.JOURNEY,
    DependencyType.DATA_EXTRACT: ReasonCode.DATA_EXTRACT,
}

MAX_BLOCKER_NAMES = 2

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


@dataclass(frozen=True)
class StalenessThreshold:
    """Cutoff before which a last run counts as stale.

    Built once per run so every verdict uses the same reference time.
    """

    cutoff: datetime
    stale_days: int
    reference_time: datetime

    @classmethod
    def from_days(cls, stale_days: int = DEFAULT_STALE_DAYS, now: Optional[datetime] = None) -> "StalenessThreshold":
        reference = _naive_utc(now) if now else datetime.now(timezone.utc).replace(tzinfo=None)
        return cls(
            cutoff=reference - timedelta(days=stale_days),
            stale_days=stale_days,
            reference_time=reference,
        )

    def is_stale(self, last_run: datetime) -> bool:
        return last_run < self.cutoff

    def days_since(self, moment: datetime) -> int:
        return (self.reference_time - moment).days


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a platform timestamp into a naive UTC datetime.

    Returns:
        None for an empty value.

    Raises:
        InsufficientMetadataError: The value is present but unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _naive_utc(value)

    text = _FRACTION_RE.sub(r"\1", str(value).strip())
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as e:
        raise InsufficientMetadataError(f"Unparseable timestamp {value!r}") from e
    return _naive_utc(parsed)


def is_inactive(automation: dict[str, Any]) -> bool:
    """Whether an automation's status marks it as paused, stopped or inactive."""
    status_id = automation.get("statusId")
    try:
        if status_id is not None and int(status_id) in INACTIVE_STATUS_IDS:
            return True
    except (TypeError, ValueError):
        pass

    status = str(automation.get("status") or "").lower()
    return any(word in status for word in INACTIVE_STATUS_WORDS)


def _verdict(
    classification: Classification,
    code: ReasonCode,
    metadata: dict[str, Any],
    reason: Optional[str] = None,
) -> ClassificationVerdict:
    return ClassificationVerdict(
        classification=classification,
        reason_code=code,
        reason=reason or REASON_TEXT[code],
        metadata=metadata,
        can_delete=classification == Classification.SAFE_TO_DELETE,
    )


def _classify_automation(
    record: DependencyRecord,
    dataset: BulkDataset,
    threshold: StalenessThreshold,
) -> ClassificationVerdict:
    auto = dataset.automations_by_id.get(record.id or "") or record.raw_data
    if not auto:
        raise InsufficientMetadataError(f"No metadata for automation {record.id}")

    metadata: dict[str, Any] = {
        "status": auto.get("status"),
        "statusId": auto.get("statusId"),
        "lastRunTime": auto.get("lastRunTime"),
        "createdDate": auto.get("createdDate"),
        "modifiedDate": auto.get("modifiedDate"),
    }

    last_run = parse_timestamp(auto.get("lastRunTime"))
    if last_run is None:
        return _verdict(Classification.SAFE_TO_DELETE, ReasonCode.NEVER_RUN, metadata)

    metadata["daysSinceLastRun"] = threshold.days_since(last_run)

    if threshold.is_stale(last_run):
        return _verdict(Classification.SAFE_TO_DELETE, ReasonCode.STALE_AUTOMATION, metadata)
    if is_inactive(auto):
        return _verdict(Classification.REQUIRES_REVIEW, ReasonCode.INACTIVE_AUTOMATION, metadata)
    return _verdict(Classification.REQUIRES_REVIEW, ReasonCode.ACTIVE_AUTOMATION, metadata)


def _classify_filter(
    record: DependencyRecord,
    dataset: BulkDataset,
    threshold: StalenessThreshold,
) -> ClassificationVerdict:
    raw = record.raw_data
    metadata: dict[str, Any] = {
        "sourceObjectId": raw.get("sourceObjectId"),
        "destinationObjectId": raw.get("destinationObjectId"),
        "customerKey": raw.get("customerKey"),
        "createdDate": raw.get("createdDate"),
        "modifiedDate": raw.get("modifiedDate"),
    }

    containing = find_automations_containing_activity(record.id or "", dataset)
    metadata["usedInAutomations"] = [
        {
            "id": auto.get("id"),
            "name": auto.get("name"),
            "status": auto.get("status"),
            "lastRunTime": auto.get("lastRunTime"),
        }
        for auto in containing
    ]

    if not containing:
        return _verdict(Classification.SAFE_TO_DELETE, ReasonCode.STANDALONE_FILTER, metadata)

    blockers = []
    for auto in containing:
        last_run = parse_timestamp(auto.get("lastRunTime"))
        dormant = is_inactive(auto) or last_run is None or threshold.is_stale(last_run)
        if not dormant:
            blockers.append(str(auto.get("name") or auto.get("id")))

    if not blockers:
        metadata["advisory"] = True
        return _verdict(Classification.SAFE_TO_DELETE, ReasonCode.FILTER_IN_STALE_AUTOMATION, metadata)

    names = ", ".join(blockers[:MAX_BLOCKER_NAMES])
    more = " +more" if len(blockers) > MAX_BLOCKER_NAMES else ""
    metadata["activeAutomations"] = blockers
    return _verdict(
        Classification.REQUIRES_REVIEW,
        ReasonCode.FILTER_IN_ACTIVE_AUTOMATION,
        metadata,
        reason=f"Filter used in active automation(s): {names}{more}",
    )


def classify(
    record: DependencyRecord,
    dataset: BulkDataset,
    threshold: StalenessThreshold,
) -> ClassificationVerdict:
    """Classify one dependency.

    Args:
        record: Deduplicated dependency.
        dataset: Bulk data the dependency was found in.
        threshold: Staleness cutoff for the run.

    Returns:
        The verdict. Never raises for missing metadata; that yields UNKNOWN.
    """
    try:
        if not record.id:
            raise InsufficientMetadataError(f"{record.type.value} {record.name!r} has no id")

        if record.type == DependencyType.AUTOMATION:
            return _classify_automation(record, dataset, threshold)
        if record.type == DependencyType.FILTER_ACTIVITY:
            return _classify_filter(record, dataset, threshold)

        return _verdict(
            Classification.REQUIRES_REVIEW,
            REVIEW_REASONS[record.type],
            dict(record.raw_data),
        )
    except InsufficientMetadataError as e:
        logger.debug(f"Classifying {record.type.value} {record.id} as unknown: {e}")
        return ClassificationVerdict(
            classification=Classification.UNKNOWN,
            reason_code=ReasonCode.NO_METADATA,
            reason=REASON_TEXT[ReasonCode.NO_METADATA],
            metadata={**record.raw_data, "error": str(e)},
            can_delete=False,
        )
