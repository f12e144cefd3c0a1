"""Dependency, classification and report models."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class DependencyType(str, Enum):
    """Kinds of platform objects that can depend on a Data Extension."""

    AUTOMATION = "Automation"
    FILTER_ACTIVITY = "Filter Activity"
    QUERY_ACTIVITY = "Query Activity"
    IMPORT_ACTIVITY = "Import Activity"
    TRIGGERED_SEND = "Triggered Send"
    JOURNEY = "Journey"
    DATA_EXTRACT = "Data Extract"


class Classification(str, Enum):
    """Deletion verdict for a dependency."""

    SAFE_TO_DELETE = "safe_to_delete"
    REQUIRES_REVIEW = "requires_review"
    UNKNOWN = "unknown"


class ReasonCode(str, Enum):
    """Machine-readable reason behind a classification."""

    NEVER_RUN = "never_run"
    STALE_AUTOMATION = "stale_automation"
    INACTIVE_AUTOMATION = "inactive_automation"
    ACTIVE_AUTOMATION = "active_automation"
    STANDALONE_FILTER = "standalone_filter"
    FILTER_IN_STALE_AUTOMATION = "filter_in_stale_automation"
    FILTER_IN_ACTIVE_AUTOMATION = "filter_in_active_automation"
    QUERY_ACTIVITY = "query_activity"
    IMPORT_ACTIVITY = "import_activity"
    TRIGGERED_SEND = "triggered_send"
    JOURNEY = "journey"
    DATA_EXTRACT = "data_extract"
    NO_METADATA = "no_metadata"


REASON_TEXT: dict[ReasonCode, str] = {
    ReasonCode.NEVER_RUN: "Automation has never been run",
    ReasonCode.STALE_AUTOMATION: "Automation has not run in over a year",
    ReasonCode.INACTIVE_AUTOMATION: "Automation is inactive/paused",
    ReasonCode.ACTIVE_AUTOMATION: "Automation is active and recently used",
    ReasonCode.STANDALONE_FILTER: "Filter is not used in any automation",
    ReasonCode.FILTER_IN_STALE_AUTOMATION: "Filter only used in stale automations",
    ReasonCode.FILTER_IN_ACTIVE_AUTOMATION: "Filter is used in an active automation",
    ReasonCode.QUERY_ACTIVITY: "Query Activity requires manual review",
    ReasonCode.IMPORT_ACTIVITY: "Import Activity requires manual review",
    ReasonCode.TRIGGERED_SEND: "Triggered Send requires manual review",
    ReasonCode.JOURNEY: "Journey requires manual review",
    ReasonCode.DATA_EXTRACT: "Data Extract requires manual review",
    ReasonCode.NO_METADATA: "Could not retrieve metadata to assess",
}


class EntityRef(BaseModel):
    """Reference to a Data Extension affected by a dependency."""

    customer_key: str
    name: Optional[str] = None
    object_id: Optional[str] = None


class TargetEntity(BaseModel):
    """A Data Extension under audit."""

    customer_key: str = Field(min_length=1, description="Data Extension CustomerKey")
    name: Optional[str] = Field(default=None)
    object_id: Optional[str] = Field(default=None, description="Data Extension ObjectID")
    folder_path: Optional[str] = Field(default=None, description="Passthrough for reports")
    row_count: Optional[int] = Field(default=None, description="Passthrough for reports")

    def ref(self) -> EntityRef:
        return EntityRef(customer_key=self.customer_key, name=self.name, object_id=self.object_id)

    @property
    def label(self) -> str:
        return self.name or self.customer_key


class DependencyRecord(BaseModel):
    """A platform object found to reference one or more Data Extensions."""

    type: DependencyType
    id: Optional[str] = Field(default=None, description="Record identifier within its source")
    name: Optional[str] = None
    status: Optional[str] = None
    details: str = Field(default="", description="How the record matched")
    raw_data: dict[str, Any] = Field(default_factory=dict)
    affected_entities: list[EntityRef] = Field(default_factory=list)

    @property
    def dedup_key(self) -> tuple[str, str]:
        """Identity used to merge records across entities.

        Records without an id fall back to their name so that two different
        unidentified records are not merged together.
        """
        if self.id:
            return self.type.value, self.id
        return self.type.value, f"name:{self.name or ''}"


class ClassificationVerdict(BaseModel):
    """Result of classifying one dependency."""

    classification: Classification
    reason_code: ReasonCode
    reason: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    can_delete: bool = False


class ClassifiedDependency(DependencyRecord):
    """A deduplicated dependency with its verdict attached."""

    verdict: ClassificationVerdict

    @property
    def classification(self) -> Classification:
        return self.verdict.classification


class TypeCounts(BaseModel):
    """Per-type classification counts."""

    total: int = 0
    safe_to_delete: int = 0
    requires_review: int = 0
    unknown: int = 0


class ReportSummary(BaseModel):
    """Headline counts for an analysis run."""

    total_entities: int = 0
    total_raw_dependencies: int = 0
    unique_dependencies: int = 0
    safe_to_delete: int = 0
    requires_review: int = 0
    unknown: int = 0
    stale_days: int = 365
    generated_at: Optional[datetime] = None
    by_type: dict[str, TypeCounts] = Field(default_factory=dict)


class EntityDependencyRef(BaseModel):
    """Compact dependency reference used in the entity mapping."""

    type: DependencyType
    id: Optional[str] = None
    name: Optional[str] = None


class AnalysisReport(BaseModel):
    """Complete output of a dependency analysis run."""

    summary: ReportSummary
    safe_to_delete: list[ClassifiedDependency] = Field(default_factory=list)
    requires_review: list[ClassifiedDependency] = Field(default_factory=list)
    unknown: list[ClassifiedDependency] = Field(default_factory=list)
    all: list[ClassifiedDependency] = Field(default_factory=list)
    entity_mapping: dict[str, list[EntityDependencyRef]] = Field(
        default_factory=dict,
        description="Entity CustomerKey to the dependencies that reference it",
    )
    data_load_summary: dict[str, Any] = Field(default_factory=dict)


class CacheEntry(BaseModel):
    """A persisted cache payload with its metadata."""

    cache_type: str
    account_id: str
    cached_at: datetime
    data: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CacheInfo(BaseModel):
    """Status of one cache file."""

    exists: bool
    file_path: str
    file_size: Optional[int] = None
    cache_type: Optional[str] = None
    account_id: Optional[str] = None
    cached_at: Optional[str] = None
    age_ms: Optional[int] = None
    age_string: Optional[str] = None
    item_count: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
