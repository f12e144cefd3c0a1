"""Type definitions for dependency analysis."""

from .dataset import BulkDataset, extract_activity_ids
from .models import (
    REASON_TEXT,
    AnalysisReport,
    CacheEntry,
    CacheInfo,
    Classification,
    ClassificationVerdict,
    ClassifiedDependency,
    DependencyRecord,
    DependencyType,
    EntityDependencyRef,
    EntityRef,
    ReasonCode,
    ReportSummary,
    TargetEntity,
    TypeCounts,
)

__all__ = [
    "BulkDataset",
    "extract_activity_ids",
    "REASON_TEXT",
    "AnalysisReport",
    "CacheEntry",
    "CacheInfo",
    "Classification",
    "ClassificationVerdict",
    "ClassifiedDependency",
    "DependencyRecord",
    "DependencyType",
    "EntityDependencyRef",
    "EntityRef",
    "ReasonCode",
    "ReportSummary",
    "TargetEntity",
    "TypeCounts",
]
