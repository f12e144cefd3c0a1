"""Report aggregator.

Runs a full analysis over a list of Data Extensions:
1. Bulk load all metadata once
2. Scan each entity for dependencies
3. Merge dependencies by (type, id), collecting affected entities
4. Classify each unique dependency once
5. Build summary, classification buckets and entity mapping
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..loader.bulk_loader import BulkDataLoader, LoadOptions, ProgressCallback
from ..types.dataset import BulkDataset
from ..types.models import (
    AnalysisReport,
    Classification,
    ClassifiedDependency,
    DependencyRecord,
    EntityDependencyRef,
    ReportSummary,
    TargetEntity,
    TypeCounts,
)
from .classifier import DEFAULT_STALE_DAYS, StalenessThreshold, classify
from .scanner import DependencyScanner

logger = logging.getLogger(__name__)


@dataclass
class AnalysisOptions:
    """Options for an analysis run."""

    stale_days: int = DEFAULT_STALE_DAYS
    force_refresh: bool = False
    include_automation_details: bool = True
    include_query_text: bool = True
    on_progress: Optional[ProgressCallback] = None
    now: Optional[datetime] = None  # Reference time override, mainly for tests


def _progress_fn(callback: Optional[ProgressCallback]) -> ProgressCallback:
    def progress(stage: str, current: int, total: int, message: str) -> None:
        if callback:
            callback(stage, current, total, message)
        logger.debug(f"[{stage}] {current}/{total}: {message}")

    return progress


def build_report(
    entities: list[TargetEntity],
    dataset: BulkDataset,
    threshold: StalenessThreshold,
    on_progress: Optional[ProgressCallback] = None,
) -> AnalysisReport:
    """Scan, merge and classify against an already loaded dataset.

    Args:
        entities: Data Extensions to audit.
        dataset: Loaded bulk data.
        threshold: Staleness cutoff for the run.
        on_progress: Optional (stage, current, total, message) callback.

    Returns:
        The complete analysis report.
    """
    progress = _progress_fn(on_progress)
    scanner = DependencyScanner(dataset)

    merged: dict[tuple[str, str], DependencyRecord] = {}
    entity_mapping: dict[str, list[EntityDependencyRef]] = {}
    total_raw = 0

    for index, entity in enumerate(entities, start=1):
        progress("scanning", index, len(entities), f"Scanning {entity.label}")
        refs = entity_mapping.setdefault(entity.customer_key, [])

        for dep in scanner.scan(entity):
            total_raw += 1
            refs.append(EntityDependencyRef(type=dep.type, id=dep.id, name=dep.name))

            entry = merged.get(dep.dedup_key)
            if entry is None:
                entry = dep
                merged[dep.dedup_key] = entry
            if not any(e.customer_key == entity.customer_key for e in entry.affected_entities):
                entry.affected_entities.append(entity.ref())

    if scanner.skipped_records:
        logger.warning(f"Skipped {scanner.skipped_records} malformed metadata record(s) while scanning")

    unique = list(merged.values())
    classified: list[ClassifiedDependency] = []
    for index, dep in enumerate(unique, start=1):
        progress("classifying", index, len(unique), f"Classifying {dep.name}")
        verdict = classify(dep, dataset, threshold)
        classified.append(ClassifiedDependency(**dep.model_dump(), verdict=verdict))

    buckets: dict[Classification, list[ClassifiedDependency]] = {c: [] for c in Classification}
    by_type: dict[str, TypeCounts] = {}
    for dep in classified:
        buckets[dep.classification].append(dep)
        counts = by_type.setdefault(dep.type.value, TypeCounts())
        counts.total += 1
        setattr(counts, dep.classification.value, getattr(counts, dep.classification.value) + 1)

    summary = ReportSummary(
        total_entities=len(entities),
        total_raw_dependencies=total_raw,
        unique_dependencies=len(classified),
        safe_to_delete=len(buckets[Classification.SAFE_TO_DELETE]),
        requires_review=len(buckets[Classification.REQUIRES_REVIEW]),
        unknown=len(buckets[Classification.UNKNOWN]),
        stale_days=threshold.stale_days,
        generated_at=threshold.reference_time,
        by_type=by_type,
    )

    logger.info(
        f"Analyzed {len(entities)} data extension(s): {len(classified)} unique dependencies "
        f"({summary.safe_to_delete} safe, {summary.requires_review} review, {summary.unknown} unknown)"
    )

    return AnalysisReport(
        summary=summary,
        safe_to_delete=buckets[Classification.SAFE_TO_DELETE],
        requires_review=buckets[Classification.REQUIRES_REVIEW],
        unknown=buckets[Classification.UNKNOWN],
        all=classified,
        entity_mapping=entity_mapping,
        data_load_summary=dataset.summary(),
    )


async def analyze(
    entities: list[TargetEntity],
    loader: BulkDataLoader,
    options: Optional[AnalysisOptions] = None,
) -> AnalysisReport:
    """Run a complete dependency analysis.

    Args:
        entities: Data Extensions to audit.
        loader: Bulk loader for the account the entities belong to.
        options: Analysis options.

    Returns:
        The complete analysis report.

    Raises:
        PlatformConnectionError: Metadata could not be loaded at all.
    """
    options = options or AnalysisOptions()
    progress = _progress_fn(options.on_progress)
    threshold = StalenessThreshold.from_days(options.stale_days, now=options.now)

    progress("loading", 0, 1, "Loading all SFMC metadata...")
    dataset = await loader.load(
        LoadOptions(
            force_refresh=options.force_refresh,
            include_automation_details=options.include_automation_details,
            include_query_text=options.include_query_text,
            on_progress=lambda stage, current, total, message: progress(
                f"loading-{stage}", current, total, message
            ),
        )
    )
    progress("loading", 1, 1, "All metadata loaded")

    report = build_report(entities, dataset, threshold, on_progress=options.on_progress)
    if loader.source_errors:
        report.data_load_summary["sourceErrors"] = loader.source_errors
    return report
