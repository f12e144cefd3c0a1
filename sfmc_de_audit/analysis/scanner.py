"""Dependency scanner.

Finds every record in a loaded dataset that references a target entity.
Pure in-memory search; no API calls.
"""

import logging
from typing import Any, Optional

from ..core.errors import MalformedRecordError
from ..types.dataset import BulkDataset
from ..types.models import DependencyRecord, TargetEntity
from .matching import SOURCE_RULES, MatchTarget, SerializedText, SourceRule

logger = logging.getLogger(__name__)


class DependencyScanner:
    """Scans entities against one dataset.

    Reuse one scanner for all entities of a run so that serialized record
    text is computed only once.
    """

    def __init__(self, dataset: BulkDataset, rules: tuple[SourceRule, ...] = SOURCE_RULES):
        self._dataset = dataset
        self._rules = rules
        self._serialized = SerializedText()
        self._skipped = 0

    @property
    def skipped_records(self) -> int:
        """Malformed records skipped so far."""
        return self._skipped

    def scan(self, entity: TargetEntity) -> list[DependencyRecord]:
        """Find all dependencies of one entity.

        Args:
            entity: Data Extension to look for.

        Returns:
            Dependency records in source order (filters, queries, imports,
            triggered sends, automations, journeys, data extracts).
        """
        target = MatchTarget.from_entity(entity)
        dependencies: list[DependencyRecord] = []

        for rule in self._rules:
            for record in getattr(self._dataset, rule.collection):
                try:
                    dependency = self._match_record(rule, record, target)
                except MalformedRecordError as e:
                    self._skipped += 1
                    logger.debug(f"Skipping malformed {rule.dependency_type.value} record: {e}")
                    continue
                if dependency is not None:
                    dependencies.append(dependency)

        return dependencies

    def _match_record(
        self,
        rule: SourceRule,
        record: Any,
        target: MatchTarget,
    ) -> Optional[DependencyRecord]:
        if not isinstance(record, dict):
            raise MalformedRecordError(f"expected an object, got {type(record).__name__}")

        details = rule.details_for(record, target, self._serialized)
        if details is None:
            return None

        record_id = rule.shape.record_id(record)
        name = record.get(rule.shape.name_field)
        if record_id is None and not name:
            raise MalformedRecordError("record has neither an id nor a name")

        return DependencyRecord(
            type=rule.dependency_type,
            id=record_id,
            name=str(name) if name is not None else None,
            status=_as_text(rule.shape.status(record)),
            details=details,
            raw_data=rule.shape.raw_data(record),
        )


def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def scan(entity: TargetEntity, dataset: BulkDataset) -> list[DependencyRecord]:
    """Find all dependencies of one entity in a dataset."""
    return DependencyScanner(dataset).scan(entity)
