"""Bulk metadata loader for dependency analysis.

Loads every metadata collection once so scanning and classification need no
further API calls. Lookup order on load():
1. Caller-owned CacheContext (in-process)
2. Persisted CacheStore entry within its TTL
3. Live fetch of all seven sources, run concurrently

A source that fails degrades to an empty collection with a warning. Only a
PlatformConnectionError (authentication or total connectivity loss) escapes.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from ..cache.cache_store import CacheStore, CacheType
from ..clients.sources import MetadataSources
from ..core.config import AuditSettings
from ..core.errors import PlatformConnectionError, SourceUnavailableError, TransientNetworkError
from ..types.dataset import COLLECTION_KEYS, BulkDataset, extract_activity_ids
from ..types.models import CacheInfo

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int, str], None]

# Fields kept from automation detail responses
AUTOMATION_DETAIL_FIELDS = (
    "id", "name", "key", "description", "status", "statusId", "categoryId",
    "createdDate", "modifiedDate", "lastRunTime", "lastRunInstanceId",
)


@dataclass
class LoadOptions:
    """Options for a bulk load."""

    force_refresh: bool = False
    include_automation_details: bool = True  # Needed for lastRunTime and steps
    include_query_text: bool = True  # Needed for SQL reference detection
    on_progress: Optional[ProgressCallback] = None


class CacheContext:
    """In-process holder for the most recently loaded dataset.

    Owned by the caller and passed to each loader that should share it.
    """

    def __init__(self):
        self._dataset: Optional[BulkDataset] = None
        self._stored_at: Optional[datetime] = None

    def get(self) -> Optional[BulkDataset]:
        return self._dataset

    def set(self, dataset: BulkDataset) -> None:
        self._dataset = dataset
        self._stored_at = datetime.now()

    def invalidate(self) -> None:
        self._dataset = None
        self._stored_at = None

    @property
    def stored_at(self) -> Optional[datetime]:
        return self._stored_at


def _locate_activity(steps: Any, needle: str) -> Optional[tuple[dict[str, Any], dict[str, Any]]]:
    """Return the (step, activity) pair referencing ``needle``, skipping non-object entries."""
    if not isinstance(steps, list):
        return None
    for step in steps:
        if not isinstance(step, dict):
            continue
        for activity in step.get("activities") or []:
            if not isinstance(activity, dict):
                continue
            if needle in (
                str(activity.get("activityObjectId") or "").lower(),
                str(activity.get("id") or "").lower(),
            ):
                return step, activity
    return None


def find_automations_containing_activity(
    activity_id: str,
    dataset: BulkDataset,
) -> list[dict[str, Any]]:
    """Find automations whose steps reference an activity.

    Matching is case-insensitive against the flattened activity id index.
    When the automation's steps are loaded, the matching step number and
    activity name are added to its summary.

    Args:
        activity_id: Filter/query/etc. activity id.
        dataset: Loaded bulk data.

    Returns:
        Summary dicts (id, name, status, statusId, lastRunTime, createdDate,
        and stepNumber/activityName when known), one per matching automation.
    """
    needle = activity_id.lower()
    matches = []

    for auto in dataset.automations:
        ids = dataset.activity_ids.get(str(auto.get("id")))
        if ids is None:
            ids = extract_activity_ids(auto.get("steps"))
        if not any(str(i).lower() == needle for i in ids):
            continue

        summary = {
            "id": auto.get("id"),
            "name": auto.get("name"),
            "status": auto.get("status"),
            "statusId": auto.get("statusId"),
            "lastRunTime": auto.get("lastRunTime"),
            "createdDate": auto.get("createdDate"),
        }
        located = _locate_activity(auto.get("steps"), needle)
        if located is not None:
            step, activity = located
            summary["stepNumber"] = step.get("stepNumber") or step.get("step")
            summary["activityName"] = activity.get("name")
        matches.append(summary)

    return matches


class BulkDataLoader:
    """Loads and caches the bulk metadata dataset for one account."""

    def __init__(
        self,
        sources: MetadataSources,
        cache_store: CacheStore,
        account_id: str,
        context: Optional[CacheContext] = None,
        settings: Optional[AuditSettings] = None,
    ):
        """Initialize the loader.

        Args:
            sources: Metadata source calls.
            cache_store: Persisted cache.
            account_id: Account/MID used to key the persisted cache.
            context: Shared in-process cache. A private one is created if None.
            settings: Batch sizes and TTL.
        """
        self._sources = sources
        self._cache_store = cache_store
        self._account_id = account_id
        self._context = context if context is not None else CacheContext()
        self._settings = settings or sources.settings
        self._source_errors: dict[str, str] = {}
        self._source_error_kinds: dict[str, str] = {}

    @property
    def context(self) -> CacheContext:
        return self._context

    @property
    def source_errors(self) -> dict[str, str]:
        """Sources that degraded to empty on the last live fetch."""
        return dict(self._source_errors)

    async def load(self, options: Optional[LoadOptions] = None) -> BulkDataset:
        """Return the bulk dataset, from cache when possible.

        Raises:
            PlatformConnectionError: The platform could not be reached at all.
        """
        options = options or LoadOptions()
        progress = self._make_progress(options.on_progress)

        if not options.force_refresh:
            cached = self._context.get()
            if cached is not None:
                logger.debug("Using in-memory bulk data cache")
                progress("cached", 1, 1, "Using in-memory cached data")
                return cached

            entry = await self._cache_store.read_async(
                CacheType.BULK_DATA,
                self._account_id,
                max_age=self._settings.cache_max_age_seconds,
            )
            if entry is not None and isinstance(entry.data, dict):
                dataset = BulkDataset.from_cache_payload(entry.data)
                info = self._cache_store.info(CacheType.BULK_DATA, self._account_id)
                logger.info(f"Using cached bulk data ({info.age_string})")
                progress("cached", 1, 1, f"Using cached data ({info.age_string})")
                self._context.set(dataset)
                return dataset

        dataset = await self._fetch_all(options, progress)

        written = await self._cache_store.write_async(
            CacheType.BULK_DATA,
            self._account_id,
            dataset.to_cache_payload(),
            {"itemCounts": dataset.counts()},
        )
        if not written:
            logger.warning("Bulk data could not be cached, continuing with in-memory data")

        self._context.set(dataset)

        counts = dataset.counts()
        logger.info(
            f"Bulk data loaded: {counts['automations']} automations, "
            f"{counts['filterActivities']} filters, {counts['queryActivities']} queries, "
            f"{counts['importActivities']} imports, {counts['triggeredSends']} triggered sends, "
            f"{counts['journeys']} journeys, {counts['dataExtracts']} data extracts"
        )
        return dataset

    async def refresh(self, options: Optional[LoadOptions] = None) -> BulkDataset:
        """Force a live fetch, replacing both caches."""
        return await self.load(replace(options or LoadOptions(), force_refresh=True))

    def invalidate(self) -> bool:
        """Drop the in-process dataset and the persisted cache file.

        Returns:
            True if a persisted cache file was removed.
        """
        self._context.invalidate()
        return self._cache_store.clear(CacheType.BULK_DATA, self._account_id)

    def cache_status(self) -> CacheInfo:
        """Describe the persisted bulk data cache."""
        return self._cache_store.info(CacheType.BULK_DATA, self._account_id)

    def _make_progress(self, callback: Optional[ProgressCallback]) -> ProgressCallback:
        def progress(stage: str, current: int, total: int, message: str) -> None:
            if callback:
                callback(stage, current, total, message)
            logger.debug(f"[{stage}] {current}/{total}: {message}")

        return progress

    async def _fetch_all(self, options: LoadOptions, progress: ProgressCallback) -> BulkDataset:
        """Fetch the seven collections concurrently."""
        self._source_errors = {}
        self._source_error_kinds = {}
        fetchers: dict[str, Callable[[], Awaitable[list[dict[str, Any]]]]] = {
            "automations": lambda: self._load_automations(options, progress),
            "filter_activities": self._sources.get_filter_activities,
            "query_activities": lambda: self._load_queries(options, progress),
            "import_activities": self._sources.get_import_definitions,
            "triggered_sends": self._sources.get_triggered_sends,
            "journeys": self._sources.get_journeys,
            "data_extracts": self._sources.get_data_extracts,
        }

        progress("loading", 0, len(fetchers), "Loading all metadata sources...")
        loaded_at = datetime.now()
        results = await asyncio.gather(
            *(self._guarded(name, fetch, progress) for name, fetch in fetchers.items()),
            return_exceptions=True,
        )

        for result in results:
            if isinstance(result, PlatformConnectionError):
                raise result
        for result in results:
            if isinstance(result, BaseException):
                raise result

        if len(self._source_errors) == len(fetchers) and all(
            kind == "transient" for kind in self._source_error_kinds.values()
        ):
            raise PlatformConnectionError(
                "Could not reach any metadata source: "
                + "; ".join(f"{k}: {v}" for k, v in self._source_errors.items())
            )

        progress("loading", len(fetchers), len(fetchers), "All metadata sources loaded")
        collections = dict(zip(fetchers.keys(), results))
        return BulkDataset(loaded_at=loaded_at, **collections)

    async def _guarded(
        self,
        name: str,
        fetch: Callable[[], Awaitable[list[dict[str, Any]]]],
        progress: ProgressCallback,
    ) -> list[dict[str, Any]]:
        """Run one source fetch, degrading any failure except a lost connection to an empty list."""
        label = COLLECTION_KEYS[name]
        progress(label, 0, 1, f"Loading {label}...")
        try:
            items = await fetch()
        except TransientNetworkError as e:
            self._record_failure(name, "transient", e)
            return []
        except SourceUnavailableError as e:
            self._record_failure(name, "unavailable", e)
            return []
        except PlatformConnectionError:
            raise
        except Exception as e:
            logger.debug(f"Unexpected error loading {label}", exc_info=True)
            self._record_failure(name, "unavailable", e)
            return []

        progress(label, 1, 1, f"Loaded {len(items)} {label}")
        return items

    def _record_failure(self, name: str, kind: str, error: Exception) -> None:
        logger.warning(f"Failed to load {COLLECTION_KEYS[name]}: {error}")
        self._source_errors[name] = str(error)
        self._source_error_kinds[name] = kind

    async def _load_automations(
        self,
        options: LoadOptions,
        progress: ProgressCallback,
    ) -> list[dict[str, Any]]:
        """Load the automation list, hydrating details in batches."""
        automations = await self._sources.get_automations()
        if not options.include_automation_details or not automations:
            return automations

        batch_size = max(1, self._settings.automation_details_batch_size)
        total = len(automations)
        detailed: list[dict[str, Any]] = []
        progress("automation-details", 0, total, "Loading automation details...")

        for start in range(0, total, batch_size):
            batch = automations[start:start + batch_size]
            detailed.extend(await asyncio.gather(*(self._automation_detail(auto) for auto in batch)))
            done = min(start + batch_size, total)
            progress("automation-details", done, total, f"Loaded {done}/{total} automation details")

        return detailed

    async def _automation_detail(self, auto: dict[str, Any]) -> dict[str, Any]:
        """Fetch one automation's details, falling back to the list record."""
        try:
            details = await self._sources.get_automation_details(str(auto.get("id")))
        except (SourceUnavailableError, TransientNetworkError) as e:
            logger.debug(f"Failed to get details for automation {auto.get('id')}: {e}")
            return {
                "id": auto.get("id"),
                "name": auto.get("name"),
                "key": auto.get("key"),
                "status": auto.get("status"),
                "statusId": auto.get("statusId"),
                "lastRunTime": auto.get("lastRunTime"),
                "steps": [],
                "activityIds": [],
                "_detailsError": str(e),
            }

        record = {field: details.get(field, auto.get(field)) for field in AUTOMATION_DETAIL_FIELDS}
        steps = details.get("steps") or []
        record["steps"] = steps
        record["activityIds"] = extract_activity_ids(steps)
        return record

    async def _load_queries(
        self,
        options: LoadOptions,
        progress: ProgressCallback,
    ) -> list[dict[str, Any]]:
        """Load query definitions, then their SQL text in bounded batches."""
        queries = await self._sources.get_query_definitions()
        if not options.include_query_text or not queries:
            return queries

        object_ids = [q["ObjectID"] for q in queries if q.get("ObjectID")]
        batch_size = max(1, self._settings.query_text_batch_size)
        total = len(object_ids)
        texts: dict[str, str] = {}
        progress("query-text", 0, total, "Loading query SQL text...")

        for start in range(0, total, batch_size):
            batch = object_ids[start:start + batch_size]
            texts.update(
                await self._sources.get_query_texts(
                    batch, concurrency=self._settings.query_text_concurrency
                )
            )
            done = min(start + batch_size, total)
            progress("query-text", done, total, f"Loaded {done}/{total} query SQL texts")

        hydrated = [
            {**q, "QueryText": texts[q["ObjectID"]]} if q.get("ObjectID") in texts else q
            for q in queries
        ]
        logger.info(f"Loaded SQL for {len(texts)}/{len(queries)} queries")
        return hydrated
