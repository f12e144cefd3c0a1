"""Metadata source calls used by the bulk loader.

Each list call returns raw platform records. Failures surface as
SourceUnavailableError or TransientNetworkError; the loader decides how
to degrade.
"""

import asyncio
import logging
from typing import Any, Optional

from ..core.config import AuditSettings
from ..core.errors import TransientNetworkError
from .rest_client import RESTClient
from .soap_client import SOAPClient, build_simple_filter

logger = logging.getLogger(__name__)

# REST endpoints
AUTOMATIONS_PATH = "/automation/v1/automations"
FILTERS_PATH = "/automation/v1/filters"
DATA_EXTRACTS_PATH = "/automation/v1/dataextracts"
JOURNEYS_PATH = "/interaction/v1/interactions"

# SOAP properties per object type
QUERY_DEFINITION_PROPERTIES = [
    "ObjectID", "CustomerKey", "Name", "Description",
    "TargetType", "TargetUpdateType", "DataExtensionTarget.CustomerKey",
    "DataExtensionTarget.Name", "CategoryID", "Status", "CreatedDate", "ModifiedDate",
]
QUERY_TEXT_PROPERTIES = ["ObjectID", "QueryText"]
IMPORT_DEFINITION_PROPERTIES = [
    "ObjectID", "CustomerKey", "Name", "Description",
    "DestinationObject.ObjectID", "DestinationObject.CustomerKey",
    "UpdateType", "FileSpec", "CategoryID", "Status", "CreatedDate", "ModifiedDate",
]
TRIGGERED_SEND_PROPERTIES = [
    "ObjectID", "CustomerKey", "Name", "Description", "TriggeredSendStatus",
    "Email.ID", "List.ID", "SendableDataExtensionField.Name",
    "SendableSubscriberField.Name", "CreatedDate", "ModifiedDate",
]
DATA_EXTENSION_PROPERTIES = ["ObjectID", "CustomerKey", "Name", "CategoryID"]


class MetadataSources:
    """Async access to the seven metadata collections.

    Args:
        rest: REST client for automations, filters, journeys and extracts.
        soap: SOAP client for queries, imports and triggered sends.
        settings: Page sizes and concurrency limits.
    """

    def __init__(self, rest: RESTClient, soap: SOAPClient, settings: Optional[AuditSettings] = None):
        self.rest = rest
        self.soap = soap
        self.settings = settings or AuditSettings()

    async def get_automations(self) -> list[dict[str, Any]]:
        return await self.rest.get_all_pages(
            AUTOMATIONS_PATH, "automations", page_size=self.settings.default_page_size
        )

    async def get_automation_details(self, automation_id: str) -> dict[str, Any]:
        """Fetch one automation with steps, status and lastRunTime."""
        data = await self.rest.get_json(f"{AUTOMATIONS_PATH}/{automation_id}", "automation details")
        return data if isinstance(data, dict) else {}

    async def get_filter_activities(self) -> list[dict[str, Any]]:
        return await self.rest.get_all_pages(
            FILTERS_PATH, "filter activities", page_size=self.settings.default_page_size
        )

    async def get_journeys(self) -> list[dict[str, Any]]:
        return await self.rest.get_all_pages(
            JOURNEYS_PATH, "journeys", page_size=self.settings.journey_page_size
        )

    async def get_data_extracts(self) -> list[dict[str, Any]]:
        return await self.rest.get_all_pages(
            DATA_EXTRACTS_PATH, "data extracts", page_size=self.settings.default_page_size
        )

    async def get_query_definitions(self) -> list[dict[str, Any]]:
        return await self.soap.retrieve_all_pages("QueryDefinition", QUERY_DEFINITION_PROPERTIES)

    async def get_import_definitions(self) -> list[dict[str, Any]]:
        return await self.soap.retrieve_all_pages("ImportDefinition", IMPORT_DEFINITION_PROPERTIES)

    async def get_triggered_sends(self) -> list[dict[str, Any]]:
        return await self.soap.retrieve_all_pages("TriggeredSendDefinition", TRIGGERED_SEND_PROPERTIES)

    async def get_query_texts(
        self,
        object_ids: list[str],
        concurrency: Optional[int] = None,
    ) -> dict[str, str]:
        """Fetch SQL text for the given QueryDefinition ObjectIDs.

        At most ``concurrency`` retrieves are in flight. An individual failure
        leaves that query out of the result.

        Returns:
            Mapping of ObjectID to QueryText.
        """
        semaphore = asyncio.Semaphore(concurrency or self.settings.query_text_concurrency)

        async def fetch_one(object_id: str) -> Optional[tuple[str, str]]:
            async with semaphore:
                try:
                    result = await self.soap.retrieve(
                        "QueryDefinition",
                        QUERY_TEXT_PROPERTIES,
                        build_simple_filter("ObjectID", "equals", object_id),
                    )
                except TransientNetworkError as e:
                    logger.debug(f"QueryText fetch failed for {object_id}: {e}")
                    return None

            for obj in result.get("objects", []):
                text = obj.get("QueryText")
                if text:
                    return object_id, text
            return None

        results = await asyncio.gather(*(fetch_one(object_id) for object_id in object_ids))
        return dict(item for item in results if item is not None)

    async def get_data_extension(self, customer_key: str) -> Optional[dict[str, Any]]:
        """Look up one Data Extension by CustomerKey.

        Returns:
            The DataExtension record, or None if no such key exists.
        """
        objects = await self.soap.retrieve_all_pages(
            "DataExtension",
            DATA_EXTENSION_PROPERTIES,
            build_simple_filter("CustomerKey", "equals", customer_key),
        )
        return objects[0] if objects else None
