"""Async SFMC SOAP client for Retrieve calls.

Builds RetrieveRequestMsg envelopes, turns RetrieveResponseMsg payloads into
plain dicts, and follows ContinueRequest until the platform stops reporting
MoreDataAvailable.
"""

import asyncio
import logging
from typing import Any, Optional
from xml.etree import ElementTree as ET
from xml.etree.ElementTree import Element

import httpx

from ..core.config import SFMCConfig, get_config
from ..core.errors import SourceUnavailableError, TransientNetworkError
from .auth import TokenManager
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy

logger = logging.getLogger(__name__)

ENVELOPE_NS = "http://schemas.xmlsoap.org/soap/envelope/"
PARTNER_NS = "http://exacttarget.com/wsdl/partnerAPI"
INSTANCE_NS = "http://www.w3.org/2001/XMLSchema-instance"

for _prefix, _uri in (("soap", ENVELOPE_NS), ("", PARTNER_NS), ("xsi", INSTANCE_NS)):
    ET.register_namespace(_prefix, _uri)

REQUEST_TIMEOUT = 120.0
DEFAULT_MAX_PAGES = 100
SUCCESS_STATUSES = ("OK", "MoreDataAvailable")


def _qname(tag: str, ns: str = PARTNER_NS) -> str:
    return f"{{{ns}}}{tag}"


def _local(name: str) -> str:
    return name.rpartition("}")[2]


def _add(parent: Element, tag: str, text: Optional[str] = None) -> Element:
    child = ET.SubElement(parent, _qname(tag))
    if text is not None:
        child.text = text
    return child


def build_envelope(access_token: str, body_msg: Element) -> bytes:
    """Wrap a request message in an envelope carrying the fueloauth header."""
    envelope = ET.Element(_qname("Envelope", ENVELOPE_NS))
    header = ET.SubElement(envelope, _qname("Header", ENVELOPE_NS))
    _add(header, "fueloauth", access_token)
    ET.SubElement(envelope, _qname("Body", ENVELOPE_NS)).append(body_msg)
    return ET.tostring(envelope, encoding="utf-8", xml_declaration=True)


def build_retrieve_request(
    object_type: str,
    properties: list[str],
    filter_xml: Optional[Element] = None,
) -> Element:
    """Build the RetrieveRequestMsg for one object type.

    Args:
        object_type: SFMC object type, e.g. "ImportDefinition".
        properties: Property names to return. Nested ones use dots.
        filter_xml: Optional element from build_simple_filter.
    """
    msg = ET.Element(_qname("RetrieveRequestMsg"))
    request = _add(msg, "RetrieveRequest")
    _add(request, "ObjectType", object_type)
    for name in properties:
        _add(request, "Properties", name)
    if filter_xml is not None:
        request.append(filter_xml)
    return msg


def build_continue_request(request_id: str) -> Element:
    msg = ET.Element(_qname("RetrieveRequestMsg"))
    _add(_add(msg, "RetrieveRequest"), "ContinueRequest", request_id)
    return msg


def build_simple_filter(property_name: str, operator: str, value: str) -> Element:
    """Filter element for a single ``property operator value`` comparison."""
    part = ET.Element(_qname("Filter"))
    part.set(_qname("type", INSTANCE_NS), "SimpleFilterPart")
    _add(part, "Property", property_name)
    _add(part, "SimpleOperator", operator)
    _add(part, "Value", value)
    return part


def _children(parent: Element, tag: str) -> list[Element]:
    # Responses are usually qualified but some stacks return bare tags
    return parent.findall(_qname(tag)) or parent.findall(tag)


def _text_of(parent: Element, tag: str) -> Optional[str]:
    found = _children(parent, tag)
    return found[0].text if found else None


def element_to_dict(element: Element) -> dict[str, Any]:
    """Flatten an XML element into nested dicts.

    Namespaces are dropped, attributes become ``@name`` keys and repeated
    children become lists. Leaf elements map to their text.
    """
    out: dict[str, Any] = {f"@{_local(k)}": v for k, v in element.attrib.items()}
    for child in element:
        key = _local(child.tag)
        value: Any = element_to_dict(child) if len(child) or child.attrib else child.text
        if key not in out:
            out[key] = value
        elif isinstance(out[key], list):
            out[key].append(value)
        else:
            out[key] = [out[key], value]
    return out


def parse_retrieve_response(response_xml: str) -> dict[str, Any]:
    """Parse a RetrieveResponseMsg.

    Returns a dict with ``ok``, ``overall_status``, ``request_id`` and
    ``objects``. ``error`` is set whenever ``ok`` is False.
    """
    parsed: dict[str, Any] = {"ok": False, "overall_status": None, "request_id": None, "objects": []}

    try:
        root = ET.fromstring(response_xml)
    except ET.ParseError as e:
        parsed["error"] = f"XML parse error: {e}"
        return parsed

    body = root.find(f".//{_qname('Body', ENVELOPE_NS)}")
    if body is None:
        parsed["error"] = "No SOAP Body found"
        return parsed

    fault = body.find(f".//{_qname('Fault', ENVELOPE_NS)}")
    if fault is not None:
        parsed["error"] = fault.findtext("faultstring") or "SOAP Fault"
        return parsed

    message = body.find(f".//{_qname('RetrieveResponseMsg')}")
    if message is None:
        message = body.find(".//RetrieveResponseMsg")
    if message is None:
        parsed["error"] = "Invalid SOAP response: missing RetrieveResponseMsg"
        return parsed

    status = _text_of(message, "OverallStatus")
    parsed["overall_status"] = status
    parsed["ok"] = status in SUCCESS_STATUSES
    parsed["request_id"] = _text_of(message, "RequestID")
    parsed["objects"] = [element_to_dict(r) for r in _children(message, "Results")]

    if not parsed["ok"]:
        first = parsed["objects"][0].get("StatusMessage") if parsed["objects"] else None
        parsed["error"] = first or f"Retrieve failed: {status}"

    return parsed


class SOAPClient:
    """Async SOAP Retrieve client.

    Shares the REST client's retry policy and pacing delay. A 401 triggers one
    token refresh, after which the envelope is rebuilt with the new token.
    """

    def __init__(
        self,
        config: Optional[SFMCConfig] = None,
        token_manager: Optional[TokenManager] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        request_delay: float = 0.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._config = config or get_config()
        self._token_manager = token_manager or TokenManager(self._config)
        self._retry = retry_policy
        self._request_delay = request_delay
        self._http_client = http_client
        self._trace = self._config.soap_debug
        self._page_limit = self._config.soap_max_pages or DEFAULT_MAX_PAGES

    @property
    def endpoint(self) -> str:
        return self._config.soap_url

    async def _post(self, payload: bytes) -> httpx.Response:
        headers = {"Content-Type": "text/xml; charset=utf-8", "SOAPAction": "Retrieve"}
        if self._trace:
            logger.debug(f"SOAP >>> {payload.decode('utf-8')}")
        if self._http_client is not None:
            response = await self._http_client.post(self.endpoint, content=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
                response = await client.post(self.endpoint, content=payload, headers=headers)
        if self._trace:
            logger.debug(f"SOAP <<< {response.status_code} {response.text[:2000]}")
        return response

    async def _call(self, body_msg: Element, description: str) -> dict[str, Any]:
        attempts = self._retry.max_attempts
        last_error: Optional[str] = None
        last_status: Optional[int] = None

        for attempt in range(attempts):
            token = await self._token_manager.get_token()
            retry_delay: Optional[float] = None

            try:
                response = await self._post(build_envelope(token, body_msg))
            except httpx.RequestError as e:
                if not self._retry.should_retry_exception(e):
                    raise TransientNetworkError(f"SOAP {description} failed: {e}") from e
                last_error = str(e) or type(e).__name__
                retry_delay = self._retry.backoff_delay(attempt)
            else:
                if response.status_code == 401 and self._retry.has_attempts_left(attempt):
                    await self._token_manager.force_refresh(token)
                    continue
                if not self._retry.should_retry_status(response.status_code):
                    if self._request_delay:
                        await asyncio.sleep(self._request_delay)
                    parsed = parse_retrieve_response(response.text)
                    parsed["status_code"] = response.status_code
                    return parsed
                last_status = response.status_code
                last_error = f"HTTP {response.status_code}"
                retry_delay = self._retry.delay_for_response(response, attempt)

            logger.debug(f"SOAP {description}: {last_error}, attempt {attempt + 1}/{attempts}")
            if self._retry.has_attempts_left(attempt):
                await asyncio.sleep(retry_delay)

        raise TransientNetworkError(
            f"SOAP {description} failed after {attempts} attempts: {last_error or 'max retries exceeded'}",
            status_code=last_status,
        )

    async def retrieve(
        self,
        object_type: str,
        properties: list[str],
        filter_xml: Optional[Element] = None,
    ) -> dict[str, Any]:
        """Run one Retrieve and return the parsed first page."""
        return await self._call(
            build_retrieve_request(object_type, properties, filter_xml), f"Retrieve {object_type}"
        )

    async def retrieve_all_pages(
        self,
        object_type: str,
        properties: list[str],
        filter_xml: Optional[Element] = None,
        max_pages: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Retrieve an object type, following ContinueRequest up to max_pages.

        Raises:
            SourceUnavailableError: A page came back with a non-success status.
            TransientNetworkError: Retries were exhausted.
        """
        limit = max_pages or self._page_limit
        page = await self.retrieve(object_type, properties, filter_xml)
        pages = 1
        collected: list[dict[str, Any]] = []

        while True:
            if not page.get("ok"):
                where = f"page {pages}: " if pages > 1 else ""
                raise SourceUnavailableError(object_type, where + page.get("error", "Retrieve failed"))
            collected.extend(page.get("objects", []))

            request_id = page.get("request_id")
            if page.get("overall_status") != "MoreDataAvailable" or not request_id or pages >= limit:
                break
            pages += 1
            page = await self._call(build_continue_request(request_id), f"Continue {object_type}")

        logger.debug(f"Retrieve {object_type}: {len(collected)} objects from {pages} page(s)")
        return collected
