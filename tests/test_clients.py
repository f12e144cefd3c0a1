"""Tests for the retry policy and the REST/SOAP clients."""

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from sfmc_de_audit.clients.auth import TokenManager
from sfmc_de_audit.clients.rest_client import RESTClient
from sfmc_de_audit.clients.retry import RetryPolicy, parse_retry_after
from sfmc_de_audit.clients.soap_client import SOAPClient, parse_retrieve_response
from sfmc_de_audit.clients.sources import MetadataSources
from sfmc_de_audit.core.config import AuditSettings, SFMCConfig
from sfmc_de_audit.core.errors import (
    PlatformConnectionError,
    SourceUnavailableError,
    TransientNetworkError,
)

FAST = RetryPolicy(base_delay=0.0)

SOAP_OK = """<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">
  <soap:Body>
    <RetrieveResponseMsg xmlns="http://exacttarget.com/wsdl/partnerAPI">
      <OverallStatus>{status}</OverallStatus>
      <RequestID>{request_id}</RequestID>
      {results}
    </RetrieveResponseMsg>
  </soap:Body>
</soap:Envelope>"""

QUERY_RESULT = """<Results xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" xsi:type="QueryDefinition">
        <ObjectID>{object_id}</ObjectID>
        <Name>{name}</Name>
        <DataExtensionTarget><CustomerKey>DE_A</CustomerKey><Name>Alpha</Name></DataExtensionTarget>
      </Results>"""


def soap_body(status="OK", request_id="req-1", results=()):
    return SOAP_OK.format(status=status, request_id=request_id, results="".join(results))


@pytest.fixture
def config():
    return SFMCConfig(subdomain="mc-test", client_id="client", client_secret="secret", account_id="123")


@pytest.fixture
def token_manager():
    manager = MagicMock()
    manager.get_token = AsyncMock(return_value="token-1")
    manager.force_refresh = AsyncMock(return_value="token-2")
    return manager


def make_rest(config, token_manager, handler, policy=FAST):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RESTClient(config, token_manager, retry_policy=policy, http_client=http_client)


def make_soap(config, token_manager, handler, policy=FAST):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SOAPClient(config, token_manager, retry_policy=policy, http_client=http_client)


class TestRetryPolicy:
    """Tests for retry decisions and delays."""

    def test_backoff(self):
        policy = RetryPolicy()
        assert [policy.backoff_delay(a) for a in range(3)] == [1.0, 2.0, 4.0]

    def test_attempts(self):
        policy = RetryPolicy(max_attempts=3)
        assert policy.has_attempts_left(0)
        assert policy.has_attempts_left(1)
        assert not policy.has_attempts_left(2)

    def test_retryable_statuses(self):
        policy = RetryPolicy()
        assert policy.should_retry_status(429)
        assert policy.should_retry_status(503)
        assert not policy.should_retry_status(500)
        assert not policy.should_retry_status(404)

    def test_retryable_exceptions(self):
        policy = RetryPolicy()
        request = httpx.Request("GET", "https://example.test")
        assert policy.should_retry_exception(httpx.ReadTimeout("slow", request=request))
        assert policy.should_retry_exception(httpx.ConnectError("reset", request=request))
        assert not policy.should_retry_exception(httpx.DecodingError("bad", request=request))

    def test_retry_after_preferred(self):
        policy = RetryPolicy()
        response = httpx.Response(429, headers={"Retry-After": "7"})
        assert policy.delay_for_response(response, attempt=0) == 7.0

    def test_retry_after_capped(self):
        policy = RetryPolicy(max_retry_after=30.0)
        response = httpx.Response(429, headers={"Retry-After": "600"})
        assert policy.delay_for_response(response, attempt=0) == 30.0

    def test_retry_after_ignored_when_disabled(self):
        policy = RetryPolicy(respect_retry_after=False)
        response = httpx.Response(503, headers={"Retry-After": "7"})
        assert policy.delay_for_response(response, attempt=1) == 2.0

    def test_parse_retry_after(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("") is None
        assert parse_retry_after("3") == 3.0
        assert parse_retry_after("-3") == 0.0
        assert parse_retry_after("soon") is None

        future = datetime.now(timezone.utc) + timedelta(seconds=60)
        assert 50 <= parse_retry_after(format_datetime(future, usegmt=True)) <= 60


class TestRESTClient:
    """Tests for REST retries, token refresh and pagination."""

    @pytest.mark.asyncio
    async def test_retries_throttled_request(self, config, token_manager):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(429, headers={"Retry-After": "0"})
            return httpx.Response(200, json={"ok": True})

        client = make_rest(config, token_manager, handler)
        result = await client.get_async("/automation/v1/automations")

        assert result["ok"] is True
        assert result["data"] == {"ok": True}
        assert len(calls) == 2
        assert calls[0].headers["Authorization"] == "Bearer token-1"
        assert str(calls[0].url).startswith("https://mc-test.rest.marketingcloudapis.com/")

    @pytest.mark.asyncio
    async def test_honours_retry_after(self, config, token_manager):
        responses = iter([httpx.Response(503, headers={"Retry-After": "7"}), httpx.Response(200, json={})])
        client = make_rest(config, token_manager, lambda request: next(responses), policy=RetryPolicy())

        with patch("sfmc_de_audit.clients.rest_client.asyncio.sleep", new=AsyncMock()) as sleep:
            await client.get_async("/x")

        sleep.assert_awaited_once_with(7.0)

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_transient(self, config, token_manager):
        client = make_rest(config, token_manager, lambda request: httpx.Response(503))

        with pytest.raises(TransientNetworkError) as exc_info:
            await client.get_async("/x")

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_timeouts_are_retried_then_raised(self, config, token_manager):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectTimeout("timed out", request=request)

        client = make_rest(config, token_manager, handler)

        with pytest.raises(TransientNetworkError):
            await client.get_async("/x")

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_refreshes_token_on_401(self, config, token_manager):
        token_manager.get_token = AsyncMock(side_effect=["token-1", "token-2"])
        seen = []

        def handler(request):
            seen.append(request.headers["Authorization"])
            if request.headers["Authorization"] == "Bearer token-1":
                return httpx.Response(401)
            return httpx.Response(200, json={"items": []})

        client = make_rest(config, token_manager, handler)
        result = await client.get_async("/x")

        assert result["ok"] is True
        assert seen == ["Bearer token-1", "Bearer token-2"]
        token_manager.force_refresh.assert_awaited_once_with("token-1")

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_source_unavailable(self, config, token_manager):
        client = make_rest(config, token_manager, lambda request: httpx.Response(500, text="server error"))

        with pytest.raises(SourceUnavailableError) as exc_info:
            await client.get_json("/x", "journeys")

        assert exc_info.value.source == "journeys"
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_pagination_uses_count(self, config, token_manager):
        pages = []

        def handler(request):
            page = int(request.url.params["$page"])
            pages.append(page)
            items = [{"id": f"{page}-{i}"} for i in range(2 if page < 3 else 1)]
            return httpx.Response(200, json={"count": 5, "pageSize": 2, "page": page, "items": items})

        client = make_rest(config, token_manager, handler)
        items = await client.get_all_pages("/automation/v1/automations", "automations", page_size=2)

        assert pages == [1, 2, 3]
        assert len(items) == 5

    @pytest.mark.asyncio
    async def test_pagination_stops_on_short_page(self, config, token_manager):
        def handler(request):
            assert request.url.params["$pageSize"] == "10"
            return httpx.Response(200, json={"items": [{"id": "only"}]})

        client = make_rest(config, token_manager, handler)
        items = await client.get_all_pages("/x", "x", page_size=10)

        assert items == [{"id": "only"}]


class TestSOAPClient:
    """Tests for SOAP retrieves."""

    def test_parse_results(self):
        result = parse_retrieve_response(soap_body(results=[QUERY_RESULT.format(object_id="q-1", name="Q1")]))

        assert result["ok"] is True
        assert result["request_id"] == "req-1"
        obj = result["objects"][0]
        assert obj["ObjectID"] == "q-1"
        assert obj["DataExtensionTarget"] == {"CustomerKey": "DE_A", "Name": "Alpha"}
        assert obj["@type"] == "QueryDefinition"

    def test_parse_error_status(self):
        body = soap_body(status="Error", results=["<Results><StatusMessage>Access denied</StatusMessage></Results>"])

        result = parse_retrieve_response(body)

        assert result["ok"] is False
        assert result["error"] == "Access denied"

    def test_parse_garbage(self):
        assert "XML parse error" in parse_retrieve_response("<oops")["error"]

    @pytest.mark.asyncio
    async def test_follows_continue_requests(self, config, token_manager):
        bodies = []

        def handler(request):
            bodies.append(request.content.decode("utf-8"))
            if len(bodies) == 1:
                return httpx.Response(200, text=soap_body(
                    status="MoreDataAvailable",
                    request_id="req-42",
                    results=[QUERY_RESULT.format(object_id="q-1", name="Q1")],
                ))
            return httpx.Response(200, text=soap_body(results=[QUERY_RESULT.format(object_id="q-2", name="Q2")]))

        client = make_soap(config, token_manager, handler)
        objects = await client.retrieve_all_pages("QueryDefinition", ["ObjectID", "Name"])

        assert [o["ObjectID"] for o in objects] == ["q-1", "q-2"]
        assert "token-1" in bodies[0]
        assert "QueryDefinition" in bodies[0]
        assert "req-42" in bodies[1]
        assert "ContinueRequest" in bodies[1]

    @pytest.mark.asyncio
    async def test_error_status_raises_source_unavailable(self, config, token_manager):
        body = soap_body(status="Error", results=["<Results><StatusMessage>Denied</StatusMessage></Results>"])
        client = make_soap(config, token_manager, lambda request: httpx.Response(200, text=body))

        with pytest.raises(SourceUnavailableError, match="Denied"):
            await client.retrieve_all_pages("ImportDefinition", ["ObjectID"])

    @pytest.mark.asyncio
    async def test_throttling_is_retried(self, config, token_manager):
        responses = iter([httpx.Response(429), httpx.Response(200, text=soap_body())])
        client = make_soap(config, token_manager, lambda request: next(responses))

        objects = await client.retrieve_all_pages("TriggeredSendDefinition", ["ObjectID"])

        assert objects == []


class TestMetadataSources:
    """Tests for query text hydration calls."""

    @pytest.mark.asyncio
    async def test_query_texts_skip_failures(self):
        soap = MagicMock()

        async def retrieve(object_type, properties, filter_xml):
            object_id = filter_xml[2].text
            if object_id == "q-bad":
                raise TransientNetworkError("timed out")
            return {"ok": True, "objects": [{"ObjectID": object_id, "QueryText": f"SELECT '{object_id}'"}]}

        soap.retrieve = retrieve
        sources = MetadataSources(MagicMock(), soap, AuditSettings(cache_dir="/tmp/unused"))

        texts = await sources.get_query_texts(["q-1", "q-bad", "q-2"], concurrency=2)

        assert texts == {"q-1": "SELECT 'q-1'", "q-2": "SELECT 'q-2'"}

    @pytest.mark.asyncio
    async def test_get_data_extension(self):
        soap = MagicMock()
        soap.retrieve_all_pages = AsyncMock(return_value=[{"ObjectID": "obj-1", "Name": "Orders"}])
        sources = MetadataSources(MagicMock(), soap, AuditSettings(cache_dir="/tmp/unused"))

        record = await sources.get_data_extension("DE_ORDERS")

        assert record == {"ObjectID": "obj-1", "Name": "Orders"}
        assert soap.retrieve_all_pages.await_args.args[0] == "DataExtension"


class TestTokenManager:
    """Tests for token retrieval and caching."""

    @pytest.mark.asyncio
    async def test_token_is_cached(self, config):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"access_token": f"tok-{len(calls)}", "expires_in": 1200})

        manager = TokenManager(config, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        assert await manager.get_token() == "tok-1"
        assert await manager.get_token() == "tok-1"
        assert len(calls) == 1
        assert str(calls[0].url) == "https://mc-test.auth.marketingcloudapis.com/v2/token"

    @pytest.mark.asyncio
    async def test_force_refresh_replaces_stale_token(self, config):
        counter = iter(range(1, 10))

        def handler(request):
            return httpx.Response(200, json={"access_token": f"tok-{next(counter)}", "expires_in": 1200})

        manager = TokenManager(config, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        first = await manager.get_token()

        assert await manager.force_refresh(first) == "tok-2"
        # A second caller holding the old token gets the new one without another request
        assert await manager.force_refresh(first) == "tok-2"

    @pytest.mark.asyncio
    async def test_auth_failure_is_connection_error(self, config):
        manager = TokenManager(
            config,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(401))),
        )

        with pytest.raises(PlatformConnectionError):
            await manager.get_token()
