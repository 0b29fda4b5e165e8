"""Tests for the tool catalog and the gateway client."""

import httpx
import pytest
from pydantic import ValidationError

from gateway_client.catalog import DEFAULT_TOOLS, ToolCatalog, ToolDefinition, load_catalog
from gateway_client.client import GatewayClientError
from helpers import IMPRESSIONS, GatewayStub, b64
from shared.errors import ToolArgumentsError, UnknownToolError
from shared.models import Attachment


class TestToolDefinition:
    """Tests for tool definitions."""

    def test_method_and_path_normalised(self):
        tool = ToolDefinition(name="t", description="d", method="post", path="items/{item_id}")

        assert tool.method == "POST"
        assert tool.path == "/items/{item_id}"
        assert tool.path_params == ["item_id"]

    def test_invalid_name_rejected(self):
        with pytest.raises(ValidationError):
            ToolDefinition(name="bad name!", description="d", path="/x")

    def test_invalid_schema_rejected(self):
        with pytest.raises(ValidationError, match="invalid input schema"):
            ToolDefinition(name="t", description="d", path="/x", input_schema={"type": "nonsense"})

    def test_llm_function_format(self):
        function = DEFAULT_TOOLS[0].to_llm_function()

        assert function["type"] == "function"
        assert function["function"]["name"] == "get_impressions"
        assert function["function"]["parameters"]["required"] == ["campaign_id"]


class TestToolCatalog:
    """Tests for the catalog registry and argument preparation."""

    def test_default_catalog(self):
        catalog = load_catalog()

        assert len(catalog) == 21
        assert [t["function"]["name"] for t in catalog.get_tools_for_llm()] == [
            "get_impressions",
            "get_pop_impressions",
            "list_campaigns",
            "search_campaigns",
            "list_advertisers",
            "search_creatives",
            "list_campaign_creatives",
            "list_devices",
            "get_device",
            "count_devices_by_region",
            "list_venues",
            "search_venues",
            "get_venue",
            "list_venue_devices",
            "list_pop",
            "search_pop",
            "get_pop_stats",
            "get_pop_trend",
            "get_latest_metrics",
            "get_metrics_history",
            "upload_creatives",
        ]
        assert all(tool.method == "GET" for tool in catalog.list_tools() if tool.name != "upload_creatives")

    def test_duplicate_registration_rejected(self):
        catalog = ToolCatalog(DEFAULT_TOOLS)
        with pytest.raises(ValueError, match="already registered"):
            catalog.register(DEFAULT_TOOLS[0])

    def test_unknown_tool(self):
        with pytest.raises(UnknownToolError):
            load_catalog().prepare_arguments("drop_tables", {})

    def test_defaults_applied(self):
        _, arguments = load_catalog().prepare_arguments(
            "get_pop_stats",
            {"group_by": "poster", "metric": "plays"}
        )
        assert arguments == {
            "group_by": "poster",
            "metric": "plays",
            "order": "top",
            "limit": 10,
            "last_days": 30,
        }

    def test_maximum_is_a_cap(self):
        catalog = load_catalog()

        _, arguments = catalog.prepare_arguments("list_campaigns", {"page_size": 1000})
        assert arguments["page_size"] == 200

        _, arguments = catalog.prepare_arguments("list_advertisers", {"page_size": 500})
        assert arguments["page_size"] == 100

    def test_pagination_defaults_and_caps(self):
        catalog = load_catalog()

        _, arguments = catalog.prepare_arguments("list_devices", {"page_size": 500})
        assert arguments == {"page": 1, "page_size": 100}

        _, arguments = catalog.prepare_arguments("list_pop", {"city": "brt", "page_size": 500})
        assert arguments == {"city": "brt", "page": 1, "page_size": 200}

        _, arguments = catalog.prepare_arguments("list_pop", {})
        assert arguments["page_size"] == 20

        _, arguments = catalog.prepare_arguments("get_latest_metrics", {})
        assert arguments == {"include_totals": False, "page": 1, "page_size": 50}

        _, arguments = catalog.prepare_arguments("get_metrics_history", {"server_id": "kiosk-7", "page_size": 999})
        assert arguments["page_size"] == 200

    def test_schema_violations(self):
        catalog = load_catalog()

        with pytest.raises(ToolArgumentsError) as excinfo:
            catalog.prepare_arguments("get_pop_stats", {"group_by": "planet", "metric": "plays"})
        assert excinfo.value.status_code == 422

        with pytest.raises(ToolArgumentsError):
            catalog.prepare_arguments("get_impressions", {})

        with pytest.raises(ToolArgumentsError):
            catalog.prepare_arguments("get_impressions", {"campaign_id": "c1", "extra": 1})

        with pytest.raises(ToolArgumentsError, match="JSON object"):
            catalog.prepare_arguments("get_impressions", ["c1"])

    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "tools.yaml"
        path.write_text(
            "tools:\n"
            "  - name: get_weather\n"
            "    description: Weather for a city\n"
            "    path: /weather/{city}\n"
            "    input_schema:\n"
            "      type: object\n"
            "      properties:\n"
            "        city: {type: string}\n"
            "      required: [city]\n"
        )

        catalog = load_catalog(path)

        assert len(catalog) == 1
        assert catalog.get("get_weather").path_params == ["city"]

    def test_load_from_empty_yaml(self, tmp_path):
        path = tmp_path / "tools.yaml"
        path.write_text("tools: []\n")
        with pytest.raises(ValueError, match="No tools"):
            load_catalog(path)


class TestToolGatewayClient:
    """Tests for gateway request mapping."""

    @pytest.mark.asyncio
    async def test_get_impressions(self, gateway_stub, gateway):
        gateway_stub.route("GET", "/ads/campaigns/c1/impressions", 200, IMPRESSIONS)

        result = await gateway.invoke("get_impressions", {"campaign_id": "c1"}, request_id="req-1")

        assert result.ok
        assert result.status_code == 200
        assert result.json_body()["impressions"] == 1200

        request = gateway_stub.requests[0]
        assert request.headers["X-API-Key"] == "gw-key"
        assert request.headers["X-Request-ID"] == "req-1"
        assert request.headers["Accept"] == "application/json"
        assert request.url.params.get("campaign_id") is None

    @pytest.mark.asyncio
    async def test_path_parameters_are_escaped(self, gateway_stub, gateway):
        result = await gateway.invoke("get_impressions", {"campaign_id": " a/b "})

        assert result.status_code == 404
        assert b"/ads/campaigns/a%2Fb/impressions" in gateway_stub.requests[0].url.raw_path

    @pytest.mark.asyncio
    async def test_query_parameters(self, gateway_stub, gateway):
        gateway_stub.route("GET", "/ads/campaigns", 200, {"data": []})

        await gateway.invoke("list_campaigns", {"advertiser_id": "adv-9", "page_size": 999})

        params = gateway_stub.requests[0].url.params
        assert params["advertiser_id"] == "adv-9"
        assert params["page"] == "1"
        assert params["page_size"] == "200"
        assert "status" not in params

    @pytest.mark.asyncio
    async def test_metrics_query_sends_totals_flag(self, gateway_stub, gateway):
        gateway_stub.route("GET", "/metrics/history", 200, {"items": []})

        await gateway.invoke("get_metrics_history", {"server_id": "kiosk-7"})

        params = gateway_stub.requests[0].url.params
        assert params["server_id"] == "kiosk-7"
        assert params["include_totals"] == "false"
        assert params["page_size"] == "50"

    @pytest.mark.asyncio
    async def test_numeric_path_parameter(self, gateway_stub, gateway):
        gateway_stub.route("GET", "/ads/venues/42/devices", 200, {"items": []})

        result = await gateway.invoke("list_venue_devices", {"venue_id": 42})

        assert result.ok
        assert gateway_stub.requests[0].url.params["page_size"] == "20"
        assert "venue_id" not in gateway_stub.requests[0].url.params

    @pytest.mark.asyncio
    async def test_unknown_tool_makes_no_request(self, gateway_stub, gateway):
        with pytest.raises(UnknownToolError):
            await gateway.invoke("delete_everything", {})
        assert gateway_stub.requests == []

    @pytest.mark.asyncio
    async def test_invalid_arguments_make_no_request(self, gateway_stub, gateway):
        with pytest.raises(ToolArgumentsError):
            await gateway.invoke("search_creatives", {})
        assert gateway_stub.requests == []

    @pytest.mark.asyncio
    async def test_non_success_status_is_returned(self, gateway_stub, gateway):
        gateway_stub.route("GET", "/ads/campaigns/c1/impressions", 500, {"error": "boom"})

        result = await gateway.invoke("get_impressions", {"campaign_id": "c1"})

        assert not result.ok
        assert result.status_code == 500
        assert result.error is None
        assert "boom" in result.text()

    @pytest.mark.asyncio
    async def test_transport_error_reports_status_zero(self, gateway_stub, gateway):
        gateway_stub.fail("GET", "/ads/campaigns/c1/impressions", httpx.ConnectError("refused"))

        result = await gateway.invoke("get_impressions", {"campaign_id": "c1"})

        assert result.status_code == 0
        assert result.error == "ConnectError: refused"
        assert not result.ok

    @pytest.mark.asyncio
    async def test_undecodable_body_reports_status_zero(self, gateway_stub, gateway):
        gateway_stub.respond(
            "GET",
            "/ads/campaigns/c1/impressions",
            httpx.Response(
                200,
                headers={"Content-Encoding": "gzip"},
                stream=httpx.ByteStream(b"not-gzip-data")
            )
        )

        result = await gateway.invoke("get_impressions", {"campaign_id": "c1"})

        assert result.status_code == 0
        assert result.error.startswith("DecodingError")
        assert not result.ok

    @pytest.mark.asyncio
    async def test_multipart_upload(self, gateway_stub, gateway):
        gateway_stub.route("POST", "/ads/creatives/upload", 201, {"uploaded": 1})
        attachment = Attachment(file_name="poster.png", content_type="image/png", base64=b64(b"PNGDATA"))

        result = await gateway.invoke(
            "upload_creatives",
            {"campaign_id": "c1", "selected_days": ["mon", "tue"]},
            attachments=[attachment]
        )

        assert result.status_code == 201
        request = gateway_stub.requests[0]
        assert request.headers["Content-Type"].startswith("multipart/form-data")
        assert request.content.count(b'name="selected_days"') == 2
        assert b'filename="poster.png"' in request.content
        assert b"PNGDATA" in request.content

    @pytest.mark.asyncio
    async def test_upload_without_attachments(self, gateway_stub, gateway):
        with pytest.raises(ToolArgumentsError, match="no attachments"):
            await gateway.invoke("upload_creatives", {"campaign_id": "c1"})
        assert gateway_stub.requests == []

    @pytest.mark.asyncio
    async def test_health_check(self, gateway_stub, gateway):
        gateway_stub.route("GET", "/health", 200, {"status": "healthy"})
        assert await gateway.health_check() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_health_check_failure(self, gateway_stub, gateway):
        gateway_stub.route("GET", "/health", 503, {"status": "down"})
        with pytest.raises(GatewayClientError):
            await gateway.health_check()

    @pytest.mark.asyncio
    async def test_no_api_key_header_when_unset(self):
        stub = GatewayStub()
        stub.route("GET", "/ads/advertisers", 200, {"data": []})

        async with stub.client(api_key="") as client:
            await client.invoke("list_advertisers", {})

        assert "X-API-Key" not in stub.requests[0].headers
