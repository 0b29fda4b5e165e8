"""Tool catalog for the gateway client.

The catalog is the closed set of tools the model may request. Each tool maps
to exactly one HTTP operation on the tool gateway and declares a JSON Schema
for its arguments. The catalog is fixed at startup; it is never discovered
from the gateway at runtime.
"""

import re
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from jsonschema import SchemaError
from pydantic import BaseModel, Field, field_validator

from shared.errors import ToolArgumentsError, UnknownToolError
from shared.logging import get_logger
from shared.schema import apply_defaults, check_schema, validate_schema

logger = get_logger(__name__)

_PATH_PARAM = re.compile(r"{([A-Za-z_][A-Za-z0-9_]*)}")


class ToolDefinition(BaseModel):
    """A single tool the model may call, bound to one gateway operation."""
    name: str = Field(..., pattern=r"^[a-zA-Z0-9_-]{1,64}$")
    description: str = Field(..., min_length=1)
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = Field(default="GET")
    path: str = Field(..., description="Path template, e.g. /ads/campaigns/{campaign_id}")
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    body: Literal["query", "json", "multipart"] = Field(
        default="query",
        description="Where non-path arguments are sent"
    )
    uploads_attachments: bool = Field(
        default=False,
        description="Send the turn's attachments as multipart files"
    )

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("path")
    @classmethod
    def leading_slash(cls, value: str) -> str:
        value = value.strip()
        return value if value.startswith("/") else f"/{value}"

    @field_validator("input_schema")
    @classmethod
    def valid_schema(cls, value: dict[str, Any]) -> dict[str, Any]:
        try:
            check_schema(value)
        except SchemaError as e:
            raise ValueError(f"invalid input schema: {e.message}")
        return value

    @property
    def path_params(self) -> list[str]:
        """Argument names substituted into the path template."""
        return _PATH_PARAM.findall(self.path)

    def to_llm_function(self) -> dict[str, Any]:
        """Render in OpenAI function-calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


def _clamp_to_maximum(arguments: dict[str, Any], schema: dict[str, Any]) -> dict[str, Any]:
    """Cap numeric arguments at their declared ``maximum``."""
    result = dict(arguments)
    for name, prop in schema.get("properties", {}).items():
        if not isinstance(prop, dict) or "maximum" not in prop:
            continue
        value = result.get(name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if value > prop["maximum"]:
            result[name] = prop["maximum"]
    return result


class ToolCatalog:
    """
    Registry of the tools exposed to the model.

    Responsibilities:
    - Register and look up tools by name
    - Render tool definitions for the model
    - Prepare call arguments (defaults, caps, schema validation)
    """

    def __init__(self, tools: Optional[list[ToolDefinition]] = None) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        if tools:
            self.register_many(tools)

    def register(self, tool: ToolDefinition) -> None:
        """
        Register a tool in the catalog.

        Raises:
            ValueError: If tool name is already registered
        """
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def register_many(self, tools: list[ToolDefinition]) -> None:
        """Register multiple tools at once."""
        for tool in tools:
            self.register(tool)

    def get(self, tool_name: str) -> Optional[ToolDefinition]:
        return self._tools.get(tool_name)

    def list_tools(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def get_tools_for_llm(self) -> list[dict[str, Any]]:
        """Tool definitions in OpenAI function-calling format, in registration order."""
        return [tool.to_llm_function() for tool in self._tools.values()]

    def prepare_arguments(
        self,
        tool_name: str,
        arguments: Any
    ) -> tuple[ToolDefinition, dict[str, Any]]:
        """
        Resolve a tool and normalise its arguments for execution.

        Defaults declared by the schema are filled in and numeric values are
        capped at their ``maximum`` before validation.

        Args:
            tool_name: Name requested by the model
            arguments: Decoded JSON arguments

        Returns:
            Tuple of (tool definition, prepared arguments)

        Raises:
            UnknownToolError: If the tool is not in the catalog
            ToolArgumentsError: If the arguments do not satisfy the schema
        """
        tool = self.get(tool_name)
        if tool is None:
            raise UnknownToolError(tool_name)

        if not isinstance(arguments, dict):
            raise ToolArgumentsError(tool_name, ["arguments must be a JSON object"])

        prepared = apply_defaults(arguments, tool.input_schema)
        prepared = _clamp_to_maximum(prepared, tool.input_schema)

        is_valid, errors = validate_schema(prepared, tool.input_schema)
        if not is_valid:
            raise ToolArgumentsError(tool_name, errors)

        return tool, prepared


def _page_schema(page_size_default: int, page_size_max: int) -> dict[str, Any]:
    return {
        "page": {"type": "integer", "minimum": 1, "default": 1},
        "page_size": {
            "type": "integer",
            "minimum": 1,
            "maximum": page_size_max,
            "default": page_size_default,
        },
    }


def _object(properties: dict[str, Any], required: Optional[list[str]] = None) -> dict[str, Any]:
    schema: dict[str, Any] = {
        "type": "object",
        "properties": properties,
        "additionalProperties": False,
    }
    if required:
        schema["required"] = required
    return schema


_ID = {"type": "string", "minLength": 1}

# Ads list endpoints page 20 at a time (capped at 100); campaigns are the exception
_ADS_PAGE = _page_schema(20, 100)
_METRICS_QUERY = {
    "server_id": {**_ID, "description": "Restrict to one server (device host name)"},
    "include_totals": {"type": "boolean", "default": False},
    **_page_schema(50, 200),
}

DEFAULT_TOOLS: list[ToolDefinition] = [
    ToolDefinition(
        name="get_impressions",
        description="Get total impressions and the per-poster breakdown for one ad campaign.",
        path="/ads/campaigns/{campaign_id}/impressions",
        input_schema=_object(
            {"campaign_id": {**_ID, "description": "Campaign identifier"}},
            required=["campaign_id"],
        ),
    ),
    ToolDefinition(
        name="get_pop_impressions",
        description=(
            "Impressions for one campaign computed from proof-of-play records. "
            "Use when get_impressions has no data for the campaign."
        ),
        path="/pop/impressions",
        input_schema=_object({"campaign_id": _ID}, required=["campaign_id"]),
    ),
    ToolDefinition(
        name="list_campaigns",
        description="List ad campaigns, optionally filtered by advertiser or status.",
        path="/ads/campaigns",
        input_schema=_object({
            "advertiser_id": _ID,
            "status": _ID,
            **_page_schema(50, 200),
        }),
    ),
    ToolDefinition(
        name="search_campaigns",
        description="Search ad campaigns by name or keyword.",
        path="/ads/campaigns/search",
        input_schema=_object({"query": _ID}, required=["query"]),
    ),
    ToolDefinition(
        name="list_advertisers",
        description="List advertisers.",
        path="/ads/advertisers",
        input_schema=_object(dict(_ADS_PAGE)),
    ),
    ToolDefinition(
        name="search_creatives",
        description="Search ad creatives (posters) by name, keyword or poster ID.",
        path="/ads/creatives/search",
        input_schema=_object({"query": _ID}, required=["query"]),
    ),
    ToolDefinition(
        name="list_campaign_creatives",
        description="List the creatives (posters) that belong to one campaign.",
        path="/ads/creatives/campaign/{campaign_id}",
        input_schema=_object({"campaign_id": _ID}, required=["campaign_id"]),
    ),
    ToolDefinition(
        name="list_devices",
        description="List display devices, optionally filtered by city or region code.",
        path="/ads/devices",
        input_schema=_object({"city": _ID, "region": _ID, **_ADS_PAGE}),
    ),
    ToolDefinition(
        name="get_device",
        description="Get one display device by its host name.",
        path="/ads/devices/{host_name}",
        input_schema=_object({"host_name": _ID}, required=["host_name"]),
    ),
    ToolDefinition(
        name="count_devices_by_region",
        description="Count display devices per region, optionally for a single city.",
        path="/ads/devices/counts/regions",
        input_schema=_object({"city": _ID}),
    ),
    ToolDefinition(
        name="list_venues",
        description="List venues where devices are installed.",
        path="/ads/venues",
        input_schema=_object(dict(_ADS_PAGE)),
    ),
    ToolDefinition(
        name="search_venues",
        description="Search venues by name or address.",
        path="/ads/venues/search",
        input_schema=_object({"query": _ID}, required=["query"]),
    ),
    ToolDefinition(
        name="get_venue",
        description="Get one venue by its numeric ID.",
        path="/ads/venues/{venue_id}",
        input_schema=_object({"venue_id": {"type": "integer", "minimum": 1}}, required=["venue_id"]),
    ),
    ToolDefinition(
        name="list_venue_devices",
        description="List the devices installed at one venue.",
        path="/ads/venues/{venue_id}/devices",
        input_schema=_object(
            {"venue_id": {"type": "integer", "minimum": 1}, **_ADS_PAGE},
            required=["venue_id"],
        ),
    ),
    ToolDefinition(
        name="list_pop",
        description=(
            "List proof-of-play records, filtered by city, device host, poster "
            "or time range. Dates are ISO 8601; preset accepts today or yesterday."
        ),
        path="/pop",
        input_schema=_object({
            "city": _ID,
            "host_name": _ID,
            "poster_id": _ID,
            "poster_name": _ID,
            "from": _ID,
            "to": _ID,
            "preset": {"type": "string", "enum": ["today", "yesterday"]},
            **_page_schema(20, 200),
        }),
    ),
    ToolDefinition(
        name="search_pop",
        description="Full-text search over proof-of-play records.",
        path="/pop/search",
        input_schema=_object({"q": _ID}, required=["q"]),
    ),
    ToolDefinition(
        name="get_pop_stats",
        description=(
            "Proof-of-play statistics ranked by a metric, grouped by poster, "
            "device, kiosk or city."
        ),
        path="/pop/stats",
        input_schema=_object(
            {
                "group_by": {"type": "string", "enum": ["poster", "device", "kiosk", "city"]},
                "metric": {"type": "string", "enum": ["clicks", "plays", "count"]},
                "order": {"type": "string", "enum": ["top", "bottom"], "default": "top"},
                "city": _ID,
                "region": _ID,
                "limit": {"type": "integer", "minimum": 1, "maximum": 200, "default": 10},
                "last_days": {"type": "integer", "minimum": 1, "default": 30},
            },
            required=["group_by", "metric"],
        ),
    ),
    ToolDefinition(
        name="get_pop_trend",
        description="Proof-of-play trend over time for one poster, device or city.",
        path="/pop/trend",
        input_schema=_object(
            {
                "dimension": {"type": "string", "enum": ["poster", "device", "city"]},
                "key": {**_ID, "description": "Poster ID, device host name or city code"},
                "metric": {"type": "string", "enum": ["clicks", "plays", "count"]},
            },
            required=["dimension", "key", "metric"],
        ),
    ),
    ToolDefinition(
        name="get_latest_metrics",
        description="Latest telemetry reported by each server (device).",
        path="/metrics/latest",
        input_schema=_object(dict(_METRICS_QUERY)),
    ),
    ToolDefinition(
        name="get_metrics_history",
        description="Historical telemetry samples, optionally for one server.",
        path="/metrics/history",
        input_schema=_object(dict(_METRICS_QUERY)),
    ),
    ToolDefinition(
        name="upload_creatives",
        description=(
            "Upload the files attached to this message as creatives for a campaign, "
            "with the days, time slots and devices they should run on."
        ),
        method="POST",
        path="/ads/creatives/upload",
        body="multipart",
        uploads_attachments=True,
        input_schema=_object(
            {
                "campaign_id": _ID,
                "selected_days": {"type": "array", "items": {"type": "string"}, "default": []},
                "time_slots": {"type": "array", "items": {"type": "string"}, "default": []},
                "devices": {"type": "array", "items": {"type": "string"}, "default": []},
            },
            required=["campaign_id"],
        ),
    ),
]


def load_catalog(tools_path: Optional[str | Path] = None) -> ToolCatalog:
    """
    Build the tool catalog.

    Args:
        tools_path: Optional YAML file with a top-level ``tools`` list that
            replaces the built-in tools

    Returns:
        Populated catalog
    """
    if not tools_path:
        return ToolCatalog(DEFAULT_TOOLS)

    path = Path(tools_path)
    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    tools = [ToolDefinition.model_validate(item) for item in raw.get("tools", [])]
    if not tools:
        raise ValueError(f"No tools defined in {path}")

    logger.info("Tool catalog loaded", path=str(path), tool_count=len(tools))
    return ToolCatalog(tools)
