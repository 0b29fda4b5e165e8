"""Tool gateway client.

Holds the static tool catalog the model may call and executes each tool
call as a single HTTP request against the tool gateway.
"""

from gateway_client.catalog import DEFAULT_TOOLS, ToolCatalog, ToolDefinition, load_catalog
from gateway_client.client import GatewayResult, ToolGatewayClient

__all__ = [
    "DEFAULT_TOOLS",
    "ToolCatalog",
    "ToolDefinition",
    "load_catalog",
    "GatewayResult",
    "ToolGatewayClient",
]
