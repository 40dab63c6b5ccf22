"""Agent tool definitions generated from LAVS manifests"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from lavs.gateway import LavsGateway
from lavs.types import Endpoint, LAVSError, LAVSErrorCode, Manifest

logger = logging.getLogger(__name__)

TOOL_PREFIX = "lavs_"

ToolExecutor = Callable[[Dict[str, Any]], Awaitable[Any]]


class ToolDefinition(BaseModel):
    name: str
    description: str
    input_schema: Dict[str, Any]


class GeneratedTool(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    tool: ToolDefinition
    endpoint_id: str
    execute: ToolExecutor


class LavsToolGenerator:
    """Exposes an agent's query and mutation endpoints as callable tools.

    Each tool runs through the gateway, so validation, permissions and rate
    limits apply exactly as for a direct call.
    """

    def __init__(self, gateway: LavsGateway):
        self.gateway = gateway

    def has_lavs(self, agent_id: str) -> bool:
        return self.gateway.load_manifest(agent_id) is not None

    def generate_tools(self, agent_id: str, project_path: Optional[str] = None) -> List[GeneratedTool]:
        manifest = self.gateway.load_manifest(agent_id)
        if manifest is None:
            return []

        tools = [
            self.generate_tool(agent_id, manifest, endpoint, project_path)
            for endpoint in manifest.endpoints
            if endpoint.method != "subscription"
        ]
        logger.info(f"Generated {len(tools)} LAVS tools for agent {agent_id}")
        return tools

    def generate_tool(
        self,
        agent_id: str,
        manifest: Manifest,
        endpoint: Endpoint,
        project_path: Optional[str] = None
    ) -> GeneratedTool:
        input_schema = (endpoint.schema_.input if endpoint.schema_ else None) or {
            "type": "object",
            "properties": {},
        }
        if input_schema.get("type") != "object":
            raise LAVSError(
                LAVSErrorCode.InvalidRequest,
                f"Endpoint {endpoint.id} must have object input schema"
            )

        tool = ToolDefinition(
            name=f"{TOOL_PREFIX}{endpoint.id}",
            description=endpoint.description or f"Call {endpoint.id} endpoint from {manifest.name}",
            input_schema={
                "type": "object",
                "properties": input_schema.get("properties", {}),
                "required": input_schema.get("required", []),
            },
        )

        gateway = self.gateway
        endpoint_id = endpoint.id

        async def execute(params: Dict[str, Any]) -> Any:
            logger.debug(f"Executing tool {tool.name}")
            return await gateway.call(agent_id, endpoint_id, params, project_path)

        return GeneratedTool(tool=tool, endpoint_id=endpoint_id, execute=execute)
