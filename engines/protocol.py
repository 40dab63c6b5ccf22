"""AgentEngine protocol definition and shared engine types"""
from typing import (
    Any, AsyncIterator, Awaitable, Callable, Dict, List, Literal, Optional, Protocol, Union
)

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.events import Event

EngineType = Literal["claude", "cursor"]

EventCallback = Callable[[Event], Union[None, Awaitable[None]]]


class EngineError(Exception):
    """Engine-level failure carrying a machine-readable code"""

    def __init__(self, message: str, code: str = "ENGINE_ERROR"):
        super().__init__(message)
        self.code = code


class EngineNotFoundError(EngineError):
    """No engine registered for the requested type"""

    def __init__(self, engine_type: str):
        super().__init__(f"Engine not registered: {engine_type}", code="ENGINE_NOT_FOUND")
        self.engine_type = engine_type


class SessionNotFoundError(EngineError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", code="SESSION_NOT_FOUND")
        self.session_id = session_id


class EngineConfig(BaseModel):
    """Per-call engine input, immutable once built"""
    model_config = ConfigDict(frozen=True)

    workspace: str
    session_id: Optional[str] = None
    provider_id: Optional[str] = None
    model: Optional[str] = None
    permission_mode: Optional[str] = None
    allowed_tools: Optional[List[str]] = None
    env: Dict[str, str] = Field(default_factory=dict)
    system_prompt: Optional[str] = None
    # Seconds; None means the engine default
    timeout: Optional[float] = None


class ModelInfo(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str
    is_vision: bool = False
    is_thinking: bool = False
    description: Optional[str] = None


class McpCapability(BaseModel):
    supported: bool = False
    config_path: Optional[str] = None
    dynamic_tool_loading: bool = False


class SkillsCapability(BaseModel):
    supported: bool = False
    skills_path: Optional[str] = None
    rule_format: str = "markdown"


class FeatureFlags(BaseModel):
    multi_turn: bool = True
    thinking: bool = True
    vision: bool = True
    streaming: bool = True
    subagents: bool = False
    code_execution: bool = True


class UiCapabilities(BaseModel):
    show_mcp_tool_selector: bool = False
    show_image_upload: bool = True
    show_permission_selector: bool = False
    show_provider_selector: bool = False
    show_model_selector: bool = True
    show_env_vars: bool = False


class EngineCapabilities(BaseModel):
    """Static capability declaration for an engine type"""
    model_config = ConfigDict(frozen=True)

    mcp: McpCapability = Field(default_factory=McpCapability)
    skills: SkillsCapability = Field(default_factory=SkillsCapability)
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    permission_modes: List[str] = Field(default_factory=list)
    ui: UiCapabilities = Field(default_factory=UiCapabilities)


class SendResult(BaseModel):
    session_id: str
    status: Literal["finished", "error"] = "finished"
    error: Optional[str] = None


class AgentEngine(Protocol):
    """Uniform interface for SDK- and CLI-driven agent backends"""

    engine_type: str
    capabilities: EngineCapabilities

    def stream_message(self, message: str, config: EngineConfig) -> AsyncIterator[Event]:
        """
        Run one conversational turn and stream AGUI events.

        Exactly one RUN_STARTED is yielded first and exactly one terminal
        event (RUN_FINISHED or RUN_ERROR) last.
        """
        ...

    async def send_message(
        self,
        message: str,
        config: EngineConfig,
        on_event: Optional[EventCallback] = None
    ) -> SendResult:
        """Run one turn, delivering events to a callback"""
        ...

    async def interrupt_session(self, session_id: str) -> None:
        """Terminate an in-flight run; raises SessionNotFoundError if unknown"""
        ...

    async def get_supported_models(self) -> List[ModelInfo]:
        ...

    def get_active_session_count(self) -> int:
        ...

    async def close(self) -> None:
        ...


def dump_capabilities(capabilities: EngineCapabilities) -> Dict[str, Any]:
    """Capabilities in the camelCase shape the frontend expects"""
    def camelize(value: Any) -> Any:
        if isinstance(value, dict):
            return {to_camel(k): camelize(v) for k, v in value.items()}
        if isinstance(value, list):
            return [camelize(v) for v in value]
        return value

    return camelize(capabilities.model_dump())
