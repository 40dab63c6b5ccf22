"""LAVS manifest models and error taxonomy"""
from enum import IntEnum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class LAVSErrorCode(IntEnum):
    """JSON-RPC 2.0 style error codes"""
    ParseError = -32700
    InvalidRequest = -32600
    MethodNotFound = -32601
    InvalidParams = -32602
    InternalError = -32603
    RateLimited = -32000
    PermissionDenied = -32001
    Timeout = -32002
    HandlerError = -32003


_HTTP_STATUS = {
    LAVSErrorCode.ParseError: 400,
    LAVSErrorCode.InvalidRequest: 400,
    LAVSErrorCode.InvalidParams: 400,
    LAVSErrorCode.MethodNotFound: 404,
    LAVSErrorCode.PermissionDenied: 403,
    LAVSErrorCode.RateLimited: 429,
    LAVSErrorCode.Timeout: 504,
}


class LAVSError(Exception):
    """LAVS failure with a stable code, message and optional detail"""

    def __init__(self, code: LAVSErrorCode, message: str, data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = LAVSErrorCode(code)
        self.message = message
        self.data = data

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS.get(self.code, 500)

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": int(self.code), "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error

    def __repr__(self) -> str:
        return f"LAVSError({self.code.name}, {self.message!r})"


class LavsModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class Permissions(LavsModel):
    file_access: Optional[List[str]] = None
    network_access: Optional[bool] = None
    # Milliseconds
    max_execution_time: Optional[int] = None
    # Bytes
    max_memory: Optional[int] = None


class ScriptHandler(LavsModel):
    type: Literal["script"] = "script"
    command: str
    args: List[str] = Field(default_factory=list)
    input: Optional[Literal["stdin", "env"]] = None
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[int] = None


class FunctionHandler(LavsModel):
    type: Literal["function"] = "function"
    module: str
    function: str


class HttpHandler(LavsModel):
    type: Literal["http"] = "http"
    url: str
    method: str
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[int] = None


class McpHandler(LavsModel):
    type: Literal["mcp"] = "mcp"
    server: str
    tool: str


Handler = Annotated[
    Union[ScriptHandler, FunctionHandler, HttpHandler, McpHandler],
    Field(discriminator="type"),
]


class EndpointSchema(LavsModel):
    input: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None


class Endpoint(LavsModel):
    id: str
    method: Literal["query", "mutation", "subscription"]
    description: Optional[str] = None
    handler: Handler
    schema_: Optional[EndpointSchema] = Field(default=None, alias="schema")
    permissions: Optional[Permissions] = None


class LocalComponent(LavsModel):
    type: Literal["local"] = "local"
    path: str


class UrlComponent(LavsModel):
    type: Literal["url"] = "url"
    url: str


class ViewConfig(LavsModel):
    component: Annotated[Union[LocalComponent, UrlComponent], Field(discriminator="type")]
    icon: Optional[str] = None


class Manifest(LavsModel):
    lavs: str
    name: str
    version: str
    description: Optional[str] = None
    endpoints: List[Endpoint]
    permissions: Optional[Permissions] = None
    view: Optional[ViewConfig] = None

    def get_endpoint(self, endpoint_id: str) -> Optional[Endpoint]:
        for endpoint in self.endpoints:
            if endpoint.id == endpoint_id:
                return endpoint
        return None


class ExecutionContext(BaseModel):
    """Per-call execution context; never persisted"""
    agent_id: str
    endpoint_id: str
    workdir: str
    env: Dict[str, str] = Field(default_factory=dict)
    # Milliseconds
    timeout: int = 30000
    permissions: Permissions = Field(default_factory=Permissions)
