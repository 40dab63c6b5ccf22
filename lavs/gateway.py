"""LAVS endpoint call pipeline"""
import logging
import math
import os
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from core.settings import LavsSettings
from core.telemetry import telemetry
from lavs.function_executor import FunctionExecutor
from lavs.http_executor import HttpExecutor
from lavs.loader import MANIFEST_FILENAME, ManifestLoader
from lavs.permissions import PermissionChecker
from lavs.rate_limiter import RateLimiter
from lavs.script_executor import ScriptExecutor
from lavs.types import (
    Endpoint,
    ExecutionContext,
    FunctionHandler,
    HttpHandler,
    LAVSError,
    LAVSErrorCode,
    Manifest,
    McpHandler,
    ScriptHandler,
)
from lavs.validator import LAVSValidator

logger = logging.getLogger(__name__)

SAFE_AGENT_ID = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]*$")


def assert_safe_agent_id(agent_id: str) -> None:
    if not agent_id or not SAFE_AGENT_ID.match(agent_id) or ".." in agent_id:
        raise LAVSError(
            LAVSErrorCode.InvalidRequest,
            f"Invalid agent ID: '{agent_id}'. Only alphanumeric, hyphen, underscore, "
            f"and dot characters are allowed."
        )


class LavsGateway:
    """Runs LAVS endpoint calls for agents found under the configured directories.

    Pipeline per call: manifest lookup, input validation, permission checks,
    rate limiting, handler execution, output validation. Validation and
    permission failures happen before anything executes.
    """

    def __init__(
        self,
        settings: Optional[LavsSettings] = None,
        loader: Optional[ManifestLoader] = None,
        validator: Optional[LAVSValidator] = None,
        permission_checker: Optional[PermissionChecker] = None,
        rate_limiter: Optional[RateLimiter] = None,
        script_executor: Optional[ScriptExecutor] = None,
        function_executor: Optional[FunctionExecutor] = None,
        http_executor: Optional[HttpExecutor] = None
    ):
        self.settings = settings or LavsSettings()
        self.loader = loader or ManifestLoader()
        self.validator = validator or LAVSValidator()
        self.permissions = permission_checker or PermissionChecker()
        self.rate_limiter = rate_limiter or RateLimiter(
            max_requests=self.settings.rate_limit_max_requests,
            window_ms=self.settings.rate_limit_window_ms
        )
        self.script_executor = script_executor or ScriptExecutor()
        self.function_executor = function_executor or FunctionExecutor()
        self.http_executor = http_executor or HttpExecutor()
        self._manifests: Dict[str, Manifest] = {}

    # Agents and manifests

    def get_agent_directory(self, agent_id: str) -> str:
        """First configured agents dir containing the agent, else the first dir"""
        assert_safe_agent_id(agent_id)
        candidates: List[Path] = [Path(d).expanduser() / agent_id for d in self.settings.agents_dirs]
        if not candidates:
            candidates = [Path.cwd() / "agents" / agent_id]

        for candidate in candidates:
            if candidate.is_dir():
                return str(candidate.resolve())
        return str(candidates[0].resolve())

    def load_manifest(self, agent_id: str) -> Optional[Manifest]:
        """Cached manifest for an agent, or None when it has no ``lavs.json``"""
        cached = self._manifests.get(agent_id)
        if cached is not None:
            return cached

        manifest_path = os.path.join(self.get_agent_directory(agent_id), MANIFEST_FILENAME)
        if not os.path.isfile(manifest_path):
            return None

        manifest = self.loader.load(manifest_path)
        self._manifests[agent_id] = manifest
        return manifest

    def require_manifest(self, agent_id: str) -> Manifest:
        manifest = self.load_manifest(agent_id)
        if manifest is None:
            raise LAVSError(LAVSErrorCode.MethodNotFound, "Agent does not have LAVS configuration")
        return manifest

    def clear_cache(self, agent_id: Optional[str] = None) -> None:
        if agent_id:
            self._manifests.pop(agent_id, None)
        else:
            self._manifests.clear()
        self.validator.clear_cache()

    # Calls

    async def call(
        self,
        agent_id: str,
        endpoint_id: str,
        data: Any = None,
        project_path: Optional[str] = None
    ) -> Any:
        """Execute one endpoint call and return its (validated) result"""
        start = time.monotonic()
        telemetry.log_lavs_request("start", agent_id, endpoint_id, project_path=project_path)

        try:
            result = await self._call(agent_id, endpoint_id, {} if data is None else data, project_path)
        except LAVSError as e:
            telemetry.log_lavs_request(
                "error", agent_id, endpoint_id,
                duration_ms=_elapsed_ms(start), error_code=int(e.code), error=e.message
            )
            raise
        except Exception as e:
            logger.error(f"Unexpected LAVS failure for {agent_id}/{endpoint_id}: {e}", exc_info=True)
            telemetry.log_lavs_request(
                "error", agent_id, endpoint_id,
                duration_ms=_elapsed_ms(start), error_code=int(LAVSErrorCode.InternalError), error=str(e)
            )
            raise LAVSError(LAVSErrorCode.InternalError, str(e) or type(e).__name__) from e

        telemetry.log_lavs_request("success", agent_id, endpoint_id, duration_ms=_elapsed_ms(start))
        return result

    async def _call(self, agent_id: str, endpoint_id: str, data: Any, project_path: Optional[str]) -> Any:
        manifest = self.require_manifest(agent_id)

        endpoint = manifest.get_endpoint(endpoint_id)
        if endpoint is None:
            raise LAVSError(LAVSErrorCode.MethodNotFound, f"Endpoint not found: {endpoint_id}")
        if endpoint.method == "subscription":
            raise LAVSError(
                LAVSErrorCode.InvalidRequest,
                f"Subscription endpoint '{endpoint_id}' requires a streaming connection"
            )

        self.validator.assert_valid_input(endpoint, data)

        agent_dir = self.get_agent_directory(agent_id)
        context = self.build_context(agent_id, agent_dir, manifest, endpoint, project_path)
        if isinstance(endpoint.handler, ScriptHandler):
            self.permissions.assert_allowed(endpoint.handler, context.permissions, agent_dir)

        limit = self.rate_limiter.check(f"{agent_id}:{endpoint_id}")
        if not limit.allowed:
            retry_after = max(0, math.ceil((limit.reset_at - time.time() * 1000) / 1000))
            raise LAVSError(
                LAVSErrorCode.RateLimited,
                f"Rate limit exceeded for endpoint '{endpoint_id}'. Try again later.",
                {"retryAfter": retry_after, "resetAt": limit.reset_at}
            )

        result = await self.execute_handler(endpoint, data, context)
        self.validator.assert_valid_output(endpoint, result)
        return result

    def build_context(
        self,
        agent_id: str,
        agent_dir: str,
        manifest: Manifest,
        endpoint: Endpoint,
        project_path: Optional[str] = None
    ) -> ExecutionContext:
        permissions = self.permissions.merge_permissions(manifest.permissions, endpoint.permissions)
        env = {"LAVS_PROJECT_PATH": project_path} if project_path else {}
        return ExecutionContext(
            agent_id=agent_id,
            endpoint_id=endpoint.id,
            workdir=agent_dir,
            env=env,
            timeout=self.permissions.get_effective_timeout(
                endpoint.handler, permissions, self.settings.default_timeout_ms
            ),
            permissions=permissions,
        )

    async def execute_handler(self, endpoint: Endpoint, data: Any, context: ExecutionContext) -> Any:
        handler = endpoint.handler
        if isinstance(handler, ScriptHandler):
            return await self.script_executor.execute(handler, data, context)
        if isinstance(handler, FunctionHandler):
            return await self.function_executor.execute(handler, data, context)
        if isinstance(handler, HttpHandler):
            return await self.http_executor.execute(handler, data, context)
        if isinstance(handler, McpHandler):
            raise LAVSError(
                LAVSErrorCode.MethodNotFound,
                f"MCP handlers are not yet implemented (endpoint '{endpoint.id}')"
            )
        raise LAVSError(LAVSErrorCode.InternalError, f"Unsupported handler for endpoint '{endpoint.id}'")

    async def handle(
        self,
        agent_id: str,
        endpoint_id: str,
        data: Any = None,
        project_path: Optional[str] = None,
        request_id: Union[str, int, None] = None
    ) -> Dict[str, Any]:
        """JSON-RPC 2.0 envelope around ``call``"""
        envelope: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}
        try:
            envelope["result"] = await self.call(agent_id, endpoint_id, data, project_path)
        except LAVSError as e:
            envelope["error"] = e.to_dict()
        return envelope

    def cleanup(self) -> int:
        return self.rate_limiter.cleanup()

    async def close(self) -> None:
        await self.http_executor.close()
        self.function_executor.shutdown()


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)
