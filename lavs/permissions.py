"""LAVS permission checks: path traversal, file access globs, timeouts"""
import logging
import os
from typing import Optional, Union

from wcmatch import glob

from lavs.types import (
    FunctionHandler,
    HttpHandler,
    LAVSError,
    LAVSErrorCode,
    McpHandler,
    Permissions,
    ScriptHandler,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000

GLOB_FLAGS = glob.GLOBSTAR


def _strip_dot_slash(value: str) -> str:
    while value.startswith("./"):
        value = value[2:]
    return value


class PermissionChecker:
    """Enforces the sandbox declared by manifest and endpoint permissions"""

    def merge_permissions(
        self,
        manifest_permissions: Optional[Permissions],
        endpoint_permissions: Optional[Permissions]
    ) -> Permissions:
        """Endpoint fields override manifest fields wholesale (no array union)"""
        if manifest_permissions is None and endpoint_permissions is None:
            return Permissions()
        if manifest_permissions is None:
            return endpoint_permissions.model_copy(deep=True)
        if endpoint_permissions is None:
            return manifest_permissions.model_copy(deep=True)

        merged = {}
        for field in Permissions.model_fields:
            value = getattr(endpoint_permissions, field)
            merged[field] = value if value is not None else getattr(manifest_permissions, field)
        return Permissions(**merged)

    def check_path_traversal(self, target_path: str, allowed_base: str) -> str:
        """Resolve ``target_path`` against ``allowed_base``; deny escapes.

        Returns the resolved absolute path.
        """
        base = os.path.abspath(allowed_base)
        resolved = os.path.abspath(os.path.join(base, target_path))

        if resolved != base and not resolved.startswith(base.rstrip(os.sep) + os.sep):
            raise LAVSError(
                LAVSErrorCode.PermissionDenied,
                f"Path traversal detected: '{target_path}' resolves outside allowed directory '{allowed_base}'",
                {"resolvedPath": resolved, "allowedBase": base}
            )
        return resolved

    def check_handler_cwd(self, handler: ScriptHandler, agent_dir: str) -> None:
        if handler.cwd:
            self.check_path_traversal(handler.cwd, agent_dir)

    def check_file_access(self, file_path: str, permissions: Permissions) -> bool:
        """Deny patterns (``!``-prefixed) first, then allowlist; default deny"""
        patterns = permissions.file_access
        if not patterns:
            return True

        path = _strip_dot_slash(file_path)

        for pattern in patterns:
            if pattern.startswith("!") and glob.globmatch(path, _strip_dot_slash(pattern[1:]), flags=GLOB_FLAGS):
                return False

        for pattern in patterns:
            if not pattern.startswith("!") and glob.globmatch(path, _strip_dot_slash(pattern), flags=GLOB_FLAGS):
                return True

        return False

    def assert_file_access(self, file_path: str, permissions: Permissions) -> None:
        if not self.check_file_access(file_path, permissions):
            raise LAVSError(
                LAVSErrorCode.PermissionDenied,
                f"File access denied: '{file_path}'",
                {"path": file_path, "fileAccess": permissions.file_access}
            )

    def get_effective_timeout(
        self,
        handler: Union[ScriptHandler, HttpHandler, FunctionHandler, McpHandler],
        permissions: Permissions,
        default_timeout: int = DEFAULT_TIMEOUT_MS
    ) -> int:
        """Handler timeout capped by ``maxExecutionTime`` (milliseconds)"""
        handler_timeout = getattr(handler, "timeout", None)
        ceiling = permissions.max_execution_time

        if handler_timeout is not None and handler_timeout > 0:
            if ceiling is not None and ceiling > 0:
                return min(handler_timeout, ceiling)
            return handler_timeout

        if ceiling is not None and ceiling > 0:
            return ceiling

        return default_timeout

    def assert_allowed(self, handler: ScriptHandler, permissions: Permissions, agent_dir: str) -> None:
        """Pre-execution checks for a script handler"""
        self.check_handler_cwd(handler, agent_dir)

        command = handler.command
        if ("/" in command or "\\" in command) and not os.path.isabs(command):
            self.check_path_traversal(command, agent_dir)
