"""Script handler executor"""
import asyncio
import json
import logging
import os
import re
import time
from typing import Any, Dict, List

from lavs.types import ExecutionContext, LAVSError, LAVSErrorCode, ScriptHandler

logger = logging.getLogger(__name__)

SAFE_ENV_VARS = (
    "PATH", "HOME", "USER", "LANG", "LC_ALL", "TZ",
    "NODE_ENV", "SHELL", "TMPDIR", "TERM",
)

SENSITIVE_PATTERNS = (
    "SECRET", "TOKEN", "PASSWORD", "PASSWD", "CREDENTIAL",
    "PRIVATE_KEY", "API_KEY", "APIKEY", "ACCESS_KEY", "AUTH",
)

SAFE_OVERRIDES = frozenset({"LAVS_AGENT_ID", "LAVS_ENDPOINT_ID", "LAVS_PROJECT_PATH", "NODE_ENV"})

BLOCKED_KEYS = frozenset({"__proto__", "constructor", "prototype"})

TEMPLATE = re.compile(r"\{\{([^}]+)\}\}")
JSON_DECODER = json.JSONDecoder()

KILL_GRACE_SECONDS = 5.0


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ",".join(_stringify(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value)
    return str(value)


def get_value_by_path(data: Any, path: str) -> Any:
    """Dotted-path lookup; prototype-style keys are never traversed"""
    current = data
    for key in path.strip().split("."):
        if current is None or key in BLOCKED_KEYS:
            return None
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and key.isdigit():
            index = int(key)
            current = current[index] if index < len(current) else None
        else:
            return None
    return current


def resolve_args(args: List[str], data: Any) -> List[str]:
    """Substitute ``{{dotted.path}}`` placeholders from the input"""
    if not data:
        return list(args)

    def substitute(match: "re.Match") -> str:
        value = get_value_by_path(data, match.group(1))
        return "" if value is None else _stringify(value)

    return [TEMPLATE.sub(substitute, arg) for arg in args]


def input_to_env(data: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
    """Flatten nested input to UPPERCASE underscore-joined variable names"""
    env: Dict[str, str] = {}
    for key, value in data.items():
        name = f"{prefix}_{key}" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            env.update(input_to_env(value, name.upper()))
        else:
            env[name.upper()] = _stringify(value)
    return env


def filter_sensitive_vars(env: Dict[str, str]) -> Dict[str, str]:
    """Drop variables whose names look like credentials, except known-safe ones"""
    filtered = {}
    for key, value in env.items():
        if key in SAFE_OVERRIDES:
            filtered[key] = value
            continue
        upper = key.upper()
        if any(pattern in upper for pattern in SENSITIVE_PATTERNS):
            logger.debug(f"Stripped sensitive variable from handler env: {key}")
            continue
        filtered[key] = value
    return filtered


def get_base_environment() -> Dict[str, str]:
    return {key: os.environ[key] for key in SAFE_ENV_VARS if os.environ.get(key)}


def parse_output(stdout: str, stderr: str = "") -> Any:
    """Parse handler stdout as JSON, else the first embedded object or array that decodes"""
    trimmed = stdout.strip()
    if not trimmed:
        return None

    try:
        return json.loads(trimmed)
    except json.JSONDecodeError as e:
        parse_error = str(e)

    for index, char in enumerate(trimmed):
        if char not in "{[":
            continue
        try:
            value, _ = JSON_DECODER.raw_decode(trimmed, index)
        except json.JSONDecodeError:
            continue
        return value

    raise LAVSError(
        LAVSErrorCode.HandlerError,
        "Script output is not valid JSON",
        {"stdout": trimmed, "stderr": stderr, "parseError": parse_error}
    )


class ScriptExecutor:
    """Runs a script handler as a child process with a sanitized environment"""

    def build_environment(self, handler: ScriptHandler, data: Any, context: ExecutionContext) -> Dict[str, str]:
        env = get_base_environment()
        env["LAVS_AGENT_ID"] = context.agent_id
        env["LAVS_ENDPOINT_ID"] = context.endpoint_id
        env.update(handler.env)
        env.update(context.env)

        if handler.input == "env" and isinstance(data, dict):
            env.update(input_to_env(data))

        # Applies to declared variables too
        return filter_sensitive_vars(env)

    async def execute(self, handler: ScriptHandler, data: Any, context: ExecutionContext) -> Any:
        start = time.monotonic()
        timeout_ms = context.timeout
        args = resolve_args(handler.args, data)
        cwd = handler.cwd or context.workdir

        logger.info(f"Executing script for {context.endpoint_id}: {handler.command} {' '.join(args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                handler.command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_environment(handler, data, context),
                cwd=cwd
            )
        except OSError as e:
            raise LAVSError(
                LAVSErrorCode.HandlerError,
                f"Script execution failed: {e}",
                {"command": handler.command}
            ) from e

        stdin_data = b""
        if handler.input == "stdin" and data is not None:
            stdin_data = json.dumps(data).encode()

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(stdin_data), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise LAVSError(LAVSErrorCode.Timeout, f"Script execution timeout after {timeout_ms}ms")
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        stdout_text = stdout.decode(errors="replace")
        stderr_text = stderr.decode(errors="replace")
        if stderr_text.strip():
            logger.debug(f"[{context.endpoint_id}] stderr: {stderr_text.strip()[:500]}")

        duration_ms = round((time.monotonic() - start) * 1000, 2)
        logger.info(f"Script completed in {duration_ms}ms ({context.endpoint_id}, exit={process.returncode})")

        if process.returncode != 0:
            raise LAVSError(
                LAVSErrorCode.HandlerError,
                f"Script exited with code {process.returncode}",
                {"exitCode": process.returncode, "stderr": stderr_text, "stdout": stdout_text}
            )

        return parse_output(stdout_text, stderr_text)

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL after the grace period"""
        if process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            logger.warning(f"Script process {process.pid} ignored SIGTERM, killing")
            process.kill()
            await process.wait()
