"""Cursor CLI engine adapter"""
import asyncio
import logging
import os
import re
import shutil
import uuid
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional

from core.settings import CursorSettings
from engines.adapter import AGUIAdapter
from engines.base import ActiveRun, BaseEngine, Emit
from engines.cursor_adapter import CursorAGUIAdapter
from engines.models import ModelCache, first_available, is_thinking_name
from engines.protocol import (
    EngineCapabilities,
    EngineConfig,
    EngineError,
    FeatureFlags,
    McpCapability,
    ModelInfo,
    SkillsCapability,
    UiCapabilities,
)

logger = logging.getLogger(__name__)

STDOUT_LIMIT = 10 * 1024 * 1024
STDERR_TAIL_LINES = 20
KILL_GRACE_SECONDS = 5.0

CURSOR_CAPABILITIES = EngineCapabilities(
    mcp=McpCapability(supported=False),
    skills=SkillsCapability(supported=True, skills_path=".cursor/rules"),
    features=FeatureFlags(subagents=False),
    permission_modes=["bypassPermissions"],
    ui=UiCapabilities(),
)

HARDCODED_MODELS = [
    ModelInfo(id="auto", name="Auto", is_vision=True, description="Let Cursor pick the model"),
    ModelInfo(id="sonnet-4.5", name="Claude 4.5 Sonnet", is_vision=True),
    ModelInfo(id="sonnet-4.5-thinking", name="Claude 4.5 Sonnet (Thinking)", is_vision=True, is_thinking=True),
    ModelInfo(id="opus-4.5", name="Claude 4.5 Opus", is_vision=True),
    ModelInfo(id="opus-4.5-thinking", name="Claude 4.5 Opus (Thinking)", is_vision=True, is_thinking=True),
    ModelInfo(id="gpt-5.2", name="GPT-5.2", is_vision=True),
    ModelInfo(id="gemini-3-pro", name="Gemini 3 Pro", is_vision=True),
    ModelInfo(id="gemini-3-flash", name="Gemini 3 Flash", is_vision=True),
]

MODEL_LINE = re.compile(r"^([a-z0-9.-]+)\s+-\s+(.+?)(?:\s{2,}\((default|current)\))?$", re.IGNORECASE)


def find_cursor_cli(configured: Optional[str] = None) -> str:
    """Locate the cursor CLI: env override, settings, install dirs, PATH"""
    override = os.environ.get("CURSOR_CLI_PATH") or configured
    if override:
        return override

    home = Path.home()
    for candidate in (home / ".local" / "bin" / "cursor-agent", home / ".local" / "bin" / "cursor"):
        if candidate.exists():
            return str(candidate)

    found = shutil.which("cursor") or shutil.which("cursor-agent")
    if found:
        logger.info(f"Found cursor in PATH: {found}")
        return found
    return "cursor"


def parse_model_list(output: str) -> List[ModelInfo]:
    """Parse ``cursor agent --list-models`` output"""
    models = []
    for line in output.splitlines():
        match = MODEL_LINE.match(line.strip())
        if not match:
            continue
        model_id, name, marker = match.groups()
        models.append(ModelInfo(
            id=model_id,
            name=name.strip(),
            is_vision="codex" not in model_id.lower(),
            is_thinking=is_thinking_name(model_id),
            description=f"{name.strip()} ({marker})" if marker else None,
        ))
    return models


class CursorEngine(BaseEngine):
    """Cursor CLI adapter using stream-json (one process per message)"""

    engine_type = "cursor"
    error_code = "CURSOR_ERROR"
    capabilities = CURSOR_CAPABILITIES

    def __init__(self, settings: Optional[CursorSettings] = None):
        super().__init__()
        self.settings = settings or CursorSettings()
        self.default_timeout = self.settings.timeout
        self.model_cache = ModelCache(ttl=self.settings.model_cache_ttl)

    def _new_session_id(self) -> str:
        return f"cursor-{uuid.uuid4()}"

    def _create_adapter(self, session_id: str) -> AGUIAdapter:
        return CursorAGUIAdapter(session_id)

    def build_command(self, config: EngineConfig) -> List[str]:
        cmd_args = [
            find_cursor_cli(self.settings.cli_path),
            "agent",
            "--print",
            "--output-format", "stream-json",
            "--stream-partial-output",
            "--workspace", config.workspace,
            "--force",
            "--model", config.model or self.settings.default_model,
            "--approve-mcps",
        ]
        if config.session_id:
            cmd_args.extend(["--resume", config.session_id])
        return cmd_args

    def _build_env(self, config: EngineConfig) -> dict:
        env = os.environ.copy()
        api_key = os.environ.get("CURSOR_API_KEY")
        if api_key:
            env["CURSOR_API_KEY"] = api_key
        env.update(config.env)
        return env

    async def _execute(self, message: str, config: EngineConfig, run: ActiveRun, emit: Emit) -> None:
        adapter: CursorAGUIAdapter = run.adapter
        cmd_args = self.build_command(config)
        logger.info(f"Executing: {' '.join(cmd_args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd_args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(config),
                cwd=config.workspace,
                limit=STDOUT_LIMIT
            )
        except OSError as e:
            raise EngineError(f"Failed to start cursor: {e}", code="SPAWN_ERROR") from e

        run.handle = process
        logger.info(f"Cursor process started: PID {process.pid}")

        stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        stderr_task = asyncio.create_task(self._read_stderr(process, stderr_tail))

        try:
            process.stdin.write((message + "\n").encode())
            await process.stdin.drain()
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Cursor stdin closed early: {e}")

        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                emit(adapter.parse_stream_line(line.decode(errors="replace")))

            returncode = await process.wait()
            await stderr_task
        except BaseException:
            stderr_task.cancel()
            await self._kill(process)
            raise

        logger.info(f"Cursor process exited with code {returncode} (PID {process.pid})")

        if returncode != 0:
            detail = "\n".join(stderr_tail) or "no stderr output"
            raise EngineError(f"Cursor agent exited with code {returncode}: {detail}", code="CURSOR_ERROR")
        if adapter.is_error:
            raise EngineError(adapter.result_text or "Cursor reported an error", code="CURSOR_ERROR")

        run.result = {"sessionId": adapter.thread_id}

    async def _read_stderr(self, process: asyncio.subprocess.Process, tail: Deque[str]) -> None:
        """Read stderr in background, keeping the last lines for error reports"""
        async for line in process.stderr:
            line_str = line.decode(errors="replace").strip()
            if line_str:
                logger.debug(f"Cursor stderr: {line_str}")
                tail.append(line_str)

    async def _abort(self, run: ActiveRun) -> None:
        process: Optional[asyncio.subprocess.Process] = run.handle
        if process is not None:
            await self._kill(process)

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        """Terminate, then kill after a grace period"""
        if process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            logger.warning(f"Cursor process {process.pid} didn't terminate, killing")
            process.kill()
            await process.wait()

    # Models

    async def get_supported_models(self) -> List[ModelInfo]:
        return await self.model_cache.get_or_refresh(self._load_models)

    async def refresh_models(self) -> List[ModelInfo]:
        return await self.model_cache.refresh(self._load_models)

    async def _load_models(self) -> List[ModelInfo]:
        return await first_available(
            [self.list_models_from_cli, self._configured_models],
            HARDCODED_MODELS,
            label="Cursor"
        )

    async def _configured_models(self) -> List[ModelInfo]:
        return list(self.settings.models)

    async def list_models_from_cli(self) -> List[ModelInfo]:
        """Run ``cursor agent --list-models`` under its own timeout"""
        process = await asyncio.create_subprocess_exec(
            find_cursor_cli(self.settings.cli_path), "agent", "--list-models",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._build_env(EngineConfig(workspace=os.getcwd()))
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.settings.models_timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise

        if process.returncode != 0:
            logger.warning(f"cursor --list-models exited with code {process.returncode}")
            return []
        return parse_model_list(stdout.decode(errors="replace"))
