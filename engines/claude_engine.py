"""Claude Agent SDK engine"""
import asyncio
import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional

import aiohttp
from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient
from claude_agent_sdk.types import ResultMessage

from core.message_queue import AsyncMessageQueue
from core.settings import ClaudeSettings
from engines.adapter import AGUIAdapter
from engines.base import ActiveRun, BaseEngine, Emit
from engines.claude_adapter import ClaudeAGUIAdapter
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

DEFAULT_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"

CLAUDE_CAPABILITIES = EngineCapabilities(
    mcp=McpCapability(supported=True, config_path="~/.claude/mcp.json", dynamic_tool_loading=True),
    skills=SkillsCapability(supported=True, skills_path="~/.claude/skills"),
    features=FeatureFlags(subagents=True),
    permission_modes=["default", "acceptEdits", "bypassPermissions", "plan"],
    ui=UiCapabilities(
        show_mcp_tool_selector=True,
        show_permission_selector=True,
        show_provider_selector=True,
        show_env_vars=True,
    ),
)

HARDCODED_MODELS = [
    ModelInfo(id="sonnet", name="Claude Sonnet", is_vision=True),
    ModelInfo(id="sonnet-thinking", name="Claude Sonnet (Thinking)", is_vision=True, is_thinking=True),
    ModelInfo(id="opus", name="Claude Opus", is_vision=True),
    ModelInfo(id="opus-thinking", name="Claude Opus (Thinking)", is_vision=True, is_thinking=True),
    ModelInfo(id="haiku", name="Claude Haiku", is_vision=False),
]


class ClaudeSession:
    """Long-lived SDK client fed through an input queue"""

    def __init__(self, session_id: str, client: Any, queue: AsyncMessageQueue):
        self.session_id = session_id
        self.client = client
        self.queue = queue
        self.lock = asyncio.Lock()
        self.closed = False
        self.last_used = time.monotonic()

    def user_message(self, text: str) -> Dict[str, Any]:
        return {
            "type": "user",
            "message": {"role": "user", "content": text},
            "parent_tool_use_id": None,
            "session_id": self.session_id,
        }


class ClaudeEngine(BaseEngine):
    """Engine backed by the Claude Agent SDK in streaming-input mode.

    One ``ClaudeSDKClient`` per session stays connected across turns; each
    turn pushes a user message into the session's queue and reads the
    response until the ``ResultMessage``.
    """

    engine_type = "claude"
    error_code = "CLAUDE_ENGINE_ERROR"
    capabilities = CLAUDE_CAPABILITIES

    def __init__(
        self,
        settings: Optional[ClaudeSettings] = None,
        client_factory: Optional[Callable[[ClaudeAgentOptions], Any]] = None
    ):
        super().__init__()
        self.settings = settings or ClaudeSettings()
        self.default_timeout = self.settings.timeout
        self.client_factory = client_factory or ClaudeSDKClient
        self.sessions: Dict[str, ClaudeSession] = {}
        self.model_cache = ModelCache(ttl=self.settings.model_cache_ttl)

    def _create_adapter(self, session_id: str) -> AGUIAdapter:
        return ClaudeAGUIAdapter(session_id)

    async def _execute(self, message: str, config: EngineConfig, run: ActiveRun, emit: Emit) -> None:
        adapter: ClaudeAGUIAdapter = run.adapter
        session = await self._get_session(run.session_id, config)

        async with session.lock:
            # A turn owns the session only while holding its lock
            if session.closed:
                raise EngineError(f"Claude session {session.session_id} was closed", code=self.error_code)
            run.handle = session
            session.last_used = time.monotonic()
            try:
                session.queue.push(session.user_message(message))
                async for sdk_message in session.client.receive_response():
                    emit(adapter.convert(sdk_message))

                    if isinstance(sdk_message, ResultMessage):
                        run.result = {"sessionId": adapter.thread_id, "subtype": sdk_message.subtype}
                        if sdk_message.is_error:
                            raise EngineError(
                                sdk_message.result or f"Claude run failed ({sdk_message.subtype})",
                                code="CLAUDE_RESULT_ERROR"
                            )
            except BaseException:
                await self._teardown(session)
                raise

        self._rekey_session(session, adapter.thread_id)

    async def _abort(self, run: ActiveRun) -> None:
        session: Optional[ClaudeSession] = run.handle
        if session is None or session.closed:
            return
        try:
            await session.client.interrupt()
        except Exception as e:
            logger.warning(f"SDK interrupt failed for {session.session_id}: {e}")
        await self._teardown(session)

    async def _get_session(self, session_id: str, config: EngineConfig) -> ClaudeSession:
        session = self.sessions.get(session_id)
        if session is not None and not session.closed:
            return session

        # A caller-supplied id we have no client for is a conversation to resume
        resume = config.session_id if config.session_id else None
        options = self._build_options(config, resume)
        queue: AsyncMessageQueue = AsyncMessageQueue()
        client = self.client_factory(options)

        try:
            await client.connect(prompt=queue)
        except Exception as e:
            queue.end()
            raise EngineError(f"Failed to start Claude session: {e}", code="SPAWN_ERROR") from e

        session = ClaudeSession(session_id, client, queue)
        self.sessions[session_id] = session
        logger.info(f"Claude session started: {session_id} (resume={resume})")
        return session

    def _build_options(self, config: EngineConfig, resume: Optional[str]) -> ClaudeAgentOptions:
        return ClaudeAgentOptions(
            model=config.model or self.settings.default_model,
            cwd=config.workspace,
            resume=resume,
            system_prompt=config.system_prompt,
            allowed_tools=list(config.allowed_tools or self.settings.allowed_tools),
            permission_mode=config.permission_mode or self.settings.permission_mode,
            env=self._build_env(config),
            include_partial_messages=True,
            max_turns=self.settings.max_turns,
        )

    def _build_env(self, config: EngineConfig) -> Dict[str, str]:
        """Provider env, then API credentials from the process env, then call overrides"""
        env: Dict[str, str] = {}
        provider = self.settings.get_provider(config.provider_id)
        if provider:
            env.update(provider.env)
        for name in ("ANTHROPIC_API_KEY", "ANTHROPIC_AUTH_TOKEN", "ANTHROPIC_BASE_URL"):
            if name not in env and os.environ.get(name):
                env[name] = os.environ[name]
        env.update(config.env)
        return env

    def _rekey_session(self, session: ClaudeSession, session_id: str) -> None:
        if session.closed or session.session_id == session_id:
            return
        if self.sessions.get(session.session_id) is session:
            del self.sessions[session.session_id]
        session.session_id = session_id
        self.sessions[session_id] = session

    async def _teardown(self, session: ClaudeSession) -> None:
        if session.closed:
            return
        session.closed = True
        session.queue.end()
        if self.sessions.get(session.session_id) is session:
            del self.sessions[session.session_id]
        try:
            await session.client.disconnect()
        except Exception as e:
            logger.warning(f"Error disconnecting Claude session {session.session_id}: {e}")
        logger.info(f"Claude session closed: {session.session_id}")

    async def close(self) -> None:
        await super().close()
        for session in list(self.sessions.values()):
            await self._teardown(session)

    # Models

    async def get_supported_models(self) -> List[ModelInfo]:
        return await self.model_cache.get_or_refresh(self._load_models)

    async def refresh_models(self) -> List[ModelInfo]:
        return await self.model_cache.refresh(self._load_models)

    async def _load_models(self) -> List[ModelInfo]:
        return await first_available(
            [self.fetch_models_from_api, self._configured_models],
            HARDCODED_MODELS,
            label="Claude"
        )

    async def _configured_models(self) -> List[ModelInfo]:
        provider = self.settings.get_provider()
        if provider is None:
            return []
        return [
            m.model_copy(update={"is_thinking": is_thinking_name(m.name)})
            for m in provider.models
        ]

    async def fetch_models_from_api(self) -> List[ModelInfo]:
        """GET {ANTHROPIC_BASE_URL}/v1/models with its own short timeout"""
        base_url = (os.environ.get("ANTHROPIC_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        api_key = os.environ.get("ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_AUTH_TOKEN")
        if not api_key:
            provider = self.settings.get_provider()
            if provider:
                api_key = provider.env.get("ANTHROPIC_API_KEY") or provider.env.get("ANTHROPIC_AUTH_TOKEN")
        if not api_key:
            logger.warning("No API key for /v1/models (ANTHROPIC_API_KEY or default provider)")
            return []

        headers = {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        timeout = aiohttp.ClientTimeout(total=self.settings.models_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as http:
            async with http.get(f"{base_url}/v1/models", headers=headers) as response:
                if response.status != 200:
                    logger.warning(f"/v1/models returned {response.status}")
                    return []
                payload = await response.json(content_type=None)

        data = (payload or {}).get("data")
        if not isinstance(data, list):
            return []

        models = []
        for entry in data:
            name = entry.get("display_name") or entry.get("name") or entry["id"]
            owner = entry.get("owned_by")
            models.append(ModelInfo(
                id=entry["id"],
                name=name,
                is_vision=True,
                is_thinking=is_thinking_name(name),
                description=f"{owner}: {name}" if owner else None,
            ))
        logger.info(f"Fetched {len(models)} models from {base_url}/v1/models")
        return models
