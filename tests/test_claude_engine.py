"""Tests for engines.claude_engine.ClaudeEngine with a fake SDK client"""
import asyncio

import pytest
from claude_agent_sdk.types import (
    AssistantMessage,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
)

from conftest import assert_well_formed, event_types
from core.settings import ClaudeSettings, ProviderSettings
from engines.claude_engine import HARDCODED_MODELS, ClaudeEngine
from engines.protocol import EngineConfig, ModelInfo


class FakeClient:
    """Stands in for ClaudeSDKClient; each turn replays a scripted message list"""

    def __init__(self, options, turns, fail_connect=False):
        self.options = options
        self.turns = list(turns)
        self.fail_connect = fail_connect
        self.prompts = []
        self.interrupted = False
        self.disconnected = False
        self.prompt = None

    async def connect(self, prompt=None):
        if self.fail_connect:
            raise RuntimeError("cli missing")
        self.prompt = prompt

    async def receive_response(self):
        self.prompts.append(await self.prompt.__anext__())
        for message in self.turns.pop(0):
            if isinstance(message, asyncio.Event):
                await message.wait()
                continue
            if message == "hang":
                await asyncio.sleep(10)
            yield message

    async def interrupt(self):
        self.interrupted = True

    async def disconnect(self):
        self.disconnected = True


def result(session_id="sdk-1", is_error=False, text="ok"):
    return ResultMessage(
        subtype="error_during_execution" if is_error else "success",
        duration_ms=5,
        duration_api_ms=4,
        is_error=is_error,
        num_turns=1,
        session_id=session_id,
        result=text,
    )


def make_engine(turns, **kwargs):
    clients = []

    def factory(options):
        client = FakeClient(options, turns, **kwargs)
        clients.append(client)
        return client

    engine = ClaudeEngine(ClaudeSettings(), client_factory=factory)
    return engine, clients


async def _collect(engine, message="hi", **config):
    config.setdefault("workspace", "/tmp")
    return [e async for e in engine.stream_message(message, EngineConfig(**config))]


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class TestClaudeRuns:
    @pytest.mark.asyncio
    async def test_turn_streams_and_adopts_sdk_session(self, clean_env):
        engine, clients = make_engine([[
            SystemMessage(subtype="init", data={"session_id": "sdk-1", "model": "sonnet"}),
            StreamEvent(uuid="u", session_id="sdk-1",
                        event={"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
            StreamEvent(uuid="u", session_id="sdk-1",
                        event={"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}}),
            StreamEvent(uuid="u", session_id="sdk-1", event={"type": "content_block_stop", "index": 0}),
            AssistantMessage(content=[TextBlock(text="Hi")], model="sonnet"),
            result(),
        ]])

        events = await _collect(engine)

        assert event_types(events) == [
            "RUN_STARTED", "CUSTOM",
            "TEXT_MESSAGE_START", "TEXT_MESSAGE_CONTENT", "TEXT_MESSAGE_END",
            "CUSTOM", "RUN_FINISHED",
        ]
        assert events[-1].thread_id == "sdk-1"
        assert events[-1].result["sessionId"] == "sdk-1"
        assert clients[0].prompts[0]["message"] == {"role": "user", "content": "hi"}
        assert clients[0].options.include_partial_messages is True
        assert "sdk-1" in engine.sessions
        assert_well_formed(events)

    @pytest.mark.asyncio
    async def test_second_turn_reuses_client(self, clean_env):
        engine, clients = make_engine([[result()], [result(text="again")]])

        await _collect(engine)
        events = await _collect(engine, "more", session_id="sdk-1")

        assert len(clients) == 1
        assert [p["message"]["content"] for p in clients[0].prompts] == ["hi", "more"]
        assert events[-1].type == "RUN_FINISHED"

    @pytest.mark.asyncio
    async def test_resume_passed_for_unknown_session(self, clean_env):
        engine, clients = make_engine([[result(session_id="old-session")]])
        await _collect(engine, session_id="old-session")
        assert clients[0].options.resume == "old-session"

    @pytest.mark.asyncio
    async def test_error_result_ends_with_run_error(self, clean_env):
        engine, clients = make_engine([[result(is_error=True, text="quota exceeded")]])

        events = await _collect(engine)

        assert events[-1].type == "RUN_ERROR"
        assert events[-1].code == "CLAUDE_RESULT_ERROR"
        assert events[-1].error == "quota exceeded"
        assert clients[0].disconnected
        assert engine.sessions == {}

    @pytest.mark.asyncio
    async def test_connect_failure_is_spawn_error(self, clean_env):
        engine, _ = make_engine([], fail_connect=True)
        events = await _collect(engine)

        assert event_types(events) == ["RUN_STARTED", "RUN_ERROR"]
        assert events[-1].code == "SPAWN_ERROR"

    @pytest.mark.asyncio
    async def test_timeout_tears_down_session(self, clean_env):
        engine, clients = make_engine([["hang"]])
        events = await _collect(engine, session_id="s1", timeout=0.05)

        assert events[-1].code == "TIMEOUT"
        assert clients[0].disconnected
        assert engine.get_active_session_count() == 0

    @pytest.mark.asyncio
    async def test_interrupt_calls_sdk_interrupt(self, clean_env):
        engine, clients = make_engine([["hang"]])
        collector = asyncio.create_task(_collect(engine, session_id="s1"))
        for _ in range(50):
            if clients and clients[0].prompts:
                break
            await asyncio.sleep(0.01)

        await engine.interrupt_session("s1")
        events = await asyncio.wait_for(collector, timeout=1)

        assert events[-1].code == "INTERRUPTED"
        assert clients[0].interrupted
        assert clients[0].disconnected

    @pytest.mark.asyncio
    async def test_interrupting_queued_turn_spares_running_turn(self, clean_env):
        gate = asyncio.Event()
        engine, clients = make_engine([[gate, result(session_id="s1")]])
        running = asyncio.create_task(_collect(engine, session_id="s1"))
        for _ in range(50):
            if clients and clients[0].prompts:
                break
            await asyncio.sleep(0.01)

        # Same session, so this turn waits for the session lock
        queued = asyncio.create_task(_collect(engine, "next", session_id="s1"))
        await asyncio.sleep(0.05)
        await engine.interrupt_session("s1")
        gate.set()

        queued_events = await asyncio.wait_for(queued, timeout=1)
        running_events = await asyncio.wait_for(running, timeout=1)

        assert queued_events[-1].code == "INTERRUPTED"
        assert running_events[-1].type == "RUN_FINISHED"
        assert not clients[0].interrupted
        assert not clients[0].disconnected
        assert len(clients[0].prompts) == 1


# ---------------------------------------------------------------------------
# Options and models
# ---------------------------------------------------------------------------


class TestClaudeOptions:
    def test_env_merges_provider_process_and_call(self, clean_env, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "process-key")
        settings = ClaudeSettings(providers=[
            ProviderSettings(id="proxy", env={"ANTHROPIC_BASE_URL": "http://proxy"}),
        ])
        engine = ClaudeEngine(settings, client_factory=lambda options: None)

        env = engine._build_env(EngineConfig(workspace="/tmp", provider_id="proxy", env={"EXTRA": "1"}))

        assert env == {"ANTHROPIC_BASE_URL": "http://proxy", "ANTHROPIC_API_KEY": "process-key", "EXTRA": "1"}

    def test_options_use_settings_defaults(self, clean_env):
        engine = ClaudeEngine(ClaudeSettings(default_model="opus", max_turns=3))
        options = engine._build_options(EngineConfig(workspace="/work"), resume=None)

        assert options.model == "opus"
        assert options.cwd == "/work"
        assert options.max_turns == 3
        assert options.permission_mode == "acceptEdits"
        assert "Read" in options.allowed_tools

    @pytest.mark.asyncio
    async def test_models_fall_back_to_configured_then_hardcoded(self, clean_env):
        engine = ClaudeEngine(ClaudeSettings(providers=[
            ProviderSettings(id="p", models=[ModelInfo(id="m1", name="Model One Thinking")]),
        ]))
        models = await engine.get_supported_models()
        assert [m.id for m in models] == ["m1"]
        assert models[0].is_thinking

        bare = ClaudeEngine(ClaudeSettings())
        assert [m.id for m in await bare.get_supported_models()] == [m.id for m in HARDCODED_MODELS]
