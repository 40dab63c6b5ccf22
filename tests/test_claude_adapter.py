"""Tests for engines.claude_adapter.ClaudeAGUIAdapter"""
from claude_agent_sdk.types import (
    AssistantMessage,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from conftest import event_types
from engines.claude_adapter import ClaudeAGUIAdapter, describe_message


def stream(event, session_id="sdk-1"):
    return StreamEvent(uuid="u", session_id=session_id, event=event)


def result_message(**overrides):
    fields = dict(
        subtype="success",
        duration_ms=12,
        duration_api_ms=10,
        is_error=False,
        num_turns=1,
        session_id="sdk-1",
        total_cost_usd=0.01,
        usage={"input_tokens": 3},
        result="done",
    )
    fields.update(overrides)
    return ResultMessage(**fields)


def convert_all(adapter, messages):
    events = []
    for message in messages:
        events.extend(adapter.convert(message))
    return events


# ---------------------------------------------------------------------------
# Partial stream events
# ---------------------------------------------------------------------------


class TestStreamEvents:
    def test_text_deltas(self):
        adapter = ClaudeAGUIAdapter("local")
        events = convert_all(adapter, [
            stream({"type": "message_start", "message": {}}),
            stream({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
            stream({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hel"}}),
            stream({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "lo"}}),
            stream({"type": "content_block_stop", "index": 0}),
            stream({"type": "message_stop"}),
        ])

        assert event_types(events) == [
            "TEXT_MESSAGE_START", "TEXT_MESSAGE_CONTENT", "TEXT_MESSAGE_CONTENT", "TEXT_MESSAGE_END",
        ]
        assert "".join(e.content for e in events if e.type == "TEXT_MESSAGE_CONTENT") == "Hello"
        assert adapter.thread_id == "sdk-1"

    def test_thinking_then_tool_use(self):
        adapter = ClaudeAGUIAdapter("local")
        events = convert_all(adapter, [
            stream({"type": "content_block_start", "index": 0, "content_block": {"type": "thinking", "thinking": ""}}),
            stream({"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "plan"}}),
            stream({"type": "content_block_delta", "index": 0, "delta": {"type": "signature_delta", "signature": "x"}}),
            stream({"type": "content_block_stop", "index": 0}),
            stream({"type": "content_block_start", "index": 1,
                    "content_block": {"type": "tool_use", "id": "tool_1", "name": "Read", "input": {}}}),
            stream({"type": "content_block_delta", "index": 1,
                    "delta": {"type": "input_json_delta", "partial_json": '{"path": "a.txt"}'}}),
            stream({"type": "content_block_stop", "index": 1}),
        ])

        assert event_types(events) == [
            "THINKING_START", "THINKING_CONTENT", "THINKING_END",
            "TOOL_CALL_START", "TOOL_CALL_ARGS", "TOOL_CALL_END",
        ]
        assert events[3].tool_name == "Read"
        assert events[-1].input == {"path": "a.txt"}

    def test_unknown_stream_event_passed_as_raw(self):
        adapter = ClaudeAGUIAdapter("local")
        events = adapter.convert(stream({"type": "brand_new_event"}))

        assert event_types(events) == ["RAW"]
        assert events[0].source == "claude"

    def test_malformed_stream_event_passed_as_raw(self):
        adapter = ClaudeAGUIAdapter("local")
        events = adapter.convert(stream({"type": "content_block_start"}))
        assert event_types(events) == ["RAW"]


# ---------------------------------------------------------------------------
# Complete messages
# ---------------------------------------------------------------------------


class TestMessages:
    def test_system_init_sets_thread(self):
        adapter = ClaudeAGUIAdapter("local")
        events = adapter.convert(SystemMessage(subtype="init", data={"session_id": "sdk-9", "model": "sonnet"}))

        assert event_types(events) == ["CUSTOM"]
        assert events[0].name == "session_init"
        assert events[0].value["sessionId"] == "sdk-9"
        assert adapter.thread_id == "sdk-9"

    def test_assistant_message_without_streaming(self):
        adapter = ClaudeAGUIAdapter("local")
        events = adapter.convert(AssistantMessage(
            content=[
                ThinkingBlock(thinking="hmm", signature="sig"),
                TextBlock(text="Hi"),
                ToolUseBlock(id="tool_1", name="Bash", input={"command": "ls"}),
            ],
            model="sonnet",
        ))

        assert event_types(events) == [
            "THINKING_START", "THINKING_CONTENT", "THINKING_END",
            "TEXT_MESSAGE_START", "TEXT_MESSAGE_CONTENT", "TEXT_MESSAGE_END",
            "TOOL_CALL_START", "TOOL_CALL_ARGS", "TOOL_CALL_END",
        ]
        assert events[-1].input == {"command": "ls"}

    def test_assistant_blocks_not_duplicated_after_streaming(self):
        adapter = ClaudeAGUIAdapter("local")
        convert_all(adapter, [
            stream({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": "Hi"}}),
            stream({"type": "content_block_stop", "index": 0}),
            stream({"type": "content_block_start", "index": 1,
                    "content_block": {"type": "tool_use", "id": "tool_1", "name": "Read"}}),
            stream({"type": "content_block_stop", "index": 1}),
        ])

        events = adapter.convert(AssistantMessage(
            content=[TextBlock(text="Hi"), ToolUseBlock(id="tool_1", name="Read", input={})],
            model="sonnet",
        ))
        assert events == []

    def test_user_tool_result(self):
        adapter = ClaudeAGUIAdapter("local")
        adapter.convert(AssistantMessage(content=[ToolUseBlock(id="tool_1", name="Read", input={})], model="sonnet"))
        events = adapter.convert(UserMessage(content=[
            ToolResultBlock(tool_use_id="tool_1", content="file body", is_error=False),
        ]))

        assert event_types(events) == ["TOOL_CALL_RESULT"]
        assert events[0].result == "file body"
        assert events[0].is_error is False

    def test_user_text_ignored(self):
        adapter = ClaudeAGUIAdapter("local")
        assert adapter.convert(UserMessage(content="hello")) == []

    def test_result_emits_text_when_nothing_streamed(self):
        adapter = ClaudeAGUIAdapter("local")
        events = adapter.convert(result_message(result="final answer"))

        assert event_types(events) == ["TEXT_MESSAGE_START", "TEXT_MESSAGE_CONTENT", "TEXT_MESSAGE_END", "CUSTOM"]
        assert events[1].content == "final answer"
        assert events[-1].value["numTurns"] == 1

    def test_result_after_streamed_text_only_custom(self):
        adapter = ClaudeAGUIAdapter("local")
        adapter.convert(AssistantMessage(content=[TextBlock(text="Hi")], model="sonnet"))
        events = adapter.convert(result_message())
        assert event_types(events) == ["CUSTOM"]

    def test_unknown_message_passed_as_raw(self):
        adapter = ClaudeAGUIAdapter("local")
        events = adapter.convert({"type": "mystery"})

        assert event_types(events) == ["RAW"]
        assert events[0].event == {"type": "mystery"}

    def test_describe_message_dataclass(self):
        data = describe_message(TextBlock(text="x"))
        assert data["text"] == "x"
        assert data["kind"] == "TextBlock"
