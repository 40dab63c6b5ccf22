"""Tests for engines.adapter.AGUIAdapter block state machine"""
from engines.adapter import AGUIAdapter, BlockState, parse_tool_args
from conftest import event_types


# ---------------------------------------------------------------------------
# Text and thinking blocks
# ---------------------------------------------------------------------------


class TestBlocks:
    def test_text_block_lifecycle(self):
        adapter = AGUIAdapter("s1")
        events = adapter.start_text("m1") + adapter.append_text("hi") + adapter.end_text()

        assert event_types(events) == ["TEXT_MESSAGE_START", "TEXT_MESSAGE_CONTENT", "TEXT_MESSAGE_END"]
        assert all(e.message_id == "m1" for e in events)
        assert adapter.state is BlockState.IDLE
        assert adapter.texts["m1"] == "hi"

    def test_content_without_open_block_opens_one(self):
        adapter = AGUIAdapter("s1")
        events = adapter.append_text("hello")

        assert event_types(events) == ["TEXT_MESSAGE_START", "TEXT_MESSAGE_CONTENT"]
        assert adapter.state is BlockState.TEXT_OPEN

    def test_empty_content_emits_nothing(self):
        adapter = AGUIAdapter("s1")
        assert adapter.append_text("") == []
        assert adapter.append_thinking("") == []
        assert adapter.state is BlockState.IDLE

    def test_thinking_closes_open_text(self):
        adapter = AGUIAdapter("s1")
        adapter.append_text("answer")
        events = adapter.append_thinking("hmm")

        assert event_types(events) == ["TEXT_MESSAGE_END", "THINKING_START", "THINKING_CONTENT"]
        assert adapter.state is BlockState.THINKING_OPEN

    def test_text_closes_open_thinking(self):
        adapter = AGUIAdapter("s1")
        adapter.append_thinking("hmm")
        events = adapter.start_text()

        assert event_types(events) == ["THINKING_END", "TEXT_MESSAGE_START"]

    def test_end_without_open_block_is_noop(self):
        adapter = AGUIAdapter("s1")
        assert adapter.end_text() == []
        assert adapter.end_thinking() == []

    def test_message_ids_are_unique(self):
        adapter = AGUIAdapter("s1")
        first = adapter.start_text()[-1].message_id
        second = adapter.start_text()[-1].message_id

        assert first != second
        assert first.startswith("msg_")


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class TestToolCalls:
    def test_tool_call_lifecycle_parses_arguments(self):
        adapter = AGUIAdapter("s1")
        events = adapter.start_tool_call("t1", "Read")
        events += adapter.append_tool_args("t1", '{"path":')
        events += adapter.append_tool_args("t1", ' "a.txt"}')
        events += adapter.end_tool_call("t1")

        assert event_types(events) == ["TOOL_CALL_START", "TOOL_CALL_ARGS", "TOOL_CALL_ARGS", "TOOL_CALL_END"]
        assert events[-1].input == {"path": "a.txt"}
        assert not adapter.has_open_blocks

    def test_tool_call_closes_text_and_records_parent(self):
        adapter = AGUIAdapter("s1")
        adapter.start_text("m1")
        events = adapter.start_tool_call("t1", "Bash")

        assert event_types(events) == ["TEXT_MESSAGE_END", "TOOL_CALL_START"]
        assert events[-1].parent_message_id == "m1"

    def test_duplicate_start_is_ignored(self):
        adapter = AGUIAdapter("s1")
        adapter.start_tool_call("t1", "Read")
        assert adapter.start_tool_call("t1", "Read") == []

    def test_args_for_unknown_call_dropped(self):
        adapter = AGUIAdapter("s1")
        assert adapter.append_tool_args("nope", "{}") == []

    def test_invalid_arguments_yield_none_input(self):
        adapter = AGUIAdapter("s1")
        adapter.start_tool_call("t1", "Read")
        adapter.append_tool_args("t1", "{not json")
        assert adapter.end_tool_call("t1")[0].input is None

    def test_result_ends_open_call_first(self):
        adapter = AGUIAdapter("s1")
        adapter.start_tool_call("t1", "Read")
        events = adapter.tool_result("t1", "contents", is_error=False)

        assert event_types(events) == ["TOOL_CALL_END", "TOOL_CALL_RESULT"]
        assert events[-1].result == "contents"

    def test_result_for_closed_call(self):
        adapter = AGUIAdapter("s1")
        adapter.start_tool_call("t1", "Read")
        adapter.end_tool_call("t1")
        events = adapter.tool_result("t1", "boom", is_error=True)

        assert event_types(events) == ["TOOL_CALL_RESULT"]
        assert events[0].is_error

    def test_parse_tool_args(self):
        assert parse_tool_args("") is None
        assert parse_tool_args("   ") is None
        assert parse_tool_args("[1, 2]") == [1, 2]
        assert parse_tool_args("{") is None


# ---------------------------------------------------------------------------
# Finalize and run events
# ---------------------------------------------------------------------------


class TestFinalize:
    def test_finalize_closes_everything_once(self):
        adapter = AGUIAdapter("s1")
        adapter.append_thinking("x")
        adapter.start_tool_call("t1", "Read")
        adapter.start_tool_call("t2", "Write")

        events = adapter.finalize()
        assert event_types(events) == ["TOOL_CALL_END", "TOOL_CALL_END"]
        assert {e.tool_call_id for e in events} == {"t1", "t2"}
        assert not adapter.has_open_blocks
        assert adapter.finalize() == []

    def test_finalize_closes_open_text(self):
        adapter = AGUIAdapter("s1")
        adapter.append_text("partial")
        events = adapter.finalize()
        assert event_types(events) == ["TEXT_MESSAGE_END"]

    def test_run_events_carry_thread_and_run_ids(self):
        adapter = AGUIAdapter("s1", run_id="r1")
        started = adapter.run_started({"message": "hi"})
        adapter.set_thread_id("backend-id")
        error = adapter.run_error("boom", "TIMEOUT")

        assert (started.thread_id, started.run_id) == ("s1", "r1")
        assert (error.thread_id, error.run_id, error.code) == ("backend-id", "r1", "TIMEOUT")

    def test_raw_and_custom(self):
        adapter = AGUIAdapter("s1")
        raw = adapter.raw({"x": 1})[0]
        custom = adapter.custom("session_init", {"sessionId": "s1"})[0]

        assert (raw.type, raw.source, raw.event) == ("RAW", "engine", {"x": 1})
        assert (custom.type, custom.name) == ("CUSTOM", "session_init")
