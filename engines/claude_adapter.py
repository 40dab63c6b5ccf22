"""AGUI adapter for Claude Agent SDK messages"""
import dataclasses
import json
import logging
from typing import Any, Dict, List, Optional, Set

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

from core.events import Event
from engines.adapter import AGUIAdapter

logger = logging.getLogger(__name__)


def describe_message(message: Any) -> Any:
    """JSON-friendly view of a native message for RAW passthrough"""
    if dataclasses.is_dataclass(message) and not isinstance(message, type):
        data = dataclasses.asdict(message)
        data["kind"] = type(message).__name__
        return data
    if isinstance(message, (dict, list, str, int, float, bool)) or message is None:
        return message
    return repr(message)


class ClaudeAGUIAdapter(AGUIAdapter):
    """Converts SDK messages (including partial stream events) to AGUI events.

    With partial messages enabled, text and thinking arrive first as
    ``StreamEvent`` deltas and again inside the final ``AssistantMessage``;
    once any stream event has been seen the duplicated blocks are skipped.
    Tool-use blocks are de-duplicated by id either way.
    """

    source = "claude"

    def __init__(self, thread_id: str, run_id: Optional[str] = None):
        super().__init__(thread_id, run_id)
        self.streaming = False
        self.block_kinds: Dict[int, str] = {}
        self.block_tool_ids: Dict[int, str] = {}
        self.seen_tool_ids: Set[str] = set()

    def convert(self, message: Any) -> List[Event]:
        try:
            if isinstance(message, StreamEvent):
                return self._convert_stream_event(message)
            if isinstance(message, SystemMessage):
                return self._convert_system(message)
            if isinstance(message, AssistantMessage):
                return self._convert_assistant(message)
            if isinstance(message, UserMessage):
                return self._convert_user(message)
            if isinstance(message, ResultMessage):
                return self._convert_result(message)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed SDK message passed through as RAW: {e}")
            return self.raw(describe_message(message))

        return self.raw(describe_message(message))

    def _convert_stream_event(self, message: StreamEvent) -> List[Event]:
        self.streaming = True
        if message.session_id:
            self.set_thread_id(message.session_id)

        event = message.event
        event_type = event.get("type")

        if event_type == "content_block_start":
            index = event["index"]
            block = event.get("content_block") or {}
            block_type = block.get("type")

            if block_type == "text":
                self.block_kinds[index] = "text"
                events = self.start_text()
                return events + self.append_text(block.get("text", ""))
            if block_type == "thinking":
                self.block_kinds[index] = "thinking"
                events = self.start_thinking()
                return events + self.append_thinking(block.get("thinking", ""))
            if block_type in ("tool_use", "server_tool_use"):
                tool_id = block["id"]
                self.block_kinds[index] = "tool"
                self.block_tool_ids[index] = tool_id
                self.seen_tool_ids.add(tool_id)
                return self.start_tool_call(tool_id, block.get("name", "unknown"))
            return self.raw(event)

        if event_type == "content_block_delta":
            index = event["index"]
            delta = event.get("delta") or {}
            delta_type = delta.get("type")

            if delta_type == "text_delta":
                return self.append_text(delta.get("text", ""))
            if delta_type == "thinking_delta":
                return self.append_thinking(delta.get("thinking", ""))
            if delta_type == "input_json_delta":
                tool_id = self.block_tool_ids.get(index)
                if tool_id is None:
                    return self.raw(event)
                return self.append_tool_args(tool_id, delta.get("partial_json", ""))
            if delta_type == "signature_delta":
                return []
            return self.raw(event)

        if event_type == "content_block_stop":
            index = event["index"]
            kind = self.block_kinds.pop(index, None)
            if kind == "text":
                return self.end_text()
            if kind == "thinking":
                return self.end_thinking()
            if kind == "tool":
                return self.end_tool_call(self.block_tool_ids.pop(index))
            return []

        if event_type in ("message_start", "message_delta", "message_stop", "ping"):
            return []

        return self.raw(event)

    def _convert_system(self, message: SystemMessage) -> List[Event]:
        data = message.data or {}
        if message.subtype != "init":
            return self.raw(describe_message(message))

        session_id = data.get("session_id")
        if session_id:
            self.set_thread_id(session_id)
        return self.custom("session_init", {
            "sessionId": self.thread_id,
            "model": data.get("model"),
            "tools": data.get("tools", []),
            "cwd": data.get("cwd"),
            "permissionMode": data.get("permissionMode"),
        })

    def _convert_assistant(self, message: AssistantMessage) -> List[Event]:
        events: List[Event] = []
        for block in message.content:
            if isinstance(block, TextBlock):
                if not self.streaming:
                    events.extend(self.start_text())
                    events.extend(self.append_text(block.text))
                    events.extend(self.end_text())
            elif isinstance(block, ThinkingBlock):
                if not self.streaming:
                    events.extend(self.start_thinking())
                    events.extend(self.append_thinking(block.thinking))
                    events.extend(self.end_thinking())
            elif isinstance(block, ToolUseBlock):
                if block.id in self.seen_tool_ids:
                    continue
                self.seen_tool_ids.add(block.id)
                events.extend(self.start_tool_call(block.id, block.name))
                events.extend(self.append_tool_args(block.id, json.dumps(block.input or {})))
                events.extend(self.end_tool_call(block.id))
            elif isinstance(block, ToolResultBlock):
                events.extend(self.tool_result(block.tool_use_id, block.content, bool(block.is_error)))
        return events

    def _convert_user(self, message: UserMessage) -> List[Event]:
        if isinstance(message.content, str):
            return []
        events: List[Event] = []
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                events.extend(self.tool_result(block.tool_use_id, block.content, bool(block.is_error)))
        return events

    def _convert_result(self, message: ResultMessage) -> List[Event]:
        if message.session_id:
            self.set_thread_id(message.session_id)

        events: List[Event] = []
        # Nothing was streamed; surface the final text so the turn is not empty
        if not message.is_error and message.result and not self.texts:
            events.extend(self.start_text())
            events.extend(self.append_text(message.result))
            events.extend(self.end_text())

        events.extend(self.custom("result", {
            "subtype": message.subtype,
            "durationMs": message.duration_ms,
            "numTurns": message.num_turns,
            "totalCostUsd": message.total_cost_usd,
            "usage": message.usage,
        }))
        return events
