"""AGUI adapter for Cursor CLI stream-json output"""
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from core.events import Event
from engines.adapter import AGUIAdapter

logger = logging.getLogger(__name__)


def describe_tool_call(tool_call: Dict[str, Any]) -> Tuple[str, Any, Optional[Any]]:
    """Extract (tool name, args, result) from a stream-json ``tool_call`` object.

    Cursor wraps each call in a single key such as ``readToolCall`` or
    ``shellToolCall``; generic calls use ``function`` with JSON-string
    arguments.
    """
    if "function" in tool_call:
        function = tool_call["function"] or {}
        arguments = function.get("arguments")
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError:
                pass
        return function.get("name", "function"), arguments, function.get("result")

    for key, body in tool_call.items():
        name = key[:-len("ToolCall")] if key.endswith("ToolCall") else key
        body = body if isinstance(body, dict) else {}
        return name, body.get("args", {}), body.get("result")

    return "unknown", {}, None


def result_is_error(result: Any) -> bool:
    if not isinstance(result, dict):
        return False
    return "error" in result or "failure" in result or "rejected" in result


class CursorAGUIAdapter(AGUIAdapter):
    """Converts one stream-json line at a time into AGUI events.

    Assistant text and thinking deltas implicitly open their block. Lines that
    are not JSON objects, or carry an unknown ``type``, are passed through
    as RAW.
    """

    source = "cursor"

    def __init__(self, thread_id: str, run_id: Optional[str] = None):
        super().__init__(thread_id, run_id)
        self.result_text: Optional[str] = None
        self.is_error = False

    def parse_stream_line(self, line: str) -> List[Event]:
        line = line.strip()
        if not line:
            return []

        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Non-JSON cursor output: {line[:200]}")
            return self.raw(line)

        if not isinstance(data, dict):
            return self.raw(data)

        try:
            return self._convert(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed cursor event passed through as RAW: {e}")
            return self.raw(data)

    def _convert(self, data: Dict[str, Any]) -> List[Event]:
        msg_type = data.get("type")
        subtype = data.get("subtype")

        session_id = data.get("session_id")
        if session_id:
            self.set_thread_id(session_id)

        if msg_type == "system":
            if subtype == "init":
                return self.custom("session_init", {
                    "sessionId": self.thread_id,
                    "model": data.get("model"),
                    "cwd": data.get("cwd"),
                    "permissionMode": data.get("permissionMode"),
                })
            return self.raw(data)

        if msg_type == "user":
            return []

        if msg_type == "assistant":
            content = (data.get("message") or {}).get("content") or []
            events: List[Event] = []
            for block in content:
                if isinstance(block, dict) and block.get("type") == "text":
                    events.extend(self.append_text(block.get("text", "")))
            return events

        if msg_type == "thinking":
            if subtype == "completed":
                return self.end_thinking()
            return self.append_thinking(data.get("text", ""))

        if msg_type == "tool_call":
            return self._convert_tool_call(data, subtype)

        if msg_type == "result":
            self.is_error = bool(data.get("is_error"))
            self.result_text = data.get("result")
            events = self.close_blocks()
            # Result text only when nothing was streamed
            if self.result_text and not self.is_error and not self.texts:
                events.extend(self.start_text())
                events.extend(self.append_text(self.result_text))
                events.extend(self.end_text())
            events.extend(self.custom("result", {
                "subtype": subtype,
                "durationMs": data.get("duration_ms"),
                "isError": self.is_error,
            }))
            return events

        return self.raw(data)

    def _convert_tool_call(self, data: Dict[str, Any], subtype: Optional[str]) -> List[Event]:
        call_id = data["call_id"]
        name, args, result = describe_tool_call(data.get("tool_call") or {})

        if subtype == "started":
            events = self.start_tool_call(call_id, name)
            if args is not None:
                encoded = args if isinstance(args, str) else json.dumps(args)
                events.extend(self.append_tool_args(call_id, encoded))
            return events

        if subtype == "completed":
            events: List[Event] = []
            if call_id not in self.tool_calls:
                # Completion without a start line; open it so the result has a call
                events.extend(self.start_tool_call(call_id, name))
            events.extend(self.tool_result(call_id, result, result_is_error(result)))
            return events

        return self.raw(data)
