"""Base AGUI adapter: per-run block state machine"""
import json
import logging
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from core.events import (
    CustomEvent,
    Event,
    RawEvent,
    RunErrorEvent,
    RunFinishedEvent,
    RunStartedEvent,
    TextMessageContentEvent,
    TextMessageEndEvent,
    TextMessageStartEvent,
    ThinkingContentEvent,
    ThinkingEndEvent,
    ThinkingStartEvent,
    ToolCallArgsEvent,
    ToolCallEndEvent,
    ToolCallResultEvent,
    ToolCallStartEvent,
)

logger = logging.getLogger(__name__)


class BlockState(str, Enum):
    IDLE = "idle"
    TEXT_OPEN = "text_open"
    THINKING_OPEN = "thinking_open"


class ToolCallState:
    """Open tool call and its raw argument buffer"""

    def __init__(self, tool_call_id: str, tool_name: str):
        self.tool_call_id = tool_call_id
        self.tool_name = tool_name
        self.args = ""


def parse_tool_args(raw: str) -> Optional[Any]:
    """Parse accumulated tool arguments; empty or invalid JSON yields None"""
    if not raw or not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        logger.debug(f"Unparseable tool arguments ({e}): {raw[:100]}")
        return None


class AGUIAdapter:
    """Translate native backend output into ordered AGUI events for one run.

    Text and thinking blocks are mutually exclusive: opening one closes the
    other. Content arriving with no open block implicitly opens one. Tool
    calls are tracked independently, keyed by tool-call id. ``finalize()``
    closes everything still open and is safe to call more than once.

    One instance per run; never reused across runs.
    """

    source = "engine"

    def __init__(self, thread_id: str, run_id: Optional[str] = None):
        self.thread_id = thread_id
        self.run_id = run_id or str(uuid.uuid4())
        self.state = BlockState.IDLE
        self.current_message_id: Optional[str] = None
        self.tool_calls: Dict[str, ToolCallState] = {}
        self.texts: Dict[str, str] = {}
        self.thinking: Dict[str, str] = {}
        self.finalized = False

    def set_thread_id(self, thread_id: str) -> None:
        """Adopt an authoritative session id reported by the backend"""
        if thread_id and thread_id != self.thread_id:
            logger.info(f"Thread id updated: {self.thread_id} -> {thread_id}")
            self.thread_id = thread_id

    # Run lifecycle

    def run_started(self, input: Optional[Dict[str, Any]] = None) -> RunStartedEvent:
        return RunStartedEvent(thread_id=self.thread_id, run_id=self.run_id, input=input)

    def run_finished(self, result: Any = None) -> RunFinishedEvent:
        return RunFinishedEvent(thread_id=self.thread_id, run_id=self.run_id, result=result)

    def run_error(self, error: str, code: Optional[str] = None) -> RunErrorEvent:
        return RunErrorEvent(thread_id=self.thread_id, run_id=self.run_id, error=error, code=code)

    # Text blocks

    def start_text(self, message_id: Optional[str] = None) -> List[Event]:
        events = self.close_blocks()
        self.current_message_id = message_id or self._new_message_id()
        self.state = BlockState.TEXT_OPEN
        self.texts.setdefault(self.current_message_id, "")
        events.append(TextMessageStartEvent(message_id=self.current_message_id))
        return events

    def append_text(self, content: str) -> List[Event]:
        if not content:
            return []
        events: List[Event] = []
        if self.state is not BlockState.TEXT_OPEN:
            events.extend(self.start_text())
        self.texts[self.current_message_id] += content
        events.append(TextMessageContentEvent(message_id=self.current_message_id, content=content))
        return events

    def end_text(self) -> List[Event]:
        if self.state is not BlockState.TEXT_OPEN:
            return []
        event = TextMessageEndEvent(message_id=self.current_message_id)
        self.state = BlockState.IDLE
        self.current_message_id = None
        return [event]

    # Thinking blocks

    def start_thinking(self, message_id: Optional[str] = None) -> List[Event]:
        events = self.close_blocks()
        self.current_message_id = message_id or self._new_message_id()
        self.state = BlockState.THINKING_OPEN
        self.thinking.setdefault(self.current_message_id, "")
        events.append(ThinkingStartEvent(message_id=self.current_message_id))
        return events

    def append_thinking(self, content: str) -> List[Event]:
        if not content:
            return []
        events: List[Event] = []
        if self.state is not BlockState.THINKING_OPEN:
            events.extend(self.start_thinking())
        self.thinking[self.current_message_id] += content
        events.append(ThinkingContentEvent(message_id=self.current_message_id, content=content))
        return events

    def end_thinking(self) -> List[Event]:
        if self.state is not BlockState.THINKING_OPEN:
            return []
        event = ThinkingEndEvent(message_id=self.current_message_id)
        self.state = BlockState.IDLE
        self.current_message_id = None
        return [event]

    def close_blocks(self) -> List[Event]:
        """Close whichever text/thinking block is open"""
        if self.state is BlockState.TEXT_OPEN:
            return self.end_text()
        if self.state is BlockState.THINKING_OPEN:
            return self.end_thinking()
        return []

    # Tool calls

    def start_tool_call(self, tool_call_id: str, tool_name: str) -> List[Event]:
        if tool_call_id in self.tool_calls:
            return []
        parent = self.current_message_id
        events = self.close_blocks()
        self.tool_calls[tool_call_id] = ToolCallState(tool_call_id, tool_name)
        events.append(ToolCallStartEvent(
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            parent_message_id=parent
        ))
        return events

    def append_tool_args(self, tool_call_id: str, fragment: str) -> List[Event]:
        call = self.tool_calls.get(tool_call_id)
        if call is None:
            logger.debug(f"Args for unknown tool call dropped: {tool_call_id}")
            return []
        if not fragment:
            return []
        call.args += fragment
        return [ToolCallArgsEvent(tool_call_id=tool_call_id, args=fragment)]

    def end_tool_call(self, tool_call_id: str) -> List[Event]:
        call = self.tool_calls.pop(tool_call_id, None)
        if call is None:
            return []
        return [ToolCallEndEvent(tool_call_id=tool_call_id, input=parse_tool_args(call.args))]

    def tool_result(self, tool_call_id: str, result: Any, is_error: bool = False) -> List[Event]:
        events = self.end_tool_call(tool_call_id)
        events.append(ToolCallResultEvent(tool_call_id=tool_call_id, result=result, is_error=is_error))
        return events

    # Passthrough

    def raw(self, event: Any) -> List[Event]:
        return [RawEvent(source=self.source, event=event)]

    def custom(self, name: str, value: Any = None) -> List[Event]:
        return [CustomEvent(name=name, value=value)]

    def finalize(self) -> List[Event]:
        """Force-close all open blocks; subsequent calls return nothing"""
        if self.finalized:
            return []
        self.finalized = True

        events = self.close_blocks()
        for tool_call_id in list(self.tool_calls):
            events.extend(self.end_tool_call(tool_call_id))
        return events

    @property
    def has_open_blocks(self) -> bool:
        return self.state is not BlockState.IDLE or bool(self.tool_calls)

    @staticmethod
    def _new_message_id() -> str:
        return f"msg_{uuid.uuid4().hex}"
