"""AGUI event types emitted by engine adapters"""
import json
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    return int(datetime.now().timestamp() * 1000)


class Event(BaseModel):
    """Base AGUI event

    Field names serialize in camelCase (``threadId``, ``toolCallId``...) since
    the wire shape is consumed directly by the chat frontend.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: str
    timestamp: int = Field(default_factory=now_ms)


class RunStartedEvent(Event):
    """Run lifecycle start"""
    type: Literal["RUN_STARTED"] = "RUN_STARTED"
    thread_id: str
    run_id: str
    input: Optional[Dict[str, Any]] = None


class RunFinishedEvent(Event):
    """Successful run termination"""
    type: Literal["RUN_FINISHED"] = "RUN_FINISHED"
    thread_id: str
    run_id: str
    result: Optional[Any] = None


class RunErrorEvent(Event):
    """Failed run termination (terminal, never followed by RUN_FINISHED)"""
    type: Literal["RUN_ERROR"] = "RUN_ERROR"
    thread_id: str
    run_id: str
    error: str
    code: Optional[str] = None


class TextMessageStartEvent(Event):
    type: Literal["TEXT_MESSAGE_START"] = "TEXT_MESSAGE_START"
    message_id: str
    role: str = "assistant"


class TextMessageContentEvent(Event):
    type: Literal["TEXT_MESSAGE_CONTENT"] = "TEXT_MESSAGE_CONTENT"
    message_id: str
    content: str


class TextMessageEndEvent(Event):
    type: Literal["TEXT_MESSAGE_END"] = "TEXT_MESSAGE_END"
    message_id: str


class ThinkingStartEvent(Event):
    type: Literal["THINKING_START"] = "THINKING_START"
    message_id: str


class ThinkingContentEvent(Event):
    type: Literal["THINKING_CONTENT"] = "THINKING_CONTENT"
    message_id: str
    content: str


class ThinkingEndEvent(Event):
    type: Literal["THINKING_END"] = "THINKING_END"
    message_id: str


class ToolCallStartEvent(Event):
    """Tool invocation start"""
    type: Literal["TOOL_CALL_START"] = "TOOL_CALL_START"
    tool_call_id: str
    tool_name: str
    parent_message_id: Optional[str] = None


class ToolCallArgsEvent(Event):
    """Raw argument fragment for an open tool call"""
    type: Literal["TOOL_CALL_ARGS"] = "TOOL_CALL_ARGS"
    tool_call_id: str
    args: str


class ToolCallEndEvent(Event):
    """Tool call arguments complete

    ``input`` holds the accumulated arguments parsed as JSON, or None when
    they were empty or unparseable.
    """
    type: Literal["TOOL_CALL_END"] = "TOOL_CALL_END"
    tool_call_id: str
    input: Optional[Any] = None


class ToolCallResultEvent(Event):
    type: Literal["TOOL_CALL_RESULT"] = "TOOL_CALL_RESULT"
    tool_call_id: str
    result: Optional[Any] = None
    is_error: bool = False


class RawEvent(Event):
    """Native backend message passed through untranslated"""
    type: Literal["RAW"] = "RAW"
    source: str
    event: Any = None


class CustomEvent(Event):
    """Engine-specific notification (session init, usage, etc.)"""
    type: Literal["CUSTOM"] = "CUSTOM"
    name: str
    value: Any = None


AGUIEvent = Annotated[
    Union[
        RunStartedEvent,
        RunFinishedEvent,
        RunErrorEvent,
        TextMessageStartEvent,
        TextMessageContentEvent,
        TextMessageEndEvent,
        ThinkingStartEvent,
        ThinkingContentEvent,
        ThinkingEndEvent,
        ToolCallStartEvent,
        ToolCallArgsEvent,
        ToolCallEndEvent,
        ToolCallResultEvent,
        RawEvent,
        CustomEvent,
    ],
    Field(discriminator="type"),
]

TERMINAL_EVENT_TYPES = frozenset({"RUN_FINISHED", "RUN_ERROR"})

_event_adapter: TypeAdapter = TypeAdapter(AGUIEvent)


def parse_event(data: Union[str, bytes, Dict[str, Any]]) -> Event:
    """Parse a wire-format event (JSON text or dict) into its typed model"""
    if isinstance(data, (str, bytes)):
        return _event_adapter.validate_json(data)
    return _event_adapter.validate_python(data)


def encode_event(event: Event) -> str:
    """Serialize an event to a single JSON line (camelCase keys)"""
    return json.dumps(event.model_dump(by_alias=True, mode="json"), ensure_ascii=False)


def is_terminal(event: Event) -> bool:
    return event.type in TERMINAL_EVENT_TYPES
