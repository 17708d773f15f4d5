"""Events a turn reports to its caller, in the order they happen."""

import json
from dataclasses import asdict, dataclass, field
from enum import StrEnum


class ProcessorEventType(StrEnum):
    MESSAGE_START = "message:start"
    TEXT_DELTA = "text:delta"
    TEXT_DONE = "text:done"
    THINKING_DELTA = "thinking:delta"
    TOOL_START = "tool:start"
    TOOL_DONE = "tool:done"
    PERMISSION_ASK = "permission:ask"
    COMPACTION = "compaction"
    MESSAGE_DONE = "message:done"
    TURN_DONE = "turn:done"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProcessorEvent:
    type: ProcessorEventType

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass(frozen=True)
class MessageStartEvent(ProcessorEvent):
    type: ProcessorEventType = field(default=ProcessorEventType.MESSAGE_START, init=False)
    message_id: str
    model: str = ""


@dataclass(frozen=True)
class TextDeltaEvent(ProcessorEvent):
    type: ProcessorEventType = field(default=ProcessorEventType.TEXT_DELTA, init=False)
    message_id: str
    text: str


@dataclass(frozen=True)
class TextDoneEvent(ProcessorEvent):
    type: ProcessorEventType = field(default=ProcessorEventType.TEXT_DONE, init=False)
    message_id: str
    text: str


@dataclass(frozen=True)
class ThinkingDeltaEvent(ProcessorEvent):
    type: ProcessorEventType = field(default=ProcessorEventType.THINKING_DELTA, init=False)
    message_id: str
    text: str


@dataclass(frozen=True)
class ToolStartEvent(ProcessorEvent):
    type: ProcessorEventType = field(default=ProcessorEventType.TOOL_START, init=False)
    tool_id: str
    name: str
    input: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolDoneEvent(ProcessorEvent):
    type: ProcessorEventType = field(default=ProcessorEventType.TOOL_DONE, init=False)
    tool_id: str
    name: str
    output: str
    is_error: bool = False
    preview: str = ""
    duration_ms: int = 0


@dataclass(frozen=True)
class PermissionAskEvent(ProcessorEvent):
    type: ProcessorEventType = field(default=ProcessorEventType.PERMISSION_ASK, init=False)
    tool_id: str
    name: str
    permission: str
    target: str | None
    question: str


@dataclass(frozen=True)
class CompactionEvent(ProcessorEvent):
    type: ProcessorEventType = field(default=ProcessorEventType.COMPACTION, init=False)
    original_count: int
    new_count: int


@dataclass(frozen=True)
class MessageDoneEvent(ProcessorEvent):
    type: ProcessorEventType = field(default=ProcessorEventType.MESSAGE_DONE, init=False)
    message_id: str
    stop_reason: str | None = None
    usage: dict = field(default_factory=dict)


@dataclass(frozen=True)
class TurnDoneEvent(ProcessorEvent):
    type: ProcessorEventType = field(default=ProcessorEventType.TURN_DONE, init=False)
    session_id: str
    turns: int
    stop_reason: str
    usage: dict = field(default_factory=dict)


@dataclass(frozen=True)
class TurnErrorEvent(ProcessorEvent):
    type: ProcessorEventType = field(default=ProcessorEventType.ERROR, init=False)
    kind: str
    message: str
    status_code: int | None = None


@dataclass(frozen=True)
class CancelledEvent(ProcessorEvent):
    type: ProcessorEventType = field(default=ProcessorEventType.CANCELLED, init=False)
    reason: str = "cancelled"
