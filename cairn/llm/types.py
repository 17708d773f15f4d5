import json
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from cairn.core.cancel import CancelToken
from cairn.messages import Message
from cairn.usage import Usage


class ChatEventType(StrEnum):
    MESSAGE_START = "message_start"
    CONTENT_BLOCK_START = "content_block_start"
    CONTENT_BLOCK_DELTA = "content_block_delta"
    CONTENT_BLOCK_STOP = "content_block_stop"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"
    ERROR = "error"


class StopReason(StrEnum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"


class ErrorKind(StrEnum):
    AUTHENTICATION = "authentication_error"
    TRANSPORT = "transport_error"
    VENDOR = "vendor_error"
    PROTOCOL = "protocol_error"
    CANCELLED = "cancelled"


# --- Content block starts ---


@dataclass(frozen=True)
class TextBlockStart:
    type: str = field(default="text", init=False)
    text: str = ""


@dataclass(frozen=True)
class ToolUseBlockStart:
    type: str = field(default="tool_use", init=False)
    id: str
    name: str
    input: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ThinkingBlockStart:
    type: str = field(default="thinking", init=False)
    thinking: str = ""


type BlockStart = TextBlockStart | ToolUseBlockStart | ThinkingBlockStart


# --- Deltas ---


@dataclass(frozen=True)
class TextDelta:
    type: str = field(default="text_delta", init=False)
    text: str


@dataclass(frozen=True)
class InputJsonDelta:
    type: str = field(default="input_json_delta", init=False)
    partial_json: str


@dataclass(frozen=True)
class ThinkingDelta:
    type: str = field(default="thinking_delta", init=False)
    thinking: str


type Delta = TextDelta | InputJsonDelta | ThinkingDelta


# --- Events ---


@dataclass(frozen=True)
class ChatEvent:
    type: ChatEventType

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass(frozen=True)
class MessageStart(ChatEvent):
    type: ChatEventType = field(default=ChatEventType.MESSAGE_START, init=False)
    id: str = ""
    model: str = ""


@dataclass(frozen=True)
class ContentBlockStart(ChatEvent):
    type: ChatEventType = field(default=ChatEventType.CONTENT_BLOCK_START, init=False)
    index: int
    content_block: BlockStart


@dataclass(frozen=True)
class ContentBlockDelta(ChatEvent):
    type: ChatEventType = field(default=ChatEventType.CONTENT_BLOCK_DELTA, init=False)
    index: int
    delta: Delta


@dataclass(frozen=True)
class ContentBlockStop(ChatEvent):
    type: ChatEventType = field(default=ChatEventType.CONTENT_BLOCK_STOP, init=False)
    index: int


@dataclass(frozen=True)
class MessageDelta(ChatEvent):
    type: ChatEventType = field(default=ChatEventType.MESSAGE_DELTA, init=False)
    stop_reason: StopReason
    usage: Usage = field(default_factory=Usage)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "delta": {"stop_reason": self.stop_reason.value},
            "usage": {
                "input_tokens": self.usage.input_tokens,
                "output_tokens": self.usage.output_tokens,
                "cache_read_input_tokens": self.usage.cache_read_tokens,
                "cache_creation_input_tokens": self.usage.cache_write_tokens,
            },
        }


@dataclass(frozen=True)
class MessageStop(ChatEvent):
    type: ChatEventType = field(default=ChatEventType.MESSAGE_STOP, init=False)


@dataclass(frozen=True)
class ErrorEvent(ChatEvent):
    type: ChatEventType = field(default=ChatEventType.ERROR, init=False)
    kind: ErrorKind
    message: str
    status_code: int | None = None

    def to_dict(self) -> dict:
        return {"type": self.type.value, "error": {"type": self.kind.value, "message": self.message}}


# --- Requests ---


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class ChatRequest:
    messages: list[Message]
    model: str | None = None
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    tools: list[ToolSpec] | None = None
    cancel: CancelToken | None = None
