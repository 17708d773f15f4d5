"""Conversation content: messages and their tagged content blocks."""

import json
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from cairn.usage import Usage
from cairn.utils import new_id, now_ms


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ToolStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseContent(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    status: ToolStatus = ToolStatus.PENDING


class ToolResultContent(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    output: str
    is_error: bool = False
    duration_ms: int | None = None


class ThinkingContent(BaseModel):
    type: Literal["thinking"] = "thinking"
    text: str


class ErrorContent(BaseModel):
    type: Literal["error"] = "error"
    message: str
    code: str | None = None


ContentBlock = Annotated[
    TextContent | ToolUseContent | ToolResultContent | ThinkingContent | ErrorContent,
    Field(discriminator="type"),
]


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    role: Role
    content: list[ContentBlock] = Field(default_factory=list)
    timestamp: int = Field(default_factory=now_ms)
    model: str | None = None
    usage: Usage | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.content if isinstance(block, TextContent))

    @property
    def tool_uses(self) -> list[ToolUseContent]:
        return [block for block in self.content if isinstance(block, ToolUseContent)]

    @property
    def tool_results(self) -> list[ToolResultContent]:
        return [block for block in self.content if isinstance(block, ToolResultContent)]


def user_message(text: str) -> Message:
    return Message(role=Role.USER, content=[TextContent(text=text)])


def tool_result_message(results: list[ToolResultContent]) -> Message:
    return Message(role=Role.USER, content=list(results))


def block_chars(block: Any) -> int:
    match block:
        case TextContent() | ThinkingContent():
            return len(block.text)
        case ToolUseContent():
            return len(block.name) + len(json.dumps(block.input))
        case ToolResultContent():
            return len(block.output)
        case ErrorContent():
            return len(block.message)
    return 0
