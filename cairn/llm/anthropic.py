import json
from typing import Annotated, Any, Literal

import httpx
from pydantic import Field, TypeAdapter

from cairn.llm.base import Provider
from cairn.llm.normalize import Normalizer, WireModel
from cairn.llm.types import (
    ChatEvent,
    ChatRequest,
    ContentBlockDelta,
    ErrorEvent,
    ErrorKind,
    InputJsonDelta,
    MessageDelta,
    MessageStop,
    StopReason,
    TextBlockStart,
    TextDelta,
    ThinkingBlockStart,
    ThinkingDelta,
    ToolSpec,
    ToolUseBlockStart,
)
from cairn.messages import (
    Message,
    Role,
    TextContent,
    ToolResultContent,
    ToolUseContent,
)

API_VERSION = "2023-06-01"

_STOP_REASONS = {
    "end_turn": StopReason.END_TURN,
    "tool_use": StopReason.TOOL_USE,
    "max_tokens": StopReason.MAX_TOKENS,
    "stop_sequence": StopReason.STOP_SEQUENCE,
    "pause_turn": StopReason.END_TURN,
    "refusal": StopReason.STOP_SEQUENCE,
}


# --- Wire shapes ---


class _Usage(WireModel):
    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_read_input_tokens: int | None = None
    cache_creation_input_tokens: int | None = None


class _MessageInfo(WireModel):
    id: str = ""
    model: str = ""
    usage: _Usage = Field(default_factory=_Usage)


class _MessageStart(WireModel):
    type: Literal["message_start"]
    message: _MessageInfo = Field(default_factory=_MessageInfo)


class _TextBlock(WireModel):
    type: Literal["text"]
    text: str = ""


class _ToolUseBlock(WireModel):
    type: Literal["tool_use"]
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class _ThinkingBlock(WireModel):
    type: Literal["thinking"]
    thinking: str = ""


class _BlockStart(WireModel):
    type: Literal["content_block_start"]
    index: int
    content_block: dict[str, Any]


class _BlockDelta(WireModel):
    type: Literal["content_block_delta"]
    index: int
    delta: dict[str, Any]


class _BlockStop(WireModel):
    type: Literal["content_block_stop"]
    index: int


class _DeltaBody(WireModel):
    stop_reason: str | None = None


class _MessageDelta(WireModel):
    type: Literal["message_delta"]
    delta: _DeltaBody = Field(default_factory=_DeltaBody)
    usage: _Usage = Field(default_factory=_Usage)


class _MessageStop(WireModel):
    type: Literal["message_stop"]


class _Ping(WireModel):
    type: Literal["ping"]


class _ErrorBody(WireModel):
    type: str = "error"
    message: str = ""


class _Error(WireModel):
    type: Literal["error"]
    error: _ErrorBody = Field(default_factory=_ErrorBody)


_EVENT = TypeAdapter(
    Annotated[
        _MessageStart | _BlockStart | _BlockDelta | _BlockStop | _MessageDelta | _MessageStop | _Ping | _Error,
        Field(discriminator="type"),
    ]
)
_BLOCK = TypeAdapter(Annotated[_TextBlock | _ToolUseBlock | _ThinkingBlock, Field(discriminator="type")])
_EVENT_TYPES = {
    "message_start",
    "content_block_start",
    "content_block_delta",
    "content_block_stop",
    "message_delta",
    "message_stop",
    "ping",
    "error",
}
_BLOCK_TYPES = {"text", "tool_use", "thinking"}


class AnthropicNormalizer(Normalizer):
    """The Messages API already streams the canonical shape.

    Vendor block indices are remapped so that skipped block types
    (redacted thinking, server tools) leave no gaps.
    """

    def __init__(self, model: str):
        super().__init__(model)
        self._indices: dict[int, int] = {}
        self._delta_sent = False

    def feed(self, event: str | None, payload: dict[str, Any]) -> list[ChatEvent]:
        if payload.get("type") not in _EVENT_TYPES:
            return []
        parsed = self._validate(_EVENT, payload)
        if parsed is None:
            return []

        match parsed:
            case _MessageStart(message=message):
                self._add_usage(message.usage)
                return self._ensure_started(message.id)
            case _BlockStart():
                return self._block_start(parsed)
            case _BlockDelta():
                return self._block_delta(parsed)
            case _BlockStop(index=index):
                if index not in self._indices or self._open is None or self._open[0] != self._indices[index]:
                    return []
                return self._close_open()
            case _MessageDelta(delta=delta, usage=usage):
                self._add_usage(usage)
                if delta.stop_reason:
                    self.stop_reason = _STOP_REASONS.get(delta.stop_reason, StopReason.END_TURN)
                events = self._ensure_started()
                events += self._close_open()
                events.append(MessageDelta(stop_reason=self.stop_reason or self._default_stop_reason(), usage=self.usage))
                self._delta_sent = True
                return events
            case _MessageStop():
                if not self._delta_sent:
                    return self._finish(self.stop_reason or self._default_stop_reason())
                self._finished = True
                return [MessageStop()]
            case _Error(error=error):
                kind = ErrorKind.AUTHENTICATION if error.type == "authentication_error" else ErrorKind.VENDOR
                self._finished = True
                return [ErrorEvent(kind=kind, message=error.message or error.type)]
        return []

    def finish(self) -> list[ChatEvent]:
        # Without message_stop the response is truncated; the caller sees no stop.
        if self._finished or not self._delta_sent:
            return []
        self._finished = True
        return [MessageStop()]

    def _block_start(self, event: _BlockStart) -> list[ChatEvent]:
        if event.content_block.get("type") not in _BLOCK_TYPES:
            return []
        block = self._validate(_BLOCK, event.content_block)
        if block is None:
            return []

        events = self._ensure_started()
        match block:
            case _TextBlock(text=text):
                events += self._open_block("text", TextBlockStart(text=text))
            case _ToolUseBlock(id=call_id, name=name, input=tool_input):
                events += self._open_block("tool_use", ToolUseBlockStart(id=call_id, name=name, input=tool_input))
                self._tool_uses += 1
            case _ThinkingBlock(thinking=thinking):
                events += self._open_block("thinking", ThinkingBlockStart(thinking=thinking))
        self._indices[event.index] = self._open[0]
        return events

    def _block_delta(self, event: _BlockDelta) -> list[ChatEvent]:
        index = self._indices.get(event.index)
        if index is None or self._open is None or self._open[0] != index:
            return []

        delta = event.delta
        match delta.get("type"):
            case "text_delta" if isinstance(delta.get("text"), str):
                return [ContentBlockDelta(index=index, delta=TextDelta(text=delta["text"]))]
            case "input_json_delta" if isinstance(delta.get("partial_json"), str):
                return [ContentBlockDelta(index=index, delta=InputJsonDelta(partial_json=delta["partial_json"]))]
            case "thinking_delta" if isinstance(delta.get("thinking"), str):
                return [ContentBlockDelta(index=index, delta=ThinkingDelta(thinking=delta["thinking"]))]
        return []

    def _add_usage(self, usage: _Usage) -> None:
        if usage.input_tokens is not None:
            self.usage.input_tokens = usage.input_tokens
        if usage.output_tokens is not None:
            self.usage.output_tokens = usage.output_tokens
        if usage.cache_read_input_tokens is not None:
            self.usage.cache_read_tokens = usage.cache_read_input_tokens
        if usage.cache_creation_input_tokens is not None:
            self.usage.cache_write_tokens = usage.cache_creation_input_tokens


class AnthropicProvider(Provider):
    name = "anthropic"
    default_base_url = "https://api.anthropic.com"
    api_key_envs = ("ANTHROPIC_API_KEY",)

    def build_request(self, request: ChatRequest, model: str, api_key: str | None) -> httpx.Request:
        system, messages = self._convert_messages(request.messages)
        if request.system_prompt:
            system = [request.system_prompt, *system]

        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": self.max_tokens(request),
            "stream": True,
        }
        if system:
            body["system"] = [{"type": "text", "text": "\n\n".join(system), "cache_control": {"type": "ephemeral"}}]
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.tools:
            tools = self._convert_tools(request.tools)
            tools[-1]["cache_control"] = {"type": "ephemeral"}
            body["tools"] = tools

        headers = {
            "x-api-key": api_key or "",
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
            "accept": "text/event-stream",
            **self.extra_headers,
        }
        return httpx.Request("POST", f"{self.base_url}/v1/messages", headers=headers, content=json.dumps(body))

    def create_normalizer(self, model: str) -> Normalizer:
        return AnthropicNormalizer(model)

    # --- Message conversion ---

    def _convert_tools(self, tools: list[ToolSpec]) -> list[dict]:
        return [{"name": t.name, "description": t.description, "input_schema": t.input_schema} for t in tools]

    def _convert_messages(self, messages: list[Message]) -> tuple[list[str], list[dict]]:
        system: list[str] = []
        result: list[dict] = []
        for msg in messages:
            if msg.role == Role.SYSTEM:
                if text := msg.text:
                    system.append(text)
                continue

            blocks = self._convert_blocks(msg)
            if not blocks:
                continue
            # Consecutive same-role messages are merged; tool results ride in user turns.
            if result and result[-1]["role"] == msg.role.value:
                result[-1]["content"].extend(blocks)
            else:
                result.append({"role": msg.role.value, "content": blocks})
        return system, result

    def _convert_blocks(self, msg: Message) -> list[dict]:
        blocks: list[dict] = []
        for block in msg.content:
            match block:
                case TextContent(text=text) if text:
                    blocks.append({"type": "text", "text": text})
                case ToolUseContent() if msg.role == Role.ASSISTANT:
                    blocks.append({"type": "tool_use", "id": block.id, "name": block.name, "input": block.input})
                case ToolResultContent():
                    blocks.append(
                        {
                            "type": "tool_result",
                            "tool_use_id": block.tool_use_id,
                            "content": block.output,
                            "is_error": block.is_error,
                        }
                    )
        return blocks
