import json
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import Field, TypeAdapter

from cairn.llm.base import Provider
from cairn.llm.normalize import Normalizer, WireModel, new_call_id
from cairn.llm.types import ChatEvent, ChatRequest, ErrorEvent, ErrorKind, StopReason, ToolSpec
from cairn.messages import Message, Role, TextContent, ToolResultContent, ToolUseContent

_STOP_REASONS = {
    "stop": StopReason.END_TURN,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
    "content_filter": StopReason.STOP_SEQUENCE,
}


# --- Wire shapes ---


class _Function(WireModel):
    name: str | None = None
    arguments: str | None = None


class _ToolCallFragment(WireModel):
    index: int = 0
    id: str | None = None
    function: _Function = Field(default_factory=_Function)


class _Delta(WireModel):
    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[_ToolCallFragment] | None = None


class _Choice(WireModel):
    index: int = 0
    delta: _Delta = Field(default_factory=_Delta)
    finish_reason: str | None = None


class _PromptDetails(WireModel):
    cached_tokens: int | None = None


class _Usage(WireModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    prompt_tokens_details: _PromptDetails | None = None


class _ErrorBody(WireModel):
    message: str = ""
    type: str | None = None


class _Chunk(WireModel):
    id: str = ""
    model: str = ""
    choices: list[_Choice] = Field(default_factory=list)
    usage: _Usage | None = None
    error: _ErrorBody | None = None


_CHUNK = TypeAdapter(_Chunk)


@dataclass
class _PendingCall:
    index: int
    id: str = ""
    name: str = ""
    fragments: list[str] = field(default_factory=list)


class OpenAINormalizer(Normalizer):
    """Chat completions chunks: tool call fragments arrive keyed by call index.

    Fragments are buffered until the next call index (or stream end), then the
    whole call is emitted as one tool_use block.
    """

    def __init__(self, model: str):
        super().__init__(model)
        self._pending: _PendingCall | None = None

    def feed(self, event: str | None, payload: dict[str, Any]) -> list[ChatEvent]:
        chunk = self._validate(_CHUNK, payload)
        if chunk is None:
            return []

        if chunk.error is not None:
            self._finished = True
            return [ErrorEvent(kind=ErrorKind.VENDOR, message=chunk.error.message or "Stream error")]

        events: list[ChatEvent] = []
        if chunk.usage is not None:
            self._set_usage(chunk.usage)

        for choice in chunk.choices[:1]:
            events += self._ensure_started(chunk.id)
            delta = choice.delta
            if delta.reasoning_content:
                events += self._flush_pending()
                events += self._thinking(delta.reasoning_content)
            if delta.content:
                events += self._flush_pending()
                events += self._text(delta.content)
            for fragment in delta.tool_calls or []:
                events += self._add_fragment(fragment)
            if choice.finish_reason:
                self.stop_reason = _STOP_REASONS.get(choice.finish_reason, StopReason.END_TURN)
        return events

    def finish(self) -> list[ChatEvent]:
        if self._finished:
            return []
        events = self._flush_pending()
        return events + self._finish(self.stop_reason or self._default_stop_reason())

    def _add_fragment(self, fragment: _ToolCallFragment) -> list[ChatEvent]:
        events: list[ChatEvent] = []
        pending = self._pending
        is_new_call = (
            pending is None
            or fragment.index != pending.index
            or bool(fragment.id and pending.id and fragment.id != pending.id)
        )
        if is_new_call:
            events += self._flush_pending()
            self._pending = pending = _PendingCall(index=fragment.index)

        if fragment.id:
            pending.id = fragment.id
        if fragment.function.name:
            pending.name += fragment.function.name
        if fragment.function.arguments:
            pending.fragments.append(fragment.function.arguments)
        return events

    def _flush_pending(self) -> list[ChatEvent]:
        pending, self._pending = self._pending, None
        if pending is None:
            return []
        call_id = pending.id or new_call_id()
        return self._tool_use(call_id, pending.name, "".join(pending.fragments))

    def _set_usage(self, usage: _Usage) -> None:
        cached = usage.prompt_tokens_details.cached_tokens if usage.prompt_tokens_details else None
        cached = cached or 0
        self.usage.input_tokens = max(usage.prompt_tokens - cached, 0)
        self.usage.cache_read_tokens = cached
        self.usage.output_tokens = usage.completion_tokens


class OpenAIProvider(Provider):
    name = "openai"
    default_base_url = "https://api.openai.com/v1"
    api_key_envs = ("OPENAI_API_KEY",)
    max_tokens_field = "max_completion_tokens"

    def build_request(self, request: ChatRequest, model: str, api_key: str | None) -> httpx.Request:
        messages = self._convert_messages(request.messages)
        if request.system_prompt:
            messages.insert(0, {"role": "system", "content": request.system_prompt})

        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
            self.max_tokens_field: self.max_tokens(request),
        }
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.tools:
            body["tools"] = self._convert_tools(request.tools)

        headers = {
            "content-type": "application/json",
            "accept": "text/event-stream",
            **self.extra_headers,
        }
        if api_key:
            headers["authorization"] = f"Bearer {api_key}"
        return httpx.Request("POST", f"{self.base_url}/chat/completions", headers=headers, content=json.dumps(body))

    def create_normalizer(self, model: str) -> Normalizer:
        return OpenAINormalizer(model)

    # --- Message conversion ---

    def _convert_tools(self, tools: list[ToolSpec]) -> list[dict]:
        return [
            {
                "type": "function",
                "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
            }
            for t in tools
        ]

    def _convert_messages(self, messages: list[Message]) -> list[dict]:
        result: list[dict] = []
        for msg in messages:
            match msg.role:
                case Role.SYSTEM:
                    if text := msg.text:
                        result.append({"role": "system", "content": text})
                case Role.ASSISTANT:
                    if converted := self._convert_assistant(msg):
                        result.append(converted)
                case Role.USER:
                    result.extend(self._convert_user(msg))
        return result

    def _convert_assistant(self, msg: Message) -> dict | None:
        tool_calls = [
            {
                "id": block.id,
                "type": "function",
                "function": {"name": block.name, "arguments": json.dumps(block.input)},
            }
            for block in msg.content
            if isinstance(block, ToolUseContent)
        ]
        text = msg.text
        if not text and not tool_calls:
            return None
        converted: dict[str, Any] = {"role": "assistant", "content": text or None}
        if tool_calls:
            converted["tool_calls"] = tool_calls
        return converted

    def _convert_user(self, msg: Message) -> list[dict]:
        result: list[dict] = []
        texts: list[str] = []
        for block in msg.content:
            match block:
                case ToolResultContent():
                    content = f"Error: {block.output}" if block.is_error else block.output
                    result.append({"role": "tool", "tool_call_id": block.tool_use_id, "content": content})
                case TextContent(text=text) if text:
                    texts.append(text)
        if texts:
            result.append({"role": "user", "content": "\n\n".join(texts)})
        return result


class OpenAICompatibleProvider(OpenAIProvider):
    """Any vendor serving the chat completions wire format under its own base URL."""

    max_tokens_field = "max_tokens"

    def __init__(self, name: str, base_url: str, api_key_envs: tuple[str, ...] = (), **kwargs):
        self.name = name
        self.default_base_url = base_url
        self.api_key_envs = api_key_envs
        super().__init__(**kwargs)


@dataclass(frozen=True)
class CompatiblePreset:
    base_url: str
    api_key_env: str


PRESETS: dict[str, CompatiblePreset] = {
    "groq": CompatiblePreset("https://api.groq.com/openai/v1", "GROQ_API_KEY"),
    "openrouter": CompatiblePreset("https://openrouter.ai/api/v1", "OPENROUTER_API_KEY"),
    "mistral": CompatiblePreset("https://api.mistral.ai/v1", "MISTRAL_API_KEY"),
    "together": CompatiblePreset("https://api.together.xyz/v1", "TOGETHER_API_KEY"),
    "deepseek": CompatiblePreset("https://api.deepseek.com/v1", "DEEPSEEK_API_KEY"),
    "xai": CompatiblePreset("https://api.x.ai/v1", "XAI_API_KEY"),
}
