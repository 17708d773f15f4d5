import json
from typing import Any

import httpx
from pydantic import TypeAdapter

from cairn.llm.base import Provider, WireFormat
from cairn.llm.normalize import Normalizer, WireModel, new_call_id
from cairn.llm.types import ChatEvent, ChatRequest, ErrorEvent, ErrorKind, StopReason, ToolSpec
from cairn.messages import Message, Role, TextContent, ToolResultContent


# --- Wire shapes ---


class _Function(WireModel):
    name: str
    arguments: dict[str, Any] | str | None = None


class _ToolCall(WireModel):
    id: str | None = None
    function: _Function


class _Message(WireModel):
    content: str = ""
    thinking: str | None = None
    tool_calls: list[_ToolCall] | None = None


class _Line(WireModel):
    model: str = ""
    message: _Message | None = None
    done: bool = False
    done_reason: str | None = None
    prompt_eval_count: int | None = None
    eval_count: int | None = None
    error: str | None = None


_LINE = TypeAdapter(_Line)


class OllamaNormalizer(Normalizer):
    def feed(self, event: str | None, payload: dict[str, Any]) -> list[ChatEvent]:
        line = self._validate(_LINE, payload)
        if line is None:
            return []

        if line.error:
            self._finished = True
            return [ErrorEvent(kind=ErrorKind.VENDOR, message=line.error)]

        events = self._ensure_started()
        if line.message is not None:
            if line.message.thinking:
                events += self._thinking(line.message.thinking)
            if line.message.content:
                events += self._text(line.message.content)
            for call in line.message.tool_calls or []:
                call_id = call.id or new_call_id()
                events += self._tool_use(call_id, call.function.name, call.function.arguments or {})

        if line.done:
            self.usage.input_tokens = line.prompt_eval_count or 0
            self.usage.output_tokens = line.eval_count or 0
            match line.done_reason:
                case "length":
                    self.stop_reason = StopReason.MAX_TOKENS
                case _:
                    self.stop_reason = self._default_stop_reason()
            events += self._finish(self.stop_reason)
        return events


class OllamaProvider(Provider):
    name = "ollama"
    default_base_url = "http://localhost:11434"
    requires_api_key = False
    wire_format = WireFormat.NDJSON

    def build_request(self, request: ChatRequest, model: str, api_key: str | None) -> httpx.Request:
        messages = self._convert_messages(request.messages)
        if request.system_prompt:
            messages.insert(0, {"role": "system", "content": request.system_prompt})

        options: dict[str, Any] = {"num_predict": self.max_tokens(request)}
        if request.temperature is not None:
            options["temperature"] = request.temperature

        body: dict[str, Any] = {"model": model, "messages": messages, "stream": True, "options": options}
        if request.tools:
            body["tools"] = self._convert_tools(request.tools)

        headers = {"content-type": "application/json", **self.extra_headers}
        if api_key:
            headers["authorization"] = f"Bearer {api_key}"
        return httpx.Request("POST", f"{self.base_url}/api/chat", headers=headers, content=json.dumps(body))

    def create_normalizer(self, model: str) -> Normalizer:
        return OllamaNormalizer(model)

    def _convert_tools(self, tools: list[ToolSpec]) -> list[dict]:
        return [
            {
                "type": "function",
                "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
            }
            for t in tools
        ]

    def _convert_messages(self, messages: list[Message]) -> list[dict]:
        tool_names = {block.id: block.name for msg in messages for block in msg.tool_uses}
        result: list[dict] = []
        for msg in messages:
            if msg.role == Role.ASSISTANT:
                tool_uses = msg.tool_uses
                if not msg.text and not tool_uses:
                    continue
                converted: dict[str, Any] = {"role": "assistant", "content": msg.text}
                if tool_uses:
                    converted["tool_calls"] = [
                        {"function": {"name": block.name, "arguments": block.input}} for block in tool_uses
                    ]
                result.append(converted)
                continue

            texts: list[str] = []
            for block in msg.content:
                match block:
                    case ToolResultContent():
                        result.append(
                            {
                                "role": "tool",
                                "tool_name": tool_names.get(block.tool_use_id, "unknown"),
                                "content": block.output,
                            }
                        )
                    case TextContent(text=text) if text:
                        texts.append(text)
            if texts:
                result.append({"role": msg.role.value, "content": "\n\n".join(texts)})
        return result
