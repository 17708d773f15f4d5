import copy
import json
from typing import Any

import httpx
from pydantic import Field, TypeAdapter

from cairn.llm.base import Provider
from cairn.llm.normalize import Normalizer, WireModel, new_call_id
from cairn.llm.types import ChatEvent, ChatRequest, ErrorEvent, ErrorKind, StopReason, ToolSpec
from cairn.messages import Message, Role, TextContent, ToolResultContent, ToolUseContent

_UNSUPPORTED_SCHEMA_KEYS = (
    "default",
    "exclusiveMaximum",
    "exclusiveMinimum",
    "additionalProperties",
    "$schema",
    "$defs",
    "title",
)


# --- Wire shapes ---


class _FunctionCall(WireModel):
    name: str
    args: dict[str, Any] | None = None
    id: str | None = None


class _Part(WireModel):
    text: str | None = None
    thought: bool = False
    functionCall: _FunctionCall | None = None


class _Content(WireModel):
    parts: list[_Part] = Field(default_factory=list)


class _Candidate(WireModel):
    content: _Content | None = None
    finishReason: str | None = None


class _UsageMetadata(WireModel):
    promptTokenCount: int = 0
    candidatesTokenCount: int = 0
    cachedContentTokenCount: int = 0
    thoughtsTokenCount: int = 0


class _ErrorBody(WireModel):
    message: str = ""
    status: str | None = None


class _Chunk(WireModel):
    candidates: list[_Candidate] = Field(default_factory=list)
    usageMetadata: _UsageMetadata | None = None
    responseId: str = ""
    error: _ErrorBody | None = None


_CHUNK = TypeAdapter(_Chunk)


class GeminiNormalizer(Normalizer):
    """Gemini sends whole function calls per part, so no argument buffering is needed."""

    def feed(self, event: str | None, payload: dict[str, Any]) -> list[ChatEvent]:
        chunk = self._validate(_CHUNK, payload)
        if chunk is None:
            return []

        if chunk.error is not None:
            self._finished = True
            kind = ErrorKind.AUTHENTICATION if chunk.error.status in ("UNAUTHENTICATED", "PERMISSION_DENIED") else ErrorKind.VENDOR
            return [ErrorEvent(kind=kind, message=chunk.error.message or "Stream error")]

        if chunk.usageMetadata is not None:
            self._set_usage(chunk.usageMetadata)

        events: list[ChatEvent] = []
        for candidate in chunk.candidates[:1]:
            events += self._ensure_started(chunk.responseId)
            parts = candidate.content.parts if candidate.content else []
            for part in parts:
                if part.functionCall is not None:
                    call = part.functionCall
                    call_id = call.id or new_call_id()
                    events += self._tool_use(call_id, call.name, call.args or {})
                elif part.text:
                    events += self._thinking(part.text) if part.thought else self._text(part.text)
            if candidate.finishReason:
                self.stop_reason = self._map_finish_reason(candidate.finishReason)
        return events

    def _map_finish_reason(self, reason: str) -> StopReason:
        match reason:
            case "STOP":
                return StopReason.TOOL_USE if self._tool_uses else StopReason.END_TURN
            case "MAX_TOKENS":
                return StopReason.MAX_TOKENS
            case _:
                return StopReason.STOP_SEQUENCE

    def _set_usage(self, usage: _UsageMetadata) -> None:
        cached = usage.cachedContentTokenCount
        self.usage.input_tokens = max(usage.promptTokenCount - cached, 0)
        self.usage.cache_read_tokens = cached
        self.usage.output_tokens = usage.candidatesTokenCount + usage.thoughtsTokenCount


class GeminiProvider(Provider):
    name = "gemini"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    api_key_envs = ("GEMINI_API_KEY", "GOOGLE_API_KEY")

    def build_request(self, request: ChatRequest, model: str, api_key: str | None) -> httpx.Request:
        system, contents = self._convert_messages(request.messages)
        if request.system_prompt:
            system = [request.system_prompt, *system]

        generation_config: dict[str, Any] = {"maxOutputTokens": self.max_tokens(request)}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature

        body: dict[str, Any] = {"contents": contents, "generationConfig": generation_config}
        if system:
            body["systemInstruction"] = {"parts": [{"text": "\n\n".join(system)}]}
        if request.tools:
            body["tools"] = self._convert_tools(request.tools)

        headers = {
            "content-type": "application/json",
            "x-goog-api-key": api_key or "",
            **self.extra_headers,
        }
        url = f"{self.base_url}/models/{model}:streamGenerateContent"
        return httpx.Request("POST", url, params={"alt": "sse"}, headers=headers, content=json.dumps(body))

    def create_normalizer(self, model: str) -> Normalizer:
        return GeminiNormalizer(model)

    # --- Message conversion ---

    def _convert_messages(self, messages: list[Message]) -> tuple[list[str], list[dict]]:
        system: list[str] = []
        contents: list[dict] = []
        tool_names = {block.id: block.name for msg in messages for block in msg.tool_uses}

        for msg in messages:
            if msg.role == Role.SYSTEM:
                if text := msg.text:
                    system.append(text)
                continue

            role = "model" if msg.role == Role.ASSISTANT else "user"
            parts = self._convert_parts(msg, tool_names)
            if not parts:
                continue
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].extend(parts)
            else:
                contents.append({"role": role, "parts": parts})
        return system, contents

    def _convert_parts(self, msg: Message, tool_names: dict[str, str]) -> list[dict]:
        parts: list[dict] = []
        for block in msg.content:
            match block:
                case TextContent(text=text) if text:
                    parts.append({"text": text})
                case ToolUseContent() if msg.role == Role.ASSISTANT:
                    parts.append({"functionCall": {"name": block.name, "args": block.input}})
                case ToolResultContent():
                    key = "error" if block.is_error else "result"
                    parts.append(
                        {
                            "functionResponse": {
                                "name": tool_names.get(block.tool_use_id, "unknown"),
                                "response": {key: block.output},
                            }
                        }
                    )
        return parts

    # --- Tool schema ---

    def _convert_tools(self, tools: list[ToolSpec]) -> list[dict]:
        declarations = [
            {"name": t.name, "description": t.description, "parameters": self._clean_schema(t.input_schema)}
            for t in tools
        ]
        return [{"functionDeclarations": declarations}]

    def _clean_schema(self, schema: dict) -> dict:
        schema = copy.deepcopy(schema)
        self._clean_schema_recursive(schema)
        return schema

    def _clean_schema_recursive(self, schema: dict) -> None:
        for key in _UNSUPPORTED_SCHEMA_KEYS:
            schema.pop(key, None)

        if schema.get("type") == "string" and "format" in schema:
            if schema["format"] not in {"enum", "date-time"}:
                del schema["format"]

        for prop in (schema.get("properties") or {}).values():
            if isinstance(prop, dict):
                self._clean_schema_recursive(prop)

        if isinstance(schema.get("items"), dict):
            self._clean_schema_recursive(schema["items"])

        for key in ("anyOf", "allOf", "oneOf"):
            for item in schema.get(key) or []:
                if isinstance(item, dict):
                    self._clean_schema_recursive(item)
