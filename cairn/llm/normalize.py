"""Shared machinery for turning vendor stream payloads into canonical events."""

import json
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from cairn.llm.types import (
    ChatEvent,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    InputJsonDelta,
    MessageDelta,
    MessageStart,
    MessageStop,
    StopReason,
    TextBlockStart,
    TextDelta,
    ThinkingBlockStart,
    ThinkingDelta,
    ToolUseBlockStart,
)
from cairn.logging import get_logger
from cairn.usage import Usage
from cairn.utils import new_id

_logger = get_logger(__name__)


class WireModel(BaseModel):
    """Base for vendor payload shapes; unknown vendor fields are ignored."""

    model_config = ConfigDict(extra="ignore")


def parse_arguments(raw: str) -> tuple[dict, bool]:
    """Parse accumulated tool arguments. Returns (input, ok)."""
    if not raw.strip():
        return {}, True
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {}, False
    if not isinstance(value, dict):
        return {}, False
    return value, True


def new_call_id() -> str:
    """Id for a vendor tool call that arrived without one; unique across responses."""
    return new_id("call_")


class Normalizer(ABC):
    """Converts one response's vendor payloads into canonical ChatEvents.

    Block indices are handed out in order and never reused; at most one
    block is open at a time.
    """

    def __init__(self, model: str):
        self.model = model
        self.usage = Usage()
        self.stop_reason: StopReason | None = None
        self._started = False
        self._finished = False
        self._next_index = 0
        self._open: tuple[int, str] | None = None  # (index, block type)
        self._tool_uses = 0

    def _validate[T](self, adapter: TypeAdapter[T], payload: dict[str, Any]) -> T | None:
        try:
            return adapter.validate_python(payload)
        except ValidationError as e:
            _logger.debug("Dropping malformed %s payload: %s", type(self).__name__, e)
            return None

    @abstractmethod
    def feed(self, event: str | None, payload: dict[str, Any]) -> list[ChatEvent]: ...

    def finish(self) -> list[ChatEvent]:
        """Called once the byte stream closed or the [DONE] sentinel arrived."""
        if self._finished:
            return []
        return self._finish(self.stop_reason or self._default_stop_reason())

    @property
    def finished(self) -> bool:
        return self._finished

    # --- helpers for subclasses ---

    def _default_stop_reason(self) -> StopReason:
        return StopReason.TOOL_USE if self._tool_uses else StopReason.END_TURN

    def _ensure_started(self, message_id: str = "") -> list[ChatEvent]:
        if self._started:
            return []
        self._started = True
        return [MessageStart(id=message_id, model=self.model)]

    def _close_open(self) -> list[ChatEvent]:
        if self._open is None:
            return []
        index, _ = self._open
        self._open = None
        return [ContentBlockStop(index=index)]

    def _open_block(self, kind: str, start) -> list[ChatEvent]:
        events = self._close_open()
        index = self._next_index
        self._next_index += 1
        self._open = (index, kind)
        events.append(ContentBlockStart(index=index, content_block=start))
        return events

    def _text(self, text: str) -> list[ChatEvent]:
        if not text:
            return []
        events = self._ensure_started()
        if self._open is None or self._open[1] != "text":
            events += self._open_block("text", TextBlockStart())
        events.append(ContentBlockDelta(index=self._open[0], delta=TextDelta(text=text)))
        return events

    def _thinking(self, text: str) -> list[ChatEvent]:
        if not text:
            return []
        events = self._ensure_started()
        if self._open is None or self._open[1] != "thinking":
            events += self._open_block("thinking", ThinkingBlockStart())
        events.append(ContentBlockDelta(index=self._open[0], delta=ThinkingDelta(thinking=text)))
        return events

    def _tool_use(self, call_id: str, name: str, arguments: str | dict) -> list[ChatEvent]:
        """Emit one complete tool_use block: start, raw arguments, stop."""
        if isinstance(arguments, dict):
            parsed, raw = arguments, json.dumps(arguments)
        else:
            raw = arguments
            parsed, ok = parse_arguments(raw)
            if not ok:
                _logger.warning("Incomplete arguments for tool call %s (%s): %.200s", call_id, name, raw)

        events = self._ensure_started()
        events += self._open_block("tool_use", ToolUseBlockStart(id=call_id, name=name, input=parsed))
        index = self._open[0]
        if raw:
            events.append(ContentBlockDelta(index=index, delta=InputJsonDelta(partial_json=raw)))
        events += self._close_open()
        self._tool_uses += 1
        return events

    def _finish(self, stop_reason: StopReason) -> list[ChatEvent]:
        events = self._ensure_started()
        events += self._close_open()
        events.append(MessageDelta(stop_reason=stop_reason, usage=self.usage))
        events.append(MessageStop())
        self._finished = True
        return events
