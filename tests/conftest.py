import asyncio
from collections.abc import AsyncGenerator, AsyncIterator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from pydantic import BaseModel

from cairn.database import Database
from cairn.llm.types import (
    ChatEvent,
    ChatRequest,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    ErrorEvent,
    ErrorKind,
    InputJsonDelta,
    MessageDelta,
    MessageStart,
    MessageStop,
    StopReason,
    TextBlockStart,
    TextDelta,
    ToolUseBlockStart,
)
from cairn.permissions import Permission, PermissionChecker, PermissionMode, PermissionPolicy
from cairn.session.store import SessionStore
from cairn.tools.core import Tool, ToolExecution, ToolResult
from cairn.usage import Usage


class ScriptedProvider:
    """Replays one scripted list of canonical events per chat() call.

    An asyncio.Event in a script pauses the stream until it is set.
    """

    name = "scripted"

    def __init__(self, *scripts: list, default_model: str = "scripted-model"):
        self.scripts = list(scripts)
        self.default_model = default_model
        self.requests: list[ChatRequest] = []

    async def chat(self, request: ChatRequest) -> AsyncIterator[ChatEvent]:
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else text_response("(no script)")
        for item in script:
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            if request.cancel is not None and request.cancel.cancelled:
                yield ErrorEvent(kind=ErrorKind.CANCELLED, message="Stream cancelled")
                return
            yield item

    def is_configured(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True


def text_response(
    *chunks: str,
    stop_reason: StopReason = StopReason.END_TURN,
    usage: Usage | None = None,
    model: str = "scripted-model",
) -> list[ChatEvent]:
    events: list[ChatEvent] = [MessageStart(id="msg_1", model=model)]
    events.append(ContentBlockStart(index=0, content_block=TextBlockStart()))
    events += [ContentBlockDelta(index=0, delta=TextDelta(text=chunk)) for chunk in chunks]
    events.append(ContentBlockStop(index=0))
    events.append(MessageDelta(stop_reason=stop_reason, usage=usage or Usage()))
    events.append(MessageStop())
    return events


def tool_response(*calls: tuple[str, str, str], text: str | None = None) -> list[ChatEvent]:
    """calls are (id, name, raw JSON arguments)."""
    events: list[ChatEvent] = [MessageStart(id="msg_2", model="scripted-model")]
    index = 0
    if text:
        events.append(ContentBlockStart(index=0, content_block=TextBlockStart()))
        events.append(ContentBlockDelta(index=0, delta=TextDelta(text=text)))
        events.append(ContentBlockStop(index=0))
        index = 1
    for call_id, name, arguments in calls:
        events.append(ContentBlockStart(index=index, content_block=ToolUseBlockStart(id=call_id, name=name)))
        events.append(ContentBlockDelta(index=index, delta=InputJsonDelta(partial_json=arguments)))
        events.append(ContentBlockStop(index=index))
        index += 1
    events.append(MessageDelta(stop_reason=StopReason.TOOL_USE))
    events.append(MessageStop())
    return events


class EchoInput(BaseModel):
    text: str
    delay: float = 0


class EchoTool(Tool):
    name = "echo"
    description = "Echo the text back"
    permission = Permission.READ
    input_model = EchoInput

    def __init__(self):
        self.calls: list[str] = []

    async def execute(self, execution: ToolExecution, text: str, delay: float = 0, **kwargs: Any) -> ToolResult:
        self.calls.append(text)
        if delay:
            await asyncio.sleep(delay)
        return ToolResult(output=text, preview=f"echo {text}")


class FailingTool(Tool):
    name = "explode"
    description = "Always raises"
    permission = Permission.READ

    async def execute(self, execution: ToolExecution, **kwargs: Any) -> ToolResult:
        raise RuntimeError("boom")


def allow_all() -> PermissionChecker:
    return PermissionChecker(PermissionPolicy(default=PermissionMode.ALLOW_ALL))


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncGenerator[SessionStore]:
    db = Database(tmp_path / "sessions.db")
    await db.connect()
    store = SessionStore(db.conn)
    await store.init_schema()
    yield store
    await db.close()


@pytest.fixture
def echo() -> EchoTool:
    return EchoTool()
