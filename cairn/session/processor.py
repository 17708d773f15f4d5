"""The turn state machine.

A turn appends the user message and then alternates model calls and tool
round-trips until the model stops asking for tools. Tool calls start as soon
as their arguments are complete, while the rest of the response is still
streaming; their results are appended in the order the calls were issued.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field

from cairn.constants import (
    DEFAULT_MAX_TOKENS,
    DOOM_LOOP_MIN_CALLS,
    DOOM_LOOP_MIN_TURNS,
    DOOM_LOOP_REPEATS,
    DOOM_LOOP_WINDOW,
    MAX_TURNS,
    TOOL_TIMEOUT,
)
from cairn.core.cancel import CancelToken, TurnCancelled, race
from cairn.llm.base import Provider
from cairn.llm.models import ModelCatalog
from cairn.llm.normalize import parse_arguments
from cairn.llm.types import (
    BlockStart,
    ChatRequest,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    Delta,
    ErrorEvent,
    ErrorKind,
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
from cairn.messages import (
    ContentBlock,
    ErrorContent,
    Message,
    Role,
    TextContent,
    ThinkingContent,
    ToolResultContent,
    ToolStatus,
    ToolUseContent,
    tool_result_message,
    user_message,
)
from cairn.permissions import Action, AskCallback, PermissionChecker, PermissionGate, describe
from cairn.session.compaction import Compactor
from cairn.session.events import (
    CancelledEvent,
    CompactionEvent,
    MessageDoneEvent,
    MessageStartEvent,
    PermissionAskEvent,
    ProcessorEvent,
    TextDeltaEvent,
    TextDoneEvent,
    ThinkingDeltaEvent,
    ToolDoneEvent,
    ToolStartEvent,
    TurnDoneEvent,
    TurnErrorEvent,
)
from cairn.session.models import SessionNotFoundError, SessionStatus
from cairn.session.prompts import system_prompt as default_system_prompt
from cairn.session.state import TurnState
from cairn.session.store import SessionStore
from cairn.tools.core import Tool, ToolContext, ToolExecution, ToolRegistry, ToolResult
from cairn.usage import Usage
from cairn.utils import monotonic_ms

_logger = get_logger(__name__)

DOOM_LOOP_MESSAGE = "Detected repetitive tool calls. Stopping to prevent infinite loop."


def detect_doom_loop(messages: list[Message]) -> bool:
    """True when the latest tool call keeps repeating with identical input."""
    calls = [
        (block.name, json.dumps(block.input, sort_keys=True))
        for message in messages[-DOOM_LOOP_WINDOW:]
        for block in message.tool_uses
    ]
    if len(calls) < DOOM_LOOP_MIN_CALLS:
        return False
    return calls.count(calls[-1]) >= DOOM_LOOP_REPEATS


@dataclass
class _Turn:
    session_id: str
    cancel: CancelToken
    ctx: ToolContext
    system_prompt: str
    usage: Usage = field(default_factory=Usage)
    model_calls: int = 0


@dataclass
class _Step:
    """One model response and the tool calls it issued."""

    message: Message | None = None
    blocks: dict[int, ContentBlock] = field(default_factory=dict)
    open: set[int] = field(default_factory=set)
    raw_inputs: dict[int, list[str]] = field(default_factory=dict)
    tool_uses: dict[str, ToolUseContent] = field(default_factory=dict)
    tasks: dict[str, asyncio.Task[tuple[ToolResult, int]]] = field(default_factory=dict)
    results: dict[str, tuple[ToolResult, int]] = field(default_factory=dict)
    stop_reason: StopReason | None = None
    usage: Usage = field(default_factory=Usage)
    stopped: bool = False
    error: ErrorEvent | None = None


class SessionProcessor:
    def __init__(
        self,
        provider: Provider,
        store: SessionStore,
        tools: ToolRegistry,
        checker: PermissionChecker,
        compactor: Compactor | None = None,
        system_prompt: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        max_turns: int = MAX_TURNS,
        tool_timeout: float = TOOL_TIMEOUT,
        ask_callback: AskCallback | None = None,
        catalog: ModelCatalog | None = None,
    ):
        self.provider = provider
        self.store = store
        self.tools = tools
        self.checker = checker
        self.compactor = compactor
        self.system_prompt = system_prompt
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_turns = max_turns
        self.tool_timeout = tool_timeout
        self.ask_callback = ask_callback
        self.catalog = catalog or ModelCatalog()
        self.state = TurnState.IDLE

    @property
    def model_id(self) -> str | None:
        return self.model or self.provider.default_model

    async def process(
        self,
        session_id: str,
        text: str,
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[ProcessorEvent]:
        """Run one turn. Raises SessionBusyError if another turn holds the session."""
        cancel = cancel or CancelToken()
        async with self.store.acquire(session_id):
            session = await self.store.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)

            await self.store.add_message(session_id, user_message(text))
            turn = _Turn(
                session_id=session_id,
                cancel=cancel,
                ctx=ToolContext(
                    session_id=session_id,
                    working_dir=session.project_path,
                    permissions=PermissionGate(self.checker, self.ask_callback, cancel),
                    cancel=cancel,
                ),
                system_prompt=self.system_prompt or default_system_prompt(session.project_path),
            )
            try:
                async for event in self._run(turn):
                    yield event
            except Exception:
                _logger.exception("Turn failed for session %s", session_id)
                self.state = TurnState.FAILED
                await self.store.set_status(session_id, SessionStatus.FAILED)
                raise

    async def _run(self, turn: _Turn) -> AsyncIterator[ProcessorEvent]:
        while True:
            if turn.cancel.cancelled:
                async for event in self._cancelled(turn, None):
                    yield event
                return

            session = await self.store.get(turn.session_id)
            if session is None:
                raise SessionNotFoundError(turn.session_id)

            if turn.model_calls >= self.max_turns:
                _logger.warning("Session %s reached max turns (%d)", turn.session_id, self.max_turns)
                async for event in self._stop_early(turn, f"Stopped: reached max turns ({self.max_turns}).", "max_turns"):
                    yield event
                return
            if turn.model_calls >= DOOM_LOOP_MIN_TURNS and detect_doom_loop(session.messages):
                _logger.warning("Doom loop detected in session %s", turn.session_id)
                async for event in self._stop_early(turn, DOOM_LOOP_MESSAGE, "doom_loop"):
                    yield event
                return

            messages = session.messages
            if self.compactor is not None:
                result = await self.compactor.compact(messages, turn.system_prompt)
                if result.compacted:
                    session.messages = messages = result.messages
                    await self.store.update(session)
                    yield CompactionEvent(original_count=result.original_count, new_count=result.new_count)

            self.state = TurnState.AWAITING_MODEL
            turn.model_calls += 1
            step = _Step()
            async for event in self._stream(turn, step, messages):
                yield event

            cancelled = await self._await_tools(turn, step)
            if cancelled:
                async for event in self._cancelled(turn, step):
                    yield event
                return

            if error := self._abnormal_end(step):
                async for event in self._failed(turn, step, error):
                    yield event
                return

            async for event in self._complete_step(turn, step):
                yield event

            if step.stop_reason == StopReason.TOOL_USE or step.tool_uses:
                continue

            await self.store.set_status(turn.session_id, SessionStatus.ACTIVE)
            self.state = TurnState.IDLE
            stop_reason = (step.stop_reason or StopReason.END_TURN).value
            yield TurnDoneEvent(
                session_id=turn.session_id,
                turns=turn.model_calls,
                stop_reason=stop_reason,
                usage=turn.usage.to_dict(),
            )
            return

    # --- Streaming ---

    async def _stream(self, turn: _Turn, step: _Step, messages: list[Message]) -> AsyncIterator[ProcessorEvent]:
        request = ChatRequest(
            messages=messages,
            model=self.model,
            system_prompt=turn.system_prompt,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            tools=self.tools.specs() or None,
            cancel=turn.cancel,
        )
        async with aclosing(self.provider.chat(request)) as stream:
            async for event in stream:
                match event:
                    case MessageStart(model=model):
                        if step.message is None:
                            yield await self._open_message(turn, step, model)
                    case ContentBlockStart(index=index, content_block=start):
                        if step.message is None:
                            yield await self._open_message(turn, step, "")
                        self._start_block(step, index, start)
                    case ContentBlockDelta(index=index, delta=delta):
                        if delta_event := self._apply_delta(step, index, delta):
                            yield delta_event
                    case ContentBlockStop(index=index):
                        async for stop_event in self._stop_block(turn, step, index):
                            yield stop_event
                    case MessageDelta(stop_reason=stop_reason, usage=usage):
                        step.stop_reason = stop_reason
                        step.usage = usage.with_cost(self.catalog.pricing(self._message_model(step)))
                    case MessageStop():
                        if step.message is None:
                            yield await self._open_message(turn, step, "")
                        step.stopped = True
                    case ErrorEvent():
                        step.error = event
                        break
                if turn.cancel.cancelled:
                    break

    def _message_model(self, step: _Step) -> str | None:
        if step.message is not None and step.message.model:
            return step.message.model
        return self.model_id

    async def _open_message(self, turn: _Turn, step: _Step, model: str) -> MessageStartEvent:
        step.message = Message(role=Role.ASSISTANT, model=model or self.model_id)
        await self.store.add_message(turn.session_id, step.message)
        return MessageStartEvent(message_id=step.message.id, model=step.message.model or "")

    def _start_block(self, step: _Step, index: int, start: BlockStart) -> None:
        if index in step.blocks:
            _logger.warning("Ignoring reused block index %d", index)
            return
        match start:
            case TextBlockStart(text=text):
                block = TextContent(text=text)
                self.state = TurnState.STREAMING_TEXT
            case ThinkingBlockStart(thinking=thinking):
                block = ThinkingContent(text=thinking)
                self.state = TurnState.STREAMING_TEXT
            case ToolUseBlockStart(id=tool_id, name=name, input=tool_input):
                block = ToolUseContent(id=tool_id, name=name, input=dict(tool_input))
                step.tool_uses[tool_id] = block
                step.raw_inputs[index] = []
            case _:
                return
        step.blocks[index] = block
        step.open.add(index)
        step.message.content.append(block)

    def _apply_delta(self, step: _Step, index: int, delta: Delta) -> ProcessorEvent | None:
        if index not in step.open:
            _logger.debug("Dropping delta for block %d that is not open", index)
            return None
        block = step.blocks[index]
        match delta:
            case TextDelta(text=text) if isinstance(block, TextContent):
                block.text += text
                return TextDeltaEvent(message_id=step.message.id, text=text)
            case ThinkingDelta(thinking=thinking) if isinstance(block, ThinkingContent):
                block.text += thinking
                return ThinkingDeltaEvent(message_id=step.message.id, text=thinking)
            case InputJsonDelta(partial_json=partial) if isinstance(block, ToolUseContent):
                step.raw_inputs[index].append(partial)
        return None

    async def _stop_block(self, turn: _Turn, step: _Step, index: int) -> AsyncIterator[ProcessorEvent]:
        if index not in step.open:
            return
        step.open.discard(index)
        match step.blocks[index]:
            case TextContent(text=text) if text:
                yield TextDoneEvent(message_id=step.message.id, text=text)
            case ToolUseContent() as block:
                async for event in self._dispatch_tool(turn, step, index, block):
                    yield event
        await self.store.update_message(turn.session_id, step.message.id, step.message.content)

    # --- Tools ---

    def _resolve(self, step: _Step, block: ToolUseContent, result: ToolResult, duration_ms: int = 0) -> None:
        step.results[block.id] = (result, duration_ms)
        block.status = ToolStatus.ERROR if result.is_error else ToolStatus.COMPLETED

    async def _dispatch_tool(
        self,
        turn: _Turn,
        step: _Step,
        index: int,
        block: ToolUseContent,
    ) -> AsyncIterator[ProcessorEvent]:
        if raw := "".join(step.raw_inputs.pop(index, [])):
            arguments, ok = parse_arguments(raw)
            if not ok:
                _logger.warning("protocol_error: malformed arguments for %s (%s)", block.name, block.id)
                yield ToolStartEvent(tool_id=block.id, name=block.name)
                result = ToolResult.error(
                    f"protocol_error: arguments for {block.name} were not valid JSON",
                    preview="Malformed arguments",
                )
                self._resolve(step, block, result)
                return
            block.input = arguments

        yield ToolStartEvent(tool_id=block.id, name=block.name, input=block.input)

        tool = self.tools.get(block.name)
        if tool is None:
            _logger.warning("Model called unknown tool %s", block.name)
        validated = self.tools.validate(block.name, block.input)
        if isinstance(validated, ToolResult):
            self._resolve(step, block, validated)
            return

        execution = ToolExecution(tool_id=block.id, tool_name=block.name, ctx=turn.ctx)
        target = tool.target(execution, **validated)
        decision = turn.ctx.permissions.evaluate(tool.permission, target)
        if decision.decision == Action.DENY:
            self._resolve(step, block, ToolResult.error(f"Permission denied: {decision.reason}", preview="Denied"))
            return

        confirm = decision.decision == Action.ASK
        if confirm:
            yield PermissionAskEvent(
                tool_id=block.id,
                name=block.name,
                permission=tool.permission.value,
                target=target,
                question=describe(tool.permission, target),
            )

        block.status = ToolStatus.RUNNING
        self.state = TurnState.EXECUTING_TOOL
        step.tasks[block.id] = asyncio.create_task(
            self._execute(tool, execution, validated, target, confirm, turn.ctx.permissions)
        )

    async def _execute(
        self,
        tool: Tool,
        execution: ToolExecution,
        arguments: dict,
        target: str | None,
        confirm: bool,
        gate: PermissionGate,
    ) -> tuple[ToolResult, int]:
        if confirm:
            decision = await gate.confirm(tool.permission, target)
            if not decision.allowed:
                return ToolResult.error(f"Permission denied: {decision.reason}", preview="Denied"), 0

        limit = tool.time_limit(**arguments) or self.tool_timeout
        started = monotonic_ms()
        try:
            result = await asyncio.wait_for(tool.execute(execution, **arguments), limit)
        except TimeoutError:
            result = ToolResult.error(f"Tool {tool.name} timed out after {limit}s", preview="Timed out")
        except TurnCancelled:
            raise
        except Exception as e:
            _logger.exception("Tool %s failed", tool.name)
            result = ToolResult.error(f"Error executing tool: {e}", preview="Error")
        return result, monotonic_ms() - started

    async def _await_tools(self, turn: _Turn, step: _Step) -> bool:
        """Wait for running tools; returns True if the turn was cancelled."""
        cancelled = turn.cancel.cancelled or (step.error is not None and step.error.kind == ErrorKind.CANCELLED)
        pending = [task for task in step.tasks.values() if not task.done()]
        if pending and not cancelled:
            self.state = TurnState.EXECUTING_TOOL
            try:
                await race(asyncio.gather(*pending), turn.cancel)
            except TurnCancelled:
                cancelled = True

        if cancelled:
            for task in step.tasks.values():
                task.cancel()
            await asyncio.gather(*step.tasks.values(), return_exceptions=True)

        for tool_id, task in step.tasks.items():
            if task.cancelled() or task.exception() is not None:
                continue
            result, duration_ms = task.result()
            self._resolve(step, step.tool_uses[tool_id], result, duration_ms)
        return cancelled

    # --- Step outcomes ---

    def _abnormal_end(self, step: _Step) -> ErrorEvent | None:
        if step.error is not None:
            return step.error
        if not step.stopped:
            return ErrorEvent(kind=ErrorKind.PROTOCOL, message="Stream ended before message_stop")

        # A complete response with a tool call whose arguments never closed.
        for index in sorted(step.open):
            block = step.blocks[index]
            if isinstance(block, ToolUseContent) and block.id not in step.results:
                _logger.warning("protocol_error: arguments for %s (%s) never completed", block.name, block.id)
                result = ToolResult.error(
                    f"protocol_error: arguments for {block.name} were never completed",
                    preview="Incomplete arguments",
                )
                self._resolve(step, block, result)
        return None

    def _final_content(self, step: _Step, unresolved_code: str | None = None) -> list[ContentBlock]:
        content: list[ContentBlock] = []
        for block in step.message.content:
            match block:
                case TextContent(text="") | ThinkingContent(text=""):
                    continue
                case ToolUseContent() if block.id not in step.results:
                    block.status = ToolStatus.ERROR
                    content.append(
                        ErrorContent(
                            message=f"Tool call {block.name} ({block.id}) did not complete",
                            code=unresolved_code,
                        )
                    )
                    continue
            content.append(block)
        return content

    async def _persist_step(self, turn: _Turn, step: _Step, content: list[ContentBlock]) -> list[ProcessorEvent]:
        """Persist the assistant message and its tool results; returns tool:done events in call order."""
        await self.store.update_message(turn.session_id, step.message.id, content, usage=step.usage)
        turn.usage += step.usage

        resolved = [tool_id for tool_id in step.tool_uses if tool_id in step.results]
        if not resolved:
            return []
        blocks = []
        events = []
        for tool_id in resolved:
            result, duration_ms = step.results[tool_id]
            blocks.append(
                ToolResultContent(
                    tool_use_id=tool_id,
                    output=result.output,
                    is_error=result.is_error,
                    duration_ms=duration_ms,
                )
            )
            events.append(
                ToolDoneEvent(
                    tool_id=tool_id,
                    name=step.tool_uses[tool_id].name,
                    output=result.output,
                    is_error=result.is_error,
                    preview=result.preview,
                    duration_ms=duration_ms,
                )
            )
        await self.store.add_message(turn.session_id, tool_result_message(blocks))
        return events

    async def _complete_step(self, turn: _Turn, step: _Step) -> AsyncIterator[ProcessorEvent]:
        for event in await self._persist_step(turn, step, self._final_content(step)):
            yield event
        yield MessageDoneEvent(
            message_id=step.message.id,
            stop_reason=step.stop_reason.value if step.stop_reason else None,
            usage=step.usage.to_dict(),
        )

    async def _failed(self, turn: _Turn, step: _Step, error: ErrorEvent) -> AsyncIterator[ProcessorEvent]:
        _logger.warning("Turn failed for session %s: %s: %s", turn.session_id, error.kind.value, error.message)
        if step.message is None:
            step.message = Message(role=Role.ASSISTANT, model=self.model_id)
            await self.store.add_message(turn.session_id, step.message)

        content = self._final_content(step, unresolved_code=error.kind.value)
        content.append(ErrorContent(message=error.message, code=error.kind.value))
        for event in await self._persist_step(turn, step, content):
            yield event

        await self.store.set_status(turn.session_id, SessionStatus.FAILED)
        self.state = TurnState.FAILED
        yield TurnErrorEvent(kind=error.kind.value, message=error.message, status_code=error.status_code)

    async def _cancelled(self, turn: _Turn, step: _Step | None) -> AsyncIterator[ProcessorEvent]:
        reason = turn.cancel.reason or "cancelled"
        if step is not None and step.message is not None:
            for event in await self._persist_step(turn, step, self._final_content(step, unresolved_code="cancelled")):
                yield event

        await self.store.set_status(turn.session_id, SessionStatus.CANCELLED)
        self.state = TurnState.CANCELLED
        _logger.info("Turn cancelled for session %s: %s", turn.session_id, reason)
        yield CancelledEvent(reason=reason)

    async def _stop_early(self, turn: _Turn, notice: str, stop_reason: str) -> AsyncIterator[ProcessorEvent]:
        message = Message(role=Role.ASSISTANT, content=[TextContent(text=notice)], model=self.model_id)
        await self.store.add_message(turn.session_id, message)
        await self.store.set_status(turn.session_id, SessionStatus.ACTIVE)
        self.state = TurnState.IDLE
        yield TextDoneEvent(message_id=message.id, text=notice)
        yield TurnDoneEvent(
            session_id=turn.session_id,
            turns=turn.model_calls,
            stop_reason=stop_reason,
            usage=turn.usage.to_dict(),
        )
