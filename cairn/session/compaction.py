import math
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from cairn.constants import (
    CHARS_PER_TOKEN,
    COMPACTION_KEEP_RECENT,
    COMPACTION_THRESHOLD,
    SUMMARY_CONTENT_LIMIT,
    SUMMARY_TEXT_LIMIT,
    SUMMARY_TOOL_OUTPUT_LIMIT,
)
from cairn.llm.base import Provider
from cairn.llm.types import ChatRequest, ContentBlockDelta, ErrorEvent, TextDelta
from cairn.logging import get_logger
from cairn.messages import (
    Message,
    Role,
    TextContent,
    ToolResultContent,
    ToolUseContent,
    block_chars,
    user_message,
)
from cairn.session.prompts import SUMMARIZE_PROMPT
from cairn.utils import truncate

_logger = get_logger(__name__)

SUMMARY_HEADER = "[Conversation Summary]"
SUMMARY_FOOTER = "[End of Summary - Recent messages follow]"

_FILE_PATTERN = re.compile(r"(?:/[\w./-]+\.\w+)|(?:[\w-]+\.\w{2,4})\b")

type Summarizer = Callable[[str], Awaitable[str]]


@dataclass(frozen=True)
class CompactionResult:
    messages: list[Message]
    compacted: bool
    original_count: int
    new_count: int


@dataclass(frozen=True)
class CompactionStats:
    message_count: int
    estimated_tokens: int
    has_compaction: bool
    compaction_index: int


def estimate_tokens(messages: list[Message], system_prompt: str | None = None) -> int:
    chars = sum(block_chars(block) for message in messages for block in message.content)
    if system_prompt:
        chars += len(system_prompt)
    return math.ceil(chars / CHARS_PER_TOKEN)


def is_summary(message: Message) -> bool:
    return message.metadata.get("compaction") is True


def compaction_stats(messages: list[Message]) -> CompactionStats:
    index = next((i for i, m in enumerate(messages) if is_summary(m)), -1)
    return CompactionStats(
        message_count=len(messages),
        estimated_tokens=estimate_tokens(messages),
        has_compaction=index >= 0,
        compaction_index=index,
    )


def extract_content(messages: list[Message]) -> str:
    parts = []
    for message in messages:
        role = message.role.value.capitalize()
        for block in message.content:
            match block:
                case TextContent(text=text):
                    parts.append(f"{role}: {truncate(text, SUMMARY_TEXT_LIMIT)}")
                case ToolUseContent(name=name):
                    parts.append(f"{role} used tool: {name}")
                case ToolResultContent(output=output):
                    parts.append(f"Tool result: {truncate(output, SUMMARY_TOOL_OUTPUT_LIMIT)}")
    return "\n\n".join(parts)


def basic_summary(messages: list[Message], content: str) -> str:
    user_count = sum(1 for m in messages if m.role == Role.USER and m.text)
    assistant_count = sum(1 for m in messages if m.role == Role.ASSISTANT)
    tool_uses = [block for m in messages for block in m.tool_uses]
    tools_used = list(dict.fromkeys(block.name for block in tool_uses))

    files: list[str] = []
    for message in messages:
        files.extend(_FILE_PATTERN.findall(message.text)[:10])
        files.extend(str(block.input["file_path"]) for block in message.tool_uses if "file_path" in block.input)
    files = list(dict.fromkeys(files))

    parts = [f"Previous conversation: {user_count} user messages, {assistant_count} assistant responses"]
    if tool_uses:
        parts.append(f"Tools used: {', '.join(tools_used)} ({len(tool_uses)} total calls)")
    if files:
        more = "..." if len(files) > 5 else ""
        parts.append(f"Files referenced: {', '.join(files[:5])}{more}")

    if len(content) > SUMMARY_CONTENT_LIMIT:
        content = content[:SUMMARY_CONTENT_LIMIT] + "\n...(truncated)"
    parts.append("\nKey points from conversation:")
    parts.append(content)
    return "\n".join(parts)


class Compactor:
    """Replaces old history with one summary message once it outgrows the budget.

    Leading system messages and the last `keep_recent` messages survive
    verbatim. The cut never separates a tool_result from its tool_use.
    """

    def __init__(
        self,
        threshold: int = COMPACTION_THRESHOLD,
        keep_recent: int = COMPACTION_KEEP_RECENT,
        summarizer: Summarizer | None = None,
    ):
        self.threshold = threshold
        self.keep_recent = keep_recent
        self.summarizer = summarizer

    def should_compact(self, messages: list[Message], system_prompt: str | None = None) -> bool:
        if len(messages) <= self.keep_recent:
            return False
        return estimate_tokens(messages, system_prompt) > self.threshold

    def find_cut(self, messages: list[Message], start: int) -> int:
        cut = max(start, len(messages) - self.keep_recent)
        while start < cut < len(messages) and messages[cut].tool_results:
            wanted = {r.tool_use_id for r in messages[cut].tool_results}
            origin = next(
                (i for i in range(cut - 1, start - 1, -1) if any(u.id in wanted for u in messages[i].tool_uses)),
                cut - 1,
            )
            cut = origin
        return cut

    async def compact(self, messages: list[Message], system_prompt: str | None = None) -> CompactionResult:
        unchanged = CompactionResult(messages, False, len(messages), len(messages))
        if not self.should_compact(messages, system_prompt):
            return unchanged

        start = 0
        while start < len(messages) and messages[start].role == Role.SYSTEM:
            start += 1
        cut = self.find_cut(messages, start)

        prefix = messages[start:cut]
        if not prefix or (len(prefix) == 1 and is_summary(prefix[0])):
            return unchanged

        content = extract_content(prefix)
        summary = await self._summarize(prefix, content)
        summary_message = Message(
            role=Role.ASSISTANT,
            content=[TextContent(text=f"{SUMMARY_HEADER}\n\n{summary}\n\n{SUMMARY_FOOTER}")],
            metadata={"compaction": True, "original_message_count": len(prefix)},
        )

        compacted = [*messages[:start], summary_message, *messages[cut:]]
        _logger.info("Compacted %d messages into a summary (%d -> %d)", len(prefix), len(messages), len(compacted))
        return CompactionResult(compacted, True, len(messages), len(compacted))

    async def _summarize(self, prefix: list[Message], content: str) -> str:
        if self.summarizer is not None:
            try:
                if summary := (await self.summarizer(content)).strip():
                    return summary
            except Exception:
                _logger.warning("Summarizer failed, using basic summary", exc_info=True)
        return basic_summary(prefix, content)


def provider_summarizer(provider: Provider, model: str | None = None, max_tokens: int = 1024) -> Summarizer:
    """Summarize with the session's own provider."""

    async def summarize(content: str) -> str:
        request = ChatRequest(
            messages=[user_message(content)],
            model=model,
            system_prompt=SUMMARIZE_PROMPT,
            temperature=0.3,
            max_tokens=max_tokens,
        )
        parts: list[str] = []
        async for event in provider.chat(request):
            match event:
                case ContentBlockDelta(delta=TextDelta(text=text)):
                    parts.append(text)
                case ErrorEvent(message=message):
                    raise RuntimeError(f"Summarization failed: {message}")
        return "".join(parts)

    return summarize
