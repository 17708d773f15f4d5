"""Incremental decoders for streamed HTTP response bodies.

Network reads split logical units anywhere, including inside a multi-byte
UTF-8 character, so both decoders buffer until a complete unit is available.
"""

import codecs
from collections.abc import AsyncIterator
from dataclasses import dataclass

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class SSEMessage:
    event: str | None = None
    data: str = ""
    id: str | None = None
    comment: bool = False

    @property
    def is_done(self) -> bool:
        return self.data.strip() == DONE_SENTINEL


class _LineBuffer:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending_cr = False

    def feed(self, chunk: bytes) -> list[str]:
        return self._split(self._decoder.decode(chunk))

    def flush(self) -> list[str]:
        lines = self._split(self._decoder.decode(b"", final=True))
        if self._buffer:
            lines.append(self._buffer)
            self._buffer = ""
        return lines

    def _split(self, text: str) -> list[str]:
        if not text:
            return []
        # A \r at the end of the previous read may be the first half of \r\n.
        if self._pending_cr:
            self._pending_cr = False
            if text.startswith("\n"):
                text = text[1:]
        if text.endswith("\r"):
            self._pending_cr = True

        self._buffer += text
        lines = self._buffer.replace("\r\n", "\n").replace("\r", "\n").split("\n")
        self._buffer = lines.pop()
        return lines


class SSEDecoder:
    """Server-Sent Events framing: field lines accumulated until a blank line."""

    def __init__(self) -> None:
        self._lines = _LineBuffer()
        self._event: str | None = None
        self._data: list[str] = []
        self._id: str | None = None

    def feed(self, chunk: bytes) -> list[SSEMessage]:
        return self._process(self._lines.feed(chunk))

    def flush(self) -> list[SSEMessage]:
        messages = self._process(self._lines.flush())
        if pending := self._dispatch():
            messages.append(pending)
        return messages

    def _process(self, lines: list[str]) -> list[SSEMessage]:
        messages = []
        for line in lines:
            if not line:
                if message := self._dispatch():
                    messages.append(message)
                continue

            if line.startswith(":"):
                messages.append(SSEMessage(data=line[1:].lstrip(), comment=True))
                continue

            name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]

            match name:
                case "event":
                    self._event = value
                case "data":
                    self._data.append(value)
                case "id":
                    self._id = value
                case _:
                    pass  # retry and unknown fields
        return messages

    def _dispatch(self) -> SSEMessage | None:
        if not self._data and self._event is None:
            return None
        message = SSEMessage(event=self._event, data="\n".join(self._data), id=self._id)
        self._event = None
        self._data = []
        return message


class NDJSONDecoder:
    """Line-delimited JSON: one object per non-empty line."""

    def __init__(self) -> None:
        self._lines = _LineBuffer()

    def feed(self, chunk: bytes) -> list[str]:
        return [line for line in self._lines.feed(chunk) if line.strip()]

    def flush(self) -> list[str]:
        return [line for line in self._lines.flush() if line.strip()]


async def iter_sse(chunks: AsyncIterator[bytes]) -> AsyncIterator[SSEMessage]:
    decoder = SSEDecoder()
    async for chunk in chunks:
        for message in decoder.feed(chunk):
            yield message
    for message in decoder.flush():
        yield message


async def iter_ndjson(chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
    decoder = NDJSONDecoder()
    async for chunk in chunks:
        for line in decoder.feed(chunk):
            yield line
    for line in decoder.flush():
        yield line
