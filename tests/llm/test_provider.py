import asyncio
import json

import httpx
import pytest

from cairn.core.cancel import CancelToken
from cairn.llm.anthropic import AnthropicProvider
from cairn.llm.ollama import OllamaProvider
from cairn.llm.openai import OpenAIProvider
from cairn.llm.types import (
    ChatRequest,
    ContentBlockDelta,
    ErrorEvent,
    ErrorKind,
    MessageDelta,
    MessageStart,
    MessageStop,
    StopReason,
)
from cairn.messages import user_message


def sse(*payloads: dict) -> bytes:
    return b"".join(f"event: {p['type']}\ndata: {json.dumps(p)}\n\n".encode() for p in payloads)


ANTHROPIC_TEXT = sse(
    {"type": "message_start", "message": {"id": "msg_1", "model": "claude-sonnet-4-5", "usage": {"input_tokens": 3}}},
    {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello"}},
    {"type": "content_block_stop", "index": 0},
    {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 2}},
    {"type": "message_stop"},
)


def request(**kwargs) -> ChatRequest:
    return ChatRequest(messages=[user_message("hi")], **kwargs)


def anthropic(handler, **kwargs) -> AnthropicProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnthropicProvider(api_key="sk-test", default_model="claude-sonnet-4-5", client=client, **kwargs)


async def collect(provider, chat_request: ChatRequest | None = None) -> list:
    return [event async for event in provider.chat(chat_request or request())]


async def trickle(*parts: bytes, delay: float = 0):
    for part in parts:
        if delay:
            await asyncio.sleep(delay)
        yield part


class TestStreaming:
    @pytest.mark.asyncio
    async def test_anthropic_stream_split_into_small_reads(self):
        def handler(http_request: httpx.Request) -> httpx.Response:
            chunks = [ANTHROPIC_TEXT[i : i + 7] for i in range(0, len(ANTHROPIC_TEXT), 7)]
            return httpx.Response(200, content=trickle(*chunks))

        events = await collect(anthropic(handler))

        assert isinstance(events[0], MessageStart)
        assert [e.delta.text for e in events if isinstance(e, ContentBlockDelta)] == ["Hello"]
        assert isinstance(events[-1], MessageStop)
        assert events[-2].usage.output_tokens == 2

    @pytest.mark.asyncio
    async def test_openai_done_sentinel(self):
        body = (
            b'data: {"id": "c", "choices": [{"index": 0, "delta": {"content": "Hi"}}]}\n\n'
            b'data: {"id": "c", "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]}\n\n'
            b'data: {"id": "c", "choices": [], "usage": {"prompt_tokens": 4, "completion_tokens": 1}}\n\n'
            b"data: [DONE]\n\n"
        )
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=body)))
        provider = OpenAIProvider(api_key="sk", default_model="gpt-4o", client=client)

        events = await collect(provider)

        delta = next(e for e in events if isinstance(e, MessageDelta))
        assert delta.stop_reason == StopReason.END_TURN
        assert delta.usage.input_tokens == 4
        assert isinstance(events[-1], MessageStop)

    @pytest.mark.asyncio
    async def test_ollama_ndjson(self):
        body = (
            json.dumps({"message": {"role": "assistant", "content": "Hi"}, "done": False}).encode()
            + b"\n"
            + json.dumps({"message": {"role": "assistant", "content": ""}, "done": True, "eval_count": 1}).encode()
            + b"\n"
        )
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=body)))
        provider = OllamaProvider(default_model="llama3.2", client=client)

        events = await collect(provider)

        assert [e.delta.text for e in events if isinstance(e, ContentBlockDelta)] == ["Hi"]
        assert isinstance(events[-1], MessageStop)

    @pytest.mark.asyncio
    async def test_request_uses_default_model(self):
        seen = []

        def handler(http_request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(http_request.content))
            return httpx.Response(200, content=ANTHROPIC_TEXT)

        provider = anthropic(handler)
        await collect(provider)
        await collect(provider, request(model="claude-haiku-4-5"))

        assert [body["model"] for body in seen] == ["claude-sonnet-4-5", "claude-haiku-4-5"]


class TestErrors:
    @pytest.mark.asyncio
    async def test_retries_connect_errors(self):
        attempts = 0

        def handler(http_request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise httpx.ConnectError("refused", request=http_request)
            return httpx.Response(200, content=ANTHROPIC_TEXT)

        events = await collect(anthropic(handler, max_retries=3, retry_base_delay=0))

        assert attempts == 3
        assert isinstance(events[-1], MessageStop)

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        attempts = 0

        def handler(http_request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            raise httpx.ConnectError("refused", request=http_request)

        events = await collect(anthropic(handler, max_retries=2, retry_base_delay=0))

        assert attempts == 2
        assert len(events) == 1
        assert events[0].kind == ErrorKind.TRANSPORT
        assert "ConnectError" in events[0].message

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        def handler(http_request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"type": "error", "error": {"type": "authentication_error", "message": "invalid x-api-key"}})

        events = await collect(anthropic(handler))

        assert events == [ErrorEvent(kind=ErrorKind.AUTHENTICATION, message="invalid x-api-key", status_code=401)]

    @pytest.mark.asyncio
    async def test_server_error_is_not_retried(self):
        attempts = 0

        def handler(http_request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            return httpx.Response(500, text="upstream exploded")

        events = await collect(anthropic(handler, max_retries=3, retry_base_delay=0))

        assert attempts == 1
        assert events == [ErrorEvent(kind=ErrorKind.VENDOR, message="upstream exploded", status_code=500)]

    @pytest.mark.asyncio
    async def test_stream_interrupted(self):
        async def broken():
            yield ANTHROPIC_TEXT[:150]
            raise httpx.ReadError("connection reset")

        events = await collect(anthropic(lambda r: httpx.Response(200, content=broken())))

        assert events[-1].kind == ErrorKind.TRANSPORT
        assert "Stream interrupted" in events[-1].message

    @pytest.mark.asyncio
    async def test_truncated_anthropic_stream_has_no_stop(self):
        cut = ANTHROPIC_TEXT.index(b"event: message_delta")
        events = await collect(anthropic(lambda r: httpx.Response(200, content=ANTHROPIC_TEXT[:cut])))

        assert not any(isinstance(e, (MessageDelta, MessageStop, ErrorEvent)) for e in events)


class TestTimeoutsAndCancellation:
    @pytest.mark.asyncio
    async def test_idle_timeout_ignores_pings(self):
        async def pings():
            yield sse({"type": "message_start", "message": {"id": "m"}})
            while True:
                await asyncio.sleep(0.02)
                yield sse({"type": "ping"})

        provider = anthropic(lambda r: httpx.Response(200, content=pings()), idle_timeout=0.2)
        events = await asyncio.wait_for(collect(provider), timeout=5)

        assert events[-1].kind == ErrorKind.TRANSPORT
        assert "idle timeout" in events[-1].message

    @pytest.mark.asyncio
    async def test_cancel_before_request(self):
        token = CancelToken()
        token.cancel()
        events = await collect(anthropic(lambda r: httpx.Response(200, content=ANTHROPIC_TEXT)), request(cancel=token))

        assert events == [ErrorEvent(kind=ErrorKind.CANCELLED, message="Request cancelled")]

    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self):
        token = CancelToken()
        head = ANTHROPIC_TEXT[: ANTHROPIC_TEXT.index(b"event: content_block_stop")]

        async def stalls():
            yield head
            await asyncio.sleep(10)
            yield b""

        provider = anthropic(lambda r: httpx.Response(200, content=stalls()))
        events = []
        async for event in provider.chat(request(cancel=token)):
            events.append(event)
            if isinstance(event, ContentBlockDelta):
                token.cancel()

        assert events[-1] == ErrorEvent(kind=ErrorKind.CANCELLED, message="Stream cancelled")

    @pytest.mark.asyncio
    async def test_missing_model(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        provider = AnthropicProvider(api_key="sk", client=client)

        events = await collect(provider)

        assert events[0].kind == ErrorKind.VENDOR
        assert "No model configured" in events[0].message
