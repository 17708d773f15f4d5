import asyncio
import json
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, AsyncIterator
from enum import StrEnum
from typing import Any

import httpx

from cairn.constants import (
    CONNECT_TIMEOUT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_TOKENS,
    REQUEST_IDLE_TIMEOUT,
    RETRY_BASE_DELAY,
)
from cairn.core.cancel import TurnCancelled, race
from cairn.llm.normalize import Normalizer
from cairn.llm.retry import send_with_retry
from cairn.llm.types import ChatEvent, ChatRequest, ErrorEvent, ErrorKind
from cairn.llm.wire import SSEMessage, iter_ndjson, iter_sse
from cairn.logging import get_logger

_logger = get_logger(__name__)

_DONE = object()


class WireFormat(StrEnum):
    SSE = "sse"
    NDJSON = "ndjson"


class Provider(ABC):
    """One vendor's HTTP streaming endpoint behind the canonical event contract.

    `chat()` never raises for vendor, credential or transport problems: every
    failure ends the stream with exactly one ErrorEvent.
    """

    name: str
    default_base_url: str
    api_key_envs: tuple[str, ...] = ()
    requires_api_key: bool = True
    wire_format: WireFormat = WireFormat.SSE

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        default_model: str | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = RETRY_BASE_DELAY,
        idle_timeout: float = REQUEST_IDLE_TIMEOUT,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._api_key = api_key
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.default_model = default_model
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.idle_timeout = idle_timeout
        self.extra_headers = headers or {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(CONNECT_TIMEOUT, read=idle_timeout),
        )

    # --- configuration ---

    def resolve_api_key(self) -> str | None:
        if self._api_key:
            return self._api_key
        for env in self.api_key_envs:
            if value := os.environ.get(env):
                return value
        return None

    def is_configured(self) -> bool:
        return not self.requires_api_key or self.resolve_api_key() is not None

    def _missing_key_message(self) -> str:
        envs = " or ".join(self.api_key_envs) or "an API key"
        return f"{self.name} API key not configured. Set {envs} or provide api_key in config."

    # --- vendor hooks ---

    @abstractmethod
    def build_request(self, request: ChatRequest, model: str, api_key: str | None) -> httpx.Request: ...

    @abstractmethod
    def create_normalizer(self, model: str) -> Normalizer: ...

    def error_message(self, status_code: int, body: bytes) -> str:
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            text = body.decode("utf-8", errors="replace").strip()
            return text[:500] or f"HTTP {status_code}"
        if isinstance(data, list) and data:
            data = data[0]
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str):
                return error
            if data.get("message"):
                return str(data["message"])
        return f"HTTP {status_code}"

    def max_tokens(self, request: ChatRequest) -> int:
        return request.max_tokens or DEFAULT_MAX_TOKENS

    # --- lifecycle ---

    async def chat(self, request: ChatRequest) -> AsyncIterator[ChatEvent]:
        api_key = self.resolve_api_key()
        if self.requires_api_key and not api_key:
            yield ErrorEvent(kind=ErrorKind.AUTHENTICATION, message=self._missing_key_message())
            return

        model = request.model or self.default_model
        if not model:
            yield ErrorEvent(kind=ErrorKind.VENDOR, message=f"No model configured for {self.name}")
            return

        http_request = self.build_request(request, model, api_key)
        send = send_with_retry(self._client, http_request, self.max_retries, self.retry_base_delay)
        try:
            response = await race(send, request.cancel)
        except TurnCancelled:
            yield ErrorEvent(kind=ErrorKind.CANCELLED, message="Request cancelled")
            return
        except httpx.TransportError as e:
            _logger.warning("%s request failed after %d attempts: %s", self.name, self.max_retries, e)
            yield ErrorEvent(kind=ErrorKind.TRANSPORT, message=f"{type(e).__name__}: {e}")
            return

        try:
            if response.status_code >= 400:
                body = await response.aread()
                kind = ErrorKind.AUTHENTICATION if response.status_code in (401, 403) else ErrorKind.VENDOR
                yield ErrorEvent(
                    kind=kind,
                    message=self.error_message(response.status_code, body),
                    status_code=response.status_code,
                )
                return

            async for event in self._stream(response, self.create_normalizer(model), request):
                yield event
        finally:
            await response.aclose()

    def _units(self, response: httpx.Response) -> AsyncGenerator[SSEMessage | str]:
        if self.wire_format == WireFormat.NDJSON:
            return iter_ndjson(response.aiter_bytes())
        return iter_sse(response.aiter_bytes())

    def _decode(self, unit: SSEMessage | str) -> tuple[str | None, Any] | object | None:
        """Returns (event name, payload), None for units to skip, or _DONE."""
        if isinstance(unit, SSEMessage):
            if unit.comment:
                return None
            if unit.is_done:
                return _DONE
            event, raw = unit.event, unit.data
        else:
            event, raw = None, unit

        if not raw.strip():
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            _logger.debug("Dropping malformed stream line from %s: %.200s", self.name, raw)
            return None
        if not isinstance(payload, dict):
            return None
        return event, payload

    async def _stream(
        self,
        response: httpx.Response,
        normalizer: Normalizer,
        request: ChatRequest,
    ) -> AsyncIterator[ChatEvent]:
        loop = asyncio.get_running_loop()
        units = self._units(response)
        last_content = loop.time()

        try:
            while True:
                remaining = self.idle_timeout - (loop.time() - last_content)
                if remaining <= 0:
                    yield self._idle_error()
                    return
                try:
                    unit = await race(asyncio.wait_for(anext(units), remaining), request.cancel)
                except StopAsyncIteration:
                    break
                except TimeoutError:
                    yield self._idle_error()
                    return
                except TurnCancelled:
                    yield ErrorEvent(kind=ErrorKind.CANCELLED, message="Stream cancelled")
                    return
                except httpx.TransportError as e:
                    yield ErrorEvent(kind=ErrorKind.TRANSPORT, message=f"Stream interrupted: {type(e).__name__}: {e}")
                    return

                decoded = self._decode(unit)
                if decoded is _DONE:
                    break
                if decoded is None:
                    continue

                events = normalizer.feed(*decoded)
                if events:
                    last_content = loop.time()
                for event in events:
                    yield event
                    if isinstance(event, ErrorEvent):
                        return
                if normalizer.finished:
                    return

            for event in normalizer.finish():
                yield event
        finally:
            await units.aclose()

    def _idle_error(self) -> ErrorEvent:
        return ErrorEvent(
            kind=ErrorKind.TRANSPORT,
            message=f"No content from {self.name} for {self.idle_timeout:.0f}s (idle timeout)",
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
