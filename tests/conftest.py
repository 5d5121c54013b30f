"""Pytest configuration and fixtures for live_session_core tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Mapping
from typing import Any
from unittest.mock import patch

import pytest

from live_session_core.errors import ProviderNotFoundError
from live_session_core.transport.ws_client import LiveWsMessage, LiveWsMessageType
from live_session_core.tools import ToolDescriptor


class FakeWsClient:
    """In-memory stand-in for LiveWsClient driven by a message queue."""

    def __init__(self, connect_error: Exception | None = None) -> None:
        self.url: str | None = None
        self.connect_kwargs: dict[str, Any] = {}
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.send_error: Exception | None = None
        self._connect_error = connect_error
        self._queue: asyncio.Queue[LiveWsMessage] = asyncio.Queue()

    async def connect(self, url: str, **kwargs: Any) -> None:
        if self._connect_error is not None:
            raise self._connect_error
        self.url = url
        self.connect_kwargs = kwargs

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(LiveWsMessage(LiveWsMessageType.CLOSED, ""))

    async def send_text(self, payload: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(json.loads(payload))

    def feed(self, frame: Mapping[str, Any] | str) -> None:
        """Deliver a server frame."""
        data = frame if isinstance(frame, str) else json.dumps(frame)
        self._queue.put_nowait(LiveWsMessage(LiveWsMessageType.TEXT, data))

    def server_close(self, reason: str) -> None:
        """Close from the server side with ``reason``."""
        self._queue.put_nowait(LiveWsMessage(LiveWsMessageType.CLOSED, reason))

    def sent_of(self, key: str) -> list[dict[str, Any]]:
        return [frame[key] for frame in self.sent if key in frame]

    def __aiter__(self):
        return self._iter_messages()

    async def _iter_messages(self):
        while True:
            msg = await self._queue.get()
            yield msg
            if msg.type is not LiveWsMessageType.TEXT:
                return


class FakeWsFactory:
    """Records every FakeWsClient the live client creates."""

    def __init__(self) -> None:
        self.clients: list[FakeWsClient] = []
        self._connect_errors: list[Exception] = []
        self._send_errors: list[Exception] = []

    def fail_next(self, err: Exception) -> None:
        """Make the next created socket fail to connect."""
        self._connect_errors.append(err)

    def fail_next_send(self, err: Exception) -> None:
        """Make every send on the next created socket fail."""
        self._send_errors.append(err)

    @property
    def last(self) -> FakeWsClient:
        return self.clients[-1]

    def __call__(self) -> FakeWsClient:
        error = self._connect_errors.pop(0) if self._connect_errors else None
        client = FakeWsClient(connect_error=error)
        if self._send_errors:
            client.send_error = self._send_errors.pop(0)
        self.clients.append(client)
        return client


class FakeProvider:
    """Tool provider returning canned results.

    ``results`` values that are exceptions are raised from ``invoke``.
    """

    def __init__(
        self,
        provider_id: str,
        tools: list[ToolDescriptor],
        results: Mapping[str, Any],
        log: list[tuple[str, str]],
    ) -> None:
        self.provider_id = provider_id
        self.tools = tools
        self.results = dict(results)
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.closed = False
        self._log = log

    async def discover_tools(self) -> list[ToolDescriptor]:
        self._log.append(("discover", self.provider_id))
        return list(self.tools)

    async def invoke(self, name: str, args: Mapping[str, Any]) -> dict[str, Any]:
        self.calls.append((name, dict(args)))
        result = self.results.get(name, {"ok": True})
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self) -> None:
        self._log.append(("close", self.provider_id))
        self.closed = True


class FakeProviderFactory:
    """Provider factory over an in-memory catalog.

    ``log`` records create/discover/close calls across all providers in order.
    """

    def __init__(
        self,
        catalog: Mapping[str, list[ToolDescriptor]],
        results: Mapping[str, Any] | None = None,
    ) -> None:
        self.catalog = dict(catalog)
        self.results = dict(results or {})
        self.log: list[tuple[str, str]] = []
        self.providers: list[FakeProvider] = []
        self.errors: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}

    def provider(self, provider_id: str) -> FakeProvider:
        """Most recent provider created for ``provider_id``."""
        return [p for p in self.providers if p.provider_id == provider_id][-1]

    async def __call__(self, provider_id: str) -> FakeProvider:
        self.log.append(("create", provider_id))
        if provider_id in self.gates:
            await self.gates[provider_id].wait()
        if provider_id in self.errors:
            raise self.errors[provider_id]
        if provider_id not in self.catalog:
            raise ProviderNotFoundError(provider_id)
        provider = FakeProvider(
            provider_id, self.catalog[provider_id], self.results, self.log
        )
        self.providers.append(provider)
        return provider


class FakeAudioSource:
    def __init__(self) -> None:
        self.on_chunk: Callable[[str], Any] | None = None
        self.running = False

    def start(self, on_chunk: Callable[[str], Any]) -> None:
        self.on_chunk = on_chunk
        self.running = True

    def stop(self) -> None:
        self.running = False


class FakeAudioSink:
    def __init__(self) -> None:
        self.chunks: list[bytes] = []
        self.stop_count = 0

    def add_pcm16(self, data: bytes) -> None:
        self.chunks.append(data)

    def stop(self) -> None:
        self.stop_count += 1


def make_tool(name: str, **properties: str) -> ToolDescriptor:
    """Build a descriptor whose properties map name -> JSON type."""
    return ToolDescriptor.from_dict(
        {
            "name": name,
            "description": f"{name} tool",
            "inputSchema": {
                "type": "object",
                "properties": {k: {"type": v} for k, v in properties.items()},
                "required": list(properties),
            },
        }
    )


@pytest.fixture
def ws_factory():
    """Patch the live client's WebSocket wrapper with in-memory fakes."""
    factory = FakeWsFactory()
    with patch("live_session_core.live_client.LiveWsClient", side_effect=factory):
        yield factory


@pytest.fixture
def provider_factory() -> FakeProviderFactory:
    return FakeProviderFactory(
        {
            "math": [make_tool("add", a="number", b="number"), make_tool("sqrt", x="number")],
            "weather": [make_tool("forecast", city="string")],
            "notes": [make_tool("write_note", text="string")],
        }
    )


@pytest.fixture
def drain() -> Callable[..., Any]:
    """Let queued frames reach the listener and finish scheduled handlers."""

    async def _drain(live) -> None:
        for _ in range(10):
            await asyncio.sleep(0)
        await live.wait_handlers()

    return _drain


@pytest.fixture
def audio_source() -> FakeAudioSource:
    return FakeAudioSource()


@pytest.fixture
def audio_sink() -> FakeAudioSink:
    return FakeAudioSink()
