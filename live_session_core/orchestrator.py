"""Session orchestrator binding a tool provider to the live stream.

The orchestrator keeps at most one tool provider bound at a time, together
with the live connection configured with that provider's tools. It handles:
- Provider binding and teardown ordering
- Tool descriptor translation into the session configuration
- Bridging tool calls from the stream to the provider
- Text and voice input while the stream is connected

Presentation code drives it with ``connect_to_provider``,
``disconnect_provider``, ``send_text`` and ``toggle_voice_capture`` and
subscribes to its events:
- state(OrchestratorState)
- content(parts), turncomplete(text), audio(bytes), interrupted, close(reason)
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from .config import LiveSettings, SessionConfig
from .errors import LiveClientError, LiveConnectionError
from .events import EventEmitter, Handler
from .live_client import LiveClient
from .protocol import FunctionResponse, MediaChunk, ToolCall
from .providers import McpProviderFactory, ProviderFactory, ToolProviderClient
from .tools import ToolDescriptor, build_function_declarations

_LOGGER = logging.getLogger(__name__)

ORCHESTRATOR_EVENTS: tuple[str, ...] = (
    "state",
    "content",
    "turncomplete",
    "audio",
    "interrupted",
    "close",
)

VOICE_MIME_TYPE = "audio/pcm;rate=16000"
NO_PROVIDER_ERROR = "Tool provider not available"

LiveClientFactory = Callable[[str], LiveClient]


class AudioSource(Protocol):
    """Microphone-like source of base64 PCM chunks."""

    def start(self, on_chunk: Callable[[str], Awaitable[None]]) -> None: ...

    def stop(self) -> None: ...


class AudioSink(Protocol):
    """Speaker-like sink for 16-bit PCM audio."""

    def add_pcm16(self, data: bytes) -> None: ...

    def stop(self) -> None: ...


@dataclass(frozen=True)
class ProviderBinding:
    """The provider currently paired with the live stream."""

    provider_id: str
    tool_count: int


@dataclass(frozen=True)
class OrchestratorState:
    """Snapshot reported to presentation code."""

    stream_connected: bool
    provider_id: str | None
    tool_count: int
    voice_enabled: bool


def _as_response(result: Any) -> dict[str, Any]:
    if isinstance(result, Mapping):
        return dict(result)
    return {"result": result}


class SessionOrchestrator:
    """Coordinates one tool provider binding with one live connection.

    Usage:
        orchestrator = SessionOrchestrator.from_settings(load_settings(path))
        orchestrator.on("turncomplete", print)
        await orchestrator.connect_to_provider("math")
        await orchestrator.send_text("What is 2 + 2?")
        await orchestrator.disconnect_provider()
    """

    def __init__(
        self,
        provider_factory: ProviderFactory,
        *,
        api_key: str = "",
        base_config: SessionConfig | None = None,
        live_client_factory: LiveClientFactory | None = None,
        audio_source: AudioSource | None = None,
        audio_sink: AudioSink | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            provider_factory: Async factory returning a connected provider
            api_key: Live service API key
            base_config: Session configuration the tool set is added to
            live_client_factory: Builds a LiveClient for an API key
            audio_source: Optional voice input source
            audio_sink: Optional audio output sink
        """
        self._provider_factory = provider_factory
        self._api_key = api_key
        self._base_config = base_config or SessionConfig()
        self._live_client_factory: LiveClientFactory = live_client_factory or LiveClient
        self._audio_source = audio_source
        self._audio_sink = audio_sink

        self._events = EventEmitter(ORCHESTRATOR_EVENTS, label="orchestrator")

        # Binding state
        self._provider: ToolProviderClient | None = None
        self._binding: ProviderBinding | None = None
        self._tools: tuple[ToolDescriptor, ...] = ()
        self._stream_connected = False

        # Voice
        self._voice_enabled = False
        self._capturing = False

        # Serializes binding changes; the sequence number lets only the most
        # recent waiting request proceed
        self._binding_lock = asyncio.Lock()
        self._request_seq = 0

        # Bumped whenever the provider/stream pairing changes; tool responses
        # are only sent on the pairing their call arrived on
        self._generation = 0

        self._live_handlers: dict[str, Handler] = {
            "toolcall": self.dispatch_tool_call,
            "close": self._on_close,
            "audio": self._on_audio,
            "interrupted": self._on_interrupted,
            "content": functools.partial(self._events.emit, "content"),
            "turncomplete": functools.partial(self._events.emit, "turncomplete"),
        }
        self._live = self._live_client_factory(api_key)
        self._attach(self._live)

    @classmethod
    def from_settings(
        cls,
        settings: LiveSettings,
        *,
        audio_source: AudioSource | None = None,
        audio_sink: AudioSink | None = None,
    ) -> SessionOrchestrator:
        """Build an orchestrator over the MCP provider catalog in ``settings``."""
        live_client_factory = functools.partial(
            LiveClient,
            url=settings.url,
            connect_timeout=settings.connect_timeout,
            close_timeout=settings.close_timeout,
        )
        return cls(
            McpProviderFactory(settings.providers),
            api_key=settings.api_key or "",
            base_config=settings.session,
            live_client_factory=live_client_factory,
            audio_source=audio_source,
            audio_sink=audio_sink,
        )

    # -------------------------------------------------------------------------
    # Public API: State
    # -------------------------------------------------------------------------

    @property
    def live_client(self) -> LiveClient:
        return self._live

    @property
    def stream_connected(self) -> bool:
        return self._stream_connected

    @property
    def binding(self) -> ProviderBinding | None:
        return self._binding

    @property
    def tools(self) -> tuple[ToolDescriptor, ...]:
        return self._tools

    @property
    def voice_enabled(self) -> bool:
        return self._voice_enabled

    @property
    def state(self) -> OrchestratorState:
        return OrchestratorState(
            stream_connected=self._stream_connected,
            provider_id=self._binding.provider_id if self._binding else None,
            tool_count=len(self._tools),
            voice_enabled=self._voice_enabled,
        )

    def on(self, event: str, handler: Handler) -> SessionOrchestrator:
        self._events.on(event, handler)
        return self

    def off(self, event: str, handler: Handler) -> SessionOrchestrator:
        self._events.off(event, handler)
        return self

    # -------------------------------------------------------------------------
    # Public API: Provider Binding
    # -------------------------------------------------------------------------

    async def connect_to_provider(self, provider_id: str) -> bool:
        """Bind ``provider_id`` and reconnect the stream with its tools.

        Any other binding is fully torn down first. If the provider cannot
        be established or the stream cannot be reconnected, nothing is left
        bound.

        Returns:
            True if the provider is bound and the stream connected
        """
        self._request_seq += 1
        ticket = self._request_seq

        async with self._binding_lock:
            if ticket != self._request_seq:
                _LOGGER.info("[%s] Connect superseded by a newer request", provider_id)
                return False
            return await self._bind(provider_id)

    async def disconnect_provider(self) -> bool:
        """Disconnect the stream and the provider. Safe to call when unbound."""
        self._request_seq += 1
        async with self._binding_lock:
            await self._teardown()
        return True

    async def set_api_key(self, api_key: str) -> None:
        """Replace the live client with one using ``api_key``.

        The current stream is closed; the provider binding is kept and
        becomes streamable again on the next ``connect_to_provider``.
        """
        if api_key == self._api_key:
            return

        async with self._binding_lock:
            old = self._live
            self._detach(old)
            self._generation += 1
            self._stream_connected = False
            self._sync_voice_capture()
            await old.disconnect()

            self._api_key = api_key
            self._live = self._live_client_factory(api_key)
            self._attach(self._live)
            self._emit_state()

    async def close(self) -> None:
        """Release the stream, the provider and any audio devices."""
        await self.disconnect_provider()
        if self._audio_sink is not None:
            self._audio_sink.stop()

    # -------------------------------------------------------------------------
    # Public API: Interaction
    # -------------------------------------------------------------------------

    async def send_text(self, message: str) -> bool:
        """Send a complete user text turn.

        Returns:
            False if the stream is not connected or the send failed
        """
        if not self._stream_connected:
            _LOGGER.warning("Cannot send text: stream not connected")
            return False

        try:
            await self._live.send([{"text": message}], turn_complete=True)
        except LiveClientError as err:
            _LOGGER.error("Failed to send text: %s", err)
            return False
        return True

    def toggle_voice_capture(self) -> bool:
        """Flip voice mode. Returns the new setting."""
        self._voice_enabled = not self._voice_enabled
        _LOGGER.info("Voice capture %s", "enabled" if self._voice_enabled else "disabled")
        self._sync_voice_capture()
        self._emit_state()
        return self._voice_enabled

    async def dispatch_tool_call(self, tool_call: ToolCall) -> bool:
        """Answer a batch of function calls with one aggregated tool response.

        A failing call yields an error response for that call only.

        Returns:
            False if the response could not be sent, including when the
            binding changed while the calls were running
        """
        generation = self._generation
        provider = self._provider
        responses: list[FunctionResponse] = []

        if provider is None:
            _LOGGER.warning(
                "No tool provider for %d function calls", len(tool_call.function_calls)
            )
            responses = [
                FunctionResponse(id=call.id, response={"error": NO_PROVIDER_ERROR})
                for call in tool_call.function_calls
            ]
        else:
            for call in tool_call.function_calls:
                _LOGGER.debug("Calling tool %s (id=%s)", call.name, call.id)
                try:
                    result = await provider.invoke(call.name, call.args)
                except Exception as err:
                    _LOGGER.error("Tool call failed for %s: %s", call.name, err)
                    responses.append(
                        FunctionResponse(
                            id=call.id, response={"error": f"Tool call failed: {err}"}
                        )
                    )
                    continue
                responses.append(FunctionResponse(id=call.id, response=_as_response(result)))

        if generation != self._generation:
            _LOGGER.error(
                "Dropping %d tool responses: stream was replaced during the call",
                len(responses),
            )
            return False

        try:
            await self._live.send_tool_response(responses)
        except LiveClientError as err:
            _LOGGER.error("Failed to send %d tool responses: %s", len(responses), err)
            return False
        return True

    # -------------------------------------------------------------------------
    # Internal: Binding
    # -------------------------------------------------------------------------

    async def _bind(self, provider_id: str) -> bool:
        if (
            self._binding is not None
            and self._binding.provider_id == provider_id
            and self._stream_connected
        ):
            _LOGGER.debug("[%s] Already bound, reusing binding", provider_id)
            return True

        await self._teardown()

        provider: ToolProviderClient | None = None
        try:
            provider = await self._provider_factory(provider_id)
            descriptors = await provider.discover_tools()
            config = self._base_config.with_tools(
                build_function_declarations(descriptors)
            )
            if not self._api_key:
                raise LiveConnectionError("No API key configured")
            await self._live.connect(config)
        except Exception as err:
            _LOGGER.error("[%s] Provider connect failed: %s", provider_id, err)
            await self._rollback(provider)
            return False
        except BaseException:
            # Cancelled mid-bind; the started provider must not outlive it
            _LOGGER.info("[%s] Provider connect cancelled", provider_id)
            await self._rollback(provider)
            raise

        self._generation += 1
        self._provider = provider
        self._tools = tuple(descriptors)
        self._binding = ProviderBinding(provider_id=provider_id, tool_count=len(descriptors))
        self._stream_connected = True
        _LOGGER.info("[%s] Bound with %d tools", provider_id, len(descriptors))

        self._sync_voice_capture()
        self._emit_state()
        return True

    async def _rollback(self, provider: ToolProviderClient | None) -> None:
        """Undo a partially established binding."""
        await self._live.disconnect()
        if provider is not None:
            await self._close_provider(provider)
        self._provider = None
        self._tools = ()
        self._binding = None
        self._stream_connected = False
        self._emit_state()

    async def _teardown(self) -> None:
        """Stream first, then provider, then local state."""
        changed = self._binding is not None or self._stream_connected

        self._generation += 1
        self._stream_connected = False
        self._sync_voice_capture()
        await self._live.disconnect()

        provider, self._provider = self._provider, None
        if provider is not None:
            await self._close_provider(provider)

        self._tools = ()
        if self._binding is not None:
            _LOGGER.info("[%s] Unbound", self._binding.provider_id)
        self._binding = None

        if changed:
            self._emit_state()

    @staticmethod
    async def _close_provider(provider: ToolProviderClient) -> None:
        try:
            await provider.close()
        except Exception as err:
            _LOGGER.warning("Error closing tool provider: %s", err)

    def _emit_state(self) -> None:
        self._events.emit("state", self.state)

    # -------------------------------------------------------------------------
    # Internal: Live Client Events
    # -------------------------------------------------------------------------

    def _attach(self, live: LiveClient) -> None:
        for event, handler in self._live_handlers.items():
            live.on(event, handler)

    def _detach(self, live: LiveClient) -> None:
        for event, handler in self._live_handlers.items():
            live.off(event, handler)

    def _on_close(self, reason: str) -> None:
        # Close events from a replaced connection are ignored
        if self._stream_connected and not self._live.is_connected:
            _LOGGER.warning("Stream closed: %s", reason or "no reason given")
            self._stream_connected = False
            self._sync_voice_capture()
            self._emit_state()
        self._events.emit("close", reason)

    def _on_audio(self, data: bytes) -> None:
        if self._audio_sink is not None:
            self._audio_sink.add_pcm16(data)
        self._events.emit("audio", data)

    def _on_interrupted(self) -> None:
        if self._audio_sink is not None:
            self._audio_sink.stop()
        self._events.emit("interrupted")

    # -------------------------------------------------------------------------
    # Internal: Voice
    # -------------------------------------------------------------------------

    def _sync_voice_capture(self) -> None:
        """Run the audio source only while voice is on and the stream is up."""
        if self._audio_source is None:
            return
        should_capture = self._voice_enabled and self._stream_connected
        if should_capture and not self._capturing:
            self._audio_source.start(self._on_audio_chunk)
            self._capturing = True
        elif not should_capture and self._capturing:
            self._audio_source.stop()
            self._capturing = False

    async def _on_audio_chunk(self, data: str) -> None:
        if not self._stream_connected:
            return
        try:
            await self._live.send_realtime_input(
                [MediaChunk(mime_type=VOICE_MIME_TYPE, data=data)]
            )
        except LiveClientError as err:
            _LOGGER.debug("Dropping voice chunk: %s", err)
