"""Protocol client for the live streaming service.

Owns exactly one WebSocket connection at a time, sends the session setup as
soon as the transport opens, and turns inbound frames into named events:

- open, close(reason)
- setupcomplete
- content(parts), audio(bytes), turncomplete(text), interrupted
- toolcall(ToolCall), toolcallcancellation(ToolCallCancellation)

Frames are handled strictly in arrival order by a single listener task.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from collections.abc import Iterable, Sequence
from enum import Enum
from typing import Any
from urllib.parse import urlencode

from .config import DEFAULT_LIVE_URL, SessionConfig
from .errors import LiveClientError, LiveConnectionError
from .events import EventEmitter, Handler
from .protocol import (
    ClientMessage,
    FunctionResponse,
    MediaChunk,
    Part,
    RealtimeInputMessage,
    ServerContent,
    SetupComplete,
    SetupMessage,
    ToolCall,
    ToolCallCancellation,
    ToolResponseMessage,
    build_client_content,
    decode,
    encode,
    split_content_parts,
)
from .transport.ws_client import LiveWsClient, LiveWsMessageType

_LOGGER = logging.getLogger(__name__)

LIVE_EVENTS: tuple[str, ...] = (
    "open",
    "close",
    "interrupted",
    "audio",
    "content",
    "setupcomplete",
    "turncomplete",
    "toolcall",
    "toolcallcancellation",
)

ERROR_PRELUDE = "ERROR]"


class ConnectionState(Enum):
    """Lifecycle of the live transport."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


def clean_close_reason(reason: str) -> str:
    """Strip the service's ``...ERROR]`` prelude from a close reason."""
    if "error" in reason.lower():
        index = reason.find(ERROR_PRELUDE)
        if index >= 0:
            return reason[index + len(ERROR_PRELUDE) + 1 :]
    return reason


def build_live_url(url: str, api_key: str) -> str:
    """Append the API key query parameter to the endpoint URL."""
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode({'key': api_key})}"


class LiveClient:
    """Event-emitting client for one live streaming connection.

    Usage:
        client = LiveClient(api_key="...")
        client.on("content", on_content).on("turncomplete", on_turn)
        await client.connect(SessionConfig())
        await client.send([{"text": "hello"}])
        await client.disconnect()
    """

    def __init__(
        self,
        api_key: str,
        *,
        url: str = DEFAULT_LIVE_URL,
        connect_timeout: float = 15.0,
        close_timeout: float = 5.0,
        ping_interval: int | None = 20,
        label: str = "live",
    ) -> None:
        """Initialize client.

        Args:
            api_key: Live service API key, passed as the ``key`` parameter
            url: Endpoint URL without the key
            connect_timeout: Transport open timeout (seconds)
            close_timeout: Close acknowledgment timeout (seconds)
            ping_interval: Keepalive ping interval (seconds)
            label: Prefix used in log lines
        """
        self.api_key = api_key
        self.url = build_live_url(url, api_key)
        self._base_url = url
        self._connect_timeout = connect_timeout
        self._close_timeout = close_timeout
        self._ping_interval = ping_interval
        self._label = label

        self._ws: LiveWsClient | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._state = ConnectionState.IDLE
        self._config: SessionConfig | None = None

        # Text of the turn currently streaming in
        self._turn_text = ""

        self._events = EventEmitter(LIVE_EVENTS, label=label)

    # -------------------------------------------------------------------------
    # Public API: Events
    # -------------------------------------------------------------------------

    def on(self, event: str, handler: Handler) -> LiveClient:
        """Subscribe to a client event. Returns self for chaining."""
        self._events.on(event, handler)
        return self

    def off(self, event: str, handler: Handler) -> LiveClient:
        """Unsubscribe from a client event. Returns self for chaining."""
        self._events.off(event, handler)
        return self

    async def wait_handlers(self) -> None:
        """Wait for scheduled coroutine handlers to finish."""
        await self._events.wait_idle()

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    @property
    def config(self) -> SessionConfig | None:
        """Configuration of the most recent connect call."""
        return self._config

    @property
    def accumulated_text(self) -> str:
        """Text accumulated for the turn currently streaming in."""
        return self._turn_text

    async def connect(self, config: SessionConfig) -> bool:
        """Open a connection and send the setup message.

        Any existing connection is closed first. Returns once the transport
        is open and the setup frame is sent; does not wait for setupComplete.

        Raises:
            LiveClientError: If the transport cannot be opened.
        """
        self._config = config
        await self.disconnect()

        self._set_state(ConnectionState.CONNECTING)
        _LOGGER.info("[%s] Connecting to %s", self._label, self._base_url)

        ws = LiveWsClient()
        try:
            await ws.connect(
                self.url,
                ping_interval=self._ping_interval,
                timeout=self._connect_timeout,
                close_timeout=self._close_timeout,
            )
        except LiveClientError as err:
            _LOGGER.warning(
                "[%s] Could not connect to %s: %s", self._label, self._base_url, err
            )
            self._set_state(ConnectionState.IDLE)
            raise

        self._ws = ws
        self._turn_text = ""
        self._set_state(ConnectionState.OPEN)
        self._events.emit("open")

        try:
            await ws.send_text(encode(SetupMessage(config)))
        except LiveClientError:
            await self.disconnect(ws)
            raise
        _LOGGER.debug(
            "[%s] Setup sent (%s, %d tools)", self._label, config.model, len(config.tools)
        )

        self._listen_task = asyncio.create_task(self._listen(ws))
        return True

    async def disconnect(self, ws: LiveWsClient | None = None) -> bool:
        """Close the held connection.

        When ``ws`` is given, the connection is only closed if it is still the
        one held; a superseded handle never closes a newer connection.

        Returns:
            True if a connection was closed
        """
        if self._ws is None or (ws is not None and ws is not self._ws):
            return False

        current = self._ws
        listen_task = self._listen_task
        self._ws = None
        self._listen_task = None
        self._set_state(ConnectionState.CLOSING)

        try:
            await asyncio.wait_for(current.close(), timeout=self._close_timeout)
        except TimeoutError:
            _LOGGER.warning("[%s] WebSocket close timed out", self._label)

        if listen_task is not None and listen_task is not asyncio.current_task():
            _, pending = await asyncio.wait({listen_task}, timeout=self._close_timeout)
            if pending:
                _LOGGER.warning("[%s] Listener did not stop, cancelling", self._label)
                listen_task.cancel()

        self._set_state(ConnectionState.IDLE)
        _LOGGER.info("[%s] Disconnected", self._label)
        return True

    # -------------------------------------------------------------------------
    # Public API: Sending
    # -------------------------------------------------------------------------

    async def send(self, parts: Part | Sequence[Part], turn_complete: bool = True) -> None:
        """Send content parts as a user turn.

        Raises:
            LiveConnectionError: If no connection is open
        """
        await self._send(build_client_content(parts, turn_complete))

    async def send_realtime_input(self, chunks: Iterable[MediaChunk]) -> None:
        """Send base64 media chunks (PCM audio and/or JPEG frames)."""
        message = RealtimeInputMessage(media_chunks=tuple(chunks))
        if _LOGGER.isEnabledFor(logging.DEBUG):
            has_audio = any("audio" in c.mime_type for c in message.media_chunks)
            has_video = any("image" in c.mime_type for c in message.media_chunks)
            kind = (
                "audio + video"
                if has_audio and has_video
                else "audio" if has_audio else "video" if has_video else "unknown"
            )
            _LOGGER.debug("[%s] Realtime input: %s", self._label, kind)
        await self._send(message)

    async def send_tool_response(
        self, function_responses: Iterable[FunctionResponse]
    ) -> None:
        """Answer function calls, matched by id."""
        await self._send(ToolResponseMessage(function_responses=tuple(function_responses)))

    async def _send(self, message: ClientMessage) -> None:
        if self._ws is None:
            raise LiveConnectionError("WebSocket is not connected")
        await self._ws.send_text(encode(message))

    # -------------------------------------------------------------------------
    # Internal: Connection State Machine
    # -------------------------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        if self._state is not state:
            _LOGGER.debug(
                "[%s] State: %s → %s", self._label, self._state.value, state.value
            )
            self._state = state

    # -------------------------------------------------------------------------
    # Internal: Message Listener
    # -------------------------------------------------------------------------

    async def _listen(self, ws: LiveWsClient) -> None:
        """Process frames from ``ws`` until it closes."""
        message_count = 0
        reason = ""

        try:
            async for msg in ws:
                if msg.type is LiveWsMessageType.TEXT:
                    message_count += 1
                    self._on_frame(msg.data or "")

                elif msg.type is LiveWsMessageType.CLOSED:
                    reason = msg.data or ""
                    _LOGGER.info("[%s] WebSocket closed: %s", self._label, reason)
                    break

                elif msg.type is LiveWsMessageType.ERROR:
                    reason = msg.data or "WebSocket error"
                    _LOGGER.error("[%s] WebSocket error: %s", self._label, reason)
                    break

        except asyncio.CancelledError:
            _LOGGER.debug(
                "[%s] Listener cancelled (%d messages)", self._label, message_count
            )
            raise
        except LiveClientError as err:
            _LOGGER.warning("[%s] Client error: %s", self._label, err)
            reason = str(err)
        except Exception as err:
            _LOGGER.exception("[%s] Unexpected error: %s", self._label, err)
            reason = str(err)

        await self.disconnect(ws)
        self._events.emit("close", clean_close_reason(reason))

    def _on_frame(self, raw: str | bytes) -> None:
        """Decode one frame and dispatch it."""
        message = decode(raw)

        if isinstance(message, ToolCall):
            # A tool call ends text accumulation for the turn
            self._turn_text = ""
            self._events.emit("toolcall", message)
            return

        if isinstance(message, ToolCallCancellation):
            self._events.emit("toolcallcancellation", message)
            return

        if isinstance(message, SetupComplete):
            _LOGGER.debug("[%s] Setup complete", self._label)
            self._events.emit("setupcomplete")
            return

        if isinstance(message, ServerContent):
            if message.interrupted:
                self._events.emit("interrupted")
                return

            if message.turn_complete:
                text, self._turn_text = self._turn_text, ""
                self._events.emit("turncomplete", text)
                # The same frame may still carry a model turn

            if message.model_turn is not None:
                self._handle_model_turn(message.model_turn)
            return

        _LOGGER.debug(
            "[%s] Dropping unrecognized frame (%s): %.200r",
            self._label,
            message.reason,
            message.payload,
        )

    def _handle_model_turn(self, parts: Sequence[Part]) -> None:
        """Demultiplex audio from other parts and accumulate text."""
        audio_parts, other_parts = split_content_parts(parts)

        self._turn_text += "".join(_part_text(p) for p in other_parts)

        for part in audio_parts:
            data = part["inlineData"].get("data")
            if not data:
                continue
            try:
                audio = base64.b64decode(data, validate=True)
            except (binascii.Error, ValueError) as err:
                _LOGGER.warning("[%s] Invalid audio payload: %s", self._label, err)
                continue
            self._events.emit("audio", audio)

        if other_parts:
            self._events.emit("content", other_parts)


def _part_text(part: dict[str, Any]) -> str:
    text = part.get("text")
    return text if isinstance(text, str) else ""
