"""WebSocket client wrapper for the live streaming service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from ..errors import LiveConnectionError
from .ws import connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

_LOGGER = logging.getLogger(__name__)


class LiveWsMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class LiveWsMessage:
    """Normalized WebSocket message payload.

    TEXT messages carry the frame text; CLOSED messages carry the close
    reason reported by the peer.
    """

    type: LiveWsMessageType
    data: str | None = None


class LiveWsClient:
    """Wrapper around websockets library for the live service."""

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None

    async def connect(
        self,
        url: str,
        *,
        ping_interval: int | None = 20,
        timeout: float = 15.0,
        close_timeout: float = 5.0,
    ) -> None:
        """Connect to the live service websocket."""
        self._ws = await connect_websocket(
            url,
            ping_interval=ping_interval,
            timeout=timeout,
            close_timeout=close_timeout,
        )

    async def close(self) -> None:
        """Close the websocket and wait for the closing handshake."""
        if self._ws is not None:
            await self._ws.close()

    async def send_text(self, payload: str) -> None:
        """Send a text frame to the websocket."""
        if self._ws is None:
            raise LiveConnectionError("WebSocket is not connected")
        try:
            await self._ws.send(payload)
        except ConnectionClosed as err:
            raise LiveConnectionError("WebSocket is closed") from err

    def __aiter__(self) -> AsyncIterator[LiveWsMessage]:
        if self._ws is None:
            raise LiveConnectionError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[LiveWsMessage]:
        if self._ws is None:
            raise LiveConnectionError("WebSocket is not connected")

        try:
            async for msg in self._ws:
                normalized: LiveWsMessage | None = self._normalize_message(msg)
                if normalized is None:
                    continue
                yield normalized
        except ConnectionClosed as err:
            reason = err.rcvd.reason if err.rcvd is not None else ""
            yield LiveWsMessage(type=LiveWsMessageType.CLOSED, data=reason)
        except Exception as err:
            _LOGGER.warning("WebSocket receive failed: %s", err)
            yield LiveWsMessage(type=LiveWsMessageType.ERROR, data=str(err))
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield LiveWsMessage(
                type=LiveWsMessageType.CLOSED, data=self._ws.close_reason or ""
            )

    @staticmethod
    def _normalize_message(msg: Any) -> LiveWsMessage | None:
        """Normalize text and binary frames into TEXT messages.

        The live service delivers JSON in binary frames; those are decoded as
        UTF-8. Undecodable binary frames are dropped.
        """
        if isinstance(msg, bytes):
            try:
                return LiveWsMessage(LiveWsMessageType.TEXT, msg.decode("utf-8"))
            except UnicodeDecodeError:
                _LOGGER.debug("Dropping non UTF-8 binary frame (%d bytes)", len(msg))
                return None
        if isinstance(msg, str):
            return LiveWsMessage(LiveWsMessageType.TEXT, msg)

        # Fallback: treat unknown objects as text via their string repr
        return LiveWsMessage(LiveWsMessageType.TEXT, str(msg))
