"""Opening the live service WebSocket."""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)

from ..errors import (
    LiveConnectionError,
    LiveHandshakeError,
    LiveTimeout,
)

_LOGGER = logging.getLogger(__name__)


def redact_url(url: str) -> str:
    """Return ``url`` with its ``key`` query parameter masked for logging."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    query = [
        (name, "***" if name == "key" else value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(query, safe="*")))


async def connect_websocket(
    url: str,
    *,
    ping_interval: int | None = 20,
    timeout: float = 15.0,
    close_timeout: float = 5.0,
) -> ClientConnection:
    """Open a client connection to ``url``.

    Frames have no size limit; model turns with inline audio can be large.

    Args:
        url: Full ws:// or wss:// URL including the key parameter
        ping_interval: Keepalive ping interval (seconds)
        timeout: Opening handshake timeout (seconds)
        close_timeout: Closing handshake timeout (seconds)

    Raises:
        LiveTimeout: The handshake did not finish within ``timeout``.
        LiveHandshakeError: The URL or the server's handshake was rejected.
        LiveConnectionError: The network connection failed.
    """
    _LOGGER.debug("Opening %s", redact_url(url))
    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                ping_interval=ping_interval,
                close_timeout=close_timeout,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise LiveTimeout(f"Timed out connecting after {timeout}s") from err
    except (InvalidHandshake, InvalidURI) as err:
        raise LiveHandshakeError(f"Handshake rejected: {err}") from err
    except (OSError, WebSocketException) as err:
        raise LiveConnectionError(f"Connection failed: {err}") from err
