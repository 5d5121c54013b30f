"""Transport layer for the live session client.

Components:
- ws: WebSocket connection management and error mapping
- ws_client: normalized WebSocket message iteration
"""

from .ws import connect_websocket
from .ws_client import LiveWsClient, LiveWsMessage, LiveWsMessageType

__all__ = [
    "LiveWsClient",
    "LiveWsMessage",
    "LiveWsMessageType",
    "connect_websocket",
]
