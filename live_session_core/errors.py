"""Error types for live session and tool provider interactions."""

from __future__ import annotations


class LiveClientError(Exception):
    """Base error for live streaming client failures."""


class LiveTimeout(LiveClientError):
    """Timeout while communicating with the live service."""


class LiveConnectionError(LiveClientError):
    """Network connection to the live service failed or is not open."""


class LiveHandshakeError(LiveClientError):
    """WebSocket handshake failed."""


class ToolProviderError(Exception):
    """Base error for tool provider failures."""


class ProviderNotFoundError(ToolProviderError):
    """No provider is configured under the requested identifier."""

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Unknown tool provider: {provider_id}")
        self.provider_id = provider_id


class ToolInvocationError(ToolProviderError):
    """The provider reported a failed tool invocation."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class ToolSchemaError(ValueError):
    """A tool descriptor or parameter schema is malformed."""


class ConfigLoadError(Exception):
    """Error loading settings from disk."""
