"""Session configuration and settings loading.

Settings are treated as data: a single YAML file describes the live endpoint,
the default session configuration and the catalog of tool providers the
orchestrator may bind to.
"""

from __future__ import annotations

import dataclasses
import os
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

from .errors import ConfigLoadError
from .tools import FunctionDeclaration

DEFAULT_LIVE_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1alpha.GenerativeService.BidiGenerateContent"
)
DEFAULT_MODEL = "models/gemini-2.0-flash-exp"
DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a multi-tool assistant capable of multiple things. "
    "Choose the appropriate tool based on the user's request. When you get the "
    "tool response, return the response to the user. Don't remove information "
    "that would be valuable to the user.\n\n"
    "Always answer in English."
)


@dataclass(frozen=True)
class SessionConfig:
    """Immutable per-connection configuration sent in the setup message.

    Attributes:
        model: Target model identifier.
        generation_config: Generation options (response modalities, speech).
        system_instruction: System instruction text, if any.
        tools: Function declarations available to the model.
    """

    model: str = DEFAULT_MODEL
    generation_config: Mapping[str, Any] = field(
        default_factory=lambda: {"responseModalities": "text"}
    )
    system_instruction: str | None = DEFAULT_SYSTEM_INSTRUCTION
    tools: tuple[FunctionDeclaration, ...] = ()

    def with_tools(self, tools: Iterable[FunctionDeclaration]) -> SessionConfig:
        """Return a copy carrying ``tools`` instead of the current set."""
        return dataclasses.replace(self, tools=tuple(tools))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire shape of the setup payload."""
        data: dict[str, Any] = {
            "model": self.model,
            "generationConfig": dict(self.generation_config),
        }
        if self.system_instruction:
            data["systemInstruction"] = {"parts": [{"text": self.system_instruction}]}
        data["tools"] = (
            [{"functionDeclarations": [t.to_dict() for t in self.tools]}]
            if self.tools
            else []
        )
        return data


class ProviderTransport(Enum):
    """Transports a tool provider can be reached over."""

    STDIO = "stdio"
    STREAMABLE_HTTP = "streamable-http"
    SSE = "sse"


@dataclass(frozen=True)
class ProviderSpec:
    """Catalog entry describing how to reach one tool provider.

    Attributes:
        provider_id: Catalog key used by ``connect_to_provider``.
        label: Display name.
        transport: Transport kind.
        command: Executable for stdio providers.
        args: Arguments for stdio providers.
        env: Extra environment for stdio providers.
        url: Endpoint for HTTP/SSE providers.
        headers: Extra request headers for HTTP/SSE providers.
        timeout: Seconds to wait for the provider to become ready.
    """

    provider_id: str
    label: str
    transport: ProviderTransport
    command: str | None = None
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=lambda: {})
    url: str | None = None
    headers: dict[str, str] = field(default_factory=lambda: {})
    timeout: float = 30.0


@dataclass
class LiveSettings:
    """Fully loaded settings.

    Attributes:
        url: Live service WebSocket endpoint (without the key parameter).
        api_key: API key, if configured.
        connect_timeout: Transport open timeout in seconds.
        close_timeout: Transport close acknowledgment timeout in seconds.
        session: Base session configuration (tools are added per binding).
        providers: Provider catalog keyed by provider id.
    """

    url: str = DEFAULT_LIVE_URL
    api_key: str | None = None
    connect_timeout: float = 15.0
    close_timeout: float = 5.0
    session: SessionConfig = field(default_factory=SessionConfig)
    providers: dict[str, ProviderSpec] = field(default_factory=lambda: {})


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file with error handling."""
    if not path.exists():
        raise ConfigLoadError(f"File not found: {path}")
    try:
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as err:
        raise ConfigLoadError(f"Invalid YAML in {path}: {err}") from err
    if not isinstance(data, dict):
        raise ConfigLoadError(f"Expected a mapping at the top of {path}")
    return data


def _infer_transport(url: str) -> ProviderTransport:
    """Treat '/sse' endpoints as SSE, everything else as streamable HTTP."""
    path = (urlparse(url).path or "").lower()
    if re.search(r"/sse(/|$)", path):
        return ProviderTransport.SSE
    return ProviderTransport.STREAMABLE_HTTP


def parse_provider(provider_id: str, data: Mapping[str, Any]) -> ProviderSpec:
    """Parse one provider catalog entry.

    Raises:
        ConfigLoadError: If the entry is missing its command or url.
    """
    if not provider_id:
        raise ConfigLoadError("Provider id must not be empty")

    raw_transport = data.get("transport")
    if raw_transport is None:
        if "command" in data:
            transport = ProviderTransport.STDIO
        elif "url" in data:
            transport = _infer_transport(str(data["url"]))
        else:
            raise ConfigLoadError(
                f"Provider {provider_id} needs either 'command' or 'url'"
            )
    else:
        try:
            transport = ProviderTransport(str(raw_transport).lower())
        except ValueError as err:
            raise ConfigLoadError(
                f"Provider {provider_id} has unsupported transport: {raw_transport}"
            ) from err

    if transport is ProviderTransport.STDIO and not data.get("command"):
        raise ConfigLoadError(f"Stdio provider {provider_id} missing 'command'")
    if transport is not ProviderTransport.STDIO and not data.get("url"):
        raise ConfigLoadError(f"HTTP provider {provider_id} missing 'url'")

    return ProviderSpec(
        provider_id=provider_id,
        label=data.get("label", provider_id),
        transport=transport,
        command=data.get("command"),
        args=tuple(str(arg) for arg in data.get("args", [])),
        env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
        url=data.get("url"),
        headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
        timeout=float(data.get("timeout", 30.0)),
    )


def parse_session(data: Mapping[str, Any]) -> SessionConfig:
    """Parse the ``session`` section, keeping defaults for missing keys."""
    defaults = SessionConfig()
    generation_config = data.get("generation_config", defaults.generation_config)
    if not isinstance(generation_config, Mapping):
        raise ConfigLoadError("session.generation_config must be a mapping")
    return SessionConfig(
        model=data.get("model", defaults.model),
        generation_config=dict(generation_config),
        system_instruction=data.get(
            "system_instruction", defaults.system_instruction
        ),
    )


def load_settings(path: Path) -> LiveSettings:
    """Load settings from a YAML file.

    Args:
        path: Path to the settings file.

    Returns:
        Parsed settings. ``live.api_key_env`` names an environment variable
        to read the key from when ``live.api_key`` is absent.

    Raises:
        ConfigLoadError: If the file is missing or malformed.
    """
    data = _load_yaml(path)

    live = data.get("live") or {}
    api_key = live.get("api_key")
    if api_key is None and (env_name := live.get("api_key_env")):
        api_key = os.environ.get(env_name)

    providers: dict[str, ProviderSpec] = {}
    for provider_id, provider_data in (data.get("providers") or {}).items():
        if not isinstance(provider_data, Mapping):
            raise ConfigLoadError(f"Provider {provider_id} must be a mapping")
        providers[str(provider_id)] = parse_provider(str(provider_id), provider_data)

    return LiveSettings(
        url=live.get("url", DEFAULT_LIVE_URL),
        api_key=api_key,
        connect_timeout=float(live.get("connect_timeout", 15.0)),
        close_timeout=float(live.get("close_timeout", 5.0)),
        session=parse_session(data.get("session") or {}),
        providers=providers,
    )
