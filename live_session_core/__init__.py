"""Live session core: a streaming model client bridged to tool providers."""

__version__ = "0.1.0"

from .config import (
    DEFAULT_LIVE_URL,
    DEFAULT_MODEL,
    LiveSettings,
    ProviderSpec,
    ProviderTransport,
    SessionConfig,
    load_settings,
)
from .errors import (
    ConfigLoadError,
    LiveClientError,
    LiveConnectionError,
    LiveHandshakeError,
    LiveTimeout,
    ProviderNotFoundError,
    ToolInvocationError,
    ToolProviderError,
    ToolSchemaError,
)
from .events import EventEmitter
from .live_client import ConnectionState, LiveClient
from .orchestrator import (
    AudioSink,
    AudioSource,
    OrchestratorState,
    ProviderBinding,
    SessionOrchestrator,
)
from .protocol import (
    FunctionCall,
    FunctionResponse,
    MediaChunk,
    ServerContent,
    SetupComplete,
    ToolCall,
    ToolCallCancellation,
    Unrecognized,
    decode,
    encode,
)
from .providers import McpProviderFactory, McpToolProvider, ToolProviderClient
from .tools import (
    FunctionDeclaration,
    ParameterSchema,
    SchemaType,
    ToolDescriptor,
    build_function_declarations,
    to_function_declaration,
)

__all__ = [
    "DEFAULT_LIVE_URL",
    "DEFAULT_MODEL",
    "AudioSink",
    "AudioSource",
    "ConfigLoadError",
    "ConnectionState",
    "EventEmitter",
    "FunctionCall",
    "FunctionDeclaration",
    "FunctionResponse",
    "LiveClient",
    "LiveClientError",
    "LiveConnectionError",
    "LiveHandshakeError",
    "LiveSettings",
    "LiveTimeout",
    "McpProviderFactory",
    "McpToolProvider",
    "MediaChunk",
    "OrchestratorState",
    "ParameterSchema",
    "ProviderBinding",
    "ProviderNotFoundError",
    "ProviderSpec",
    "ProviderTransport",
    "SchemaType",
    "ServerContent",
    "SessionConfig",
    "SessionOrchestrator",
    "SetupComplete",
    "ToolCall",
    "ToolCallCancellation",
    "ToolDescriptor",
    "ToolInvocationError",
    "ToolProviderClient",
    "ToolProviderError",
    "ToolSchemaError",
    "Unrecognized",
    "__version__",
    "build_function_declarations",
    "decode",
    "encode",
    "load_settings",
    "to_function_declaration",
]
