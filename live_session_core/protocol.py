"""Message codec for live streaming frames.

Server frames are classified into a closed set of typed messages; anything
that does not fit decodes to ``Unrecognized`` instead of raising. Client
messages serialize to JSON text frames.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, TypeAlias

from .config import SessionConfig

AUDIO_PCM_PREFIX = "audio/pcm"

Part: TypeAlias = dict[str, Any]


# -------------------------------------------------------------------------
# Server -> client
# -------------------------------------------------------------------------


@dataclass(frozen=True)
class SetupComplete:
    """The service accepted the session configuration."""


@dataclass(frozen=True)
class ServerContent:
    """Streamed model output or turn signalling.

    Attributes:
        interrupted: The user interrupted the model.
        turn_complete: The model finished its turn.
        model_turn: Ordered content parts, or None when absent.
    """

    interrupted: bool = False
    turn_complete: bool = False
    model_turn: tuple[Part, ...] | None = None


@dataclass(frozen=True)
class FunctionCall:
    """A single function call requested by the model."""

    id: str
    name: str
    args: dict[str, Any]


@dataclass(frozen=True)
class ToolCall:
    """Batch of function calls to be answered with one tool response."""

    function_calls: tuple[FunctionCall, ...]


@dataclass(frozen=True)
class ToolCallCancellation:
    """Previously issued calls the model no longer needs."""

    ids: tuple[str, ...]


@dataclass(frozen=True)
class Unrecognized:
    """A frame that matched no known server message."""

    payload: Any
    reason: str


ServerMessage: TypeAlias = SetupComplete | ServerContent | ToolCall | ToolCallCancellation


def _decode_tool_call(body: Any) -> ToolCall | None:
    if not isinstance(body, Mapping):
        return None
    calls_raw = body.get("functionCalls", [])
    if not isinstance(calls_raw, list):
        return None
    calls: list[FunctionCall] = []
    for call in calls_raw:
        if not isinstance(call, Mapping) or not isinstance(call.get("name"), str):
            return None
        args = call.get("args") or {}
        if not isinstance(args, Mapping):
            return None
        calls.append(
            FunctionCall(id=str(call.get("id", "")), name=call["name"], args=dict(args))
        )
    return ToolCall(function_calls=tuple(calls))


def _decode_cancellation(body: Any) -> ToolCallCancellation | None:
    if not isinstance(body, Mapping):
        return None
    ids = body.get("ids", [])
    if not isinstance(ids, list):
        return None
    return ToolCallCancellation(ids=tuple(str(i) for i in ids))


def _decode_server_content(body: Any) -> ServerContent | None:
    if not isinstance(body, Mapping):
        return None
    model_turn: tuple[Part, ...] | None = None
    if (turn := body.get("modelTurn")) is not None:
        if not isinstance(turn, Mapping):
            return None
        parts = turn.get("parts", [])
        if not isinstance(parts, list) or not all(isinstance(p, Mapping) for p in parts):
            return None
        model_turn = tuple(dict(p) for p in parts)
    return ServerContent(
        interrupted=bool(body.get("interrupted", False)),
        turn_complete=bool(body.get("turnComplete", False)),
        model_turn=model_turn,
    )


def decode(raw: str | bytes | Mapping[str, Any]) -> ServerMessage | Unrecognized:
    """Classify one inbound frame.

    Never raises: malformed JSON, non-object payloads and unknown shapes all
    come back as ``Unrecognized``.
    """
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as err:
            return Unrecognized(payload=raw, reason=f"invalid JSON: {err}")
    else:
        data = raw

    if not isinstance(data, Mapping):
        return Unrecognized(payload=data, reason="frame is not an object")

    message: ServerMessage | None
    if "toolCall" in data:
        message = _decode_tool_call(data["toolCall"])
    elif "toolCallCancellation" in data:
        message = _decode_cancellation(data["toolCallCancellation"])
    elif "setupComplete" in data:
        message = SetupComplete()
    elif "serverContent" in data:
        message = _decode_server_content(data["serverContent"])
    else:
        return Unrecognized(payload=data, reason="unknown message type")

    if message is None:
        return Unrecognized(payload=data, reason="malformed message body")
    return message


def is_audio_part(part: Mapping[str, Any]) -> bool:
    """Return True for inline PCM audio parts."""
    inline = part.get("inlineData")
    if not isinstance(inline, Mapping):
        return False
    mime_type = inline.get("mimeType")
    return isinstance(mime_type, str) and mime_type.startswith(AUDIO_PCM_PREFIX)


def split_content_parts(
    parts: Iterable[Part],
) -> tuple[list[Part], list[Part]]:
    """Partition model-turn parts into (audio parts, other parts).

    Relative order is preserved within each partition.
    """
    audio: list[Part] = []
    other: list[Part] = []
    for part in parts:
        (audio if is_audio_part(part) else other).append(part)
    return audio, other


# -------------------------------------------------------------------------
# Client -> server
# -------------------------------------------------------------------------


@dataclass(frozen=True)
class SetupMessage:
    config: SessionConfig

    def to_dict(self) -> dict[str, Any]:
        return {"setup": self.config.to_dict()}


@dataclass(frozen=True)
class Content:
    """One conversation turn."""

    parts: tuple[Part, ...]
    role: str = "user"

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "parts": [dict(p) for p in self.parts]}


@dataclass(frozen=True)
class ClientContentMessage:
    turns: tuple[Content, ...]
    turn_complete: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "clientContent": {
                "turns": [turn.to_dict() for turn in self.turns],
                "turnComplete": self.turn_complete,
            }
        }


@dataclass(frozen=True)
class FunctionResponse:
    """Result for one function call, matched by id."""

    id: str
    response: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "response": self.response}


@dataclass(frozen=True)
class ToolResponseMessage:
    function_responses: tuple[FunctionResponse, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "toolResponse": {
                "functionResponses": [r.to_dict() for r in self.function_responses]
            }
        }


@dataclass(frozen=True)
class MediaChunk:
    """Base64-encoded realtime media (PCM audio or JPEG frames)."""

    mime_type: str
    data: str

    def to_dict(self) -> dict[str, Any]:
        return {"mimeType": self.mime_type, "data": self.data}


@dataclass(frozen=True)
class RealtimeInputMessage:
    media_chunks: tuple[MediaChunk, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"realtimeInput": {"mediaChunks": [c.to_dict() for c in self.media_chunks]}}


ClientMessage: TypeAlias = (
    SetupMessage | ClientContentMessage | ToolResponseMessage | RealtimeInputMessage
)

_CLIENT_MESSAGE_TYPES = (
    SetupMessage,
    ClientContentMessage,
    ToolResponseMessage,
    RealtimeInputMessage,
)


def encode(message: ClientMessage) -> str:
    """Serialize a client message to a JSON text frame."""
    if not isinstance(message, _CLIENT_MESSAGE_TYPES):
        raise TypeError(f"Not a client message: {type(message).__name__}")
    return json.dumps(message.to_dict())


def build_client_content(
    parts: Part | Sequence[Part], turn_complete: bool = True
) -> ClientContentMessage:
    """Wrap one part or a list of parts as a single user turn."""
    if isinstance(parts, Mapping):
        parts = [parts]
    return ClientContentMessage(
        turns=(Content(parts=tuple(dict(p) for p in parts)),),
        turn_complete=turn_complete,
    )
