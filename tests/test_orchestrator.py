"""Tests for SessionOrchestrator provider binding and tool call bridging."""

from __future__ import annotations

import asyncio

import pytest

from live_session_core.config import SessionConfig
from live_session_core.errors import LiveConnectionError, ToolProviderError
from live_session_core.orchestrator import (
    OrchestratorState,
    ProviderBinding,
    SessionOrchestrator,
)
from live_session_core.protocol import FunctionCall, ToolCall


def tool_call(*calls: tuple[str, str, dict]) -> ToolCall:
    return ToolCall(
        function_calls=tuple(FunctionCall(id=i, name=n, args=a) for i, n, a in calls)
    )


@pytest.fixture
def states() -> list[OrchestratorState]:
    return []


@pytest.fixture
def orchestrator(provider_factory, ws_factory, states) -> SessionOrchestrator:
    orch = SessionOrchestrator(
        provider_factory,
        api_key="test-key",
        base_config=SessionConfig(model="models/test"),
    )
    orch.on("state", states.append)
    return orch


class TestProviderBinding:
    """Tests for connect_to_provider()."""

    @pytest.mark.asyncio
    async def test_bind_configures_stream_with_tools(self, orchestrator, ws_factory, states):
        """Test binding connects the stream with the provider's declarations."""
        assert await orchestrator.connect_to_provider("math") is True

        assert orchestrator.stream_connected
        assert orchestrator.binding == ProviderBinding(provider_id="math", tool_count=2)
        assert [t.name for t in orchestrator.tools] == ["add", "sqrt"]

        setup = ws_factory.last.sent[0]["setup"]
        assert setup["model"] == "models/test"
        declarations = setup["tools"][0]["functionDeclarations"]
        assert [d["name"] for d in declarations] == ["add", "sqrt"]
        assert declarations[0]["parameters"]["required"] == ["a", "b"]

        assert states[-1] == OrchestratorState(
            stream_connected=True, provider_id="math", tool_count=2, voice_enabled=False
        )
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_rebind_tears_down_before_binding(
        self, orchestrator, provider_factory, ws_factory
    ):
        """Test the old provider is closed before the new one is discovered."""
        await orchestrator.connect_to_provider("math")
        await orchestrator.connect_to_provider("weather")

        assert provider_factory.log == [
            ("create", "math"),
            ("discover", "math"),
            ("close", "math"),
            ("create", "weather"),
            ("discover", "weather"),
        ]
        first, second = ws_factory.clients
        assert first.closed
        assert not second.closed
        assert orchestrator.binding.provider_id == "weather"
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_same_provider_is_reused(self, orchestrator, provider_factory, ws_factory):
        """Test reconnecting to the bound provider keeps the binding."""
        await orchestrator.connect_to_provider("math")
        assert await orchestrator.connect_to_provider("math") is True

        assert provider_factory.log == [("create", "math"), ("discover", "math")]
        assert len(ws_factory.clients) == 1
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_unknown_provider(self, orchestrator, ws_factory):
        """Test an unknown provider id fails without opening a stream."""
        assert await orchestrator.connect_to_provider("nope") is False

        assert orchestrator.binding is None
        assert ws_factory.clients == []

    @pytest.mark.asyncio
    async def test_provider_failure_rolls_back(self, orchestrator, provider_factory):
        """Test a failed provider start leaves nothing bound."""
        await orchestrator.connect_to_provider("math")
        provider_factory.errors["weather"] = ToolProviderError("spawn failed")

        assert await orchestrator.connect_to_provider("weather") is False

        assert orchestrator.binding is None
        assert orchestrator.tools == ()
        assert not orchestrator.stream_connected
        assert provider_factory.provider("math").closed

    @pytest.mark.asyncio
    async def test_stream_failure_rolls_back(
        self, orchestrator, provider_factory, ws_factory, states
    ):
        """Test a failed reconnect closes the new provider too."""
        await orchestrator.connect_to_provider("math")
        ws_factory.fail_next(LiveConnectionError("WebSocket connection failed"))

        assert await orchestrator.connect_to_provider("weather") is False

        assert provider_factory.provider("math").closed
        assert provider_factory.provider("weather").closed
        assert orchestrator.binding is None
        assert not orchestrator.live_client.is_connected
        assert states[-1] == OrchestratorState(
            stream_connected=False, provider_id=None, tool_count=0, voice_enabled=False
        )

    @pytest.mark.asyncio
    async def test_missing_api_key(self, provider_factory, ws_factory):
        """Test binding fails when no API key is configured."""
        orchestrator = SessionOrchestrator(provider_factory)

        assert await orchestrator.connect_to_provider("math") is False

        assert provider_factory.provider("math").closed
        assert ws_factory.clients == []

    @pytest.mark.asyncio
    async def test_concurrent_requests_keep_latest(self, orchestrator, provider_factory):
        """Test waiting requests collapse to the most recent one."""
        gate = asyncio.Event()
        provider_factory.gates["math"] = gate

        first = asyncio.create_task(orchestrator.connect_to_provider("math"))
        await asyncio.sleep(0)
        second = asyncio.create_task(orchestrator.connect_to_provider("weather"))
        third = asyncio.create_task(orchestrator.connect_to_provider("notes"))
        await asyncio.sleep(0)
        gate.set()

        results = await asyncio.gather(first, second, third)

        assert results == [True, False, True]
        assert orchestrator.binding.provider_id == "notes"
        assert ("create", "weather") not in provider_factory.log
        assert provider_factory.provider("math").closed
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_cancelled_bind_closes_provider(self, orchestrator, provider_factory):
        """Test cancelling a bind mid-connect closes the started provider."""
        entered = asyncio.Event()
        never = asyncio.Event()

        async def hanging_connect(config):
            entered.set()
            await never.wait()

        orchestrator.live_client.connect = hanging_connect
        task = asyncio.create_task(orchestrator.connect_to_provider("math"))
        await entered.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert provider_factory.provider("math").closed
        assert orchestrator.binding is None
        assert orchestrator.tools == ()


class TestDisconnect:
    """Tests for disconnect_provider()."""

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, orchestrator, provider_factory, states):
        """Test a second disconnect changes nothing."""
        await orchestrator.connect_to_provider("math")

        assert await orchestrator.disconnect_provider() is True
        snapshot = orchestrator.state
        state_count = len(states)
        assert await orchestrator.disconnect_provider() is True

        assert orchestrator.state == snapshot
        assert len(states) == state_count
        assert provider_factory.log.count(("close", "math")) == 1

    @pytest.mark.asyncio
    async def test_disconnect_when_unbound(self, orchestrator, states):
        """Test disconnect without a binding succeeds quietly."""
        assert await orchestrator.disconnect_provider() is True
        assert states == []

    @pytest.mark.asyncio
    async def test_server_close_marks_stream_down(self, orchestrator, ws_factory, drain):
        """Test a server-side close is reported and keeps the binding."""
        reasons = []
        orchestrator.on("close", reasons.append)
        await orchestrator.connect_to_provider("math")

        ws_factory.last.server_close("1011 ERROR] Internal error encountered.")
        await drain(orchestrator.live_client)

        assert reasons == ["Internal error encountered."]
        assert not orchestrator.stream_connected
        assert orchestrator.binding.provider_id == "math"
        assert await orchestrator.send_text("hello?") is False

        # Same provider rebinds because the stream is down
        assert await orchestrator.connect_to_provider("math") is True
        assert len(ws_factory.clients) == 2
        await orchestrator.close()


class TestToolCalls:
    """Tests for dispatch_tool_call()."""

    @pytest.mark.asyncio
    async def test_tool_call_round_trip(self, orchestrator, provider_factory, ws_factory, drain):
        """Test a toolCall frame produces one aggregated toolResponse."""
        provider_factory.results["add"] = {"sum": 3}
        await orchestrator.connect_to_provider("math")
        ws = ws_factory.last

        ws.feed(
            {
                "toolCall": {
                    "functionCalls": [
                        {"id": "c1", "name": "add", "args": {"a": 1, "b": 2}},
                        {"id": "c2", "name": "sqrt", "args": {"x": 9}},
                    ]
                }
            }
        )
        await drain(orchestrator.live_client)

        assert provider_factory.provider("math").calls == [
            ("add", {"a": 1, "b": 2}),
            ("sqrt", {"x": 9}),
        ]
        assert ws.sent_of("toolResponse") == [
            {
                "functionResponses": [
                    {"id": "c1", "response": {"sum": 3}},
                    {"id": "c2", "response": {"ok": True}},
                ]
            }
        ]
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_failing_call_is_isolated(self, orchestrator, provider_factory, ws_factory):
        """Test one failing call does not affect the others."""
        provider_factory.results["sqrt"] = ValueError("negative input")
        await orchestrator.connect_to_provider("math")

        sent = await orchestrator.dispatch_tool_call(
            tool_call(("c1", "add", {}), ("c2", "sqrt", {"x": -1}), ("c3", "add", {}))
        )

        assert sent is True
        responses = ws_factory.last.sent_of("toolResponse")[0]["functionResponses"]
        assert responses == [
            {"id": "c1", "response": {"ok": True}},
            {"id": "c2", "response": {"error": "Tool call failed: negative input"}},
            {"id": "c3", "response": {"ok": True}},
        ]
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_no_provider(self, orchestrator, ws_factory):
        """Test every call gets an error response when no provider is bound."""
        await orchestrator.live_client.connect(SessionConfig())

        await orchestrator.dispatch_tool_call(tool_call(("c1", "add", {}), ("c2", "x", {})))

        assert ws_factory.last.sent_of("toolResponse") == [
            {
                "functionResponses": [
                    {"id": "c1", "response": {"error": "Tool provider not available"}},
                    {"id": "c2", "response": {"error": "Tool provider not available"}},
                ]
            }
        ]
        await orchestrator.live_client.disconnect()

    @pytest.mark.asyncio
    async def test_send_failure_is_reported(self, orchestrator):
        """Test an unsendable response returns False instead of raising."""
        assert await orchestrator.dispatch_tool_call(tool_call(("c1", "add", {}))) is False

    @pytest.mark.asyncio
    async def test_response_dropped_after_rebind(
        self, orchestrator, provider_factory, ws_factory
    ):
        """Test a call that outlives its binding is not answered on the new stream."""
        await orchestrator.connect_to_provider("math")
        first_ws = ws_factory.last
        gate = asyncio.Event()

        async def slow_invoke(name, args):
            await gate.wait()
            return {"ok": True}

        provider_factory.provider("math").invoke = slow_invoke
        task = asyncio.create_task(
            orchestrator.dispatch_tool_call(tool_call(("c1", "add", {})))
        )
        await asyncio.sleep(0)

        assert await orchestrator.connect_to_provider("weather") is True
        gate.set()

        assert await task is False
        assert ws_factory.last is not first_ws
        assert first_ws.sent_of("toolResponse") == []
        assert ws_factory.last.sent_of("toolResponse") == []
        await orchestrator.close()


class TestInteraction:
    """Tests for text, voice and audio output."""

    @pytest.mark.asyncio
    async def test_send_text(self, orchestrator, ws_factory):
        """Test text goes out as a complete user turn."""
        await orchestrator.connect_to_provider("math")

        assert await orchestrator.send_text("What is 2 + 2?") is True

        assert ws_factory.last.sent_of("clientContent") == [
            {
                "turns": [{"role": "user", "parts": [{"text": "What is 2 + 2?"}]}],
                "turnComplete": True,
            }
        ]
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_send_text_when_disconnected(self, orchestrator, ws_factory):
        """Test text is refused without a stream."""
        assert await orchestrator.send_text("hello") is False
        assert ws_factory.clients == []

    @pytest.mark.asyncio
    async def test_content_is_forwarded(self, orchestrator, ws_factory, drain):
        """Test model output reaches orchestrator subscribers."""
        turns = []
        orchestrator.on("turncomplete", turns.append)
        await orchestrator.connect_to_provider("math")

        ws_factory.last.feed(
            {"serverContent": {"modelTurn": {"parts": [{"text": "4"}]}, "turnComplete": False}}
        )
        ws_factory.last.feed({"serverContent": {"turnComplete": True}})
        await drain(orchestrator.live_client)

        assert turns == ["4"]
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_voice_capture_follows_stream(
        self, provider_factory, ws_factory, audio_source
    ):
        """Test the audio source runs only while voice is on and connected."""
        source = audio_source
        orchestrator = SessionOrchestrator(
            provider_factory, api_key="test-key", audio_source=source
        )

        assert orchestrator.toggle_voice_capture() is True
        assert not source.running

        await orchestrator.connect_to_provider("math")
        assert source.running

        await source.on_chunk("AAAA")
        assert ws_factory.last.sent_of("realtimeInput") == [
            {"mediaChunks": [{"mimeType": "audio/pcm;rate=16000", "data": "AAAA"}]}
        ]

        assert orchestrator.toggle_voice_capture() is False
        assert not source.running
        assert orchestrator.state.voice_enabled is False
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_audio_output_goes_to_sink(
        self, provider_factory, ws_factory, drain, audio_sink
    ):
        """Test audio is played and interruption stops playback."""
        sink = audio_sink
        orchestrator = SessionOrchestrator(
            provider_factory, api_key="test-key", audio_sink=sink
        )
        await orchestrator.connect_to_provider("math")
        ws = ws_factory.last

        ws.feed(
            {
                "serverContent": {
                    "modelTurn": {
                        "parts": [{"inlineData": {"mimeType": "audio/pcm", "data": "AAE="}}]
                    }
                }
            }
        )
        ws.feed({"serverContent": {"interrupted": True}})
        await drain(orchestrator.live_client)

        assert sink.chunks == [b"\x00\x01"]
        assert sink.stop_count == 1
        await orchestrator.close()


class TestApiKey:
    """Tests for set_api_key()."""

    @pytest.mark.asyncio
    async def test_set_api_key_replaces_client(self, orchestrator, ws_factory, states):
        """Test a new key closes the stream and rebuilds the client."""
        await orchestrator.connect_to_provider("math")
        old_client = orchestrator.live_client

        await orchestrator.set_api_key("new-key")

        assert orchestrator.live_client is not old_client
        assert not old_client.is_connected
        assert not orchestrator.stream_connected
        assert states[-1].stream_connected is False

        assert await orchestrator.connect_to_provider("math") is True
        assert ws_factory.last.url.endswith("?key=new-key")
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_same_key_is_noop(self, orchestrator):
        """Test setting the current key keeps the client."""
        client = orchestrator.live_client
        await orchestrator.set_api_key("test-key")
        assert orchestrator.live_client is client
