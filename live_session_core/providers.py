"""Tool provider contract and the MCP-backed implementation.

A tool provider is anything that can list tools, invoke them by name and be
closed. The orchestrator only depends on ``ToolProviderClient``; the MCP
implementation here reaches servers over stdio, streamable HTTP or SSE.

MCP sessions are built from nested async context managers that must be
exited by the task that entered them, so each ``McpToolProvider`` runs its
session inside one owning task. ``close()`` signals that task and waits for
it, which doubles as the acknowledgment that the transport is released.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from contextlib import AsyncExitStack
from typing import Any, Protocol, runtime_checkable

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import CallToolResult, TextContent

from .config import ProviderSpec, ProviderTransport
from .errors import ProviderNotFoundError, ToolInvocationError, ToolProviderError
from .tools import ToolDescriptor

_LOGGER = logging.getLogger(__name__)


@runtime_checkable
class ToolProviderClient(Protocol):
    """Connection to a tool provider, as seen by the orchestrator."""

    async def discover_tools(self) -> list[ToolDescriptor]:
        """List the provider's tools."""
        ...

    async def invoke(self, name: str, args: Mapping[str, Any]) -> dict[str, Any]:
        """Invoke a tool and return its JSON-compatible result."""
        ...

    async def close(self) -> None:
        """Release the provider connection."""
        ...


ProviderFactory = Callable[[str], Awaitable[ToolProviderClient]]


def _result_text(result: CallToolResult) -> str:
    return "\n".join(c.text for c in result.content if isinstance(c, TextContent))


class McpToolProvider:
    """Tool provider backed by an MCP client session."""

    def __init__(self, spec: ProviderSpec) -> None:
        self.spec = spec
        self._session: ClientSession | None = None
        self._task: asyncio.Task[None] | None = None
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()

    @property
    def provider_id(self) -> str:
        return self.spec.provider_id

    @property
    def is_started(self) -> bool:
        return self._session is not None

    async def start(self) -> None:
        """Open the transport and initialize the MCP session.

        Raises:
            ToolProviderError: If the session cannot be established in time.
        """
        if self._task is not None:
            return

        _LOGGER.info(
            "[%s] Starting MCP provider (%s)", self.provider_id, self.spec.transport.value
        )
        self._ready.clear()
        self._stop.clear()
        self._task = asyncio.create_task(self._run())
        ready_waiter = asyncio.create_task(self._ready.wait())

        try:
            done, _ = await asyncio.wait(
                {self._task, ready_waiter},
                timeout=self.spec.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready_waiter.cancel()

        if self._task in done:
            err = None if self._task.cancelled() else self._task.exception()
            self._task = None
            raise ToolProviderError(
                f"Failed to start provider {self.provider_id}: {err}"
            ) from err

        if not self._ready.is_set():
            # The session task is stuck in setup and never observes _stop
            task, self._task = self._task, None
            task.cancel()
            await asyncio.wait({task})
            self._session = None
            raise ToolProviderError(f"Provider {self.provider_id} start timed out")

        _LOGGER.info("[%s] MCP provider ready", self.provider_id)

    async def discover_tools(self) -> list[ToolDescriptor]:
        """List every tool, following pagination cursors."""
        session = self._require_session()
        descriptors: list[ToolDescriptor] = []
        cursor: str | None = None
        page_count = 0

        while True:
            result = await session.list_tools(cursor=cursor)
            for tool in result.tools:
                descriptors.append(
                    ToolDescriptor.from_dict(
                        {
                            "name": tool.name,
                            "description": tool.description,
                            "inputSchema": tool.inputSchema,
                        }
                    )
                )
            page_count += 1
            cursor = result.nextCursor
            if not cursor:
                break

        _LOGGER.debug(
            "[%s] Discovered %d tools (%d pages)",
            self.provider_id,
            len(descriptors),
            page_count,
        )
        return descriptors

    async def invoke(self, name: str, args: Mapping[str, Any]) -> dict[str, Any]:
        """Call a tool and return the MCP result as a JSON-compatible dict.

        Raises:
            ToolInvocationError: If the server reports the call as failed.
        """
        session = self._require_session()
        result = await session.call_tool(name, arguments=dict(args))
        if result.isError:
            raise ToolInvocationError(name, _result_text(result) or f"{name} failed")
        return result.model_dump(mode="json", exclude_none=True)

    async def close(self) -> None:
        """Stop the session task and wait for the transport to close."""
        task = self._task
        if task is None:
            return

        _LOGGER.info("[%s] Closing MCP provider", self.provider_id)
        self._stop.set()
        try:
            await asyncio.wait_for(task, timeout=self.spec.timeout)
        except TimeoutError:
            _LOGGER.warning("[%s] Provider close timed out", self.provider_id)
        except Exception as err:
            _LOGGER.warning("[%s] Provider closed with error: %s", self.provider_id, err)
        finally:
            self._task = None
            self._session = None

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ToolProviderError(f"Provider {self.provider_id} is not started")
        return self._session

    def _open_transport(self) -> Any:
        spec = self.spec
        if spec.transport is ProviderTransport.STDIO:
            params = StdioServerParameters(
                command=spec.command or "",
                args=list(spec.args),
                env=dict(spec.env) or None,
            )
            return stdio_client(params)
        if spec.transport is ProviderTransport.SSE:
            return sse_client(spec.url or "", headers=dict(spec.headers) or None)
        return streamablehttp_client(spec.url or "", headers=dict(spec.headers) or None)

    async def _run(self) -> None:
        """Own the transport and session contexts until asked to stop."""
        try:
            async with AsyncExitStack() as stack:
                streams = await stack.enter_async_context(self._open_transport())
                read_stream, write_stream = streams[0], streams[1]
                session = await stack.enter_async_context(
                    ClientSession(read_stream, write_stream)
                )
                await session.initialize()
                self._session = session
                self._ready.set()
                await self._stop.wait()
        finally:
            self._session = None
            _LOGGER.debug("[%s] MCP session closed", self.provider_id)


class McpProviderFactory:
    """Creates started ``McpToolProvider`` instances from a catalog."""

    def __init__(self, catalog: Mapping[str, ProviderSpec]) -> None:
        self._catalog = dict(catalog)

    @property
    def provider_ids(self) -> tuple[str, ...]:
        return tuple(self._catalog)

    def label(self, provider_id: str) -> str:
        spec = self._catalog.get(provider_id)
        return spec.label if spec else provider_id

    async def __call__(self, provider_id: str) -> McpToolProvider:
        spec = self._catalog.get(provider_id)
        if spec is None:
            raise ProviderNotFoundError(provider_id)
        provider = McpToolProvider(spec)
        await provider.start()
        return provider
