"""
Tool Execution Gateway for the identity tool service.

The tool service speaks MCP over streamable HTTP. `ToolServiceConnection` is
the explicit handle around that session:

- created once in the FastAPI lifespan and stored on `app.state`
- connected lazily on first `acquire()`, at most once at a time (asyncio.Lock)
- reference counted; with keep-alive off, the session closes when the last
  holder releases it
- the MCP session's context managers live in one background task owned by
  the handle, so they are entered and exited in the same task

`ToolGateway.execute` performs exactly one remote call and returns the raw
result. It does not interpret business errors embedded in the payload; that
is `tool_payloads`' job.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, Callable, Optional

from api.services.resilience import ToolTransportError

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncContextManager[Any]]


@dataclass
class ToolSpec:
    """A tool advertised by the tool service during the handshake."""
    name: str
    description: str = ""
    input_schema: dict = field(default_factory=lambda: {"type": "object", "properties": {}})

    @classmethod
    def from_mcp(cls, tool: Any) -> "ToolSpec":
        """Build from an MCP `Tool` object (or an equivalent dict)."""
        if isinstance(tool, dict):
            return cls(
                name=tool["name"],
                description=tool.get("description") or "",
                input_schema=tool.get("inputSchema") or tool.get("input_schema") or {"type": "object", "properties": {}},
            )
        return cls(
            name=tool.name,
            description=getattr(tool, "description", None) or "",
            input_schema=getattr(tool, "inputSchema", None) or {"type": "object", "properties": {}},
        )


def result_to_dict(result: Any) -> dict:
    """
    Convert an MCP `CallToolResult` into the raw result dict.

    Returns:
        `{"content": [...blocks...], "isError": bool}` plus `structuredContent`
        when the service sent one.
    """
    if isinstance(result, dict):
        out = {"content": result.get("content", []), "isError": bool(result.get("isError", False))}
        if result.get("structuredContent"):
            out["structuredContent"] = result["structuredContent"]
        return out

    blocks = []
    for block in getattr(result, "content", None) or []:
        if isinstance(block, dict):
            blocks.append(block)
        elif hasattr(block, "model_dump"):
            blocks.append(block.model_dump(exclude_none=True))
        else:
            blocks.append({"type": "text", "text": str(block)})

    out = {"content": blocks, "isError": bool(getattr(result, "isError", False))}
    structured = getattr(result, "structuredContent", None)
    if structured:
        out["structuredContent"] = structured
    return out


def mcp_session_factory(url: str, headers: Optional[dict[str, str]] = None) -> SessionFactory:
    """Session factory that opens an initialized MCP session over streamable HTTP."""

    @asynccontextmanager
    async def _open():
        from mcp import ClientSession
        from mcp.client.streamable_http import streamablehttp_client

        async with streamablehttp_client(url, headers=headers or {}) as (read_stream, write_stream, _):
            async with ClientSession(read_stream, write_stream) as session:
                await session.initialize()
                yield session

    return _open


class ToolServiceConnection:
    """Lazily-connected, reference-counted handle to the tool service session."""

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        keep_alive: bool = True,
        connect_timeout: float = 30.0,
    ):
        """
        Args:
            session_factory: Returns an async context manager yielding an
                initialized session with `list_tools()` and `call_tool()`.
                None means the tool service is not configured.
            keep_alive: Keep the session open after the last holder releases it
            connect_timeout: Seconds allowed for the connect + catalog handshake
        """
        self._session_factory = session_factory
        self.keep_alive = keep_alive
        self.connect_timeout = connect_timeout

        self._lock = asyncio.Lock()
        self._session: Any = None
        self._tools: Optional[list[ToolSpec]] = None
        self._runner: Optional[asyncio.Task] = None
        self._closing: Optional[asyncio.Event] = None
        self._holders = 0

    @classmethod
    def from_settings(cls, settings) -> "ToolServiceConnection":
        if not settings.mcp_configured:
            return cls(session_factory=None, keep_alive=settings.mcp_keep_alive)
        return cls(
            session_factory=mcp_session_factory(settings.mcp_server_url, settings.mcp_headers),
            keep_alive=settings.mcp_keep_alive,
        )

    @property
    def configured(self) -> bool:
        return self._session_factory is not None

    @property
    def connected(self) -> bool:
        return self._session is not None

    @property
    def holders(self) -> int:
        return self._holders

    @property
    def tools(self) -> list[ToolSpec]:
        """Tool catalog from the handshake (empty before the first connect)."""
        return list(self._tools or [])

    async def _run_session(self, ready: asyncio.Future) -> None:
        try:
            async with self._session_factory() as session:
                listing = await session.list_tools()
                raw_tools = getattr(listing, "tools", listing)
                self._tools = [ToolSpec.from_mcp(tool) for tool in raw_tools]
                self._session = session
                ready.set_result(None)
                await self._closing.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            else:
                logger.error(f"Tool service session ended unexpectedly: {e}")
        finally:
            self._session = None

    async def _connect(self) -> None:
        if not self.configured:
            raise ToolTransportError("Tool service is not configured (set MCP_SERVER_URL)")

        loop = asyncio.get_running_loop()
        ready: asyncio.Future = loop.create_future()
        self._closing = asyncio.Event()
        self._runner = asyncio.create_task(self._run_session(ready))
        try:
            await asyncio.wait_for(ready, timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            self._closing.set()
            self._runner.cancel()
            raise ToolTransportError("Timed out connecting to the tool service") from e
        except ToolTransportError:
            raise
        except Exception as e:
            raise ToolTransportError(f"Could not connect to the tool service: {e}") from e

        logger.info(f"Connected to tool service, {len(self._tools or [])} tools available")

    async def ensure_connected(self) -> None:
        """Connect if no live session exists. Safe to call concurrently."""
        async with self._lock:
            if self._session is None:
                await self._connect()

    async def acquire(self) -> "ToolServiceConnection":
        """Register a holder, connecting on first use."""
        await self.ensure_connected()
        self._holders += 1
        return self

    async def release(self) -> None:
        """Drop a holder; closes the session when the last holder leaves and keep-alive is off."""
        if self._holders > 0:
            self._holders -= 1
        if self._holders == 0 and not self.keep_alive:
            await self.aclose()

    @asynccontextmanager
    async def lease(self):
        """`async with connection.lease():` acquire/release pair."""
        await self.acquire()
        try:
            yield self
        finally:
            await self.release()

    async def aclose(self) -> None:
        """Close the session and stop its background task."""
        async with self._lock:
            runner = self._runner
            if runner is None:
                return
            if self._closing is not None:
                self._closing.set()
            try:
                await asyncio.wait_for(runner, timeout=5.0)
            except asyncio.TimeoutError:
                runner.cancel()
                logger.warning("Tool service session did not close in time; cancelled")
            except Exception as e:
                logger.warning(f"Error while closing tool service session: {e}")
            self._runner = None
            self._session = None
            logger.info("Tool service connection closed")

    async def call_tool(self, name: str, arguments: dict) -> dict:
        """
        Call one tool on the live session.

        Raises:
            ToolTransportError: On any connection or protocol failure
        """
        await self.ensure_connected()
        session = self._session
        if session is None:
            raise ToolTransportError("Tool service session is not available", tool_name=name)
        try:
            result = await session.call_tool(name, arguments)
        except Exception as e:
            raise ToolTransportError(str(e) or type(e).__name__, tool_name=name) from e
        return result_to_dict(result)


class ToolGateway:
    """Executes single tool calls against the tool service."""

    def __init__(self, connection: ToolServiceConnection):
        self.connection = connection

    async def list_tools(self) -> list[ToolSpec]:
        """Tool catalog, connecting first if needed."""
        await self.connection.ensure_connected()
        return self.connection.tools

    async def execute(self, name: str, arguments: dict) -> dict:
        """
        Perform exactly one remote tool call.

        Args:
            name: Tool name
            arguments: Tool arguments

        Returns:
            Raw result dict (`content`, `isError`, optional `structuredContent`)

        Raises:
            ToolTransportError: Transport failure; business errors are returned, not raised
        """
        logger.info(f"Calling tool {name}")
        result = await self.connection.call_tool(name, arguments)
        if result.get("isError"):
            logger.info(f"Tool {name} reported an error result")
        return result
