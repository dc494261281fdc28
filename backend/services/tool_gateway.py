"""
Tool Gateway for the plant-knowledge tool server.

Wraps a Model Context Protocol session over stdio with an explicit connection
state machine. The session lives inside a single background task that owns
the transport context (and therefore the spawned server process); callers
only ever see ToolCallResult values, never exceptions.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from enum import Enum
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict, List, Optional

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED
from pydantic import ValidationError

from config import (
    TOOL_SERVER_COMMAND,
    TOOL_SERVER_ARGS,
    TOOL_CALL_TIMEOUT_SECONDS,
    TOOL_PING_INTERVAL_SECONDS,
)
from models.tool import PlantRecord, ToolCallResult, ToolFailureReason

logger = logging.getLogger(__name__)

SessionFactory = Callable[..., AsyncContextManager[Any]]

# Transport errors meaning the server process is gone
_CLOSED_TRANSPORT_ERRORS = (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


async def _relay(source: Any, sink: Any, on_close: Optional[Callable[[], None]]) -> None:
    """Forward transport messages to the session and report when the server's output ends."""
    async with sink:
        try:
            async for message in source:
                await sink.send(message)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            # Session side went away first: a local close, not a server exit
            return
    logger.warning("Tool server closed its output stream")
    if on_close is not None:
        on_close()


@asynccontextmanager
async def stdio_session(
    on_close: Optional[Callable[[], None]] = None,
    command: str = TOOL_SERVER_COMMAND,
    args: Optional[List[str]] = None,
    read_timeout_seconds: float = TOOL_CALL_TIMEOUT_SECONDS
) -> AsyncIterator[ClientSession]:
    """
    Spawn the tool server and yield an initialized MCP client session.

    `on_close` is called as soon as the server's output stream ends, which
    happens when the process exits.
    """
    params = StdioServerParameters(command=command, args=list(args if args is not None else TOOL_SERVER_ARGS))
    logger.info(f"Spawning tool server: {command} {' '.join(params.args)}")
    async with stdio_client(params) as (read_stream, write_stream):
        relay_send, relay_receive = anyio.create_memory_object_stream(0)
        async with anyio.create_task_group() as task_group:
            task_group.start_soon(_relay, read_stream, relay_send, on_close)
            async with ClientSession(
                relay_receive,
                write_stream,
                read_timeout_seconds=timedelta(seconds=read_timeout_seconds)
            ) as session:
                await session.initialize()
                yield session
            task_group.cancel_scope.cancel()


class ToolGateway:
    """Never-throwing entry point to the external tool server."""

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        ping_interval: float = TOOL_PING_INTERVAL_SECONDS
    ):
        """
        Initialize a disconnected gateway.

        Args:
            session_factory: Called with `on_close=`, returns an async context
                manager yielding a session with call_tool() and send_ping();
                defaults to stdio_session
            ping_interval: Seconds between keep-alive pings used to detect server exit
        """
        self._session_factory = session_factory or stdio_session
        self.ping_interval = ping_interval
        self._state = ConnectionState.DISCONNECTED
        self._session: Optional[Any] = None
        self._runner: Optional[asyncio.Task] = None
        self._closing: Optional[asyncio.Event] = None
        self._connecting: Optional[asyncio.Future] = None
        self._background: Optional[asyncio.Task] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    async def connect(self) -> None:
        """
        Connect to the tool server.

        No-op when already connected. While a connection attempt is in flight,
        every caller awaits that same attempt.

        Raises:
            Exception: Whatever made the connection attempt fail
        """
        if self._state is ConnectionState.CONNECTED:
            logger.debug("Tool gateway already connected")
            return
        if self._connecting is not None:
            logger.debug("Tool gateway connection already in progress")
            await asyncio.shield(self._connecting)
            return

        logger.info("Connecting to tool server...")
        ready = asyncio.get_running_loop().create_future()
        closing = asyncio.Event()
        self._connecting = ready
        self._closing = closing
        self._state = ConnectionState.CONNECTING
        self._runner = asyncio.create_task(self._run(ready, closing))

        try:
            await asyncio.shield(ready)
        finally:
            if self._connecting is ready:
                self._connecting = None

    def start(self) -> None:
        """Connect in the background; failures are logged, not raised."""
        if self._background is not None and not self._background.done():
            return
        self._background = asyncio.create_task(self._connect_quietly())

    async def _connect_quietly(self) -> None:
        try:
            await self.connect()
        except Exception as e:
            logger.error(f"Background connection to tool server failed: {e}")

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> ToolCallResult:
        """
        Call a tool on the server.

        Args:
            name: Tool name
            arguments: Tool arguments

        Returns:
            ToolCallResult; NOT_CONNECTED immediately when not connected
        """
        session = self._session
        if self._state is not ConnectionState.CONNECTED or session is None:
            logger.info(f"Tool '{name}' skipped: gateway is {self._state.value}")
            return ToolCallResult.failure(ToolFailureReason.NOT_CONNECTED)

        logger.info(f"Calling tool '{name}' with args: {json.dumps(arguments, ensure_ascii=False)}")
        try:
            result = await session.call_tool(name, arguments)
        except ValidationError as e:
            logger.warning(f"Tool '{name}' returned a response that failed validation: {e}")
            return ToolCallResult.failure(ToolFailureReason.MALFORMED_RESPONSE)
        except McpError as e:
            if e.error.code == CONNECTION_CLOSED:
                logger.error(f"Tool server connection closed during '{name}'")
                self._mark_lost(session)
            else:
                logger.error(f"Tool '{name}' failed: {e}")
            return ToolCallResult.failure(ToolFailureReason.CALL_FAILED)
        except _CLOSED_TRANSPORT_ERRORS as e:
            logger.error(f"Tool server transport closed during '{name}': {type(e).__name__}")
            self._mark_lost(session)
            return ToolCallResult.failure(ToolFailureReason.CALL_FAILED)
        except Exception as e:
            logger.error(f"Unexpected error calling tool '{name}': {e}", exc_info=True)
            return ToolCallResult.failure(ToolFailureReason.CALL_FAILED)

        decoded = decode_tool_result(result)
        if decoded.ok:
            logger.info(f"Tool '{name}' succeeded ({type(decoded.payload).__name__} payload)")
        else:
            logger.warning(f"Tool '{name}' result unusable: {decoded.reason.value}")
        return decoded

    async def disconnect(self) -> None:
        """Close the session and stop the server process. Safe to call repeatedly."""
        runner = self._runner
        if runner is None or runner.done():
            logger.info("Tool gateway has no active connection to close")
        else:
            logger.info("Disconnecting from tool server...")
            if self._state is ConnectionState.CONNECTING:
                runner.cancel()
            elif self._closing is not None:
                self._closing.set()
            try:
                await runner
            except asyncio.CancelledError:
                logger.info("Pending tool server connection cancelled")

        if self._background is not None and not self._background.done():
            self._background.cancel()
        self._background = None
        self._runner = None
        self._session = None
        self._closing = None
        self._connecting = None
        self._state = ConnectionState.DISCONNECTED
        logger.info("Tool gateway disconnected")

    def _mark_lost(self, session: Any) -> None:
        # Only the connection that owns the current session may reset state
        if self._session is not session:
            return
        self._state = ConnectionState.DISCONNECTED
        self._session = None
        if self._closing is not None:
            self._closing.set()

    def _on_transport_closed(self, closing: asyncio.Event) -> None:
        if self._closing is closing and self._session is not None:
            logger.warning("Tool server exited, gateway is now DISCONNECTED")
            self._mark_lost(self._session)
        closing.set()

    async def _run(self, ready: asyncio.Future, closing: asyncio.Event) -> None:
        """Own the session context for the lifetime of one connection."""
        try:
            async with self._session_factory(on_close=lambda: self._on_transport_closed(closing)) as session:
                self._session = session
                self._state = ConnectionState.CONNECTED
                logger.info("Connection to tool server established")
                ready.set_result(None)
                await self._keep_alive(session, closing)
        except Exception as e:
            if not ready.done():
                logger.error(f"Tool server connection failed: {e}")
                ready.set_exception(e)
            else:
                logger.warning(f"Tool server connection lost: {e}")
        finally:
            if not ready.done():
                ready.set_exception(ConnectionError("Tool server connection attempt aborted"))
            # A newer connection may already own the gateway state
            if self._closing is closing:
                self._session = None
                self._state = ConnectionState.DISCONNECTED
            logger.info("Tool server session closed")

    async def _keep_alive(self, session: Any, closing: asyncio.Event) -> None:
        """Wait for disconnect(); ping meanwhile so a dead server is noticed."""
        while not closing.is_set():
            try:
                await asyncio.wait_for(closing.wait(), timeout=self.ping_interval)
            except asyncio.TimeoutError:
                await session.send_ping()


def decode_tool_result(result: Any) -> ToolCallResult:
    """
    Decode a raw MCP CallToolResult into a ToolCallResult.

    Structured content is tried first. A lone {"result": ...} wrapper, which
    servers use for tools returning a plain value, is unwrapped and decoded
    like text content. When structured content is not a usable record the
    text blocks are decoded instead: JSON when possible, plain text when not.
    """
    content = getattr(result, "content", None)
    if content is None or not isinstance(content, list):
        return ToolCallResult.failure(ToolFailureReason.MALFORMED_RESPONSE)

    if getattr(result, "isError", False):
        return ToolCallResult.failure(ToolFailureReason.CALL_FAILED)

    structured = getattr(result, "structuredContent", None)
    if isinstance(structured, dict) and list(structured) == ["result"]:
        structured = structured["result"]
    if isinstance(structured, str):
        return _decode_text(structured)
    if isinstance(structured, (dict, list)):
        decoded = _decode_record(structured)
        if decoded.ok:
            return decoded

    texts = [block.text for block in content if getattr(block, "type", None) == "text"]
    if not texts:
        return ToolCallResult.failure(ToolFailureReason.MALFORMED_RESPONSE)
    return _decode_text("\n".join(texts))


def _decode_text(text: str) -> ToolCallResult:
    text = text.strip()
    try:
        data = json.loads(text)
    except ValueError:
        return ToolCallResult.success(text) if text else ToolCallResult.failure(ToolFailureReason.MALFORMED_RESPONSE)

    if isinstance(data, (dict, list)):
        return _decode_record(data)
    return ToolCallResult.failure(ToolFailureReason.MALFORMED_RESPONSE)


def _decode_record(data: Any) -> ToolCallResult:
    """Validate a record, unwrapping {"data": [...]} and list envelopes to their first entry."""
    if isinstance(data, dict) and isinstance(data.get("data"), list):
        data = data["data"]
    if isinstance(data, list):
        if not data:
            return ToolCallResult.failure(ToolFailureReason.MALFORMED_RESPONSE)
        data = data[0]
    try:
        return ToolCallResult.success(PlantRecord.model_validate(data))
    except ValidationError:
        return ToolCallResult.failure(ToolFailureReason.MALFORMED_RESPONSE)
