"""JSON-RPC 2.0 dispatcher for the MCP stdio transport.

Messages are newline-delimited JSON objects on a single stream. Requests are
handled one at a time in arrival order. Connection lifecycle::

    UNINITIALIZED --initialize--> INITIALIZED --initialized--> SERVING
    SERVING --signal or EOF--> CLOSING --in-flight handler drained--> CLOSED

Envelope models come from ``mcp.types`` so responses match what MCP clients
expect. Handler failures of any kind become ``isError`` tool results; they
never escape this module.
"""

import asyncio
import enum
import json
import logging
import sys
from typing import Any

from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    CallToolResult,
    ErrorData,
    Implementation,
    InitializeResult,
    ListToolsResult,
    ServerCapabilities,
    TextContent,
    Tool,
    ToolsCapability,
)

from . import __version__
from .errors import FlowdocError, StoreError, TransportError, UpstreamError
from .tools import ToolContext, ToolRegistry, ToolResult

logger = logging.getLogger("flowdoc.dispatcher")

SERVER_NOT_INITIALIZED = -32002
STREAM_LIMIT = 16 * 1024 * 1024

INSTRUCTIONS = (
    "FlowDoc documents workflow-automation node types and validates workflow graphs. "
    "Use find_nodes and get_node_info before building a workflow, and validate_workflow "
    "before creating or updating it on the platform."
)


class State(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    SERVING = "serving"
    CLOSING = "closing"
    CLOSED = "closed"


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def error_response(request_id: Any, code: int, message: str, data: Any = None) -> dict:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": _dump(ErrorData(code=code, message=message, data=data)),
    }


def describe_error(e: BaseException) -> str:
    """Human-readable text for a failed tool call."""
    if isinstance(e, UpstreamError):
        status = f" (HTTP {e.status})" if e.status is not None else ""
        advice = "retrying may succeed" if e.retryable else "retrying will not help"
        return f"{e}{status}\nError category: {e.category}; {advice}."
    if isinstance(e, StoreError):
        return f"{e}\nThe existing catalog is unchanged; retrying sync_catalog is safe."
    if isinstance(e, FlowdocError):
        return str(e)
    return f"{type(e).__name__}: {e}"


class ProtocolDispatcher:
    """Serves one MCP client over a line-oriented stream."""

    def __init__(
        self,
        registry: ToolRegistry,
        context: ToolContext,
        tool_timeout: float = 60.0,
        server_name: str = "flowdoc",
    ):
        self.registry = registry
        self.context = context
        self.tool_timeout = tool_timeout
        self.server_name = server_name
        self.state = State.UNINITIALIZED
        self.client_info: dict | None = None
        self._shutdown = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def request_shutdown(self) -> None:
        """Stop reading new messages. The handler in flight, if any, still completes."""
        if self.state in (State.CLOSING, State.CLOSED):
            return
        logger.info(f"Shutdown requested in state {self.state.value}")
        self.state = State.CLOSING
        self._shutdown.set()

    async def serve(self, reader: asyncio.StreamReader, writer) -> None:
        """Read, dispatch and answer messages until shutdown or EOF."""
        logger.info("Dispatcher serving")
        try:
            while not self._shutdown.is_set():
                try:
                    line = await self._next_line(reader)
                except ValueError as e:
                    logger.warning(f"Dropped oversized message: {e}")
                    await self._write(writer, error_response(None, PARSE_ERROR, "Message too large"))
                    continue
                if line is None:
                    break
                if not line.strip():
                    continue
                response = await self.handle_line(line)
                if response is not None:
                    await self._write(writer, response)
        finally:
            self.state = State.CLOSING
            self._shutdown.set()
            self.state = State.CLOSED
            logger.info("Dispatcher closed")

    async def _next_line(self, reader: asyncio.StreamReader) -> bytes | None:
        """Next line from the stream, or None on EOF or shutdown."""
        read = asyncio.ensure_future(reader.readline())
        stop = asyncio.ensure_future(self._shutdown.wait())
        try:
            done, _ = await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
        if read not in done:
            read.cancel()
            return None
        line = read.result()
        return line or None

    async def _write(self, writer, payload: dict) -> None:
        data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False) + "\n"
        writer.write(data.encode("utf-8"))
        await writer.drain()

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    async def handle_line(self, line: str | bytes) -> dict | None:
        """Decode and handle one framed message. Returns the response, if any."""
        try:
            message = json.loads(line)
        except (ValueError, UnicodeDecodeError):
            logger.warning("Received malformed JSON")
            return error_response(None, PARSE_ERROR, "Parse error")
        return await self.handle_message(message)

    async def handle_message(self, message: Any) -> dict | None:
        if not isinstance(message, dict):
            return error_response(None, INVALID_REQUEST, "Invalid request: expected a JSON object")

        request_id = message.get("id")
        if "method" not in message and ("result" in message or "error" in message):
            # A response to a server-initiated request; this server sends none
            return None
        method = message.get("method")
        if message.get("jsonrpc") != "2.0" or not isinstance(method, str):
            return error_response(
                request_id if _valid_id(request_id) else None,
                INVALID_REQUEST,
                "Invalid request: 'jsonrpc' must be \"2.0\" and 'method' a string",
            )

        params = message.get("params")
        if params is None:
            params = {}

        if "id" not in message:
            self._handle_notification(method)
            return None
        if not _valid_id(request_id):
            return error_response(None, INVALID_REQUEST, "Invalid request: 'id' must be a string or integer")
        if not isinstance(params, dict):
            return error_response(request_id, INVALID_PARAMS, "Invalid params: expected an object")

        try:
            result = await self._dispatch(method, params)
        except TransportError as e:
            return error_response(request_id, e.code, e.message, e.data)
        except Exception:
            logger.exception(f"Unhandled error while handling '{method}'")
            return error_response(request_id, INTERNAL_ERROR, "Internal error")
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    def _handle_notification(self, method: str) -> None:
        if method == "notifications/initialized":
            if self.state == State.INITIALIZED:
                self.state = State.SERVING
                logger.info("Client initialized; serving")
        else:
            logger.debug(f"Ignoring notification {method}")

    async def _dispatch(self, method: str, params: dict) -> dict:
        if method == "initialize":
            return self._initialize(params)
        if self.state == State.UNINITIALIZED:
            raise TransportError(SERVER_NOT_INITIALIZED, "Server not initialized")
        if self.state == State.INITIALIZED:
            # Some clients send requests before the initialized notification
            self.state = State.SERVING

        if method == "ping":
            return {}
        if method == "tools/list":
            return self._list_tools()
        if method == "tools/call":
            return await self._call_tool(params)
        raise TransportError(METHOD_NOT_FOUND, f"Method not found: {method}")

    def _initialize(self, params: dict) -> dict:
        if self.state != State.UNINITIALIZED:
            raise TransportError(INVALID_REQUEST, "Server already initialized")
        requested = params.get("protocolVersion")
        version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else LATEST_PROTOCOL_VERSION
        self.client_info = params.get("clientInfo")
        self.state = State.INITIALIZED
        logger.info(f"Initialized with protocol {version} for client {self.client_info}")
        return _dump(InitializeResult(
            protocolVersion=version,
            capabilities=ServerCapabilities(tools=ToolsCapability(listChanged=False)),
            serverInfo=Implementation(name=self.server_name, version=__version__),
            instructions=INSTRUCTIONS,
        ))

    def _list_tools(self) -> dict:
        tools = [
            Tool(name=spec.name, description=spec.description, inputSchema=spec.input_schema())
            for spec in self.registry.list()
        ]
        return _dump(ListToolsResult(tools=tools))

    async def _call_tool(self, params: dict) -> dict:
        name = params.get("name")
        arguments = params.get("arguments")
        if not isinstance(name, str) or not name:
            raise TransportError(INVALID_PARAMS, "tools/call requires a tool 'name'")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise TransportError(INVALID_PARAMS, "tools/call 'arguments' must be an object")

        try:
            result = await asyncio.wait_for(
                self.registry.call(name, arguments, self.context),
                timeout=self.tool_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Tool '{name}' timed out after {self.tool_timeout}s")
            result = ToolResult(f"Tool '{name}' timed out after {self.tool_timeout:g}s", is_error=True)
        except FlowdocError as e:
            logger.warning(f"Tool '{name}' failed: {e}")
            result = ToolResult(describe_error(e), is_error=True)
        except Exception as e:
            logger.exception(f"Tool '{name}' raised")
            result = ToolResult(f"Tool '{name}' failed: {describe_error(e)}", is_error=True)

        return _dump(CallToolResult(
            content=[TextContent(type="text", text=result.text)],
            isError=result.is_error,
        ))


def _valid_id(value: Any) -> bool:
    return isinstance(value, (str, int)) and not isinstance(value, bool)


async def open_stdio() -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Wrap the process's stdin/stdout as asyncio streams."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=STREAM_LIMIT)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, sys.stdout)
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)
    return reader, writer
