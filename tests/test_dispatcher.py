"""Tests for the JSON-RPC protocol dispatcher."""

import asyncio
import json

import pytest

from flowdoc.dispatcher import SERVER_NOT_INITIALIZED, ProtocolDispatcher, State
from flowdoc.errors import UpstreamError
from flowdoc.tools import ToolArguments, ToolRegistry, registry


class SleepArgs(ToolArguments):
    seconds: float = 0.0


def make_registry(started: asyncio.Event | None = None) -> ToolRegistry:
    local = ToolRegistry()

    @local.tool()
    async def boom(ctx, args):
        """Always raises."""
        raise RuntimeError("kaboom")

    @local.tool()
    async def flaky_upstream(ctx, args):
        """Fails like an overloaded platform."""
        raise UpstreamError("Platform API error (503)", status=503)

    @local.tool()
    async def echo(ctx, args):
        """Returns a fixed string."""
        return "ok"

    @local.tool(SleepArgs)
    async def sleep(ctx, args):
        """Sleeps, then answers."""
        if started is not None:
            started.set()
        await asyncio.sleep(args.seconds)
        return f"slept {args.seconds}"

    return local


def request(request_id, method, params=None) -> dict:
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def frame(message: dict) -> bytes:
    return (json.dumps(message) + "\n").encode()


INITIALIZE = request(1, "initialize", {
    "protocolVersion": "2024-11-05",
    "capabilities": {},
    "clientInfo": {"name": "test-client", "version": "0"},
})


class BufferWriter:
    def __init__(self):
        self.data = bytearray()

    def write(self, data: bytes) -> None:
        self.data.extend(data)

    async def drain(self) -> None:
        pass

    def messages(self) -> list[dict]:
        return [json.loads(line) for line in self.data.decode().splitlines()]


@pytest.fixture
def dispatcher(tool_context):
    return ProtocolDispatcher(make_registry(), tool_context, tool_timeout=0.5)


async def initialized(dispatcher):
    response = await dispatcher.handle_message(INITIALIZE)
    assert "result" in response
    await dispatcher.handle_message({"jsonrpc": "2.0", "method": "notifications/initialized"})
    return dispatcher


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_requests_before_initialize_rejected(self, dispatcher):
        response = await dispatcher.handle_message(request(5, "tools/list"))
        assert response["id"] == 5
        assert response["error"]["code"] == SERVER_NOT_INITIALIZED
        assert response["error"]["message"] == "Server not initialized"
        assert dispatcher.state == State.UNINITIALIZED

        # The connection stays usable
        response = await dispatcher.handle_message(INITIALIZE)
        assert response["result"]["serverInfo"]["name"] == "flowdoc"
        assert dispatcher.state == State.INITIALIZED

    @pytest.mark.asyncio
    async def test_initialize_result(self, dispatcher):
        response = await dispatcher.handle_message(INITIALIZE)
        result = response["result"]
        assert result["protocolVersion"] == "2024-11-05"
        assert "tools" in result["capabilities"]
        assert result["instructions"]
        assert dispatcher.client_info == {"name": "test-client", "version": "0"}

    @pytest.mark.asyncio
    async def test_unsupported_protocol_version_falls_back(self, dispatcher):
        from mcp.types import LATEST_PROTOCOL_VERSION

        message = request(1, "initialize", {"protocolVersion": "1999-01-01", "capabilities": {}})
        response = await dispatcher.handle_message(message)
        assert response["result"]["protocolVersion"] == LATEST_PROTOCOL_VERSION

    @pytest.mark.asyncio
    async def test_initialized_notification_starts_serving(self, dispatcher):
        await initialized(dispatcher)
        assert dispatcher.state == State.SERVING

    @pytest.mark.asyncio
    async def test_request_after_initialize_starts_serving(self, dispatcher):
        await dispatcher.handle_message(INITIALIZE)
        response = await dispatcher.handle_message(request(2, "ping"))
        assert response["result"] == {}
        assert dispatcher.state == State.SERVING

    @pytest.mark.asyncio
    async def test_second_initialize_rejected(self, dispatcher):
        await initialized(dispatcher)
        response = await dispatcher.handle_message(INITIALIZE)
        assert response["error"]["code"] == -32600


class TestFraming:
    @pytest.mark.asyncio
    async def test_parse_error(self, dispatcher):
        response = await dispatcher.handle_line(b'{"jsonrpc": "2.0", "id": 1, "method": ')
        assert response["id"] is None
        assert response["error"]["code"] == -32700

    @pytest.mark.asyncio
    async def test_non_object(self, dispatcher):
        response = await dispatcher.handle_line("[1, 2]")
        assert response["error"]["code"] == -32600
        assert response["id"] is None

    @pytest.mark.asyncio
    async def test_missing_method(self, dispatcher):
        response = await dispatcher.handle_message({"jsonrpc": "2.0", "id": 3})
        assert response["id"] == 3
        assert response["error"]["code"] == -32600

    @pytest.mark.asyncio
    async def test_wrong_version(self, dispatcher):
        response = await dispatcher.handle_message({"jsonrpc": "1.0", "id": 3, "method": "ping"})
        assert response["error"]["code"] == -32600

    @pytest.mark.asyncio
    async def test_notifications_get_no_response(self, dispatcher):
        assert await dispatcher.handle_message({"jsonrpc": "2.0", "method": "notifications/cancelled"}) is None

    @pytest.mark.asyncio
    async def test_unknown_method(self, dispatcher):
        await initialized(dispatcher)
        response = await dispatcher.handle_message(request(9, "resources/list"))
        assert response["error"]["code"] == -32601

    @pytest.mark.asyncio
    async def test_bad_tool_params(self, dispatcher):
        await initialized(dispatcher)
        response = await dispatcher.handle_message(request(4, "tools/call", {"arguments": {}}))
        assert response["error"]["code"] == -32602
        response = await dispatcher.handle_message(request(5, "tools/call", {"name": "echo", "arguments": [1]}))
        assert response["error"]["code"] == -32602


class TestTools:
    @pytest.mark.asyncio
    async def test_tools_list_exposes_registry(self, tool_context):
        dispatcher = await initialized(ProtocolDispatcher(registry, tool_context))
        response = await dispatcher.handle_message(request(2, "tools/list"))
        tools = {tool["name"]: tool for tool in response["result"]["tools"]}
        assert "validate_workflow" in tools
        assert tools["validate_workflow"]["inputSchema"]["required"] == ["workflow"]
        assert tools["find_nodes"]["description"].startswith("Find node types")

    @pytest.mark.asyncio
    async def test_call_returns_text_content(self, dispatcher):
        await initialized(dispatcher)
        response = await dispatcher.handle_message(request(2, "tools/call", {"name": "echo"}))
        assert response["result"] == {"content": [{"type": "text", "text": "ok"}], "isError": False}

    @pytest.mark.asyncio
    async def test_throwing_handler_is_isolated(self, dispatcher):
        await initialized(dispatcher)
        failed = await dispatcher.handle_message(request(2, "tools/call", {"name": "boom", "arguments": {}}))
        assert failed["result"]["isError"] is True
        assert "kaboom" in failed["result"]["content"][0]["text"]

        succeeded = await dispatcher.handle_message(request(3, "tools/call", {"name": "echo", "arguments": {}}))
        assert succeeded["id"] == 3
        assert succeeded["result"]["isError"] is False

    @pytest.mark.asyncio
    async def test_upstream_error_category(self, dispatcher):
        await initialized(dispatcher)
        response = await dispatcher.handle_message(request(2, "tools/call", {"name": "flaky_upstream"}))
        text = response["result"]["content"][0]["text"]
        assert response["result"]["isError"] is True
        assert "Error category: retryable" in text
        assert "HTTP 503" in text

    @pytest.mark.asyncio
    async def test_unknown_tool_is_error_result(self, dispatcher):
        await initialized(dispatcher)
        response = await dispatcher.handle_message(request(2, "tools/call", {"name": "missing"}))
        assert response["result"]["isError"] is True
        assert "Unknown tool 'missing'" in response["result"]["content"][0]["text"]

    @pytest.mark.asyncio
    async def test_invalid_arguments_are_error_result(self, dispatcher):
        await initialized(dispatcher)
        response = await dispatcher.handle_message(
            request(2, "tools/call", {"name": "sleep", "arguments": {"seconds": "forever"}})
        )
        assert response["result"]["isError"] is True
        assert "Invalid arguments for 'sleep'" in response["result"]["content"][0]["text"]

    @pytest.mark.asyncio
    async def test_handler_timeout(self, dispatcher):
        await initialized(dispatcher)
        response = await dispatcher.handle_message(
            request(2, "tools/call", {"name": "sleep", "arguments": {"seconds": 5}})
        )
        assert response["result"]["isError"] is True
        assert "timed out" in response["result"]["content"][0]["text"]

        after = await dispatcher.handle_message(request(3, "tools/call", {"name": "echo"}))
        assert after["result"]["isError"] is False

    @pytest.mark.asyncio
    async def test_platform_tool_without_configuration(self, tool_context):
        dispatcher = await initialized(ProtocolDispatcher(registry, tool_context))
        response = await dispatcher.handle_message(request(2, "tools/call", {"name": "list_projects"}))
        assert response["result"]["isError"] is True
        assert "N8N_API_URL" in response["result"]["content"][0]["text"]


class TestServe:
    @pytest.mark.asyncio
    async def test_serves_until_eof(self, dispatcher):
        reader = asyncio.StreamReader()
        reader.feed_data(
            frame(INITIALIZE)
            + frame({"jsonrpc": "2.0", "method": "notifications/initialized"})
            + b"\n"
            + b"not json\n"
            + frame(request(2, "tools/call", {"name": "boom"}))
            + frame(request(3, "tools/call", {"name": "echo"}))
        )
        reader.feed_eof()
        writer = BufferWriter()

        await asyncio.wait_for(dispatcher.serve(reader, writer), timeout=2)

        messages = writer.messages()
        assert [m["id"] for m in messages] == [1, None, 2, 3]
        assert messages[1]["error"]["code"] == -32700
        assert messages[2]["result"]["isError"] is True
        assert messages[3]["result"]["content"][0]["text"] == "ok"
        assert dispatcher.state == State.CLOSED

    @pytest.mark.asyncio
    async def test_shutdown_drains_in_flight_handler(self, tool_context):
        started = asyncio.Event()
        dispatcher = ProtocolDispatcher(make_registry(started), tool_context, tool_timeout=5)
        reader = asyncio.StreamReader()
        writer = BufferWriter()
        reader.feed_data(
            frame(INITIALIZE)
            + frame(request(2, "tools/call", {"name": "sleep", "arguments": {"seconds": 0.2}}))
        )

        task = asyncio.create_task(dispatcher.serve(reader, writer))
        await asyncio.wait_for(started.wait(), timeout=2)
        dispatcher.request_shutdown()
        assert dispatcher.state == State.CLOSING
        reader.feed_data(frame(request(3, "tools/call", {"name": "echo"})))

        await asyncio.wait_for(task, timeout=2)

        messages = writer.messages()
        assert [m["id"] for m in messages] == [1, 2]
        assert messages[1]["result"]["content"][0]["text"] == "slept 0.2"
        assert dispatcher.state == State.CLOSED

    @pytest.mark.asyncio
    async def test_shutdown_while_idle(self, dispatcher):
        reader = asyncio.StreamReader()
        task = asyncio.create_task(dispatcher.serve(reader, BufferWriter()))
        await asyncio.sleep(0.01)
        dispatcher.request_shutdown()
        await asyncio.wait_for(task, timeout=2)
        assert dispatcher.state == State.CLOSED
