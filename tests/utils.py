from typing import Any

import anyio

from aiohttp_mcp_resumable import AiohttpMCP
from aiohttp_mcp_resumable.transport import EventChannel


class FakeClock:
    """Manually advanced clock, usable wherever a ``Clock`` is accepted."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingChannel(EventChannel):
    """Channel that keeps every written chunk, or fails once ``broken`` is set."""

    def __init__(self) -> None:
        self.sent: list[bytes] = []
        self.closed = False
        self.broken = False

    async def send(self, data: bytes) -> None:
        if self.broken:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True


def register_mcp_resources(mcp: AiohttpMCP) -> None:
    @mcp.tool()
    def echo_tool(message: str) -> str:
        """Echo a message as a tool"""
        return f"Tool echo: {message}"

    @mcp.tool()
    async def sleep_tool(seconds: float) -> str:
        """Sleep for a while"""
        await anyio.sleep(seconds)
        return f"Slept {seconds}s"

    @mcp.resource("config://my-config")
    def get_config() -> str:
        """Static configuration data"""
        return "App configuration here"

    @mcp.resource("echo://{message}")
    def echo_resource(message: str) -> str:
        """Echo a message as a resource"""
        return f"Resource echo: {message}"

    @mcp.prompt()
    def echo_prompt(message: str) -> str:
        """Create an echo prompt"""
        return f"Please process this message: {message}"


def jsonrpc_request(request_id: int | str, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def jsonrpc_notification(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        message["params"] = params
    return message


def initialize_request(request_id: int | str = 1) -> dict[str, Any]:
    return jsonrpc_request(
        request_id,
        "initialize",
        {
            "protocolVersion": "2025-03-26",
            "capabilities": {},
            "clientInfo": {"name": "test-client", "version": "1.0"},
        },
    )


def parse_sse_events(text: str) -> list[dict[str, str]]:
    """Split an event-stream body into ``{"id": ..., "data": ...}`` dicts, skipping comments."""
    events = []
    for block in text.split("\n\n"):
        event: dict[str, str] = {}
        data_lines = []
        for line in block.splitlines():
            if line.startswith(":") or not line:
                continue
            field, _, value = line.partition(":")
            value = value.removeprefix(" ")
            if field == "data":
                data_lines.append(value)
            else:
                event[field] = value
        if data_lines:
            event["data"] = "\n".join(data_lines)
            events.append(event)
    return events


class StalledChannel(EventChannel):
    """Channel of a peer that holds the connection open but never reads, so writes block."""

    def __init__(self) -> None:
        self.closed = False

    async def send(self, data: bytes) -> None:
        await anyio.sleep_forever()

    async def close(self) -> None:
        self.closed = True
