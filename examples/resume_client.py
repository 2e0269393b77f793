#!/usr/bin/env python3
"""
Resumable Streamable HTTP Client Example

Shows how a client survives a dropped stream:

1. Initialize a session and remember the session ID
2. Start a long call and drop its stream after the first event
3. Reconnect with ``GET`` and ``Last-Event-ID`` to receive what was missed
4. Cancel an in-flight request
5. Terminate the session

Run this after starting examples/server.py.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000/mcp"
PROTOCOL_VERSION = "2025-03-26"


class ResumableClient:
    """Minimal client that tracks the session ID and the last event ID it saw."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.client = httpx.AsyncClient(timeout=None)
        self.session_id: str | None = None
        self.last_event_id: str | None = None

    async def __aenter__(self) -> "ResumableClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self.session_id:
            await self.terminate()
        await self.client.aclose()

    def _headers(self, accept: str = "application/json, text/event-stream") -> dict[str, str]:
        headers = {"Accept": accept, "Content-Type": "application/json", "mcp-protocol-version": PROTOCOL_VERSION}
        if self.session_id:
            headers["mcp-session-id"] = self.session_id
        if self.last_event_id:
            headers["last-event-id"] = self.last_event_id
        return headers

    async def _events(self, response: httpx.Response) -> AsyncIterator[Any]:
        """Yield event payloads, remembering the ID of each one."""
        event_id = None
        async for line in response.aiter_lines():
            if line.startswith("id: "):
                event_id = line[4:]
            elif line.startswith("data: "):
                if event_id is not None:
                    self.last_event_id = event_id
                yield json.loads(line[6:])
                event_id = None

    async def initialize(self) -> dict[str, Any]:
        request = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "initialize",
            "params": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": "resume-client", "version": "1.0.0"},
            },
        }
        async with self.client.stream("POST", self.url, json=request, headers=self._headers()) as response:
            response.raise_for_status()
            self.session_id = response.headers["mcp-session-id"]
            async for message in self._events(response):
                logger.info("Initialized session %s: %s", self.session_id, message["result"]["serverInfo"])
                return message
        raise RuntimeError("No initialize result received")

    async def call_and_drop(self, request: dict[str, Any]) -> None:
        """Send a request and hang up after the first event."""
        async with self.client.stream("POST", self.url, json=request, headers=self._headers()) as response:
            async for message in self._events(response):
                logger.info("Got %s, dropping the connection", message)
                break

    async def resume(self, count: int) -> list[Any]:
        """Reconnect and collect ``count`` messages missed since the last event."""
        received: list[Any] = []
        headers = self._headers(accept="text/event-stream")
        logger.info("Resuming after event %s", self.last_event_id)
        async with self.client.stream("GET", self.url, headers=headers) as response:
            response.raise_for_status()
            async for payload in self._events(response):
                received.extend(payload if isinstance(payload, list) else [payload])
                if len(received) >= count:
                    break
        return received

    async def notify(self, method: str, params: dict[str, Any]) -> None:
        notification = {"jsonrpc": "2.0", "method": method, "params": params}
        response = await self.client.post(self.url, json=notification, headers=self._headers())
        response.raise_for_status()

    async def call(self, request: dict[str, Any]) -> list[Any]:
        received: list[Any] = []
        async with self.client.stream("POST", self.url, json=request, headers=self._headers()) as response:
            async for payload in self._events(response):
                received.extend(payload if isinstance(payload, list) else [payload])
        return received

    async def terminate(self) -> None:
        response = await self.client.delete(self.url, headers={"mcp-session-id": self.session_id or ""})
        logger.info("Terminated session %s: HTTP %s", self.session_id, response.status_code)
        self.session_id = None


async def demo_resume(client: ResumableClient) -> None:
    logger.info("=== Resume Demo ===")
    await client.call_and_drop({"jsonrpc": "2.0", "id": 2, "method": "demo/countdown", "params": {"from": 3}})

    # Two more progress notifications and the result are still to come
    for message in await client.resume(count=3):
        logger.info("Replayed or live: %s", message)


async def demo_cancel(client: ResumableClient) -> None:
    logger.info("=== Cancel Demo ===")
    request = {
        "jsonrpc": "2.0",
        "id": 3,
        "method": "tools/call",
        "params": {"name": "slow_echo", "arguments": {"message": "too late", "seconds": 30}},
    }

    async def cancel_soon() -> None:
        await asyncio.sleep(1)
        await client.notify("notifications/cancelled", {"requestId": 3, "reason": "changed my mind"})

    messages, _ = await asyncio.gather(client.call(request), cancel_soon())
    logger.info("Cancelled call answered with: %s", messages)


async def main() -> None:
    async with ResumableClient(BASE_URL) as client:
        await client.initialize()
        await demo_resume(client)
        await demo_cancel(client)


if __name__ == "__main__":
    asyncio.run(main())
