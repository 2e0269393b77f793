import datetime
import logging
from typing import Any
from zoneinfo import ZoneInfo

import anyio
from aiohttp import web

from aiohttp_mcp_resumable import AiohttpMCP, RequestContext, TransportConfig, build_mcp_app

logging.basicConfig(level=logging.INFO)

mcp = AiohttpMCP(name="resumable-demo")


@mcp.tool()
def get_time(timezone: str) -> str:
    """Get the current time in the specified timezone."""
    tz = ZoneInfo(timezone)
    return datetime.datetime.now(tz).isoformat()


@mcp.tool()
async def slow_echo(message: str, seconds: float = 5.0) -> str:
    """Echo a message after a delay. Handy for trying out cancellation and reconnects."""
    await anyio.sleep(seconds)
    return message


@mcp.registry.method("demo/countdown")
async def countdown(params: dict[str, Any], ctx: RequestContext) -> dict[str, Any]:
    """Send a progress notification per second, then finish."""
    total = int(params.get("from", 5))
    for remaining in range(total, 0, -1):
        ctx.check_cancelled()
        await ctx.send_notification(
            "notifications/progress",
            {"progressToken": ctx.request_id, "progress": total - remaining, "total": total},
        )
        await anyio.sleep(1)
    return {"done": True}


# MCP_SESSION_TIMEOUT, MCP_REDIS_URL, MCP_JSON_RESPONSE, ...
config = TransportConfig.from_env()
app = build_mcp_app(mcp, path="/mcp", config=config)

if __name__ == "__main__":
    web.run_app(app, port=8000)
