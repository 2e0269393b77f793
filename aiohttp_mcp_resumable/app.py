import logging
from collections.abc import AsyncIterator

from aiohttp import web

from .config import TransportConfig
from .core import AiohttpMCP
from .streamable_http import StreamableHTTPDispatcher

__all__ = ["AppBuilder", "build_mcp_app", "setup_mcp_subapp"]

logger = logging.getLogger(__name__)


class AppBuilder:
    """Aiohttp application builder for a resumable MCP server."""

    __slots__ = ("_dispatcher", "_mcp", "_path")

    def __init__(
        self,
        mcp: AiohttpMCP,
        path: str = "/mcp",
        config: TransportConfig | None = None,
        dispatcher: StreamableHTTPDispatcher | None = None,
    ) -> None:
        self._mcp = mcp
        self._path = path
        self._dispatcher = (
            dispatcher if dispatcher is not None else StreamableHTTPDispatcher.from_config(mcp.registry, config)
        )

    @property
    def path(self) -> str:
        """Return the path for the MCP server."""
        return self._path

    @property
    def dispatcher(self) -> StreamableHTTPDispatcher:
        return self._dispatcher

    def build(self, is_subapp: bool = False) -> web.Application:
        """Build the MCP server application."""
        app = web.Application()

        if is_subapp:
            # Use empty path due to building the app to use as a subapp with a prefix
            self.setup_routes(app, path="")
        else:
            # Use the provided path for the main app
            self.setup_routes(app, path=self._path)
        self.setup_lifecycle(app)
        return app

    def setup_routes(self, app: web.Application, path: str) -> None:
        """Route every HTTP method to the dispatcher, which answers unsupported ones with 405."""
        app.router.add_route("*", path, self.handle)

    def setup_lifecycle(self, app: web.Application) -> None:
        dispatcher = self._dispatcher

        async def run_dispatcher(_app: web.Application) -> AsyncIterator[None]:
            async with dispatcher.run():
                yield

        async def close_streams(_app: web.Application) -> None:
            # Listening handlers only return once their stream is closed
            await dispatcher.close_connections()

        app.cleanup_ctx.append(run_dispatcher)
        app.on_shutdown.append(close_streams)

    async def handle(self, request: web.Request) -> web.StreamResponse:
        return await self._dispatcher.handle_request(request)


def build_mcp_app(
    mcp_registry: AiohttpMCP,
    path: str = "/mcp",
    is_subapp: bool = False,
    config: TransportConfig | None = None,
) -> web.Application:
    """Build the MCP server application."""
    app = AppBuilder(mcp_registry, path, config).build(is_subapp=is_subapp)
    if not is_subapp:
        mcp_registry.setup_app(app)
    return app


def setup_mcp_subapp(
    app: web.Application,
    mcp_registry: AiohttpMCP,
    prefix: str = "/mcp",
    config: TransportConfig | None = None,
) -> None:
    """Set up the MCP server sub-application with the given prefix."""
    mcp_app = build_mcp_app(mcp_registry, prefix, is_subapp=True, config=config)
    app.add_subapp(prefix, mcp_app)

    # Store the main app in the MCP registry for access from tools
    mcp_registry.setup_app(app)
    logger.info("MCP server mounted at %s", prefix)
