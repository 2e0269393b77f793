import base64
import logging
from collections.abc import Callable, Iterable, Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any, Literal

from aiohttp import web
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ResourceError, ToolError
from mcp.server.lowlevel import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.lowlevel.server import LifespanResultT
from mcp.shared.exceptions import McpError
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    INVALID_PARAMS,
    LATEST_PROTOCOL_VERSION,
    AnyFunction,
    BlobResourceContents,
    CallToolResult,
    ContentBlock,
    EmptyResult,
    ErrorData,
    GetPromptResult,
    Implementation,
    InitializeResult,
    ListPromptsResult,
    ListResourcesResult,
    ListResourceTemplatesResult,
    ListToolsResult,
    Prompt,
    ReadResourceResult,
    Resource,
    ResourceTemplate,
    TextContent,
    TextResourceContents,
    Tool,
    ToolAnnotations,
)

from .registry import MethodRegistry, RequestContext

__all__ = ["AiohttpMCP"]

logger = logging.getLogger(__name__)

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _require(params: dict[str, Any], name: str) -> Any:
    try:
        return params[name]
    except KeyError:
        raise McpError(ErrorData(code=INVALID_PARAMS, message=f"Missing required parameter: {name}")) from None


class AiohttpMCP:
    """
    FastMCP tool/resource/prompt server exposed as a method registry.

    Register tools, resources and prompts with the decorators, then hand the
    instance to ``build_mcp_app``. The standard MCP methods are served from
    ``registry``, which also accepts custom methods through ``registry.method``.
    """

    def __init__(
        self,
        name: str | None = None,
        instructions: str | None = None,
        debug: bool = False,
        log_level: LogLevel = "INFO",
        warn_on_duplicate_resources: bool = True,
        warn_on_duplicate_tools: bool = True,
        warn_on_duplicate_prompts: bool = True,
        lifespan: Callable[[FastMCP], AbstractAsyncContextManager[LifespanResultT]] | None = None,
    ) -> None:
        self._fastmcp = FastMCP(
            name=name,
            instructions=instructions,
            debug=debug,
            log_level=log_level,
            warn_on_duplicate_resources=warn_on_duplicate_resources,
            warn_on_duplicate_tools=warn_on_duplicate_tools,
            warn_on_duplicate_prompts=warn_on_duplicate_prompts,
            lifespan=lifespan,
        )
        self._app: web.Application | None = None
        self._registry = MethodRegistry()
        self._register_methods()

    @property
    def server(self) -> Server[Any]:
        return self._fastmcp._mcp_server

    @property
    def registry(self) -> MethodRegistry:
        return self._registry

    @property
    def app(self) -> web.Application:
        if self._app is None:
            raise RuntimeError("Application has not been built yet. Call `setup_app()` first.")
        return self._app

    def setup_app(self, app: web.Application) -> None:
        """Remember the main application so tools can reach it through ``mcp.app``."""
        if self._app is not None:
            raise RuntimeError("Application has already been set. Cannot set it again.")
        self._app = app

    def tool(
        self,
        name: str | None = None,
        title: str | None = None,
        description: str | None = None,
        annotations: ToolAnnotations | None = None,
    ) -> Callable[[AnyFunction], AnyFunction]:
        return self._fastmcp.tool(name, title=title, description=description, annotations=annotations)

    def add_tool(
        self,
        fn: AnyFunction,
        name: str | None = None,
        title: str | None = None,
        description: str | None = None,
        annotations: ToolAnnotations | None = None,
    ) -> None:
        """Register a tool without the decorator."""
        self._fastmcp.add_tool(fn, name=name, title=title, description=description, annotations=annotations)

    def remove_tool(self, name: str) -> None:
        self._fastmcp.remove_tool(name)

    def resource(
        self,
        uri: str,
        *,
        name: str | None = None,
        title: str | None = None,
        description: str | None = None,
        mime_type: str | None = None,
    ) -> Callable[[AnyFunction], AnyFunction]:
        return self._fastmcp.resource(uri, name=name, title=title, description=description, mime_type=mime_type)

    def prompt(
        self, name: str | None = None, title: str | None = None, description: str | None = None
    ) -> Callable[[AnyFunction], AnyFunction]:
        return self._fastmcp.prompt(name, title=title, description=description)

    async def list_tools(self) -> list[Tool]:
        """List all available tools."""
        return await self._fastmcp.list_tools()

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        """Call a tool by name with arguments. Raises ``ToolError`` for unknown or failing tools."""
        return await self._fastmcp.call_tool(name, arguments)

    async def list_resources(self) -> list[Resource]:
        return await self._fastmcp.list_resources()

    async def list_resource_templates(self) -> list[ResourceTemplate]:
        return await self._fastmcp.list_resource_templates()

    async def read_resource(self, uri: str) -> Iterable[ReadResourceContents]:
        return await self._fastmcp.read_resource(uri)

    async def list_prompts(self) -> list[Prompt]:
        return await self._fastmcp.list_prompts()

    async def get_prompt(self, name: str, arguments: dict[str, Any] | None = None) -> GetPromptResult:
        return await self._fastmcp.get_prompt(name, arguments)

    @staticmethod
    def _to_tool_result(output: Any) -> CallToolResult:
        # FastMCP returns content blocks, structured output, or both depending on the tool
        if isinstance(output, tuple):
            content, structured = output
            return CallToolResult(content=list(content), structuredContent=structured)
        if isinstance(output, dict):
            return CallToolResult(content=[], structuredContent=output)
        content: Sequence[ContentBlock] = output
        return CallToolResult(content=list(content))

    def _register_methods(self) -> None:
        registry = self._registry

        @registry.method("initialize")
        async def initialize(params: dict[str, Any], ctx: RequestContext) -> InitializeResult:
            options = self.server.create_initialization_options()
            requested = params.get("protocolVersion")
            version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else LATEST_PROTOCOL_VERSION
            logger.info("Initializing session %s with protocol version %s", ctx.session_id, version)
            return InitializeResult(
                protocolVersion=version,
                capabilities=options.capabilities,
                serverInfo=Implementation(name=options.server_name, version=options.server_version),
                instructions=options.instructions,
            )

        @registry.notification("notifications/initialized")
        async def initialized(params: dict[str, Any], ctx: RequestContext) -> None:
            logger.debug("Client of session %s finished initialization", ctx.session_id)

        @registry.method("ping")
        async def ping(params: dict[str, Any], ctx: RequestContext) -> EmptyResult:
            return EmptyResult()

        @registry.method("tools/list")
        async def list_tools(params: dict[str, Any], ctx: RequestContext) -> ListToolsResult:
            return ListToolsResult(tools=await self.list_tools())

        @registry.method("tools/call")
        async def call_tool(params: dict[str, Any], ctx: RequestContext) -> CallToolResult:
            name = _require(params, "name")
            try:
                output = await self.call_tool(name, params.get("arguments") or {})
            except ToolError as e:
                logger.info("Tool %s failed: %s", name, e)
                return CallToolResult(content=[TextContent(type="text", text=str(e))], isError=True)
            return self._to_tool_result(output)

        @registry.method("resources/list")
        async def list_resources(params: dict[str, Any], ctx: RequestContext) -> ListResourcesResult:
            return ListResourcesResult(resources=await self.list_resources())

        @registry.method("resources/templates/list")
        async def list_resource_templates(params: dict[str, Any], ctx: RequestContext) -> ListResourceTemplatesResult:
            return ListResourceTemplatesResult(resourceTemplates=await self.list_resource_templates())

        @registry.method("resources/read")
        async def read_resource(params: dict[str, Any], ctx: RequestContext) -> ReadResourceResult:
            uri = _require(params, "uri")
            contents: list[TextResourceContents | BlobResourceContents] = []
            try:
                items = await self.read_resource(uri)
            except (ResourceError, ValueError) as e:
                raise McpError(ErrorData(code=INVALID_PARAMS, message=str(e))) from e
            for item in items:
                if isinstance(item.content, bytes):
                    blob = base64.b64encode(item.content).decode()
                    contents.append(BlobResourceContents(uri=uri, blob=blob, mimeType=item.mime_type))
                else:
                    contents.append(TextResourceContents(uri=uri, text=item.content, mimeType=item.mime_type))
            return ReadResourceResult(contents=contents)

        @registry.method("prompts/list")
        async def list_prompts(params: dict[str, Any], ctx: RequestContext) -> ListPromptsResult:
            return ListPromptsResult(prompts=await self.list_prompts())

        @registry.method("prompts/get")
        async def get_prompt(params: dict[str, Any], ctx: RequestContext) -> GetPromptResult:
            try:
                return await self.get_prompt(_require(params, "name"), params.get("arguments"))
            except ValueError as e:
                # Unknown prompt or missing prompt arguments
                raise McpError(ErrorData(code=INVALID_PARAMS, message=str(e))) from e
