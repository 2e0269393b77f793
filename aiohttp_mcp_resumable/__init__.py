from .app import AppBuilder, build_mcp_app, setup_mcp_subapp
from .cancellation import CancellationSignal, CancellationTracker
from .config import TransportConfig
from .connections import ConnectionKind, ConnectionRegistry
from .core import AiohttpMCP
from .events import EventLog
from .registry import MethodRegistry, RequestContext
from .security import HostOriginGuard
from .sessions import SessionStore
from .storage import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore
from .streamable_http import StreamableHTTPDispatcher

__all__ = [
    "AiohttpMCP",
    "AppBuilder",
    "CancellationSignal",
    "CancellationTracker",
    "ConnectionKind",
    "ConnectionRegistry",
    "EventLog",
    "HostOriginGuard",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "MethodRegistry",
    "RedisKeyValueStore",
    "RequestContext",
    "SessionStore",
    "StreamableHTTPDispatcher",
    "TransportConfig",
    "build_mcp_app",
    "setup_mcp_subapp",
]
