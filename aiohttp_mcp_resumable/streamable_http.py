"""
Resumable Streamable HTTP Dispatcher Module

This module implements the HTTP side of the resumable session transport.

A logical client session spans many HTTP calls. Requests posted by the client
are executed concurrently, every outgoing message is appended to the session's
event log, and results are delivered either as the HTTP body or as events on a
stream. A client that lost a stream reconnects with ``GET`` and the
``Last-Event-ID`` header and receives everything it missed.
"""

import json
import logging
import math
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Any

import anyio
from aiohttp import web
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream
from mcp.shared.exceptions import McpError
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    INVALID_REQUEST,
    ErrorData,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestId,
)
from pydantic import BaseModel, ValidationError

from .batching import coalesce
from .cancellation import CancellationTracker
from .config import TransportConfig
from .connections import ConnectionKind, ConnectionRegistry
from .events import EventLog
from .exceptions import (
    InternalError,
    MethodNotFound,
    ProtocolError,
    RequestCancelled,
    SessionNotFound,
    SessionRequired,
    TransportError,
)
from .registry import MethodRegistry, NotificationSender, RequestContext
from .security import HostOriginGuard
from .sessions import ResolvedSession, SessionStore
from .storage import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore
from .transport import Frame, SSEChannel, open_event_stream

__all__ = [
    "CONTENT_TYPE_JSON",
    "CONTENT_TYPE_SSE",
    "LAST_EVENT_ID_HEADER",
    "MCP_PROTOCOL_VERSION_HEADER",
    "MCP_SESSION_ID_HEADER",
    "StreamableHTTPDispatcher",
]

logger = logging.getLogger(__name__)

# Header names
MCP_SESSION_ID_HEADER = "mcp-session-id"
MCP_PROTOCOL_VERSION_HEADER = "mcp-protocol-version"
LAST_EVENT_ID_HEADER = "last-event-id"

# Content types
CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_SSE = "text/event-stream"

INITIALIZE_METHOD = "initialize"
CANCELLED_NOTIFICATION = "notifications/cancelled"

# Session ID validation pattern (visible ASCII characters ranging from 0x21 to 0x7E)
SESSION_ID_PATTERN = re.compile(r"^[\x21-\x7E]+$")

Message = dict[str, Any]


def _dump(model: BaseModel) -> Message:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _result_message(request_id: RequestId, result: Message | BaseModel | None) -> Message:
    if result is None:
        result = {}
    elif isinstance(result, BaseModel):
        result = _dump(result)
    return _dump(JSONRPCResponse(jsonrpc="2.0", id=request_id, result=result))


def _error_message(request_id: RequestId, error: ErrorData) -> Message:
    return _dump(JSONRPCError(jsonrpc="2.0", id=request_id, error=error))


def _notification_message(method: str, params: Message | None) -> Message:
    return _dump(JSONRPCNotification(jsonrpc="2.0", method=method, params=params))


class StreamableHTTPDispatcher:
    """
    HTTP-facing state machine of the resumable session transport.

    The dispatcher owns no state of its own beyond the background task group:
    sessions, events, connections and in-flight requests live in the injected
    components, which only know each other by identifier. Terminating a
    session releases the rest through the session store's close callbacks.

    ``run()`` must be active while requests are handled.
    """

    def __init__(
        self,
        methods: MethodRegistry,
        sessions: SessionStore,
        events: EventLog,
        connections: ConnectionRegistry,
        cancellations: CancellationTracker,
        config: TransportConfig | None = None,
        store: KeyValueStore | None = None,
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            methods: Handlers of JSON-RPC methods and notifications
            sessions: Session lifecycle
            events: Per-session log of outgoing messages
            connections: Live event streams per session
            cancellations: In-flight requests per session
            config: Transport tunables, defaults when omitted
            store: Storage backend shared by ``sessions`` and ``events``.
                   When given, it is closed when ``run()`` exits.
        """
        self._methods = methods
        self._sessions = sessions
        self._events = events
        self._connections = connections
        self._cancellations = cancellations
        self._config = config if config is not None else TransportConfig()
        self._store = store
        self._guard = HostOriginGuard(self._config.transport_security)
        # New sessions whose initialize request was answered with an error
        self._failed_initializations: set[str] = set()
        self._task_group: TaskGroup | None = None

        sessions.on_close(self._release_session)

    @classmethod
    def from_config(cls, methods: MethodRegistry, config: TransportConfig | None = None) -> "StreamableHTTPDispatcher":
        """Build a dispatcher and its components from a config."""
        config = config if config is not None else TransportConfig()
        store: KeyValueStore
        if config.redis_url:
            logger.info("Using Redis store at %s", config.redis_url)
            store = RedisKeyValueStore(config.redis_url)
        else:
            store = InMemoryKeyValueStore()
        return cls(
            methods,
            sessions=SessionStore(store, config.session_timeout, config.sweep_interval),
            events=EventLog(store, config.event_ttl),
            connections=ConnectionRegistry(config.heartbeat_interval),
            cancellations=CancellationTracker(config.cancellation_grace_period),
            config=config,
            store=store,
        )

    @property
    def config(self) -> TransportConfig:
        return self._config

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def events(self) -> EventLog:
        return self._events

    @property
    def connections(self) -> ConnectionRegistry:
        return self._connections

    @property
    def cancellations(self) -> CancellationTracker:
        return self._cancellations

    @asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """Run the heartbeat and host background notification handlers."""
        if self._task_group is not None:
            raise RuntimeError("Dispatcher is already running")
        try:
            async with anyio.create_task_group() as tg:
                self._task_group = tg
                tg.start_soon(self._connections.run_heartbeat)
                logger.info("Dispatcher started")
                try:
                    yield
                finally:
                    self._task_group = None
                    await self._connections.close_everything()
                    tg.cancel_scope.cancel()
        finally:
            if self._store is not None:
                await self._store.close()
            logger.info("Dispatcher stopped")

    async def close_connections(self) -> None:
        """Close every live stream so that listening handlers return."""
        await self._connections.close_everything()

    async def _release_session(self, session_id: str) -> None:
        self._cancellations.cancel_all(session_id)
        await self._connections.close_all(session_id)
        await self._events.purge(session_id)

    def _create_error_response(
        self,
        error_message: str,
        status_code: HTTPStatus,
        error_code: int = INVALID_REQUEST,
        headers: dict[str, str] | None = None,
        session_id: str | None = None,
    ) -> web.Response:
        """Create an error response with a simple string message."""
        response_headers = {"Content-Type": CONTENT_TYPE_JSON}
        if headers:
            response_headers.update(headers)
        if session_id:
            response_headers[MCP_SESSION_ID_HEADER] = session_id

        # Call-level errors have no request to answer
        error_response = JSONRPCError(
            jsonrpc="2.0",
            id="server-error",
            error=ErrorData(code=error_code, message=error_message),
        )
        return web.Response(
            text=error_response.model_dump_json(by_alias=True, exclude_none=True),
            status=status_code,
            headers=response_headers,
        )

    def _create_json_response(
        self,
        body: Message | list[Message] | None,
        status_code: HTTPStatus = HTTPStatus.OK,
        session_id: str | None = None,
    ) -> web.Response:
        response_headers = {"Content-Type": CONTENT_TYPE_JSON}
        if session_id:
            response_headers[MCP_SESSION_ID_HEADER] = session_id
        return web.Response(
            text=json.dumps(body) if body is not None else None,
            status=status_code,
            headers=response_headers,
        )

    def _get_session_id(self, request: web.Request) -> str | None:
        """Extract the session ID from request headers."""
        return request.headers.get(MCP_SESSION_ID_HEADER)

    async def handle_request(self, request: web.Request) -> web.StreamResponse:
        """Application entry point that handles all HTTP requests"""
        if self._task_group is None:
            raise RuntimeError("Dispatcher is not running. Make sure to use run()")

        try:
            if request.method == "POST":
                return await self._handle_post_request(request)
            elif request.method == "GET":
                return await self._handle_get_request(request)
            elif request.method == "DELETE":
                return await self._handle_delete_request(request)
            else:
                return await self._handle_unsupported_request(request)
        except TransportError as e:
            logger.info("Rejected %s %s: %s", request.method, request.path, e.error.message)
            return self._create_error_response(e.error.message, e.status, e.error.code)

    def _check_accept_headers(self, request: web.Request) -> tuple[bool, bool]:
        """Check if the request accepts the required media types."""
        accept_header = request.headers.get("accept", "")
        accept_types = [media_type.strip() for media_type in accept_header.split(",")]

        has_json = any(media_type.startswith(CONTENT_TYPE_JSON) for media_type in accept_types)
        has_sse = any(media_type.startswith(CONTENT_TYPE_SSE) for media_type in accept_types)

        return has_json, has_sse

    def _check_content_type(self, request: web.Request) -> bool:
        """Check if the request has the correct Content-Type."""
        content_type = request.headers.get("content-type", "")
        content_type_parts = [part.strip() for part in content_type.split(";")[0].split(",")]

        return any(part == CONTENT_TYPE_JSON for part in content_type_parts)

    def _validate_protocol_version(self, request: web.Request) -> None:
        """Validate the protocol version header, when the client sends one."""
        protocol_version = request.headers.get(MCP_PROTOCOL_VERSION_HEADER)
        if protocol_version is None:
            return

        if protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
            supported_versions = ", ".join(SUPPORTED_PROTOCOL_VERSIONS)
            raise ProtocolError(
                f"Bad Request: Unsupported protocol version: {protocol_version}. "
                + f"Supported versions: {supported_versions}"
            )

    async def _require_session(self, request: web.Request) -> str:
        """Return the session ID of a call that must belong to a live session."""
        session_id = self._get_session_id(request)
        if not session_id:
            raise SessionRequired()
        if not SESSION_ID_PATTERN.fullmatch(session_id) or not await self._sessions.validate(session_id):
            raise SessionNotFound(session_id)
        return session_id

    async def _read_messages(self, request: web.Request) -> list[JSONRPCMessage]:
        """Parse the body, a single message or a batch of them, into messages."""
        max_size = self._config.max_message_size
        if request.content_length is not None and request.content_length > max_size:
            raise ProtocolError.too_large()

        body = await request.read()
        if len(body) > max_size:
            raise ProtocolError.too_large()

        try:
            raw_message = json.loads(body.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise ProtocolError.parse_error(f"Body is not valid UTF-8: {e.reason}") from e
        except json.JSONDecodeError as e:
            raise ProtocolError.parse_error(str(e)) from e

        raw_messages = raw_message if isinstance(raw_message, list) else [raw_message]
        try:
            return [JSONRPCMessage.model_validate(item) for item in raw_messages]
        except ValidationError as e:
            raise ProtocolError(f"Invalid Request: {e.error_count()} validation error(s)") from e

    async def _resolve_session(self, request: web.Request, messages: list[JSONRPCMessage]) -> ResolvedSession:
        """Find or create the session a POST belongs to, once per call."""
        if self._get_session_id(request):
            return ResolvedSession(await self._require_session(request))

        if any(isinstance(m.root, JSONRPCRequest) and m.root.method == INITIALIZE_METHOD for m in messages):
            return ResolvedSession(await self._sessions.create(), created=True)

        raise SessionRequired()

    async def _handle_post_request(self, request: web.Request) -> web.StreamResponse:
        """Handle POST requests containing JSON-RPC messages."""
        # Check Accept headers
        has_json, has_sse = self._check_accept_headers(request)
        if not (has_json or has_sse):
            raise ProtocolError.not_acceptable(
                "Not Acceptable: Client must accept application/json or text/event-stream"
            )

        # Validate Content-Type
        if not self._check_content_type(request):
            raise ProtocolError.unsupported_media_type()

        self._validate_protocol_version(request)
        self._guard.check(request)
        messages = await self._read_messages(request)

        # A new session only outlives its call when initialization succeeded
        resolved = await self._resolve_session(request, messages)
        session_id = resolved.session_id
        try:
            response = await self._handle_messages(request, session_id, messages, has_sse)
        except BaseException:
            if resolved.created:
                with anyio.CancelScope(shield=True):
                    logger.info("Initialization call of session %s failed, discarding it", session_id)
                    await self._sessions.terminate(session_id)
            raise
        finally:
            failed = session_id in self._failed_initializations
            self._failed_initializations.discard(session_id)
        if failed and resolved.created:
            logger.info("Initialization of session %s was rejected, discarding it", session_id)
            await self._sessions.terminate(session_id)
            if not response.prepared:
                response.headers.popall(MCP_SESSION_ID_HEADER, None)
        return response

    async def _handle_messages(
        self, request: web.Request, session_id: str, messages: list[JSONRPCMessage], has_sse: bool
    ) -> web.StreamResponse:
        await self._sessions.touch(session_id)

        requests: list[JSONRPCRequest] = []
        for message in messages:
            root = message.root
            if isinstance(root, JSONRPCRequest):
                requests.append(root)
            elif isinstance(root, JSONRPCNotification):
                self._accept_notification(session_id, root, request)
            else:
                logger.debug("Dropping client response %s in session %s", root.id, session_id)

        # For notifications and responses only, return 202 Accepted
        if not requests:
            return self._create_json_response(None, HTTPStatus.ACCEPTED, session_id=session_id)

        if has_sse and not self._config.json_response:
            return await self._stream_results(request, session_id, requests)
        return await self._respond_json(request, session_id, requests)

    def _accept_notification(self, session_id: str, notification: JSONRPCNotification, request: web.Request) -> None:
        params = notification.params or {}
        if notification.method == CANCELLED_NOTIFICATION:
            # Applied before the 202 so the caller can rely on it
            request_id = params.get("requestId")
            if request_id is None:
                logger.debug("Cancel notification without requestId in session %s", session_id)
                return
            logger.debug("Cancel requested for %s in session %s: %s", request_id, session_id, params.get("reason"))
            self._cancellations.cancel(session_id, request_id)
            return

        assert self._task_group is not None
        self._task_group.start_soon(self._run_notification, session_id, notification.method, params, request)

    async def _run_notification(
        self, session_id: str, method: str, params: dict[str, Any], request: web.Request | None
    ) -> None:
        handler = self._methods.lookup_notification(method)
        if handler is None:
            logger.debug("No handler for notification %s", method)
            return

        ctx = RequestContext(
            session_id=session_id,
            method=method,
            request=request,
            notifier=self._session_notifier(session_id),
        )
        try:
            await handler(params, ctx)
        except Exception:
            logger.exception("Error handling notification %s in session %s", method, session_id)

    def _session_notifier(self, session_id: str) -> NotificationSender:
        async def notify(method: str, params: Message | None) -> None:
            await self._publish(session_id, _notification_message(method, params))

        return notify

    async def _log(self, session_id: str, payload: Message | list[Message]) -> str | None:
        """Append to the session's event log. Returns None once the session is gone."""
        if await self._sessions.get(session_id) is None:
            logger.debug("Session %s is gone, not logging outgoing message", session_id)
            return None
        token = await self._events.append(session_id, payload)
        if await self._sessions.get(session_id) is None:
            # Terminated while appending, the purge may have run before the append landed
            await self._events.purge(session_id)
            return None
        return token

    async def _publish(self, session_id: str, message: Message) -> None:
        """Log a message and push it to the session's most recently active stream, if any."""
        token = await self._log(session_id, message)
        if token is None:
            return
        await self._deliver(session_id, Frame.from_payload(message, token))

    async def _deliver(self, session_id: str, frame: Frame, connection_id: str | None = None) -> bool:
        """Push to the given stream, or to the session's most recently active one once that is gone."""
        if connection_id is not None and await self._connections.push(session_id, connection_id, frame):
            return True
        connection = self._connections.active_for(session_id)
        if connection is None:
            logger.debug("No open stream for session %s, event %s kept for replay", session_id, frame.event_id)
            return False
        return await self._connections.push(session_id, connection.id, frame)

    async def _execute(
        self,
        session_id: str,
        message: JSONRPCRequest,
        request: web.Request | None,
        notifier: NotificationSender,
    ) -> Message:
        """Run one request to completion and return the message answering it."""
        answer = await self._invoke(session_id, message, request, notifier)
        if message.method == INITIALIZE_METHOD and "error" in answer:
            self._failed_initializations.add(session_id)
        return answer

    async def _invoke(
        self,
        session_id: str,
        message: JSONRPCRequest,
        request: web.Request | None,
        notifier: NotificationSender,
    ) -> Message:
        handler = self._methods.lookup(message.method)
        if handler is None:
            logger.info("Method not found: %s", message.method)
            return _error_message(message.id, MethodNotFound(message.method).error)

        request_id = message.id
        signal = self._cancellations.begin(session_id, request_id)
        ctx = RequestContext(
            session_id=session_id,
            method=message.method,
            request_id=request_id,
            signal=signal,
            request=request,
            notifier=notifier,
        )
        try:
            with anyio.CancelScope() as scope:
                signal.attach(scope)
                result = await handler(message.params or {}, ctx)
            if scope.cancelled_caught:
                logger.info("Request %s (%s) of session %s cancelled", request_id, message.method, session_id)
                return _error_message(message.id, RequestCancelled().error)

            response = _result_message(message.id, result)
            if signal.cancelled:
                # Finished anyway: keep the late result for replay, answer the caller with the cancellation
                await self._log(session_id, response)
                return _error_message(message.id, RequestCancelled().error)
            return response
        except McpError as e:
            return _error_message(message.id, e.error)
        except Exception:
            logger.exception("Error handling request %s (%s) of session %s", request_id, message.method, session_id)
            return _error_message(message.id, InternalError().error)
        finally:
            self._cancellations.end(session_id, request_id, signal)

    async def _respond_json(
        self, request: web.Request, session_id: str, requests: list[JSONRPCRequest]
    ) -> web.Response:
        """Run the requests concurrently and reply with their results as the HTTP body."""
        responses: list[Message] = [{} for _ in requests]
        notifier = self._session_notifier(session_id)

        async def run(index: int, message: JSONRPCRequest) -> None:
            response = await self._execute(session_id, message, request, notifier)
            await self._log(session_id, response)
            responses[index] = response

        async with anyio.create_task_group() as tg:
            for index, message in enumerate(requests):
                tg.start_soon(run, index, message)

        body: Message | list[Message] = responses[0] if len(responses) == 1 else responses
        return self._create_json_response(body, session_id=session_id)

    async def _stream_results(
        self, request: web.Request, session_id: str, requests: list[JSONRPCRequest]
    ) -> web.StreamResponse:
        """Run the requests concurrently and send results and notifications on an event stream."""
        outbox_writer, outbox_reader = anyio.create_memory_object_stream[Message](math.inf)

        async def notify(method: str, params: Message | None) -> None:
            message = _notification_message(method, params)
            try:
                await outbox_writer.send(message)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                # The call's stream is done, fall back to whatever stream the session has left
                await self._publish(session_id, message)

        async def run(message: JSONRPCRequest) -> None:
            await outbox_writer.send(await self._execute(session_id, message, request, notify))

        async with open_event_stream(request, headers={MCP_SESSION_ID_HEADER: session_id}) as response:
            connection_id = self._connections.register(session_id, SSEChannel(response), ConnectionKind.RESPONSE)
            try:
                async with anyio.create_task_group() as tg:
                    tg.start_soon(self._forward, session_id, connection_id, outbox_reader)
                    async with outbox_writer:
                        async with anyio.create_task_group() as workers:
                            for message in requests:
                                workers.start_soon(run, message)
            except Exception:
                logger.exception("Error streaming results to session %s", session_id)
            finally:
                self._connections.unregister(session_id, connection_id)
        return response

    async def _forward(
        self, session_id: str, connection_id: str, outbox_reader: MemoryObjectReceiveStream[Message]
    ) -> None:
        """Append and push outgoing messages, coalescing those that are ready together."""
        async with outbox_reader:
            async for first in outbox_reader:
                ready = [first, *self._drain(outbox_reader)]
                for payload in coalesce(ready, self._config.max_batch_bytes, self._config.max_batch_items):
                    token = await self._log(session_id, payload)
                    if token is None:
                        continue
                    await self._deliver(session_id, Frame.from_payload(payload, token), connection_id)

    @staticmethod
    def _drain(outbox_reader: MemoryObjectReceiveStream[Message]) -> list[Message]:
        drained: list[Message] = []
        while True:
            try:
                drained.append(outbox_reader.receive_nowait())
            except (anyio.WouldBlock, anyio.EndOfStream):
                return drained

    async def _handle_get_request(self, request: web.Request) -> web.StreamResponse:
        """
        Handle GET request to listen for server messages.

        The stream first replays every event logged after ``Last-Event-ID``,
        then stays open for live messages until the connection is closed by a
        failed heartbeat, session termination or application shutdown.
        """
        # Validate Accept header - must include text/event-stream
        _, has_sse = self._check_accept_headers(request)
        if not has_sse:
            raise ProtocolError.not_acceptable("Not Acceptable: Client must accept text/event-stream")

        self._validate_protocol_version(request)
        self._guard.check(request)
        session_id = await self._require_session(request)
        await self._sessions.touch(session_id)

        last_event_id = request.headers.get(LAST_EVENT_ID_HEADER)

        async with open_event_stream(request, headers={MCP_SESSION_ID_HEADER: session_id}) as response:
            connection_id = self._connections.register(session_id, SSEChannel(response), ConnectionKind.STREAM)
            try:
                if await self._connections.keepalive(session_id, connection_id):
                    await self._replay(session_id, connection_id, last_event_id)
                    await self._connections.wait_closed(session_id, connection_id)
            finally:
                self._connections.unregister(session_id, connection_id)
        return response

    async def _replay(self, session_id: str, connection_id: str, last_event_id: str | None) -> None:
        if last_event_id is None:
            return
        replayed = 0
        async for token, payload in self._events.since(session_id, last_event_id):
            if not await self._connections.push(session_id, connection_id, Frame.from_payload(payload, token)):
                break
            replayed += 1
        logger.info("Replayed %d event(s) after %s to session %s", replayed, last_event_id, session_id)

    async def _handle_delete_request(self, request: web.Request) -> web.StreamResponse:
        """Handle DELETE requests for explicit session termination. Terminating twice is not an error."""
        self._validate_protocol_version(request)
        self._guard.check(request)
        session_id = self._get_session_id(request)
        if not session_id:
            raise SessionRequired()

        await self._sessions.terminate(session_id)
        return self._create_json_response(None, HTTPStatus.OK, session_id=session_id)

    async def _handle_unsupported_request(self, request: web.Request) -> web.StreamResponse:
        """Handle unsupported HTTP methods."""
        session_id = self._get_session_id(request)
        return self._create_error_response(
            "Method Not Allowed",
            HTTPStatus.METHOD_NOT_ALLOWED,
            headers={"Allow": "GET, POST, DELETE"},
            session_id=session_id if session_id and SESSION_ID_PATTERN.fullmatch(session_id) else None,
        )

