from http import HTTPStatus

from mcp.shared.exceptions import McpError
from mcp.types import INTERNAL_ERROR, INVALID_REQUEST, METHOD_NOT_FOUND, PARSE_ERROR, ErrorData

__all__ = [
    "REQUEST_CANCELLED",
    "SESSION_NOT_FOUND",
    "InternalError",
    "MethodNotFound",
    "ProtocolError",
    "RequestCancelled",
    "SessionError",
    "SessionNotFound",
    "SessionRequired",
    "TransportError",
    "TransportSecurityError",
]

# JSON-RPC error codes not defined by mcp.types
SESSION_NOT_FOUND = -32001
REQUEST_CANCELLED = -32800


class TransportError(McpError):
    """Call-level failure. Short-circuits the HTTP call before any handler runs."""

    status: HTTPStatus = HTTPStatus.BAD_REQUEST

    def __init__(self, message: str, code: int = INVALID_REQUEST, status: HTTPStatus | None = None) -> None:
        super().__init__(ErrorData(code=code, message=message))
        if status is not None:
            self.status = status


class ProtocolError(TransportError):
    """Malformed JSON, wrong content headers or an oversized body."""

    @classmethod
    def parse_error(cls, detail: str) -> "ProtocolError":
        return cls(f"Parse error: {detail}", PARSE_ERROR)

    @classmethod
    def not_acceptable(cls, message: str) -> "ProtocolError":
        return cls(message, status=HTTPStatus.NOT_ACCEPTABLE)

    @classmethod
    def unsupported_media_type(cls) -> "ProtocolError":
        return cls(
            "Unsupported Media Type: Content-Type must be application/json",
            status=HTTPStatus.UNSUPPORTED_MEDIA_TYPE,
        )

    @classmethod
    def too_large(cls) -> "ProtocolError":
        return cls(
            "Payload Too Large: Message exceeds maximum size",
            status=HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
        )


class TransportSecurityError(TransportError):
    """Call from a host or origin that DNS rebinding protection does not allow."""

    @classmethod
    def invalid_host(cls) -> "TransportSecurityError":
        return cls("Invalid Host header", status=HTTPStatus.MISDIRECTED_REQUEST)

    @classmethod
    def invalid_origin(cls) -> "TransportSecurityError":
        return cls("Invalid Origin header", status=HTTPStatus.FORBIDDEN)


class SessionError(TransportError):
    """Missing, unknown or expired session. The client has to initialize again."""


class SessionNotFound(SessionError):
    status = HTTPStatus.NOT_FOUND

    def __init__(self, session_id: str) -> None:
        super().__init__("Not Found: Session not found or expired", SESSION_NOT_FOUND)
        self.session_id = session_id


class SessionRequired(SessionError):
    def __init__(self) -> None:
        super().__init__("Bad Request: Missing session ID")


class MethodNotFound(McpError):
    def __init__(self, method: str) -> None:
        super().__init__(ErrorData(code=METHOD_NOT_FOUND, message=f"Method not found: {method}"))
        self.method = method


class RequestCancelled(McpError):
    def __init__(self) -> None:
        super().__init__(ErrorData(code=REQUEST_CANCELLED, message="Request cancelled"))


class InternalError(McpError):
    """Unexpected handler failure. The message sent to the client never carries details."""

    def __init__(self) -> None:
        super().__init__(ErrorData(code=INTERNAL_ERROR, message="Internal error"))
