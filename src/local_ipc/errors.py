"""
Error types for the local IPC transport.

Failures inside the transport are raised as IPCError subclasses and converted
to error-flagged Message objects at the client/server boundary, so callers of
Client.send() and Server.listen() never see an exception.

Error codes:
- configuration: oversized socket path, directory creation, no local sockets
- socket_lifecycle: socket(), bind(), listen(), connect(), accept()
- io: send()/recv() failures
- timeout: timed out I/O or connection wait
- protocol: missing or incorrect acknowledgement, empty payloads
- precondition: empty input to Client.send()
- stopped: connection opened by Server.stop_listening()
"""

from __future__ import annotations

import errno as errno_codes
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from local_ipc.ipc.message import Message


class IPCError(Exception):
    """
    Base exception class for local IPC errors.

    Attributes:
        error_code: Internal error code string (e.g., "io", "timeout",
            "protocol", "configuration").
        message: Human-readable error message.
        details: Optional structured details (e.g., socket path, errno).

    Example:
        >>> raise IPCError(
        ...     error_code="io",
        ...     message="header send() failed (error: 32)",
        ...     details={"errno": 32},
        ... )
    """

    error_code = "internal"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        error_code: str | None = None,
    ) -> None:
        """
        Initialize an IPCError.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
            error_code: Overrides the class-level error code.
        """
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }

    def to_message(self) -> Message:
        """Convert the error to an error-flagged Message."""
        from local_ipc.ipc.message import Message

        return Message.error(self.message)


class ConfigurationError(IPCError):
    """Raised for invalid addressing or an unusable platform."""

    error_code = "configuration"


class SocketLifecycleError(IPCError):
    """Raised when creating, binding, listening on or connecting a socket fails."""

    error_code = "socket_lifecycle"


class IPCConnectionError(IPCError):
    """Raised when sending or receiving on a connected socket fails."""

    error_code = "io"


class IPCTimeoutError(IPCConnectionError):
    """Raised when an operation exceeds the configured timeout."""

    error_code = "timeout"


class ProtocolError(IPCError):
    """Raised when the peer violates the header/ack/message/response exchange."""

    error_code = "protocol"


class PreconditionError(IPCError):
    """Raised when Client.send() is given an empty header or message."""

    error_code = "precondition"


class ListenerStoppedError(IPCError):
    """
    Raised when an accepted connection carries no header at all.

    This is how a connection opened by Server.stop_listening() looks from
    inside Server.listen(), so it is not reported to the handler.
    """

    error_code = "stopped"


def os_error_code(exc: BaseException) -> int:
    """
    Return the numeric error code for an exception raised by a socket call.

    Timeouts raised by the socket module carry no errno, so ETIMEDOUT is
    substituted.

    Args:
        exc: Exception raised by a socket operation.

    Returns:
        The errno value, or 0 when none is available.
    """
    code = getattr(exc, "errno", None)
    if code is not None:
        return int(code)
    if isinstance(exc, TimeoutError):
        return errno_codes.ETIMEDOUT
    return 0


def describe_os_error(operation: str, exc: BaseException) -> str:
    """
    Build the description used for a failed socket call.

    Args:
        operation: Operation label such as "connect()" or "header send()".
        exc: Exception raised by the call.

    Returns:
        Text in the form "<operation> failed (error: <code>)".
    """
    return f"{operation} failed (error: {os_error_code(exc)})"
