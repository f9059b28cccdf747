"""
IPC server for the local socket transport.

A Server binds its socket at construction and serves one connection per
call to listen(). The intended use is a dedicated thread that calls
listen() in a loop (or serve(), which does exactly that) while another
thread calls stop_listening() to end it.

Design notes:
- Construction never raises. A failure is stored and reported by every
  later listen() call.
- listen() reports failures to the handler as handler(Message(), error)
  and returns the error. The connection opened by stop_listening() carries
  no header and is not reported.
"""

from __future__ import annotations

import errno
import os
import socket
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from local_ipc.errors import (
    IPCError,
    IPCTimeoutError,
    ListenerStoppedError,
    ProtocolError,
)
from local_ipc.ipc.message import Message
from local_ipc.ipc.protocol import (
    ACK,
    DEFAULT_RECV_BUFFER_SIZE,
    DEFAULT_TIMEOUT,
    ensure_socket_directory,
    resolve_socket_path,
    validate_socket_path,
)
from local_ipc.ipc.transport import Transport, get_transport
from local_ipc.logging import get_logger

if TYPE_CHECKING:
    from local_ipc.config import IPCConfig

logger = get_logger(__name__)

# Handler type: takes (header, message), returns the response
Handler = Callable[[Message, Message], Message]


class HandlerFailedError(IPCError):
    """Raised when the handler itself raises an exception."""

    error_code = "handler"


class Server:
    """
    Server side of the local IPC transport.

    Attributes:
        socket_path: Filesystem path the server is bound to.
        timeout: Bound in seconds for the connection wait, send and receive.
        init_error: Description of a construction failure, or None.

    Example:
        >>> server = Server("/tmp/local-ipc/ipc.sock")
        >>> thread = threading.Thread(target=server.serve, args=(handler,))
        >>> thread.start()
        >>> ...
        >>> server.stop_listening()
        >>> thread.join()
        >>> server.close()
    """

    def __init__(
        self,
        socket_path: str | os.PathLike[str],
        timeout: float = DEFAULT_TIMEOUT,
        recv_buffer_size: int = DEFAULT_RECV_BUFFER_SIZE,
        quiescence: float = 0.0,
        backlog: int = socket.SOMAXCONN,
        transport: Transport | None = None,
    ) -> None:
        """
        Create, bind and listen on the server socket.

        Args:
            socket_path: Filesystem path to bind.
            timeout: Bound in seconds for the connection wait, send and receive.
            recv_buffer_size: Bytes requested per underlying receive call.
            quiescence: Silence in seconds that ends a drained payload.
            backlog: Listen backlog.
            transport: Socket primitives (platform default if not provided).
        """
        self.socket_path = resolve_socket_path(socket_path)
        self.timeout = timeout
        self.recv_buffer_size = recv_buffer_size
        self.quiescence = quiescence
        self.backlog = backlog
        self.transport = transport if transport is not None else get_transport(timeout)
        self.init_error: str | None = None

        self._socket: socket.socket | None = None
        self._stop_requested = threading.Event()
        self._closed = False

        try:
            self._socket = self._bind()
        except IPCError as e:
            self.init_error = e.message
            logger.error(
                "IPC server initialization failed",
                extra={
                    "socket_path": self.socket_path,
                    "error_code": e.error_code,
                    "error": e.message,
                },
            )
        else:
            logger.info(
                "IPC server accepting connections",
                extra={"socket_path": self.socket_path, "transport": self.transport.name},
            )

    @classmethod
    def from_config(cls, config: IPCConfig) -> Server:
        """
        Create a server from configuration.

        Args:
            config: IPC section of AppConfig.

        Returns:
            Configured Server instance.
        """
        return cls(
            socket_path=config.socket_path,
            timeout=config.timeout_seconds,
            recv_buffer_size=config.recv_buffer_size,
            quiescence=config.quiescence_seconds,
            backlog=config.backlog,
        )

    def _bind(self) -> socket.socket:
        ensure_socket_directory(self.socket_path)
        self.transport.check_supported()
        validate_socket_path(self.socket_path, self.transport.max_path_length)

        sock = self.transport.open_stream()
        try:
            self.transport.bind_listen(sock, self.socket_path, self.backlog)
        except IPCError:
            self.transport.close(sock)
            raise
        return sock

    @property
    def is_valid(self) -> bool:
        """Whether the server holds a bound, listening socket."""
        return self._socket is not None

    # -------------------------------------------------------------------------
    # Serving
    # -------------------------------------------------------------------------

    def listen(self, handler: Handler) -> Message:
        """
        Serve at most one connection.

        Blocks for up to ``timeout`` seconds waiting for a client, then runs
        the header/ack/message/response exchange, calling ``handler`` once
        with the received header and message.

        Args:
            handler: Callable producing the response from (header, message).

        Returns:
            A non-error Message carrying the response that was sent, or an
            error Message describing the first failure.
        """
        if self._socket is None:
            error = Message.error(self.init_error or "server socket is closed")
            self._report(handler, error)
            return error

        try:
            if not self.transport.wait_readable(self._socket, self.timeout):
                raise IPCTimeoutError(
                    f"select() failed (error: {errno.ETIMEDOUT})",
                    details={"timeout": self.timeout},
                )
            conn = self.transport.accept(self._socket)
        except IPCError as e:
            return self._fail(handler, e)

        try:
            return self._serve_connection(conn, handler)
        except ListenerStoppedError as e:
            logger.debug(
                "IPC connection closed without a header",
                extra={"socket_path": self.socket_path},
            )
            return e.to_message()
        except IPCError as e:
            return self._fail(handler, e)
        finally:
            self.transport.close(conn)

    def _serve_connection(self, conn: socket.socket, handler: Handler) -> Message:
        transport = self.transport

        header = transport.drain_receive(
            conn, self.recv_buffer_size, self.quiescence, operation="header recv()"
        )
        if not header:
            raise ListenerStoppedError("header recv() failed (error: 0)")

        transport.send_all(conn, ACK, operation="ack send()")

        message = transport.drain_receive(
            conn, self.recv_buffer_size, self.quiescence, operation="message recv()"
        )
        if not message:
            raise ProtocolError("message recv() failed (error: 0)")

        try:
            response = Message.coerce(
                handler(Message.from_buffer(header), Message.from_buffer(message))
            )
        except Exception as e:
            logger.exception(
                "IPC handler raised",
                extra={"socket_path": self.socket_path, "error": str(e)},
            )
            raise HandlerFailedError(
                f"handler failed: {type(e).__name__}: {e}"
            ) from e

        if response.size == 0:
            raise ProtocolError("response can not be empty")

        transport.send_all(conn, response.as_raw(), operation="response send()")

        logger.debug(
            "IPC exchange served",
            extra={
                "socket_path": self.socket_path,
                "header_size": len(header),
                "message_size": len(message),
                "response_size": response.size,
            },
        )
        return Message(response.as_raw())

    def _fail(self, handler: Handler, error: IPCError) -> Message:
        extra = {
            "socket_path": self.socket_path,
            "error_code": error.error_code,
            "error": error.message,
        }
        if isinstance(error, IPCTimeoutError):
            # An idle wait for a client is routine for a serve() loop
            logger.debug("IPC listen timed out", extra=extra)
        else:
            logger.warning("IPC listen failed", extra=extra)
        message = error.to_message()
        self._report(handler, message)
        return message

    def _report(self, handler: Handler, error: Message) -> None:
        try:
            handler(Message(), error)
        except Exception as e:
            logger.exception(
                "IPC handler raised while reporting an error",
                extra={"socket_path": self.socket_path, "error": str(e)},
            )

    def serve(self, handler: Handler) -> None:
        """
        Call listen() repeatedly until stop_listening() is called.

        Args:
            handler: Callable producing the response from (header, message).
        """
        logger.info("IPC server loop started", extra={"socket_path": self.socket_path})
        try:
            while not self._stop_requested.is_set():
                self.listen(handler)
                if not self.is_valid:
                    break
        finally:
            self._stop_requested.clear()
            logger.info(
                "IPC server loop stopped", extra={"socket_path": self.socket_path}
            )

    def stop_listening(self) -> bool:
        """
        Wake a listen() call blocked waiting for a connection.

        Opens a connection to the server's own socket and closes it without
        sending anything, which makes the pending listen() return an error
        without calling the handler. serve() also stops looping.

        Returns:
            False if the wake-up connection could not be made.
        """
        self._stop_requested.set()

        try:
            sock = self.transport.open_stream()
        except IPCError as e:
            logger.warning(
                "IPC stop_listening failed",
                extra={"socket_path": self.socket_path, "error": e.message},
            )
            return False

        try:
            self.transport.connect(sock, self.socket_path)
        except IPCError as e:
            logger.warning(
                "IPC stop_listening failed",
                extra={"socket_path": self.socket_path, "error": e.message},
            )
            return False
        finally:
            self.transport.close(sock)

        logger.debug("IPC stop_listening sent", extra={"socket_path": self.socket_path})
        return True

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the listening socket and remove the socket file."""
        if self._closed:
            return
        self._closed = True

        sock, self._socket = self._socket, None
        self.transport.close(sock)

        if sock is not None:
            try:
                os.unlink(self.socket_path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(
                    "Failed to remove socket file",
                    extra={"socket_path": self.socket_path, "error": str(e)},
                )

        logger.info("IPC server closed", extra={"socket_path": self.socket_path})

    def get_stats(self) -> dict[str, Any]:
        """
        Get server statistics.

        Returns:
            Dict with server state.
        """
        return {
            "socket_path": self.socket_path,
            "valid": self.is_valid,
            "init_error": self.init_error,
            "transport": self.transport.name,
            "timeout": self.timeout,
        }

    def __enter__(self) -> Server:
        """Context manager entry."""
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        """Context manager exit."""
        self.close()
