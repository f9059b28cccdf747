"""
IPC client for the local socket transport.

Each call to Client.send() performs one complete exchange on a fresh
connection:

1. connect to the server's socket path
2. send the header
3. wait for the one-byte acknowledgement
4. send the message
5. receive the response
6. close the connection

Failures never raise; they are returned as error-flagged Message objects.
"""

from __future__ import annotations

import os
import threading
from typing import TYPE_CHECKING

from local_ipc.errors import (
    IPCConnectionError,
    IPCError,
    PreconditionError,
    ProtocolError,
    os_error_code,
)
from local_ipc.ipc.message import BytesLike, Message
from local_ipc.ipc.protocol import (
    DEFAULT_RECV_BUFFER_SIZE,
    DEFAULT_TIMEOUT,
    is_acknowledgement,
    resolve_socket_path,
    validate_socket_path,
)
from local_ipc.ipc.transport import Transport, get_transport
from local_ipc.logging import get_logger

if TYPE_CHECKING:
    from local_ipc.config import IPCConfig

logger = get_logger(__name__)


class Client:
    """
    Client side of the local IPC transport.

    The socket path is validated once at construction. A failure there is
    stored and returned from every later send() without touching the network.
    send() may be called from many threads; exchanges on one Client are
    serialized by an internal lock.

    Attributes:
        socket_path: Path of the server's socket.
        timeout: Bound in seconds for connect, send and each receive.
        init_error: Description of a construction failure, or None.

    Example:
        >>> client = Client("/tmp/local-ipc/ipc.sock")
        >>> response = client.send("header", "Hello?")
        >>> if not response.is_error:
        ...     print(response.as_string())
    """

    def __init__(
        self,
        socket_path: str | os.PathLike[str],
        timeout: float = DEFAULT_TIMEOUT,
        recv_buffer_size: int = DEFAULT_RECV_BUFFER_SIZE,
        quiescence: float = 0.0,
        transport: Transport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            socket_path: Path of the server's socket.
            timeout: Bound in seconds for connect, send and each receive.
            recv_buffer_size: Bytes requested per underlying receive call.
            quiescence: Silence in seconds that ends a drained payload.
            transport: Socket primitives (platform default if not provided).
        """
        self.socket_path = resolve_socket_path(socket_path)
        self.timeout = timeout
        self.recv_buffer_size = recv_buffer_size
        self.quiescence = quiescence
        self.transport = transport if transport is not None else get_transport(timeout)
        self.init_error: str | None = None

        self._send_lock = threading.Lock()

        try:
            self.transport.check_supported()
            validate_socket_path(self.socket_path, self.transport.max_path_length)
        except IPCError as e:
            self.init_error = e.message
            logger.error(
                "IPC client configuration invalid",
                extra={"socket_path": self.socket_path, "error": e.message},
            )

    @classmethod
    def from_config(cls, config: IPCConfig) -> Client:
        """
        Create a client from configuration.

        Args:
            config: IPC section of AppConfig.

        Returns:
            Configured Client instance.
        """
        return cls(
            socket_path=config.socket_path,
            timeout=config.timeout_seconds,
            recv_buffer_size=config.recv_buffer_size,
            quiescence=config.quiescence_seconds,
        )

    def send(
        self,
        header: Message | BytesLike | str,
        message: Message | BytesLike | str,
    ) -> Message:
        """
        Send a header and message and return the server's response.

        Args:
            header: Non-empty header payload.
            message: Non-empty message payload.

        Returns:
            The response as a non-error Message (empty if no response
            arrived), or an error Message describing the failed step.
        """
        if self.init_error is not None:
            return Message.error(self.init_error)

        with self._send_lock:
            try:
                header_msg = self._prepare_payload("header", header)
                message_msg = self._prepare_payload("message", message)
                return self._exchange(header_msg, message_msg)
            except IPCError as e:
                logger.warning(
                    "IPC send failed",
                    extra={
                        "socket_path": self.socket_path,
                        "error_code": e.error_code,
                        "error": e.message,
                    },
                )
                return e.to_message()

    @staticmethod
    def _prepare_payload(name: str, value: Message | BytesLike | str) -> Message:
        try:
            payload = Message.coerce(value)
        except (TypeError, UnicodeEncodeError) as e:
            raise PreconditionError(
                f"{name} can not be encoded: {e}",
                details={"type": type(value).__name__},
            ) from e
        if payload.size == 0:
            raise PreconditionError(f"{name} can not be empty")
        return payload

    def _exchange(self, header: Message, message: Message) -> Message:
        transport = self.transport
        sock = transport.open_stream()
        try:
            transport.connect(sock, self.socket_path)
            logger.debug("IPC connected", extra={"socket_path": self.socket_path})

            transport.send_all(sock, header.as_raw(), operation="header send()")

            try:
                ack = transport.drain_receive(
                    sock, self.recv_buffer_size, self.quiescence, operation="ack recv()"
                )
            except IPCConnectionError as e:
                raise ProtocolError(e.message, details=e.details) from e
            if not is_acknowledgement(ack):
                raise ProtocolError(
                    "ack recv() failed (error: 0)",
                    details={"received": bytes(ack[:16])},
                )

            transport.send_all(sock, message.as_raw(), operation="message send()")

            try:
                response = transport.drain_receive(
                    sock,
                    self.recv_buffer_size,
                    self.quiescence,
                    operation="response recv()",
                )
            except IPCConnectionError as e:
                logger.warning(
                    "IPC response not received",
                    extra={
                        "socket_path": self.socket_path,
                        "error": e.message,
                        "errno": os_error_code(e.__cause__ or e),
                    },
                )
                return Message()

            logger.debug(
                "IPC exchange complete",
                extra={"socket_path": self.socket_path, "size": len(response)},
            )
            return Message.from_buffer(response)
        finally:
            transport.close(sock)
