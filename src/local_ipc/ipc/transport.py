"""
Socket primitives shared by the client and server roles.

The protocol code in client.py and server.py talks to a Transport only. Two
implementations cover the platforms' different ways of making a single
receive non-blocking:

- PosixTransport applies timeouts with SO_RCVTIMEO/SO_SNDTIMEO on a blocking
  socket and polls with the MSG_DONTWAIT flag.
- WindowsTransport uses the socket module's own timeout mode and switches the
  whole socket to non-blocking while draining. It is also used on any
  platform without MSG_DONTWAIT, or whose C long cannot hold a timeval
  field.

Winsock start-up is performed by the interpreter when the socket module is
imported, so no process-wide initialization happens here.
"""

from __future__ import annotations

import contextlib
import errno
import os
import selectors
import socket
import struct
import sys
import time
from abc import ABC, abstractmethod
from typing import Any

from local_ipc.errors import (
    ConfigurationError,
    IPCConnectionError,
    IPCTimeoutError,
    SocketLifecycleError,
    describe_os_error,
    os_error_code,
)
from local_ipc.ipc.protocol import (
    DEFAULT_RECV_BUFFER_SIZE,
    DEFAULT_TIMEOUT,
    MAX_SOCKET_PATH_LENGTH,
)
from local_ipc.logging import get_logger

logger = get_logger(__name__)

# struct timeval is packed as two C longs, which matches time_t only on LP64
_TIMEVAL_FITS_LONG = struct.calcsize("l") == 8


def _is_timeout(exc: OSError) -> bool:
    # An expired SO_RCVTIMEO/SO_SNDTIMEO surfaces as EAGAIN on a blocking socket
    return isinstance(exc, (TimeoutError, BlockingIOError))


class Transport(ABC):
    """
    Local stream socket operations used by Client and Server.

    Every failing call raises an IPCError subclass whose message follows the
    "<operation> failed (error: <code>)" form.
    """

    name = "base"
    max_path_length = MAX_SOCKET_PATH_LENGTH

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        """
        Initialize the transport.

        Args:
            timeout: Bound in seconds for connect, send and receive calls.
        """
        self.timeout = timeout

    # -------------------------------------------------------------------------
    # Platform hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    def set_timeouts(self, sock: socket.socket, timeout: float) -> None:
        """Bound send and receive calls on ``sock`` to ``timeout`` seconds."""

    @abstractmethod
    def _enter_nonblocking(self, sock: socket.socket) -> Any:
        """Prepare ``sock`` for non-blocking receives; return restore state."""

    @abstractmethod
    def _recv_nowait(self, sock: socket.socket, buffer_size: int) -> bytes | None:
        """Receive without waiting; None means no data is available yet."""

    @abstractmethod
    def _leave_nonblocking(self, sock: socket.socket, state: Any) -> None:
        """Undo _enter_nonblocking()."""

    @property
    def supported(self) -> bool:
        """Whether local stream sockets exist on this platform."""
        return hasattr(socket, "AF_UNIX")

    # -------------------------------------------------------------------------
    # Socket lifecycle
    # -------------------------------------------------------------------------

    def check_supported(self) -> None:
        """
        Raises:
            ConfigurationError: If the platform has no local stream sockets.
        """
        if not self.supported:
            raise ConfigurationError(
                f"local sockets are not supported on {sys.platform}",
                details={"platform": sys.platform, "transport": self.name},
            )

    def open_stream(self) -> socket.socket:
        """
        Create a local stream socket with the transport timeouts applied.

        Raises:
            SocketLifecycleError: If socket() fails.
        """
        self.check_supported()
        try:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        except OSError as e:
            raise SocketLifecycleError(
                describe_os_error("socket()", e), details={"errno": os_error_code(e)}
            ) from e

        try:
            self.set_timeouts(sock, self.timeout)
        except OSError as e:
            self.close(sock)
            raise SocketLifecycleError(
                describe_os_error("setsockopt()", e),
                details={"errno": os_error_code(e)},
            ) from e
        return sock

    def connect(self, sock: socket.socket, socket_path: str) -> None:
        """
        Connect ``sock`` to the socket at ``socket_path``.

        Raises:
            SocketLifecycleError: If connect() fails or times out.
        """
        try:
            sock.connect(socket_path)
        except OSError as e:
            raise SocketLifecycleError(
                describe_os_error("connect()", e),
                details={"socket_path": socket_path, "errno": os_error_code(e)},
            ) from e

    def bind_listen(self, sock: socket.socket, socket_path: str, backlog: int) -> None:
        """
        Bind ``sock`` to ``socket_path`` and start listening.

        A stale filesystem entry at ``socket_path`` is removed first.

        Raises:
            SocketLifecycleError: If bind() or listen() fails.
        """
        with contextlib.suppress(OSError):
            os.unlink(socket_path)

        try:
            sock.bind(socket_path)
        except OSError as e:
            raise SocketLifecycleError(
                describe_os_error("bind()", e),
                details={"socket_path": socket_path, "errno": os_error_code(e)},
            ) from e

        try:
            sock.listen(backlog)
        except OSError as e:
            raise SocketLifecycleError(
                describe_os_error("listen()", e),
                details={"socket_path": socket_path, "errno": os_error_code(e)},
            ) from e

    def wait_readable(self, sock: socket.socket, timeout: float) -> bool:
        """
        Wait up to ``timeout`` seconds for ``sock`` to become readable.

        For a listening socket, readable means a connection is pending.

        Raises:
            IPCConnectionError: If select() fails.
        """
        try:
            with selectors.DefaultSelector() as selector:
                selector.register(sock, selectors.EVENT_READ)
                ready = selector.select(timeout)
        except (OSError, ValueError) as e:
            raise IPCConnectionError(
                describe_os_error("select()", e),
                details={"errno": os_error_code(e)},
            ) from e
        return bool(ready)

    def accept(self, sock: socket.socket) -> socket.socket:
        """
        Accept one pending connection with the transport timeouts applied.

        Raises:
            SocketLifecycleError: If accept() fails.
        """
        try:
            conn, _ = sock.accept()
        except OSError as e:
            raise SocketLifecycleError(
                describe_os_error("accept()", e), details={"errno": os_error_code(e)}
            ) from e

        try:
            self.set_timeouts(conn, self.timeout)
        except OSError as e:
            self.close(conn)
            raise SocketLifecycleError(
                describe_os_error("setsockopt()", e),
                details={"errno": os_error_code(e)},
            ) from e
        return conn

    def close(self, sock: socket.socket | None) -> None:
        """Close ``sock``, ignoring errors from an already broken socket."""
        if sock is None:
            return
        with contextlib.suppress(OSError):
            sock.close()

    # -------------------------------------------------------------------------
    # Data transfer
    # -------------------------------------------------------------------------

    def send_all(
        self, sock: socket.socket, data: bytes | memoryview, operation: str = "send()"
    ) -> None:
        """
        Send every byte of ``data``.

        Args:
            sock: Connected socket.
            data: Payload to send.
            operation: Label used in the error description.

        Raises:
            IPCTimeoutError: If the peer stops reading for longer than the timeout.
            IPCConnectionError: If send() fails.
        """
        try:
            sock.sendall(data)
        except OSError as e:
            error_cls = IPCTimeoutError if _is_timeout(e) else IPCConnectionError
            raise error_cls(
                describe_os_error(operation, e),
                details={"errno": os_error_code(e), "size": len(data)},
            ) from e

    def drain_receive(
        self,
        sock: socket.socket,
        buffer_size: int = DEFAULT_RECV_BUFFER_SIZE,
        quiescence: float = 0.0,
        operation: str = "recv()",
    ) -> bytearray:
        """
        Receive everything the peer sends for one protocol step.

        The first receive blocks for at most the socket timeout. After data
        arrives, the socket is polled without blocking until it reports that
        nothing more is available or that the peer has closed. With
        ``quiescence`` > 0, "nothing available" only ends the payload once the
        socket has stayed silent for that many seconds. The whole drain after
        the first chunk is bounded by the timeout as well.

        Args:
            sock: Connected socket.
            buffer_size: Bytes requested per underlying receive call.
            quiescence: Silence in seconds that marks the end of the payload.
            operation: Label used in the error description.

        Returns:
            The received bytes. Empty when the peer closed without sending.

        Raises:
            IPCTimeoutError: If nothing arrives within the timeout, or the peer
                is still sending when the timeout runs out after the first chunk.
            IPCConnectionError: If a receive fails; partial data is discarded.
        """
        result = bytearray()

        try:
            chunk = sock.recv(buffer_size)
        except OSError as e:
            error_cls = IPCTimeoutError if _is_timeout(e) else IPCConnectionError
            raise error_cls(
                describe_os_error(operation, e), details={"errno": os_error_code(e)}
            ) from e

        if not chunk:
            return result
        result += chunk
        deadline = time.monotonic() + self.timeout

        state = self._enter_nonblocking(sock)
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise IPCTimeoutError(
                        f"{operation} failed (error: {errno.ETIMEDOUT})",
                        details={"errno": errno.ETIMEDOUT, "discarded": len(result)},
                    )
                chunk = self._recv_nowait(sock, buffer_size)
                if chunk is None:
                    if quiescence > 0 and self.wait_readable(
                        sock, min(quiescence, remaining)
                    ):
                        continue
                    break
                if not chunk:
                    break
                result += chunk
        except OSError as e:
            raise IPCConnectionError(
                describe_os_error(operation, e),
                details={"errno": os_error_code(e), "discarded": len(result)},
            ) from e
        finally:
            self._leave_nonblocking(sock, state)

        logger.debug(
            "Drained payload",
            extra={"operation": operation, "size": len(result)},
        )
        return result


class PosixTransport(Transport):
    """Transport for platforms with SO_RCVTIMEO timeouts and MSG_DONTWAIT."""

    name = "posix"

    def set_timeouts(self, sock: socket.socket, timeout: float) -> None:
        sock.setblocking(True)
        seconds = int(timeout)
        microseconds = int(round((timeout - seconds) * 1_000_000))
        timeval = struct.pack("ll", seconds, microseconds)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVTIMEO, timeval)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDTIMEO, timeval)

    def _enter_nonblocking(self, sock: socket.socket) -> None:
        return None

    def _recv_nowait(self, sock: socket.socket, buffer_size: int) -> bytes | None:
        try:
            return sock.recv(buffer_size, socket.MSG_DONTWAIT)
        except BlockingIOError:
            return None

    def _leave_nonblocking(self, sock: socket.socket, state: None) -> None:
        return None


class WindowsTransport(Transport):
    """Transport that toggles the socket's blocking mode while draining."""

    name = "windows"

    def set_timeouts(self, sock: socket.socket, timeout: float) -> None:
        sock.settimeout(timeout)

    def _enter_nonblocking(self, sock: socket.socket) -> float | None:
        previous = sock.gettimeout()
        sock.setblocking(False)
        return previous

    def _recv_nowait(self, sock: socket.socket, buffer_size: int) -> bytes | None:
        try:
            return sock.recv(buffer_size)
        except BlockingIOError:
            return None

    def _leave_nonblocking(self, sock: socket.socket, state: float | None) -> None:
        with contextlib.suppress(OSError):
            sock.settimeout(state)


def get_transport(timeout: float = DEFAULT_TIMEOUT) -> Transport:
    """
    Return the transport for the running platform.

    Args:
        timeout: Bound in seconds for connect, send and receive calls.
    """
    if (
        sys.platform != "win32"
        and hasattr(socket, "MSG_DONTWAIT")
        and _TIMEVAL_FITS_LONG
    ):
        return PosixTransport(timeout)
    return WindowsTransport(timeout)
