"""
Wire protocol definitions for the local IPC transport.

Each connection carries exactly one exchange:

    client -> server   header bytes
    server -> client   acknowledgement (a single 0x01 byte)
    client -> server   message bytes
    server -> client   response bytes

There are no length prefixes. The end of each payload is inferred from the
sender falling silent (see Transport.drain_receive).
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from local_ipc.errors import ConfigurationError

# =============================================================================
# Protocol Constants
# =============================================================================

# Single byte sent by the server after the header has been received
ACK_BYTE = 1
ACK = bytes([ACK_BYTE])

# Default bound for connect, send, receive and the server's connection wait
DEFAULT_TIMEOUT = 2.0

# Bytes requested by a single underlying recv() call
DEFAULT_RECV_BUFFER_SIZE = 512

# Default socket path
DEFAULT_SOCKET_PATH = "/tmp/local-ipc/ipc.sock"

# Size of sockaddr_un.sun_path per platform family
if sys.platform.startswith(("darwin", "freebsd", "openbsd", "netbsd", "dragonfly")):
    MAX_SOCKET_PATH_LENGTH = 104
else:
    MAX_SOCKET_PATH_LENGTH = 108


# =============================================================================
# Address Handling
# =============================================================================


def resolve_socket_path(socket_path: str | os.PathLike[str]) -> str:
    """Return the socket path as a plain string."""
    return os.fspath(socket_path)


def validate_socket_path(
    socket_path: str, max_length: int = MAX_SOCKET_PATH_LENGTH
) -> None:
    """
    Check that a socket path fits in the platform's local socket address.

    Args:
        socket_path: Filesystem path of the socket.
        max_length: Maximum encoded length accepted by the platform.

    Raises:
        ConfigurationError: If the path is too long.
    """
    encoded_length = len(os.fsencode(socket_path))
    if encoded_length > max_length:
        raise ConfigurationError(
            f"socket path too long: {socket_path}",
            details={
                "socket_path": socket_path,
                "length": encoded_length,
                "max_length": max_length,
            },
        )


def ensure_socket_directory(socket_path: str) -> None:
    """
    Create the parent directories of a socket path if absent.

    Raises:
        ConfigurationError: If a directory cannot be created.
    """
    parent = Path(socket_path).parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(
            f"failed to create socket directory: {parent} ({e.strerror or e})",
            details={"directory": str(parent), "errno": e.errno},
        ) from e


def is_acknowledgement(data: bytes | bytearray) -> bool:
    """Return True if a received payload is a valid acknowledgement."""
    return len(data) > 0 and data[0] == ACK_BYTE
