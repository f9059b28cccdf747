"""
Local socket IPC: one header/message/response exchange per connection.

This module provides the Message container and the Client and Server roles
that exchange them over a filesystem-addressed local stream socket.
"""

from local_ipc.ipc.client import Client
from local_ipc.ipc.message import Message, MessageKind
from local_ipc.ipc.protocol import (
    ACK_BYTE,
    DEFAULT_SOCKET_PATH,
    DEFAULT_TIMEOUT,
    MAX_SOCKET_PATH_LENGTH,
)
from local_ipc.ipc.server import Handler, Server
from local_ipc.ipc.transport import (
    PosixTransport,
    Transport,
    WindowsTransport,
    get_transport,
)

__all__ = [
    "ACK_BYTE",
    "DEFAULT_SOCKET_PATH",
    "DEFAULT_TIMEOUT",
    "MAX_SOCKET_PATH_LENGTH",
    "Client",
    "Handler",
    "Message",
    "MessageKind",
    "PosixTransport",
    "Server",
    "Transport",
    "WindowsTransport",
    "get_transport",
]
