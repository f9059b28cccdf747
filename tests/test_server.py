"""
Tests for the IPC server.

This test module validates:
- Construction, including stored construction errors
- listen() failures and how they are reported to the handler
- stop_listening() and serve()
- Teardown of the socket file
"""

from __future__ import annotations

import errno
import socket
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from local_ipc.ipc.message import Message
from local_ipc.ipc.protocol import MAX_SOCKET_PATH_LENGTH
from local_ipc.ipc.server import Server

pytestmark = pytest.mark.skipif(
    not hasattr(socket, "AF_UNIX"), reason="local sockets unavailable"
)


def _raw_connect(socket_path: str) -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(2.0)
    sock.connect(socket_path)
    return sock


# =============================================================================
# Construction Tests
# =============================================================================


class TestServerInit:
    """Tests for Server construction."""

    def test_binds_socket(self, socket_path: str) -> None:
        """Test that the socket file exists after construction."""
        with Server(socket_path) as server:
            assert server.is_valid is True
            assert server.init_error is None
            assert Path(socket_path).exists()

    def test_creates_parent_directories(self, socket_dir: Path) -> None:
        """Test that missing parent directories are created."""
        path = socket_dir / "a" / "b" / "server.sock"
        with Server(path) as server:
            assert server.is_valid is True
            assert path.exists()

    def test_replaces_stale_entry(self, socket_path: str) -> None:
        """Test that a stale file at the socket path is replaced."""
        Path(socket_path).write_text("stale")
        with Server(socket_path) as server:
            assert server.is_valid is True

    def test_long_path_is_stored(self, socket_dir: Path) -> None:
        """Test that an oversized path leaves the server invalid."""
        path = str(socket_dir / ("x" * MAX_SOCKET_PATH_LENGTH))
        server = Server(path)
        assert server.is_valid is False
        assert server.init_error == f"socket path too long: {path}"

    def test_directory_failure_is_stored(self, socket_dir: Path) -> None:
        """Test that a directory creation failure does not raise."""
        blocker = socket_dir / "blocker"
        blocker.write_text("x")
        server = Server(blocker / "server.sock")
        assert server.is_valid is False
        assert "failed to create socket directory" in server.init_error

    def test_from_config(self, socket_path: str) -> None:
        """Test server creation from config."""
        config = MagicMock()
        config.socket_path = socket_path
        config.timeout_seconds = 0.5
        config.recv_buffer_size = 32
        config.quiescence_seconds = 0.0
        config.backlog = 4

        with Server.from_config(config) as server:
            assert server.timeout == 0.5
            assert server.recv_buffer_size == 32
            assert server.backlog == 4
            assert server.is_valid is True

    def test_get_stats(self, socket_path: str) -> None:
        """Test the statistics dictionary."""
        with Server(socket_path) as server:
            stats = server.get_stats()
        assert stats["socket_path"] == socket_path
        assert stats["valid"] is True
        assert stats["init_error"] is None


# =============================================================================
# listen() Failure Tests
# =============================================================================


class TestServerListenFailures:
    """Tests for listen() failure reporting."""

    def test_invalid_server_reports_immediately(
        self, socket_dir: Path, recording_handler
    ) -> None:
        """Test that listen() on an invalid server returns without waiting."""
        path = str(socket_dir / ("x" * MAX_SOCKET_PATH_LENGTH))
        server = Server(path, timeout=2.0)

        start = time.monotonic()
        result = server.listen(recording_handler)
        elapsed = time.monotonic() - start

        assert elapsed < 0.5
        assert result.is_error is True
        assert path in result.as_string()
        assert recording_handler.errors == [result]
        assert recording_handler.calls == []

    def test_invalid_server_passes_empty_header(self, socket_dir: Path) -> None:
        """Test the arguments given to the handler for a stored error."""
        handler = MagicMock(return_value=Message())
        server = Server(str(socket_dir / ("x" * MAX_SOCKET_PATH_LENGTH)))

        server.listen(handler)

        header, message = handler.call_args.args
        assert header.size == 0
        assert message.is_error is True

    def test_wait_timeout(self, socket_path: str, recording_handler) -> None:
        """Test that no client within the bound is a reported timeout."""
        with Server(socket_path, timeout=0.2) as server:
            result = server.listen(recording_handler)

        assert result.is_error is True
        assert result.as_string() == f"select() failed (error: {errno.ETIMEDOUT})"
        assert recording_handler.errors == [result]

    def test_header_timeout(self, socket_path: str, recording_handler) -> None:
        """Test a client that connects but never sends a header."""
        with Server(socket_path, timeout=0.3) as server:
            client = _raw_connect(socket_path)
            try:
                result = server.listen(recording_handler)
            finally:
                client.close()

        assert result.is_error is True
        assert result.as_string().startswith("header recv() failed (error: ")
        assert recording_handler.errors == [result]
        assert recording_handler.calls == []

    def test_trickling_header_is_bounded(self, socket_path: str, recording_handler) -> None:
        """Test that a client that never stops sending cannot hold listen() open."""
        stop = threading.Event()

        with Server(socket_path, timeout=1.0, quiescence=0.3) as server:
            client = _raw_connect(socket_path)

            def trickle() -> None:
                deadline = time.monotonic() + 6.0
                while not stop.is_set() and time.monotonic() < deadline:
                    try:
                        client.sendall(b"a")
                    except OSError:
                        return
                    time.sleep(0.1)

            thread = threading.Thread(target=trickle)
            thread.start()
            start = time.monotonic()
            try:
                result = server.listen(recording_handler)
                elapsed = time.monotonic() - start
            finally:
                stop.set()
                thread.join()
                client.close()

        assert elapsed < 3.0
        assert result.as_string() == f"header recv() failed (error: {errno.ETIMEDOUT})"
        assert recording_handler.errors == [result]
        assert recording_handler.calls == []

    def test_message_missing(self, socket_path: str, recording_handler) -> None:
        """Test a client that closes after the acknowledgement."""
        with Server(socket_path, timeout=1.0) as server:
            client = _raw_connect(socket_path)

            def script() -> None:
                client.sendall(b"header")
                assert client.recv(1) == b"\x01"
                client.close()

            thread = threading.Thread(target=script)
            thread.start()
            result = server.listen(recording_handler)
            thread.join()

        assert result.is_error is True
        assert result.as_string().startswith("message recv() failed")
        assert recording_handler.calls == []

    def test_handler_exception(self, socket_path: str) -> None:
        """Test that a raising handler is reported and nothing is sent."""
        errors: list[Message] = []

        def handler(header: Message, message: Message) -> Message:
            if message.is_error:
                errors.append(message)
                return Message()
            raise ValueError("boom")

        with Server(socket_path, timeout=1.0) as server:
            client = _raw_connect(socket_path)

            def script() -> None:
                client.sendall(b"header")
                client.recv(1)
                client.sendall(b"message")

            thread = threading.Thread(target=script)
            thread.start()
            result = server.listen(handler)
            thread.join()
            assert client.recv(16) == b""
            client.close()

        assert result.as_string() == "handler failed: ValueError: boom"
        assert errors == [result]

    def test_empty_response_not_sent(self, socket_path: str, recording_handler) -> None:
        """Test that an empty handler response is an error."""
        recording_handler.response = Message()

        with Server(socket_path, timeout=1.0) as server:
            client = _raw_connect(socket_path)

            def script() -> None:
                client.sendall(b"header")
                client.recv(1)
                client.sendall(b"message")

            thread = threading.Thread(target=script)
            thread.start()
            result = server.listen(recording_handler)
            thread.join()
            client.close()

        assert result.as_string() == "response can not be empty"
        assert len(recording_handler.calls) == 1


# =============================================================================
# Stop Tests
# =============================================================================


class TestServerStop:
    """Tests for stop_listening() and serve()."""

    def test_stop_unblocks_listen(self, socket_path: str, recording_handler) -> None:
        """Test that stop_listening() ends a blocked listen() without the handler."""
        results: list[Message] = []

        with Server(socket_path, timeout=2.0) as server:
            thread = threading.Thread(
                target=lambda: results.append(server.listen(recording_handler))
            )
            thread.start()
            time.sleep(0.1)

            start = time.monotonic()
            assert server.stop_listening() is True
            thread.join(timeout=3.0)
            elapsed = time.monotonic() - start

        assert not thread.is_alive()
        assert elapsed < 1.0
        assert len(results) == 1
        assert results[0].is_error is True
        assert recording_handler.calls == []
        assert recording_handler.errors == []

    def test_stop_invalid_server(self, socket_dir: Path) -> None:
        """Test that stop_listening() fails when there is nothing to connect to."""
        server = Server(str(socket_dir / ("x" * MAX_SOCKET_PATH_LENGTH)))
        assert server.stop_listening() is False

    def test_serve_stops(self, socket_path: str, recording_handler) -> None:
        """Test that serve() returns after stop_listening()."""
        with Server(socket_path, timeout=0.2) as server:
            thread = threading.Thread(target=server.serve, args=(recording_handler,))
            thread.start()
            time.sleep(0.5)
            assert server.stop_listening() is True
            thread.join(timeout=3.0)
            assert not thread.is_alive()

    def test_serve_returns_for_invalid_server(self, socket_dir: Path, recording_handler) -> None:
        """Test that serve() does not spin on an invalid server."""
        server = Server(str(socket_dir / ("x" * MAX_SOCKET_PATH_LENGTH)))
        server.serve(recording_handler)
        assert len(recording_handler.errors) == 1


# =============================================================================
# Teardown Tests
# =============================================================================


class TestServerClose:
    """Tests for close()."""

    def test_close_removes_socket_file(self, socket_path: str) -> None:
        """Test that close() removes the socket file."""
        server = Server(socket_path)
        server.close()
        assert not Path(socket_path).exists()
        assert server.is_valid is False

    def test_close_is_idempotent(self, socket_path: str) -> None:
        """Test that close() can be called twice."""
        server = Server(socket_path)
        server.close()
        server.close()

    def test_listen_after_close(self, socket_path: str, recording_handler) -> None:
        """Test that listen() after close() reports an error."""
        server = Server(socket_path)
        server.close()
        result = server.listen(recording_handler)
        assert result.is_error is True
        assert result.as_string() == "server socket is closed"
