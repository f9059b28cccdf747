"""
Pytest configuration for the local IPC tests.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest

from local_ipc.ipc.message import Message


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


@pytest.fixture
def socket_dir() -> Iterator[Path]:
    """
    Short-lived directory for socket files.

    pytest's tmp_path can exceed the local socket address limit, so sockets
    live in a short directory under the system temp dir instead.
    """
    path = Path(tempfile.mkdtemp(prefix="ipc-"))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def socket_path(socket_dir: Path) -> str:
    """Socket path inside socket_dir."""
    return str(socket_dir / "server.sock")


@pytest.fixture(autouse=True)
def _cleanup_loggers() -> Iterator[None]:
    """Remove handlers installed by setup_logging() (autouse fixture)."""
    yield
    logger = logging.getLogger("local_ipc")
    logger.handlers.clear()
    logger.propagate = True


class RecordingHandler:
    """Handler that records every call and answers with a fixed response."""

    def __init__(self, response: Message | bytes | str = "Unix Domain Sockets!") -> None:
        self.response = Message.coerce(response)
        self.calls: list[tuple[Message, Message]] = []
        self.errors: list[Message] = []

    def __call__(self, header: Message, message: Message) -> Message:
        if message.is_error:
            self.errors.append(message)
            return Message()
        self.calls.append((header, message))
        return self.response


@pytest.fixture
def recording_handler() -> RecordingHandler:
    """A fresh RecordingHandler."""
    return RecordingHandler()
