"""
Command-line interface for the local IPC transport.

Commands:
- serve: bind a socket and answer every request until SIGINT/SIGTERM
- send: perform one exchange and print the response
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from typing import Any

from local_ipc.config import AppConfig, load_config
from local_ipc.ipc.client import Client
from local_ipc.ipc.message import Message
from local_ipc.ipc.server import Handler, Server
from local_ipc.logging import get_logger, setup_logging

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the local-ipc command."""
    parser = argparse.ArgumentParser(
        prog="local-ipc",
        description="One-shot request/response messaging over a local socket",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--config", "-c", type=str, help="Path to configuration file")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--timeout", type=float, help="Override the socket timeout in seconds"
    )
    parser.add_argument("--socket", "-s", type=str, help="Socket path")

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Answer requests until interrupted")
    serve.add_argument(
        "--response",
        type=str,
        default=None,
        help="Fixed response text (default: echo the message)",
    )

    send = subparsers.add_parser("send", help="Send one header and message")
    send.add_argument("header", type=str, help="Header text")
    send.add_argument("message", type=str, help="Message text")

    return parser


def _overrides(parsed: argparse.Namespace) -> dict[str, Any]:
    result: dict[str, Any] = {}
    if parsed.socket:
        result.setdefault("ipc", {})["socket_path"] = parsed.socket
    if parsed.timeout is not None:
        result.setdefault("ipc", {})["timeout_seconds"] = parsed.timeout
    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}
    return result


def make_responder(response: str | None) -> Handler:
    """
    Build the handler used by ``serve``.

    Args:
        response: Fixed response text, or None to echo each message back.
    """

    def handler(header: Message, message: Message) -> Message:
        if message.is_error:
            logger.debug("Listen reported an error", extra={"error": message.as_string()})
            return Message()
        logger.info(
            "Request received",
            extra={"header_size": header.size, "message_size": message.size},
        )
        if response is None:
            return Message(message.as_raw())
        return Message.from_string(response)

    return handler


def run_server(config: AppConfig, response: str | None = None) -> int:
    """
    Serve requests until SIGINT or SIGTERM.

    Returns:
        Process exit code.
    """
    with Server.from_config(config.ipc) as server:
        if not server.is_valid:
            logger.error("Cannot start server", extra={"error": server.init_error})
            return 1

        def signal_handler(signum: int, frame: Any) -> None:
            logger.info("Received shutdown signal", extra={"signal": signum})
            server.stop_listening()

        if threading.current_thread() is threading.main_thread():
            for sig in (signal.SIGTERM, signal.SIGINT):
                signal.signal(sig, signal_handler)

        server.serve(make_responder(response))
    return 0


def run_send(config: AppConfig, header: str, message: str) -> int:
    """
    Send one request and print the response.

    Returns:
        Process exit code.
    """
    client = Client.from_config(config.ipc)
    response = client.send(header, message)
    if response.is_error:
        print(response.as_string(), file=sys.stderr)
        return 1
    print(response.as_string())
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the local-ipc command."""
    parsed = build_parser().parse_args(argv)
    config = load_config(config_path=parsed.config, overrides=_overrides(parsed))
    setup_logging(config.logging)

    if parsed.command == "serve":
        return run_server(config, parsed.response)
    return run_send(config, parsed.header, parsed.message)
