#!/usr/bin/env python3
"""modelbroker CLI - share one local model between many local users.

Usage:
    modelbroker serve                       # chat process backend (llama-simple-chat)
    modelbroker serve --backend http        # completion service backend (vLLM)
    modelbroker status                      # show the running server's status
    modelbroker ask "How do I reverse a list in Python?"

Environment variables (alternative to args, also read from .env):
    BACKEND         process | http (default: process)
    MODEL_PATH      Path to the model file
    LLAMA_PATH      Chat program executable
    SOCKET_PATH     Unix socket path
    MAX_USERS       Maximum concurrent sessions (default: 10)
    CONTEXT_SIZE    Context window in tokens (default: 16384)
    MAX_TOKENS      Generation reserve in tokens (default: 1024)
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Optional

from dotenv import load_dotenv
from rich.console import Console

from .backend import BackendAdapter
from .client import BrokerClient
from .config import BACKEND_HTTP, BACKEND_KINDS, BrokerConfig, load_config
from .errors import BrokerError
from .http_backend import HttpBackend
from .process_backend import ProcessBackend
from .runtime import RuntimeInfo, get_runtime_info, write_runtime_info
from .server import BrokerServer

log = logging.getLogger("modelbroker")
console = Console()


def create_backend(config: BrokerConfig) -> BackendAdapter:
    """Build the backend adapter the config asks for."""
    if config.backend == BACKEND_HTTP:
        return HttpBackend.from_config(config)
    return ProcessBackend.from_config(config)


async def run_server(config: BrokerConfig) -> int:
    """Run the broker until a signal or backend loss. Returns exit code."""
    server = BrokerServer.from_config(config, create_backend(config))

    # Setup signal handlers
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, server.request_shutdown)

    log.info("=" * 50)
    log.info(f"modelbroker - Starting ({config.backend} backend)")
    log.info("=" * 50)
    log.info(f"Model: {config.model_path}")
    log.info(f"Context: {config.context_size} tokens ({config.max_tokens} reserved for output)")

    try:
        await server.start()
    except BrokerError as e:
        log.error(f"Startup failed: {e}")
        await server.stop()
        return 1

    write_runtime_info(config.socket_path, config.backend)
    log.info("=" * 50)
    log.info(f"Ready! Socket: {config.socket_path}")
    log.info("Press Ctrl+C to stop")
    log.info("=" * 50)

    try:
        return await server.serve_forever()
    finally:
        RuntimeInfo.clear()
        log.info("Goodbye!")


async def ask(socket_path: str, text: str, timeout: float) -> int:
    """One-shot client: connect, authenticate, send, print the answer."""
    async with BrokerClient(socket_path) as client:
        await client.authenticate()
        with console.status("Waiting for the model..."):
            answer = await client.send_message(text, timeout=timeout)
    console.print(answer)
    return 0


async def fetch_status(socket_path: str) -> dict:
    async with BrokerClient(socket_path) as client:
        status = await client.get_status()
        return {"serverInfo": client.server_info, **status.to_dict()}


def resolve_socket_path(explicit: Optional[str]) -> str:
    """Socket of the running server: flag, then runtime file, then config."""
    if explicit:
        return explicit
    info = get_runtime_info()
    if info is not None:
        return info.socket_path
    return load_config().socket_path


def main():
    """CLI entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="modelbroker",
        description="Share one local language model between many local users",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  modelbroker serve --model ./model.gguf
  modelbroker serve --backend http --no-launch --backend-url http://gpu-box:8000
  modelbroker status
  modelbroker ask "What does functools.lru_cache do?"
        """,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Start the backend and serve the socket (default)")
    serve.add_argument("--backend", choices=BACKEND_KINDS, help="Backend kind (or set BACKEND)")
    serve.add_argument("--model", dest="model_path", help="Path to the model file (or set MODEL_PATH)")
    serve.add_argument("--llama-path", help="Chat program executable (or set LLAMA_PATH)")
    serve.add_argument("--backend-url", help="Completion service URL (or set BACKEND_URL)")
    serve.add_argument("--no-launch", action="store_true", help="Use an already running completion service")
    serve.add_argument("--socket", dest="socket_path", help="Unix socket path (or set SOCKET_PATH)")
    serve.add_argument("--max-users", dest="max_sessions", type=int, help="Maximum concurrent sessions")
    serve.add_argument("--context-size", type=int, help="Context window in tokens")
    serve.add_argument("--max-tokens", type=int, help="Generation reserve in tokens")

    status = subparsers.add_parser("status", help="Show the running server's status")
    status.add_argument("--socket", dest="socket_path", help="Unix socket path")

    ask_parser = subparsers.add_parser("ask", help="Send one message and print the answer")
    ask_parser.add_argument("text", help="Message to send")
    ask_parser.add_argument("--socket", dest="socket_path", help="Unix socket path")
    ask_parser.add_argument("--timeout", type=float, default=60.0, help="Response timeout in seconds")

    args = parser.parse_args()

    # Setup logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    command = args.command or "serve"

    if command == "status":
        info = get_runtime_info()
        if info is None and not args.socket_path:
            console.print_json(json.dumps({"running": False}))
            sys.exit(1)
        socket_path = args.socket_path or info.socket_path
        try:
            status_dict = asyncio.run(fetch_status(socket_path))
        except BrokerError as e:
            console.print(f"[red]{e}[/red]")
            sys.exit(1)
        if info is not None:
            status_dict.update(info.to_status_dict())
        console.print_json(json.dumps(status_dict))
        sys.exit(0)

    if command == "ask":
        socket_path = resolve_socket_path(args.socket_path)
        try:
            exit_code = asyncio.run(ask(socket_path, args.text, args.timeout))
        except BrokerError as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(1)
        sys.exit(exit_code)

    # serve
    try:
        config = load_config(getattr(args, "backend", None)).with_overrides(
            model_path=getattr(args, "model_path", None),
            llama_path=getattr(args, "llama_path", None),
            backend_url=getattr(args, "backend_url", None),
            launch_backend=False if getattr(args, "no_launch", False) else None,
            socket_path=getattr(args, "socket_path", None),
            max_sessions=getattr(args, "max_sessions", None),
            context_size=getattr(args, "context_size", None),
            max_tokens=getattr(args, "max_tokens", None),
        )
    except ValueError as e:
        log.error(f"Invalid configuration: {e}")
        sys.exit(1)

    exit_code = asyncio.run(run_server(config))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
