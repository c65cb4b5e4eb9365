"""Rig CLI — main application entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_DIR = Path.home() / ".rig" / "logs"


def _configure_logging(mode: str) -> Path:
    """Rotating file log per mode plus stderr; level from RIG_LOG_LEVEL."""
    log_level = os.getenv("RIG_LOG_LEVEL", "INFO").upper()
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / f"{mode}.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


async def _wait_for_shutdown() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    await stop.wait()


async def _run_server(args: argparse.Namespace) -> None:
    from rig.server.server import RigServer
    from rig.shared.config import ServerConfig

    logger = logging.getLogger(__name__)
    config = ServerConfig.from_env()
    server = RigServer(
        host=args.host or config.host,
        port=args.port if args.port is not None else config.port,
        agent_command=config.agent_binary,
        rig_config_path=config.rig_config_path,
        agent_settings_path=config.agent_settings_path,
    )
    await server.start()
    try:
        await _wait_for_shutdown()
    finally:
        logger.info("Stopping rig server")
        await server.stop()


async def _run_operator(args: argparse.Namespace) -> None:
    from rig.operator.config import OperatorConfig
    from rig.operator.conversations import ConversationOrchestrator
    from rig.operator.rest import OperatorApi
    from rig.operator.store import ConversationStore
    from rig.operator.watcher import NotificationWatcher

    logger = logging.getLogger(__name__)
    config = OperatorConfig.load(Path(args.config).expanduser() if args.config else None)
    Path(config.operator_cwd).mkdir(parents=True, exist_ok=True)

    orchestrator = ConversationOrchestrator(
        ConversationStore(config.store_path),
        operator_cwd=config.operator_cwd,
        default_model=config.default_model,
        session_timeout_seconds=config.session_timeout_seconds,
        command=config.agent_binary,
        extension_path=config.extension_path,
    )
    watcher = NotificationWatcher(rig_url=config.rig_url)
    api = OperatorApi(
        orchestrator,
        host=config.rest.host,
        port=args.port if args.port is not None else config.rest.port,
        bearer_token=config.rest.bearer_token,
    )
    orchestrator.on_dispatch(watcher.watch)
    watcher.on_done(api.record_session_done)

    orchestrator.start()
    await api.start()
    try:
        await _wait_for_shutdown()
    finally:
        logger.info("Stopping operator")
        await api.stop()
        await watcher.shutdown()
        await orchestrator.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="rig",
        description="Rig — dispatch and observe long-running coding agents",
    )
    sub = parser.add_subparsers(dest="mode", required=True)

    server_parser = sub.add_parser("server", help="Run the bridge server (HTTP + WebSocket)")
    server_parser.add_argument("--host", help="Bind address (default: RIG_HOST or 127.0.0.1)")
    server_parser.add_argument(
        "--port", type=int, default=None,
        help="Port (default: RIG_PORT, then rig.json, then 3100)",
    )

    operator_parser = sub.add_parser("operator", help="Run the conversation REST front door")
    operator_parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ~/rig-operator/config.yaml)",
    )
    operator_parser.add_argument("--port", type=int, default=None, help="REST port override")

    args = parser.parse_args()

    log_file = _configure_logging(args.mode)
    logging.getLogger(__name__).info(
        "Starting rig %s cwd=%s log=%s", args.mode, Path.cwd(), log_file,
    )

    runner = _run_server if args.mode == "server" else _run_operator
    try:
        asyncio.run(runner(args))
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    main()
