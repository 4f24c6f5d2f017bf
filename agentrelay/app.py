"""agentrelay CLI: main application entry point."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from agentrelay.engine.config import BrokerConfig

LOG_DIR = Path.home() / ".agentrelay" / "logs"


def _configure_server_logging(level: str) -> Path:
    """Rotating file log plus stderr, shared format."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / "agentrelay-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
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


def load_config(config_path: str | None) -> BrokerConfig:
    config = BrokerConfig.from_env()
    if config_path:
        from agentrelay.engine.yaml_config import load_yaml_config

        config = load_yaml_config(Path(config_path), base=config)
    return config


def _cmd_serve(config: BrokerConfig, config_path: str | None) -> int:
    from agentrelay.web.server import RelayServer

    log_file = _configure_server_logging(config.log_level)
    logging.getLogger(__name__).info(
        "Starting agentrelay server cwd=%s host=%s port=%s config=%s log=%s",
        Path.cwd(), config.host, config.port, config_path or "<none>", log_file,
    )
    server = RelayServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass
    return 0


def _cmd_list(config: BrokerConfig, limit: int, project: str | None) -> int:
    from agentrelay.adapters.status_registry import SessionStatusRegistry
    from agentrelay.shared.services.conversations import ConversationCatalog
    from agentrelay.shared.services.history_reader import ClaudeHistoryReader

    catalog = ConversationCatalog(
        ClaudeHistoryReader(config.projects_dir), SessionStatusRegistry(),
    )
    conversations, total = asyncio.run(
        catalog.list_conversations(project_path=project, limit=limit)
    )
    if not conversations:
        print("No conversations.")
        return 0
    for summary in conversations:
        print(f"  {summary.conversation_id}  {summary.updated_at}  {summary.summary}")
    if total > len(conversations):
        print(f"  ... {total - len(conversations)} more")
    return 0


async def _fetch_server_status(config: BrokerConfig) -> dict | None:
    import aiohttp

    url = f"http://{config.host}:{config.port}/api/system/status"
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=3)) as session:
            async with session.get(url) as resp:
                if resp.status != 200:
                    return None
                return await resp.json()
    except (aiohttp.ClientError, asyncio.TimeoutError):
        return None


def _cmd_status(config: BrokerConfig) -> int:
    """Registry and cache stats from a running server, else from local history."""
    from agentrelay.adapters.status_registry import SessionStatusRegistry
    from agentrelay.shared.services.history_reader import ClaudeHistoryReader

    status = asyncio.run(_fetch_server_status(config))
    if status is None:
        reader = ClaudeHistoryReader(config.projects_dir)
        chains = asyncio.run(reader.list_chains())
        status = {
            "server": "not running",
            "agent_home": str(config.agent_home),
            "conversations": len(chains),
            "registry": SessionStatusRegistry().stats(),
            "history_cache": reader.cache.stats(),
        }
    print(json.dumps(status, indent=2))
    return 0


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentrelay",
        description="Session broker for a command-line AI agent",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file overlaid on RELAY_* environment settings",
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP + SSE server")
    serve.add_argument("--host", help="Bind address (default from RELAY_HOST)")
    serve.add_argument("--port", type=int, help="Port (default from RELAY_PORT)")
    serve.add_argument(
        "--config", metavar="PATH", default=argparse.SUPPRESS,
        help="YAML config file (same as the top-level --config)",
    )

    list_cmd = sub.add_parser("list", help="List conversations from the agent's history")
    list_cmd.add_argument("--limit", type=int, default=20, help="Maximum entries to show")
    list_cmd.add_argument("--project", metavar="PATH", help="Only conversations in this directory")

    sub.add_parser("status", help="Print registry and history cache statistics as JSON")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(2)

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s %(message)s")
    config = load_config(args.config)

    if args.command == "serve":
        if args.host:
            config.host = args.host
        if args.port is not None:
            config.port = args.port
        sys.exit(_cmd_serve(config, args.config))
    if args.command == "list":
        sys.exit(_cmd_list(config, args.limit, args.project))
    sys.exit(_cmd_status(config))


if __name__ == "__main__":
    main()
