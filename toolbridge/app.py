"""toolbridge CLI: main application entry point."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler

from toolbridge.engine.config import AgentConfig
from toolbridge.engine.stream_decoder import READ_CHUNK_SIZE, decode_lines

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def _setup_logging(level: str) -> Path:
    """Configure the root logger with a rotating file and stderr."""
    log_dir = Path.home() / ".toolbridge" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "toolbridge.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _apply_cli_overrides(config: AgentConfig, args) -> AgentConfig:
    overrides = {}
    if args.cwd:
        overrides["cwd"] = args.cwd
    if args.command:
        overrides["command"] = args.command
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.app_port is not None:
        overrides["app_port"] = args.app_port
    if args.toolbar_dir:
        overrides["toolbar_dir"] = args.toolbar_dir
    if args.skip_permissions:
        overrides["skip_permissions"] = True
    if args.append_system_prompt:
        overrides["append_system_prompt"] = args.append_system_prompt
    if args.allowed_tools:
        overrides["allowed_tools"] = [
            t.strip() for t in args.allowed_tools.split(",") if t.strip()
        ]
    if args.model:
        overrides["model"] = args.model
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    return dataclasses.replace(config, **overrides)


def resolve_config(args) -> AgentConfig:
    """Env defaults, then the YAML file, then CLI flags."""
    config = AgentConfig.from_env()
    config_path = args.config
    if not config_path:
        auto_yaml = Path(args.cwd or config.cwd) / ".toolbridge.yaml"
        if auto_yaml.exists():
            config_path = str(auto_yaml)
            logger.info("Auto-discovered config: %s", config_path)
    if config_path:
        from toolbridge.engine.yaml_config import load_yaml_config

        config = load_yaml_config(config_path, base=config)
    return _apply_cli_overrides(config, args)


def load_agent(config: AgentConfig):
    """Construct and initialize the process-wide agent."""
    from toolbridge.engine.agent import ToolbarAgent

    agent = ToolbarAgent(config)
    agent.initialize()
    return agent


async def shutdown_agent(agent) -> None:
    """Abort the agent's running turn and release its subprocess."""
    await agent.shutdown()


async def _serve(config: AgentConfig) -> None:
    from toolbridge.server.server import AgentServer

    agent = load_agent(config)
    server = AgentServer(agent, config)
    try:
        await server.start()
    finally:
        await shutdown_agent(agent)


def replay(path: str | Path, out=None) -> int:
    """Decode a captured stream-json transcript, one event per line to *out*."""
    out = out or sys.stdout
    count = 0
    with open(path, "rb") as f:
        chunks = iter(lambda: f.read(READ_CHUNK_SIZE), b"")
        for event in decode_lines(chunks):
            fields = dataclasses.asdict(event)
            fields.pop("raw", None)
            out.write(json.dumps(fields, default=str, ensure_ascii=False) + "\n")
            count += 1
    logger.info("Replayed %d event(s) from %s", count, path)
    return count


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="toolbridge",
        description="toolbridge: browser toolbar bridge to a coding agent CLI",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: .toolbridge.yaml in the project if present)",
    )
    parser.add_argument("--cwd", metavar="DIR", help="Project directory the agent runs in")
    parser.add_argument("--command", metavar="EXE", help="Agent CLI executable")
    parser.add_argument("--host", help="Server bind address")
    parser.add_argument(
        "--port", type=int, default=None,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--app-port", type=int, default=None,
        help="Port of the dev server to proxy to",
    )
    parser.add_argument(
        "--toolbar-dir", metavar="DIR",
        help="Directory holding the built toolbar app",
    )
    parser.add_argument(
        "--skip-permissions", action="store_true",
        help="Run the agent without interactive permission prompts",
    )
    parser.add_argument(
        "--append-system-prompt", metavar="TEXT",
        help="Extra system prompt text passed to the agent",
    )
    parser.add_argument(
        "--allowed-tools", metavar="LIST",
        help="Comma separated list of tools the agent may use",
    )
    parser.add_argument("--model", help="Model identifier passed to the agent")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    parser.add_argument(
        "--replay", metavar="FILE",
        help="Decode a captured stream-json transcript, print its events and exit",
    )
    args = parser.parse_args()

    if args.replay:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else logging.WARNING,
            format=LOG_FORMAT,
        )
        replay(args.replay)
        sys.exit(0)

    config = resolve_config(args)
    log_file = _setup_logging(config.log_level)
    logger.info(
        "Starting toolbridge cwd=%s port=%s app_port=%s config=%s log=%s",
        os.path.abspath(config.cwd), config.port, config.app_port,
        args.config or "<none>", log_file,
    )

    try:
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    sys.exit(0)


if __name__ == "__main__":
    main()
