"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via TOOLBRIDGE_* env vars,
a YAML file (see yaml_config.py), or CLI flags.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for real-time turn observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

_TRUE_VALUES = {"1", "true", "yes", "on"}


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set; errors are logged, never raised."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        # Never let observer errors break a turn
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class AgentConfig:
    """Agent subprocess and server configuration."""

    # Agent CLI executable (name on PATH or absolute path)
    command: str = "claude"
    # Working directory the agent runs in (the user's project)
    cwd: str = "."
    # Unattended mode: bypass interactive permission prompts
    skip_permissions: bool = False
    append_system_prompt: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    model: str | None = None
    # Resume the agent's previous session id on the next turn of a chat
    resume_sessions: bool = True

    # Server
    host: str = "127.0.0.1"
    port: int = 3100
    # Port of the user's dev server; enables proxying when set
    app_port: int | None = None
    # Built toolbar app served at the toolbar prefix
    toolbar_dir: str | None = None

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> AgentConfig:
        """Load configuration from TOOLBRIDGE_* environment variables."""
        bridge_vars = {
            k: v for k, v in os.environ.items() if k.startswith("TOOLBRIDGE_")
        }
        if bridge_vars:
            logger.info(
                "AgentConfig.from_env: TOOLBRIDGE_* env overrides: %s",
                ", ".join(sorted(bridge_vars)),
            )
        else:
            logger.debug("AgentConfig.from_env: no TOOLBRIDGE_* env vars set, using defaults")

        app_port = os.getenv("TOOLBRIDGE_APP_PORT")
        config = cls(
            command=os.getenv("TOOLBRIDGE_CLAUDE_COMMAND", cls.command),
            cwd=os.getenv("TOOLBRIDGE_CWD", cls.cwd),
            skip_permissions=_env_bool(
                "TOOLBRIDGE_SKIP_PERMISSIONS", cls.skip_permissions
            ),
            append_system_prompt=os.getenv("TOOLBRIDGE_APPEND_SYSTEM_PROMPT") or None,
            allowed_tools=_env_list("TOOLBRIDGE_ALLOWED_TOOLS"),
            model=os.getenv("TOOLBRIDGE_MODEL") or None,
            resume_sessions=_env_bool(
                "TOOLBRIDGE_RESUME_SESSIONS", cls.resume_sessions
            ),
            host=os.getenv("TOOLBRIDGE_HOST", cls.host),
            port=int(os.getenv("TOOLBRIDGE_PORT", str(cls.port))),
            app_port=int(app_port) if app_port else None,
            toolbar_dir=os.getenv("TOOLBRIDGE_TOOLBAR_DIR") or None,
            log_level=os.getenv("TOOLBRIDGE_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "AgentConfig.from_env: command=%s cwd=%s skip_permissions=%s log_level=%s",
            config.command, config.cwd, config.skip_permissions, config.log_level,
        )
        return config
