"""YAML configuration loader.

Loads a single YAML file layered over the env-var configuration.
Values of the form ``${VAR}`` are expanded from the environment.

Example YAML:
    agent:
      command: claude
      cwd: /path/to/project
      skip_permissions: true
      append_system_prompt: |
        Prefer small, focused edits.
      allowed_tools: [Read, Edit, Grep, Glob]
      model: claude-sonnet-4-5
      resume_sessions: true

    server:
      host: 127.0.0.1
      port: 3100
      app_port: 3000
      toolbar_dir: /opt/toolbar/dist

    log_level: DEBUG
"""
from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .config import AgentConfig

logger = logging.getLogger(__name__)

_AGENT_KEYS = {
    "command", "cwd", "skip_permissions", "append_system_prompt",
    "allowed_tools", "model", "resume_sessions",
}
_SERVER_KEYS = {"host", "port", "app_port", "toolbar_dir"}


def _expand(value: Any) -> Any:
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, list):
        return [_expand(v) for v in value]
    return value


def _coerce(key: str, value: Any) -> Any:
    if value is None:
        return None
    if key in ("skip_permissions", "resume_sessions"):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if key in ("port", "app_port"):
        return int(value)
    if key == "allowed_tools":
        if isinstance(value, str):
            return [t.strip() for t in value.split(",") if t.strip()]
        return [str(t) for t in value]
    return str(value)


def _section(raw: dict, name: str, allowed: set[str], path: Path) -> dict[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        logger.warning(
            "load_yaml_config: section '%s' in %s is not a mapping, ignoring",
            name, path,
        )
        return {}
    values: dict[str, Any] = {}
    for key, value in section.items():
        if key not in allowed:
            logger.warning(
                "load_yaml_config: unknown key '%s.%s' in %s, ignoring",
                name, key, path,
            )
            continue
        values[key] = _coerce(key, _expand(value))
    return values


def load_yaml_config(
    path: str | Path,
    base: AgentConfig | None = None,
) -> AgentConfig:
    """Load *path* and apply it on top of *base* (defaults to env config).

    Raises FileNotFoundError / yaml.YAMLError so the caller can decide
    whether a bad config file is fatal.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise yaml.YAMLError(f"Top level of {path} must be a mapping")

    overrides = {
        **_section(raw, "agent", _AGENT_KEYS, path),
        **_section(raw, "server", _SERVER_KEYS, path),
    }
    if raw.get("log_level"):
        overrides["log_level"] = str(raw["log_level"]).upper()

    config = dataclasses.replace(base or AgentConfig.from_env(), **overrides)
    logger.info(
        "Parsed YAML config %s: overrides: %s",
        path.name, ", ".join(sorted(overrides)) if overrides else "(none)",
    )
    return config
