"""Tests for env and YAML configuration loading."""
from __future__ import annotations

import pytest
import yaml

from toolbridge.engine.config import AgentConfig, fire_event
from toolbridge.engine.yaml_config import load_yaml_config


@pytest.fixture
def clean_env(monkeypatch):
    import os

    for key in list(os.environ):
        if key.startswith("TOOLBRIDGE_"):
            monkeypatch.delenv(key)
    return monkeypatch


def test_defaults(clean_env) -> None:
    config = AgentConfig.from_env()
    assert config.command == "claude"
    assert config.cwd == "."
    assert config.skip_permissions is False
    assert config.allowed_tools == []
    assert config.resume_sessions is True
    assert config.port == 3100
    assert config.app_port is None
    assert config.toolbar_dir is None


def test_env_overrides(clean_env) -> None:
    clean_env.setenv("TOOLBRIDGE_CLAUDE_COMMAND", "/usr/local/bin/claude")
    clean_env.setenv("TOOLBRIDGE_SKIP_PERMISSIONS", "yes")
    clean_env.setenv("TOOLBRIDGE_ALLOWED_TOOLS", "Read, Edit ,,Grep")
    clean_env.setenv("TOOLBRIDGE_RESUME_SESSIONS", "0")
    clean_env.setenv("TOOLBRIDGE_PORT", "4000")
    clean_env.setenv("TOOLBRIDGE_APP_PORT", "3000")
    clean_env.setenv("TOOLBRIDGE_MODEL", "")
    config = AgentConfig.from_env()
    assert config.command == "/usr/local/bin/claude"
    assert config.skip_permissions is True
    assert config.allowed_tools == ["Read", "Edit", "Grep"]
    assert config.resume_sessions is False
    assert config.port == 4000
    assert config.app_port == 3000
    assert config.model is None


def test_yaml_layered_over_base(tmp_path, clean_env) -> None:
    clean_env.setenv("PROJECT_ROOT", "/work/site")
    path = tmp_path / "toolbridge.yaml"
    path.write_text(
        "agent:\n"
        "  command: claude-beta\n"
        "  cwd: ${PROJECT_ROOT}\n"
        "  skip_permissions: 'true'\n"
        "  allowed_tools: Read,Edit\n"
        "  bogus: 1\n"
        "server:\n"
        "  port: '3200'\n"
        "  app_port: 5173\n"
        "log_level: debug\n"
    )
    base = AgentConfig(model="opus")
    config = load_yaml_config(path, base=base)
    assert config.command == "claude-beta"
    assert config.cwd == "/work/site"
    assert config.skip_permissions is True
    assert config.allowed_tools == ["Read", "Edit"]
    assert config.port == 3200
    assert config.app_port == 5173
    assert config.log_level == "DEBUG"
    # Untouched fields come from the base.
    assert config.model == "opus"
    assert base.command == "claude"


def test_yaml_unknown_key_warned(tmp_path, caplog) -> None:
    path = tmp_path / "c.yaml"
    path.write_text("agent:\n  colour: blue\nserver: [1, 2]\n")
    config = load_yaml_config(path, base=AgentConfig())
    assert config == AgentConfig()
    assert "unknown key 'agent.colour'" in caplog.text
    assert "section 'server'" in caplog.text


def test_yaml_missing_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "nope.yaml", base=AgentConfig())


def test_yaml_parse_error(tmp_path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("agent: [unclosed\n")
    with pytest.raises(yaml.YAMLError):
        load_yaml_config(path, base=AgentConfig())


def test_yaml_top_level_must_be_mapping(tmp_path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(yaml.YAMLError):
        load_yaml_config(path, base=AgentConfig())


@pytest.mark.asyncio
async def test_fire_event_swallows_observer_errors() -> None:
    calls = []

    async def _broken(event):
        calls.append(event)
        raise RuntimeError("observer bug")

    await fire_event(_broken, {"event": "turn_started"})
    await fire_event(None, {"event": "turn_started"})
    assert calls == [{"event": "turn_started"}]
