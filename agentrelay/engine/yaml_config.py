"""YAML configuration loader.

Overlays a single YAML file on top of the env-derived BrokerConfig.
When no file is given, env vars work exactly as before.

Example YAML:
    broker:
      handshake_timeout_seconds: 20
      stop_grace_seconds: 5
      heartbeat_seconds: 30
      max_clients: 200

    agent:
      command: /usr/local/bin/claude
      home: ~/.claude
      mcp_config: ~/.agentrelay/mcp.json
      env:
        ANTHROPIC_API_KEY: "${ANTHROPIC_API_KEY}"

    server:
      host: 0.0.0.0
      port: 3001
      log_level: DEBUG
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable

import yaml

from .config import BrokerConfig, parse_bool

logger = logging.getLogger(__name__)

_BROKER_KEYS = {
    "handshake_timeout_seconds": float,
    "stop_grace_seconds": float,
    "heartbeat_seconds": float,
    "client_queue_size": int,
    "max_clients": int,
    "record_git_head": parse_bool,
}
_SERVER_KEYS = {
    "host": str,
    "port": int,
    "log_level": str,
}


def _expand(value: Any) -> Any:
    """Expand ${VAR} references in strings, recursively."""
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand(v) for v in value]
    return value


def _apply_section(
    config: BrokerConfig,
    section_name: str,
    section: Any,
    allowed: dict[str, Callable[[Any], Any]],
) -> None:
    if section is None:
        return
    if not isinstance(section, dict):
        logger.warning("YAML section %r is not a mapping; ignoring", section_name)
        return
    for key, value in section.items():
        caster = allowed.get(key)
        if caster is None:
            logger.warning("Unknown key %s.%s in YAML config; ignoring", section_name, key)
            continue
        try:
            setattr(config, key, caster(value))
        except (TypeError, ValueError):
            logger.warning(
                "Invalid value for %s.%s: %r; keeping %r",
                section_name, key, value, getattr(config, key),
            )


def load_yaml_config(path: str | Path, base: BrokerConfig | None = None) -> BrokerConfig:
    """Load a YAML config file and overlay it on *base* (or env defaults)."""
    path = Path(path).expanduser()
    logger.info("load_yaml_config: loading %s (exists=%s)", path, path.exists())
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"Top level of {path} must be a mapping")
    raw = _expand(raw)
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) or "(empty)",
    )

    config = base or BrokerConfig.from_env()
    _apply_section(config, "broker", raw.get("broker"), _BROKER_KEYS)
    _apply_section(config, "server", raw.get("server"), _SERVER_KEYS)

    agent = raw.get("agent") or {}
    if isinstance(agent, dict):
        if agent.get("command"):
            config.agent_command = str(agent["command"])
        if agent.get("home"):
            config.agent_home = Path(str(agent["home"])).expanduser()
        if agent.get("mcp_config"):
            config.mcp_config_path = str(Path(str(agent["mcp_config"])).expanduser())
        env = agent.get("env")
        if isinstance(env, dict):
            config.env_overrides.update({str(k): str(v) for k, v in env.items()})
    else:
        logger.warning("YAML section 'agent' is not a mapping; ignoring")

    for section in sorted(set(raw) - {"broker", "server", "agent"}):
        logger.warning("Unknown YAML section %r; ignoring", section)

    config.log_level = config.log_level.upper()
    config.validate()
    return config
