"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via RELAY_* env vars or
a YAML file (see yaml_config.py). The resulting BrokerConfig is built
once at startup and passed to each component explicitly.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# MCP tool the agent calls to ask for tool approval. The transport
# itself lives outside the broker; only the name is needed for argv.
PERMISSION_PROMPT_TOOL = "mcp__agentrelay-permissions__approval_prompt"


def parse_bool(value: object) -> bool:
    """Truthiness for config values; strings must spell a true value."""
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return parse_bool(raw)


@dataclass
class BrokerConfig:
    """Session broker configuration."""

    # Agent executable and where it writes its durable logs.
    agent_command: str = "claude"
    agent_home: Path = field(default_factory=lambda: Path.home() / ".claude")
    # Extra environment for spawned agents (e.g. API keys).
    env_overrides: dict[str, str] = field(default_factory=dict)
    # Optional MCP config enabling out-of-band permission prompts.
    mcp_config_path: str | None = None

    # Upper bound on the wait for the first (handshake) record.
    handshake_timeout_seconds: float = 15.0
    # Grace period between SIGTERM and SIGKILL on stop.
    stop_grace_seconds: float = 5.0

    # SSE fan-out
    heartbeat_seconds: float = 30.0
    client_queue_size: int = 5000
    # 0 disables the bound on total subscribers.
    max_clients: int = 0

    # Session metadata (permission mode, starting revision, ...)
    session_info_path: Path = field(
        default_factory=lambda: Path.home() / ".agentrelay" / "session-info.json"
    )
    record_git_head: bool = True

    # Server
    host: str = "127.0.0.1"
    port: int = 3001

    # Logging
    log_level: str = "INFO"

    @property
    def projects_dir(self) -> Path:
        return self.agent_home / "projects"

    @classmethod
    def from_env(cls) -> BrokerConfig:
        """Load configuration from RELAY_* environment variables."""
        relay_vars = {k: v for k, v in os.environ.items() if k.startswith("RELAY_")}
        if relay_vars:
            logger.info(
                "BrokerConfig.from_env: RELAY_* env overrides: %s",
                ", ".join(sorted(relay_vars)),
            )
        else:
            logger.debug("BrokerConfig.from_env: no RELAY_* env vars set, using defaults")

        defaults = cls()
        home = os.getenv("RELAY_AGENT_HOME")
        info_path = os.getenv("RELAY_SESSION_INFO_PATH")
        config = cls(
            agent_command=os.getenv("RELAY_AGENT_COMMAND", defaults.agent_command),
            agent_home=Path(home).expanduser() if home else defaults.agent_home,
            mcp_config_path=os.getenv("RELAY_MCP_CONFIG") or None,
            handshake_timeout_seconds=float(os.getenv(
                "RELAY_HANDSHAKE_TIMEOUT", str(defaults.handshake_timeout_seconds)
            )),
            stop_grace_seconds=float(os.getenv(
                "RELAY_STOP_GRACE_SECONDS", str(defaults.stop_grace_seconds)
            )),
            heartbeat_seconds=float(os.getenv(
                "RELAY_HEARTBEAT_SECONDS", str(defaults.heartbeat_seconds)
            )),
            client_queue_size=int(os.getenv(
                "RELAY_CLIENT_QUEUE_SIZE", str(defaults.client_queue_size)
            )),
            max_clients=int(os.getenv("RELAY_MAX_CLIENTS", str(defaults.max_clients))),
            session_info_path=(
                Path(info_path).expanduser() if info_path else defaults.session_info_path
            ),
            record_git_head=_env_bool("RELAY_RECORD_GIT_HEAD", defaults.record_git_head),
            host=os.getenv("RELAY_HOST", defaults.host),
            port=int(os.getenv("RELAY_PORT", str(defaults.port))),
            log_level=os.getenv("RELAY_LOG_LEVEL", defaults.log_level).upper(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Clamp values that would make the broker unusable."""
        if self.handshake_timeout_seconds <= 0:
            logger.warning(
                "handshake_timeout_seconds=%s is not positive; using 15",
                self.handshake_timeout_seconds,
            )
            self.handshake_timeout_seconds = 15.0
        if self.stop_grace_seconds < 0:
            self.stop_grace_seconds = 0.0
        if self.client_queue_size < 1:
            self.client_queue_size = 1
        if self.max_clients < 0:
            self.max_clients = 0
        if self.log_level not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            logger.warning("Unknown log level %r; using INFO", self.log_level)
            self.log_level = "INFO"
