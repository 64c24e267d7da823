"""Configuration management for the AgentForge runner.

Three layers of configuration feed a run:

- ``RunnerSettings``: process-level settings read from environment variables
- ``SessionConfig``: the per-run JSON file handed to the runner by the scheduler
- ``AgentConfig``: per-role settings stored inside the cloned project repository
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, ValidationError

from agentforge_runner.models import AgentConfig, AgentRole, SessionConfig

log = logging.getLogger("agentforge_runner.config")

DEFAULT_CONFIG_PATH = "./session.local.json"
DEFAULT_WORKSPACE_PATH = "/workspace"
DEFAULT_CONTEXT_PATH = "/tmp/agent-context.md"
DEFAULT_AGENT_COMMAND = "claude"
DEFAULT_TIMEOUT_MINUTES = 30

AGENTS_DIR = ".agentforge/agents"
LEGACY_AGENTS_FILE = ".agentforge/agents.yaml"


class ConfigError(Exception):
    """Raised when the session config or a runner setting is missing or invalid."""

    def __init__(self, path: Path | str, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Invalid config {self.path}: {reason}")


class AgentConfigError(Exception):
    """Raised when the repository has no usable config for the agent role."""

    def __init__(self, role: str, reason: str):
        self.role = role
        self.reason = reason
        super().__init__(f"No usable agent config for '{role}': {reason}")


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


class RunnerSettings(BaseModel):
    """Process-level runner settings."""

    anthropic_api_key: Optional[str] = None
    git_token: Optional[str] = None
    config_path: Path = Path(DEFAULT_CONFIG_PATH)
    workspace_path: Path = Path(DEFAULT_WORKSPACE_PATH)
    context_path: Path = Path(DEFAULT_CONTEXT_PATH)
    server_url: Optional[str] = None
    session_id: Optional[str] = None
    agent_command: str = DEFAULT_AGENT_COMMAND
    timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES
    cleanup_home: bool = False

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RunnerSettings":
        """Build settings from environment variables.

        ANTHROPIC_API_KEY is optional: without it the agent falls back to
        subscription auth. GIT_TOKEN is optional: without it git uses whatever
        ambient credentials are configured (gh auth, ssh keys, helpers).

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            Loaded settings

        Raises:
            ConfigError: If a variable holds a value of the wrong type
        """
        env = os.environ if environ is None else environ
        timeout = env.get("AGENTFORGE_TIMEOUT_MINUTES")
        try:
            timeout_minutes = float(timeout) if timeout else DEFAULT_TIMEOUT_MINUTES
        except ValueError as e:
            raise ConfigError("AGENTFORGE_TIMEOUT_MINUTES", f"not a number ({timeout!r})") from e
        return cls(
            anthropic_api_key=env.get("ANTHROPIC_API_KEY") or None,
            git_token=env.get("GIT_TOKEN") or None,
            config_path=Path(env.get("SESSION_CONFIG_PATH") or DEFAULT_CONFIG_PATH),
            workspace_path=Path(env.get("WORKSPACE_PATH") or DEFAULT_WORKSPACE_PATH),
            context_path=Path(env.get("CONTEXT_PATH") or DEFAULT_CONTEXT_PATH),
            server_url=env.get("AGENTFORGE_SERVER_URL") or None,
            session_id=env.get("AGENTFORGE_SESSION_ID") or None,
            agent_command=env.get("AGENTFORGE_AGENT_COMMAND") or DEFAULT_AGENT_COMMAND,
            timeout_minutes=timeout_minutes,
            cleanup_home=_env_flag(env.get("AGENTFORGE_CLEANUP_HOME")),
        )


def load_session_config(path: Path | str) -> SessionConfig:
    """Load and validate the session config JSON file.

    Args:
        path: Path to the session JSON file

    Returns:
        Validated, immutable session config

    Raises:
        ConfigError: If the file is missing, not JSON, or fails validation
    """
    config_file = Path(path)
    try:
        content = config_file.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(config_file, f"cannot read file ({e.strerror or e})") from e

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ConfigError(config_file, f"not valid JSON ({e.msg})") from e

    if not isinstance(data, dict):
        raise ConfigError(config_file, "top-level value must be an object")

    try:
        return SessionConfig.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(config_file, problems) from e


def _read_structured(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        return json.loads(text)
    return yaml.safe_load(text)


def load_agent_config(repo_path: Path, role: AgentRole | str) -> AgentConfig:
    """Load the agent config for a role from the cloned repository.

    Looks for a per-role ``.agentforge/agents/<role>/config.json`` (or
    ``config.yaml``) first, then falls back to the legacy single
    ``.agentforge/agents.yaml`` keyed by role.

    Args:
        repo_path: Root of the cloned repository
        role: Agent role to look up

    Returns:
        Agent config for the role

    Raises:
        AgentConfigError: If no config exists or it fails validation
    """
    role_name = AgentRole(role).value
    role_dir = repo_path / AGENTS_DIR / role_name

    data: Optional[Dict[str, Any]] = None
    source: Optional[Path] = None

    for candidate in (role_dir / "config.json", role_dir / "config.yaml", role_dir / "config.yml"):
        if candidate.exists():
            source = candidate
            break

    try:
        if source is not None:
            data = _read_structured(source)
        else:
            legacy = repo_path / LEGACY_AGENTS_FILE
            if not legacy.exists():
                raise AgentConfigError(role_name, "agents config not found in repo")
            source = legacy
            agents = _read_structured(legacy) or {}
            if not isinstance(agents, dict):
                raise AgentConfigError(role_name, f"{LEGACY_AGENTS_FILE} is not a mapping")
            data = agents.get(role_name)
            if data is None:
                raise AgentConfigError(role_name, f"no entry in {LEGACY_AGENTS_FILE}")
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise AgentConfigError(role_name, f"cannot parse {source}: {e}") from e

    if not isinstance(data, dict):
        raise AgentConfigError(role_name, f"{source} does not contain a mapping")

    try:
        agent_config = AgentConfig.model_validate(data)
    except ValidationError as e:
        raise AgentConfigError(role_name, str(e)) from e

    log.debug("Loaded agent config for %s from %s", role_name, source)
    return agent_config
