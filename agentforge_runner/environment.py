"""Environment setup for the agent subprocess.

Each run gets a fresh home directory so the agent's own config, caches, and
session logs never leak between runs.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Mapping, Optional

from agentforge_runner.models import SessionConfig

log = logging.getLogger("agentforge_runner.environment")

HOME_PREFIX = "agentforge-home-"
ONBOARDING_MARKER = ".claude.json"


def _safe_component(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", value)[:64] or "run"


def create_isolated_home(run_id: str, base_dir: Optional[Path] = None) -> Path:
    """Create a fresh home directory for one run.

    The directory name is keyed by the run ID plus a random suffix, so two
    runs never share it even with the same run ID. It contains a marker file
    that skips the agent's interactive first-run onboarding.

    Args:
        run_id: Session run ID
        base_dir: Parent directory (default: the system temp dir)

    Returns:
        Path to the new home directory
    """
    home = Path(
        tempfile.mkdtemp(
            prefix=f"{HOME_PREFIX}{_safe_component(run_id)}-",
            dir=str(base_dir) if base_dir else None,
        )
    )
    marker = {
        "hasCompletedOnboarding": True,
        "bypassPermissionsModeAccepted": True,
    }
    (home / ONBOARDING_MARKER).write_text(json.dumps(marker, indent=2))
    log.debug("Created isolated home %s", home)
    return home


def remove_isolated_home(home: Path) -> None:
    """Delete an isolated home directory, ignoring errors."""
    shutil.rmtree(home, ignore_errors=True)


def build_agent_env(
    config: SessionConfig,
    home: Path,
    anthropic_api_key: Optional[str] = None,
    session_id: Optional[str] = None,
    server_url: Optional[str] = None,
    base_env: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Build the agent subprocess environment.

    Starts from the current environment, points HOME at the isolated home,
    and adds the identity variables the agent's CLI tools read.

    Args:
        config: Session config
        home: Isolated home directory
        anthropic_api_key: API key; only set when provided so the agent can
            fall back to subscription auth
        session_id: Control-plane session ID
        server_url: Control-plane URL (default: the session config's)
        base_env: Environment to start from (default: os.environ)

    Returns:
        Complete environment mapping
    """
    env = dict(os.environ if base_env is None else base_env)
    env.update(
        {
            "HOME": str(home),
            "AGENTFORGE_SERVER_URL": server_url or config.server_url or "",
            "AGENTFORGE_PROJECT_ID": config.project_id,
            "AGENTFORGE_RUN_ID": config.run_id,
            "AGENTFORGE_SESSION_ID": session_id or "",
            "AGENTFORGE_AGENT_ROLE": config.agent.value,
        }
    )
    if anthropic_api_key:
        env["ANTHROPIC_API_KEY"] = anthropic_api_key
    return env
