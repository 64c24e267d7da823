"""Project state kept in the repository.

``state/progress.yaml`` records which agent ran last and which phase the
project is in. The runner rewrites it after every successful agent run so the
next session's context reflects this one.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import yaml

from agentforge_runner.models import MilestoneStatus, SessionConfig

log = logging.getLogger("agentforge_runner.state")

PROGRESS_PATH = Path("state") / "progress.yaml"


def utc_now() -> str:
    """Current UTC time as ISO 8601 with a 'Z' suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def get_progress_path(repo_path: Path) -> Path:
    return Path(repo_path) / PROGRESS_PATH


def read_progress(repo_path: Path) -> Optional[dict[str, Any]]:
    """Read the raw progress mapping.

    Returns:
        The parsed mapping, or None if the file is missing or unparsable
    """
    path = get_progress_path(repo_path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        return None
    return data if isinstance(data, dict) else None


def update_progress(repo_path: Path, config: SessionConfig) -> bool:
    """Record this session in ``state/progress.yaml``.

    Sets lastAgent and lastRunAt. When the session runs in a different phase
    than the file records, moves the phase forward and marks the matching
    milestone in-progress if it was still pending. Keys the runner does not
    know about are preserved.

    Args:
        repo_path: Root of the cloned repository
        config: Session config

    Returns:
        True if the file was rewritten, False if there was nothing to update
    """
    progress = read_progress(repo_path)
    if progress is None:
        log.warning("No %s found, skipping state update", PROGRESS_PATH)
        return False

    progress["lastAgent"] = config.agent.value
    progress["lastRunAt"] = utc_now()

    if progress.get("phase") != config.phase.value:
        progress["phase"] = config.phase.value
        for milestone in progress.get("milestones") or []:
            if (
                isinstance(milestone, dict)
                and milestone.get("id") == config.phase.value
                and milestone.get("status") == MilestoneStatus.PENDING.value
            ):
                milestone["status"] = MilestoneStatus.IN_PROGRESS.value
                break

    path = get_progress_path(repo_path)
    with open(path, "w") as f:
        yaml.safe_dump(progress, f, default_flow_style=False, sort_keys=False)
    return True
