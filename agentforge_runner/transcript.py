"""Transcript capture for agent sessions.

The agent keeps its own session logs under ``~/.claude/projects/<project>/``.
Since the agent runs with an isolated home, its logs land there; after the run
the newest one is copied into the repository so it is committed with the work.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional

from agentforge_runner.models import SessionConfig

log = logging.getLogger("agentforge_runner.transcript")

TRANSCRIPT_EXTENSION = ".jsonl"
PROJECTS_DIR = Path(".claude") / "projects"


def get_transcript_dest(repo_path: Path, config: SessionConfig) -> Path:
    """Deterministic location of a session's transcript inside the repository."""
    return (
        Path(repo_path)
        / "sessions"
        / config.agent.value
        / config.run_id
        / f"transcript{TRANSCRIPT_EXTENSION}"
    )


def _newest_in(directory: Path, since: Optional[float]) -> Optional[tuple[float, Path]]:
    newest: Optional[tuple[float, Path]] = None
    try:
        entries = list(directory.iterdir())
    except OSError:
        return None
    for entry in entries:
        if entry.suffix != TRANSCRIPT_EXTENSION:
            continue
        try:
            if not entry.is_file():
                continue
            mtime = entry.stat().st_mtime
        except OSError:
            continue
        if since is not None and mtime < since:
            continue
        if newest is None or mtime > newest[0]:
            newest = (mtime, entry)
    return newest


def find_transcript(home: Path, since: Optional[float] = None) -> Optional[Path]:
    """Find the most recently modified transcript under an agent home.

    Picks the newest candidate in each project directory, then the newest of
    those overall.

    Args:
        home: Home directory the agent ran with
        since: Ignore files last modified before this timestamp (epoch seconds)

    Returns:
        Path to the transcript, or None if there is none
    """
    projects_dir = Path(home) / PROJECTS_DIR
    try:
        project_dirs = [p for p in projects_dir.iterdir() if p.is_dir()]
    except OSError:
        return None

    candidates = []
    for project_dir in project_dirs:
        match = _newest_in(project_dir, since)
        if match is not None:
            candidates.append(match)

    if not candidates:
        return None
    return max(candidates, key=lambda c: c[0])[1]


def capture_transcript(
    config: SessionConfig,
    home: Path,
    repo_path: Path,
    since: Optional[float] = None,
) -> Optional[Path]:
    """Copy the agent's transcript into the repository.

    Capture is best-effort: a missing transcript is logged, not raised.

    Args:
        config: Session config
        home: Home directory the agent ran with
        repo_path: Root of the cloned repository
        since: Ignore transcripts last modified before this timestamp

    Returns:
        Destination path, or None if no transcript was found
    """
    source = find_transcript(home, since=since)
    if source is None:
        log.warning("No agent transcript found under %s", Path(home) / PROJECTS_DIR)
        return None

    dest = get_transcript_dest(repo_path, config)
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, dest)
    log.info("Captured transcript to %s", dest)
    return dest
