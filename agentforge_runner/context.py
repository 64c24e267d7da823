"""Context document assembly for agent sessions.

Reads prompts, project docs, and state from the cloned repository and joins
them into the single document passed to the agent as its system prompt.
Missing files are skipped; oversized files are truncated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

import yaml
from pydantic import ValidationError

from agentforge_runner.models import ProjectProgress, SessionConfig

log = logging.getLogger("agentforge_runner.context")

MAX_FILE_SIZE = 20000  # characters per source file
TRUNCATION_MARKER = "\n\n[... truncated ...]"
SECTION_SEPARATOR = "\n\n---\n\n"
DAILY_LOG_LINES = 30

SYSTEM_PROMPT_PATHS = (".agentforge/SYSTEM.md",)
PROJECT_DOC_PATHS = (".agentforge/PROJECT.md", "PROJECT.md")
ARCHITECTURE_DOC_PATHS = ("ARCHITECTURE.md", ".agentforge/ARCHITECTURE.md")
PROGRESS_PATH = "state/progress.yaml"
DAILY_LOG_PATH = "memory/daily-log.md"

TOOL_DOCS = """## Available Commands

You have access to the `agentforge` CLI for interacting with the project hub:

- `agentforge task update <key> --status <status>` -- Update task status (todo/in-progress/done)
- `agentforge task get <key>` -- Get task details
- `agentforge task list` -- List project tasks
- `agentforge chat post "<message>"` -- Post a message to the project chat
- `agentforge status set <status> "<message>"` -- Update your agent status (busy/away)"""


def role_prompt_paths(role: str) -> tuple[str, ...]:
    """Role prompt locations, per-role directory first then legacy flat file."""
    return (f".agentforge/agents/{role}/prompt.md", f"prompts/{role}.md")


def truncate(content: str, max_length: int = MAX_FILE_SIZE) -> str:
    """Cut content to max_length characters, marking the cut."""
    if len(content) <= max_length:
        return content
    return content[:max_length] + TRUNCATION_MARKER


@dataclass
class AssembledContext:
    """The context document and the repository files it was built from."""

    text: str
    sources: List[str] = field(default_factory=list)


def format_progress(progress: ProjectProgress) -> str:
    lines = [
        f"Phase: {progress.phase.value}, Sprint: {progress.current_sprint}",
        f"Last agent: {progress.last_agent.value} at {progress.last_run_at}",
        "",
        "Next actions:",
        *[f"- {action}" for action in progress.next_actions],
    ]
    return "\n".join(lines)


def format_instructions(config: SessionConfig) -> str:
    """Task prompt plus the standing reminders every session gets."""
    role = config.agent.value
    return f"""## Task

{config.task_prompt}

## Instructions

- Work on the assigned task(s). Be focused -- do one thing well.
- Before finishing, write session notes to sessions/{role}/{config.run_id}/notepad.md
- If you make architectural decisions, append to memory/decisions.md
- If you hit blockers, append to memory/blockers.md
- Update memory/daily-log.md with a timestamped entry of what you accomplished"""


class ContextAssembler:
    """Builds the context document from files in a cloned repository."""

    def __init__(self, repo_path: Path, max_file_size: int = MAX_FILE_SIZE):
        self.repo_path = Path(repo_path)
        self.max_file_size = max_file_size
        self._sources: List[str] = []

    def _read(self, relative_path: str) -> Optional[str]:
        path = self.repo_path / relative_path
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None
        self._sources.append(relative_path)
        return truncate(content, self.max_file_size)

    def _read_first(self, candidates: Sequence[str]) -> Optional[str]:
        for candidate in candidates:
            content = self._read(candidate)
            if content is not None:
                return content
        return None

    def _progress_section(self) -> Optional[str]:
        raw = self._read(PROGRESS_PATH)
        if raw is None:
            return None
        try:
            progress = ProjectProgress.model_validate(yaml.safe_load(raw))
        except (yaml.YAMLError, ValidationError) as e:
            log.warning("Skipping invalid %s: %s", PROGRESS_PATH, e)
            return None
        return format_progress(progress)

    def _session_section(self, config: SessionConfig) -> str:
        lines = [
            "## This Session",
            "",
            f"- Run ID: {config.run_id}",
            f"- Phase: {config.phase.value}",
        ]
        if config.assigned_tasks:
            lines.append(f"- Assigned tasks: {', '.join(config.assigned_tasks)}")
        if config.server_url:
            lines.append(f"- Server API: {config.server_url}")
        return "\n".join(lines)

    def assemble(self, config: SessionConfig) -> AssembledContext:
        """Assemble the context document for a session.

        Args:
            config: Session config

        Returns:
            The document plus the ordered list of files that were read
        """
        self._sources = []
        sections: List[str] = []

        system_prompt = self._read_first(SYSTEM_PROMPT_PATHS)
        if system_prompt:
            sections.append(system_prompt)

        role_prompt = self._read_first(role_prompt_paths(config.agent.value))
        if role_prompt:
            sections.append(f"## Your Role\n\n{role_prompt}")

        project_doc = self._read_first(PROJECT_DOC_PATHS)
        if project_doc:
            sections.append(f"## Project\n\n{project_doc}")

        architecture_doc = self._read_first(ARCHITECTURE_DOC_PATHS)
        if architecture_doc:
            sections.append(f"## Architecture\n\n{architecture_doc}")

        progress = self._progress_section()
        if progress:
            sections.append(f"## Current State\n\n{progress}")

        daily_log = self._read(DAILY_LOG_PATH)
        if daily_log:
            recent = "\n".join(daily_log.split("\n")[-DAILY_LOG_LINES:])
            sections.append(f"## Recent History\n\n{recent}")

        sections.append(self._session_section(config))
        sections.append(TOOL_DOCS)
        sections.append(format_instructions(config))

        return AssembledContext(
            text=SECTION_SEPARATOR.join(sections),
            sources=list(self._sources),
        )


def write_context_file(context: str, path: Path) -> Path:
    """Write the context document where the agent can read it."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(context, encoding="utf-8")
    return path
