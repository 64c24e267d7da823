"""Integration test fixtures for the AgentForge runner.

These fixtures create a real bare git repository to act as the remote, plus a
fake agent executable that behaves like the coding-agent CLI: it edits files
in its working directory, writes a transcript under its home directory, and
prints a result on stdout.
"""

import json
import os
import stat
import sys
from pathlib import Path
from typing import Any, Callable

import pytest
import yaml

from agentforge_runner.config import RunnerSettings

from tests.integration.helpers import FAKE_AGENT, git, remote_git


@pytest.fixture
def remote_repo(tmp_path: Path) -> Path:
    """Bare repository with a seeded ``main`` branch.

    The seed holds an engineer agent config, a project briefing, and a
    progress file.
    """
    remote = tmp_path / "remote.git"
    git("init", "--bare", str(remote))
    remote_git(remote, "symbolic-ref", "HEAD", "refs/heads/main")

    seed = tmp_path / "seed"
    seed.mkdir()
    git("init", cwd=seed)
    git("checkout", "-b", "main", cwd=seed)

    role_dir = seed / ".agentforge" / "agents" / "engineer"
    role_dir.mkdir(parents=True)
    (role_dir / "config.json").write_text(json.dumps({"model": "sonnet", "maxTokens": 8000}))
    (role_dir / "prompt.md").write_text("You are the engineer.\n")
    (seed / ".agentforge" / "PROJECT.md").write_text("# Test Project\n")
    (seed / "state").mkdir()
    (seed / "state" / "progress.yaml").write_text(
        yaml.safe_dump(
            {
                "phase": "shaping",
                "currentSprint": 1,
                "milestones": [
                    {"id": "shaping", "status": "in-progress"},
                    {"id": "building", "status": "pending"},
                ],
                "nextActions": ["Build the thing"],
                "lastAgent": "pm",
                "lastRunAt": "2026-01-01T00:00:00.000Z",
            },
            sort_keys=False,
        )
    )

    git("add", "-A", cwd=seed)
    git("commit", "-m", "Initial commit", cwd=seed)
    git("push", str(remote), "HEAD:main", cwd=seed)
    return remote


@pytest.fixture
def fake_agent(tmp_path: Path) -> Path:
    """Executable fake agent run with the current interpreter."""
    script = tmp_path / "bin" / "fake-agent"
    script.parent.mkdir()
    script.write_text(FAKE_AGENT.format(python=sys.executable))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def integration_session(tmp_path: Path, remote_repo: Path) -> Callable[..., Path]:
    """Factory writing a session config that points at the bare remote."""

    def _write(**overrides: Any) -> Path:
        data = {
            "runId": "run-e2e",
            "projectId": "proj-e2e",
            "agent": "engineer",
            "phase": "building",
            "repoUrl": str(remote_repo),
            "branch": "main",
            "taskPrompt": "Add feature.txt",
        }
        data.update(overrides)
        path = tmp_path / "session.local.json"
        path.write_text(json.dumps(data))
        return path

    return _write


@pytest.fixture
def runner_settings(tmp_path: Path, integration_session, fake_agent) -> RunnerSettings:
    return RunnerSettings(
        config_path=integration_session(),
        workspace_path=tmp_path / "workspace",
        context_path=tmp_path / "agent-context.md",
        agent_command=str(fake_agent),
        timeout_minutes=2,
        cleanup_home=True,
    )


@pytest.fixture
def agent_mode(monkeypatch) -> Callable[[str], None]:
    """Select the fake agent's behavior."""

    def _set(mode: str) -> None:
        monkeypatch.setenv("FAKE_AGENT_MODE", mode)

    return _set


@pytest.fixture(autouse=True)
def _no_global_git_config(monkeypatch, tmp_path):
    """Keep the developer's git config out of the tests."""
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", os.devnull)
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
