"""Pytest configuration and fixtures for agentforge_runner tests.

Clears every runner environment variable by default so tests never pick up a
real control plane, git token, or API key from the developer's shell.
"""

import json
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from agentforge_runner.models import SessionConfig

RUNNER_ENV_VARS = (
    "ANTHROPIC_API_KEY",
    "GIT_TOKEN",
    "SESSION_CONFIG_PATH",
    "WORKSPACE_PATH",
    "CONTEXT_PATH",
    "AGENTFORGE_SERVER_URL",
    "AGENTFORGE_SESSION_ID",
    "AGENTFORGE_AGENT_COMMAND",
    "AGENTFORGE_TIMEOUT_MINUTES",
    "AGENTFORGE_CLEANUP_HOME",
)


@pytest.fixture(autouse=True)
def isolated_runner_environment(monkeypatch):
    """Remove runner settings from the environment for all tests."""
    for name in RUNNER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def session_data() -> dict[str, Any]:
    """Raw session config as the scheduler writes it (camelCase keys)."""
    return {
        "runId": "run-123",
        "projectId": "proj-1",
        "agent": "engineer",
        "phase": "building",
        "repoUrl": "https://github.com/example/project.git",
        "branch": "main",
        "taskPrompt": "Implement the login page",
    }


@pytest.fixture
def session_config(session_data) -> SessionConfig:
    return SessionConfig.model_validate(session_data)


@pytest.fixture
def session_file(tmp_path: Path, session_data) -> Path:
    """Session config written to disk."""
    path = tmp_path / "session.local.json"
    path.write_text(json.dumps(session_data))
    return path


@pytest.fixture
def cli_runner():
    """Create a Click test runner."""
    return CliRunner()
