"""Tests for agentforge_runner.orchestrator module."""

import io
import json
from pathlib import Path
from unittest.mock import Mock

import pytest
from rich.console import Console

from agentforge_runner.config import RunnerSettings
from agentforge_runner.models import ProgressStage
from agentforge_runner.orchestrator import (
    DEFAULT_SUMMARY,
    AgentExecutionError,
    SessionOrchestrator,
    extract_summary,
)
from agentforge_runner.process import ProcessLauncher, ProcessOutcome
from agentforge_runner.workspace import GitError

SHA = "f" * 40

SUCCESS_STDOUT = json.dumps(
    {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "result": "# Summary\nAdded file",
        "usage": {"input_tokens": 100, "output_tokens": 50, "cache_read_input_tokens": 10, "cache_creation_input_tokens": 5},
    }
)


class FakeLauncher(ProcessLauncher):
    def __init__(self, outcome: ProcessOutcome):
        self.outcome = outcome
        self.calls = []

    def run(self, args, env, cwd, timeout, on_stderr_line=None, on_start=None):
        self.calls.append({"args": args, "env": env, "cwd": cwd, "timeout": timeout})
        return self.outcome


@pytest.fixture
def repo(tmp_path) -> Path:
    """A cloned repository with an engineer agent config."""
    repo = tmp_path / "ws"
    role_dir = repo / ".agentforge" / "agents" / "engineer"
    role_dir.mkdir(parents=True)
    (role_dir / "config.json").write_text(json.dumps({"model": "sonnet", "maxTokens": 8000}))
    return repo


@pytest.fixture
def settings(tmp_path, session_file, repo) -> RunnerSettings:
    return RunnerSettings(
        config_path=session_file,
        workspace_path=repo,
        context_path=tmp_path / "ctx" / "agent-context.md",
        cleanup_home=True,
    )


def make_orchestrator(settings, outcome, repo):
    reporter = Mock()
    launcher = FakeLauncher(outcome)
    orch = SessionOrchestrator(
        settings,
        reporter=reporter,
        launcher=launcher,
        console=Console(file=io.StringIO()),
        heartbeat_interval=60,
    )
    orch.workspace = Mock(path=repo)
    orch.workspace.commit_and_push.return_value = SHA
    orch.workspace.commit_partial_work.return_value = None
    return orch, reporter, launcher


class TestExtractSummary:
    """Tests for extract_summary."""

    def test_strips_summary_header(self) -> None:
        assert extract_summary("# Summary\nDid the thing\n") == "Did the thing"

    def test_empty_output(self) -> None:
        assert extract_summary("") == DEFAULT_SUMMARY
        assert extract_summary(None) == DEFAULT_SUMMARY

    def test_header_only(self) -> None:
        assert extract_summary("## Summary:\n\n   \n") == DEFAULT_SUMMARY

    def test_header_case_insensitive(self) -> None:
        assert extract_summary("### SUMMARY\n\nFixed bug") == "Fixed bug"

    def test_plain_first_line(self) -> None:
        assert extract_summary("\n  Refactored auth  \nMore detail") == "Refactored auth"

    def test_other_headers_kept(self) -> None:
        assert extract_summary("# Changes\nStuff") == "# Changes"

    def test_long_line_shortened(self) -> None:
        summary = extract_summary("x" * 500)
        assert len(summary) == 200
        assert summary.endswith("...")


class TestSessionOrchestratorSuccess:
    """Tests for the success path."""

    def test_returns_successful_result(self, settings, repo) -> None:
        orch, reporter, launcher = make_orchestrator(
            settings, ProcessOutcome(exit_code=0, stdout=SUCCESS_STDOUT, stderr=""), repo
        )
        result = orch.run()

        assert result.success is True
        assert result.run_id == "run-123"
        assert result.agent == "engineer"
        assert result.summary == "Added file"
        assert result.commit_sha == SHA
        assert result.usage.total_tokens == 165
        assert result.transcript_captured is False
        assert result.error is None

        orch.workspace.clone.assert_called_once()
        orch.workspace.commit_and_push.assert_called_once()
        assert orch.workspace.commit_and_push.call_args.args[1] == "Added file"
        orch.workspace.commit_partial_work.assert_not_called()
        reporter.report_complete.assert_called_once_with("Added file", commit_sha=SHA, token_usage=result.usage)
        assert orch.stages.current_stage == ProgressStage.COMPLETED

    def test_agent_invocation(self, settings, repo) -> None:
        orch, _, launcher = make_orchestrator(
            settings, ProcessOutcome(exit_code=0, stdout=SUCCESS_STDOUT, stderr=""), repo
        )
        orch.run()

        call = launcher.calls[0]
        assert call["cwd"] == repo
        assert call["timeout"] == 30 * 60
        assert "claude-sonnet-4-20250514" in call["args"]
        assert str(settings.context_path) in call["args"]
        assert call["env"]["AGENTFORGE_RUN_ID"] == "run-123"
        assert settings.context_path.read_text().endswith(
            "Update memory/daily-log.md with a timestamped entry of what you accomplished"
        )

    def test_stages_reported_in_order(self, settings, repo) -> None:
        orch, reporter, _ = make_orchestrator(
            settings, ProcessOutcome(exit_code=0, stdout=SUCCESS_STDOUT, stderr=""), repo
        )
        orch.run()

        started = [(c.args[0], c.args[1]) for c in reporter.stage_start.call_args_list]
        assert started == [
            (ProgressStage.PENDING, 0),
            (ProgressStage.CLONING, 10),
            (ProgressStage.LOADING, 20),
            (ProgressStage.LOADING, 25),
            (ProgressStage.EXECUTING, 30),
            (ProgressStage.CAPTURING, 80),
            (ProgressStage.COMMITTING, 85),
            (ProgressStage.COMMITTING, 90),
        ]
        assert reporter.stage_complete.call_count == 8

    def test_context_sources_reported(self, settings, repo) -> None:
        (repo / ".agentforge" / "PROJECT.md").write_text("# Project\n")
        (repo / "ARCHITECTURE.md").write_text("# Architecture\n")
        orch, reporter, _ = make_orchestrator(
            settings, ProcessOutcome(exit_code=0, stdout=SUCCESS_STDOUT, stderr=""), repo
        )
        orch.run()

        reporter.report_log.assert_any_call(
            "Context sources: .agentforge/PROJECT.md, ARCHITECTURE.md",
            stage=ProgressStage.LOADING,
        )

    def test_isolated_home_removed_when_configured(self, settings, repo) -> None:
        orch, _, _ = make_orchestrator(
            settings, ProcessOutcome(exit_code=0, stdout=SUCCESS_STDOUT, stderr=""), repo
        )
        orch.run()
        assert orch.home is not None
        assert not orch.home.exists()

    def test_isolated_home_kept_by_default(self, settings, repo, tmp_path, monkeypatch) -> None:
        home = tmp_path / "home"
        home.mkdir()
        monkeypatch.setattr("agentforge_runner.orchestrator.create_isolated_home", lambda run_id: home)
        settings = RunnerSettings(**{**settings.model_dump(), "cleanup_home": False})

        orch, _, _ = make_orchestrator(
            settings, ProcessOutcome(exit_code=0, stdout=SUCCESS_STDOUT, stderr=""), repo
        )
        orch.run()
        assert home.exists()

    def test_server_url_falls_back_to_session_config(self, settings, repo, tmp_path, session_data) -> None:
        session_data["serverUrl"] = "http://hub.test/"
        settings.config_path.write_text(json.dumps(session_data))
        orch, reporter, _ = make_orchestrator(
            settings, ProcessOutcome(exit_code=0, stdout=SUCCESS_STDOUT, stderr=""), repo
        )
        reporter.server_url = ""
        orch.run()
        assert reporter.server_url == "http://hub.test"


class TestSessionOrchestratorFailure:
    """Tests for the failure branch."""

    def test_agent_failure_commits_partial_work(self, settings, repo) -> None:
        orch, reporter, _ = make_orchestrator(
            settings, ProcessOutcome(exit_code=1, stdout="not json", stderr="API error\n"), repo
        )
        result = orch.run()

        assert result.success is False
        assert "API error" in result.error
        assert result.summary is None
        orch.workspace.commit_and_push.assert_not_called()
        orch.workspace.commit_partial_work.assert_called_once()
        assert orch.workspace.commit_partial_work.call_args.args[1] == result.error
        reporter.report_failure.assert_called_once_with(result.error)
        reporter.report_complete.assert_not_called()
        assert orch.stages.current_stage == ProgressStage.FAILED

    def test_partial_commit_sha_in_result(self, settings, repo) -> None:
        orch, _, _ = make_orchestrator(
            settings, ProcessOutcome(exit_code=1, stdout="", stderr="boom"), repo
        )
        orch.workspace.commit_partial_work.return_value = SHA
        assert orch.run().commit_sha == SHA

    def test_timeout_is_failure(self, settings, repo) -> None:
        orch, _, _ = make_orchestrator(
            settings, ProcessOutcome(exit_code=None, stdout="", stderr="", timed_out=True), repo
        )
        result = orch.run()
        assert result.success is False
        assert "Process timed out" in result.error

    def test_execute_raises_agent_execution_error(self, settings, repo) -> None:
        orch, _, _ = make_orchestrator(
            settings, ProcessOutcome(exit_code=None, stdout="", stderr="", spawn_error="not found"), repo
        )
        config = orch.load_config()
        agent_config = orch.load_agent_config(config)
        try:
            with pytest.raises(AgentExecutionError) as exc_info:
                orch.execute(config, agent_config, settings.context_path)
        finally:
            orch._cleanup()
        assert exc_info.value.error == "not found"
        assert exc_info.value.timed_out is False

    def test_config_failure_skips_everything(self, settings, repo, tmp_path) -> None:
        settings = RunnerSettings(**{**settings.model_dump(), "config_path": tmp_path / "missing.json"})
        orch, reporter, launcher = make_orchestrator(
            settings, ProcessOutcome(exit_code=0, stdout=SUCCESS_STDOUT, stderr=""), repo
        )
        result = orch.run()

        assert result.success is False
        assert result.run_id == "unknown"
        assert "missing.json" in result.error
        orch.workspace.clone.assert_not_called()
        orch.workspace.commit_partial_work.assert_not_called()
        assert launcher.calls == []
        reporter.report_failure.assert_called_once()

    def test_invalid_config_has_no_side_effects(self, settings, repo, session_data) -> None:
        del session_data["repoUrl"]
        settings.config_path.write_text(json.dumps(session_data))
        orch, _, launcher = make_orchestrator(
            settings, ProcessOutcome(exit_code=0, stdout=SUCCESS_STDOUT, stderr=""), repo
        )
        result = orch.run()

        assert result.success is False
        orch.workspace.clone.assert_not_called()
        orch.workspace.commit_and_push.assert_not_called()
        orch.workspace.commit_partial_work.assert_not_called()
        assert launcher.calls == []

    def test_clone_failure_attempts_partial_commit(self, settings, repo) -> None:
        orch, _, launcher = make_orchestrator(
            settings, ProcessOutcome(exit_code=0, stdout=SUCCESS_STDOUT, stderr=""), repo
        )
        orch.workspace.clone.side_effect = GitError(["clone"], 128, "repository not found")
        result = orch.run()

        assert result.success is False
        assert "repository not found" in result.error
        assert launcher.calls == []
        orch.workspace.commit_partial_work.assert_called_once()

    def test_missing_agent_config_fails(self, settings, repo) -> None:
        (repo / ".agentforge" / "agents" / "engineer" / "config.json").unlink()
        orch, _, launcher = make_orchestrator(
            settings, ProcessOutcome(exit_code=0, stdout=SUCCESS_STDOUT, stderr=""), repo
        )
        result = orch.run()

        assert result.success is False
        assert "engineer" in result.error
        assert launcher.calls == []

    def test_push_failure_fails_session(self, settings, repo) -> None:
        orch, reporter, _ = make_orchestrator(
            settings, ProcessOutcome(exit_code=0, stdout=SUCCESS_STDOUT, stderr=""), repo
        )
        orch.workspace.commit_and_push.side_effect = GitError(["push"], 1, "! [rejected]")
        result = orch.run()

        assert result.success is False
        reporter.report_complete.assert_not_called()
        orch.workspace.commit_partial_work.assert_called_once()
