"""Session orchestration.

Sequences one agent session as a linear pipeline:

    loading config -> cloning -> loading agent config -> assembling context
    -> executing agent -> capturing transcript -> updating repository state
    -> committing/pushing -> completed

Any exception from any step drops into a single failure branch that reports the
error, preserves whatever the agent left in the workspace, and returns a failed
``RunResult``.
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Optional

from rich.console import Console

from agentforge_runner.agents.base import get_agent
from agentforge_runner.config import RunnerSettings, load_agent_config, load_session_config
from agentforge_runner.context import ContextAssembler, write_context_file
from agentforge_runner.environment import (
    build_agent_env,
    create_isolated_home,
    remove_isolated_home,
)
from agentforge_runner.executor import HEARTBEAT_INTERVAL, AgentResult, AgentRunner
from agentforge_runner.models import AgentConfig, ProgressStage, RunResult, SessionConfig
from agentforge_runner.process import ProcessLauncher
from agentforge_runner.progress import ProgressReporter, StageTimer
from agentforge_runner.state import update_progress, utc_now
from agentforge_runner.state_machine import SessionStageMachine
from agentforge_runner.transcript import capture_transcript
from agentforge_runner.workspace import Workspace

log = logging.getLogger("agentforge_runner.orchestrator")

DEFAULT_SUMMARY = "Completed session"
MAX_SUMMARY_LENGTH = 200
AGENT_TOOL = "claude"

_SUMMARY_HEADER = re.compile(r"^\s*#{1,6}\s*summary\s*:?\s*(?:\n|$)", re.IGNORECASE)


class AgentExecutionError(Exception):
    """Raised when the agent process fails, times out, or cannot be started."""

    def __init__(self, error: str, exit_code: Optional[int] = None, timed_out: bool = False):
        self.error = error
        self.exit_code = exit_code
        self.timed_out = timed_out
        super().__init__(f"Agent failed: {error}")


def extract_summary(output: Optional[str]) -> str:
    """Pull a one-line summary out of the agent's free-text result.

    Strips a leading markdown "Summary" header, then takes the first non-empty
    line.

    Example:
        >>> extract_summary("# Summary\\nDid the thing\\n")
        'Did the thing'
        >>> extract_summary("")
        'Completed session'
    """
    text = _SUMMARY_HEADER.sub("", output or "", count=1)
    for line in text.splitlines():
        line = line.strip()
        if line:
            if len(line) > MAX_SUMMARY_LENGTH:
                line = line[: MAX_SUMMARY_LENGTH - 3].rstrip() + "..."
            return line
    return DEFAULT_SUMMARY


class SessionOrchestrator:
    """Runs one agent session end to end."""

    def __init__(
        self,
        settings: RunnerSettings,
        reporter: Optional[ProgressReporter] = None,
        launcher: Optional[ProcessLauncher] = None,
        console: Optional[Console] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ):
        """Initialize the orchestrator.

        Args:
            settings: Process-level settings
            reporter: Progress reporter (default: one built from settings)
            launcher: Process launcher for the agent (default: real subprocess)
            console: Rich console for stage banners (default: stderr)
            heartbeat_interval: Seconds between rolling progress reports
        """
        self.settings = settings
        self.reporter = reporter or ProgressReporter(settings.server_url, settings.session_id)
        self.launcher = launcher
        self.console = console or Console(stderr=True)
        self.heartbeat_interval = heartbeat_interval
        self.stages = SessionStageMachine()
        self.workspace = Workspace(settings.workspace_path, token=settings.git_token)
        self.config: Optional[SessionConfig] = None
        self.home: Optional[Path] = None

    def _banner(self, step: str) -> None:
        self.console.print(f"[cyan]{step}...[/cyan]")

    def _stage(self, stage: ProgressStage, progress: int, step: str) -> StageTimer:
        self.stages.advance_to(stage)
        self._banner(step)
        return self.reporter.stage_start(stage, progress, step)

    def load_config(self) -> SessionConfig:
        timer = self._stage(ProgressStage.PENDING, 0, "Loading session config")
        config = load_session_config(self.settings.config_path)
        if not self.reporter.server_url and config.server_url:
            self.reporter.server_url = config.server_url.rstrip("/")
        self.reporter.stage_complete(timer)
        log.info("Session %s: %s in %s phase", config.run_id, config.agent.value, config.phase.value)
        return config

    def clone(self, config: SessionConfig) -> None:
        timer = self._stage(ProgressStage.CLONING, 10, "Cloning repository")
        self.workspace.clone(config)
        self.reporter.stage_complete(timer)

    def load_agent_config(self, config: SessionConfig) -> AgentConfig:
        timer = self._stage(ProgressStage.LOADING, 20, "Loading agent config")
        agent_config = load_agent_config(self.workspace.path, config.agent)
        self.reporter.stage_complete(timer)
        return agent_config

    def assemble_context(self, config: SessionConfig) -> Path:
        timer = self._stage(ProgressStage.LOADING, 25, "Assembling context")
        context = ContextAssembler(self.workspace.path).assemble(config)
        path = write_context_file(context.text, self.settings.context_path)
        log.info("Context assembled from %d file(s), %d chars", len(context.sources), len(context.text))
        sources = ", ".join(context.sources) if context.sources else "none"
        self.reporter.report_log(f"Context sources: {sources}", stage=ProgressStage.LOADING)
        self.reporter.stage_complete(timer)
        return path

    def execute(self, config: SessionConfig, agent_config: AgentConfig, context_path: Path) -> AgentResult:
        """Run the agent.

        Raises:
            AgentExecutionError: If the agent did not succeed
        """
        timer = self._stage(ProgressStage.EXECUTING, 30, "Executing agent")
        self.home = create_isolated_home(config.run_id)
        env = build_agent_env(
            config,
            self.home,
            anthropic_api_key=self.settings.anthropic_api_key,
            session_id=self.settings.session_id,
            server_url=self.settings.server_url,
        )
        runner = AgentRunner(
            get_agent(AGENT_TOOL, self.settings.agent_command),
            self.reporter,
            launcher=self.launcher,
            heartbeat_interval=self.heartbeat_interval,
        )
        result = runner.run(
            config.task_prompt,
            context_path,
            agent_config.model,
            cwd=self.workspace.path,
            env=env,
            timeout=self.settings.timeout_seconds,
        )
        if not result.success:
            raise AgentExecutionError(
                result.error or "Unknown error",
                exit_code=result.exit_code,
                timed_out=result.timed_out,
            )
        self.reporter.stage_complete(timer)
        return result

    def capture(self, config: SessionConfig, since: float) -> bool:
        timer = self._stage(ProgressStage.CAPTURING, 80, "Capturing transcript")
        captured = False
        if self.home is not None:
            captured = capture_transcript(config, self.home, self.workspace.path, since=since) is not None
        self.reporter.stage_complete(timer)
        return captured

    def update_state(self, config: SessionConfig) -> None:
        timer = self._stage(ProgressStage.COMMITTING, 85, "Updating repository state")
        update_progress(self.workspace.path, config)
        self.reporter.stage_complete(timer)

    def commit(self, config: SessionConfig, summary: str) -> Optional[str]:
        timer = self._stage(ProgressStage.COMMITTING, 90, "Committing and pushing")
        sha = self.workspace.commit_and_push(config, summary)
        self.reporter.stage_complete(timer)
        return sha

    def _cleanup(self) -> None:
        if self.home is None:
            return
        if self.settings.cleanup_home:
            remove_isolated_home(self.home)
        else:
            log.debug("Leaving isolated home at %s", self.home)

    def run(self) -> RunResult:
        """Run the session. Failures are reported and returned, never raised."""
        started_at = utc_now()
        since = time.time()
        try:
            config = self.config = self.load_config()
            self.clone(config)
            agent_config = self.load_agent_config(config)
            context_path = self.assemble_context(config)
            result = self.execute(config, agent_config, context_path)
            transcript_captured = self.capture(config, since)
            self.update_state(config)
            summary = extract_summary(result.output)
            sha = self.commit(config, summary)

            self.stages.advance_to(ProgressStage.COMPLETED)
            self.reporter.report_complete(summary, commit_sha=sha, token_usage=result.usage)
            self.console.print(f"[green]✓ Session complete: {summary}[/green]")
            return RunResult(
                success=True,
                run_id=config.run_id,
                agent=config.agent.value,
                started_at=started_at,
                completed_at=utc_now(),
                summary=summary,
                commit_sha=sha,
                usage=result.usage,
                transcript_captured=transcript_captured,
            )
        except Exception as e:
            return self._fail(e, started_at)
        finally:
            self._cleanup()

    def _fail(self, error: Exception, started_at: str) -> RunResult:
        message = str(error)
        log.error("Session failed: %s", message, exc_info=error)
        self.console.print(f"[red]✗ Session failed: {message}[/red]")

        if not self.stages.is_terminal():
            self.stages.advance_to(ProgressStage.FAILED)
        self.reporter.report_failure(message)

        commit_sha = None
        if self.config is not None:
            commit_sha = self.workspace.commit_partial_work(self.config, message)

        return RunResult(
            success=False,
            run_id=self.config.run_id if self.config else "unknown",
            agent=self.config.agent.value if self.config else "unknown",
            started_at=started_at,
            completed_at=utc_now(),
            error=message,
            commit_sha=commit_sha,
        )
