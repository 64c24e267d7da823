"""Agent process execution.

Runs the coding agent headless against the cloned repository and reduces what
it printed to an ``AgentResult``. While the agent runs, its stderr lines are
forwarded to the control plane and a heartbeat reports a rolling progress
percentage plus resource usage.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from agentforge_runner.agents.base import BaseAgent
from agentforge_runner.models import ModelTier, ProgressStage, TokenUsage
from agentforge_runner.process import ProcessLauncher, ProcessOutcome, SubprocessLauncher
from agentforge_runner.progress import ProgressReporter, ResourceSampler

log = logging.getLogger("agentforge_runner.executor")

DEFAULT_TIMEOUT_SECONDS = 30 * 60
HEARTBEAT_INTERVAL = 5.0
PROGRESS_START = 30
PROGRESS_CEILING = 75
PROGRESS_STEP = 1
TIMEOUT_ERROR = "Process timed out"


@dataclass
class AgentResult:
    """Outcome of one agent run.

    Attributes:
        success: The agent exited 0 and did not report an error
        output: Free-text result (raw stdout if the output was unstructured)
        error: Failure detail
        usage: Token usage reported by the agent
        exit_code: Process exit status, if it exited
        timed_out: The agent was terminated after the timeout
    """

    success: bool
    output: str
    error: Optional[str] = None
    usage: Optional[TokenUsage] = None
    exit_code: Optional[int] = None
    timed_out: bool = False


class ProgressHeartbeat:
    """Background timer that reports rolling progress while the agent runs.

    The percentage starts at ``start``, grows by ``step`` per tick, and never
    exceeds ``ceiling``.
    """

    def __init__(
        self,
        reporter: ProgressReporter,
        interval: float = HEARTBEAT_INTERVAL,
        start: int = PROGRESS_START,
        ceiling: int = PROGRESS_CEILING,
        step: int = PROGRESS_STEP,
    ):
        self.reporter = reporter
        self.interval = interval
        self.ceiling = ceiling
        self.step = step
        self.progress = min(start, ceiling)
        self._sampler: Optional[ResourceSampler] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def attach(self, pid: int) -> None:
        """Start sampling resources for a running process."""
        self._sampler = ResourceSampler(pid)

    def tick(self) -> None:
        self.progress = min(self.ceiling, self.progress + self.step)
        self.reporter.report_progress(stage=ProgressStage.EXECUTING, progress=self.progress)
        if self._sampler is not None:
            sample = self._sampler.sample()
            if sample is not None:
                self.reporter.report_resource_metrics(sample)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.tick()
            except Exception as e:
                log.debug("Heartbeat tick failed: %s", e)

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="agent-heartbeat", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval)


class AgentRunner:
    """Runs a coding agent as a subprocess."""

    def __init__(
        self,
        agent: BaseAgent,
        reporter: ProgressReporter,
        launcher: Optional[ProcessLauncher] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ):
        self.agent = agent
        self.reporter = reporter
        self.launcher = launcher or SubprocessLauncher()
        self.heartbeat_interval = heartbeat_interval

    def _forward_stderr(self, line: str) -> None:
        self.reporter.report_log(line, level="info", stage=ProgressStage.EXECUTING)

    def run(
        self,
        task_prompt: str,
        context_path: Path,
        model: ModelTier,
        cwd: Path,
        env: Dict[str, str],
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> AgentResult:
        """Run the agent to completion or timeout.

        Args:
            task_prompt: Task prompt for this session
            context_path: File holding the assembled context document
            model: Model tier
            cwd: Repository root to run in
            env: Complete environment for the agent
            timeout: Seconds before the agent is terminated

        Returns:
            The reduced result; failures are returned, never raised
        """
        args: List[str] = self.agent.build_command(task_prompt, context_path, model)
        log.info("Starting %s with model %s", self.agent.name, model)
        log.debug("Agent args: %s", " ".join(args[1:]))

        heartbeat = ProgressHeartbeat(self.reporter, interval=self.heartbeat_interval)
        heartbeat.start()
        try:
            outcome = self.launcher.run(
                args,
                env=env,
                cwd=cwd,
                timeout=timeout,
                on_stderr_line=self._forward_stderr,
                on_start=heartbeat.attach,
            )
        finally:
            heartbeat.stop()

        return self.reduce(outcome)

    def reduce(self, outcome: ProcessOutcome) -> AgentResult:
        """Turn a process outcome into an AgentResult."""
        if outcome.spawn_error is not None:
            return AgentResult(success=False, output="", error=outcome.spawn_error)

        if outcome.timed_out:
            return AgentResult(
                success=False,
                output=outcome.stdout,
                error=TIMEOUT_ERROR,
                timed_out=True,
            )

        parsed = self.agent.parse_output(outcome.stdout)
        stderr = outcome.stderr.strip()

        if outcome.exit_code != 0:
            return AgentResult(
                success=False,
                output=parsed.result,
                error=stderr or f"Process exited with code {outcome.exit_code}",
                usage=parsed.usage,
                exit_code=outcome.exit_code,
            )

        if parsed.is_error:
            return AgentResult(
                success=False,
                output=parsed.result,
                error=stderr or parsed.result or "Agent reported an error",
                usage=parsed.usage,
                exit_code=outcome.exit_code,
            )

        return AgentResult(
            success=True,
            output=parsed.result,
            usage=parsed.usage,
            exit_code=outcome.exit_code,
        )
