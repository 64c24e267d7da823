"""Progress reporting to the AgentForge control plane.

The reporter is a one-way side channel: every call is best-effort, failures are
logged and swallowed, and nothing here can change the pipeline's control flow.
When no session ID is configured (headless or local runs) every call is a no-op.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import psutil

from agentforge_runner.models import ProgressStage, TokenUsage

log = logging.getLogger("agentforge_runner.progress")

REQUEST_TIMEOUT = 10.0


@dataclass(frozen=True)
class StageTimer:
    """Start of a stage, handed back to ``stage_complete`` to measure duration."""

    stage: ProgressStage
    step: str
    started_at: float

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


@dataclass(frozen=True)
class ResourceSample:
    cpu_percent: float
    memory_mb: float
    memory_percent: float

    def to_payload(self) -> Dict[str, float]:
        return {
            "cpuPercent": round(self.cpu_percent, 1),
            "memoryMb": round(self.memory_mb, 1),
            "memoryPercent": round(self.memory_percent, 2),
        }


class ResourceSampler:
    """Samples CPU and memory of a process and its children."""

    def __init__(self, pid: int):
        self.pid = pid
        self._processes: Dict[int, psutil.Process] = {}

    def _tree(self) -> list[psutil.Process]:
        root = psutil.Process(self.pid)
        procs = [root]
        try:
            procs.extend(root.children(recursive=True))
        except psutil.Error:
            pass
        # Reuse Process objects so cpu_percent measures since the last sample
        tree = []
        for proc in procs:
            tree.append(self._processes.setdefault(proc.pid, proc))
        return tree

    def sample(self) -> Optional[ResourceSample]:
        """Take one sample, or None if the process is gone."""
        try:
            tree = self._tree()
        except psutil.Error:
            return None

        cpu = 0.0
        rss = 0
        mem_percent = 0.0
        for proc in tree:
            try:
                cpu += proc.cpu_percent(interval=None)
                rss += proc.memory_info().rss
                mem_percent += proc.memory_percent()
            except psutil.Error:
                continue
        return ResourceSample(
            cpu_percent=cpu,
            memory_mb=rss / (1024 * 1024),
            memory_percent=mem_percent,
        )


class ProgressReporter:
    """Client for the control plane's agent-session endpoints."""

    def __init__(
        self,
        server_url: Optional[str],
        session_id: Optional[str],
        client: Optional[httpx.Client] = None,
    ):
        """Initialize the reporter.

        Args:
            server_url: Base URL of the control plane
            session_id: Agent session ID; reporting is disabled without it
            client: HTTP client to use (default: a new httpx.Client)
        """
        self.server_url = (server_url or "").rstrip("/")
        self.session_id = session_id
        self._client = client
        # Heartbeat and stream-reader threads report concurrently
        self._client_lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.session_id and self.server_url)

    def _get_client(self) -> httpx.Client:
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(
                    timeout=REQUEST_TIMEOUT,
                    headers={"Content-Type": "application/json"},
                )
            return self._client

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def _send(self, method: str, path: str, body: Dict[str, Any], what: str) -> None:
        if not self.enabled:
            return
        url = f"{self.server_url}/api/agentSessions/{self.session_id}{path}"
        try:
            response = self._get_client().request(method, url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            log.warning("Failed to report %s: %s", what, e)
        except Exception as e:
            # Reporting must never break the pipeline
            log.warning("Failed to report %s (%s): %s", what, type(e).__name__, e)

    def report_progress(
        self,
        stage: Optional[ProgressStage] = None,
        progress: Optional[int] = None,
        current_step: Optional[str] = None,
        summary: Optional[str] = None,
        commit_sha: Optional[str] = None,
        error: Optional[str] = None,
        token_usage: Optional[TokenUsage] = None,
    ) -> None:
        """Update the session's progress fields. Unset fields are left alone."""
        body: Dict[str, Any] = {}
        if stage is not None:
            body["stage"] = ProgressStage(stage).value
        if progress is not None:
            body["progress"] = progress
        if current_step is not None:
            body["currentStep"] = current_step
        if summary is not None:
            body["summary"] = summary
        if commit_sha is not None:
            body["commitSha"] = commit_sha
        if error is not None:
            body["error"] = error
        if token_usage is not None:
            body["tokenUsage"] = token_usage.model_dump(by_alias=True, exclude_none=True)
        self._send("PATCH", "/progress", body, "progress")

    def report_log(
        self,
        message: str,
        level: str = "info",
        stage: Optional[ProgressStage] = None,
    ) -> None:
        """Append a log entry to the session."""
        body: Dict[str, Any] = {"level": level, "message": message}
        if stage is not None:
            body["stage"] = ProgressStage(stage).value
        self._send("POST", "/logs", body, "log")

    def report_resource_metrics(self, sample: ResourceSample) -> None:
        self._send("POST", "/resourceMetrics", sample.to_payload(), "resource metrics")

    def stage_start(self, stage: ProgressStage, progress: int, step: str) -> StageTimer:
        """Report the start of a stage and return its timer."""
        timer = StageTimer(stage=stage, step=step, started_at=time.monotonic())
        self.report_progress(stage=stage, progress=progress, current_step=step)
        self.report_log(step, stage=stage)
        return timer

    def stage_complete(self, timer: StageTimer) -> int:
        """Report that a stage finished. Returns the elapsed milliseconds."""
        duration_ms = timer.elapsed_ms
        self._send(
            "POST",
            f"/stages/{timer.stage.value}/complete",
            {"durationMs": duration_ms, "step": timer.step},
            "stage completion",
        )
        return duration_ms

    def report_complete(
        self,
        summary: str,
        commit_sha: Optional[str] = None,
        token_usage: Optional[TokenUsage] = None,
    ) -> None:
        self.report_progress(
            stage=ProgressStage.COMPLETED,
            progress=100,
            current_step="Done",
            summary=summary,
            commit_sha=commit_sha,
            token_usage=token_usage,
        )

    def report_failure(self, error: str) -> None:
        self.report_progress(stage=ProgressStage.FAILED, error=error)
        self.report_log(error, level="error", stage=ProgressStage.FAILED)
