"""Subprocess launching for the agent process.

``ProcessLauncher`` is the seam between the runner and the operating system:
the real implementation spawns a child process and streams its output, tests
substitute a fake that returns canned results.
"""

from __future__ import annotations

import logging
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Dict, List, Optional

log = logging.getLogger("agentforge_runner.process")

StderrLineCallback = Callable[[str], None]
StartCallback = Callable[[int], None]

DRAIN_TIMEOUT = 10.0  # seconds to finish reading output after exit


@dataclass
class ProcessOutcome:
    """How a launched process ended.

    Attributes:
        exit_code: Exit status, or None if the process never exited normally
        stdout: Everything captured from stdout
        stderr: Everything captured from stderr
        timed_out: The process was terminated after the timeout
        spawn_error: The process could not be started at all
    """

    exit_code: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool = False
    spawn_error: Optional[str] = None


class ProcessLauncher(ABC):
    """Runs an external process to completion or timeout."""

    @abstractmethod
    def run(
        self,
        args: List[str],
        env: Dict[str, str],
        cwd: Path,
        timeout: float,
        on_stderr_line: Optional[StderrLineCallback] = None,
        on_start: Optional[StartCallback] = None,
    ) -> ProcessOutcome:
        """Run a process.

        Args:
            args: Full argument vector including the executable
            env: Complete environment for the child
            cwd: Working directory
            timeout: Seconds to wait before terminating the child
            on_stderr_line: Called with each non-empty stderr line as it arrives
            on_start: Called with the child's pid once it is running

        Returns:
            The process outcome
        """
        pass


def _pump(
    stream: IO[str],
    sink: IO[str],
    chunks: List[str],
    on_line: Optional[StderrLineCallback] = None,
) -> None:
    """Copy a child stream to our own stream while buffering it."""
    try:
        for line in iter(stream.readline, ""):
            chunks.append(line)
            try:
                sink.write(line)
                sink.flush()
            except (OSError, ValueError):
                pass
            if on_line is not None and line.strip():
                try:
                    on_line(line.rstrip("\r\n"))
                except Exception as e:
                    log.debug("stderr line callback failed: %s", e)
    except (OSError, ValueError) as e:
        # Stream closed under us (process terminated)
        log.debug("Stopped reading child stream: %s", e)


class SubprocessLauncher(ProcessLauncher):
    """Launches the agent with subprocess, streaming output live."""

    def __init__(self, stdout: Optional[IO[str]] = None, stderr: Optional[IO[str]] = None):
        self._stdout = stdout
        self._stderr = stderr

    def run(
        self,
        args: List[str],
        env: Dict[str, str],
        cwd: Path,
        timeout: float,
        on_stderr_line: Optional[StderrLineCallback] = None,
        on_start: Optional[StartCallback] = None,
    ) -> ProcessOutcome:
        try:
            proc = subprocess.Popen(
                args,
                cwd=str(cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            log.error("Could not start %s: %s", args[0], e)
            return ProcessOutcome(exit_code=None, stdout="", stderr="", spawn_error=str(e))

        if on_start is not None:
            try:
                on_start(proc.pid)
            except Exception as e:
                log.debug("start callback failed: %s", e)

        out_chunks: List[str] = []
        err_chunks: List[str] = []
        assert proc.stdout is not None and proc.stderr is not None
        readers = [
            threading.Thread(
                target=_pump,
                args=(proc.stdout, self._stdout or sys.stdout, out_chunks),
                name="agent-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=_pump,
                args=(proc.stderr, self._stderr or sys.stderr, err_chunks, on_stderr_line),
                name="agent-stderr",
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        try:
            exit_code = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            log.warning("Agent process exceeded %.0fs timeout, terminating", timeout)
            proc.terminate()
            return ProcessOutcome(
                exit_code=None,
                stdout="".join(out_chunks),
                stderr="".join(err_chunks),
                timed_out=True,
            )

        for reader in readers:
            # Background children can hold the pipes open after the agent exits
            reader.join(timeout=DRAIN_TIMEOUT)
            if reader.is_alive():
                log.warning("%s still open after exit, output may be incomplete", reader.name)
        return ProcessOutcome(
            exit_code=exit_code,
            stdout="".join(out_chunks),
            stderr="".join(err_chunks),
        )
