"""CLI for the AgentForge runner."""

import logging
import os
import sys
import threading
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler

from agentforge_runner import __version__
from agentforge_runner.config import ConfigError, RunnerSettings
from agentforge_runner.models import RunResult
from agentforge_runner.orchestrator import SessionOrchestrator
from agentforge_runner.progress import ProgressReporter
from agentforge_runner.state import utc_now

log = logging.getLogger("agentforge_runner.cli")

console = Console(stderr=True)


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def install_crash_handlers(reporter: ProgressReporter) -> None:
    """Report uncaught exceptions as session failures and exit non-zero.

    Covers both the main thread and background threads (stream readers,
    heartbeat). Reporting is best-effort; the process always exits 1.
    """

    def _crash(exc_type, exc_value, exc_tb) -> None:
        log.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
        try:
            reporter.report_failure(f"Uncaught exception: {exc_value}")
        finally:
            # os._exit is the only way out of a non-main thread
            os._exit(1)

    def _thread_crash(args: threading.ExceptHookArgs) -> None:
        if args.exc_type is SystemExit:
            return
        _crash(args.exc_type, args.exc_value, args.exc_traceback)

    sys.excepthook = _crash
    threading.excepthook = _thread_crash


def _settings_failure(error: ConfigError) -> None:
    """Report a settings error as a failed run and exit 1."""
    started_at = utc_now()
    log.error("Session failed: %s", error)
    reporter = ProgressReporter(
        os.environ.get("AGENTFORGE_SERVER_URL"), os.environ.get("AGENTFORGE_SESSION_ID")
    )
    try:
        reporter.report_failure(str(error))
    finally:
        reporter.close()
    result = RunResult(
        success=False,
        run_id="unknown",
        agent="unknown",
        started_at=started_at,
        completed_at=utc_now(),
        error=str(error),
    )
    click.echo(result.to_json())
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """AgentForge runner: run one coding-agent session against a repository."""
    pass


@main.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    envvar="SESSION_CONFIG_PATH",
    help="Session config JSON (default: ./session.local.json)",
)
@click.option(
    "--workspace",
    "workspace_path",
    type=click.Path(file_okay=False),
    help="Directory to clone the repository into (default: $WORKSPACE_PATH or /workspace)",
)
@click.option(
    "--timeout-minutes",
    type=float,
    help="Agent timeout in minutes (default: 30)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def run(
    config_path: Optional[str],
    workspace_path: Optional[str],
    timeout_minutes: Optional[float],
    verbose: bool,
) -> None:
    """Run one agent session and print its result as JSON.

    Exits 0 on success and 1 on any failure.
    """
    configure_logging(verbose)

    try:
        settings = RunnerSettings.from_env()
    except ConfigError as e:
        _settings_failure(e)
    overrides = {}
    if config_path:
        overrides["config_path"] = config_path
    if workspace_path:
        overrides["workspace_path"] = workspace_path
    if timeout_minutes is not None:
        overrides["timeout_minutes"] = timeout_minutes
    if overrides:
        settings = RunnerSettings(**{**settings.model_dump(), **overrides})

    reporter = ProgressReporter(settings.server_url, settings.session_id)
    install_crash_handlers(reporter)

    try:
        result = SessionOrchestrator(settings, reporter=reporter, console=console).run()
    finally:
        reporter.close()

    # Raw JSON on stdout for the scheduler
    click.echo(result.to_json())
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
