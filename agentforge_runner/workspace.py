"""Git workspace management for a single agent session.

All git operations for a run happen in one working directory that the run owns
exclusively. Commands are run synchronously through subprocess, one at a time.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote, urlsplit, urlunsplit

from agentforge_runner.models import AgentRole, SessionConfig

log = logging.getLogger("agentforge_runner.workspace")

PRODUCT_NAME = "AgentForge"
EMAIL_DOMAIN = "agentforge.dev"
TOKEN_USERNAME = "x-access-token"


class GitError(Exception):
    """Raised when a git command fails."""

    def __init__(self, args: List[str], returncode: int, stderr: str):
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr.strip()
        command = " ".join(args)
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"git {command} failed (exit {returncode}){detail}")


def get_authenticated_url(repo_url: str, token: Optional[str]) -> str:
    """Inject a token into an HTTPS repository URL.

    Without a token the URL is returned unchanged so git falls back to the
    system credentials. SSH and local paths never carry a token.

    Args:
        repo_url: Repository URL from the session config
        token: Git token, if any

    Returns:
        URL to hand to git
    """
    if not token or not repo_url.startswith(("https://", "http://")):
        return repo_url

    parts = urlsplit(repo_url)
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"{TOKEN_USERNAME}:{quote(token, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def get_agent_name(agent: AgentRole | str) -> str:
    return f"{PRODUCT_NAME} {AgentRole(agent).value}"


def get_agent_email(agent: AgentRole | str) -> str:
    return f"{AgentRole(agent).value}@{EMAIL_DOMAIN}"


def format_commit_message(config: SessionConfig, summary: str) -> str:
    """Format the structured commit message for a session."""
    return f"agent({config.agent.value}): {summary} [{config.run_id}]"


def format_failure_message(config: SessionConfig, error: BaseException | str) -> str:
    """Format the commit message used to preserve work from a failed session."""
    # Agent stderr can span many lines; keep the subject on one
    detail = " ".join(str(error).split())
    return format_commit_message(config, f"FAILED - {detail}")


class Workspace:
    """The cloned repository a session works in."""

    def __init__(self, path: Path, token: Optional[str] = None):
        """Initialize the workspace.

        Args:
            path: Directory the repository is (or will be) cloned into
            token: Optional git token used for clone and push
        """
        self.path = Path(path)
        self.token = token

    def _redact(self, text: str) -> str:
        if self.token:
            text = text.replace(self.token, "***")
            text = text.replace(quote(self.token, safe=""), "***")
        return text

    def _git(self, *args: str, cwd: Optional[Path] = None) -> str:
        """Run a git command and return stdout.

        Raises:
            GitError: If git exits non-zero or cannot be started
        """
        cmd = ["git", *args]
        if cwd is None:
            cmd = ["git", "-C", str(self.path), *args]
        log.debug("Running: %s", self._redact(" ".join(cmd)))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
            )
        except subprocess.CalledProcessError as e:
            raise GitError(
                [self._redact(a) for a in args],
                e.returncode,
                self._redact(e.stderr or ""),
            ) from None
        except FileNotFoundError as e:
            raise GitError(list(args), 127, f"git executable not found: {e}") from None
        return result.stdout

    def clone(self, config: SessionConfig) -> None:
        """Shallow-clone the session branch and configure commit identity.

        Args:
            config: Session config with repo URL, branch, and agent role

        Raises:
            GitError: If any git command fails
        """
        auth_url = get_authenticated_url(config.repo_url, self.token)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        log.info("Cloning %s (branch %s) into %s", config.repo_url, config.branch, self.path)
        self._git(
            "clone",
            "--branch",
            config.branch,
            "--depth",
            "1",
            auth_url,
            str(self.path),
            cwd=self.path.parent,
        )

        self._git("config", "user.name", get_agent_name(config.agent))
        self._git("config", "user.email", get_agent_email(config.agent))
        # Pushes reuse the injected credential
        self._git("config", "credential.helper", "store")

    def has_changes(self) -> bool:
        """Stage everything and report whether there is anything to commit."""
        self._git("add", "-A")
        status = self._git("status", "--porcelain")
        return bool(status.strip())

    def head_sha(self) -> str:
        return self._git("rev-parse", "HEAD").strip()

    def unpushed_commits(self, config: SessionConfig) -> int:
        """Number of local commits not on the cloned remote branch."""
        count = self._git("rev-list", "--count", f"origin/{config.branch}..HEAD")
        return int(count.strip() or 0)

    def _push_with_rebase(self, config: SessionConfig) -> None:
        """Push, rebasing onto the remote branch once if the push is rejected."""
        auth_url = get_authenticated_url(config.repo_url, self.token)
        try:
            self._git("push", auth_url, f"HEAD:{config.branch}")
            return
        except GitError as e:
            log.info("Push rejected, fetching and rebasing: %s", e.stderr)

        # Shallow clones cannot rebase onto a diverged remote
        try:
            self._git("fetch", "--unshallow", auth_url, config.branch)
        except GitError:
            log.debug("Fetch --unshallow failed, repository is probably complete already")

        self._git("fetch", auth_url, config.branch)
        self._git("rebase", "FETCH_HEAD")
        self._git("push", auth_url, f"HEAD:{config.branch}")

    def commit_and_push(self, config: SessionConfig, summary: str) -> Optional[str]:
        """Commit all changes and push them to the session branch.

        A rejected push triggers exactly one fetch + rebase + retry cycle.
        A second rejection propagates.

        Args:
            config: Session config
            summary: Human-readable summary for the commit message

        Returns:
            The pushed commit SHA, or None if the working tree was clean

        Raises:
            GitError: If committing or pushing fails
        """
        if not self.has_changes():
            log.info("No changes to commit")
            return None

        self._git("commit", "-m", format_commit_message(config, summary))
        self._push_with_rebase(config)
        sha = self.head_sha()
        log.info("Pushed %s to %s", sha, config.branch)
        return sha

    def commit_partial_work(
        self, config: SessionConfig, error: BaseException | str
    ) -> Optional[str]:
        """Best-effort commit of whatever a failed session left behind.

        Never raises: a failure here must not mask the original error.

        Args:
            config: Session config
            error: The error that failed the session

        Returns:
            The pushed commit SHA, or None if nothing was pushed
        """
        if not (self.path / ".git").exists():
            log.warning("No repository at %s, skipping partial-work commit", self.path)
            return None

        try:
            if self.has_changes():
                self._git("commit", "-m", format_failure_message(config, error))
            elif self.unpushed_commits(config):
                # An earlier commit was made but its push failed
                log.warning("Retrying push of unpushed local commits")
            else:
                return None
            self._push_with_rebase(config)
            sha = self.head_sha()
            log.info("Pushed partial work %s to %s", sha, config.branch)
            return sha
        except Exception as e:
            log.error("Failed to commit partial work: %s", e)
            return None
