"""Helpers for integration tests: git plumbing and the fake agent script."""

import subprocess
from pathlib import Path
from typing import Optional

GIT_IDENTITY = ["-c", "user.name=Test User", "-c", "user.email=test@example.com"]

FAKE_AGENT = '''#!{python}
"""Stand-in for the coding-agent CLI."""
import json
import os
import pathlib
import subprocess
import sys
import tempfile

mode = os.environ.get("FAKE_AGENT_MODE", "success")

pathlib.Path("feature.txt").write_text("hello from agent\\n")

transcript = pathlib.Path(os.environ["HOME"]) / ".claude" / "projects" / "workspace" / "session.jsonl"
transcript.parent.mkdir(parents=True, exist_ok=True)
transcript.write_text(json.dumps({{"type": "user", "message": "task"}}) + "\\n")

print("working on it", file=sys.stderr, flush=True)

if mode == "fail":
    print("something broke", file=sys.stderr)
    sys.exit(1)

if mode == "conflict":
    # Someone else pushes to the branch while the agent works
    remote = os.environ["FAKE_AGENT_REMOTE"]
    other = tempfile.mkdtemp()
    git = ["git", "-c", "user.name=Other", "-c", "user.email=other@example.com"]
    subprocess.run(git + ["clone", "--branch", "main", remote, other], check=True, capture_output=True)
    pathlib.Path(other, "other.txt").write_text("concurrent change\\n")
    subprocess.run(git + ["-C", other, "add", "-A"], check=True, capture_output=True)
    subprocess.run(git + ["-C", other, "commit", "-m", "concurrent"], check=True, capture_output=True)
    subprocess.run(git + ["-C", other, "push", "origin", "HEAD:main"], check=True, capture_output=True)

print(json.dumps({{
    "type": "result",
    "subtype": "success",
    "is_error": False,
    "result": "# Summary\\nAdded file",
    "usage": {{"input_tokens": 100, "output_tokens": 50, "cache_read_input_tokens": 10, "cache_creation_input_tokens": 5}},
}}))
'''


def git(*args: str, cwd: Optional[Path] = None) -> str:
    result = subprocess.run(
        ["git", *GIT_IDENTITY, *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


def remote_git(remote: Path, *args: str) -> str:
    """Run a git command against a bare repository."""
    return git(f"--git-dir={remote}", *args)


