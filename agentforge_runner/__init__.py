"""AgentForge runner: clone, run a coding agent, capture, commit, report."""

__version__ = "0.1.0"
