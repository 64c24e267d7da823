"""Adapters for the coding-agent CLIs the runner can drive."""

from agentforge_runner.agents.base import AgentOutput, BaseAgent, ClaudeAgent, get_agent

__all__ = ["AgentOutput", "BaseAgent", "ClaudeAgent", "get_agent"]
