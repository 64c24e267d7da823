"""Base agent interface and implementations.

An agent adapter knows how to invoke one coding-agent CLI: which arguments to
pass and how to read the result it prints. The process itself is run by
``agentforge_runner.process``.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

from agentforge_runner.models import ModelTier, TokenUsage, resolve_model_id

log = logging.getLogger("agentforge_runner.agents")


@dataclass
class AgentOutput:
    """What an agent reported on stdout.

    Attributes:
        structured: Whether stdout parsed as the agent's structured result
        is_error: Error flag reported by the agent (False when unstructured)
        result: Free-text result, or the raw stdout when unstructured
        usage: Token usage, if the agent reported any
    """

    structured: bool
    is_error: bool
    result: str
    usage: Optional[TokenUsage] = None


class BaseAgent(ABC):
    """Base class for coding-agent CLI adapters."""

    def __init__(self, name: str, command: str):
        """Initialize the agent.

        Args:
            name: Agent name
            command: Executable to run
        """
        self.name = name
        self.command = command

    @abstractmethod
    def build_args(self, task_prompt: str, context_path: Path, model: ModelTier) -> List[str]:
        """Get the arguments (without the executable) for a headless run.

        Args:
            task_prompt: Task prompt for this session
            context_path: File holding the assembled context document
            model: Model tier to run with

        Returns:
            Argument list
        """
        pass

    @abstractmethod
    def parse_output(self, stdout: str) -> AgentOutput:
        """Reduce the agent's stdout to a structured result.

        Args:
            stdout: Everything the agent printed on stdout

        Returns:
            Parsed output
        """
        pass

    def build_command(self, task_prompt: str, context_path: Path, model: ModelTier) -> List[str]:
        return [self.command, *self.build_args(task_prompt, context_path, model)]


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def parse_usage(usage: Any, cost: Any = None) -> Optional[TokenUsage]:
    """Build TokenUsage from the agent's usage object.

    Accepts both the CLI's snake_case keys and camelCase keys.
    """
    if not isinstance(usage, dict):
        return None
    cost_usd = cost if isinstance(cost, (int, float)) else usage.get("cost_usd", usage.get("costUsd"))
    return TokenUsage(
        input_tokens=_as_int(usage.get("input_tokens", usage.get("inputTokens"))),
        output_tokens=_as_int(usage.get("output_tokens", usage.get("outputTokens"))),
        cache_read_tokens=_as_int(
            usage.get("cache_read_input_tokens", usage.get("cacheReadTokens"))
        ),
        cache_write_tokens=_as_int(
            usage.get("cache_creation_input_tokens", usage.get("cacheWriteTokens"))
        ),
        cost_usd=float(cost_usd) if isinstance(cost_usd, (int, float)) else None,
    )


class ClaudeAgent(BaseAgent):
    """Agent adapter for Claude Code."""

    def __init__(self, command: str = "claude"):
        """Initialize Claude Code agent.

        Args:
            command: Executable name or path (default: claude)
        """
        super().__init__(name="claude", command=command)

    def build_args(self, task_prompt: str, context_path: Path, model: ModelTier) -> List[str]:
        return [
            "--print",
            task_prompt,
            "--append-system-prompt-file",
            str(context_path),
            "--output-format",
            "json",
            "--dangerously-skip-permissions",
            "--model",
            resolve_model_id(model),
            "--verbose",
        ]

    def _find_result_event(self, stdout: str) -> Optional[dict]:
        text = stdout.strip()
        if not text:
            return None

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            data = None

        if isinstance(data, dict):
            return data
        # Verbose mode may print the whole message list; the result is last
        if isinstance(data, list):
            for event in reversed(data):
                if isinstance(event, dict) and event.get("type") == "result":
                    return event
            return None

        # Otherwise look for a result event on its own line
        for line in reversed(text.splitlines()):
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(event, dict) and "result" in event:
                return event
        return None

    def parse_output(self, stdout: str) -> AgentOutput:
        event = self._find_result_event(stdout)
        if event is None:
            log.debug("Agent output is not structured JSON, using raw text")
            return AgentOutput(structured=False, is_error=False, result=stdout)

        is_error = bool(event.get("is_error", False))
        subtype = event.get("subtype")
        if isinstance(subtype, str) and subtype != "success":
            is_error = True

        result = event.get("result")
        return AgentOutput(
            structured=True,
            is_error=is_error,
            result=result if isinstance(result, str) else "",
            usage=parse_usage(event.get("usage"), event.get("total_cost_usd")),
        )


def get_agent(tool_name: str, command: Optional[str] = None) -> BaseAgent:
    """Get an agent adapter by name.

    Args:
        tool_name: Name of the tool
        command: Executable override (e.g. a path to a wrapper script)

    Returns:
        Agent instance

    Raises:
        ValueError: If tool is not recognized
    """
    if tool_name == "claude":
        return ClaudeAgent(command=command or "claude")
    raise ValueError(f"Unknown agent tool: {tool_name}")
