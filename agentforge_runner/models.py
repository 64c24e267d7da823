"""Data models for the AgentForge session runner.

The session config and run result cross process boundaries as camelCase JSON,
so every model here uses a camelCase alias generator while Python code keeps
snake_case attribute names.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel


class AgentRole(str, Enum):
    """Role an agent plays in the project."""

    PM = "pm"
    ENGINEER = "engineer"
    QA = "qa"
    LEAD = "lead"


class ProjectPhase(str, Enum):
    """Lifecycle phase of the target project."""

    DISCOVERY = "discovery"
    SHAPING = "shaping"
    BUILDING = "building"
    DELIVERY = "delivery"


class ModelTier(str, Enum):
    """Model tier selected per role in the repository's agent config."""

    OPUS = "opus"
    SONNET = "sonnet"
    HAIKU = "haiku"


MODEL_MAP: Dict[ModelTier, str] = {
    ModelTier.OPUS: "claude-opus-4-5-20251101",
    ModelTier.SONNET: "claude-sonnet-4-20250514",
    ModelTier.HAIKU: "claude-haiku-4-20250414",
}


def resolve_model_id(tier: ModelTier) -> str:
    """Get the concrete model identifier for a tier."""
    return MODEL_MAP[ModelTier(tier)]


class ProgressStage(str, Enum):
    """Stage of a session as reported to the control plane.

    Order matters: stages before the current one are implicitly complete.
    """

    PENDING = "pending"
    CLONING = "cloning"
    LOADING = "loading"
    EXECUTING = "executing"
    CAPTURING = "capturing"
    COMMITTING = "committing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProgressStage.COMPLETED, ProgressStage.FAILED)


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionConfig(CamelModel):
    """Configuration for a single agent session.

    Loaded once from the session JSON file and never mutated.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    # Identity
    run_id: str = Field(min_length=1)
    project_id: str = Field(min_length=1)
    agent: AgentRole
    phase: ProjectPhase

    # Repo (HTTPS, SSH, or a local path for testing)
    repo_url: str
    branch: str = "main"

    # Task
    task_prompt: str
    assigned_tasks: Optional[List[str]] = None

    # Control-plane server the agent may call back during execution
    server_url: Optional[str] = None

    @field_validator("repo_url")
    @classmethod
    def _check_repo_url(cls, value: str) -> str:
        if not (
            value.startswith("https://")
            or value.startswith("git@")
            or value.startswith("/")
        ):
            raise ValueError("Must be an HTTPS, SSH, or local file path")
        return value

    @field_validator("server_url")
    @classmethod
    def _check_server_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not (
            value.startswith("http://") or value.startswith("https://")
        ):
            raise ValueError("serverUrl must be an http(s) URL")
        return value


class AgentConfig(CamelModel):
    """Per-role agent configuration stored in the project repository."""

    model: ModelTier
    max_tokens: int
    orchestrator: Optional[bool] = None


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class Milestone(CamelModel):
    id: ProjectPhase
    status: MilestoneStatus
    completed_at: Optional[str] = None


class ProjectProgress(CamelModel):
    """Structured project state kept in ``state/progress.yaml``."""

    phase: ProjectPhase
    current_sprint: int
    milestones: List[Milestone] = Field(default_factory=list)
    next_actions: List[str] = Field(default_factory=list)
    last_agent: AgentRole
    last_run_at: str


class TokenUsage(CamelModel):
    """Token counts and cost reported by the agent process."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    cost_usd: Optional[float] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_write_tokens
        )


class RunResult(CamelModel):
    """Final outcome of a session, printed as JSON when the process exits."""

    success: bool
    run_id: str
    agent: str
    started_at: str
    completed_at: str
    summary: Optional[str] = None
    error: Optional[str] = None
    commit_sha: Optional[str] = None
    usage: Optional[TokenUsage] = None
    transcript_captured: Optional[bool] = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)
