"""Data models for the crew orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime


class TaskStatus:
    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    READY_FOR_REVIEW = "ready_for_review"
    IN_REVIEW = "in_review"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ALL = (
        PENDING, READY, IN_PROGRESS, READY_FOR_REVIEW, IN_REVIEW,
        BLOCKED, COMPLETED, FAILED, CANCELLED,
    )
    # A task in one of these states no longer needs an agent.
    RESOLVED = (COMPLETED, FAILED, BLOCKED, CANCELLED)


class TaskType:
    TEAM_EPIC = "team-epic"
    IMPLEMENTATION = "implementation"
    RESEARCH = "research"
    REVIEW = "review"

    ALL = (TEAM_EPIC, IMPLEMENTATION, RESEARCH, REVIEW)


class AgentStatus:
    IDLE = "idle"
    WORKING = "working"
    PAUSED = "paused"
    ERROR = "error"

    ALL = (IDLE, WORKING, PAUSED, ERROR)


class Lifecycle:
    PERMANENT = "permanent"
    TEMPORARY = "temporary"


@dataclass
class Organization:
    id: str
    name: str
    daily_budget_cents: int | None = None
    policy: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Project:
    id: str
    organization_id: str
    name: str
    repo_path: str
    default_branch: str = "main"
    slack_channel: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Team:
    id: str
    organization_id: str
    name: str
    description: str = ""
    manager_agent_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Agent:
    id: str
    organization_id: str
    name: str
    role: str = "coder"
    status: str = AgentStatus.IDLE
    team_id: str | None = None
    manager_id: str | None = None
    depth: int = 0
    lifecycle: str = Lifecycle.PERMANENT
    created_by_agent_id: str | None = None
    max_concurrent_tasks: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_temporary(self) -> bool:
        return self.lifecycle == Lifecycle.TEMPORARY


@dataclass
class Task:
    id: str
    organization_id: str
    title: str
    project_id: str | None = None
    description: str = ""
    type: str = TaskType.IMPLEMENTATION
    status: str = TaskStatus.PENDING
    priority: int = 3
    assigned_agent_id: str | None = None
    assigned_team_id: str | None = None
    parent_task_id: str | None = None
    created_by_agent_id: str | None = None
    affected_files: list[str] = field(default_factory=list)
    required_skills: list[str] = field(default_factory=list)
    estimated_complexity: str | None = None
    story_points: int | None = None
    consecutive_failures: int = 0
    retry_count: int = 0
    review_count: int = 0
    blocked_until: datetime | None = None
    workspace_path: str | None = None
    branch_name: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_failed_at: datetime | None = None
    last_reviewed_at: datetime | None = None
    depends_on: list[str] = field(default_factory=list)
    subtasks: list["Task"] = field(default_factory=list)

    @property
    def priority_label(self) -> str:
        return f"P{self.priority}"


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class Document:
    id: int | None = None
    task_id: str = ""
    agent_id: str | None = None
    title: str = ""
    content: str = ""
    created_at: datetime | None = None
