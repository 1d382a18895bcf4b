"""Escalation policy for failed task cycles.

Two entry points share the same handlers:

- `escalate` walks the fixed level ladder (self-resolve, team, team
  leader, organization, human), moving up while a level cannot act.
- `select_action` / `execute_action` pick from a richer action set
  (retry, reassign, decompose, simplify, escalate) based on the task.

Every call appends one immutable record to the `EscalationHistory`
handed to the policy.
"""

import logging
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Callable

from crew_orchestrator.core import tasks as task_store
from crew_orchestrator.core.agents import find_idle_teammates, get_agent
from crew_orchestrator.core.tasks import SubtaskSpec
from crew_orchestrator.db.engine import utcnow
from crew_orchestrator.db.models import Task, TaskStatus, TaskType

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
SIMPLIFY_MARKER = "SIMPLIFY REQUEST"

_REQUIREMENT_PATTERNS = [
    re.compile(r"requirements?:", re.IGNORECASE),
    re.compile(r"must have:", re.IGNORECASE),
    re.compile(r"should have:", re.IGNORECASE),
    re.compile(r"features?:", re.IGNORECASE),
    re.compile(r"[-*]\s+"),
]
MIN_REQUIREMENT_MARKERS = 5


class EscalationLevel(IntEnum):
    SELF_RESOLVE = 1
    TEAM_COLLABORATION = 2
    TEAM_LEADER = 3
    ORGANIZATION = 4
    HUMAN_INTERVENTION = 5


class EscalationAction(Enum):
    RETRY = "retry"
    REASSIGN = "reassign"
    DECOMPOSE = "decompose"
    SIMPLIFY = "simplify"
    ESCALATE_TO_LEADER = "escalate-to-leader"
    ESCALATE_TO_ORG = "escalate-to-org"
    REQUEST_HUMAN = "request-human"


# Level each action is recorded under.
ACTION_LEVELS = {
    EscalationAction.RETRY: EscalationLevel.SELF_RESOLVE,
    EscalationAction.REASSIGN: EscalationLevel.TEAM_COLLABORATION,
    EscalationAction.DECOMPOSE: EscalationLevel.TEAM_LEADER,
    EscalationAction.SIMPLIFY: EscalationLevel.TEAM_LEADER,
    EscalationAction.ESCALATE_TO_LEADER: EscalationLevel.TEAM_LEADER,
    EscalationAction.ESCALATE_TO_ORG: EscalationLevel.ORGANIZATION,
    EscalationAction.REQUEST_HUMAN: EscalationLevel.HUMAN_INTERVENTION,
}


@dataclass(frozen=True)
class EscalationRecord:
    task_id: str
    agent_id: str
    level: EscalationLevel
    reason: str
    action: EscalationAction
    timestamp: datetime
    metadata: dict | None = None


@dataclass
class EscalationResult:
    success: bool
    action: EscalationAction
    level: EscalationLevel
    message: str = ""
    # Set when this level could not act and the next one should.
    next_level: EscalationLevel | None = None
    created_subtasks: list[Task] = field(default_factory=list)


class EscalationHistory:
    """Append-only escalation audit trail, keyed by task.

    One instance is shared by every policy (and thread) in a process.
    """

    def __init__(self):
        self._records: dict[str, list[EscalationRecord]] = {}
        self._lock = threading.Lock()

    def record(self, record: EscalationRecord):
        with self._lock:
            self._records.setdefault(record.task_id, []).append(record)
        logger.debug("Escalation recorded: task %s, level %d", record.task_id, record.level)

    def for_task(self, task_id: str) -> tuple[EscalationRecord, ...]:
        with self._lock:
            return tuple(self._records.get(task_id, ()))

    def all(self) -> tuple[EscalationRecord, ...]:
        with self._lock:
            return tuple(r for records in self._records.values() for r in records)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(r) for r in self._records.values())


Notifier = Callable[[Task, EscalationRecord], None]


def is_complex_for_escalation(task: Task) -> bool:
    """Heuristic for "too big for one agent": long text, many skills or many files."""
    return (
        len(task.description or "") > 500
        or len(task.required_skills) > 3
        or len(task.affected_files) > 5
    )


def has_many_requirements(task: Task) -> bool:
    if not task.description:
        return False
    total = sum(len(p.findall(task.description)) for p in _REQUIREMENT_PATTERNS)
    return total >= MIN_REQUIREMENT_MARKERS


def default_subtask_specs(task: Task) -> list[SubtaskSpec]:
    """The research, implementation and review split used for delegation and decomposition."""
    research = f"Research: {task.title}"
    implement = f"Implement: {task.title}"
    return [
        SubtaskSpec(
            title=research,
            description=(
                "Investigate the codebase and requirements for the parent task. "
                "Record findings and a concrete implementation plan.\n\n"
                f"{task.description}"
            ),
            type=TaskType.RESEARCH,
        ),
        SubtaskSpec(
            title=implement,
            description=(
                "Implement the parent task following the research findings.\n\n"
                f"{task.description}"
            ),
            type=TaskType.IMPLEMENTATION,
            affected_files=list(task.affected_files),
            depends_on=[research],
        ),
        SubtaskSpec(
            title=f"Review: {task.title}",
            description="Review the implementation for correctness, design and test coverage.",
            type=TaskType.REVIEW,
            affected_files=list(task.affected_files),
            depends_on=[implement],
        ),
    ]


class EscalationPolicy:
    """Decides and applies what happens to a task after a failed cycle."""

    def __init__(
        self,
        db: sqlite3.Connection,
        history: EscalationHistory,
        notifier: Notifier | None = None,
        max_retries: int = MAX_RETRIES,
    ):
        self.db = db
        self.history = history
        self.notifier = notifier
        self.max_retries = max_retries

    # ── Level ladder ────────────────────────────────────────────────────────

    def escalate(
        self,
        task_id: str,
        agent_id: str,
        reason: str,
        level: EscalationLevel | int | None = None,
        metadata: dict | None = None,
    ) -> EscalationResult:
        """Escalate a failed task starting at `level`.

        Without an explicit level one is inferred from the task. Levels
        that cannot act hand over to the next, so one call can end
        several levels higher than it started.
        """
        task_store.require_task(self.db, task_id)
        current = EscalationLevel(level) if level is not None else self.determine_level(task_id)
        logger.info("Escalating task %s to level %d: %s", task_id, current, reason)

        handlers = {
            EscalationLevel.SELF_RESOLVE: self._self_resolve,
            EscalationLevel.TEAM_COLLABORATION: self._team_collaboration,
            EscalationLevel.TEAM_LEADER: self._team_leader,
            EscalationLevel.ORGANIZATION: self._organization,
            EscalationLevel.HUMAN_INTERVENTION: self._human_intervention,
        }
        result = handlers[current](task_id, agent_id, reason)
        while result.next_level is not None:
            logger.info("Task %s: %s, moving to level %d", task_id, result.message, result.next_level)
            result = handlers[result.next_level](task_id, agent_id, reason)

        self._record(task_id, agent_id, result.level, reason, result.action, metadata)
        return result

    def determine_level(self, task_id: str) -> EscalationLevel:
        """Infer a starting level from the task's history and priority."""
        task = task_store.get_task(self.db, task_id)
        if not task:
            return EscalationLevel.HUMAN_INTERVENTION
        if task.retry_count < self.max_retries:
            return EscalationLevel.SELF_RESOLVE
        if task.priority == 1:
            return EscalationLevel.ORGANIZATION
        return EscalationLevel.TEAM_COLLABORATION

    # ── Action selection ────────────────────────────────────────────────────

    def select_action(self, task_id: str, agent_id: str) -> EscalationAction:
        """Pick the most useful action for a failed task."""
        task = task_store.get_task(self.db, task_id)
        if not task:
            return EscalationAction.REQUEST_HUMAN

        if task.retry_count < self.max_retries:
            return EscalationAction.RETRY

        if is_complex_for_escalation(task) and not task.subtasks:
            return EscalationAction.DECOMPOSE

        if has_many_requirements(task) and SIMPLIFY_MARKER not in (task.description or ""):
            return EscalationAction.SIMPLIFY

        agent = get_agent(self.db, agent_id)
        if agent and find_idle_teammates(self.db, agent.team_id, agent.id):
            return EscalationAction.REASSIGN

        if task.priority <= 2:
            return EscalationAction.ESCALATE_TO_ORG

        return EscalationAction.ESCALATE_TO_LEADER

    def execute_action(
        self,
        action: EscalationAction,
        task_id: str,
        agent_id: str,
        reason: str,
        metadata: dict | None = None,
    ) -> EscalationResult:
        """Apply one action directly, without walking the ladder."""
        task_store.require_task(self.db, task_id)
        logger.info("Executing action %s for task %s: %s", action.value, task_id, reason)
        handlers = {
            EscalationAction.RETRY: self._self_resolve,
            EscalationAction.REASSIGN: self._team_collaboration,
            EscalationAction.DECOMPOSE: self._decompose,
            EscalationAction.SIMPLIFY: self._simplify,
            EscalationAction.ESCALATE_TO_LEADER: self._team_leader,
            EscalationAction.ESCALATE_TO_ORG: self._organization,
            EscalationAction.REQUEST_HUMAN: self._human_intervention,
        }
        result = handlers[action](task_id, agent_id, reason)
        self._record(task_id, agent_id, ACTION_LEVELS[action], reason, action, metadata)
        return result

    def resolve(self, task_id: str, agent_id: str, reason: str, metadata: dict | None = None) -> EscalationResult:
        """Select the best action for a task and apply it."""
        action = self.select_action(task_id, agent_id)
        return self.execute_action(action, task_id, agent_id, reason, metadata)

    # ── Handlers ────────────────────────────────────────────────────────────

    def _self_resolve(self, task_id: str, agent_id: str, reason: str) -> EscalationResult:
        level = EscalationLevel.SELF_RESOLVE
        task = task_store.require_task(self.db, task_id)
        if task.retry_count >= self.max_retries:
            return EscalationResult(
                False, EscalationAction.RETRY, level,
                f"Exceeded maximum retry count ({self.max_retries})",
                next_level=EscalationLevel.TEAM_COLLABORATION,
            )

        attempt = task.retry_count + 1
        task_store.update_task(
            self.db, task_id, retry_count=attempt, status=TaskStatus.READY, error_message=reason
        )
        return EscalationResult(
            True, EscalationAction.RETRY, level,
            f"Task scheduled for retry (attempt {attempt}/{self.max_retries})",
        )

    def _team_collaboration(self, task_id: str, agent_id: str, reason: str) -> EscalationResult:
        level = EscalationLevel.TEAM_COLLABORATION
        agent = get_agent(self.db, agent_id)
        if not agent or not agent.team_id:
            return EscalationResult(
                False, EscalationAction.REASSIGN, level,
                "Agent has no team", next_level=EscalationLevel.TEAM_LEADER,
            )

        teammates = find_idle_teammates(self.db, agent.team_id, agent.id)
        if not teammates:
            return EscalationResult(
                False, EscalationAction.REASSIGN, level,
                "No available team members", next_level=EscalationLevel.TEAM_LEADER,
            )

        task_store.update_task(
            self.db,
            task_id,
            assigned_agent_id=None,
            status=TaskStatus.READY,
            error_message=f"Reassigned from {agent.name}: {reason}",
        )
        return EscalationResult(
            True, EscalationAction.REASSIGN, level,
            f"Task made available to {len(teammates)} team member(s)",
        )

    def _team_leader(self, task_id: str, agent_id: str, reason: str) -> EscalationResult:
        task_store.update_task(
            self.db, task_id,
            status=TaskStatus.IN_REVIEW,
            error_message=f"Escalated to team leader: {reason}",
        )
        return EscalationResult(
            True, EscalationAction.ESCALATE_TO_LEADER, EscalationLevel.TEAM_LEADER,
            "Task marked for team leader review",
        )

    def _organization(self, task_id: str, agent_id: str, reason: str) -> EscalationResult:
        task_store.update_task(
            self.db, task_id,
            status=TaskStatus.BLOCKED,
            error_message=f"Organization escalation: {reason}",
        )
        logger.warning("Task %s escalated to organization level - requires admin review", task_id)
        return EscalationResult(
            True, EscalationAction.ESCALATE_TO_ORG, EscalationLevel.ORGANIZATION,
            "Task escalated to organization level - admin review required",
        )

    def _human_intervention(self, task_id: str, agent_id: str, reason: str) -> EscalationResult:
        level = EscalationLevel.HUMAN_INTERVENTION
        task = task_store.update_task(
            self.db, task_id,
            status=TaskStatus.BLOCKED,
            error_message=f"Human intervention required: {reason}",
        )
        notified = self._notify(
            task,
            EscalationRecord(task_id, agent_id, level, reason, EscalationAction.REQUEST_HUMAN, utcnow()),
        )
        logger.warning("Task %s marked for human intervention", task_id)
        message = "Task marked for human intervention"
        if notified:
            message += " - notification sent"
        return EscalationResult(True, EscalationAction.REQUEST_HUMAN, level, message)

    def _decompose(self, task_id: str, agent_id: str, reason: str) -> EscalationResult:
        level = ACTION_LEVELS[EscalationAction.DECOMPOSE]
        task = task_store.require_task(self.db, task_id)
        outcome = task_store.decompose(
            self.db, task_id, default_subtask_specs(task), created_by_agent_id=agent_id
        )
        if not outcome.success:
            return EscalationResult(
                False, EscalationAction.DECOMPOSE, level,
                "Decomposition failed: " + "; ".join(outcome.errors),
            )
        for sub in outcome.created_subtasks:
            task_store.update_task(self.db, sub.id, status=TaskStatus.READY)

        # The parent waits on its subtasks; the rollup reopens it for review.
        task_store.update_task(
            self.db, task_id,
            status=TaskStatus.BLOCKED,
            error_message=f"Decomposition requested: {reason}",
        )
        return EscalationResult(
            True, EscalationAction.DECOMPOSE, level,
            f"Task decomposed into {len(outcome.created_subtasks)} subtasks",
            created_subtasks=outcome.created_subtasks,
        )

    def _simplify(self, task_id: str, agent_id: str, reason: str) -> EscalationResult:
        task = task_store.require_task(self.db, task_id)
        note = (
            f"\n\n---\n**{SIMPLIFY_MARKER}**\n"
            f"Reason: {reason}\n"
            f"Requested by: {agent_id}\n"
            "Suggested action: Remove optional requirements or reduce scope to core functionality.\n"
        )
        task_store.update_task(
            self.db, task_id,
            description=(task.description or "") + note,
            status=TaskStatus.IN_REVIEW,
            error_message=f"Simplification requested: {reason}",
        )
        return EscalationResult(
            True, EscalationAction.SIMPLIFY, ACTION_LEVELS[EscalationAction.SIMPLIFY],
            "Task marked for simplification",
        )

    # ── Bookkeeping ─────────────────────────────────────────────────────────

    def _record(
        self,
        task_id: str,
        agent_id: str,
        level: EscalationLevel,
        reason: str,
        action: EscalationAction,
        metadata: dict | None,
    ):
        self.history.record(
            EscalationRecord(
                task_id=task_id,
                agent_id=agent_id,
                level=level,
                reason=reason,
                action=action,
                timestamp=utcnow(),
                metadata=dict(metadata) if metadata else None,
            )
        )
        task_store.log_event(self.db, task_id, "escalated", None, f"L{int(level)}:{action.value}")

    def _notify(self, task: Task, record: EscalationRecord) -> bool:
        if not self.notifier:
            return False
        try:
            self.notifier(task, record)
            return True
        except Exception:
            logger.exception("Failed to send escalation notification for task %s", task.id)
            return False
