"""Task pool: decides which task an agent works on next.

Candidates are searched in fixed tiers and the first eligible task wins:

    0. parent tasks of this agent whose subtasks are all done (review)
    1. tasks assigned directly to the agent
    2. team epics, for agents that manage a team
    3. non-managers only: tasks touching files the agent recently
       completed, then unassigned work in the team's projects, then any
       unassigned task in the organization

Claiming is a single conditional UPDATE. Losing a race is reported as
"Task already claimed" and is not retried here.

File locking is advisory: the locked-file set is scanned before the
claim, so two agents claiming at the same instant can still both get
tasks touching the same file.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from crew_orchestrator.core import tasks as task_store
from crew_orchestrator.core.agents import crew_ids, managed_team_ids, require_agent
from crew_orchestrator.core.tasks import _placeholders, increment
from crew_orchestrator.db.engine import utcnow
from crew_orchestrator.db.models import Agent, Task, TaskStatus, TaskType

logger = logging.getLogger(__name__)

MAX_REVIEW_COUNT = 3
RECENT_COMPLETED_LIMIT = 5
ROLE_MATCH_SCAN_LIMIT = 20

# Minutes an agent waits after the n-th consecutive failure; 60 thereafter.
BACKOFF_MINUTES = {1: 5, 2: 15}
MAX_BACKOFF_MINUTES = 60

CLAIMABLE = (TaskStatus.READY, TaskStatus.PENDING)

REASON_REVIEW = "Review subtasks - all subtasks completed, needs parent review"
REASON_DIRECT = "Directly assigned"
REASON_TEAM_EPIC = "Managed team epic - needs decomposition"
REASON_SAME_FILE = "Same-file continuation"
REASON_TEAM = "Team unassigned"
REASON_ROLE = "Role matching"
REASON_NONE = "No available tasks"
REASON_CLAIMED = "Task already claimed"


@dataclass
class PullResult:
    task: Task | None
    reason: str

    @property
    def claimed(self) -> bool:
        return self.task is not None


def backoff_minutes(consecutive_failures: int) -> int:
    return BACKOFF_MINUTES.get(consecutive_failures, MAX_BACKOFF_MINUTES)


class TaskPool:
    """Allocates tasks to agents against one database connection."""

    def __init__(self, db: sqlite3.Connection, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    # ── Pull ────────────────────────────────────────────────────────────────

    def pull_next(self, agent_id: str) -> PullResult:
        """Find and claim the next task for an agent."""
        agent = require_agent(self.db, agent_id)
        now = self.clock()
        locked = self._locked_files(agent)
        managed = managed_team_ids(self.db, agent.id)

        task = self._find_review_ready(agent)
        if task:
            return self._claim(task, agent, REASON_REVIEW, now)

        task = self._first_eligible(
            task_store.find_tasks(
                self.db,
                f"assigned_agent_id = ? AND status IN ({_placeholders(CLAIMABLE)})",
                [agent.id, *CLAIMABLE],
            ),
            locked, now,
        )
        if task:
            return self._claim(task, agent, REASON_DIRECT, now)

        if managed:
            task = self._first_eligible(
                task_store.find_tasks(
                    self.db,
                    f"""assigned_team_id IN ({_placeholders(managed)}) AND type = ?
                        AND status IN ({_placeholders(CLAIMABLE)})""",
                    [*managed, TaskType.TEAM_EPIC, *CLAIMABLE],
                ),
                locked, now,
            )
            if task:
                return self._claim(task, agent, REASON_TEAM_EPIC, now)
            # Managers only decompose epics; they never take regular work.
        else:
            for reason, find_candidates in (
                (REASON_SAME_FILE, self._same_file_candidates),
                (REASON_TEAM, self._team_candidates),
                (REASON_ROLE, self._role_candidates),
            ):
                task = self._first_eligible(find_candidates(agent), locked, now)
                if task:
                    return self._claim(task, agent, reason, now)

        logger.debug("No available tasks for agent %s", agent.id)
        return PullResult(None, REASON_NONE)

    def _find_review_ready(self, agent: Agent) -> Task | None:
        rows = self.db.execute(
            """SELECT id FROM tasks WHERE assigned_agent_id = ? AND status = ?
               ORDER BY priority ASC, COALESCE(last_reviewed_at, '') ASC, rowid ASC""",
            (agent.id, TaskStatus.READY_FOR_REVIEW),
        ).fetchall()
        for row in rows:
            task = task_store.get_task(self.db, row["id"])
            if task.review_count >= MAX_REVIEW_COUNT:
                logger.warning("Task %s exceeded max review count (%d), skipping", task.id, MAX_REVIEW_COUNT)
                continue
            if not task.subtasks or any(s.status != TaskStatus.COMPLETED for s in task.subtasks):
                logger.warning("Task %s is ready for review but not all subtasks completed", task.id)
                continue
            return task
        return None

    def _same_file_candidates(self, agent: Agent) -> list[Task]:
        recent = self.db.execute(
            """SELECT affected_files FROM tasks
               WHERE assigned_agent_id = ? AND status = ?
               ORDER BY completed_at DESC LIMIT ?""",
            (agent.id, TaskStatus.COMPLETED, RECENT_COMPLETED_LIMIT),
        ).fetchall()
        worked = set()
        for row in recent:
            worked.update(task_store.decode_list(row["affected_files"]))
        if not worked:
            return []
        return [t for t in self._unassigned_candidates() if worked & set(t.affected_files)]

    def _team_candidates(self, agent: Agent) -> list[Task]:
        if not agent.team_id:
            return []
        rows = self.db.execute(
            """SELECT DISTINCT t.project_id FROM tasks t
               JOIN agents a ON a.id = t.assigned_agent_id
               WHERE a.team_id = ? AND t.project_id IS NOT NULL""",
            (agent.team_id,),
        ).fetchall()
        project_ids = [r["project_id"] for r in rows]
        if not project_ids:
            return []
        return task_store.find_tasks(
            self.db,
            f"""assigned_agent_id IS NULL AND type != ?
                AND status IN ({_placeholders(CLAIMABLE)})
                AND project_id IN ({_placeholders(project_ids)})""",
            [TaskType.TEAM_EPIC, *CLAIMABLE, *project_ids],
        )

    def _role_candidates(self, agent: Agent) -> list[Task]:
        # No role-to-task matching data exists yet, so any unassigned task qualifies.
        return self._unassigned_candidates(limit=ROLE_MATCH_SCAN_LIMIT)

    def _unassigned_candidates(self, limit: int | None = None) -> list[Task]:
        return task_store.find_tasks(
            self.db,
            f"assigned_agent_id IS NULL AND type != ? AND status IN ({_placeholders(CLAIMABLE)})",
            [TaskType.TEAM_EPIC, *CLAIMABLE],
            limit=limit,
        )

    # ── Eligibility ─────────────────────────────────────────────────────────

    def _locked_files(self, agent: Agent) -> set[str]:
        """Files touched by other agents' in-progress tasks.

        Agents sharing a workspace (an owner and its sub-agents) never
        lock each other out.
        """
        crew = crew_ids(self.db, agent)
        rows = self.db.execute(
            f"""SELECT affected_files FROM tasks
                WHERE status = ? AND assigned_agent_id IS NOT NULL
                  AND assigned_agent_id NOT IN ({_placeholders(crew)})""",
            [TaskStatus.IN_PROGRESS, *crew],
        ).fetchall()
        locked = set()
        for row in rows:
            locked.update(task_store.decode_list(row["affected_files"]))
        return locked

    def _first_eligible(self, candidates: list[Task], locked: set[str], now: datetime) -> Task | None:
        for task in candidates:
            if self._is_eligible(task, locked, now):
                return task
        return None

    def _is_eligible(self, task: Task, locked: set[str], now: datetime) -> bool:
        if task.blocked_until and task.blocked_until > now:
            return False
        if locked.intersection(task.affected_files):
            return False
        if task_store.unresolved_dependencies(self.db, task):
            return False
        return True

    # ── Claim ───────────────────────────────────────────────────────────────

    def _claim(self, task: Task, agent: Agent, reason: str, now: datetime) -> PullResult:
        if task.status == TaskStatus.READY_FOR_REVIEW:
            expected = (TaskStatus.READY_FOR_REVIEW,)
            new_status = TaskStatus.IN_REVIEW
            extra = {"last_reviewed_at": now, "review_count": increment("review_count")}
        else:
            expected = CLAIMABLE
            new_status = TaskStatus.IN_PROGRESS
            extra = {"started_at": now}

        affected = task_store.conditional_claim(self.db, task.id, expected, new_status, agent.id, extra)
        if not affected:
            logger.warning("Failed to claim task %s - already claimed by another agent", task.id)
            return PullResult(None, REASON_CLAIMED)

        logger.info(
            "Task claimed: %s by %s (reason: %s, status: %s -> %s)",
            task.id, agent.id, reason, task.status, new_status,
        )
        return PullResult(task_store.get_task(self.db, task.id), reason)

    # ── Release / complete / fail ───────────────────────────────────────────

    def release(self, task_id: str, error: str | None = None) -> Task:
        """Return an unfinished claim to the pool."""
        task_store.require_task(self.db, task_id)
        fields = {"error_message": error} if error else {}
        self.db.execute(
            "UPDATE tasks SET retry_count = COALESCE(retry_count, 0) + 1 WHERE id = ?",
            (task_id,),
        )
        task = task_store.update_task(
            self.db, task_id, status=TaskStatus.READY, assigned_agent_id=None, **fields
        )
        task_store.log_event(self.db, task_id, "released", None, error)
        logger.info("Task released: %s", task_id)
        return task

    def complete(self, task_id: str) -> Task:
        """Mark a task completed and clear its failure state.

        Completing an already-completed task changes nothing.
        """
        task = task_store.require_task(self.db, task_id)
        if task.status == TaskStatus.COMPLETED:
            return task
        task = task_store.update_task(
            self.db,
            task_id,
            status=TaskStatus.COMPLETED,
            completed_at=self.clock(),
            consecutive_failures=0,
            blocked_until=None,
            last_failed_at=None,
        )
        logger.info("Task completed: %s", task_id)
        return task

    def fail(self, task_id: str, message: str, retryable: bool = True) -> Task:
        """Record a failure.

        A retryable failure puts the task back to ready behind a backoff
        window that grows with consecutive failures. A non-retryable one
        is terminal.
        """
        task = task_store.require_task(self.db, task_id)
        now = self.clock()
        failures = task.consecutive_failures + 1

        if not retryable:
            task = task_store.update_task(
                self.db,
                task_id,
                status=TaskStatus.FAILED,
                error_message=message,
                consecutive_failures=failures,
                last_failed_at=now,
            )
            logger.warning("Task %s failed permanently: %s", task_id, message)
            return task

        minutes = backoff_minutes(failures)
        blocked_until = now + timedelta(minutes=minutes)
        task = task_store.update_task(
            self.db,
            task_id,
            status=TaskStatus.READY,
            error_message=message,
            consecutive_failures=failures,
            last_failed_at=now,
            blocked_until=blocked_until,
        )
        logger.warning(
            "Task %s failed (attempt %d). Blocked until %s (%d min). Error: %s",
            task_id, failures, blocked_until.isoformat(), minutes, message,
        )
        return task
