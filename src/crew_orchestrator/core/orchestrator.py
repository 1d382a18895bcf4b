"""One orchestration cycle per call: pull, isolate, execute, validate, settle.

    paused agent          -> skip, nothing touched
    no task               -> idle, success
    complex task, depth 0 -> delegate to three sub-agents, success
    otherwise             -> brain -> quality gate
                               pass           -> save result, complete
                               retryable fail -> fail with backoff, escalate (level 1)
                               terminal fail  -> fail permanently

Whatever happens, the agent ends the cycle idle.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass

from crew_orchestrator.config import Config
from crew_orchestrator.core import agents as agent_store
from crew_orchestrator.core import tasks as task_store
from crew_orchestrator.core.escalation import (
    EscalationHistory,
    EscalationLevel,
    EscalationPolicy,
    default_subtask_specs,
)
from crew_orchestrator.core.pool import TaskPool
from crew_orchestrator.core.projects import get_organization, get_project
from crew_orchestrator.core.prompts import compose_prompt
from crew_orchestrator.core.quality_gate import QualityGate
from crew_orchestrator.core.worktrees import WorkspaceManager, assign_workspace
from crew_orchestrator.db.models import Agent, AgentStatus, Task, TaskStatus, TaskType
from crew_orchestrator.integrations.brain import Brain, BrainError, ClaudeCliBrain
from crew_orchestrator.integrations.slack import slack_notifier

logger = logging.getLogger(__name__)

MAX_DEPENDENCIES = 3
MAX_REQUIRED_SKILLS = 2
MAX_STORY_POINTS = 8

# Sub-agent role for each delegated subtask type.
DELEGATION_ROLES = {
    TaskType.RESEARCH: "planner",
    TaskType.IMPLEMENTATION: "coder",
    TaskType.REVIEW: "architect",
}


@dataclass
class CycleResult:
    success: bool
    task_id: str | None = None
    task_title: str | None = None
    duration_ms: int = 0
    output: str | None = None
    error: str | None = None
    no_task_available: bool = False
    delegated: bool = False


def is_task_complex(task: Task) -> bool:
    """Whether a task is big enough to hand to sub-agents."""
    if task.type == TaskType.TEAM_EPIC:
        return True
    if task.estimated_complexity == "high":
        return True
    if len(task.depends_on) > MAX_DEPENDENCIES:
        return True
    if len(task.required_skills) > MAX_REQUIRED_SKILLS:
        return True
    if task.story_points and task.story_points > MAX_STORY_POINTS:
        return True
    return False


class Orchestrator:
    def __init__(
        self,
        db: sqlite3.Connection,
        brain: Brain,
        pool: TaskPool | None = None,
        gate: QualityGate | None = None,
        escalation: EscalationPolicy | None = None,
        workspaces: WorkspaceManager | None = None,
        brain_timeout: float | None = None,
    ):
        self.db = db
        self.brain = brain
        self.pool = pool or TaskPool(db)
        self.gate = gate or QualityGate()
        self.escalation = escalation
        self.workspaces = workspaces
        self.brain_timeout = brain_timeout

    def run_cycle(self, agent_id: str) -> CycleResult:
        """Run one cycle for an agent. Raises NotFoundError for an unknown agent."""
        started = time.monotonic()
        agent = agent_store.require_agent(self.db, agent_id)

        if agent.status == AgentStatus.PAUSED:
            logger.info("Agent %s is paused, skipping cycle", agent_id)
            return CycleResult(False, error="Agent is paused")

        agent_store.set_agent_status(self.db, agent_id, AgentStatus.WORKING)
        task: Task | None = None
        try:
            pulled = self.pool.pull_next(agent_id)
            if not pulled.task:
                logger.info("No task available for %s: %s", agent_id, pulled.reason)
                return CycleResult(True, duration_ms=_elapsed(started), no_task_available=True)

            task = pulled.task
            logger.info("Agent %s pulled task %s: %s (%s)", agent_id, task.id, task.title, pulled.reason)

            task = self._isolate(agent, task)
            review_mode = task.status == TaskStatus.IN_REVIEW

            # A parent that already has subtasks is never split again.
            if not review_mode and agent.depth == 0 and not task.subtasks and is_task_complex(task):
                logger.info("Task %s is complex - attempting delegation", task.id)
                if self._delegate(agent, task):
                    return CycleResult(
                        True, task.id, task.title, _elapsed(started),
                        output="Task delegated to sub-agents", delegated=True,
                    )

            return self._execute(agent, task, started)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.exception("Cycle failed for agent %s", agent_id)
            if task is not None:
                self._fail_and_escalate(agent, task, message)
            return CycleResult(
                False,
                task.id if task else None,
                task.title if task else None,
                _elapsed(started),
                error=message,
            )
        finally:
            # Temporary agents may have been reaped while settling their own task.
            if agent_store.get_agent(self.db, agent_id):
                agent_store.set_agent_status(self.db, agent_id, AgentStatus.IDLE)

    # ── Steps ───────────────────────────────────────────────────────────────

    def _execute(self, agent: Agent, task: Task, started: float) -> CycleResult:
        prompt = compose_prompt(self.db, agent.id, task.id)
        result = self.brain.execute(prompt, task.workspace_path, timeout=self.brain_timeout)
        if not result.success:
            raise BrainError(f"Brain execution failed: {result.output or 'unknown error'}")
        logger.info(
            "Brain finished task %s in %dms (cost %.2f cents)", task.id, result.duration_ms, result.cost_cents
        )

        org = get_organization(self.db, task.organization_id)
        verdict = self.gate.validate(
            task, result, budget_cents=org.daily_budget_cents if org else None, workdir=task.workspace_path
        )
        if not verdict.passed:
            message = f"Quality gate failed: {verdict.reason}"
            if verdict.retry_eligible:
                self._fail_and_escalate(agent, task, message)
            else:
                self.pool.fail(task.id, message, retryable=False)
                self._release_if_owner(agent, task)
                self._settle(agent, task)
            return CycleResult(False, task.id, task.title, _elapsed(started), error=message)

        task_store.save_document(
            self.db, task.id, f"Result: {task.title}", _result_document(agent, task, result.output), agent.id
        )
        self.pool.complete(task.id)
        self._settle(agent, task)
        logger.info("Cycle completed for %s: task=%s", agent.id, task.id)
        return CycleResult(True, task.id, task.title, _elapsed(started), output=result.output)

    def _isolate(self, agent: Agent, task: Task) -> Task:
        """Put the task in its agent's worktree and on its branch."""
        if not self.workspaces or not task.project_id:
            return task
        project = get_project(self.db, task.project_id)
        if not project:
            return task

        owner_id = agent_store.workspace_owner_id(agent)
        workspace = self.workspaces.acquire_workspace(owner_id, project.repo_path, project.default_branch)

        branch = task.branch_name
        parent = task_store.get_task(self.db, task.parent_task_id) if task.parent_task_id else None
        if agent.is_temporary and parent and parent.branch_name:
            # Sub-agents commit onto the delegating task's branch.
            branch = parent.branch_name
            self.workspaces.checkout_branch(workspace, branch)
        else:
            branch = self.workspaces.create_branch(agent, task, workspace, project.default_branch)
        return assign_workspace(self.db, task.id, workspace, branch)

    def _delegate(self, agent: Agent, task: Task) -> bool:
        """Split a task across three temporary sub-agents.

        On any failure, everything created here is removed and the caller
        falls back to running the task directly.
        """
        created_agents: list[Agent] = []
        created_tasks: list[Task] = []
        try:
            outcome = task_store.decompose(
                self.db, task.id, default_subtask_specs(task), created_by_agent_id=agent.id
            )
            if not outcome.success:
                raise ValueError("; ".join(outcome.errors))
            created_tasks = outcome.created_subtasks

            for sub in created_tasks:
                role = DELEGATION_ROLES[sub.type]
                helper = agent_store.create_temporary_agent(
                    self.db, agent, role, name=f"{role.title()}-{task.id[:8]}"
                )
                created_agents.append(helper)
                task_store.update_task(
                    self.db,
                    sub.id,
                    assigned_agent_id=helper.id,
                    status=TaskStatus.READY,
                    workspace_path=task.workspace_path,
                )
        except Exception:
            logger.exception("Delegation of task %s failed, falling back to direct execution", task.id)
            for sub in created_tasks:
                task_store.delete_task(self.db, sub.id)
            for helper in created_agents:
                agent_store.remove_agent(self.db, helper.id)
            return False

        task_store.log_event(self.db, task.id, "delegated", None, ",".join(a.id for a in created_agents))
        logger.info("Delegated task %s to %d sub-agents", task.id, len(created_agents))
        return True

    def _fail_and_escalate(self, agent: Agent, task: Task, message: str):
        try:
            self.pool.fail(task.id, message)
        except Exception:
            logger.exception("Could not record failure of task %s", task.id)
            return
        if not self.escalation:
            return
        try:
            outcome = self.escalation.escalate(
                task.id, agent.id, message, level=EscalationLevel.SELF_RESOLVE
            )
            logger.info("Escalation for task %s: %s (%s)", task.id, outcome.action.value, outcome.message)
        except Exception:
            logger.exception("Escalation failed for task %s", task.id)

    def _release_if_owner(self, agent: Agent, task: Task):
        # A sub-agent must not remove the worktree its creator still uses.
        if not self.workspaces or not task.workspace_path:
            return
        if agent_store.workspace_owner_id(agent) != agent.id:
            return
        self.workspaces.release_workspace(task.workspace_path)

    def _settle(self, agent: Agent, task: Task):
        """Propagate a finished task to its parent and drop idle sub-agents."""
        if task.parent_task_id:
            task_store.update_parent_status(self.db, task.parent_task_id)
        agent_store.reap_temporary_agents(self.db, created_by=agent_store.workspace_owner_id(agent))


def _elapsed(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _result_document(agent: Agent, task: Task, output: str) -> str:
    return (
        f"# Task: {task.title}\n\n"
        f"## Description\n{task.description}\n\n"
        f"## Executed By\n{agent.name} ({agent.role})\n\n"
        f"## Result\n{output}\n"
    )


def build_orchestrator(
    db: sqlite3.Connection,
    config: Config,
    history: EscalationHistory,
    brain: Brain | None = None,
) -> Orchestrator:
    """Wire an orchestrator from configuration. History is shared across agents."""
    return Orchestrator(
        db,
        brain or ClaudeCliBrain(config.brain_command, config.brain_model, timeout=config.brain_timeout),
        pool=TaskPool(db),
        gate=QualityGate(
            config.lint_command, config.typecheck_command, config.test_command, timeout=config.tool_timeout
        ),
        escalation=EscalationPolicy(
            db, history, notifier=slack_notifier(config.slack_bot_token, config.slack_channel)
        ),
        workspaces=WorkspaceManager(config.worktree_dir, timeout=config.git_timeout),
        brain_timeout=config.brain_timeout,
    )
