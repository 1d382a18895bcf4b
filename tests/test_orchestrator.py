"""Tests for the orchestration cycle."""

import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from crew_orchestrator.core import agents as agents_mod
from crew_orchestrator.core import projects as projects_mod
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.core.escalation import EscalationAction, EscalationHistory, EscalationPolicy
from crew_orchestrator.core.orchestrator import Orchestrator, is_task_complex
from crew_orchestrator.core.pool import TaskPool
from crew_orchestrator.core.quality_gate import QualityGate
from crew_orchestrator.db.engine import init_db
from crew_orchestrator.db.models import AgentStatus, Task, TaskStatus, TaskType
from crew_orchestrator.integrations.brain import BrainResult, BrainTimeoutError

GOOD_OUTPUT = "Implemented the change and updated the tests."


class FakeBrain:
    """Returns queued results, or a default good one."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def execute(self, prompt, working_directory=None, timeout=None):
        self.calls.append({"prompt": prompt, "cwd": working_directory, "timeout": timeout})
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return BrainResult(output=GOOD_OUTPUT)


class FakeWorkspaces:
    """Stands in for WorkspaceManager without touching git."""

    def __init__(self, root: Path):
        self.root = root
        self.checkouts = []
        self.released = []

    def acquire_workspace(self, agent_id, project_root, base_branch="main"):
        path = self.root / f"agent-{agent_id}"
        path.mkdir(exist_ok=True)
        return path

    def create_branch(self, agent, task, workspace, base_branch="main"):
        return f"feature/{agent.name}/task-{task.id[:8]}"

    def checkout_branch(self, workspace, branch):
        self.checkouts.append(branch)
        return branch

    def release_workspace(self, path):
        self.released.append(str(path))
        return True


@pytest.fixture
def tmp():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def db(tmp):
    conn = init_db(tmp / "test.db")
    projects_mod.create_organization(conn, "default", "Default", daily_budget_cents=1000)
    projects_mod.create_project(conn, "app", "App", str(tmp / "repo"))
    agents_mod.create_agent(conn, "Lead")
    yield conn
    conn.close()


@pytest.fixture
def history():
    return EscalationHistory()


@pytest.fixture
def workspaces(tmp):
    return FakeWorkspaces(tmp)


def _orchestrator(db, brain, history, workspaces=None):
    return Orchestrator(
        db,
        brain,
        pool=TaskPool(db),
        gate=QualityGate(),
        escalation=EscalationPolicy(db, history),
        workspaces=workspaces,
        brain_timeout=30,
    )


def _ready(db, title="Add login", **kwargs):
    kwargs.setdefault("project_id", "app")
    return tasks_mod.create_task(db, title, status=TaskStatus.READY, **kwargs)


class TestComplexity:
    def _task(self, **kwargs):
        return Task(id="t", organization_id="default", title="T", **kwargs)

    def test_simple(self):
        assert not is_task_complex(self._task())

    @pytest.mark.parametrize("kwargs", [
        {"estimated_complexity": "high"},
        {"type": TaskType.TEAM_EPIC},
        {"depends_on": ["a", "b", "c", "d"]},
        {"required_skills": ["python", "sql", "css"]},
        {"story_points": 13},
    ])
    def test_complex(self, kwargs):
        assert is_task_complex(self._task(**kwargs))

    def test_boundaries_are_not_complex(self):
        task = self._task(depends_on=["a", "b", "c"], required_skills=["x", "y"], story_points=8)
        assert not is_task_complex(task)


class TestRunCycle:
    def test_unknown_agent(self, db, history):
        with pytest.raises(tasks_mod.NotFoundError):
            _orchestrator(db, FakeBrain(), history).run_cycle("ghost")

    def test_paused_agent_never_pulls(self, db, history):
        _ready(db)
        agents_mod.set_agent_status(db, "lead", AgentStatus.PAUSED)
        pool = MagicMock()
        orchestrator = Orchestrator(db, FakeBrain(), pool=pool)

        result = orchestrator.run_cycle("lead")
        assert result.success is False
        assert result.error == "Agent is paused"
        pool.pull_next.assert_not_called()
        assert agents_mod.get_agent(db, "lead").status == AgentStatus.PAUSED

    def test_no_task(self, db, history):
        result = _orchestrator(db, FakeBrain(), history).run_cycle("lead")
        assert result.success
        assert result.no_task_available
        assert agents_mod.get_agent(db, "lead").status == AgentStatus.IDLE

    def test_success_completes_task(self, db, history, workspaces):
        task = _ready(db)
        brain = FakeBrain()
        result = _orchestrator(db, brain, history, workspaces).run_cycle("lead")

        assert result.success
        assert result.task_id == task.id
        assert result.output == GOOD_OUTPUT
        done = tasks_mod.get_task(db, task.id)
        assert done.status == TaskStatus.COMPLETED
        assert done.branch_name == f"feature/Lead/task-{task.id[:8]}"
        assert done.workspace_path == str(workspaces.root / "agent-lead")
        assert brain.calls[0]["cwd"] == done.workspace_path
        assert brain.calls[0]["timeout"] == 30
        docs = tasks_mod.list_documents(db, [task.id])
        assert [d.title for d in docs] == ["Result: Add login"]
        assert agents_mod.get_agent(db, "lead").status == AgentStatus.IDLE

    def test_agent_is_working_during_execution(self, db, history):
        _ready(db)
        seen = []

        class PeekingBrain(FakeBrain):
            def execute(self, prompt, working_directory=None, timeout=None):
                seen.append(agents_mod.get_agent(db, "lead").status)
                return super().execute(prompt, working_directory, timeout)

        _orchestrator(db, PeekingBrain(), history).run_cycle("lead")
        assert seen == [AgentStatus.WORKING]

    def test_empty_output_fails_and_escalates(self, db, history):
        task = _ready(db)
        orchestrator = _orchestrator(db, FakeBrain(BrainResult(output="")), history)
        with patch.object(orchestrator.pool, "fail", wraps=orchestrator.pool.fail) as fail, \
                patch.object(orchestrator.escalation, "escalate", wraps=orchestrator.escalation.escalate) as escalate:
            result = orchestrator.run_cycle("lead")

        assert not result.success
        assert "empty" in result.error
        fail.assert_called_once()
        assert fail.call_args.args[0] == task.id
        assert escalate.call_args.kwargs["level"] == 1

        failed = tasks_mod.get_task(db, task.id)
        assert failed.status == TaskStatus.READY
        assert failed.consecutive_failures == 1
        assert failed.blocked_until is not None
        assert failed.retry_count == 1
        records = history.for_task(task.id)
        assert [r.action for r in records] == [EscalationAction.RETRY]
        assert agents_mod.get_agent(db, "lead").status == AgentStatus.IDLE

    def test_brain_failure_fails_and_escalates(self, db, history):
        task = _ready(db)
        brain = FakeBrain(BrainResult(output="rate limited", success=False))
        result = _orchestrator(db, brain, history).run_cycle("lead")

        assert not result.success
        assert result.error.startswith("Brain execution failed")
        assert tasks_mod.get_task(db, task.id).consecutive_failures == 1
        assert len(history.for_task(task.id)) == 1

    def test_brain_timeout_is_a_failure(self, db, history):
        task = _ready(db)
        brain = FakeBrain(BrainTimeoutError("Brain timed out after 30s"))
        result = _orchestrator(db, brain, history).run_cycle("lead")

        assert not result.success
        assert "timed out" in result.error
        assert tasks_mod.get_task(db, task.id).status == TaskStatus.READY
        assert agents_mod.get_agent(db, "lead").status == AgentStatus.IDLE

    def test_over_budget_fails_without_escalation(self, db, history, workspaces):
        task = _ready(db)
        brain = FakeBrain(BrainResult(output=GOOD_OUTPUT, cost_cents=500))
        result = _orchestrator(db, brain, history, workspaces).run_cycle("lead")

        assert not result.success
        assert tasks_mod.get_task(db, task.id).status == TaskStatus.FAILED
        assert history.for_task(task.id) == ()
        assert workspaces.released == [str(workspaces.root / "agent-lead")]

    def test_unexpected_error_restores_idle(self, db, history):
        pool = MagicMock()
        pool.pull_next.side_effect = RuntimeError("database on fire")
        orchestrator = Orchestrator(db, FakeBrain(), pool=pool)

        result = orchestrator.run_cycle("lead")
        assert not result.success
        assert result.error == "database on fire"
        assert agents_mod.get_agent(db, "lead").status == AgentStatus.IDLE

    def test_escalation_failure_is_logged_not_raised(self, db, history):
        task = _ready(db)
        orchestrator = _orchestrator(db, FakeBrain(BrainResult(output="")), history)
        with patch.object(orchestrator.escalation, "escalate", side_effect=RuntimeError("boom")):
            result = orchestrator.run_cycle("lead")
        assert not result.success
        assert tasks_mod.get_task(db, task.id).consecutive_failures == 1


class TestDelegation:
    def test_complex_task_is_delegated(self, db, history, workspaces):
        task = _ready(db, "Build billing", estimated_complexity="high", affected_files=["billing.py"])
        brain = FakeBrain()
        result = _orchestrator(db, brain, history, workspaces).run_cycle("lead")

        assert result.success
        assert result.delegated
        assert brain.calls == []

        parent = tasks_mod.get_task(db, task.id)
        assert parent.status == TaskStatus.IN_PROGRESS
        assert parent.assigned_agent_id == "lead"
        assert len(parent.subtasks) == 3

        helpers = {s.assigned_agent_id for s in parent.subtasks}
        assert len(helpers) == 3
        for helper_id in helpers:
            helper = agents_mod.get_agent(db, helper_id)
            assert helper.depth == 1
            assert helper.is_temporary
            assert helper.created_by_agent_id == "lead"
        assert {agents_mod.get_agent(db, h).role for h in helpers} == {"planner", "coder", "architect"}
        assert {s.workspace_path for s in parent.subtasks} == {parent.workspace_path}
        assert {s.status for s in parent.subtasks} == {TaskStatus.READY}
        assert agents_mod.get_agent(db, "lead").status == AgentStatus.IDLE

    def test_helper_names(self, db, history):
        task = _ready(db, estimated_complexity="high")
        _orchestrator(db, FakeBrain(), history).run_cycle("lead")
        names = {a.name for a in agents_mod.list_agents(db, lifecycle="temporary")}
        short = task.id[:8]
        assert names == {f"Planner-{short}", f"Coder-{short}", f"Architect-{short}"}

    def test_sub_agents_never_delegate(self, db, history):
        lead = agents_mod.get_agent(db, "lead")
        helper = agents_mod.create_temporary_agent(db, lead, "coder")
        task = _ready(db, estimated_complexity="high", assigned_agent_id=helper.id)
        brain = FakeBrain()

        result = _orchestrator(db, brain, history).run_cycle(helper.id)
        assert result.success
        assert not result.delegated
        assert len(brain.calls) == 1
        assert tasks_mod.get_task(db, task.id).subtasks == []
        # The finished helper is reaped; it never spawned helpers of its own.
        assert agents_mod.list_agents(db, lifecycle="temporary") == []

    def test_failed_delegation_falls_back_to_direct_execution(self, db, history):
        task = _ready(db, estimated_complexity="high")
        real_create = agents_mod.create_temporary_agent
        calls = []

        def flaky_create(*args, **kwargs):
            calls.append(1)
            if len(calls) == 2:
                raise RuntimeError("out of agents")
            return real_create(*args, **kwargs)

        brain = FakeBrain()
        with patch.object(agents_mod, "create_temporary_agent", side_effect=flaky_create):
            result = _orchestrator(db, brain, history).run_cycle("lead")

        assert result.success
        assert not result.delegated
        assert len(brain.calls) == 1
        done = tasks_mod.get_task(db, task.id)
        assert done.status == TaskStatus.COMPLETED
        assert done.subtasks == []
        assert agents_mod.list_agents(db, lifecycle="temporary") == []

    def test_full_delegation_round_trip(self, db, history, workspaces):
        task = _ready(db, "Build billing", estimated_complexity="high")
        brain = FakeBrain()
        orchestrator = _orchestrator(db, brain, history, workspaces)
        orchestrator.run_cycle("lead")

        # Subtasks run in dependency order, each by its own helper.
        for sub in tasks_mod.get_task(db, task.id).subtasks:
            result = orchestrator.run_cycle(sub.assigned_agent_id)
            assert result.success
            assert result.task_id == sub.id

        parent = tasks_mod.get_task(db, task.id)
        assert parent.status == TaskStatus.READY_FOR_REVIEW
        assert agents_mod.list_agents(db, lifecycle="temporary") == []
        assert workspaces.checkouts == [parent.branch_name] * 3

        result = orchestrator.run_cycle("lead")
        assert result.success
        assert result.task_id == task.id
        assert "All subtasks of this task are done" in brain.calls[-1]["prompt"]
        assert tasks_mod.get_task(db, task.id).status == TaskStatus.COMPLETED

    def test_helpers_share_the_owner_workspace(self, db, history, workspaces):
        task = _ready(db, "Build billing", estimated_complexity="high")
        orchestrator = _orchestrator(db, FakeBrain(), history, workspaces)
        orchestrator.run_cycle("lead")

        research = tasks_mod.get_task(db, task.id).subtasks[0]
        orchestrator.run_cycle(research.assigned_agent_id)
        assert tasks_mod.get_task(db, research.id).workspace_path == str(workspaces.root / "agent-lead")

    def test_reaped_helper_finishes_its_cycle(self, db, history):
        lead = agents_mod.get_agent(db, "lead")
        helper = agents_mod.create_temporary_agent(db, lead, "coder")
        task = _ready(db, assigned_agent_id=helper.id)

        result = _orchestrator(db, FakeBrain(), history).run_cycle(helper.id)
        assert result.success
        assert result.error is None
        assert tasks_mod.get_task(db, task.id).status == TaskStatus.COMPLETED
        assert agents_mod.get_agent(db, helper.id) is None

    def test_failed_subtask_blocks_the_parent(self, db, history, workspaces):
        task = _ready(db, "Build billing", estimated_complexity="high")
        orchestrator = _orchestrator(db, FakeBrain(), history, workspaces)
        orchestrator.run_cycle("lead")

        research = tasks_mod.get_task(db, task.id).subtasks[0]
        helper_id = research.assigned_agent_id
        orchestrator.brain = FakeBrain(BrainResult(output=GOOD_OUTPUT, cost_cents=500))
        result = orchestrator.run_cycle(helper_id)

        assert not result.success
        assert result.task_id == research.id
        assert "cost exceeds" in result.error
        assert tasks_mod.get_task(db, research.id).status == TaskStatus.FAILED
        assert tasks_mod.get_task(db, task.id).status == TaskStatus.BLOCKED
        helper = agents_mod.get_agent(db, helper_id)
        assert helper is None or helper.status == AgentStatus.IDLE
        # The owner's worktree stays in place for the remaining helpers.
        assert workspaces.released == []

    def test_rejected_review_is_retried_without_splitting_again(self, db, history, workspaces):
        task = _ready(db, "Build billing", estimated_complexity="high")
        orchestrator = _orchestrator(db, FakeBrain(), history, workspaces)
        orchestrator.run_cycle("lead")
        for sub in tasks_mod.get_task(db, task.id).subtasks:
            orchestrator.run_cycle(sub.assigned_agent_id)

        orchestrator.brain = FakeBrain(BrainResult(output=""))
        review = orchestrator.run_cycle("lead")
        assert not review.success
        assert review.task_id == task.id
        assert tasks_mod.get_task(db, task.id).status == TaskStatus.READY

        tasks_mod.update_task(db, task.id, blocked_until=None)
        result = orchestrator.run_cycle("lead")
        assert result.success
        assert result.task_id == task.id
        assert not result.delegated
        assert len(orchestrator.brain.calls) == 2

        parent = tasks_mod.get_task(db, task.id)
        assert parent.status == TaskStatus.COMPLETED
        assert len(parent.subtasks) == 3
        assert agents_mod.list_agents(db, lifecycle="temporary") == []
