"""Tests for the escalation policy."""

import dataclasses
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from crew_orchestrator.core import agents as agents_mod
from crew_orchestrator.core import projects as projects_mod
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.core.escalation import (
    EscalationAction,
    EscalationHistory,
    EscalationLevel,
    EscalationPolicy,
    default_subtask_specs,
)
from crew_orchestrator.db.engine import init_db
from crew_orchestrator.db.models import TaskStatus, TaskType


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.ensure_default_organization(conn)
        projects_mod.create_team(conn, "core", "Core")
        agents_mod.create_agent(conn, "Alice", team_id="core")
        yield conn
        conn.close()


@pytest.fixture
def history():
    return EscalationHistory()


@pytest.fixture
def policy(db, history):
    return EscalationPolicy(db, history)


def _failed_task(db, **kwargs):
    kwargs.setdefault("assigned_agent_id", "alice")
    return tasks_mod.create_task(db, "Flaky work", status=TaskStatus.READY, **kwargs)


class TestLadder:
    def test_self_resolve_retries(self, db, policy, history):
        task = _failed_task(db)
        result = policy.escalate(task.id, "alice", "tests failed", level=EscalationLevel.SELF_RESOLVE)

        assert result.success
        assert result.action == EscalationAction.RETRY
        assert result.level == EscalationLevel.SELF_RESOLVE
        updated = tasks_mod.get_task(db, task.id)
        assert updated.retry_count == 1
        assert updated.status == TaskStatus.READY
        assert len(history.for_task(task.id)) == 1

    def test_exhausted_retries_reassign_to_idle_teammate(self, db, policy):
        agents_mod.create_agent(db, "Bob", team_id="core")
        task = _failed_task(db)
        tasks_mod.update_task(db, task.id, retry_count=3)

        result = policy.escalate(task.id, "alice", "still failing", level=1)
        assert result.action == EscalationAction.REASSIGN
        assert result.level == EscalationLevel.TEAM_COLLABORATION
        updated = tasks_mod.get_task(db, task.id)
        assert updated.assigned_agent_id is None
        assert updated.status == TaskStatus.READY

    def test_no_teammates_goes_to_leader(self, db, policy, history):
        task = _failed_task(db)
        tasks_mod.update_task(db, task.id, retry_count=3)

        result = policy.escalate(task.id, "alice", "still failing", level=1)
        assert result.level == EscalationLevel.TEAM_LEADER
        assert result.action == EscalationAction.ESCALATE_TO_LEADER
        assert tasks_mod.get_task(db, task.id).status == TaskStatus.IN_REVIEW
        # One call, one record, even when several levels were walked.
        records = history.for_task(task.id)
        assert len(records) == 1
        assert records[0].level == EscalationLevel.TEAM_LEADER

    def test_organization_blocks(self, db, policy):
        task = _failed_task(db)
        result = policy.escalate(task.id, "alice", "needs admin", level=EscalationLevel.ORGANIZATION)
        assert result.action == EscalationAction.ESCALATE_TO_ORG
        assert tasks_mod.get_task(db, task.id).status == TaskStatus.BLOCKED

    def test_human_intervention_notifies(self, db, history):
        notifier = MagicMock()
        policy = EscalationPolicy(db, history, notifier=notifier)
        task = _failed_task(db)

        result = policy.escalate(task.id, "alice", "stuck", level=EscalationLevel.HUMAN_INTERVENTION)
        assert result.action == EscalationAction.REQUEST_HUMAN
        assert "notification sent" in result.message
        assert tasks_mod.get_task(db, task.id).status == TaskStatus.BLOCKED
        notified_task, record = notifier.call_args.args
        assert notified_task.id == task.id
        assert record.level == EscalationLevel.HUMAN_INTERVENTION

    def test_notifier_failure_is_swallowed(self, db, history):
        policy = EscalationPolicy(db, history, notifier=MagicMock(side_effect=RuntimeError("slack down")))
        task = _failed_task(db)
        result = policy.escalate(task.id, "alice", "stuck", level=5)
        assert result.success
        assert "notification sent" not in result.message

    def test_unknown_task(self, policy):
        with pytest.raises(tasks_mod.NotFoundError):
            policy.escalate("missing", "alice", "why")

    def test_event_logged(self, db, policy):
        task = _failed_task(db)
        policy.escalate(task.id, "alice", "x", level=1)
        events = [e for e in tasks_mod.get_task_events(db, task.id) if e.event_type == "escalated"]
        assert [e.new_value for e in events] == ["L1:retry"]


class TestDetermineLevel:
    def test_fresh_task_self_resolves(self, db, policy):
        task = _failed_task(db)
        assert policy.determine_level(task.id) == EscalationLevel.SELF_RESOLVE

    def test_urgent_exhausted_task_goes_to_org(self, db, policy):
        task = _failed_task(db, priority=1)
        tasks_mod.update_task(db, task.id, retry_count=3)
        assert policy.determine_level(task.id) == EscalationLevel.ORGANIZATION

    def test_exhausted_task_goes_to_team(self, db, policy):
        task = _failed_task(db)
        tasks_mod.update_task(db, task.id, retry_count=3)
        assert policy.determine_level(task.id) == EscalationLevel.TEAM_COLLABORATION

    def test_missing_task_needs_a_human(self, policy):
        assert policy.determine_level("missing") == EscalationLevel.HUMAN_INTERVENTION


class TestSelectAction:
    def test_retry_first(self, db, policy):
        task = _failed_task(db)
        assert policy.select_action(task.id, "alice") == EscalationAction.RETRY

    def test_complex_task_is_decomposed(self, db, policy):
        task = _failed_task(db, description="x" * 600)
        tasks_mod.update_task(db, task.id, retry_count=3)
        assert policy.select_action(task.id, "alice") == EscalationAction.DECOMPOSE

    def test_requirement_heavy_task_is_simplified(self, db, policy):
        description = "Requirements:\n- login\n- logout\n- reset\n- audit\nFeatures: many"
        task = _failed_task(db, description=description)
        tasks_mod.update_task(db, task.id, retry_count=3)
        assert policy.select_action(task.id, "alice") == EscalationAction.SIMPLIFY

    def test_idle_teammate_reassigns(self, db, policy):
        agents_mod.create_agent(db, "Bob", team_id="core")
        task = _failed_task(db)
        tasks_mod.update_task(db, task.id, retry_count=3)
        assert policy.select_action(task.id, "alice") == EscalationAction.REASSIGN

    def test_priority_decides_between_org_and_leader(self, db, policy):
        urgent = _failed_task(db, priority=2)
        routine = _failed_task(db, priority=3)
        for task in (urgent, routine):
            tasks_mod.update_task(db, task.id, retry_count=3)
        assert policy.select_action(urgent.id, "alice") == EscalationAction.ESCALATE_TO_ORG
        assert policy.select_action(routine.id, "alice") == EscalationAction.ESCALATE_TO_LEADER

    def test_missing_task(self, policy):
        assert policy.select_action("missing", "alice") == EscalationAction.REQUEST_HUMAN


class TestExecuteAction:
    def test_decompose(self, db, policy, history):
        task = _failed_task(db, affected_files=["api.py"])
        result = policy.execute_action(EscalationAction.DECOMPOSE, task.id, "alice", "too big")

        assert result.success
        assert len(result.created_subtasks) == 3
        research, implement, review = result.created_subtasks
        assert [s.type for s in result.created_subtasks] == [
            TaskType.RESEARCH, TaskType.IMPLEMENTATION, TaskType.REVIEW,
        ]
        assert implement.depends_on == [research.id]
        assert review.depends_on == [implement.id]
        for sub in result.created_subtasks:
            assert tasks_mod.get_task(db, sub.id).status == TaskStatus.READY
        assert tasks_mod.get_task(db, task.id).status == TaskStatus.BLOCKED
        assert history.for_task(task.id)[0].action == EscalationAction.DECOMPOSE

    def test_simplify(self, db, policy):
        task = _failed_task(db, description="Do everything")
        result = policy.execute_action(EscalationAction.SIMPLIFY, task.id, "alice", "scope creep")
        assert result.success
        updated = tasks_mod.get_task(db, task.id)
        assert "SIMPLIFY REQUEST" in updated.description
        assert updated.description.startswith("Do everything")
        assert updated.status == TaskStatus.IN_REVIEW

    def test_resolve_picks_and_applies(self, db, policy):
        task = _failed_task(db)
        result = policy.resolve(task.id, "alice", "flaky")
        assert result.action == EscalationAction.RETRY
        assert tasks_mod.get_task(db, task.id).retry_count == 1


class TestHistory:
    def test_records_are_immutable(self, db, policy, history):
        task = _failed_task(db)
        policy.escalate(task.id, "alice", "x", level=1, metadata={"attempt": 1})
        record = history.for_task(task.id)[0]
        with pytest.raises(dataclasses.FrozenInstanceError):
            record.level = EscalationLevel.HUMAN_INTERVENTION
        assert record.metadata == {"attempt": 1}

    def test_snapshot_is_a_tuple(self, db, policy, history):
        task = _failed_task(db)
        policy.escalate(task.id, "alice", "x", level=1)
        snapshot = history.for_task(task.id)
        policy.escalate(task.id, "alice", "y", level=1)
        assert len(snapshot) == 1
        assert len(history.for_task(task.id)) == 2
        assert len(history) == 2

    def test_histories_are_independent(self, db):
        first, second = EscalationHistory(), EscalationHistory()
        task = _failed_task(db)
        EscalationPolicy(db, first).escalate(task.id, "alice", "x", level=1)
        assert len(first) == 1
        assert len(second) == 0


class TestDefaultSpecs:
    def test_titles(self, db):
        task = _failed_task(db)
        titles = [s.title for s in default_subtask_specs(task)]
        assert titles == ["Research: Flaky work", "Implement: Flaky work", "Review: Flaky work"]
