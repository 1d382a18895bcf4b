"""Tests for the task store."""

import tempfile
from pathlib import Path

import pytest

from crew_orchestrator.core import projects as projects_mod
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.db.engine import init_db
from crew_orchestrator.db.models import TaskStatus, TaskType


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        conn = init_db(db_path)
        projects_mod.ensure_default_organization(conn)
        projects_mod.create_project(conn, "test", "Test Project", tmp)
        yield conn
        conn.close()


class TestSlugify:
    def test_basic(self):
        assert tasks_mod.slugify("Hello World") == "hello-world"

    def test_special_chars(self):
        assert tasks_mod.slugify("Auth: Login & Signup!") == "auth-login-signup"

    def test_truncation(self):
        assert len(tasks_mod.slugify("a" * 100)) <= 60


class TestParsePriority:
    def test_label(self):
        assert tasks_mod.parse_priority("P2") == 2

    def test_integer(self):
        assert tasks_mod.parse_priority(4) == 4

    def test_clamped(self):
        assert tasks_mod.parse_priority(0) == 1
        assert tasks_mod.parse_priority("P9") == 4

    def test_invalid(self):
        with pytest.raises(ValueError):
            tasks_mod.parse_priority("urgent")


class TestTaskCRUD:
    def test_create_task(self, db):
        task = tasks_mod.create_task(db, "Build login page", project_id="test")
        assert len(task.id) == 32
        assert task.title == "Build login page"
        assert task.status == TaskStatus.PENDING
        assert task.organization_id == "default"
        assert task.priority_label == "P3"

    def test_lists_round_trip(self, db):
        task = tasks_mod.create_task(
            db, "Refactor", affected_files=["a.py", "b.py"], required_skills=["python"]
        )
        task = tasks_mod.get_task(db, task.id)
        assert task.affected_files == ["a.py", "b.py"]
        assert task.required_skills == ["python"]

    def test_get_nonexistent_task(self, db):
        assert tasks_mod.get_task(db, "nonexistent") is None

    def test_require_nonexistent_task(self, db):
        with pytest.raises(tasks_mod.NotFoundError, match="Task not found"):
            tasks_mod.require_task(db, "nonexistent")

    def test_list_orders_by_priority_then_age(self, db):
        low = tasks_mod.create_task(db, "Low", priority=4)
        high = tasks_mod.create_task(db, "High", priority=1)
        mid = tasks_mod.create_task(db, "Mid", priority=2)
        assert [t.id for t in tasks_mod.list_tasks(db)] == [high.id, mid.id, low.id]

    def test_list_tasks_by_status(self, db):
        a = tasks_mod.create_task(db, "Task A")
        tasks_mod.create_task(db, "Task B")
        tasks_mod.update_task_status(db, a.id, TaskStatus.READY)
        ready = tasks_mod.list_tasks(db, status=TaskStatus.READY)
        assert [t.id for t in ready] == [a.id]

    def test_update_rejects_unknown_fields(self, db):
        task = tasks_mod.create_task(db, "Task")
        with pytest.raises(ValueError, match="Cannot update"):
            tasks_mod.update_task(db, task.id, pr_url="x")

    def test_status_change_is_logged(self, db):
        task = tasks_mod.create_task(db, "Task")
        tasks_mod.update_task_status(db, task.id, TaskStatus.READY)
        events = tasks_mod.get_task_events(db, task.id)
        assert [e.event_type for e in events] == ["created", "status_changed"]
        assert events[1].old_value == TaskStatus.PENDING
        assert events[1].new_value == TaskStatus.READY

    def test_completion_stamps_completed_at(self, db):
        task = tasks_mod.create_task(db, "Task")
        task = tasks_mod.update_task_status(db, task.id, TaskStatus.COMPLETED)
        assert task.completed_at is not None

    def test_delete_task_removes_subtasks(self, db):
        parent = tasks_mod.create_task(db, "Parent")
        child = tasks_mod.create_task(db, "Child", parent_task_id=parent.id)
        assert tasks_mod.delete_task(db, parent.id) is True
        assert tasks_mod.get_task(db, child.id) is None

    def test_subtask_inherits_organization(self, db):
        projects_mod.create_organization(db, "acme", "Acme")
        parent = tasks_mod.create_task(db, "Parent", organization_id="acme")
        child = tasks_mod.create_task(db, "Child", parent_task_id=parent.id)
        assert child.organization_id == "acme"


class TestDependencies:
    def test_add_and_remove(self, db):
        a = tasks_mod.create_task(db, "A")
        b = tasks_mod.create_task(db, "B")
        b = tasks_mod.add_dependency(db, b.id, a.id)
        assert b.depends_on == [a.id]
        b = tasks_mod.remove_dependency(db, b.id, a.id)
        assert b.depends_on == []

    def test_self_dependency_rejected(self, db):
        a = tasks_mod.create_task(db, "A")
        with pytest.raises(ValueError):
            tasks_mod.add_dependency(db, a.id, a.id)

    def test_unresolved_until_completed(self, db):
        a = tasks_mod.create_task(db, "A")
        b = tasks_mod.create_task(db, "B", depends_on=[a.id])
        assert tasks_mod.unresolved_dependencies(db, b) == [a.id]
        tasks_mod.update_task_status(db, a.id, TaskStatus.COMPLETED)
        assert tasks_mod.unresolved_dependencies(db, tasks_mod.get_task(db, b.id)) == []


class TestConditionalClaim:
    def test_claim_succeeds_once(self, db):
        db.execute("INSERT INTO agents (id, organization_id, name) VALUES ('x', 'default', 'X')")
        task = tasks_mod.create_task(db, "Task", status=TaskStatus.READY)
        first = tasks_mod.conditional_claim(db, task.id, [TaskStatus.READY], TaskStatus.IN_PROGRESS, "x")
        second = tasks_mod.conditional_claim(db, task.id, [TaskStatus.READY], TaskStatus.IN_PROGRESS, "y")
        assert (first, second) == (1, 0)
        assert tasks_mod.get_task(db, task.id).status == TaskStatus.IN_PROGRESS

    def test_increment_expression(self, db):
        db.execute("INSERT INTO agents (id, organization_id, name) VALUES ('x', 'default', 'X')")
        task = tasks_mod.create_task(db, "Task", status=TaskStatus.READY_FOR_REVIEW)
        tasks_mod.conditional_claim(
            db, task.id, [TaskStatus.READY_FOR_REVIEW], TaskStatus.IN_REVIEW, "x",
            {"review_count": tasks_mod.increment("review_count")},
        )
        assert tasks_mod.get_task(db, task.id).review_count == 1


class TestDecompose:
    def test_creates_ordered_subtasks(self, db):
        parent = tasks_mod.create_task(db, "Parent", project_id="test", priority=2, affected_files=["a.py"])
        result = tasks_mod.decompose(
            db,
            parent.id,
            [
                tasks_mod.SubtaskSpec("Research", type=TaskType.RESEARCH),
                tasks_mod.SubtaskSpec("Build", depends_on=["Research"]),
            ],
        )
        assert result.success
        research, build = result.created_subtasks
        assert build.depends_on == [research.id]
        assert build.parent_task_id == parent.id
        assert build.priority == 2
        assert build.affected_files == ["a.py"]
        assert build.project_id == "test"

    def test_rejects_forward_dependency(self, db):
        parent = tasks_mod.create_task(db, "Parent")
        result = tasks_mod.decompose(
            db,
            parent.id,
            [tasks_mod.SubtaskSpec("Build", depends_on=["Research"]), tasks_mod.SubtaskSpec("Research")],
        )
        assert not result.success
        assert tasks_mod.get_task(db, parent.id).subtasks == []

    def test_subtask_limit(self, db):
        parent = tasks_mod.create_task(db, "Parent")
        specs = [tasks_mod.SubtaskSpec(f"Step {i}") for i in range(tasks_mod.MAX_SUBTASKS_PER_PARENT + 1)]
        result = tasks_mod.decompose(db, parent.id, specs)
        assert not result.success
        assert "Maximum subtasks per parent" in result.errors[0]

    def test_depth_limit(self, db):
        task = tasks_mod.create_task(db, "Root")
        for level in range(tasks_mod.MAX_SUBTASK_DEPTH):
            task = tasks_mod.create_task(db, f"Level {level + 1}", parent_task_id=task.id)
        result = tasks_mod.decompose(db, task.id, [tasks_mod.SubtaskSpec("Too deep")])
        assert not result.success
        assert "depth" in result.errors[0]

    def test_missing_parent(self, db):
        result = tasks_mod.decompose(db, "missing", [tasks_mod.SubtaskSpec("x")])
        assert not result.success


class TestParentStatus:
    def _parent_with_children(self, db, assigned: bool):
        if assigned:
            db.execute("INSERT INTO agents (id, organization_id, name) VALUES ('lead', 'default', 'Lead')")
        parent = tasks_mod.create_task(
            db, "Parent", status=TaskStatus.IN_PROGRESS, assigned_agent_id="lead" if assigned else None
        )
        a = tasks_mod.create_task(db, "A", parent_task_id=parent.id)
        b = tasks_mod.create_task(db, "B", parent_task_id=parent.id)
        return parent, a, b

    def test_all_completed_assigned_goes_to_review(self, db):
        parent, a, b = self._parent_with_children(db, assigned=True)
        for sub in (a, b):
            tasks_mod.update_task_status(db, sub.id, TaskStatus.COMPLETED)
        assert tasks_mod.update_parent_status(db, parent.id).status == TaskStatus.READY_FOR_REVIEW

    def test_all_completed_unassigned_completes(self, db):
        parent, a, b = self._parent_with_children(db, assigned=False)
        for sub in (a, b):
            tasks_mod.update_task_status(db, sub.id, TaskStatus.COMPLETED)
        assert tasks_mod.update_parent_status(db, parent.id).status == TaskStatus.COMPLETED

    def test_failed_subtask_blocks_parent(self, db):
        parent, a, _ = self._parent_with_children(db, assigned=False)
        tasks_mod.update_task_status(db, a.id, TaskStatus.FAILED)
        assert tasks_mod.update_parent_status(db, parent.id).status == TaskStatus.BLOCKED

    def test_unfinished_leaves_parent_alone(self, db):
        parent, a, _ = self._parent_with_children(db, assigned=False)
        tasks_mod.update_task_status(db, a.id, TaskStatus.COMPLETED)
        assert tasks_mod.update_parent_status(db, parent.id).status == TaskStatus.IN_PROGRESS


class TestDocuments:
    def test_save_and_list(self, db):
        task = tasks_mod.create_task(db, "Task")
        tasks_mod.save_document(db, task.id, "Result: Task", "done")
        docs = tasks_mod.list_documents(db, [task.id])
        assert [d.title for d in docs] == ["Result: Task"]
        assert docs[0].content == "done"
