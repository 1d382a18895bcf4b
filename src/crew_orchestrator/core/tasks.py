"""Task store: persistence, conditional claims and decomposition."""

import json
import logging
import re
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from crew_orchestrator.core.projects import DEFAULT_ORG_ID, get_project
from crew_orchestrator.db.engine import utcnow
from crew_orchestrator.db.models import Document, Task, TaskEvent, TaskStatus, TaskType

logger = logging.getLogger(__name__)

MAX_SUBTASK_DEPTH = 3
MAX_SUBTASKS_PER_PARENT = 10

# Columns update_task() is allowed to write.
_UPDATABLE = {
    "title", "description", "type", "status", "priority", "assigned_agent_id",
    "assigned_team_id", "affected_files", "required_skills", "estimated_complexity",
    "story_points", "consecutive_failures", "retry_count", "review_count",
    "blocked_until", "workspace_path", "branch_name", "error_message",
    "started_at", "completed_at", "last_failed_at", "last_reviewed_at",
}
_JSON_COLUMNS = {"affected_files", "required_skills"}


class NotFoundError(ValueError):
    """A referenced task or agent does not exist."""


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def parse_priority(value: str | int | None) -> int:
    """Parse 'P2', '2' or 2 into a priority tier clamped to 1..4."""
    if value is None:
        return 3
    if isinstance(value, str):
        digits = value.strip().upper().removeprefix("P")
        if not digits.isdigit():
            raise ValueError(f"Invalid priority: {value!r}")
        value = digits
    return max(1, min(4, int(value)))


def create_task(
    db: sqlite3.Connection,
    title: str,
    description: str = "",
    project_id: str | None = None,
    organization_id: str | None = None,
    type: str = TaskType.IMPLEMENTATION,
    status: str = TaskStatus.PENDING,
    priority: str | int = 3,
    assigned_agent_id: str | None = None,
    assigned_team_id: str | None = None,
    parent_task_id: str | None = None,
    created_by_agent_id: str | None = None,
    affected_files: list[str] | None = None,
    required_skills: list[str] | None = None,
    estimated_complexity: str | None = None,
    story_points: int | None = None,
    depends_on: list[str] | None = None,
) -> Task:
    """Create a new task.

    The organization is inherited from the parent task or the project
    when not given explicitly.
    """
    if organization_id is None:
        if parent_task_id and (parent := get_task(db, parent_task_id)):
            organization_id = parent.organization_id
        elif project_id and (project := get_project(db, project_id)):
            organization_id = project.organization_id
        else:
            organization_id = DEFAULT_ORG_ID

    task_id = uuid.uuid4().hex
    now = utcnow().isoformat()
    db.execute(
        """INSERT INTO tasks (id, organization_id, project_id, title, description, type,
                              status, priority, assigned_agent_id, assigned_team_id,
                              parent_task_id, created_by_agent_id, affected_files,
                              required_skills, estimated_complexity, story_points,
                              created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            task_id, organization_id, project_id, title, description, type,
            status, parse_priority(priority), assigned_agent_id, assigned_team_id,
            parent_task_id, created_by_agent_id, json.dumps(affected_files or []),
            json.dumps(required_skills or []), estimated_complexity, story_points,
            now, now,
        ),
    )

    for dep_id in depends_on or []:
        db.execute(
            "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
            (task_id, dep_id),
        )

    _log_event(db, task_id, "created", None, status)
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its dependencies and subtasks."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None

    task = _row_to_task(row)
    task.depends_on = _dependency_ids(db, task_id)

    subtasks = db.execute(
        "SELECT * FROM tasks WHERE parent_task_id = ? ORDER BY created_at, rowid",
        (task_id,),
    ).fetchall()
    task.subtasks = [_row_to_task(s) for s in subtasks]
    return task


def require_task(db: sqlite3.Connection, task_id: str) -> Task:
    """Like get_task, but a missing task raises NotFoundError."""
    task = get_task(db, task_id)
    if not task:
        raise NotFoundError(f"Task not found: {task_id}")
    return task


def list_tasks(
    db: sqlite3.Connection,
    status: str | list[str] | None = None,
    project_id: str | None = None,
    assigned_agent_id: str | None = None,
    parent_task_id: str | None = None,
    limit: int | None = None,
) -> list[Task]:
    """List tasks with optional filters, most urgent first."""
    clauses = ["1 = 1"]
    params: list = []

    if isinstance(status, str):
        clauses.append("status = ?")
        params.append(status)
    elif status:
        clauses.append(f"status IN ({_placeholders(status)})")
        params.extend(status)

    if project_id:
        clauses.append("project_id = ?")
        params.append(project_id)

    if assigned_agent_id:
        clauses.append("assigned_agent_id = ?")
        params.append(assigned_agent_id)

    if parent_task_id:
        clauses.append("parent_task_id = ?")
        params.append(parent_task_id)

    return find_tasks(db, " AND ".join(clauses), params, limit=limit)


def find_tasks(db: sqlite3.Connection, where: str, params: tuple | list = (), limit: int | None = None) -> list[Task]:
    """Run a filtered scan over tasks in allocation order.

    `where` is an SQL fragment supplied by the caller; values always go
    through `params`.
    """
    query = f"SELECT * FROM tasks WHERE {where} ORDER BY priority ASC, created_at ASC, rowid ASC"
    params = list(params)
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    tasks = []
    for row in db.execute(query, params).fetchall():
        task = _row_to_task(row)
        task.depends_on = _dependency_ids(db, task.id)
        tasks.append(task)
    return tasks


def update_task(db: sqlite3.Connection, task_id: str, **fields) -> Task:
    """Update task fields. Returns the updated task."""
    task = require_task(db, task_id)
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")
    if not fields:
        return task

    values = []
    for key, value in fields.items():
        if key in _JSON_COLUMNS:
            value = json.dumps(value or [])
        elif isinstance(value, datetime):
            value = value.isoformat()
        elif key == "priority":
            value = parse_priority(value)
        values.append(value)

    set_parts = [f"{k} = ?" for k in fields]
    set_parts.append("updated_at = ?")
    values.extend([utcnow().isoformat(), task_id])
    db.execute(f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?", values)

    if "status" in fields and fields["status"] != task.status:
        _log_event(db, task_id, "status_changed", task.status, fields["status"])
    db.commit()
    return get_task(db, task_id)


def update_task_status(db: sqlite3.Connection, task_id: str, status: str) -> Task:
    """Update a task's status, stamping completed_at on first completion."""
    if status not in TaskStatus.ALL:
        raise ValueError(f"Invalid status: {status}")
    task = require_task(db, task_id)
    fields: dict = {"status": status}
    if status == TaskStatus.COMPLETED and task.status != TaskStatus.COMPLETED:
        fields["completed_at"] = utcnow()
    return update_task(db, task_id, **fields)


def conditional_claim(
    db: sqlite3.Connection,
    task_id: str,
    expected_statuses: list[str] | tuple[str, ...],
    new_status: str,
    assignee: str,
    extra: dict | None = None,
) -> int:
    """Compare-and-set a task's status and assignment in one statement.

    The update only applies while the task is still in one of
    `expected_statuses` and is unassigned or already held by `assignee`.
    Returns the number of rows changed: 0 means another agent won.
    """
    sets = {"status": new_status, "assigned_agent_id": assignee, "updated_at": utcnow().isoformat()}
    for key, value in (extra or {}).items():
        sets[key] = value.isoformat() if isinstance(value, datetime) else value

    # Counter increments are passed as raw SQL expressions.
    set_parts, values = [], []
    for key, value in sets.items():
        if isinstance(value, _Expr):
            set_parts.append(f"{key} = {value.sql}")
        else:
            set_parts.append(f"{key} = ?")
            values.append(value)

    cur = db.execute(
        f"""UPDATE tasks SET {', '.join(set_parts)}
            WHERE id = ?
              AND status IN ({_placeholders(expected_statuses)})
              AND (assigned_agent_id IS NULL OR assigned_agent_id = ?)""",
        [*values, task_id, *expected_statuses, assignee],
    )
    if cur.rowcount:
        _log_event(db, task_id, "claimed", None, assignee)
    db.commit()
    return cur.rowcount


@dataclass(frozen=True)
class _Expr:
    sql: str


def increment(column: str, by: int = 1) -> _Expr:
    """SQL expression for use in conditional_claim's extra fields."""
    return _Expr(f"COALESCE({column}, 0) + {int(by)}")


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task and its subtasks."""
    task = get_task(db, task_id)
    if not task:
        return False

    for subtask in task.subtasks:
        delete_task(db, subtask.id)

    db.execute("DELETE FROM task_dependencies WHERE task_id = ? OR depends_on_task_id = ?", (task_id, task_id))
    db.execute("DELETE FROM task_events WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM documents WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return True


# ── Dependencies ────────────────────────────────────────────────────────────


def add_dependency(db: sqlite3.Connection, task_id: str, depends_on_id: str) -> Task:
    """Add a dependency to an existing task."""
    task = require_task(db, task_id)
    if not get_task(db, depends_on_id):
        raise NotFoundError(f"Dependency task not found: {depends_on_id}")
    if depends_on_id == task_id:
        raise ValueError("A task cannot depend on itself")
    if depends_on_id in task.depends_on:
        return task
    db.execute(
        "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
        (task_id, depends_on_id),
    )
    _log_event(db, task_id, "dependency_added", None, depends_on_id)
    db.commit()
    return get_task(db, task_id)


def remove_dependency(db: sqlite3.Connection, task_id: str, depends_on_id: str) -> Task:
    """Remove a dependency from a task."""
    require_task(db, task_id)
    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
        (task_id, depends_on_id),
    )
    _log_event(db, task_id, "dependency_removed", depends_on_id, None)
    db.commit()
    return get_task(db, task_id)


def unresolved_dependencies(db: sqlite3.Connection, task: Task) -> list[str]:
    """IDs of dependencies that have not completed."""
    if not task.depends_on:
        return []
    rows = db.execute(
        f"SELECT id, status FROM tasks WHERE id IN ({_placeholders(task.depends_on)})",
        task.depends_on,
    ).fetchall()
    statuses = {r["id"]: r["status"] for r in rows}
    # A dependency that no longer exists can never complete.
    return [d for d in task.depends_on if statuses.get(d) != TaskStatus.COMPLETED]


# ── Decomposition ───────────────────────────────────────────────────────────


@dataclass
class SubtaskSpec:
    title: str
    description: str = ""
    type: str = TaskType.IMPLEMENTATION
    priority: str | int | None = None
    affected_files: list[str] = field(default_factory=list)
    required_skills: list[str] = field(default_factory=list)
    # Titles of earlier specs in the same batch.
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DecompositionResult:
    success: bool
    created_subtasks: list[Task] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def subtask_depth(db: sqlite3.Connection, task_id: str) -> int:
    """Number of ancestors above a task (0 for a root task)."""
    depth = 0
    row = db.execute("SELECT parent_task_id FROM tasks WHERE id = ?", (task_id,)).fetchone()
    while row and row["parent_task_id"]:
        depth += 1
        row = db.execute(
            "SELECT parent_task_id FROM tasks WHERE id = ?", (row["parent_task_id"],)
        ).fetchone()
    return depth


def decompose(
    db: sqlite3.Connection,
    parent_id: str,
    specs: list[SubtaskSpec],
    created_by_agent_id: str | None = None,
) -> DecompositionResult:
    """Split a task into ordered subtasks.

    Subtasks inherit the parent's project, priority and workspace. A spec
    may depend on earlier specs in the same batch by title.
    """
    parent = get_task(db, parent_id)
    if not parent:
        return DecompositionResult(False, errors=[f"Task not found: {parent_id}"])

    errors = []
    if subtask_depth(db, parent_id) + 1 > MAX_SUBTASK_DEPTH:
        errors.append(f"Maximum subtask depth ({MAX_SUBTASK_DEPTH}) exceeded")
    if len(parent.subtasks) + len(specs) > MAX_SUBTASKS_PER_PARENT:
        errors.append(
            f"Maximum subtasks per parent ({MAX_SUBTASKS_PER_PARENT}) exceeded: "
            f"{len(parent.subtasks)} existing, {len(specs)} requested"
        )
    if not specs:
        errors.append("No subtasks given")

    titles = [s.title for s in specs]
    for i, spec in enumerate(specs):
        for dep in spec.depends_on:
            if dep not in titles[:i]:
                errors.append(f"Subtask '{spec.title}' depends on unknown or later subtask '{dep}'")
    if errors:
        return DecompositionResult(False, errors=errors)

    created: list[Task] = []
    by_title: dict[str, str] = {}
    for spec in specs:
        sub = create_task(
            db,
            title=spec.title,
            description=spec.description,
            project_id=parent.project_id,
            organization_id=parent.organization_id,
            type=spec.type,
            priority=spec.priority if spec.priority is not None else parent.priority,
            parent_task_id=parent.id,
            created_by_agent_id=created_by_agent_id,
            affected_files=spec.affected_files or parent.affected_files,
            required_skills=spec.required_skills,
            depends_on=[by_title[d] for d in spec.depends_on],
        )
        if parent.workspace_path:
            sub = update_task(db, sub.id, workspace_path=parent.workspace_path)
        by_title[spec.title] = sub.id
        created.append(sub)

    _log_event(db, parent.id, "decomposed", None, str(len(created)))
    db.commit()
    logger.info("Decomposed task %s into %d subtasks", parent.id, len(created))
    return DecompositionResult(True, created_subtasks=created)


def update_parent_status(db: sqlite3.Connection, parent_id: str) -> Task | None:
    """Recompute a parent task's status from its subtasks.

    All subtasks completed: the parent goes to ready_for_review when an
    agent owns it (so that agent reviews the combined result), otherwise
    it completes. Any subtask failed or blocked: the parent is blocked.
    """
    parent = get_task(db, parent_id)
    if not parent or not parent.subtasks:
        return parent
    if parent.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
        return parent

    statuses = [s.status for s in parent.subtasks]
    if all(s == TaskStatus.COMPLETED for s in statuses):
        if parent.assigned_agent_id:
            new_status = TaskStatus.READY_FOR_REVIEW
        else:
            new_status = TaskStatus.COMPLETED
    elif any(s in (TaskStatus.FAILED, TaskStatus.BLOCKED) for s in statuses):
        new_status = TaskStatus.BLOCKED
    else:
        return parent

    if new_status == parent.status:
        return parent
    return update_task_status(db, parent_id, new_status)


# ── Result artifacts ────────────────────────────────────────────────────────


def save_document(
    db: sqlite3.Connection,
    task_id: str,
    title: str,
    content: str,
    agent_id: str | None = None,
) -> Document:
    """Persist a task's result artifact."""
    cur = db.execute(
        "INSERT INTO documents (task_id, agent_id, title, content, created_at) VALUES (?, ?, ?, ?, ?)",
        (task_id, agent_id, title, content, utcnow().isoformat()),
    )
    db.commit()
    return Document(
        id=cur.lastrowid, task_id=task_id, agent_id=agent_id, title=title, content=content
    )


def list_documents(db: sqlite3.Connection, task_ids: list[str]) -> list[Document]:
    """Result artifacts for the given tasks, oldest first."""
    if not task_ids:
        return []
    rows = db.execute(
        f"SELECT * FROM documents WHERE task_id IN ({_placeholders(task_ids)}) ORDER BY id",
        task_ids,
    ).fetchall()
    return [
        Document(
            id=r["id"],
            task_id=r["task_id"],
            agent_id=r["agent_id"],
            title=r["title"],
            content=r["content"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


# ── Events ──────────────────────────────────────────────────────────────────


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    """Record an event and commit."""
    _log_event(db, task_id, event_type, old_value, new_value)
    db.commit()


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


# ── Row helpers ─────────────────────────────────────────────────────────────


def _dependency_ids(db: sqlite3.Connection, task_id: str) -> list[str]:
    deps = db.execute(
        "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ?",
        (task_id,),
    ).fetchall()
    return [d["depends_on_task_id"] for d in deps]


def _placeholders(values) -> str:
    return ", ".join("?" for _ in values)


def decode_list(raw: str | None) -> list[str]:
    """Decode a JSON list column."""
    return json.loads(raw or "[]")


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        organization_id=row["organization_id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        type=row["type"],
        status=row["status"],
        priority=row["priority"] if row["priority"] is not None else 3,
        assigned_agent_id=row["assigned_agent_id"],
        assigned_team_id=row["assigned_team_id"],
        parent_task_id=row["parent_task_id"],
        created_by_agent_id=row["created_by_agent_id"],
        affected_files=decode_list(row["affected_files"]),
        required_skills=decode_list(row["required_skills"]),
        estimated_complexity=row["estimated_complexity"],
        story_points=row["story_points"],
        consecutive_failures=row["consecutive_failures"] or 0,
        retry_count=row["retry_count"] or 0,
        review_count=row["review_count"] or 0,
        blocked_until=_parse_dt(row["blocked_until"]),
        workspace_path=row["workspace_path"],
        branch_name=row["branch_name"],
        error_message=row["error_message"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
        last_failed_at=_parse_dt(row["last_failed_at"]),
        last_reviewed_at=_parse_dt(row["last_reviewed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
