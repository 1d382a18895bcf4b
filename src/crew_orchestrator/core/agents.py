"""Agent store: permanent agents, temporary sub-agents and their lifecycle."""

import logging
import sqlite3
from datetime import datetime

from crew_orchestrator.core.projects import DEFAULT_ORG_ID, get_team
from crew_orchestrator.core.tasks import NotFoundError, _placeholders, slugify
from crew_orchestrator.db.engine import utcnow
from crew_orchestrator.db.models import Agent, AgentStatus, Lifecycle, TaskStatus

logger = logging.getLogger(__name__)

# Depth of a delegated sub-agent. Nothing deeper is ever created.
MAX_AGENT_DEPTH = 1


class DepthLimitError(ValueError):
    """Raised when an agent that is already a sub-agent tries to spawn one."""


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique agent ID from a slug, appending a number if needed."""
    base_slug = base_slug or "agent"
    candidate, i = base_slug, 2
    while db.execute("SELECT 1 FROM agents WHERE id = ?", (candidate,)).fetchone():
        candidate = f"{base_slug}-{i}"
        i += 1
    return candidate


def create_agent(
    db: sqlite3.Connection,
    name: str,
    role: str = "coder",
    organization_id: str = DEFAULT_ORG_ID,
    team_id: str | None = None,
    manager_id: str | None = None,
    agent_id: str | None = None,
    max_concurrent_tasks: int = 1,
) -> Agent:
    """Create a permanent, root-level agent."""
    return _insert_agent(
        db,
        agent_id=agent_id or _unique_id(db, slugify(name)),
        name=name,
        role=role,
        organization_id=organization_id,
        team_id=team_id,
        manager_id=manager_id,
        depth=0,
        lifecycle=Lifecycle.PERMANENT,
        created_by_agent_id=None,
        max_concurrent_tasks=max_concurrent_tasks,
    )


def create_temporary_agent(
    db: sqlite3.Connection,
    parent: Agent,
    role: str,
    name: str | None = None,
) -> Agent:
    """Create a temporary sub-agent on behalf of `parent`.

    Only root agents may do this; the child sits exactly one level below
    and inherits the parent's organization and team.
    """
    if parent.depth >= MAX_AGENT_DEPTH:
        raise DepthLimitError(
            f"Agent {parent.id} is at depth {parent.depth} and cannot create sub-agents"
        )
    name = name or f"{parent.name} {role}"
    agent = _insert_agent(
        db,
        agent_id=_unique_id(db, slugify(f"{parent.id}-{role}")),
        name=name,
        role=role,
        organization_id=parent.organization_id,
        team_id=parent.team_id,
        manager_id=parent.id,
        depth=min(parent.depth + 1, MAX_AGENT_DEPTH),
        lifecycle=Lifecycle.TEMPORARY,
        created_by_agent_id=parent.id,
        max_concurrent_tasks=1,
    )
    logger.info("Created temporary agent %s (%s) for %s", agent.id, role, parent.id)
    return agent


def _insert_agent(db: sqlite3.Connection, **values) -> Agent:
    now = utcnow().isoformat()
    db.execute(
        """INSERT INTO agents (id, organization_id, name, role, team_id, manager_id, depth,
                               lifecycle, created_by_agent_id, max_concurrent_tasks,
                               created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            values["agent_id"], values["organization_id"], values["name"], values["role"],
            values["team_id"], values["manager_id"], values["depth"], values["lifecycle"],
            values["created_by_agent_id"], values["max_concurrent_tasks"], now, now,
        ),
    )
    db.commit()
    return get_agent(db, values["agent_id"])


def get_agent(db: sqlite3.Connection, agent_id: str) -> Agent | None:
    row = db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def require_agent(db: sqlite3.Connection, agent_id: str) -> Agent:
    agent = get_agent(db, agent_id)
    if not agent:
        raise NotFoundError(f"Agent not found: {agent_id}")
    return agent


def list_agents(
    db: sqlite3.Connection,
    status: str | None = None,
    team_id: str | None = None,
    lifecycle: str | None = None,
) -> list[Agent]:
    query = "SELECT * FROM agents WHERE 1 = 1"
    params: list = []
    if status:
        query += " AND status = ?"
        params.append(status)
    if team_id:
        query += " AND team_id = ?"
        params.append(team_id)
    if lifecycle:
        query += " AND lifecycle = ?"
        params.append(lifecycle)
    query += " ORDER BY depth, created_at, rowid"
    return [_row_to_agent(r) for r in db.execute(query, params).fetchall()]


def set_agent_status(db: sqlite3.Connection, agent_id: str, status: str) -> Agent:
    """Set an agent's status."""
    if status not in AgentStatus.ALL:
        raise ValueError(f"Invalid agent status: {status}")
    cur = db.execute(
        "UPDATE agents SET status = ?, updated_at = ? WHERE id = ?",
        (status, utcnow().isoformat(), agent_id),
    )
    db.commit()
    if not cur.rowcount:
        raise NotFoundError(f"Agent not found: {agent_id}")
    return get_agent(db, agent_id)


def set_agent_team(db: sqlite3.Connection, agent_id: str, team_id: str | None) -> Agent:
    require_agent(db, agent_id)
    if team_id and not get_team(db, team_id):
        raise NotFoundError(f"Team not found: {team_id}")
    db.execute(
        "UPDATE agents SET team_id = ?, updated_at = ? WHERE id = ?",
        (team_id, utcnow().isoformat(), agent_id),
    )
    db.commit()
    return get_agent(db, agent_id)


def find_idle_teammates(
    db: sqlite3.Connection, team_id: str | None, exclude_id: str
) -> list[Agent]:
    """Idle agents on the same team, other than `exclude_id`."""
    if not team_id:
        return []
    rows = db.execute(
        """SELECT * FROM agents
           WHERE team_id = ? AND id != ? AND status = ?
           ORDER BY depth, created_at, rowid""",
        (team_id, exclude_id, AgentStatus.IDLE),
    ).fetchall()
    return [_row_to_agent(r) for r in rows]


def workspace_owner_id(agent: Agent) -> str:
    """The agent whose worktree `agent` works in."""
    if agent.is_temporary and agent.created_by_agent_id:
        return agent.created_by_agent_id
    return agent.id


def crew_ids(db: sqlite3.Connection, agent: Agent) -> list[str]:
    """The workspace owner of `agent` plus every temporary agent it created."""
    owner = workspace_owner_id(agent)
    rows = db.execute(
        "SELECT id FROM agents WHERE id = ? OR created_by_agent_id = ? ORDER BY id",
        (owner, owner),
    ).fetchall()
    return [r["id"] for r in rows]


def managed_team_ids(db: sqlite3.Connection, agent_id: str) -> list[str]:
    """IDs of teams this agent is the designated manager of."""
    rows = db.execute(
        "SELECT id FROM teams WHERE manager_agent_id = ? ORDER BY id", (agent_id,)
    ).fetchall()
    return [r["id"] for r in rows]


def remove_agent(db: sqlite3.Connection, agent_id: str) -> bool:
    """Delete an agent. Tasks it held become unassigned."""
    if not get_agent(db, agent_id):
        return False
    db.execute(
        "UPDATE tasks SET assigned_agent_id = NULL WHERE assigned_agent_id = ?",
        (agent_id,),
    )
    db.execute("DELETE FROM agents WHERE id = ?", (agent_id,))
    db.commit()
    return True


def reap_temporary_agents(db: sqlite3.Connection, created_by: str | None = None) -> list[str]:
    """Remove temporary agents whose delegated tasks have all resolved.

    A temporary agent with no tasks at all is left alone: it may have
    just been created and not yet been handed its subtask.
    """
    query = "SELECT id FROM agents WHERE lifecycle = ?"
    params: list = [Lifecycle.TEMPORARY]
    if created_by:
        query += " AND created_by_agent_id = ?"
        params.append(created_by)

    removed = []
    for row in db.execute(query, params).fetchall():
        statuses = [
            r["status"]
            for r in db.execute(
                "SELECT status FROM tasks WHERE assigned_agent_id = ?", (row["id"],)
            ).fetchall()
        ]
        if statuses and all(s in TaskStatus.RESOLVED for s in statuses):
            remove_agent(db, row["id"])
            removed.append(row["id"])

    if removed:
        logger.info("Removed %d temporary agent(s): %s", len(removed), ", ".join(removed))
    return removed


def count_agents_by_status(db: sqlite3.Connection) -> dict[str, int]:
    rows = db.execute("SELECT status, COUNT(*) AS n FROM agents GROUP BY status").fetchall()
    return {r["status"]: r["n"] for r in rows}


def _row_to_agent(row: sqlite3.Row) -> Agent:
    return Agent(
        id=row["id"],
        organization_id=row["organization_id"],
        name=row["name"],
        role=row["role"],
        status=row["status"],
        team_id=row["team_id"],
        manager_id=row["manager_id"],
        depth=row["depth"],
        lifecycle=row["lifecycle"],
        created_by_agent_id=row["created_by_agent_id"],
        max_concurrent_tasks=row["max_concurrent_tasks"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
