"""Organization, team and project records.

These are read far more often than written; only the fields the
orchestration core consumes are managed here.
"""

import sqlite3
from datetime import datetime

from crew_orchestrator.db.models import Organization, Project, Team

DEFAULT_ORG_ID = "default"


# ── Organizations ───────────────────────────────────────────────────────────


def create_organization(
    db: sqlite3.Connection,
    org_id: str,
    name: str,
    daily_budget_cents: int | None = None,
    policy: str = "",
) -> Organization:
    """Create a new organization."""
    db.execute(
        """INSERT INTO organizations (id, name, daily_budget_cents, policy)
           VALUES (?, ?, ?, ?)""",
        (org_id, name, daily_budget_cents, policy),
    )
    db.commit()
    return get_organization(db, org_id)


def get_organization(db: sqlite3.Connection, org_id: str) -> Organization | None:
    row = db.execute("SELECT * FROM organizations WHERE id = ?", (org_id,)).fetchone()
    if not row:
        return None
    return Organization(
        id=row["id"],
        name=row["name"],
        daily_budget_cents=row["daily_budget_cents"],
        policy=row["policy"] or "",
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def ensure_default_organization(db: sqlite3.Connection) -> Organization:
    """Ensure a 'default' organization exists, creating it if needed."""
    org = get_organization(db, DEFAULT_ORG_ID)
    if not org:
        org = create_organization(db, DEFAULT_ORG_ID, "Default Organization")
    return org


# ── Teams ───────────────────────────────────────────────────────────────────


def create_team(
    db: sqlite3.Connection,
    team_id: str,
    name: str,
    organization_id: str = DEFAULT_ORG_ID,
    description: str = "",
    manager_agent_id: str | None = None,
) -> Team:
    """Create a new team."""
    db.execute(
        """INSERT INTO teams (id, organization_id, name, description, manager_agent_id)
           VALUES (?, ?, ?, ?, ?)""",
        (team_id, organization_id, name, description, manager_agent_id),
    )
    db.commit()
    return get_team(db, team_id)


def get_team(db: sqlite3.Connection, team_id: str) -> Team | None:
    row = db.execute("SELECT * FROM teams WHERE id = ?", (team_id,)).fetchone()
    if not row:
        return None
    return _row_to_team(row)


def list_teams(db: sqlite3.Connection, organization_id: str | None = None) -> list[Team]:
    if organization_id:
        rows = db.execute(
            "SELECT * FROM teams WHERE organization_id = ? ORDER BY name",
            (organization_id,),
        ).fetchall()
    else:
        rows = db.execute("SELECT * FROM teams ORDER BY name").fetchall()
    return [_row_to_team(r) for r in rows]


def set_team_manager(
    db: sqlite3.Connection, team_id: str, agent_id: str | None
) -> Team | None:
    """Designate (or clear) the agent that manages a team."""
    db.execute(
        "UPDATE teams SET manager_agent_id = ?, updated_at = datetime('now') WHERE id = ?",
        (agent_id, team_id),
    )
    db.commit()
    return get_team(db, team_id)


# ── Projects ────────────────────────────────────────────────────────────────


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    repo_path: str,
    organization_id: str = DEFAULT_ORG_ID,
    default_branch: str = "main",
    slack_channel: str | None = None,
) -> Project:
    """Create a new project."""
    db.execute(
        """INSERT INTO projects (id, organization_id, name, repo_path, default_branch, slack_channel)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (project_id, organization_id, name, repo_path, default_branch, slack_channel),
    )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC").fetchall()
    return [_row_to_project(r) for r in rows]


def ensure_default_project(db: sqlite3.Connection, repo_path: str) -> Project:
    """Ensure a 'default' project (and its organization) exists."""
    ensure_default_organization(db)
    project = get_project(db, "default")
    if not project:
        project = create_project(db, "default", "Default Project", repo_path)
    return project


def _row_to_team(row: sqlite3.Row) -> Team:
    return Team(
        id=row["id"],
        organization_id=row["organization_id"],
        name=row["name"],
        description=row["description"] or "",
        manager_agent_id=row["manager_agent_id"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        organization_id=row["organization_id"],
        name=row["name"],
        repo_path=row["repo_path"],
        default_branch=row["default_branch"],
        slack_channel=row["slack_channel"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
