"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS organizations (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    daily_budget_cents INTEGER,
    policy TEXT DEFAULT '',
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id),
    name TEXT NOT NULL,
    repo_path TEXT NOT NULL,
    default_branch TEXT DEFAULT 'main',
    slack_channel TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS teams (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id),
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    manager_agent_id TEXT REFERENCES agents(id) ON DELETE SET NULL,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id),
    name TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'coder',
    status TEXT DEFAULT 'idle' CHECK (status IN ('idle', 'working', 'paused', 'error')),
    team_id TEXT REFERENCES teams(id) ON DELETE SET NULL,
    manager_id TEXT REFERENCES agents(id) ON DELETE SET NULL,
    depth INTEGER NOT NULL DEFAULT 0 CHECK (depth IN (0, 1)),
    lifecycle TEXT DEFAULT 'permanent' CHECK (lifecycle IN ('permanent', 'temporary')),
    created_by_agent_id TEXT REFERENCES agents(id) ON DELETE SET NULL,
    max_concurrent_tasks INTEGER DEFAULT 1,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id),
    project_id TEXT REFERENCES projects(id),
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    type TEXT DEFAULT 'implementation'
        CHECK (type IN ('team-epic', 'implementation', 'research', 'review')),
    status TEXT DEFAULT 'pending'
        CHECK (status IN ('pending', 'ready', 'in_progress', 'ready_for_review', 'in_review',
                          'blocked', 'completed', 'failed', 'cancelled')),
    priority INTEGER DEFAULT 3 CHECK (priority BETWEEN 1 AND 4),
    assigned_agent_id TEXT REFERENCES agents(id) ON DELETE SET NULL,
    assigned_team_id TEXT REFERENCES teams(id) ON DELETE SET NULL,
    parent_task_id TEXT REFERENCES tasks(id) ON DELETE CASCADE,
    created_by_agent_id TEXT REFERENCES agents(id) ON DELETE SET NULL,
    affected_files TEXT DEFAULT '[]',
    required_skills TEXT DEFAULT '[]',
    estimated_complexity TEXT CHECK (estimated_complexity IN ('low', 'medium', 'high')),
    story_points INTEGER,
    consecutive_failures INTEGER DEFAULT 0,
    retry_count INTEGER DEFAULT 0,
    review_count INTEGER DEFAULT 0,
    blocked_until TEXT,
    workspace_path TEXT,
    branch_name TEXT,
    error_message TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    started_at TEXT,
    completed_at TEXT,
    last_failed_at TEXT,
    last_reviewed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_assigned_agent ON tasks(assigned_agent_id);
CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks(parent_task_id);

CREATE TABLE IF NOT EXISTS task_dependencies (
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    depends_on_task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    PRIMARY KEY (task_id, depends_on_task_id)
);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS documents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    agent_id TEXT REFERENCES agents(id) ON DELETE SET NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);
"""


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
