"""Per-agent git worktree lifecycle.

Each root agent owns one worktree, kept beside the project repository
and reused from task to task. Sub-agents work inside their creator's
worktree and never get one of their own.
"""

import logging
import re
import sqlite3
from pathlib import Path

from crew_orchestrator.core.tasks import _log_event, require_task
from crew_orchestrator.db.models import Agent, Task
from crew_orchestrator.integrations.git import (
    DEFAULT_TIMEOUT,
    GitError,
    branch_exists,
    checkout,
    checkout_new_branch,
    fetch,
    get_common_dir,
    get_current_branch,
    has_remote,
    push,
    worktree_add_detached,
    worktree_list,
    worktree_prune,
    worktree_remove,
)

logger = logging.getLogger(__name__)


def sanitize_branch_component(name: str) -> str:
    """Replace anything but ASCII letters, digits and dashes with a dash."""
    return re.sub(r"[^a-zA-Z0-9-]", "-", name)


def branch_name_for(agent: Agent, task: Task) -> str:
    return f"feature/{sanitize_branch_component(agent.name)}/task-{task.id[:8]}"


class WorkspaceManager:
    """Creates, refreshes and removes per-agent worktrees."""

    def __init__(self, worktree_dir: str = ".git-worktrees", timeout: float | None = DEFAULT_TIMEOUT):
        self.worktree_dir = worktree_dir
        self.timeout = timeout

    def workspace_path(self, agent_id: str, project_root: str | Path) -> Path:
        repo = Path(project_root).resolve()
        return repo.parent / self.worktree_dir / repo.name / f"agent-{agent_id}"

    def acquire_workspace(
        self,
        agent_id: str,
        project_root: str | Path,
        base_branch: str = "main",
    ) -> Path:
        """Return the agent's worktree, creating it from trunk on first use.

        An existing worktree is refreshed from the remote instead of
        being recreated.
        """
        repo = Path(project_root).resolve()
        path = self.workspace_path(agent_id, repo)

        if path.exists():
            if has_remote(path, timeout=self.timeout):
                fetch(path, timeout=self.timeout)
            logger.debug("Reusing workspace %s for agent %s", path, agent_id)
            return path

        path.parent.mkdir(parents=True, exist_ok=True)
        if has_remote(repo, timeout=self.timeout):
            fetch(repo, timeout=self.timeout)
        worktree_add_detached(repo, path, base_branch, timeout=self.timeout)
        logger.info("Created workspace %s for agent %s", path, agent_id)
        return path

    def create_branch(
        self,
        agent: Agent,
        task: Task,
        workspace: str | Path,
        base_branch: str = "main",
    ) -> str:
        """Check out the task's feature branch in the workspace.

        New branches start at the trunk's remote tip, or at the local
        trunk when the repository has no remote.
        """
        branch = branch_name_for(agent, task)
        if branch_exists(workspace, branch, timeout=self.timeout):
            if get_current_branch(workspace, timeout=self.timeout) == branch:
                return branch
            checkout(workspace, branch, timeout=self.timeout)
            logger.debug("Checked out existing branch %s", branch)
            return branch

        start = f"origin/{base_branch}" if has_remote(workspace, timeout=self.timeout) else base_branch
        checkout_new_branch(workspace, branch, start, timeout=self.timeout)
        logger.info("Branch created: %s (from %s)", branch, start)
        return branch

    def checkout_branch(self, workspace: str | Path, branch: str) -> str:
        """Switch the workspace to a branch another task already created."""
        checkout(workspace, branch, timeout=self.timeout)
        return branch

    def push_branch(self, workspace: str | Path, branch: str) -> str:
        return push(workspace, branch, timeout=self.timeout)

    def release_workspace(self, path: str | Path) -> bool:
        """Remove a worktree. Failures are logged, never raised.

        Returns True when the worktree was removed.
        """
        path = Path(path)
        if not path.exists():
            logger.warning("Workspace %s does not exist, nothing to release", path)
            return False
        try:
            repo = get_common_dir(path, timeout=self.timeout).parent
            worktree_remove(repo, path, force=True, timeout=self.timeout)
            worktree_prune(repo, timeout=self.timeout)
        except GitError as e:
            logger.warning("Failed to remove workspace %s: %s", path, e)
            return False
        logger.info("Workspace removed: %s", path)
        return True

    def list_workspaces(self, project_root: str | Path) -> list[str]:
        """Paths of agent worktrees registered with the repository."""
        repo = Path(project_root).resolve()
        base = repo.parent / self.worktree_dir / repo.name
        return [
            wt.path for wt in worktree_list(repo, timeout=self.timeout)
            if Path(wt.path).resolve().parent == base.resolve()
        ]


def assign_workspace(
    db: sqlite3.Connection,
    task_id: str,
    workspace_path: str | Path,
    branch_name: str | None,
) -> Task:
    """Record where a task is being worked on."""
    task = require_task(db, task_id)
    db.execute(
        "UPDATE tasks SET workspace_path = ?, branch_name = ? WHERE id = ?",
        (str(workspace_path), branch_name, task_id),
    )
    if task.workspace_path != str(workspace_path):
        _log_event(db, task_id, "workspace_assigned", task.workspace_path, str(workspace_path))
    db.commit()
    return require_task(db, task_id)
