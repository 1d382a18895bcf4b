"""CLI entry point for the crew orchestrator."""

import json
import logging
import os
import sys

import click

from crew_orchestrator.config import get_config
from crew_orchestrator.core import agents as agents_mod
from crew_orchestrator.core import projects as projects_mod
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.core.escalation import EscalationHistory
from crew_orchestrator.core.orchestrator import build_orchestrator
from crew_orchestrator.core.pool import TaskPool
from crew_orchestrator.core.scheduler import CycleScheduler, run_maintenance
from crew_orchestrator.core.worktrees import WorkspaceManager
from crew_orchestrator.db.engine import get_db
from crew_orchestrator.db.models import AgentStatus, TaskStatus, TaskType


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(message: str):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group()
@click.option("--log-level", default=None, help="Logging level (default: CREW_LOG_LEVEL or INFO)")
def main(log_level):
    """crew - autonomous agent crew orchestrator"""
    level = (log_level or get_config().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Setup Commands ────────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_name")
@click.option("--repo-path", default=".", help="Path to the git repository")
@click.option("--branch", default="main", help="Default branch name")
@click.option("--slack-channel", default=None, help="Slack channel for notifications")
@click.option("--budget", default=None, type=int, help="Organization daily budget in cents")
def init_project(project_name, repo_path, branch, slack_channel, budget):
    """Initialize the organization and a project."""
    repo_path = os.path.abspath(repo_path)
    project_id = tasks_mod.slugify(project_name)

    with _get_db() as db:
        org = projects_mod.ensure_default_organization(db)
        if budget is not None:
            db.execute(
                "UPDATE organizations SET daily_budget_cents = ? WHERE id = ?", (budget, org.id)
            )
            db.commit()
        try:
            project = projects_mod.create_project(
                db, project_id, project_name, repo_path, org.id, branch, slack_channel
            )
        except Exception as e:
            _fail(str(e))
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Repo: {project.repo_path}")
        click.echo(f"  Branch: {project.default_branch}")


@main.command("projects")
def list_projects_command():
    """List projects."""
    with _get_db() as db:
        projects = projects_mod.list_projects(db)
        if not projects:
            click.echo("No projects found.")
            return
        for project in projects:
            click.echo(f"  {project.id}: {project.name} ({project.repo_path})")


# ── Team Commands ─────────────────────────────────────────────────────────────


@main.group("team")
def team_group():
    """Manage teams."""
    pass


@team_group.command("add")
@click.argument("name")
@click.option("--description", "-d", default="", help="Team description")
def team_add(name, description):
    """Create a team."""
    with _get_db() as db:
        org = projects_mod.ensure_default_organization(db)
        team = projects_mod.create_team(db, tasks_mod.slugify(name), name, org.id, description)
        click.echo(f"Team created: {team.id} ({team.name})")


@team_group.command("set-manager")
@click.argument("team_id")
@click.argument("agent_id")
def team_set_manager(team_id, agent_id):
    """Make an agent the manager of a team."""
    with _get_db() as db:
        if not agents_mod.get_agent(db, agent_id):
            _fail(f"Agent not found: {agent_id}")
        team = projects_mod.set_team_manager(db, team_id, agent_id)
        if not team:
            _fail(f"Team not found: {team_id}")
        click.echo(f"Team {team.id} is now managed by {agent_id}")


@team_group.command("list")
def team_list():
    """List teams."""
    with _get_db() as db:
        teams = projects_mod.list_teams(db)
        if not teams:
            click.echo("No teams found.")
            return
        for team in teams:
            manager = f" [manager: {team.manager_agent_id}]" if team.manager_agent_id else ""
            click.echo(f"  {team.id}: {team.name}{manager}")


# ── Agent Commands ────────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Manage agents."""
    pass


@agent_group.command("add")
@click.argument("name")
@click.option("--role", default="coder", help="Agent role (coder, planner, architect, ...)")
@click.option("--team", default=None, help="Team ID")
def agent_add(name, role, team):
    """Register a permanent agent."""
    with _get_db() as db:
        org = projects_mod.ensure_default_organization(db)
        if team and not projects_mod.get_team(db, team):
            _fail(f"Team not found: {team}")
        agent = agents_mod.create_agent(db, name, role, org.id, team_id=team)
        click.echo(f"Agent created: {agent.id} ({agent.name}, {agent.role})")


@agent_group.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def agent_list(status, json_output):
    """List agents."""
    with _get_db() as db:
        agents = agents_mod.list_agents(db, status=status)

        if json_output:
            click.echo(json.dumps([_agent_dict(a) for a in agents], indent=2))
            return

        if not agents:
            click.echo("No agents found.")
            return

        for agent in agents:
            indent = "    " if agent.depth else "  "
            team = f" [team: {agent.team_id}]" if agent.team_id else ""
            click.echo(f"{indent}{agent.id}: {agent.name} ({agent.role}, {agent.status}){team}")


@agent_group.command("set-team")
@click.argument("agent_id")
@click.argument("team_id", required=False)
def agent_set_team(agent_id, team_id):
    """Move an agent to a team, or off any team when TEAM_ID is omitted."""
    with _get_db() as db:
        try:
            agent = agents_mod.set_agent_team(db, agent_id, team_id)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Agent {agent.id} team: {agent.team_id or '-'}")


@agent_group.command("pause")
@click.argument("agent_id")
def agent_pause(agent_id):
    """Pause an agent. Paused agents skip their cycles."""
    with _get_db() as db:
        try:
            agents_mod.set_agent_status(db, agent_id, AgentStatus.PAUSED)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Paused agent: {agent_id}")


@agent_group.command("resume")
@click.argument("agent_id")
def agent_resume(agent_id):
    """Resume a paused agent."""
    with _get_db() as db:
        try:
            agents_mod.set_agent_status(db, agent_id, AgentStatus.IDLE)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Resumed agent: {agent_id}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", default="default", help="Project ID")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--type", "task_type", default=TaskType.IMPLEMENTATION, type=click.Choice(TaskType.ALL))
@click.option("--priority", "-p", default="P3", help="Priority P1 (highest) to P4 (lowest)")
@click.option("--assign", default=None, help="Agent ID to assign directly")
@click.option("--team", default=None, help="Team ID to assign")
@click.option("--files", default=None, help="Comma-separated affected files")
@click.option("--skills", default=None, help="Comma-separated required skills")
@click.option("--complexity", default=None, type=click.Choice(["low", "medium", "high"]))
@click.option("--points", default=None, type=int, help="Story points")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
def task_add(
    title, project, description, task_type, priority, assign, team, files, skills, complexity, points, depends_on
):
    """Create a task, ready for the pool."""
    config = get_config()
    with _get_db() as db:
        projects_mod.ensure_default_organization(db)
        if project == "default":
            projects_mod.ensure_default_project(db, str(config.repo_path))
        elif not projects_mod.get_project(db, project):
            _fail(f"Project not found: {project}")
        try:
            task = tasks_mod.create_task(
                db,
                title,
                description,
                project_id=project,
                type=task_type,
                status=TaskStatus.READY,
                priority=priority,
                assigned_agent_id=assign,
                assigned_team_id=team,
                affected_files=_split(files),
                required_skills=_split(skills),
                estimated_complexity=complexity,
                story_points=points,
                depends_on=_split(depends_on),
            )
        except Exception as e:
            _fail(str(e))
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority_label}")
        click.echo(f"  Status: {task.status}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")


@task_group.command("list")
@click.option("--project", default=None, help="Project ID")
@click.option("--status", default=None, help="Filter by status")
@click.option("--agent", default=None, help="Filter by assigned agent")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, agent, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, status=status, project_id=project, assigned_agent_id=agent)

        if json_output:
            click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        for task in tasks:
            if task.parent_task_id and not agent and not status:
                continue
            _echo_task_line(task, "  ")
            if task.parent_task_id:
                continue
            for sub in tasks_mod.list_tasks(db, parent_task_id=task.id):
                _echo_task_line(sub, "    ")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Type: {task.type}")
        click.echo(f"  Priority: {task.priority_label}")
        click.echo(f"  Status: {task.status}")
        if task.assigned_agent_id:
            click.echo(f"  Agent: {task.assigned_agent_id}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.affected_files:
            click.echo(f"  Files: {', '.join(task.affected_files)}")
        if task.branch_name:
            click.echo(f"  Branch: {task.branch_name}")
        if task.workspace_path:
            click.echo(f"  Workspace: {task.workspace_path}")
        if task.blocked_until:
            click.echo(f"  Blocked until: {task.blocked_until}")
        if task.error_message:
            click.echo(f"  Last error: {task.error_message}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")
        if task.subtasks:
            click.echo("  Subtasks:")
            for sub in task.subtasks:
                click.echo(f"    - {sub.id}: {sub.title} ({sub.status})")


@task_group.command("events")
@click.argument("task_id")
def task_events(task_id):
    """Show a task's history."""
    with _get_db() as db:
        if not tasks_mod.get_task(db, task_id):
            _fail(f"Task not found: {task_id}")
        for e in tasks_mod.get_task_events(db, task_id):
            click.echo(f"  [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


# ── Pool Commands ─────────────────────────────────────────────────────────────


@main.group("pool")
def pool_group():
    """Claim and release tasks by hand."""
    pass


@pool_group.command("pull")
@click.argument("agent_id")
def pool_pull(agent_id):
    """Claim the next task for an agent."""
    with _get_db() as db:
        try:
            result = TaskPool(db).pull_next(agent_id)
        except ValueError as e:
            _fail(str(e))
        if not result.task:
            click.echo(result.reason)
            return
        click.echo(f"Claimed {result.task.id}: {result.task.title} ({result.reason})")


@pool_group.command("release")
@click.argument("task_id")
@click.option("--error", default=None, help="Reason for giving the task back")
def pool_release(task_id, error):
    """Return a claimed task to the pool."""
    with _get_db() as db:
        try:
            TaskPool(db).release(task_id, error)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Released task: {task_id}")


# ── Execution Commands ────────────────────────────────────────────────────────


@main.command("cycle")
@click.argument("agent_id")
def cycle_command(agent_id):
    """Run a single orchestration cycle for an agent."""
    config = get_config()
    with _get_db() as db:
        orchestrator = build_orchestrator(db, config, EscalationHistory())
        try:
            result = orchestrator.run_cycle(agent_id)
        except ValueError as e:
            _fail(str(e))

    if result.no_task_available:
        click.echo("No task available.")
    elif result.delegated:
        click.echo(f"Delegated {result.task_id}: {result.output}")
    elif result.success:
        click.echo(f"Completed {result.task_id} in {result.duration_ms}ms")
    else:
        target = f" on {result.task_id}" if result.task_id else ""
        click.echo(f"Cycle failed{target}: {result.error}", err=True)
        sys.exit(1)


@main.command("run")
@click.option("--interval", default=None, type=float, help="Seconds between cycles per agent")
def run_command(interval):
    """Run every agent continuously until interrupted."""
    config = get_config()
    history = EscalationHistory()
    scheduler = CycleScheduler(
        config.db_path,
        lambda db: build_orchestrator(db, config, history),
        cycle_interval=interval or config.cycle_interval,
        stuck_task_hours=config.stuck_task_hours,
    )
    scheduler.start()
    click.echo("Scheduler running. Press Ctrl+C to stop.")
    try:
        scheduler.wait()
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()


@main.command("sweep")
def sweep_command():
    """Run one maintenance sweep and print progress."""
    config = get_config()
    with _get_db() as db:
        summary = run_maintenance(db, config.stuck_task_hours)
    click.echo(json.dumps(summary, indent=2))


# ── Workspace Commands ────────────────────────────────────────────────────────


@main.group("workspace")
def workspace_group():
    """Manage agent worktrees."""
    pass


@workspace_group.command("list")
@click.option("--repo-path", default=None, help="Repository (default: CREW_REPO_PATH)")
def workspace_list(repo_path):
    """List agent worktrees of a repository."""
    config = get_config()
    manager = WorkspaceManager(config.worktree_dir, timeout=config.git_timeout)
    try:
        paths = manager.list_workspaces(repo_path or config.repo_path)
    except Exception as e:
        _fail(str(e))
    if not paths:
        click.echo("No workspaces found.")
        return
    for path in paths:
        click.echo(f"  {path}")


@workspace_group.command("release")
@click.argument("path")
def workspace_release(path):
    """Remove an agent worktree."""
    config = get_config()
    manager = WorkspaceManager(config.worktree_dir, timeout=config.git_timeout)
    if not manager.release_workspace(path):
        _fail(f"Could not release workspace: {path}")
    click.echo(f"Released workspace: {path}")


@workspace_group.command("push")
@click.argument("task_id")
def workspace_push(task_id):
    """Push a task's branch to origin."""
    config = get_config()
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
    if not task:
        _fail(f"Task not found: {task_id}")
    if not task.workspace_path or not task.branch_name:
        _fail(f"Task {task_id} has no workspace branch")
    manager = WorkspaceManager(config.worktree_dir, timeout=config.git_timeout)
    try:
        manager.push_branch(task.workspace_path, task.branch_name)
    except Exception as e:
        _fail(str(e))
    click.echo(f"Pushed {task.branch_name}")


# ── Server Command ────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Start the JSON API."""
    from crew_orchestrator.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _split(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [v.strip() for v in value.split(",") if v.strip()]


def _echo_task_line(task, indent: str):
    agent = f" @{task.assigned_agent_id}" if task.assigned_agent_id else ""
    deps = f" [depends: {', '.join(d[:8] for d in task.depends_on)}]" if task.depends_on else ""
    click.echo(f"{indent}{task.priority_label} {task.id[:8]}: {task.title} ({task.status}){agent}{deps}")


def _agent_dict(agent) -> dict:
    return {
        "id": agent.id,
        "name": agent.name,
        "role": agent.role,
        "status": agent.status,
        "team": agent.team_id,
        "depth": agent.depth,
        "lifecycle": agent.lifecycle,
        "created_by": agent.created_by_agent_id,
    }


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "type": task.type,
        "status": task.status,
        "priority": task.priority_label,
        "project": task.project_id,
        "agent": task.assigned_agent_id,
        "parent": task.parent_task_id,
        "description": task.description,
        "affected_files": task.affected_files,
        "branch": task.branch_name,
        "workspace": task.workspace_path,
        "depends_on": task.depends_on,
        "retry_count": task.retry_count,
        "error": task.error_message,
    }


if __name__ == "__main__":
    main()
