"""JSON API for inspecting and driving the crew."""

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from crew_orchestrator.config import get_config
from crew_orchestrator.core import agents as agents_mod
from crew_orchestrator.core import projects as projects_mod
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.core.escalation import EscalationHistory
from crew_orchestrator.core.orchestrator import build_orchestrator
from crew_orchestrator.core.scheduler import progress_summary
from crew_orchestrator.db.engine import init_db
from crew_orchestrator.db.models import AgentStatus
from crew_orchestrator.integrations.brain import Brain


def _get_db():
    config = get_config()
    return init_db(config.db_path)


# ── Agents ────────────────────────────────────────────────────────────────────


async def api_list_agents(request: Request):
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        agents = agents_mod.list_agents(db, status=status_filter)
        return JSONResponse([_agent_dict(a) for a in agents])
    finally:
        db.close()


async def api_get_agent(request: Request):
    agent_id = request.path_params["agent_id"]
    db = _get_db()
    try:
        agent = agents_mod.get_agent(db, agent_id)
        if not agent:
            return JSONResponse({"error": "Agent not found"}, status_code=404)
        ad = _agent_dict(agent)
        ad["tasks"] = [_task_dict(t) for t in tasks_mod.list_tasks(db, assigned_agent_id=agent_id)]
        return JSONResponse(ad)
    finally:
        db.close()


async def api_set_agent_status(request: Request):
    agent_id = request.path_params["agent_id"]
    status = AgentStatus.PAUSED if request.url.path.endswith("/pause") else AgentStatus.IDLE
    db = _get_db()
    try:
        agent = agents_mod.set_agent_status(db, agent_id, status)
        return JSONResponse(_agent_dict(agent))
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=404)
    finally:
        db.close()


async def api_run_cycle(request: Request):
    agent_id = request.path_params["agent_id"]
    brain = request.app.state.brain
    history = request.app.state.history

    def run():
        db = _get_db()
        try:
            return build_orchestrator(db, get_config(), history, brain=brain).run_cycle(agent_id)
        finally:
            db.close()

    try:
        result = await run_in_threadpool(run)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=404)
    return JSONResponse({
        "success": result.success,
        "task_id": result.task_id,
        "task_title": result.task_title,
        "duration_ms": result.duration_ms,
        "output": result.output,
        "error": result.error,
        "no_task_available": result.no_task_available,
        "delegated": result.delegated,
    })


# ── Tasks ─────────────────────────────────────────────────────────────────────


async def api_list_tasks(request: Request):
    params = request.query_params
    db = _get_db()
    try:
        tasks = tasks_mod.list_tasks(
            db,
            status=params.get("status"),
            project_id=params.get("project"),
            assigned_agent_id=params.get("agent"),
        )
        return JSONResponse([_task_dict(t) for t in tasks])
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        td = _task_dict(task)
        if task.subtasks:
            td["subtasks"] = [_task_dict(s) for s in task.subtasks]
        return JSONResponse(td)
    finally:
        db.close()


async def api_task_events(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        if not tasks_mod.get_task(db, task_id):
            return JSONResponse({"error": "Task not found"}, status_code=404)
        return JSONResponse([_event_dict(e) for e in tasks_mod.get_task_events(db, task_id)])
    finally:
        db.close()


async def api_task_escalations(request: Request):
    task_id = request.path_params["task_id"]
    records = request.app.state.history.for_task(task_id)
    return JSONResponse([_escalation_dict(r) for r in records])


async def api_list_escalations(request: Request):
    records = request.app.state.history.all()
    return JSONResponse([dict(_escalation_dict(r), task_id=r.task_id) for r in records])


# ── Overview ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    db = _get_db()
    try:
        projects = projects_mod.list_projects(db)
        return JSONResponse([_project_dict(p) for p in projects])
    finally:
        db.close()


async def api_summary(request: Request):
    db = _get_db()
    try:
        return JSONResponse(progress_summary(db))
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _dt(value) -> str | None:
    return value.isoformat() if value else None


def _agent_dict(a) -> dict:
    return {
        "id": a.id,
        "name": a.name,
        "role": a.role,
        "status": a.status,
        "team_id": a.team_id,
        "depth": a.depth,
        "lifecycle": a.lifecycle,
        "created_by_agent_id": a.created_by_agent_id,
        "created_at": _dt(a.created_at),
    }


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "type": t.type,
        "status": t.status,
        "priority": t.priority_label,
        "description": t.description,
        "project_id": t.project_id,
        "parent_task_id": t.parent_task_id,
        "assigned_agent_id": t.assigned_agent_id,
        "affected_files": t.affected_files,
        "branch_name": t.branch_name,
        "workspace_path": t.workspace_path,
        "depends_on": t.depends_on,
        "retry_count": t.retry_count,
        "consecutive_failures": t.consecutive_failures,
        "blocked_until": _dt(t.blocked_until),
        "error_message": t.error_message,
        "created_at": _dt(t.created_at),
        "completed_at": _dt(t.completed_at),
    }


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "organization_id": p.organization_id,
        "repo_path": p.repo_path,
        "default_branch": p.default_branch,
        "slack_channel": p.slack_channel,
        "created_at": _dt(p.created_at),
    }


def _escalation_dict(r) -> dict:
    return {
        "level": int(r.level),
        "action": r.action.value,
        "agent_id": r.agent_id,
        "reason": r.reason,
        "timestamp": r.timestamp.isoformat(),
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _dt(e.created_at),
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(brain: Brain | None = None, history: EscalationHistory | None = None) -> Starlette:
    routes = [
        Route("/api/summary", api_summary),
        Route("/api/projects", api_list_projects),
        Route("/api/escalations", api_list_escalations),
        Route("/api/agents", api_list_agents),
        Route("/api/agents/{agent_id}", api_get_agent),
        Route("/api/agents/{agent_id}/pause", api_set_agent_status, methods=["POST"]),
        Route("/api/agents/{agent_id}/resume", api_set_agent_status, methods=["POST"]),
        Route("/api/agents/{agent_id}/cycle", api_run_cycle, methods=["POST"]),
        Route("/api/tasks", api_list_tasks),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/tasks/{task_id}/events", api_task_events),
        Route("/api/tasks/{task_id}/escalations", api_task_escalations),
    ]
    app = Starlette(routes=routes)
    app.state.brain = brain
    app.state.history = history or EscalationHistory()
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
