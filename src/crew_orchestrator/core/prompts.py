"""Layered prompt composition for brain invocations."""

import sqlite3

from crew_orchestrator.core.agents import require_agent
from crew_orchestrator.core.projects import get_organization, get_project, get_team
from crew_orchestrator.core.tasks import get_task, list_documents, require_task
from crew_orchestrator.db.models import TaskStatus

MAX_ARTIFACT_CHARS = 2000
MAX_ARTIFACTS = 5


def _truncate(text: str, limit: int = MAX_ARTIFACT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n... (truncated)"


def compose_prompt(db: sqlite3.Connection, agent_id: str, task_id: str) -> str:
    """Build the prompt for an agent working on a task.

    Layers, in order: organization policy, team, role and identity,
    prior artifacts from dependencies and subtasks, then the task itself.
    """
    agent = require_agent(db, agent_id)
    task = require_task(db, task_id)
    org = get_organization(db, task.organization_id)
    team = get_team(db, agent.team_id) if agent.team_id else None
    project = get_project(db, task.project_id) if task.project_id else None

    parts = []
    if org and org.policy:
        parts.append(f"# Organization: {org.name}\n{org.policy}")

    if team:
        parts.append(f"\n## Team: {team.name}")
        if team.description:
            parts.append(team.description)

    parts.append(f"\n## Your Role\nYou are {agent.name}, working as a {agent.role}.")
    if agent.is_temporary:
        parts.append(
            "You are a temporary sub-agent handling one part of a larger task. "
            "Do not delegate or split this work further."
        )

    source_ids = list(task.depends_on) + [s.id for s in task.subtasks]
    documents = list_documents(db, source_ids)[-MAX_ARTIFACTS:]
    if documents:
        parts.append("\n## Prior Work")
        for doc in documents:
            parts.append(f"### {doc.title}\n{_truncate(doc.content)}")

    parts.append(f"\n# Task: {task.title}")
    parts.append(f"Task ID: {task.id}")
    parts.append(f"Type: {task.type} | Priority: {task.priority_label}")
    if task.description:
        parts.append(f"\n## Description\n{task.description}")

    if project:
        parts.append("\n## Project Context")
        parts.append(f"Project: {project.name} ({project.id})")
        parts.append(f"Default branch: {project.default_branch}")
    if task.branch_name:
        parts.append(f"Working branch: {task.branch_name}")

    if task.affected_files:
        parts.append("\n## Affected Files")
        parts.extend(f"- {f}" for f in task.affected_files)

    if task.depends_on:
        parts.append("\n## Dependencies")
        for dep_id in task.depends_on:
            dep = get_task(db, dep_id)
            if dep:
                parts.append(f"- {dep.title} ({dep.id}): {dep.status}")

    if task.error_message and task.consecutive_failures:
        parts.append(f"\n## Previous Attempt Failed\n{_truncate(task.error_message, 500)}")

    if task.status == TaskStatus.IN_REVIEW:
        parts.append(
            "\n## Completion\n"
            "All subtasks of this task are done. Review their combined result "
            "against the description above, fix anything missing, and summarize "
            "the final state."
        )
    else:
        parts.append(
            "\n## Completion\n"
            "When you are finished, provide a brief summary of what was accomplished, "
            "any files changed, and any issues encountered. "
            "If you created commits, list them."
        )

    return "\n".join(parts)
