"""Background execution: one cycle loop per agent plus periodic maintenance."""

import logging
import sqlite3
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from crew_orchestrator.core import agents as agent_store
from crew_orchestrator.core import tasks as task_store
from crew_orchestrator.core.orchestrator import Orchestrator
from crew_orchestrator.db.engine import init_db, utcnow
from crew_orchestrator.db.models import AgentStatus, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_STUCK_TASK_HOURS = 2.0


def detect_stuck_tasks(
    db: sqlite3.Connection,
    hours: float = DEFAULT_STUCK_TASK_HOURS,
    now: datetime | None = None,
) -> list[str]:
    """Block tasks that have been in progress for too long. Returns their IDs."""
    cutoff = (now or utcnow()) - timedelta(hours=hours)
    stuck = [
        t for t in task_store.list_tasks(db, status=TaskStatus.IN_PROGRESS)
        if t.started_at and t.started_at < cutoff
    ]
    for task in stuck:
        task_store.update_task(
            db,
            task.id,
            status=TaskStatus.BLOCKED,
            error_message=f"Task stuck in progress for more than {hours:g} hours",
        )
        logger.warning("Task %s stuck since %s, marked blocked", task.id, task.started_at.isoformat())
    return [t.id for t in stuck]


def progress_summary(db: sqlite3.Connection) -> dict:
    """Task and agent counts by status."""
    rows = db.execute("SELECT status, COUNT(*) AS n FROM tasks GROUP BY status").fetchall()
    return {
        "tasks": {r["status"]: r["n"] for r in rows},
        "agents": agent_store.count_agents_by_status(db),
    }


def run_maintenance(db: sqlite3.Connection, stuck_task_hours: float = DEFAULT_STUCK_TASK_HOURS) -> dict:
    """One sweep: block stuck tasks, reap finished sub-agents, log progress."""
    stuck = detect_stuck_tasks(db, stuck_task_hours)
    reaped = agent_store.reap_temporary_agents(db)
    summary = progress_summary(db)
    logger.info(
        "Progress: tasks %s, agents %s (stuck %d, reaped %d)",
        summary["tasks"], summary["agents"], len(stuck), len(reaped),
    )
    summary["stuck"] = stuck
    summary["reaped"] = reaped
    return summary


class CycleScheduler:
    """Runs orchestration cycles for every agent in background threads.

    A supervisor thread sweeps the database each interval and starts a
    worker for any agent without one, so temporary sub-agents created by
    delegation get picked up on the next sweep. Workers open their own
    SQLite connection and exit once their agent has been removed.
    """

    def __init__(
        self,
        db_path: Path,
        orchestrator_factory: Callable[[sqlite3.Connection], Orchestrator],
        cycle_interval: float = 10.0,
        stuck_task_hours: float = DEFAULT_STUCK_TASK_HOURS,
    ):
        self.db_path = db_path
        self.orchestrator_factory = orchestrator_factory
        self.cycle_interval = cycle_interval
        self.stuck_task_hours = stuck_task_hours
        self._stop_event = threading.Event()
        self._supervisor: threading.Thread | None = None
        self._workers: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return bool(self._supervisor and self._supervisor.is_alive())

    def start(self):
        """Start the supervisor thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._supervisor = threading.Thread(target=self._supervise, name="crew-scheduler", daemon=True)
        self._supervisor.start()
        logger.info("Scheduler started (interval %.1fs)", self.cycle_interval)

    def stop(self):
        """Signal every thread to stop and wait for them."""
        self._stop_event.set()
        if self._supervisor:
            self._supervisor.join(timeout=10)
        with self._lock:
            workers = list(self._workers.values())
        for worker in workers:
            worker.join(timeout=10)
        logger.info("Scheduler stopped")

    def wait(self):
        """Block until stop() is called."""
        while not self._stop_event.wait(1.0):
            pass

    def active_agents(self) -> list[str]:
        with self._lock:
            return sorted(aid for aid, t in self._workers.items() if t.is_alive())

    def _supervise(self):
        while not self._stop_event.is_set():
            try:
                self.sweep()
            except Exception:
                logger.exception("Error in scheduler sweep")
            self._stop_event.wait(self.cycle_interval)

    def sweep(self):
        """Run maintenance and make sure every agent has a worker."""
        db = init_db(self.db_path)
        try:
            run_maintenance(db, self.stuck_task_hours)
            agent_ids = [a.id for a in agent_store.list_agents(db)]
        finally:
            db.close()

        with self._lock:
            for agent_id in agent_ids:
                worker = self._workers.get(agent_id)
                if worker and worker.is_alive():
                    continue
                worker = threading.Thread(
                    target=self._work, args=(agent_id,), name=f"crew-agent-{agent_id}", daemon=True
                )
                self._workers[agent_id] = worker
                worker.start()
                logger.info("Started cycle loop for agent %s", agent_id)

    def _work(self, agent_id: str):
        db = init_db(self.db_path)
        try:
            orchestrator = self.orchestrator_factory(db)
            while not self._stop_event.is_set():
                agent = agent_store.get_agent(db, agent_id)
                if not agent:
                    logger.info("Agent %s removed, stopping its cycle loop", agent_id)
                    return
                if agent.status != AgentStatus.PAUSED:
                    try:
                        result = orchestrator.run_cycle(agent_id)
                        if result.task_id:
                            logger.info(
                                "Agent %s cycle on task %s: success=%s", agent_id, result.task_id, result.success
                            )
                    except Exception:
                        logger.exception("Error in cycle loop for agent %s", agent_id)
                self._stop_event.wait(self.cycle_interval)
        finally:
            db.close()
