import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import or_

from .database import SessionLocal
from .models import Project, utcnow
from .services.lock_registry import LockRegistry, project_locks
from .services.process_service import ProcessService
from .services.project_service import ProjectService
from .settings import BUILD_TIMEOUT, WORKERS

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Polling driver. Every tick it hands each due project to a worker pool;
    builds of different projects run in parallel, builds of one project never do.
    """

    def __init__(
        self,
        session_factory=SessionLocal,
        process: Optional[ProcessService] = None,
        locks: Optional[LockRegistry] = None,
        workers: int = WORKERS,
    ):
        self.session_factory = session_factory
        self.process = process or ProcessService(timeout=BUILD_TIMEOUT)
        self.locks = locks or project_locks
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pollci-build")
        self._in_flight = set()
        self._guard = threading.Lock()

    def due_projects(self, db, now) -> List[Project]:
        return (
            db.query(Project)
            .filter(Project.checked_out.is_(True))
            .filter(or_(Project.next_build_at.is_(None), Project.next_build_at <= now))
            .order_by(Project.id)
            .all()
        )

    def poll(self, block: bool = False):
        """Schedules a build check for every due project and returns the futures."""
        due = []
        db = self.session_factory()
        try:
            now = utcnow()
            projects = self.due_projects(db, now)
            logger.info(f"Poll tick: {len(projects)} project(s) due")

            for project in projects:
                with self._guard:
                    if project.id in self._in_flight or self.locks.is_locked(project.id):
                        # build_requested stays set, a later tick picks it up
                        logger.info(f"Build for {project.name} still running, skipping this tick")
                        continue
                    self._in_flight.add(project.id)

                project.next_build_at = now + timedelta(seconds=project.config.frequency)
                due.append(project.id)

            db.commit()
        finally:
            db.close()

        futures = [self.executor.submit(self._build_project, project_id) for project_id in due]

        if block:
            wait(futures)
        return futures

    def _build_project(self, project_id: int):
        db = self.session_factory()
        try:
            project = db.get(Project, project_id)
            if project is None:
                return None
            build = ProjectService(db, self.process, self.locks).run_build(project)
            return build.id if build else None
        except Exception as e:
            # One broken project must not stop the others from being polled
            logger.exception(f"Unexpected error building project {project_id}: {e}")
            db.rollback()
            return None
        finally:
            db.close()
            with self._guard:
                self._in_flight.discard(project_id)

    def force_build(self, project_id: int) -> bool:
        db = self.session_factory()
        try:
            project = db.get(Project, project_id)
            if project is None:
                return False
            ProjectService(db, self.process, self.locks).force_build(project)
            project.next_build_at = None
            db.commit()
            logger.info(f"Build requested for {project.name}")
            return True
        finally:
            db.close()

    def shutdown(self, wait_for_builds: bool = True):
        self.executor.shutdown(wait=wait_for_builds)
