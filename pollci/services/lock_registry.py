import logging
import threading
from contextlib import contextmanager
from typing import Dict


class LockRegistry:
    """
    One lock per project so at most one build runs for a project at a time.
    Other projects are never blocked.
    """

    def __init__(self):
        self._locks: Dict[int, threading.Lock] = {}
        self._guard = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def lock_for(self, project_id: int) -> threading.Lock:
        with self._guard:
            if project_id not in self._locks:
                self._locks[project_id] = threading.Lock()
            return self._locks[project_id]

    def is_locked(self, project_id: int) -> bool:
        return self.lock_for(project_id).locked()

    @contextmanager
    def hold(self, project_id: int):
        """Waits for the project's lock, so overlapping callers queue up behind the running build."""
        lock = self.lock_for(project_id)
        if lock.locked():
            self.logger.info(f"Waiting for running build of project {project_id} to finish")
        with lock:
            yield

    def discard(self, project_id: int):
        with self._guard:
            self._locks.pop(project_id, None)


project_locks = LockRegistry()
