import logging
import os
import shutil
from typing import Optional

from sqlalchemy.orm import Session

from ..exceptions import CheckoutError, ConfigurationError
from ..models import Build, BuildStatus, Project, utcnow
from ..project_config import CONFIG_FILE_NAME, ProjectConfig
from .build_runner import BuildRunner
from .git_service import GitService
from .lock_registry import LockRegistry, project_locks
from .process_service import ProcessService

logger = logging.getLogger(__name__)


class ProjectService:
    def __init__(self, db: Session, process: Optional[ProcessService] = None, locks: Optional[LockRegistry] = None):
        self.db = db
        self.process = process or ProcessService()
        self.locks = locks or project_locks
        self.runner = BuildRunner(db, self.process)

    # --- Lifecycle ---

    def add_project(
        self,
        name: str,
        url: str,
        branch: str = "master",
        custom_command: Optional[str] = None,
        config: Optional[ProjectConfig] = None,
    ) -> Project:
        """Validates, stores and checks out a new project. Nothing is kept if checkout fails."""
        if not name or not name.strip():
            raise ConfigurationError("Project name is required")
        if not url or not url.strip():
            raise ConfigurationError("Project url is required")
        if self.db.query(Project).filter(Project.name == name).first():
            raise ConfigurationError(f"Project {name} already exists")

        config = config or ProjectConfig()
        config.validate()

        project = Project(
            name=name,
            url=url,
            branch=branch or "master",
            custom_command=custom_command or None,
            build_requested=False,
        )
        project.config = config
        self.db.add(project)
        self.db.flush()

        # Held until the clone finishes so no build can start on a half-cloned tree
        with self.locks.hold(project.id):
            self.db.commit()
            try:
                self.checkout(project)
            except CheckoutError:
                path = project.path
                self.db.delete(project)
                self.db.commit()
                if os.path.exists(path):
                    shutil.rmtree(path)
                raise

        logger.info(f"Added project {name} from {url} ({project.branch})")
        return project

    def checkout(self, project: Project):
        """Clones the repository. The project is only polled once this succeeds."""
        project.checked_out = False
        self.db.commit()
        if os.path.exists(project.code_path):
            shutil.rmtree(project.code_path)
        os.makedirs(project.path, exist_ok=True)

        logger.info(f"Cloning {project.url} into {project.code_path}")
        res = self.process.run(GitService.checkout(project.url, project.code_path, project.branch))
        if not res.success:
            logger.error(f"Checkout of {project.name} failed: {res.output}")
            raise CheckoutError(project.name, res.output)

        project.checked_out = True
        self.db.commit()

    def remove_project(self, project: Project):
        """Deletes the project, its builds and its working copy."""
        project_id = project.id
        name = project.name
        path = project.path
        with self.locks.hold(project_id):
            self.db.delete(project)
            self.db.commit()
            if os.path.exists(path):
                shutil.rmtree(path)
        self.locks.discard(project_id)
        logger.info(f"Removed project {name}")

    # --- Decisions ---

    def build_required(self, project: Project, upstream_revision: Optional[str] = None) -> bool:
        latest = project.latest_build
        if latest is None:
            return True
        if project.build_requested:
            return True
        return bool(upstream_revision) and upstream_revision != latest.revision

    def force_build(self, project: Project):
        # Incremented in SQL so requests from other sessions are never lost
        self.db.query(Project).filter(Project.id == project.id).update(
            {
                Project.build_requested: True,
                Project.build_request_seq: Project.build_request_seq + 1,
            },
            synchronize_session=False,
        )
        self.db.commit()

    def latest_build(self, project: Project) -> Optional[Build]:
        return (
            self.db.query(Build)
            .filter(Build.project_id == project.id)
            .order_by(Build.number.desc())
            .first()
        )

    # --- Pipeline ---

    def run_build(self, project: Project) -> Optional[Build]:
        """
        Updates the working copy and builds when there is something new or
        a build was requested. Returns the build, or None when nothing ran.
        """
        with self.locks.hold(project.id):
            self.db.refresh(project)
            if not project.checked_out:
                logger.warning(f"{project.name} has no working copy yet, not building")
                return None

            requested = project.build_requested
            request_seq = project.build_request_seq
            try:
                return self._run_build(project)
            finally:
                if requested:
                    self._clear_request(project, request_seq)

    def _clear_request(self, project: Project, request_seq: int):
        """Clears the request this build consumed; a newer one stays queued."""
        cleared = (
            self.db.query(Project)
            .filter(Project.id == project.id, Project.build_request_seq == request_seq)
            .update({Project.build_requested: False}, synchronize_session=False)
        )
        self.db.commit()
        if not cleared:
            logger.info(f"Another build of {project.name} was requested meanwhile, keeping it queued")

    def _run_build(self, project: Project) -> Optional[Build]:
        before = self._current_revision(project)
        update = self.process.run_all(GitService.update(project.branch), cwd=project.code_path)
        if not update.success:
            logger.error(f"Update of {project.name} failed")
            return self._record_failure(project, before, f"SCM update failed:\n{update.output}")

        after = self._current_revision(project)
        has_changes = before != after

        if not has_changes and not self.build_required(project, after):
            logger.info(f"No changes for {project.name}")
            return None

        try:
            self._load_repository_config(project)
        except ConfigurationError as e:
            return self._record_failure(project, after, f"{e}\n")

        build = self._create_build(project, after)
        self.runner.run(build)
        return build

    def _current_revision(self, project: Project) -> str:
        res = self.process.run(GitService.revision(), cwd=project.code_path)
        return res.output.strip() if res.success else ""

    def _load_repository_config(self, project: Project):
        if not os.path.exists(os.path.join(project.code_path, CONFIG_FILE_NAME)):
            return
        self.process.run(GitService.version(CONFIG_FILE_NAME), cwd=project.code_path)
        config = project.config
        if config.merge_file(project.code_path):
            project.config = config
            self.db.commit()

    def _create_build(self, project: Project, revision: str) -> Build:
        latest = self.latest_build(project)
        build = Build(
            project=project,
            number=(latest.number if latest else 0) + 1,
            previous_build_revision=(latest.revision or "") if latest else "",
            revision=revision or None,
            status=BuildStatus.PENDING,
        )
        self.db.add(build)
        self.db.commit()
        logger.info(f"Created build {project.name} #{build.number}")
        return build

    def _record_failure(self, project: Project, revision: str, log: str) -> Optional[Build]:
        latest = self.latest_build(project)
        if (
            latest is not None
            and not project.build_requested
            and latest.status == BuildStatus.FAILED
            and latest.log == log
        ):
            logger.info(f"Skipping duplicate failure for {project.name}")
            return None

        build = self._create_build(project, revision)
        build.log = log
        build.transition_to(BuildStatus.RUNNING)
        build.started_at = utcnow()
        build.transition_to(BuildStatus.FAILED)
        build.finished_at = build.started_at
        self.db.commit()
        return build
