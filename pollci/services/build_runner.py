import logging

from sqlalchemy.orm import Session

from ..models import Build, BuildStatus, utcnow
from .git_service import GitService
from .process_service import ProcessService

logger = logging.getLogger(__name__)


class BuildRunner:
    def __init__(self, db: Session, process: ProcessService):
        self.db = db
        self.process = process

    def run(self, build: Build) -> Build:
        """
        Runs a pending build to a terminal status, then its after_build hooks.
        Hooks never change the recorded status.
        """
        project = build.project
        config = project.config

        build.transition_to(BuildStatus.RUNNING)
        build.started_at = utcnow()
        build.toolchain_version = config.toolchain_version
        build.environment_string = config.environment_string()
        self.db.commit()

        self._record_changes(build)

        command = project.command()
        logger.info(f"Building {project.name} #{build.number}: {command}")
        res = self.process.run(command, cwd=project.code_path, env=config.environment())
        build.append_log(res.output)

        build.transition_to(BuildStatus.SUCCESS if res.success else BuildStatus.FAILED)
        build.finished_at = utcnow()
        self.db.commit()
        logger.info(f"Build {project.name} #{build.number} finished: {build.status}")

        self._run_hooks(build, config)
        return build

    def _record_changes(self, build: Build):
        project = build.project
        if not build.revision:
            return

        res = self.process.run(
            GitService.change_list(build.previous_build_revision, build.revision),
            cwd=project.code_path,
        )
        if res.success:
            changes = GitService.parse_change_list(res.output)
            build.change_list = "\n".join(f"{status}\t{path}" for status, path in changes)
        else:
            logger.warning(f"Could not compute change list for {project.name} #{build.number}")

        if build.previous_build_revision:
            res = self.process.run(
                GitService.authors([build.previous_build_revision, build.revision]),
                cwd=project.code_path,
            )
            if res.success:
                build.authors = GitService.parse_authors(res.output)

        self.db.commit()

    def _run_hooks(self, build: Build, config):
        project = build.project
        for hook in config.after_build:
            res = self.process.run(hook, cwd=project.code_path, env=config.environment())
            build.append_log(f"\n$ {hook}\n{res.output}")
            if not res.success:
                logger.warning(
                    f"after_build hook '{hook}' for {project.name} #{build.number} exited with {res.exit_code}"
                )
            self.db.commit()
