import os
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Text, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base
from .exceptions import InvalidTransition, NoBuildYet
from .project_config import ProjectConfig
from .settings import PROJECTS_DIR

DEPENDENCY_MANIFEST = "Gemfile"
DEPENDENCY_PREFIX = "(bundle check || bundle install) && "
DEFAULT_TASK_RUNNER = "rake"


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BuildStatus:
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    TERMINAL = (SUCCESS, FAILED)
    TRANSITIONS = {
        PENDING: (RUNNING,),
        RUNNING: (SUCCESS, FAILED),
        SUCCESS: (),
        FAILED: (),
    }


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, index=True, nullable=False)
    url = Column(String, nullable=False)
    branch = Column(String, nullable=False, default="master")
    scm = Column(String, nullable=False, default="git")
    custom_command = Column(String, nullable=True)
    build_requested = Column(Boolean, nullable=False, default=False)
    # Bumped by every force request so a build only clears the request it consumed
    build_request_seq = Column(Integer, nullable=False, default=0)
    checked_out = Column(Boolean, nullable=False, default=False)
    next_build_at = Column(DateTime(timezone=True), nullable=True)
    config_data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    builds = relationship(
        "Build",
        back_populates="project",
        order_by="Build.number",
        cascade="all, delete-orphan",
    )

    @property
    def path(self) -> str:
        return os.path.join(PROJECTS_DIR, self.name.replace(" ", "_"))

    @property
    def code_path(self) -> str:
        return os.path.join(self.path, "code")

    @property
    def config(self) -> ProjectConfig:
        return ProjectConfig.from_dict(self.config_data)

    @config.setter
    def config(self, value: ProjectConfig):
        self.config_data = value.to_dict()

    def force_build(self):
        self.build_requested = True
        self.build_request_seq = (self.build_request_seq or 0) + 1

    def command(self) -> str:
        if self.custom_command:
            return self.custom_command

        task = self.config.task
        command = DEFAULT_TASK_RUNNER if task == "default" else f"{DEFAULT_TASK_RUNNER} {task}"
        # Checked on every call, a manifest can appear or vanish between builds
        if os.path.exists(os.path.join(self.code_path, DEPENDENCY_MANIFEST)):
            return DEPENDENCY_PREFIX + command
        return command

    @property
    def latest_build(self):
        return self.builds[-1] if self.builds else None

    def _require_latest_build(self):
        build = self.latest_build
        if build is None:
            raise NoBuildYet(f"{self.name} has not been built yet")
        return build

    @property
    def latest_build_number(self):
        return self._require_latest_build().number

    @property
    def latest_build_status(self):
        return self._require_latest_build().status

    @property
    def latest_build_log(self):
        return self._require_latest_build().log

    @property
    def latest_build_timestamp(self):
        return self._require_latest_build().timestamp

    def latest_build_summary(self) -> dict:
        """Display values for the latest build, blank when nothing has been built."""
        try:
            return {
                "number": self.latest_build_number,
                "status": self.latest_build_status,
                "log": self.latest_build_log or "",
                "timestamp": self.latest_build_timestamp,
            }
        except NoBuildYet:
            return {"number": None, "status": "not built", "log": "", "timestamp": None}


class Build(Base):
    __tablename__ = "builds"
    __table_args__ = (UniqueConstraint("project_id", "number", name="uq_builds_project_number"),)

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    number = Column(Integer, nullable=False)
    revision = Column(String, nullable=True)
    previous_build_revision = Column(String, nullable=False, default="")
    change_list = Column(Text, nullable=True)
    authors = Column(String, nullable=True)
    status = Column(String, nullable=False, default=BuildStatus.PENDING)
    toolchain_version = Column(String, nullable=True)
    environment_string = Column(String, nullable=True)
    log = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    project = relationship("Project", back_populates="builds")

    @property
    def timestamp(self):
        return self.finished_at or self.updated_at or self.created_at

    @property
    def finished(self) -> bool:
        return self.status in BuildStatus.TERMINAL

    def transition_to(self, status: str):
        current = self.status or BuildStatus.PENDING
        if status not in BuildStatus.TRANSITIONS.get(current, ()):
            raise InvalidTransition(f"Build #{self.number} cannot go from {current} to {status}")
        self.status = status

    def append_log(self, text: str):
        if not text:
            return
        self.log = (self.log or "") + text
