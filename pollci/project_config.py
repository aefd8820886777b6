import json
import logging
import os
import platform
from typing import Dict, List, Optional

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "pollci.json"
DEFAULT_FREQUENCY = 20
DEFAULT_TASK = "default"


class ProjectConfig:
    """Per-project build settings, stored as JSON on the project row."""

    KEYS = ("frequency", "toolchain_version", "task", "environment_variables", "after_build")

    def __init__(
        self,
        frequency: int = DEFAULT_FREQUENCY,
        toolchain_version: Optional[str] = None,
        task: str = DEFAULT_TASK,
        environment_variables: Optional[Dict[str, str]] = None,
        after_build: Optional[List[str]] = None,
    ):
        self.frequency = frequency
        # Resolved once here and persisted, never re-read from the running interpreter
        self.toolchain_version = toolchain_version or platform.python_version()
        self.task = task
        self.environment_variables = dict(environment_variables or {})
        self.after_build = list(after_build or [])

    def environment_string(self) -> str:
        return " ".join(f"{key}={value}" for key, value in self.environment_variables.items())

    def environment(self) -> Dict[str, str]:
        env = {key: str(value) for key, value in self.environment_variables.items()}
        env["TOOLCHAIN_VERSION"] = self.toolchain_version
        return env

    def to_dict(self) -> dict:
        return {
            "frequency": self.frequency,
            "toolchain_version": self.toolchain_version,
            "task": self.task,
            "environment_variables": dict(self.environment_variables),
            "after_build": list(self.after_build),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ProjectConfig":
        config = cls()
        if data:
            config.update(data)
        return config

    def update(self, data: dict):
        for key, value in data.items():
            if key not in self.KEYS:
                logger.warning(f"Ignoring unknown config key '{key}'")
                continue
            setattr(self, key, value)
        self.validate()

    def validate(self):
        if isinstance(self.frequency, bool) or not isinstance(self.frequency, int) or self.frequency <= 0:
            raise ConfigurationError(f"frequency must be a positive integer, got {self.frequency!r}")
        if not isinstance(self.environment_variables, dict):
            raise ConfigurationError("environment_variables must be a mapping")
        if not isinstance(self.after_build, list) or not all(isinstance(c, str) for c in self.after_build):
            raise ConfigurationError("after_build must be a list of commands")
        if not self.task:
            raise ConfigurationError("task must not be empty")

    def merge_file(self, code_path: str) -> bool:
        """
        Overlays settings committed to the repository as pollci.json.
        Returns True when a file was found.
        """
        path = os.path.join(code_path, CONFIG_FILE_NAME)
        if not os.path.exists(path):
            return False

        try:
            with open(path, "r") as f:
                data = json.load(f)
        except ValueError as e:
            raise ConfigurationError(f"Invalid {CONFIG_FILE_NAME}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"{CONFIG_FILE_NAME} must contain a JSON object")

        self.update(data)
        return True
