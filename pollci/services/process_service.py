import logging
import os
import subprocess
from typing import Dict, List, NamedTuple, Optional, Union

logger = logging.getLogger(__name__)


class CommandResult(NamedTuple):
    exit_code: int
    output: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class ProcessService:
    """Runs external commands to completion and captures their combined output."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    def run(
        self,
        command: Union[str, List[str]],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """
        A list is executed directly; a string goes through the shell, which
        build commands such as "(bundle check || bundle install) && rake" need.
        """
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        try:
            res = subprocess.run(
                command,
                cwd=cwd,
                env=full_env,
                shell=isinstance(command, str),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout,
            )
            return CommandResult(res.returncode, res.stdout or "")
        except subprocess.TimeoutExpired as e:
            logger.error(f"Command timed out after {self.timeout}s: {command}")
            partial = e.output.decode("utf-8", "replace") if isinstance(e.output, bytes) else (e.output or "")
            return CommandResult(-1, f"{partial}\nTimed out after {self.timeout} seconds\n")
        except OSError as e:
            logger.error(f"Could not start command {command}: {e}")
            return CommandResult(-1, f"{e}\n")

    def run_all(self, commands: List[List[str]], cwd: Optional[str] = None) -> CommandResult:
        """Runs commands in order, stopping at the first failure like a && chain."""
        output = ""
        for command in commands:
            res = self.run(command, cwd=cwd)
            output += res.output
            if not res.success:
                return CommandResult(res.exit_code, output)
        return CommandResult(0, output)
