class PollCIError(Exception):
    """Base class for errors raised by pollci."""


class ConfigurationError(PollCIError):
    """A project or its configuration is invalid."""


class CheckoutError(PollCIError):
    """Cloning a project's repository failed."""

    def __init__(self, project_name: str, output: str):
        super().__init__(f"Checkout of {project_name} failed:\n{output}")
        self.project_name = project_name
        self.output = output


class NoBuildYet(PollCIError):
    """The project has no builds to report on."""


class InvalidTransition(PollCIError):
    """A build was moved to a status its current status cannot reach."""
