# errors.py
from __future__ import annotations

from typing import Optional, Sequence


class RunwayError(Exception):
    """Base class for every error raised by runwayci."""


# ----------------------------------------------------------------------
# Definition errors (fatal, block Run creation)
# ----------------------------------------------------------------------

class ConfigError(RunwayError):
    """Malformed pipeline definition."""


class CyclicDependencyError(ConfigError):
    """The `needs` graph contains a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Cyclic job dependency: {' -> '.join(self.cycle)}")


# ----------------------------------------------------------------------
# Secrets
# ----------------------------------------------------------------------

class SecretNotFoundError(RunwayError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Secret not found: {name}")


# ----------------------------------------------------------------------
# Step execution
# ----------------------------------------------------------------------

class StepError(RunwayError):
    """A step could not complete. Carries whatever output was captured."""

    def __init__(self, message: str, *, stdout: str = "", stderr: str = "", exit_code: Optional[int] = None):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code


class StepTimeoutError(StepError):
    def __init__(self, timeout: float, **kwargs):
        self.timeout = timeout
        super().__init__(f"Step timed out after {timeout:g}s", **kwargs)


class StepCancelledError(StepError):
    def __init__(self, **kwargs):
        super().__init__("Step cancelled", **kwargs)


# ----------------------------------------------------------------------
# External collaborators (surfaced as step failures)
# ----------------------------------------------------------------------

class CollaboratorError(RunwayError):
    """An external system (git, analysis server, container runtime) failed."""


class CheckoutError(CollaboratorError):
    pass


class ScanServiceError(CollaboratorError):
    pass


class ContainerRuntimeError(CollaboratorError):
    pass
