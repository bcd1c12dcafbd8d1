"""
Devbox Commander — Errors
═════════════════════════
Exception taxonomy shared by the orchestrator, store and HTTP layer.
"""


class DevboxError(Exception):
    """Base class for all engine errors."""
    status_code = 500


class ValidationError(DevboxError):
    """Bad input: name, repository URL, limits."""
    status_code = 400


class ConflictError(DevboxError):
    """Name already taken or creation still in progress."""
    status_code = 409


class NotFoundError(DevboxError):
    status_code = 404


class ContainerRuntimeError(DevboxError):
    """A call to the container runtime failed."""
    status_code = 502


class PartialSetupFailure(DevboxError):
    """A tooling command exited non-zero. Logged and skipped, never fatal."""
    def __init__(self, command: str, exit_code: int, output: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"'{command}' exited with {exit_code}")
