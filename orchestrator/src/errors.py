"""
Error taxonomy for pipeline runs, rollbacks and their collaborators.
"""

from typing import Optional

class OrchestratorError(Exception):
    """Base class for all orchestration errors."""
    pass

class LockBusy(OrchestratorError):
    """Raised when another deployment operation holds the deployment lock."""

    def __init__(self, holder_operation: str, holder_id: str, elapsed_seconds: int):
        self.holder_operation = holder_operation
        self.holder_id = holder_id
        self.elapsed_seconds = elapsed_seconds
        super().__init__(
            f"A {holder_operation} operation is already running "
            f"(#{holder_id}, started {elapsed_seconds}s ago). Please wait."
        )

class ValidationError(OrchestratorError):
    """Raised when input is rejected before any side effect."""
    pass

class InvalidImageFormat(ValidationError):
    """Raised when an image reference is not of the form name:tag."""

    def __init__(self, image: str):
        self.image = image
        super().__init__(f"Invalid image format: {image!r}")

class StepFailure(OrchestratorError):
    """Raised when a pipeline step fails."""
    pass

class HealthCheckExhausted(StepFailure):
    """Raised when the bounded health check loop runs out of attempts."""

    def __init__(self, message: str, attempts: int, logs: Optional[str] = None):
        self.attempts = attempts
        self.logs = logs
        super().__init__(message)

class RemoteConnectionFailure(OrchestratorError):
    """Raised when the remote command channel cannot be established."""
    pass

class RemoteCommandFailure(StepFailure):
    """Raised when a remote command exits nonzero."""

    def __init__(self, command: str, exit_code: int, stderr: str):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Command failed with code {exit_code}: {stderr.strip()}")

class PipelineCancelled(OrchestratorError):
    """Raised at a step boundary when a cancel was requested."""
    pass

class PipelineTimeout(PipelineCancelled):
    """Raised at a step boundary once the run deadline has passed."""
    pass

class CollaboratorUnavailable(OrchestratorError):
    """Raised when the analysis or scan service cannot be reached."""
    pass

class NoRollbackTarget(OrchestratorError):
    """Raised when no previous deployment qualifies as a rollback target."""
    pass

class CommitNotFound(OrchestratorError):
    """Raised when the commit API has no commit for a repo/branch."""
    pass
