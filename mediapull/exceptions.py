"""
Defines custom exceptions used throughout the application.

These exceptions allow callers to tell configuration problems, transient
launch failures and unknown jobs apart without parsing messages.
"""


class MediaPullError(Exception):
    """Base class for all application errors."""
    pass


class JobNotFoundError(MediaPullError, LookupError):
    """Raised when a job id is unknown to both the registry and the store."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidJobError(MediaPullError, ValueError):
    """Raised when a batch cannot be created from the given input."""
    pass


class EngineNotFoundError(MediaPullError):
    """The engine binary could not be resolved. Never retried."""
    pass


class EnginePreparationError(MediaPullError):
    """The engine binary did not become ready before the timeout."""
    pass


class EngineLaunchError(MediaPullError):
    """The engine could not be spawned after all retry attempts."""
    pass


class EngineCommandError(MediaPullError):
    """A one-shot engine command (info, version, update) failed."""
    pass


class FileMoveError(MediaPullError):
    """A finished file could not be moved out of the staging directory."""
    pass
