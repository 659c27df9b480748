class MoodTrackerError(Exception):
    """Base class for deployment and build tooling errors."""


class ConfigurationError(MoodTrackerError):
    """Raised for missing or invalid input before anything is provisioned."""


class PatchError(MoodTrackerError):
    """Raised when a build artifact cannot be read or written."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path
