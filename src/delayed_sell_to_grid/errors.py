"""
Exception hierarchy for the sell-to-grid controller.
"""


class ControllerError(Exception):
    """Base exception for all controller errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(ControllerError):
    """Invalid or unreadable configuration"""

    def __init__(self, message: str):
        super().__init__(f"Config Error: {message}", recoverable=False)


class CollaboratorUnavailableError(ControllerError):
    """The storage system or the meter could not be read or commanded."""

    def __init__(self, message: str, collaborator: str, device_id: str | None = None):
        self.collaborator = collaborator
        self.device_id = device_id
        label = f"{collaborator} {device_id}" if device_id else collaborator
        super().__init__(f"{label} unavailable: {message}", recoverable=True)
