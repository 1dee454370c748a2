"""
Error taxonomy for Watch Together operations.
"""


class WatchTogetherError(Exception):
    """Base class for all room errors."""
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or ""


class NotFoundError(WatchTogetherError):
    """Room not found."""
    status_code = 404


class LoadError(WatchTogetherError):
    """Failed to load room data."""
    status_code = 503


class JoinError(WatchTogetherError):
    """Could not join the room."""
    status_code = 409


class SendError(WatchTogetherError):
    """Failed to send to the room."""
    status_code = 400


class PermissionDeniedError(WatchTogetherError):
    """Only the host can do that."""
    status_code = 403


class ControlsLockedError(PermissionDeniedError):
    """Playback controls are locked until the host starts the room."""


class InvalidTransitionError(WatchTogetherError):
    """The room has ended."""
    status_code = 409
