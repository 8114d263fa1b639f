"""Exception types shared across restoresync."""


class RestoreSyncError(Exception):
    """Base class for restoresync failures."""


class ManifestUnreadable(RestoreSyncError):
    """A manifest could not be decoded at all; a rebuild is required."""


class CopyFailed(RestoreSyncError):
    """A copy could not be completed without losing source bytes."""

    def __init__(self, path, lost_bytes: int = 0, message: str = None):
        self.path = path
        self.lost_bytes = lost_bytes
        super().__init__(message or f"cannot copy {path}: {lost_bytes} bytes unrecoverable")


class BlockWriteError(RestoreSyncError):
    """A block write failed during repair or copy."""

    def __init__(self, path, position: int, cause: Exception = None):
        self.path = path
        self.position = position
        self.cause = cause
        super().__init__(f"write failed at offset {position} in {path}: {cause}")


class OperationCancelled(RestoreSyncError):
    """Raised once a cancellation token is observed."""
