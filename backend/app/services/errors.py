"""Error kinds raised by the backup and asset services.

Per-item failures (one row, one file, one table) are not exceptions: they are
logged and returned as warning strings on the operation result. These classes
are for failures that abort a whole operation.
"""


class BackupError(Exception):
    """Base class for backup/restore/asset errors."""
    pass


class NotFoundError(BackupError):
    """An archive, asset file or table does not exist."""
    pass


class ArchiveNotFoundError(NotFoundError):
    pass


class AssetNotFoundError(NotFoundError):
    pass


class FormatUnrecognizedError(BackupError):
    """The byte stream matches none of the known archive formats."""
    pass


class BackupIOError(BackupError):
    """Disk or permission failure during setup of an operation."""
    pass


class SizeLimitExceededError(BackupError):
    """An uploaded archive or asset is larger than the configured cap."""

    def __init__(self, limit: int):
        super().__init__(f"Upload exceeds the {limit} byte limit")
        self.limit = limit


class RestoreFailedError(BackupError):
    """A strict restore hit a row failure; the database was rolled back."""
    pass
