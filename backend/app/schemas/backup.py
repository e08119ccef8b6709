"""Backup archive document and backup API schemas.

The archive document is the version "2.0" JSON file written by the snapshot
encoder:

    {
      "metadata": {version, timestamp, appName, description, dbSize, filesSize, totalSize},
      "database": [{"tableName": ..., "data": [{col: value, ...}, ...]}, ...],
      "uploads":  [{"relativePath": ..., "content": ..., "encoding": ..., "size": ...}, ...],
      "settings": [{"key": ..., "value": ...}, ...],
      "timestamp": ..., "totalFiles": ..., "version": "2.0"
    }
"""
import base64
import binascii
from pathlib import PurePosixPath
from typing import Any, Literal, Optional

from pydantic import Field, field_validator, model_validator

from app.schemas.base import CamelModel, CamelORMModel

ARCHIVE_VERSION = "2.0"

# Placeholder contents for files whose bytes are not in the archive
LARGE_FILE_MARKER = "[File too large - path only]"
LARGE_FILE_MARKER_OLD = "[Large file - not included]"
BINARY_FILE_MARKER = "[Binary file]"
READ_ERROR_MARKER = "[Error reading file]"
PLACEHOLDER_MARKERS = frozenset({
    LARGE_FILE_MARKER, LARGE_FILE_MARKER_OLD, BINARY_FILE_MARKER, READ_ERROR_MARKER,
})

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp"})

Encoding = Literal["utf8", "base64", "omitted"]


class ArchiveMetadata(CamelModel):
    version: str
    timestamp: str
    app_name: str = "CricProAce"
    description: Optional[str] = None
    db_size: int = 0
    files_size: int = 0
    total_size: int = 0


class TableSnapshot(CamelModel):
    table_name: str
    data: list[dict[str, Any]] = Field(default_factory=list)
    # Set when the table could not be exported; such tables are never restored
    error: Optional[str] = None


class FileRecord(CamelModel):
    relative_path: str
    content: str = ""
    encoding: Encoding = "utf8"
    size: int = 0

    @model_validator(mode="before")
    @classmethod
    def _infer_encoding(cls, data: Any) -> Any:
        # Older archives leave out "encoding" on placeholder entries
        if isinstance(data, dict) and not data.get("encoding"):
            data = dict(data)
            data["encoding"] = "omitted" if data.get("content") in PLACEHOLDER_MARKERS else "utf8"
        return data

    @classmethod
    def from_bytes(cls, relative_path: str, data: bytes, *, keep_binary: bool = False) -> "FileRecord":
        """Embed file bytes: images as base64, text as utf8.

        Non-text, non-image files are omitted with a marker unless
        `keep_binary` is set, in which case they are embedded as base64.
        """
        size = len(data)
        if PurePosixPath(relative_path).suffix.lower() in IMAGE_EXTENSIONS:
            return cls(relative_path=relative_path, encoding="base64",
                       content=base64.b64encode(data).decode("ascii"), size=size)
        try:
            return cls(relative_path=relative_path, encoding="utf8",
                       content=data.decode("utf-8"), size=size)
        except UnicodeDecodeError:
            if keep_binary:
                return cls(relative_path=relative_path, encoding="base64",
                           content=base64.b64encode(data).decode("ascii"), size=size)
            return cls.omitted(relative_path, size, BINARY_FILE_MARKER)

    @classmethod
    def omitted(cls, relative_path: str, size: int, marker: str = LARGE_FILE_MARKER) -> "FileRecord":
        return cls(relative_path=relative_path, encoding="omitted", content=marker, size=size)

    @property
    def is_recoverable(self) -> bool:
        return self.encoding != "omitted" and self.content not in PLACEHOLDER_MARKERS

    def payload(self) -> Optional[bytes]:
        """Decoded file bytes, or None when the archive does not hold them."""
        if not self.is_recoverable:
            return None
        if self.encoding == "base64":
            try:
                return base64.b64decode(self.content, validate=True)
            except (binascii.Error, ValueError):
                return None
        return self.content.encode("utf-8")


class SettingRecord(CamelModel):
    key: str
    value: Optional[str] = None

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        return str(v)


class ArchiveDocument(CamelModel):
    metadata: ArchiveMetadata
    database: list[TableSnapshot] = Field(default_factory=list)
    uploads: list[FileRecord] = Field(default_factory=list)
    settings: list[SettingRecord] = Field(default_factory=list)
    timestamp: Optional[str] = None
    total_files: int = 0
    version: str = ARCHIVE_VERSION


# ── API schemas ─────────────────────────────────────────────────


class BackupCreate(CamelModel):
    description: Optional[str] = None


class BackupCreateResponse(CamelModel):
    filename: str
    metadata: ArchiveMetadata
    warnings: list[str] = Field(default_factory=list)


class BackupResponse(CamelORMModel):
    filename: str
    metadata: ArchiveMetadata
    size_bytes: int


class RestoreResponse(CamelORMModel):
    message: str = "Backup restored successfully"
    format: str
    tables_restored: int = 0
    rows_restored: int = 0
    rows_skipped: int = 0
    files_restored: int = 0
    files_skipped: int = 0
    settings_restored: int = 0
    warnings: list[str] = Field(default_factory=list)


class BackupPrune(CamelModel):
    keep: int = Field(default=10, ge=0)


class BackupPruneResponse(CamelModel):
    message: str = "Backup cleanup completed"
    deleted_count: int


class MessageResponse(CamelModel):
    message: str
