"""Archive format detection and normalization.

Backups written over the life of the site come in four shapes:

- current:      the version "2.0" JSON document (see app.schemas.backup)
- legacy JSON:  version "1.0" JSON listing the files of the backup work
                directory ({"files": [{"path", "content", "size"}, ...]})
- legacy tar:   .tar / .tar.gz of the work directory
- legacy zip:   .zip of the work directory

The work directory holds metadata.json, database.json or database.sql,
settings.json and an uploads/ tree.

Detection dispatches on magic bytes first and only falls back to trial
parsing for files that match no signature.
"""
import asyncio
import json
import logging
import tarfile
import zipfile
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any

import aiofiles
from pydantic import ValidationError

from app.config import settings
from app.schemas.backup import (
    ARCHIVE_VERSION,
    PLACEHOLDER_MARKERS,
    ArchiveDocument,
    ArchiveMetadata,
    FileRecord,
    SettingRecord,
    TableSnapshot,
)
from app.services.backup.scratch import scratch_directory
from app.services.backup.sql_dump import SqlDumpError, parse_inserts
from app.services.errors import FormatUnrecognizedError

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
ZIP_MAGICS = (b"PK\x03\x04", b"PK\x05\x06")
TAR_MAGIC_OFFSET = 257
JSON_BOMS = (b"\xef\xbb\xbf",)
SNIFF_BYTES = 512
METADATA_HEAD_BYTES = 64 * 1024

METADATA_FILE = "metadata.json"
DATABASE_JSON_FILE = "database.json"
DATABASE_SQL_FILE = "database.sql"
SETTINGS_FILE = "settings.json"
UPLOADS_DIR = "uploads"


class FormatKind(str, Enum):
    CURRENT = "current"
    LEGACY_JSON = "legacy-json"
    LEGACY_TAR = "legacy-tar"
    LEGACY_ZIP = "legacy-zip"
    UNKNOWN = "unknown"

    @property
    def is_legacy(self) -> bool:
        return self in (FormatKind.LEGACY_JSON, FormatKind.LEGACY_TAR, FormatKind.LEGACY_ZIP)


@dataclass
class SnapshotContents:
    """Format-independent view of an archive."""
    kind: FormatKind
    metadata: ArchiveMetadata
    tables: list[TableSnapshot] = field(default_factory=list)
    files: list[FileRecord] = field(default_factory=list)
    settings: list[SettingRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    # Tree archives carry the whole uploads directory, which replaces the live one
    replaces_uploads: bool = False


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def placeholder_metadata(size: int, description: str = "Legacy backup (no metadata)") -> ArchiveMetadata:
    return ArchiveMetadata(
        version="unknown",
        timestamp=_now_iso(),
        app_name=settings.APP_NAME,
        description=description,
        total_size=size,
    )


# ── Identification ──────────────────────────────────────────────


def _sniff(head: bytes) -> FormatKind | None:
    """Classify by signature. None means JSON (needs a look at its keys)."""
    if head.startswith(GZIP_MAGIC):
        return FormatKind.LEGACY_TAR
    if head.startswith(ZIP_MAGICS):
        return FormatKind.LEGACY_ZIP
    if head[TAR_MAGIC_OFFSET:TAR_MAGIC_OFFSET + 5] == b"ustar":
        return FormatKind.LEGACY_TAR
    for bom in JSON_BOMS:
        if head.startswith(bom):
            head = head[len(bom):]
    if head.lstrip().startswith(b"{"):
        return None
    return FormatKind.UNKNOWN


def _classify_document(doc: Any) -> FormatKind:
    if not isinstance(doc, dict):
        return FormatKind.UNKNOWN
    if "database" in doc or "uploads" in doc or (
        "metadata" in doc and str(doc.get("version")) == ARCHIVE_VERSION
    ):
        return FormatKind.CURRENT
    if isinstance(doc.get("files"), list):
        return FormatKind.LEGACY_JSON
    if "metadata" in doc:
        return FormatKind.CURRENT
    return FormatKind.UNKNOWN


def _load_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8-sig") as f:
        return json.load(f)


def _trial_identify(path: Path) -> FormatKind:
    """Fallback for files with no recognizable signature."""
    if tarfile.is_tarfile(path):
        return FormatKind.LEGACY_TAR
    if zipfile.is_zipfile(path):
        return FormatKind.LEGACY_ZIP
    try:
        return _classify_document(_load_json(path))
    except (ValueError, UnicodeDecodeError):
        return FormatKind.UNKNOWN


async def _identify(path: Path) -> tuple[FormatKind, Any]:
    """Format kind, plus the parsed document for JSON formats."""
    async with aiofiles.open(path, "rb") as f:
        head = await f.read(SNIFF_BYTES)

    kind = _sniff(head)
    if kind is None:
        try:
            doc = await asyncio.to_thread(_load_json, path)
        except (ValueError, UnicodeDecodeError):
            return FormatKind.UNKNOWN, None
        return _classify_document(doc), doc
    if kind is FormatKind.UNKNOWN:
        kind = await asyncio.to_thread(_trial_identify, path)
    return kind, None


async def identify(path: str | Path) -> FormatKind:
    kind, _ = await _identify(Path(path))
    return kind


# ── Normalization ───────────────────────────────────────────────


async def normalize(
    path: str | Path,
    kind: FormatKind | None = None,
    *,
    backup_dir: str | Path | None = None,
) -> SnapshotContents:
    """Read any known archive format into a SnapshotContents.

    `kind` skips detection when the caller already ran identify(). Tree
    archives are extracted into a scratch directory under <backup_dir>/temp
    which is removed whether or not reading succeeds.
    """
    path = Path(path)
    backup_dir = Path(backup_dir or settings.BACKUP_PATH)
    doc = None
    if kind is None:
        kind, doc = await _identify(path)
        logger.info("Archive %s identified as %s", path.name, kind.value)

    if kind is FormatKind.CURRENT:
        if doc is None:
            doc = await asyncio.to_thread(_load_json, path)
        return _from_current(doc)
    if kind is FormatKind.LEGACY_JSON:
        if doc is None:
            doc = await asyncio.to_thread(_load_json, path)
        return _from_legacy_json(doc, path.stat().st_size)
    if kind in (FormatKind.LEGACY_TAR, FormatKind.LEGACY_ZIP):
        return await asyncio.to_thread(_from_tree_archive, path, kind, backup_dir)
    raise FormatUnrecognizedError(f"Unrecognized backup format: {path.name}")


def _from_current(doc: dict) -> SnapshotContents:
    try:
        archive = ArchiveDocument.model_validate(doc)
    except ValidationError as e:
        raise FormatUnrecognizedError(f"Malformed backup document: {e.error_count()} error(s)") from e
    return SnapshotContents(
        kind=FormatKind.CURRENT,
        metadata=archive.metadata,
        tables=archive.database,
        files=archive.uploads,
        settings=archive.settings,
    )


def _tables_from_sql(sql: str, warnings: list[str]) -> list[TableSnapshot]:
    try:
        parsed = parse_inserts(sql, warnings)
    except SqlDumpError as e:
        raise FormatUnrecognizedError(f"Unreadable database.sql: {e}") from e
    return [TableSnapshot(table_name=name, data=rows) for name, rows in parsed.items()]


def _tables_from_json(raw: str) -> list[TableSnapshot]:
    try:
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError("expected a list of tables")
        return [TableSnapshot.model_validate(t) for t in data]
    except ValueError as e:
        raise FormatUnrecognizedError(f"Unreadable database.json: {e}") from e


def _settings_from_json(data: Any) -> list[SettingRecord]:
    if isinstance(data, dict):
        return [SettingRecord(key=k, value=v) for k, v in data.items()]
    if isinstance(data, list):
        return [SettingRecord.model_validate(s) for s in data]
    return []


def _legacy_metadata(raw: str | None, fallback_timestamp: str | None, size: int) -> ArchiveMetadata:
    if raw and raw not in PLACEHOLDER_MARKERS:
        try:
            return ArchiveMetadata.model_validate(json.loads(raw))
        except (ValueError, ValidationError):
            logger.warning("Legacy backup has an unreadable metadata.json")
    return ArchiveMetadata(
        version="1.0.0",
        timestamp=fallback_timestamp or _now_iso(),
        app_name=settings.APP_NAME,
        description="JSON backup",
        total_size=size,
    )


def _from_legacy_json(doc: dict, size: int) -> SnapshotContents:
    entries = {str(e.get("path", "")).replace("\\", "/"): e for e in doc.get("files", []) if isinstance(e, dict)}

    def content_of(name: str) -> str | None:
        entry = entries.get(name)
        if entry is None or entry.get("content") in PLACEHOLDER_MARKERS:
            return None
        return entry.get("content")

    metadata = _legacy_metadata(content_of(METADATA_FILE), doc.get("timestamp"), size)

    warnings: list[str] = []
    tables: list[TableSnapshot] = []
    if (raw := content_of(DATABASE_JSON_FILE)) is not None:
        tables = _tables_from_json(raw)
    elif (raw := content_of(DATABASE_SQL_FILE)) is not None:
        tables = _tables_from_sql(raw, warnings)

    settings_records: list[SettingRecord] = []
    if (raw := content_of(SETTINGS_FILE)) is not None:
        try:
            settings_records = _settings_from_json(json.loads(raw))
        except ValueError:
            logger.warning("Legacy backup has an unreadable settings.json")

    files = []
    prefix = UPLOADS_DIR + "/"
    for name, entry in entries.items():
        if not name.startswith(prefix):
            continue
        try:
            files.append(FileRecord.model_validate({
                "relativePath": name[len(prefix):],
                "content": entry.get("content", ""),
                "size": entry.get("size", 0),
            }))
        except ValidationError as e:
            raise FormatUnrecognizedError(f"Malformed file entry {name}: {e.error_count()} error(s)") from e

    return SnapshotContents(
        kind=FormatKind.LEGACY_JSON,
        metadata=metadata,
        tables=tables,
        files=files,
        settings=settings_records,
        warnings=warnings,
    )


def _is_within(root: Path, target: Path) -> bool:
    return target.resolve().is_relative_to(root.resolve())


def _extract(path: Path, kind: FormatKind, dest: Path) -> None:
    """Extract a tree archive, refusing members that escape dest."""
    if kind is FormatKind.LEGACY_TAR:
        with tarfile.open(path, "r:*") as tf:
            tf.extractall(dest, filter="data")
        return
    with zipfile.ZipFile(path) as zf:
        for member in zf.infolist():
            if not _is_within(dest, dest / member.filename):
                raise FormatUnrecognizedError(f"Archive member escapes extraction root: {member.filename}")
        zf.extractall(dest)


def _find_tree_root(extracted: Path) -> Path | None:
    """Directory holding the backup files (top level or one folder down)."""
    candidates = [extracted] + sorted(p for p in extracted.iterdir() if p.is_dir())
    for candidate in candidates:
        if any((candidate / name).is_file() for name in (METADATA_FILE, DATABASE_JSON_FILE, DATABASE_SQL_FILE)):
            return candidate
    return None


def _from_tree_archive(path: Path, kind: FormatKind, backup_dir: Path) -> SnapshotContents:
    with scratch_directory(backup_dir, "restore") as scratch:
        try:
            _extract(path, kind, scratch)
        except (tarfile.TarError, zipfile.BadZipFile, zlib.error, OSError, EOFError) as e:
            raise FormatUnrecognizedError(f"Cannot extract {path.name}: {e}") from e

        root = _find_tree_root(scratch)
        if root is None:
            raise FormatUnrecognizedError(f"{path.name} does not contain a backup")
        try:
            return _read_tree(root, path, kind)
        except UnicodeDecodeError as e:
            raise FormatUnrecognizedError(f"{path.name} holds a backup file that is not UTF-8: {e}") from e


def _read_tree(root: Path, path: Path, kind: FormatKind) -> SnapshotContents:
    metadata_path = root / METADATA_FILE
    raw_metadata = metadata_path.read_text(encoding="utf-8") if metadata_path.is_file() else None
    metadata = _legacy_metadata(raw_metadata, None, path.stat().st_size)

    warnings: list[str] = []
    tables: list[TableSnapshot] = []
    if (root / DATABASE_JSON_FILE).is_file():
        tables = _tables_from_json((root / DATABASE_JSON_FILE).read_text(encoding="utf-8"))
    elif (root / DATABASE_SQL_FILE).is_file():
        tables = _tables_from_sql((root / DATABASE_SQL_FILE).read_text(encoding="utf-8"), warnings)

    settings_records: list[SettingRecord] = []
    if (root / SETTINGS_FILE).is_file():
        try:
            settings_records = _settings_from_json(
                json.loads((root / SETTINGS_FILE).read_text(encoding="utf-8"))
            )
        except ValueError:
            logger.warning("Legacy backup %s has an unreadable settings.json", path.name)

    files = []
    uploads_root = root / UPLOADS_DIR
    if uploads_root.is_dir():
        for file_path in sorted(p for p in uploads_root.rglob("*") if p.is_file()):
            relative = file_path.relative_to(uploads_root).as_posix()
            files.append(FileRecord.from_bytes(relative, file_path.read_bytes(), keep_binary=True))

    return SnapshotContents(
        kind=kind,
        metadata=metadata,
        tables=tables,
        files=files,
        settings=settings_records,
        warnings=warnings,
        replaces_uploads=uploads_root.is_dir(),
    )


# ── Metadata only (catalog fast path) ───────────────────────────


def _metadata_from_head(head: bytes) -> ArchiveMetadata | None:
    """Parse a leading "metadata" object without reading the whole document."""
    text = head.decode("utf-8", errors="ignore").lstrip("\ufeff").lstrip()
    if not text.startswith("{"):
        return None
    body = text[1:].lstrip()
    key = '"metadata"'
    if not body.startswith(key):
        return None
    body = body[len(key):].lstrip()
    if not body.startswith(":"):
        return None
    try:
        obj, _ = json.JSONDecoder().raw_decode(body[1:].lstrip())
        return ArchiveMetadata.model_validate(obj)
    except (ValueError, ValidationError):
        return None


def _read_member(path: Path, kind: FormatKind, name: str) -> str | None:
    """Text of the shallowest archive member with this basename."""
    if kind is FormatKind.LEGACY_TAR:
        with tarfile.open(path, "r:*") as tf:
            members = [m for m in tf.getmembers() if m.isfile() and PurePosixPath(m.name).name == name]
            if not members:
                return None
            member = min(members, key=lambda m: m.name.count("/"))
            handle = tf.extractfile(member)
            return handle.read().decode("utf-8") if handle else None
    with zipfile.ZipFile(path) as zf:
        names = [n for n in zf.namelist() if PurePosixPath(n).name == name]
        if not names:
            return None
        return zf.read(min(names, key=lambda n: n.count("/"))).decode("utf-8")


def _metadata_from_document(doc: Any, size: int) -> ArchiveMetadata:
    kind = _classify_document(doc)
    if kind is FormatKind.CURRENT and isinstance(doc.get("metadata"), dict):
        return ArchiveMetadata.model_validate(doc["metadata"])
    if kind is FormatKind.LEGACY_JSON:
        raw = None
        for entry in doc["files"]:
            if isinstance(entry, dict) and entry.get("path") == METADATA_FILE:
                raw = entry.get("content")
        return _legacy_metadata(raw, doc.get("timestamp"), size)
    raise FormatUnrecognizedError("No backup metadata in document")


async def read_metadata(path: str | Path) -> ArchiveMetadata:
    """Metadata of an archive, reading as little of it as possible."""
    path = Path(path)
    size = path.stat().st_size
    async with aiofiles.open(path, "rb") as f:
        head = await f.read(METADATA_HEAD_BYTES)

    kind = _sniff(head)
    if kind is None:
        metadata = _metadata_from_head(head)
        if metadata is not None:
            return metadata
        doc = await asyncio.to_thread(_load_json, path)
        return _metadata_from_document(doc, size)

    if kind is FormatKind.UNKNOWN:
        kind = await asyncio.to_thread(_trial_identify, path)
    if kind in (FormatKind.LEGACY_TAR, FormatKind.LEGACY_ZIP):
        raw = await asyncio.to_thread(_read_member, path, kind, METADATA_FILE)
        if raw is None:
            raise FormatUnrecognizedError(f"{path.name} has no metadata.json")
        return ArchiveMetadata.model_validate(json.loads(raw))
    if kind in (FormatKind.CURRENT, FormatKind.LEGACY_JSON):
        doc = await asyncio.to_thread(_load_json, path)
        return _metadata_from_document(doc, size)
    raise FormatUnrecognizedError(f"Unrecognized backup format: {path.name}")
