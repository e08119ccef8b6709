"""Backup catalog: the archives stored in the backup directory."""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import aiofiles.os

from app.config import settings
from app.schemas.backup import ArchiveMetadata
from app.services.backup.formats import placeholder_metadata, read_metadata
from app.services.errors import ArchiveNotFoundError

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = (".json", ".zip", ".tar.gz", ".tgz", ".tar")


@dataclass
class BackupEntry:
    filename: str
    metadata: ArchiveMetadata
    size: int
    path: Path
    modified_at: float


def _sort_key(entry: BackupEntry) -> datetime:
    ts = entry.metadata.timestamp
    try:
        parsed = datetime.fromisoformat(ts[:-1] + "+00:00" if ts.endswith("Z") else ts)
    except ValueError:
        return datetime.fromtimestamp(entry.modified_at, tz=timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class BackupCatalog:
    def __init__(self, backup_dir: str | Path | None = None):
        self.backup_dir = Path(backup_dir or settings.BACKUP_PATH)

    async def _archive_paths(self) -> list[Path]:
        await aiofiles.os.makedirs(self.backup_dir, exist_ok=True)
        paths = []
        for entry in await aiofiles.os.scandir(self.backup_dir):
            if entry.is_file() and entry.name.lower().endswith(ARCHIVE_SUFFIXES):
                paths.append(Path(entry.path))
        return paths

    async def _entry(self, path: Path) -> BackupEntry:
        stat = await aiofiles.os.stat(path)
        try:
            metadata = await read_metadata(path)
        except Exception as e:
            # An unreadable archive is still listed, whatever the failure
            logger.warning("Could not read metadata of %s: %s", path.name, e)
            metadata = placeholder_metadata(stat.st_size)
        return BackupEntry(
            filename=path.name,
            metadata=metadata,
            size=stat.st_size,
            path=path,
            modified_at=stat.st_mtime,
        )

    async def list_all(self) -> list[BackupEntry]:
        """All archives, newest first by metadata timestamp."""
        entries = []
        for path in await self._archive_paths():
            try:
                entries.append(await self._entry(path))
            except OSError as e:
                # Removed between listing and stat
                logger.warning("Skipping backup %s: %s", path.name, e)
        entries.sort(key=_sort_key, reverse=True)
        return entries

    def path_for(self, filename: str) -> Path:
        """Path of a stored archive. Raises ArchiveNotFoundError."""
        if not filename or "/" in filename or "\\" in filename or filename in (".", ".."):
            raise ArchiveNotFoundError(f"Backup file not found: {filename}")
        path = self.backup_dir / filename
        if not path.is_file():
            raise ArchiveNotFoundError(f"Backup file not found: {filename}")
        return path

    async def get(self, filename: str) -> BackupEntry:
        return await self._entry(self.path_for(filename))

    async def delete(self, filename: str) -> None:
        path = self.path_for(filename)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            raise ArchiveNotFoundError(f"Backup file not found: {filename}")
        logger.info("Deleted backup %s", filename)

    async def prune(self, keep: int | None = None) -> int:
        """Delete all but the newest `keep` archives (by modification time)."""
        keep = settings.BACKUP_KEEP_COUNT if keep is None else keep
        paths = await self._archive_paths()
        dated = []
        for path in paths:
            try:
                dated.append(((await aiofiles.os.stat(path)).st_mtime, path))
            except OSError:
                continue
        dated.sort(key=lambda item: item[0], reverse=True)

        deleted = 0
        for _, path in dated[keep:]:
            try:
                await aiofiles.os.remove(path)
            except OSError as e:
                logger.warning("Failed to delete old backup %s: %s", path.name, e)
                continue
            deleted += 1
            logger.info("Deleted old backup %s", path.name)
        return deleted
