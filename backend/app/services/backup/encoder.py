"""Snapshot encoder: writes the whole database and uploads tree to one JSON archive.

Tables are read in primary-key-ordered batches inside a single read
transaction and streamed to a scratch body file, so neither the table data nor
the archive text is ever held in memory in full. The final archive is the
metadata object followed by the body:

    {"metadata": {...}, "database": [...], "uploads": [...], "settings": [...], ...}

Metadata goes first so the catalog can read it without loading the rest.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import aiofiles
import aiofiles.os
from sqlalchemy import Table, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models import SiteSetting
from app.schemas.backup import (
    ARCHIVE_VERSION,
    READ_ERROR_MARKER,
    ArchiveMetadata,
    FileRecord,
    SettingRecord,
)
from app.services.backup.scratch import scratch_root
from app.services.backup.tables import live_tables, row_to_json
from app.services.errors import BackupIOError
from app.services.upload_storage import UploadStorage, upload_storage

logger = logging.getLogger(__name__)

COPY_CHUNK_BYTES = 1024 * 1024


@dataclass
class CreateResult:
    filename: str
    metadata: ArchiveMetadata
    warnings: list[str] = field(default_factory=list)


def _dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=False)


class _SectionWriter:
    """Writes text to the body file and counts its encoded bytes."""

    def __init__(self, handle):
        self.handle = handle
        self.bytes_written = 0

    async def write(self, text: str) -> None:
        await self.handle.write(text)
        self.bytes_written += len(text.encode("utf-8"))


class SnapshotEncoder:
    """Creates backup archives in the backup directory."""

    def __init__(
        self,
        storage: UploadStorage | None = None,
        backup_dir: str | Path | None = None,
        large_file_threshold: int | None = None,
        batch_size: int | None = None,
    ):
        self.storage = storage or upload_storage
        self.backup_dir = Path(backup_dir or settings.BACKUP_PATH)
        self.large_file_threshold = large_file_threshold or settings.BACKUP_LARGE_FILE_THRESHOLD
        self.batch_size = batch_size or settings.BACKUP_TABLE_BATCH_SIZE

    async def create(self, db: AsyncSession, description: str | None = None) -> CreateResult:
        """Write a new archive. Per-table and per-file failures become warnings."""
        try:
            temp_dir = scratch_root(self.backup_dir)
        except OSError as e:
            raise BackupIOError(f"Cannot create backup directory {self.backup_dir}: {e}") from e

        now = datetime.now(timezone.utc)
        timestamp = now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        filename = f"backup_{re.sub(r'[:.]', '-', timestamp)}.json"
        final_path = self.backup_dir / filename
        body_path = temp_dir / f"{filename}.body"
        warnings: list[str] = []

        logger.info("Creating backup %s", filename)
        try:
            await self._begin_snapshot(db)
            try:
                async with aiofiles.open(body_path, "w", encoding="utf-8") as handle:
                    database = _SectionWriter(handle)
                    await self._write_database(db, database, warnings)
                    await handle.write(", ")
                    uploads = _SectionWriter(handle)
                    total_files = await self._write_uploads(uploads, warnings)
                setting_records = await self._export_settings(db, warnings)
            finally:
                # Read-only snapshot; nothing to commit
                await db.rollback()

            metadata = ArchiveMetadata(
                version="1.0",
                timestamp=timestamp,
                app_name=settings.APP_NAME,
                description=description or f"Backup created on {now:%Y-%m-%d %H:%M:%S} UTC",
                db_size=database.bytes_written,
                files_size=uploads.bytes_written,
                total_size=database.bytes_written + uploads.bytes_written,
            )
            await self._assemble(final_path, body_path, metadata, setting_records, timestamp, total_files)
        except OSError as e:
            await self._remove_quietly(final_path)
            raise BackupIOError(f"Backup failed: {e}") from e
        except Exception:
            await self._remove_quietly(final_path)
            raise
        finally:
            await self._remove_quietly(body_path)

        stat = await aiofiles.os.stat(final_path)
        logger.info(
            "Backup %s written: %d bytes, %d file(s), %d warning(s)",
            filename, stat.st_size, total_files, len(warnings),
        )
        for warning in warnings:
            logger.warning("Backup %s: %s", filename, warning)
        return CreateResult(
            filename=filename,
            metadata=metadata.model_copy(update={"total_size": stat.st_size}),
            warnings=warnings,
        )

    async def _begin_snapshot(self, db: AsyncSession) -> None:
        """Pin one consistent view of the database for the whole export."""
        if db.in_transaction():
            await db.rollback()
        if db.get_bind().dialect.name == "postgresql":
            await db.connection(execution_options={"isolation_level": "REPEATABLE READ"})

    async def _write_database(self, db: AsyncSession, out: _SectionWriter, warnings: list[str]) -> None:
        await out.write('"database": [')
        first = True
        for table in await live_tables(db):
            if not first:
                await out.write(",\n")
            first = False
            await self._write_table(db, table, out, warnings)
        await out.write("]")

    async def _write_table(self, db: AsyncSession, table: Table, out: _SectionWriter, warnings: list[str]) -> None:
        await out.write(f'{{"tableName": {_dumps(table.name)}, "data": [')
        order_by = list(table.primary_key.columns)
        offset = 0
        count = 0
        error = None
        try:
            while True:
                stmt = select(table).order_by(*order_by).limit(self.batch_size).offset(offset)
                async with db.begin_nested():
                    rows = (await db.execute(stmt)).mappings().all()
                for row in rows:
                    await out.write(("," if count else "") + "\n" + _dumps(row_to_json(row)))
                    count += 1
                if len(rows) < self.batch_size:
                    break
                offset += self.batch_size
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning("Failed to export table %s after %d row(s): %s", table.name, count, error)
            warnings.append(f"Table {table.name}: export failed ({error})")

        if error is None:
            await out.write("]}")
        else:
            await out.write(f'], "error": {_dumps(error)}}}')
        logger.debug("Exported %d row(s) from %s", count, table.name)

    async def _write_uploads(self, out: _SectionWriter, warnings: list[str]) -> int:
        await out.write('"uploads": [')
        count = 0
        for asset in await self.storage.walk():
            record = await self._encode_asset(asset.relative_path, asset.size, warnings)
            await out.write(("," if count else "") + "\n" + _dumps(record.model_dump(by_alias=True)))
            count += 1
        await out.write("]")
        return count

    async def _encode_asset(self, relative_path: str, size: int, warnings: list[str]) -> FileRecord:
        if size >= self.large_file_threshold:
            return FileRecord.omitted(relative_path, size)
        try:
            data = await self.storage.read(relative_path)
        except (OSError, ValueError) as e:
            logger.warning("Failed to read upload %s: %s", relative_path, e)
            warnings.append(f"Upload {relative_path}: read failed ({e})")
            return FileRecord.omitted(relative_path, size, READ_ERROR_MARKER)
        return FileRecord.from_bytes(relative_path, data)

    async def _export_settings(self, db: AsyncSession, warnings: list[str]) -> list[SettingRecord]:
        try:
            async with db.begin_nested():
                result = await db.execute(select(SiteSetting).order_by(SiteSetting.key))
                rows = result.scalars().all()
        except Exception as e:
            logger.warning("Failed to export site settings: %s", e)
            warnings.append(f"Settings: export failed ({e})")
            return []
        return [SettingRecord(key=s.key, value=s.value) for s in rows]

    async def _assemble(
        self,
        final_path: Path,
        body_path: Path,
        metadata: ArchiveMetadata,
        setting_records: list[SettingRecord],
        timestamp: str,
        total_files: int,
    ) -> None:
        head = '{"metadata": ' + _dumps(metadata.model_dump(by_alias=True)) + ",\n"
        tail = (
            ',\n"settings": ' + _dumps([s.model_dump(by_alias=True) for s in setting_records])
            + ',\n"timestamp": ' + _dumps(timestamp)
            + ',\n"totalFiles": ' + str(total_files)
            + ',\n"version": ' + _dumps(ARCHIVE_VERSION)
            + "}\n"
        )
        async with aiofiles.open(final_path, "w", encoding="utf-8") as out:
            await out.write(head)
            async with aiofiles.open(body_path, "r", encoding="utf-8") as body:
                while chunk := await body.read(COPY_CHUNK_BYTES):
                    await out.write(chunk)
            await out.write(tail)

    async def _remove_quietly(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove %s: %s", path, e)
