"""Restore engine: replaces the database and uploads with an archive's contents.

The relational part runs in one transaction. Tables are cleared child-first
and refilled parent-first; every row insert gets its own savepoint so a bad
row can be skipped without losing the rest. In strict mode the first bad row
rolls back everything. Files are written only after the database commit.
"""
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path

import aiofiles
import aiofiles.os
from fastapi import UploadFile
from sqlalchemy import Integer, Table, delete, insert, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models import SiteSetting
from app.schemas.backup import FileRecord, SettingRecord, TableSnapshot
from app.services.backup.formats import SnapshotContents, normalize
from app.services.backup.scratch import scratch_root
from app.services.backup.tables import coerce_row, live_tables
from app.services.errors import (
    ArchiveNotFoundError,
    BackupIOError,
    RestoreFailedError,
    SizeLimitExceededError,
)
from app.services.upload_storage import UploadStorage, upload_storage

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_BYTES = 1024 * 1024

ROW_ERRORS = (SQLAlchemyError, ValueError, TypeError)


@dataclass
class RestoreReport:
    format: str
    tables_restored: int = 0
    rows_restored: int = 0
    rows_skipped: int = 0
    files_restored: int = 0
    files_skipped: int = 0
    settings_restored: int = 0
    warnings: list[str] = field(default_factory=list)

    def warn(self, message: str) -> None:
        logger.warning("Restore: %s", message)
        self.warnings.append(message)


class RestoreEngine:
    """Destructive restore of archives in any supported format."""

    def __init__(
        self,
        storage: UploadStorage | None = None,
        backup_dir: str | Path | None = None,
        strict: bool | None = None,
        max_upload_bytes: int | None = None,
    ):
        self.storage = storage or upload_storage
        self.backup_dir = Path(backup_dir or settings.BACKUP_PATH)
        self.strict = settings.RESTORE_STRICT if strict is None else strict
        self.max_upload_bytes = max_upload_bytes or settings.RESTORE_MAX_UPLOAD_BYTES

    async def restore(self, db: AsyncSession, path: str | Path) -> RestoreReport:
        """Restore from an archive file on disk."""
        path = Path(path)
        if not path.is_file():
            raise ArchiveNotFoundError(f"Backup file not found: {path.name}")
        logger.info("Restoring from %s", path.name)
        contents = await normalize(path, backup_dir=self.backup_dir)
        return await self.apply(db, contents)

    async def restore_upload(self, db: AsyncSession, upload: UploadFile) -> RestoreReport:
        """Restore from an uploaded archive. The uploaded copy is always removed."""
        try:
            temp_dir = scratch_root(self.backup_dir)
        except OSError as e:
            raise BackupIOError(f"Cannot create restore directory: {e}") from e

        temp_path = temp_dir / f"upload_{uuid.uuid4().hex}"
        try:
            received = 0
            async with aiofiles.open(temp_path, "wb") as out:
                while chunk := await upload.read(UPLOAD_CHUNK_BYTES):
                    received += len(chunk)
                    if received > self.max_upload_bytes:
                        raise SizeLimitExceededError(self.max_upload_bytes)
                    await out.write(chunk)
            logger.info("Received backup upload %s (%d bytes)", upload.filename, received)
            return await self.restore(db, temp_path)
        finally:
            try:
                await aiofiles.os.remove(temp_path)
            except FileNotFoundError:
                pass

    async def apply(self, db: AsyncSession, contents: SnapshotContents) -> RestoreReport:
        report = RestoreReport(format=contents.kind.value)
        for message in contents.warnings:
            report.warn(message)
        if db.in_transaction():
            await db.rollback()

        try:
            restored = await self._restore_tables(db, contents.tables, report)
            if contents.settings:
                await self._restore_settings(db, contents.settings, report)
            if db.get_bind().dialect.name == "postgresql":
                await self._reset_sequences(db, restored, report)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Restore failed; database rolled back")
            raise

        if contents.replaces_uploads:
            await self._clear_uploads(report)
        await self._restore_files(contents.files, report)
        logger.info(
            "Restore finished: %d table(s), %d row(s) (%d skipped), %d file(s) (%d skipped), %d setting(s)",
            report.tables_restored, report.rows_restored, report.rows_skipped,
            report.files_restored, report.files_skipped, report.settings_restored,
        )
        return report

    # ── Tables ──────────────────────────────────────────────────

    async def _restore_tables(
        self, db: AsyncSession, snapshots: list[TableSnapshot], report: RestoreReport
    ) -> list[Table]:
        by_name: dict[str, TableSnapshot] = {}
        for snapshot in snapshots:
            if snapshot.error is not None:
                report.warn(f"Table {snapshot.table_name}: skipped, export had failed ({snapshot.error})")
                continue
            by_name[snapshot.table_name] = snapshot

        live = await live_tables(db)
        live_names = {t.name for t in live}
        for name in by_name:
            if name not in live_names:
                report.warn(f"Table {name}: not in the live schema, skipped")

        plan = [t for t in live if t.name in by_name]
        for table in reversed(plan):
            await db.execute(delete(table))
            logger.debug("Cleared table %s", table.name)

        for table in plan:
            await self._insert_rows(db, table, by_name[table.name].data, report)
            report.tables_restored += 1
        return plan

    async def _insert_rows(self, db: AsyncSession, table: Table, rows: list[dict], report: RestoreReport) -> None:
        dropped_columns: set[str] = set()
        for index, row in enumerate(rows):
            try:
                values, dropped = coerce_row(table, row)
                dropped_columns.update(dropped)
                if not values:
                    raise ValueError("no columns match the live table")
                async with db.begin_nested():
                    await db.execute(insert(table).values(values))
            except ROW_ERRORS as e:
                if self.strict:
                    raise RestoreFailedError(f"Table {table.name}, row {index}: {e}") from e
                report.rows_skipped += 1
                report.warn(f"Table {table.name}, row {index}: skipped ({_first_line(e)})")
                continue
            report.rows_restored += 1

        if dropped_columns:
            report.warn(
                f"Table {table.name}: ignored column(s) not in the live table: {', '.join(sorted(dropped_columns))}"
            )
        logger.debug("Restored %d row(s) into %s", len(rows), table.name)

    async def _restore_settings(self, db: AsyncSession, records: list[SettingRecord], report: RestoreReport) -> None:
        latest: dict[str, str | None] = {}
        for record in records:
            latest[record.key] = record.value

        await db.execute(delete(SiteSetting))
        for key, value in latest.items():
            if value is None:
                report.warn(f"Setting {key}: no value, skipped")
                continue
            try:
                async with db.begin_nested():
                    await db.execute(insert(SiteSetting).values(key=key, value=value))
            except SQLAlchemyError as e:
                if self.strict:
                    raise RestoreFailedError(f"Setting {key}: {e}") from e
                report.warn(f"Setting {key}: skipped ({_first_line(e)})")
                continue
            report.settings_restored += 1

    async def _reset_sequences(self, db: AsyncSession, tables: list[Table], report: RestoreReport) -> None:
        """Move serial sequences past the restored ids."""
        preparer = db.get_bind().dialect.identifier_preparer
        for table in tables:
            for column in table.primary_key.columns:
                if not isinstance(column.type, Integer):
                    continue
                stmt = text(
                    "SELECT setval(pg_get_serial_sequence(:table, :column), "
                    f"COALESCE((SELECT MAX({preparer.quote(column.name)}) FROM {preparer.format_table(table)}), 0) + 1, "
                    "false)"
                )
                try:
                    async with db.begin_nested():
                        await db.execute(stmt, {"table": table.name, "column": column.name})
                except SQLAlchemyError as e:
                    report.warn(f"Table {table.name}: could not reset sequence ({_first_line(e)})")

    # ── Files ───────────────────────────────────────────────────

    async def _clear_uploads(self, report: RestoreReport) -> None:
        try:
            removed = await self.storage.clear()
        except OSError as e:
            report.warn(f"Uploads directory not cleared ({e})")
            return
        logger.info("Cleared %d upload(s) before restoring the archived uploads tree", removed)

    async def _restore_files(self, files: list[FileRecord], report: RestoreReport) -> None:
        for record in files:
            data = record.payload()
            if data is None:
                report.files_skipped += 1
                if record.is_recoverable:
                    report.warn(f"Upload {record.relative_path}: undecodable content, skipped")
                else:
                    logger.info("Upload %s not in archive (%s)", record.relative_path, record.content)
                continue
            try:
                await self.storage.write(record.relative_path, data)
            except (OSError, ValueError) as e:
                report.files_skipped += 1
                report.warn(f"Upload {record.relative_path}: not written ({e})")
                continue
            report.files_restored += 1


def _first_line(error: Exception) -> str:
    message = str(error).strip() or type(error).__name__
    return message.splitlines()[0]
