"""File manager: classifies uploads as referenced or orphaned and removes orphans."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePosixPath

from sqlalchemy.ext.asyncio import AsyncSession

from app.services.errors import AssetNotFoundError
from app.services.reference_scanner import ReferenceSet, scan
from app.services.upload_storage import UploadStorage, upload_storage

logger = logging.getLogger(__name__)

FILE_TYPE_IMAGES = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg"})


@dataclass
class AssetFile:
    filename: str
    relative_path: str
    path: str  # stored URL path, e.g. /uploads/users/u1.png
    size: int
    last_modified: datetime
    type: str
    category: str
    is_referenced: bool = False
    referenced_by: list[str] | None = None


@dataclass
class AssetStats:
    total_files: int
    total_size: int
    referenced_files: int
    orphaned_files: int
    categories: dict[str, int]


@dataclass
class CleanupResult:
    deleted_files: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted_files)


def _file_type(filename: str) -> str:
    return "image" if PurePosixPath(filename).suffix.lower() in FILE_TYPE_IMAGES else "other"


class AssetCollector:
    """Garbage collector for the uploads directory."""

    def __init__(self, storage: UploadStorage | None = None):
        self.storage = storage or upload_storage

    async def list_all(self, db: AsyncSession) -> list[AssetFile]:
        """Every file under the uploads root with its reference status."""
        files, _ = await self._classify(db)
        return files

    async def _classify(self, db: AsyncSession) -> tuple[list[AssetFile], ReferenceSet]:
        stored = await self.storage.walk()
        refs = await scan(db, self.storage.url_prefix)

        files = []
        for asset in stored:
            url_path = self.storage.url_for(asset.relative_path)
            referenced_by = refs.lookup(asset.filename, url_path)
            files.append(AssetFile(
                filename=asset.filename,
                relative_path=asset.relative_path,
                path=url_path,
                size=asset.size,
                last_modified=asset.modified_at,
                type=_file_type(asset.filename),
                category=asset.category,
                is_referenced=referenced_by is not None,
                referenced_by=referenced_by,
            ))
        return files, refs

    async def stats(self, db: AsyncSession) -> AssetStats:
        files = await self.list_all(db)
        categories: dict[str, int] = {}
        for f in files:
            categories[f.category] = categories.get(f.category, 0) + 1
        referenced = sum(1 for f in files if f.is_referenced)
        return AssetStats(
            total_files=len(files),
            total_size=sum(f.size for f in files),
            referenced_files=referenced,
            orphaned_files=len(files) - referenced,
            categories=categories,
        )

    async def delete(self, db: AsyncSession, filename: str) -> AssetFile:
        """Delete one file by filename or relative path, referenced or not."""
        files = await self.list_all(db)
        target = next(
            (f for f in files if f.filename == filename or f.relative_path == filename.lstrip("/")),
            None,
        )
        if target is None:
            raise AssetNotFoundError(f"File not found: {filename}")
        if target.is_referenced:
            logger.warning(
                "Deleting referenced file %s (referenced by %s)",
                target.relative_path, ", ".join(target.referenced_by or []),
            )
        try:
            await self.storage.delete(target.relative_path)
        except FileNotFoundError:
            raise AssetNotFoundError(f"File not found: {filename}")
        logger.info("Deleted upload %s", target.relative_path)
        return target

    async def cleanup_orphans(self, db: AsyncSession) -> CleanupResult:
        """Delete every unreferenced file. Individual failures are collected, not raised.

        Nothing is deleted when any asset table could not be scanned, since
        files referenced only from that table would look orphaned.
        """
        result = CleanupResult()
        files, refs = await self._classify(db)
        if refs.failed_tables:
            tables = ", ".join(refs.failed_tables)
            logger.warning("Orphan cleanup aborted: reference scan failed for %s", tables)
            result.errors.append(f"Reference scan failed for table(s) {tables}; no files deleted")
            return result

        for f in files:
            if f.is_referenced:
                continue
            try:
                await self.storage.delete(f.relative_path)
            except (OSError, ValueError) as e:
                logger.warning("Failed to delete orphaned file %s: %s", f.relative_path, e)
                result.errors.append(f"Failed to delete {f.filename}: {e}")
                continue
            result.deleted_files.append(f.filename)

        logger.info(
            "Orphan cleanup deleted %d file(s), %d error(s)",
            result.deleted_count, len(result.errors),
        )
        return result

    async def save_upload(self, file_bytes: bytes, original_name: str, category: str) -> str:
        return await self.storage.save_upload(file_bytes, original_name, category)


asset_collector = AssetCollector()
