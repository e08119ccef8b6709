"""Uploaded asset storage on the local filesystem (avatars, logos, images)."""
import asyncio
import os
import random
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

import aiofiles
import aiofiles.os

from app.config import settings

# Directory names that give a file its category, at any depth
CATEGORY_DIRS = ("users", "teams", "tournaments")
UPLOAD_DIRS = CATEGORY_DIRS + ("site", "other")


@dataclass
class StoredAsset:
    relative_path: str  # POSIX, relative to the uploads root
    size: int
    modified_at: datetime
    category: str

    @property
    def filename(self) -> str:
        return PurePosixPath(self.relative_path).name


class UploadStorage:
    """Reads, writes and enumerates files under the uploads root."""

    def __init__(self, base_path: str | Path | None = None, url_prefix: str | None = None):
        self.base_path = Path(base_path or settings.UPLOADS_PATH)
        prefix = url_prefix or settings.UPLOADS_URL_PREFIX
        self.url_prefix = prefix if prefix.endswith("/") else prefix + "/"

    def url_for(self, relative_path: str) -> str:
        """Stored URL path for a file, e.g. /uploads/teams/team-1.png."""
        return self.url_prefix + relative_path.lstrip("/")

    def resolve(self, relative_path: str) -> Path:
        """Absolute path of a file under the root. Raises ValueError on traversal."""
        root = self.base_path.resolve()
        candidate = (root / relative_path.lstrip("/")).resolve()
        if candidate == root or not candidate.is_relative_to(root):
            raise ValueError(f"Path escapes uploads root: {relative_path}")
        return candidate

    async def walk(self) -> list[StoredAsset]:
        """All files under the root, sorted by relative path."""
        found: list[StoredAsset] = []
        await self._scan(self.base_path, "", "other", found)
        found.sort(key=lambda a: a.relative_path)
        return found

    async def _scan(self, directory: Path, rel_dir: str, category: str, found: list[StoredAsset]) -> None:
        try:
            entries = list(await aiofiles.os.scandir(directory))
        except OSError:
            # Missing or unreadable directories count as empty
            return
        for entry in entries:
            rel = f"{rel_dir}{entry.name}"
            try:
                if entry.is_dir(follow_symlinks=False):
                    sub_category = entry.name if entry.name in CATEGORY_DIRS else category
                    await self._scan(Path(entry.path), rel + "/", sub_category, found)
                elif entry.is_file(follow_symlinks=False):
                    st = entry.stat()
                    found.append(StoredAsset(
                        relative_path=rel,
                        size=st.st_size,
                        modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                        category=category,
                    ))
            except OSError:
                continue

    async def read(self, relative_path: str) -> bytes:
        async with aiofiles.open(self.resolve(relative_path), "rb") as f:
            return await f.read()

    async def write(self, relative_path: str, data: bytes) -> Path:
        path = self.resolve(relative_path)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        return path

    async def delete(self, relative_path: str) -> None:
        """Delete a file. Raises FileNotFoundError if it is already gone."""
        await aiofiles.os.remove(self.resolve(relative_path))

    async def clear(self) -> int:
        """Remove everything under the root, keeping the root. Returns the file count removed."""
        removed = 0
        for asset in await self.walk():
            await aiofiles.os.remove(self.base_path / asset.relative_path)
            removed += 1
        try:
            entries = list(await aiofiles.os.scandir(self.base_path))
        except FileNotFoundError:
            return removed
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                await asyncio.to_thread(shutil.rmtree, entry.path)
            else:
                await aiofiles.os.remove(entry.path)
        return removed

    async def save_upload(self, file_bytes: bytes, original_name: str, category: str) -> str:
        """Save a new upload under its category directory. Returns the stored URL path."""
        category = category if category in UPLOAD_DIRS else "other"
        ext = os.path.splitext(original_name)[1].lower()
        filename = f"{category}-{int(time.time() * 1000)}-{random.randint(0, 999_999_999)}{ext}"
        relative_path = f"{category}/{filename}"
        await self.write(relative_path, file_bytes)
        return self.url_for(relative_path)


upload_storage = UploadStorage()
