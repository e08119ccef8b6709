"""Finds which uploaded files are referenced by rows in the database.

Rows have historically stored asset references in two shapes: a full uploads
URL path ("/uploads/teams/team-1.png") or a bare filename ("team-1.png").
Every reference is therefore registered under both its basename and its full
stored value, and a file counts as referenced if either key matches.
"""
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import PurePosixPath

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models import SiteSetting, Team, Tournament, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetColumn:
    """A column whose values are uploads paths, plus a label for its owner row."""
    model: type
    column: str
    label: Callable[[object], str]


ASSET_COLUMNS: tuple[AssetColumn, ...] = (
    AssetColumn(User, "profile_image", lambda u: f"User: {u.username}"),
    AssetColumn(Team, "logo_url", lambda t: f"Team: {t.name}"),
    AssetColumn(Tournament, "image_url", lambda t: f"Tournament: {t.name}"),
    AssetColumn(SiteSetting, "value", lambda s: f"Setting: {s.key}"),
)


class ReferenceSet:
    """Filename / full path -> labels of the rows that reference it."""

    def __init__(self, url_prefix: str | None = None):
        prefix = url_prefix or settings.UPLOADS_URL_PREFIX
        self.url_prefix = prefix if prefix.endswith("/") else prefix + "/"
        self._refs: dict[str, list[str]] = {}
        # Tables whose scan failed; their references are unknown
        self.failed_tables: list[str] = []

    def add(self, value: str | None, label: str) -> bool:
        """Register a stored column value. Returns False if it is not an asset reference."""
        if not value:
            return False
        value = value.strip()
        if value.startswith(self.url_prefix):
            self._register(PurePosixPath(value).name, label)
            self._register(value, label)
            return True
        # Bare filename written by older code paths
        if "/" not in value and PurePosixPath(value).suffix:
            self._register(value, label)
            return True
        return False

    def _register(self, key: str, label: str) -> None:
        labels = self._refs.setdefault(key, [])
        if label not in labels:
            labels.append(label)

    def lookup(self, filename: str, url_path: str) -> list[str] | None:
        """Labels referencing a file, by filename first then full path; None if orphaned."""
        if filename in self._refs:
            return list(self._refs[filename])
        if url_path in self._refs:
            return list(self._refs[url_path])
        return None

    def __contains__(self, key: str) -> bool:
        return key in self._refs

    def __len__(self) -> int:
        return len(self._refs)


async def scan(db: AsyncSession, url_prefix: str | None = None) -> ReferenceSet:
    """Build a ReferenceSet from every asset-bearing column.

    A table that cannot be read is skipped and listed in `failed_tables`;
    the other tables are still scanned.
    """
    refs = ReferenceSet(url_prefix)
    for asset_col in ASSET_COLUMNS:
        model = asset_col.model
        column = getattr(model, asset_col.column)
        try:
            # Savepoint so a failed SELECT does not poison the outer transaction
            async with db.begin_nested():
                result = await db.execute(
                    select(model).where(column.is_not(None), column != "")
                )
                rows = result.scalars().all()
        except Exception as e:
            logger.warning(
                "Reference scan skipped table %s: %s", model.__tablename__, e
            )
            refs.failed_tables.append(model.__tablename__)
            continue
        count = 0
        for row in rows:
            if refs.add(getattr(row, asset_col.column), asset_col.label(row)):
                count += 1
        logger.debug("Reference scan: %d asset references in %s", count, model.__tablename__)
    return refs
