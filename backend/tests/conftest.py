"""
Shared fixtures for the backup and file manager tests.

Every test gets its own on-disk SQLite database, uploads root and backup
directory under tmp_path, so nothing touches a real server or the repo tree.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_JSON", "false")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import make_engine
from app.models import Base
from app.services.asset_collector import AssetCollector
from app.services.backup import BackupCatalog, RestoreEngine, SnapshotEncoder
from app.services.upload_storage import UploadStorage

# Smallest valid PNG (1x1 transparent pixel)
PNG_BYTES = bytes.fromhex(
    "89504e470d0a1a0a0000000d49484452000000010000000108060000001f15c489"
    "0000000d49444154789c6360000002000154a24f5d0000000049454e44ae426082"
)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Storage and service fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def storage(tmp_path):
    return UploadStorage(tmp_path / "uploads", "/uploads/")


@pytest.fixture
def backup_dir(tmp_path):
    path = tmp_path / "backups"
    path.mkdir()
    return path


@pytest.fixture
def collector(storage):
    return AssetCollector(storage)


@pytest.fixture
def encoder(storage, backup_dir):
    return SnapshotEncoder(storage, backup_dir, large_file_threshold=1024, batch_size=2)


@pytest.fixture
def restorer(storage, backup_dir):
    return RestoreEngine(storage, backup_dir, strict=False)


@pytest.fixture
def catalog(backup_dir):
    return BackupCatalog(backup_dir)


@pytest.fixture
def put_upload(storage):
    """Write a file under the uploads root and return its absolute path."""

    def _put(relative_path: str, data: bytes = PNG_BYTES):
        path = storage.base_path / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    return _put
