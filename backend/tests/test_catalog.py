from __future__ import annotations

import io
import json
import os
import tarfile
import zipfile

import pytest

from app.services.errors import ArchiveNotFoundError


def _write_archive(backup_dir, filename: str, timestamp: str, description: str = "") -> None:
    doc = {
        "metadata": {
            "version": "1.0",
            "timestamp": timestamp,
            "appName": "CricProAce",
            "description": description,
            "dbSize": 1,
            "filesSize": 1,
            "totalSize": 2,
        },
        "database": [],
        "uploads": [],
        "settings": [],
        "timestamp": timestamp,
        "totalFiles": 0,
        "version": "2.0",
    }
    (backup_dir / filename).write_text(json.dumps(doc), encoding="utf-8")


async def test_list_is_newest_first(catalog, backup_dir) -> None:
    _write_archive(backup_dir, "backup_a.json", "2024-01-01T00:00:00.000Z", "old")
    _write_archive(backup_dir, "backup_b.json", "2025-06-01T00:00:00.000Z", "new")
    _write_archive(backup_dir, "backup_c.json", "2024-08-01T00:00:00.000Z", "middle")

    entries = await catalog.list_all()
    assert [e.metadata.description for e in entries] == ["new", "middle", "old"]
    assert all(e.size == (backup_dir / e.filename).stat().st_size for e in entries)


async def test_corrupted_archive_gets_placeholder_metadata(catalog, backup_dir) -> None:
    _write_archive(backup_dir, "backup_ok.json", "2024-01-01T00:00:00.000Z")
    (backup_dir / "backup_broken.json").write_text('{"metadata": {"version": ', encoding="utf-8")

    entries = {e.filename: e for e in await catalog.list_all()}
    assert set(entries) == {"backup_ok.json", "backup_broken.json"}
    broken = entries["backup_broken.json"].metadata
    assert broken.version == "unknown"
    assert broken.description == "Legacy backup (no metadata)"


async def test_legacy_tar_without_metadata_is_listed(catalog, backup_dir) -> None:
    with tarfile.open(backup_dir / "old.tar.gz", "w:gz") as tf:
        data = b"INSERT INTO teams (id, name) VALUES (1, 'India');"
        info = tarfile.TarInfo("backup/database.sql")
        info.size = len(data)
        tf.addfile(info, io.BytesIO(data))

    [entry] = await catalog.list_all()
    assert entry.filename == "old.tar.gz"
    assert entry.metadata.version == "unknown"


async def test_zip_with_corrupt_deflate_stream_is_listed(catalog, backup_dir) -> None:
    _write_archive(backup_dir, "backup_ok.json", "2024-01-01T00:00:00.000Z", "fine")
    path = backup_dir / "old.zip"
    metadata = json.dumps({"version": "1.0", "timestamp": "2023-01-01T00:00:00.000Z", "notes": os.urandom(600).hex()})
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("metadata.json", metadata)
    data = bytearray(path.read_bytes())
    for i in range(60, 120):
        data[i] ^= 0xFF
    path.write_bytes(bytes(data))

    entries = {e.filename: e for e in await catalog.list_all()}
    assert set(entries) == {"backup_ok.json", "old.zip"}
    assert entries["old.zip"].metadata.version == "unknown"
    assert entries["backup_ok.json"].metadata.description == "fine"


async def test_non_archive_files_and_scratch_are_ignored(catalog, backup_dir) -> None:
    (backup_dir / "notes.txt").write_text("hi")
    (backup_dir / "temp").mkdir()
    assert await catalog.list_all() == []


async def test_missing_backup_dir_is_created(tmp_path) -> None:
    from app.services.backup import BackupCatalog

    catalog = BackupCatalog(tmp_path / "fresh")
    assert await catalog.list_all() == []
    assert (tmp_path / "fresh").is_dir()


async def test_delete(catalog, backup_dir) -> None:
    _write_archive(backup_dir, "backup_a.json", "2024-01-01T00:00:00.000Z")
    await catalog.delete("backup_a.json")
    assert not (backup_dir / "backup_a.json").exists()

    with pytest.raises(ArchiveNotFoundError):
        await catalog.delete("backup_a.json")


@pytest.mark.parametrize("filename", ["../secret.json", "sub/backup.json", "..", ""])
def test_path_for_rejects_paths(catalog, filename) -> None:
    with pytest.raises(ArchiveNotFoundError):
        catalog.path_for(filename)


async def test_prune_keeps_newest_by_mtime(catalog, backup_dir) -> None:
    for i, name in enumerate(["backup_1.json", "backup_2.json", "backup_3.json"]):
        _write_archive(backup_dir, name, "2024-01-01T00:00:00.000Z")
        os.utime(backup_dir / name, (1_700_000_000 + i * 60, 1_700_000_000 + i * 60))

    assert await catalog.prune(1) == 2
    assert sorted(p.name for p in backup_dir.glob("*.json")) == ["backup_3.json"]
    assert await catalog.prune(1) == 0
