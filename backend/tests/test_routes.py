from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from app.database import get_db
from app.main import app as api
from app.models import Team, User
from app.routes.backups import get_backup_catalog, get_restore_engine, get_snapshot_encoder
from app.routes.files import get_asset_collector
from app.services.backup import RestoreEngine

PNG = b"\x89PNG\r\n\x1a\nsmall"


@pytest.fixture
async def client(session_factory, catalog, encoder, restorer, collector):
    async def _get_db():
        async with session_factory() as session:
            yield session

    api.dependency_overrides.update({
        get_db: _get_db,
        get_backup_catalog: lambda: catalog,
        get_snapshot_encoder: lambda: encoder,
        get_restore_engine: lambda: restorer,
        get_asset_collector: lambda: collector,
    })
    async with AsyncClient(transport=ASGITransport(app=api), base_url="http://test") as c:
        yield c
    api.dependency_overrides.clear()


async def _seed(session_factory) -> None:
    async with session_factory() as session:
        session.add_all([
            User(username="alice", password="x", profile_image="/uploads/users/u1.png"),
            Team(name="India", logo_url="/uploads/teams/t1.png"),
        ])
        await session.commit()


# ── Backups ─────────────────────────────────────────────────────


async def test_backup_lifecycle(client, session_factory) -> None:
    await _seed(session_factory)

    created = await client.post("/api/admin/backups/create", json={"description": "pre-season"})
    assert created.status_code == 201
    body = created.json()
    filename = body["filename"]
    assert body["metadata"]["description"] == "pre-season"
    assert body["warnings"] == []

    listed = await client.get("/api/admin/backups")
    assert listed.status_code == 200
    [item] = listed.json()
    assert item["filename"] == filename
    assert item["sizeBytes"] > 0
    assert item["metadata"]["appName"] == "CricProAce"

    download = await client.get(f"/api/admin/backups/download/{filename}")
    assert download.status_code == 200
    assert download.json()["version"] == "2.0"

    deleted = await client.delete(f"/api/admin/backups/{filename}")
    assert deleted.status_code == 200
    again = await client.delete(f"/api/admin/backups/{filename}")
    assert again.status_code == 404


async def test_create_without_body(client) -> None:
    response = await client.post("/api/admin/backups/create")
    assert response.status_code == 201
    assert response.json()["filename"].startswith("backup_")


async def test_download_missing_backup(client) -> None:
    response = await client.get("/api/admin/backups/download/backup_nope.json")
    assert response.status_code == 404


async def test_restore_uploaded_backup(client, session_factory) -> None:
    await _seed(session_factory)
    filename = (await client.post("/api/admin/backups/create")).json()["filename"]
    archive = (await client.get(f"/api/admin/backups/download/{filename}")).content

    response = await client.post(
        "/api/admin/backups/restore",
        files={"backup": ("snapshot.json", archive, "application/json")},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["format"] == "current"
    assert body["rowsRestored"] == 2
    assert body["message"] == "Backup restored successfully"


async def test_restore_stored_backup(client, session_factory) -> None:
    await _seed(session_factory)
    filename = (await client.post("/api/admin/backups/create")).json()["filename"]

    response = await client.post(f"/api/admin/backups/{filename}/restore")
    assert response.status_code == 200
    assert response.json()["tablesRestored"] >= 2

    missing = await client.post("/api/admin/backups/backup_nope.json/restore")
    assert missing.status_code == 404


async def test_restore_rejects_unrecognized_upload(client, backup_dir) -> None:
    response = await client.post(
        "/api/admin/backups/restore",
        files={"backup": ("notes.txt", b"definitely not a backup", "text/plain")},
    )
    assert response.status_code == 400
    assert list((backup_dir / "temp").iterdir()) == []


async def test_restore_rejects_malformed_legacy_upload(client) -> None:
    response = await client.post(
        "/api/admin/backups/restore",
        files={"backup": ("old.json", b'{"files": [{"path": "uploads/a.txt", "content": 5}]}', "application/json")},
    )
    assert response.status_code == 400


async def test_restore_database_failure_returns_detail(client, session_factory, restorer, monkeypatch) -> None:
    await _seed(session_factory)
    filename = (await client.post("/api/admin/backups/create")).json()["filename"]

    async def _apply(db, contents):
        raise OperationalError("DELETE FROM teams", {}, Exception("foreign key constraint failed"))

    monkeypatch.setattr(restorer, "apply", _apply)
    response = await client.post(f"/api/admin/backups/{filename}/restore")
    assert response.status_code == 500
    assert "foreign key constraint failed" in response.json()["detail"]


async def test_restore_rejects_oversized_upload(client, storage, backup_dir) -> None:
    api.dependency_overrides[get_restore_engine] = lambda: RestoreEngine(storage, backup_dir, max_upload_bytes=8)
    response = await client.post(
        "/api/admin/backups/restore",
        files={"backup": ("big.json", b"{" + b" " * 64 + b"}", "application/json")},
    )
    assert response.status_code == 413
    assert list((backup_dir / "temp").iterdir()) == []


async def test_prune(client, backup_dir) -> None:
    for name in ("backup_1.json", "backup_2.json", "backup_3.json"):
        (backup_dir / name).write_text("{}")

    response = await client.post("/api/admin/backups/prune", json={"keep": 1})
    assert response.status_code == 200
    assert response.json()["deletedCount"] == 2

    invalid = await client.post("/api/admin/backups/prune", json={"keep": -1})
    assert invalid.status_code == 422


# ── Files ───────────────────────────────────────────────────────


async def test_file_listing_stats_and_cleanup(client, session_factory, put_upload) -> None:
    await _seed(session_factory)
    put_upload("users/u1.png")
    put_upload("teams/t1.png")
    put_upload("stray.png")

    listed = (await client.get("/api/admin/files")).json()
    by_name = {f["filename"]: f for f in listed}
    assert by_name["u1.png"]["isReferenced"] is True
    assert by_name["u1.png"]["referencedBy"] == ["User: alice"]
    assert by_name["stray.png"]["isReferenced"] is False
    assert by_name["t1.png"]["category"] == "teams"

    stats = (await client.get("/api/admin/files/stats")).json()
    assert stats["totalFiles"] == 3
    assert stats["orphanedFiles"] == 1
    assert stats["referencedFiles"] == 2

    cleanup = (await client.post("/api/admin/files/cleanup")).json()
    assert cleanup["deletedCount"] == 1
    assert cleanup["deletedFiles"] == ["stray.png"]
    assert cleanup["message"] == "Cleaned up 1 orphaned file(s)"


async def test_upload_image(client, storage) -> None:
    response = await client.post(
        "/api/admin/files/upload",
        files={"file": ("logo.png", PNG, "image/png")},
        data={"category": "teams"},
    )
    assert response.status_code == 201
    path = response.json()["filePath"]
    assert path.startswith("/uploads/teams/")
    assert (storage.base_path / path[len("/uploads/"):]).read_bytes() == PNG


async def test_upload_rejects_non_images(client) -> None:
    response = await client.post(
        "/api/admin/files/upload",
        files={"file": ("script.sh", b"rm -rf /", "text/x-shellscript")},
    )
    assert response.status_code == 400


async def test_delete_file(client, put_upload) -> None:
    path = put_upload("teams/t1.png")
    response = await client.delete("/api/admin/files/t1.png")
    assert response.status_code == 200
    assert not path.exists()

    missing = await client.delete("/api/admin/files/t1.png")
    assert missing.status_code == 404
