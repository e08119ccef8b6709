"""Backup and restore API routes."""
import logging

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File as FastAPIFile
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.backup import (
    BackupCreate,
    BackupCreateResponse,
    BackupPrune,
    BackupPruneResponse,
    BackupResponse,
    MessageResponse,
    RestoreResponse,
)
from app.services.backup import (
    BackupCatalog,
    BackupEntry,
    RestoreEngine,
    RestoreReport,
    SnapshotEncoder,
    backup_catalog,
    restore_engine,
    snapshot_encoder,
)
from app.services.errors import (
    ArchiveNotFoundError,
    BackupError,
    BackupIOError,
    FormatUnrecognizedError,
    SizeLimitExceededError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/backups", tags=["backups"])


def get_backup_catalog() -> BackupCatalog:
    return backup_catalog


def get_snapshot_encoder() -> SnapshotEncoder:
    return snapshot_encoder


def get_restore_engine() -> RestoreEngine:
    return restore_engine


def _to_response(entry: BackupEntry) -> dict:
    return {
        "filename": entry.filename,
        "metadata": entry.metadata,
        "size_bytes": entry.size,
    }


def _restore_response(report: RestoreReport) -> RestoreResponse:
    response = RestoreResponse.model_validate(report)
    if report.warnings:
        response.message = f"Backup restored with {len(report.warnings)} warning(s)"
    return response


def _raise_http(e: Exception):
    if isinstance(e, ArchiveNotFoundError):
        raise HTTPException(status_code=404, detail="Backup file not found")
    if isinstance(e, FormatUnrecognizedError):
        raise HTTPException(status_code=400, detail=f"Unrecognized backup format: {e}")
    if isinstance(e, SizeLimitExceededError):
        raise HTTPException(status_code=413, detail=str(e))
    raise HTTPException(status_code=500, detail=f"Failed to restore backup: {e}")


@router.get("", response_model=list[BackupResponse])
async def list_backups(catalog: BackupCatalog = Depends(get_backup_catalog)):
    """List stored backups, newest first."""
    return [_to_response(entry) for entry in await catalog.list_all()]


@router.post("/create", response_model=BackupCreateResponse, status_code=201)
async def create_backup(
    body: BackupCreate | None = None,
    db: AsyncSession = Depends(get_db),
    encoder: SnapshotEncoder = Depends(get_snapshot_encoder),
):
    """Snapshot the database, uploads and site settings into a new backup file."""
    try:
        result = await encoder.create(db, body.description if body else None)
    except BackupIOError as e:
        logger.error("Backup creation failed: %s", e)
        raise HTTPException(status_code=500, detail=f"Failed to create backup: {e}")
    return BackupCreateResponse(
        filename=result.filename,
        metadata=result.metadata,
        warnings=result.warnings,
    )


@router.get("/download/{filename}")
async def download_backup(
    filename: str,
    catalog: BackupCatalog = Depends(get_backup_catalog),
):
    try:
        path = catalog.path_for(filename)
    except ArchiveNotFoundError:
        raise HTTPException(status_code=404, detail="Backup file not found")
    return FileResponse(path=path, filename=filename, media_type="application/octet-stream")


@router.delete("/{filename}", response_model=MessageResponse)
async def delete_backup(
    filename: str,
    catalog: BackupCatalog = Depends(get_backup_catalog),
):
    try:
        await catalog.delete(filename)
    except ArchiveNotFoundError:
        raise HTTPException(status_code=404, detail="Backup file not found")
    return MessageResponse(message="Backup deleted successfully")


@router.post("/restore", response_model=RestoreResponse)
async def restore_uploaded_backup(
    backup: UploadFile = FastAPIFile(...),
    db: AsyncSession = Depends(get_db),
    engine: RestoreEngine = Depends(get_restore_engine),
):
    """Restore from an uploaded backup file. Replaces all current data."""
    try:
        report = await engine.restore_upload(db, backup)
    except BackupError as e:
        _raise_http(e)
    except Exception as e:
        logger.exception("Restore of uploaded backup %s failed", backup.filename)
        _raise_http(e)
    return _restore_response(report)


@router.post("/{filename}/restore", response_model=RestoreResponse)
async def restore_stored_backup(
    filename: str,
    db: AsyncSession = Depends(get_db),
    catalog: BackupCatalog = Depends(get_backup_catalog),
    engine: RestoreEngine = Depends(get_restore_engine),
):
    """Restore from a backup already in the backup directory."""
    try:
        report = await engine.restore(db, catalog.path_for(filename))
    except BackupError as e:
        _raise_http(e)
    except Exception as e:
        logger.exception("Restore of %s failed", filename)
        _raise_http(e)
    return _restore_response(report)


@router.post("/prune", response_model=BackupPruneResponse)
async def prune_backups(
    body: BackupPrune,
    catalog: BackupCatalog = Depends(get_backup_catalog),
):
    """Delete all but the newest backups."""
    deleted = await catalog.prune(body.keep)
    return BackupPruneResponse(
        message=f"Deleted {deleted} old backup(s)",
        deleted_count=deleted,
    )
