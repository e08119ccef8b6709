"""Uploaded files (file manager) API routes."""
from fastapi import APIRouter, Depends, Form, HTTPException, UploadFile, File as FastAPIFile
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.schemas.backup import MessageResponse
from app.schemas.file import AssetFileResponse, AssetStatsResponse, CleanupResponse, UploadResponse
from app.services.asset_collector import AssetCollector, asset_collector
from app.services.errors import AssetNotFoundError

router = APIRouter(prefix="/api/admin/files", tags=["files"])

ALLOWED_UPLOAD_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp", "image/svg+xml"}


def get_asset_collector() -> AssetCollector:
    return asset_collector


@router.get("", response_model=list[AssetFileResponse])
async def list_files(
    db: AsyncSession = Depends(get_db),
    collector: AssetCollector = Depends(get_asset_collector),
):
    """List every uploaded file with its reference status."""
    return await collector.list_all(db)


@router.get("/stats", response_model=AssetStatsResponse)
async def file_stats(
    db: AsyncSession = Depends(get_db),
    collector: AssetCollector = Depends(get_asset_collector),
):
    return await collector.stats(db)


@router.post("/upload", response_model=UploadResponse, status_code=201)
async def upload_file(
    file: UploadFile = FastAPIFile(...),
    category: str = Form("other"),
    collector: AssetCollector = Depends(get_asset_collector),
):
    """Upload an image into a category directory."""
    if file.content_type not in ALLOWED_UPLOAD_TYPES:
        raise HTTPException(status_code=400, detail="Only image files are allowed")

    contents = await file.read()
    if len(contents) > settings.ASSET_MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds the {settings.ASSET_MAX_UPLOAD_BYTES} byte limit",
        )

    file_path = await collector.save_upload(contents, file.filename or "unnamed", category)
    return UploadResponse(file_path=file_path)


@router.delete("/{filename}", response_model=MessageResponse)
async def delete_file(
    filename: str,
    db: AsyncSession = Depends(get_db),
    collector: AssetCollector = Depends(get_asset_collector),
):
    """Delete one file. Referenced files are deleted too."""
    try:
        await collector.delete(db, filename)
    except AssetNotFoundError:
        raise HTTPException(status_code=404, detail="File not found")
    return MessageResponse(message="File deleted successfully")


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_orphans(
    db: AsyncSession = Depends(get_db),
    collector: AssetCollector = Depends(get_asset_collector),
):
    """Delete every file no database row refers to."""
    result = await collector.cleanup_orphans(db)
    return CleanupResponse(
        message=f"Cleaned up {result.deleted_count} orphaned file(s)",
        deleted_count=result.deleted_count,
        deleted_files=result.deleted_files,
        errors=result.errors,
    )
