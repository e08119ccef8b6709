"""Uploaded asset (file manager) response schemas."""
from datetime import datetime
from typing import Optional
from app.schemas.base import CamelModel, CamelORMModel


class AssetFileResponse(CamelORMModel):
    filename: str
    relative_path: str
    path: str
    size: int
    last_modified: datetime
    type: str
    category: str
    is_referenced: bool
    referenced_by: Optional[list[str]] = None


class AssetStatsResponse(CamelORMModel):
    total_files: int
    total_size: int
    referenced_files: int
    orphaned_files: int
    categories: dict[str, int]


class CleanupResponse(CamelORMModel):
    message: str = "Cleanup completed"
    deleted_count: int
    deleted_files: list[str]
    errors: list[str] = []


class UploadResponse(CamelModel):
    message: str = "File uploaded successfully"
    file_path: str
