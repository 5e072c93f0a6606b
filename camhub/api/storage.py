"""Recording storage usage and retention endpoints."""

import asyncio
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from camhub.api.deps import get_hub
from camhub.schemas.base import UTCBaseModel
from camhub.services.hub import CameraHub

router = APIRouter(prefix="/storage", tags=["storage"])


class DeviceUsage(BaseModel):
    device_id: str
    size_bytes: int
    size_gb: float
    file_count: int


class StoragePolicy(BaseModel):
    min_free_space_gb: float
    recycle_oldest: bool
    max_storage_gb: Optional[float] = None
    retention_days: Optional[int] = None


class StorageUsage(UTCBaseModel):
    """Recording directory usage with the policy applied to it."""

    path: str
    total_size_bytes: int
    total_size_gb: float
    total_size_mb: float
    total_files: int
    free_space_gb: float
    min_free_space_gb: float
    oldest_file: Optional[datetime] = None
    newest_file: Optional[datetime] = None
    policy: StoragePolicy
    devices: list[DeviceUsage]


class CleanupResult(BaseModel):
    files_scanned: int
    files_deleted: int
    bytes_freed: int
    gb_freed: float
    storage_before_gb: float
    storage_after_gb: float


@router.get("/stats", response_model=StorageUsage)
async def get_storage_stats(hub: CameraHub = Depends(get_hub)) -> StorageUsage:
    stats = await asyncio.to_thread(hub.storage.get_stats)
    config = hub.storage.config
    return StorageUsage(
        path=str(hub.storage.root),
        total_size_bytes=stats.total_size_bytes,
        total_size_gb=stats.total_size_gb,
        total_size_mb=stats.total_size_mb,
        total_files=stats.total_files,
        free_space_gb=stats.free_space_gb,
        min_free_space_gb=config.min_free_space_gb,
        oldest_file=stats.oldest_file,
        newest_file=stats.newest_file,
        policy=StoragePolicy(
            min_free_space_gb=config.min_free_space_gb,
            recycle_oldest=config.recycle_oldest,
            max_storage_gb=config.max_storage_gb,
            retention_days=config.retention_days,
        ),
        devices=[
            DeviceUsage(device_id=device_id, **usage)
            for device_id, usage in sorted(stats.devices.items())
        ],
    )


@router.post("/cleanup", response_model=CleanupResult)
async def run_retention_cleanup(hub: CameraHub = Depends(get_hub)) -> CleanupResult:
    """Apply retention now. Files being recorded are kept."""
    return CleanupResult(**await hub.retention_monitor.run_once())
