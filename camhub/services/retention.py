"""Storage policy: free-space preflight, oldest-first recycling, retention."""

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from camhub.config import get_settings
from camhub.exceptions import InsufficientStorageError
from camhub.schemas.camera import RecordingFormat, StorageConfig

logger = logging.getLogger(__name__)

GB = 1024 ** 3
MB = 1024 ** 2

RECORDING_EXTENSIONS = frozenset(f".{fmt.value}" for fmt in RecordingFormat)

# {deviceId}_{timestamp}[_{segmentIndex}]
_FILENAME = re.compile(
    r"^(?P<device>.+)_(?P<timestamp>\d{4}-\d{2}-\d{2}T[\d-]+Z)(?:_(?P<segment>\d+))?$"
)


def storage_config_from_settings() -> StorageConfig:
    settings = get_settings()
    return StorageConfig(
        primary_path=settings.storage_root,
        min_free_space_gb=settings.min_free_space_gb,
        recycle_oldest=settings.recycle_oldest,
        max_storage_gb=settings.retention_max_gb,
        retention_days=settings.retention_days,
    )


def device_id_from_filename(path: Path) -> str:
    match = _FILENAME.match(path.stem)
    return match.group("device") if match else "unknown"


@dataclass
class StoredRecording:
    path: Path
    size: int
    modified: datetime
    device_id: str


@dataclass
class StorageStats:
    """Usage of the recording directory, totals and per device."""

    total_size_bytes: int = 0
    total_files: int = 0
    oldest_file: Optional[datetime] = None
    newest_file: Optional[datetime] = None
    devices: dict[str, dict] = field(default_factory=dict)
    free_space_gb: float = 0.0

    @property
    def total_size_gb(self) -> float:
        return self.total_size_bytes / GB

    @property
    def total_size_mb(self) -> float:
        return self.total_size_bytes / MB


def _is_hidden(path: Path, root: Path) -> bool:
    return any(part.startswith(".") for part in path.relative_to(root).parts)


class StorageService:
    """Recording directory bookkeeping for one ``StorageConfig``."""

    def __init__(self, config: Optional[StorageConfig] = None):
        self.config = config or storage_config_from_settings()

    @property
    def root(self) -> Path:
        return Path(self.config.primary_path)

    def ensure_root(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def free_space_gb(self) -> float:
        """Free space on the volume holding the storage root."""
        return shutil.disk_usage(self.ensure_root()).free / GB

    def _recordings(self) -> list[StoredRecording]:
        if not self.root.exists():
            return []
        found = []
        for path in self.root.rglob("*"):
            # .logs and other dot directories hold no recordings
            if path.suffix.lower() not in RECORDING_EXTENSIONS or _is_hidden(path, self.root):
                continue
            try:
                st = path.stat()
            except OSError:
                continue
            if path.is_file():
                found.append(StoredRecording(
                    path=path,
                    size=st.st_size,
                    modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                    device_id=device_id_from_filename(path),
                ))
        return sorted(found, key=lambda r: r.modified)

    def scan_storage(self) -> tuple[list[StoredRecording], StorageStats]:
        """Recordings oldest first, plus aggregate stats."""
        recordings = self._recordings()
        stats = StorageStats(
            total_size_bytes=sum(r.size for r in recordings),
            total_files=len(recordings),
        )
        if recordings:
            stats.oldest_file = recordings[0].modified
            stats.newest_file = recordings[-1].modified

        for rec in recordings:
            entry = stats.devices.setdefault(rec.device_id, {"size_bytes": 0, "file_count": 0})
            entry["size_bytes"] += rec.size
            entry["file_count"] += 1
        for entry in stats.devices.values():
            entry["size_gb"] = entry["size_bytes"] / GB
        return recordings, stats

    def get_stats(self) -> StorageStats:
        _, stats = self.scan_storage()
        try:
            stats.free_space_gb = self.free_space_gb()
        except OSError as e:
            logger.warning(f"Unable to read free space for {self.root}: {e}")
        return stats

    def ensure_free_space(self, protected: Iterable[Path] = ()) -> None:
        """Storage preflight before a recording opens its first file.

        When free space is below the floor and recycling is enabled the
        oldest recordings are deleted until the floor is met.

        Raises:
            InsufficientStorageError: If the floor cannot be met.
        """
        required = self.config.min_free_space_gb
        free = self.free_space_gb()
        if free >= required:
            return

        if not self.config.recycle_oldest:
            raise InsufficientStorageError(
                f"Insufficient storage space: {free:.2f}GB available, {required}GB required"
            )

        logger.warning(
            f"Free space {free:.2f}GB below {required}GB, recycling oldest recordings"
        )
        self.reclaim_space(required, protected)

        free = self.free_space_gb()
        if free < required:
            raise InsufficientStorageError(
                f"Insufficient storage space after recycling: "
                f"{free:.2f}GB available, {required}GB required"
            )

    def reclaim_space(self, required_gb: float, protected: Iterable[Path] = ()) -> tuple[int, int]:
        """Delete oldest recordings until ``required_gb`` is free.

        Returns:
            (deleted_count, freed_bytes)
        """
        keep = {Path(p).resolve() for p in protected}
        removed, freed = 0, 0
        for rec in self._recordings():
            if self.free_space_gb() >= required_gb:
                break
            if rec.path.resolve() in keep:
                continue
            count, size = self.remove([rec])
            removed += count
            freed += size

        if removed:
            logger.info(f"Recycled {removed} recordings, freed {freed / GB:.2f} GB")
        return removed, freed

    def select_expired(self, recordings: list[StoredRecording]) -> list[StoredRecording]:
        """Recordings past ``retention_days``, then oldest ones over ``max_storage_gb``.

        ``recordings`` must be sorted oldest first.
        """
        expired: list[StoredRecording] = []
        days = self.config.retention_days
        if days is not None:
            cutoff = datetime.now(timezone.utc) - timedelta(days=days)
            expired = [r for r in recordings if r.modified < cutoff]

        limit_gb = self.config.max_storage_gb
        if limit_gb is not None:
            kept = [r for r in recordings if r not in expired]
            excess = sum(r.size for r in kept) - limit_gb * GB
            for rec in kept:
                if excess <= 0:
                    break
                expired.append(rec)
                excess -= rec.size
        return expired

    def remove(self, recordings: Iterable[StoredRecording]) -> tuple[int, int]:
        """Unlink recordings; returns (deleted_count, freed_bytes)."""
        removed, freed = 0, 0
        for rec in recordings:
            try:
                rec.path.unlink()
            except OSError as e:
                logger.error(f"Could not remove recording {rec.path}: {e}")
                continue
            removed += 1
            freed += rec.size
            logger.info(f"Removed recording {rec.path.name} ({rec.size} bytes)")
            self._prune_empty_parents(rec.path.parent)
        return removed, freed

    def _prune_empty_parents(self, directory: Path) -> None:
        try:
            while directory != self.root and directory.is_dir() and not any(directory.iterdir()):
                directory.rmdir()
                logger.debug(f"Pruned empty directory {directory}")
                directory = directory.parent
        except OSError as e:
            logger.debug(f"Stopped pruning at {directory}: {e}")

    def enforce_retention(self, protected: Iterable[Path] = ()) -> dict:
        """Apply the age and size limits, skipping ``protected`` paths."""
        recordings, stats = self.scan_storage()
        keep = {Path(p).resolve() for p in protected}
        expired = [r for r in self.select_expired(recordings) if r.path.resolve() not in keep]

        removed, freed = 0, 0
        if expired:
            logger.info(f"Retention: {len(expired)} of {len(recordings)} recordings expired")
            removed, freed = self.remove(expired)

        return {
            "files_scanned": len(recordings),
            "files_deleted": removed,
            "bytes_freed": freed,
            "gb_freed": freed / GB,
            "storage_before_gb": stats.total_size_gb,
            "storage_after_gb": stats.total_size_gb - freed / GB,
        }


class RetentionMonitor:
    """Runs ``enforce_retention`` on an interval.

    ``protected`` returns the files currently being written, which are
    never deleted.
    """

    def __init__(
        self,
        service: StorageService,
        check_interval_minutes: Optional[int] = None,
        protected: Optional[Callable[[], Iterable[Path]]] = None,
    ):
        minutes = check_interval_minutes or get_settings().retention_check_interval_minutes
        self.interval = minutes * 60
        self.service = service
        self._protected = protected
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Retention monitor running every {self.interval // 60} min")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Retention monitor stopped")

    async def run_once(self) -> dict:
        protected = self._protected() if self._protected else ()
        return await asyncio.to_thread(self.service.enforce_retention, protected)

    async def _run(self) -> None:
        while True:
            try:
                result = await self.run_once()
            except Exception:
                logger.exception("Retention pass failed")
            else:
                if result["files_deleted"]:
                    logger.info(
                        f"Retention pass removed {result['files_deleted']} recordings "
                        f"({result['gb_freed']:.2f} GB)"
                    )
            await asyncio.sleep(self.interval)
