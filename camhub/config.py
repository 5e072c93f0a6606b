"""Runtime settings, read from ``CAMHUB_*`` environment variables or ``.env``."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Every tunable of the hub. Durations are in seconds unless the name says otherwise."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CAMHUB_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # API
    app_name: str = "CamHub"
    api_prefix: str = "/api"

    # Storage
    storage_root: Path = Path("./storage")
    min_free_space_gb: float = 5.0
    recycle_oldest: bool = True

    # Retention (None disables a limit)
    retention_days: Optional[int] = 30
    retention_max_gb: Optional[float] = None
    retention_check_interval_minutes: int = 60

    # Recording defaults
    recording_format: str = "mp4"
    max_file_size_mb: Optional[int] = 1024
    segment_duration_seconds: Optional[int] = None
    max_concurrent_recordings: int = 10
    recovery_delay_seconds: float = 2.0

    # Streaming
    ffmpeg_path: str = "ffmpeg"
    stream_buffer_max_bytes: int = 10 * 1024 * 1024
    stream_restart_attempts: int = 3
    stream_restart_delay_seconds: float = 2.0
    stream_restart_backoff: float = 2.0

    # Discovery
    discovery_interval_seconds: float = 30.0
    discovery_stale_cutoff_seconds: float = 120.0
    local_poll_interval_seconds: float = 5.0
    onvif_discovery_timeout_ms: int = 5000

    # Network scan (comma-separated lists)
    scan_ports: str = "554,8554,80,8080"
    scan_protocols: str = "rtsp,http"
    scan_timeout_ms: int = 2000
    scan_concurrency: int = 10

    # Companion device gateway
    companion_host: str = "0.0.0.0"
    companion_port: int = 8765
    companion_service_name: str = "CamHub Companion Gateway"
    companion_protocol_version: str = "1.0.0"
    companion_ping_timeout_seconds: float = 5.0

    # Credential store
    encryption_key: str = ""  # urlsafe base64 Fernet key; empty means an ephemeral key

    @property
    def scan_port_list(self) -> list[int]:
        """Scan ports parsed from the comma-separated setting."""
        return [int(p) for p in self.scan_ports.split(",") if p.strip()]

    @property
    def scan_protocol_list(self) -> list[str]:
        """Scan protocols parsed from the comma-separated setting."""
        return [p.strip().lower() for p in self.scan_protocols.split(",") if p.strip()]


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings; tests clear this cache after patching the environment."""
    return Settings()
