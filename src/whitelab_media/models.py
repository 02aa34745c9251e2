"""Pydantic models for configuration and media library records."""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class StorageConfig(BaseModel):
    """Embedded datastore and content file locations."""

    db_path: str = Field(
        default="content/white-lab.sqlite", description="SQLite file holding kv_store and media_jobs"
    )
    busy_timeout_ms: int = Field(
        default=5000, ge=0, description="How long a lock-contending writer waits before failing"
    )
    media_library_path: str = Field(
        default="content/media.json", description="JSON file with the media library list"
    )


class WorkerConfig(BaseModel):
    """Media worker polling parameters."""

    poll_interval_s: float = Field(default=1.2, gt=0.0, description="Seconds between worker ticks")
    stalled_minutes: int = Field(
        default=30, ge=1, description="Processing jobs older than this are re-offered as pending"
    )
    invalidate_prefix: str = Field(
        default="page:", description="Page cache prefix cleared after a media import"
    )


class CacheConfig(BaseModel):
    """Stale-while-revalidate page cache windows."""

    fresh_ttl_s: float = Field(default=30.0, ge=0.0, description="Serve without revalidation")
    stale_ttl_s: float = Field(
        default=180.0, ge=0.0, description="Serve stale while a background render runs"
    )


class MediaConfig(BaseModel):
    """Media import, archival and optimization settings."""

    source_dir: str = Field(default="public/media/source", description="Archive of original files")
    optimized_dir: str = Field(
        default="public/media/optimized", description="Web-ready derivatives"
    )
    source_url_prefix: str = Field(default="/media/source", description="Public URL of source_dir")
    optimized_url_prefix: str = Field(
        default="/media/optimized", description="Public URL of optimized_dir"
    )
    site_name: str = Field(default="White Lab", description="Used in generated alt text")
    user_agent: str = Field(default="Mozilla/5.0", description="User agent for URL imports")
    fetch_timeout_s: float = Field(default=60.0, gt=0.0, description="HTTP timeout for URL imports")

    cwebp_path: Optional[str] = Field(
        default=None, description="cwebp executable (None = look up on PATH)"
    )
    ffmpeg_path: Optional[str] = Field(
        default=None, description="ffmpeg executable (None = imageio-ffmpeg binary)"
    )
    webp_quality: int = Field(default=82, ge=0, le=100, description="cwebp -q value")
    video_crf: int = Field(
        default=28, ge=0, le=51, description="Constant Rate Factor (0-51, lower = better quality)"
    )
    video_preset: Literal[
        "ultrafast",
        "superfast",
        "veryfast",
        "faster",
        "fast",
        "medium",
        "slow",
        "slower",
        "veryslow",
    ] = Field(default="veryfast", description="Encoding speed preset (faster = larger files)")
    audio_bitrate: str = Field(default="96k", description="AAC bitrate for transcoded videos")
    tool_timeout_s: int = Field(
        default=1800, gt=0, description="Maximum duration of one transcoder run in seconds"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )


class WhiteLabConfig(BaseModel):
    """Complete application configuration with validation."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "WhiteLabConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)


class MediaRecord(BaseModel):
    """One entry of the media library, as rendered by the site templates."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = ""
    alt: str = ""
    source: str = "web"
    type: Literal["image", "video"]
    original_url: str = Field(default="", alias="originalUrl")
    local_original: str = Field(default="", alias="localOriginal")
    local_optimized: str = Field(default="", alias="localOptimized")
    created_at: str = Field(default="", alias="createdAt")

    def to_library_dict(self) -> dict:
        return self.model_dump(by_alias=True)
