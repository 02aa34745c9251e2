"""Media import and optimization.

Queue-agnostic operations that take a resolved input (a URL or a staged
upload), archive the original under ``source_dir`` and produce a web-ready
derivative under ``optimized_dir``. Each returns a MediaRecord for the
caller to store in the media library.

Optimization never fails a job on its own: when cwebp/ffmpeg is missing,
times out or errors, the original bytes are copied to the optimized
location under their original extension.
"""

import asyncio
import logging
import mimetypes
import shutil
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Literal, Optional
from urllib.parse import urlparse

import httpx

from ..models import MediaConfig, MediaRecord
from .tool_runner import ToolRunner

logger = logging.getLogger(__name__)


class MediaProcessingError(Exception):
    """Base error for media that cannot be imported."""


class MediaFetchError(MediaProcessingError):
    """Remote server answered with a non-2xx status."""

    def __init__(self, status_code: int):
        super().__init__(f"Failed to fetch media: HTTP {status_code}")
        self.status_code = status_code


class UnsupportedMediaError(MediaProcessingError):
    """Content is neither an image nor a video."""


class MediaSource(str, Enum):
    INSTAGRAM = "instagram"
    TWOGIS = "2gis"
    YANDEX = "yandex"
    VK = "vk"
    YOUTUBE = "youtube"
    UPLOAD = "upload"
    WEB = "web"


SOURCE_LABELS = {
    MediaSource.INSTAGRAM: "Instagram",
    MediaSource.TWOGIS: "2GIS",
    MediaSource.YANDEX: "Yandex",
    MediaSource.VK: "VK",
    MediaSource.YOUTUBE: "YouTube",
    MediaSource.UPLOAD: "an upload",
    MediaSource.WEB: "the web",
}

MediaType = Literal["image", "video"]


@dataclass
class UploadedFile:
    """A file the HTTP layer staged in its temporary upload directory."""
    path: str
    originalname: str
    mimetype: str


@dataclass
class OptimizeResult:
    type: MediaType
    optimized_file: Path
    ext: str
    fallback: bool = False


def detect_source(url: str) -> MediaSource:
    """Classify a URL by hostname; used only for display."""
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return MediaSource.WEB

    if "instagram" in host:
        return MediaSource.INSTAGRAM
    if "2gis" in host:
        return MediaSource.TWOGIS
    if "yandex" in host:
        return MediaSource.YANDEX
    if "vk.com" in host or "vk.ru" in host:
        return MediaSource.VK
    if "youtube" in host:
        return MediaSource.YOUTUBE
    return MediaSource.WEB


def source_label(source: MediaSource) -> str:
    return SOURCE_LABELS.get(MediaSource(source), SOURCE_LABELS[MediaSource.WEB])


def classify_mime(content_type: str) -> Optional[MediaType]:
    """Return 'image' or 'video' for a MIME/content type, else None."""
    mime = (content_type or "").split(";")[0].strip().lower()
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video"
    return None


def extension_for(content_type: str, media_type: MediaType) -> str:
    """File extension (without dot) for a response content type."""
    mime = (content_type or "").split(";")[0].strip().lower()
    guessed = mimetypes.guess_extension(mime) if mime else None
    if guessed:
        return guessed.lstrip(".")
    subtype = mime.split("/", 1)[1] if "/" in mime else ""
    subtype = subtype.split("+")[0]
    if subtype.isalnum():
        return subtype
    return "jpg" if media_type == "image" else "mp4"


def new_file_base() -> str:
    """Timestamp plus random suffix, unique enough for one site's uploads."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


class MediaProcessor:
    """Imports remote media and staged uploads, then optimizes them."""

    def __init__(
        self,
        config: Optional[MediaConfig] = None,
        runner: Optional[ToolRunner] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            config: Directories, URL prefixes and tool settings
            runner: Transcoder runner (built from config when omitted)
            transport: httpx transport override, e.g. httpx.MockTransport in tests
        """
        self.config = config or MediaConfig()
        self.source_dir = Path(self.config.source_dir)
        self.optimized_dir = Path(self.config.optimized_dir)
        self.runner = runner or ToolRunner(
            cwebp_path=self.config.cwebp_path,
            ffmpeg_path=self.config.ffmpeg_path,
            global_timeout_s=self.config.tool_timeout_s,
            kill_grace_period_s=self.config.kill_grace_period_s,
        )
        self.transport = transport

    def ensure_dirs(self) -> None:
        self.source_dir.mkdir(parents=True, exist_ok=True)
        self.optimized_dir.mkdir(parents=True, exist_ok=True)

    async def import_from_url(self, url: str, title: str = "") -> MediaRecord:
        """Download a remote image/video, archive it and optimize it.

        Raises:
            MediaFetchError: non-2xx response
            UnsupportedMediaError: content type is not image/* or video/*
            httpx.HTTPError: connection problems or timeout
        """
        source = detect_source(url)

        async with httpx.AsyncClient(
            transport=self.transport,
            follow_redirects=True,
            timeout=self.config.fetch_timeout_s,
            headers={"user-agent": self.config.user_agent},
        ) as client:
            response = await client.get(url)

        if not response.is_success:
            raise MediaFetchError(response.status_code)

        content_type = response.headers.get("content-type", "")
        media_type = classify_mime(content_type)
        if media_type is None:
            raise UnsupportedMediaError(f"Unsupported media type: {content_type or 'unknown'}")

        self.ensure_dirs()
        file_base = new_file_base()
        source_file = self.source_dir / f"{file_base}.{extension_for(content_type, media_type)}"
        await asyncio.to_thread(source_file.write_bytes, response.content)

        optimized = await self._optimize_or_discard(source_file, file_base, media_type)

        return MediaRecord(
            id=f"{source.value}-{file_base}",
            title=title or "Imported media",
            alt=f"{self.config.site_name}, media from {source_label(source)}",
            source=source.value,
            type=optimized.type,
            original_url=url,
            local_original=f"{self.config.source_url_prefix}/{source_file.name}",
            local_optimized=f"{self.config.optimized_url_prefix}/{optimized.optimized_file.name}",
            created_at=_now_iso(),
        )

    async def process_uploaded_file(self, file: UploadedFile, title: str = "") -> MediaRecord:
        """Archive a staged upload and optimize it.

        The staged file itself is left in place; deleting it is the caller's job.

        Raises:
            UnsupportedMediaError: MIME type is not image/* or video/*
            FileNotFoundError: staged file is gone
        """
        media_type = classify_mime(file.mimetype)
        if media_type is None:
            raise UnsupportedMediaError(f"Unsupported upload format: {file.mimetype or 'unknown'}")

        self.ensure_dirs()
        file_base = new_file_base()
        source_ext = Path(file.originalname).suffix or ".bin"
        source_file = self.source_dir / f"{file_base}{source_ext}"
        await asyncio.to_thread(shutil.copyfile, file.path, source_file)

        optimized = await self._optimize_or_discard(source_file, file_base, media_type)

        return MediaRecord(
            id=f"{MediaSource.UPLOAD.value}-{file_base}",
            title=title or file.originalname,
            alt=f"{self.config.site_name}, media from {source_label(MediaSource.UPLOAD)}",
            source=MediaSource.UPLOAD.value,
            type=optimized.type,
            original_url="",
            local_original=f"{self.config.source_url_prefix}/{source_file.name}",
            local_optimized=f"{self.config.optimized_url_prefix}/{optimized.optimized_file.name}",
            created_at=_now_iso(),
        )

    def discard_outputs(self, record: MediaRecord) -> None:
        """Remove the archived and optimized files a record points at."""
        for url, prefix, directory in (
            (record.local_original, self.config.source_url_prefix, self.source_dir),
            (record.local_optimized, self.config.optimized_url_prefix, self.optimized_dir),
        ):
            if url.startswith(f"{prefix}/"):
                (directory / Path(url).name).unlink(missing_ok=True)

    async def _optimize_or_discard(
        self, source_file: Path, file_base: str, media_type: MediaType
    ) -> OptimizeResult:
        """Optimize; if that raises, remove the archived source before re-raising."""
        try:
            if media_type == "image":
                return await self.optimize_image(source_file, file_base)
            return await self.optimize_video(source_file, file_base)
        except BaseException:
            source_file.unlink(missing_ok=True)
            raise

    async def optimize_image(self, input_file: Path, output_base: str) -> OptimizeResult:
        """Convert to WEBP, or copy the original when cwebp is unusable."""
        optimized_file = self.optimized_dir / f"{output_base}.webp"
        result = await asyncio.to_thread(
            self.runner.convert_to_webp,
            str(input_file),
            str(optimized_file),
            self.config.webp_quality,
        )
        if result.success:
            return OptimizeResult(type="image", optimized_file=optimized_file, ext="webp")

        logger.warning("Image optimization skipped for %s: %s", input_file.name, result.message)
        return await self._copy_fallback("image", input_file, output_base, optimized_file, ".jpg")

    async def optimize_video(self, input_file: Path, output_base: str) -> OptimizeResult:
        """Transcode to H.264 MP4, or copy the original when ffmpeg is unusable."""
        optimized_file = self.optimized_dir / f"{output_base}.mp4"
        result = await asyncio.to_thread(
            self.runner.transcode_video,
            str(input_file),
            str(optimized_file),
            self.config.video_crf,
            self.config.video_preset,
            self.config.audio_bitrate,
        )
        if result.success:
            return OptimizeResult(type="video", optimized_file=optimized_file, ext="mp4")

        logger.warning("Video optimization skipped for %s: %s", input_file.name, result.message)
        return await self._copy_fallback("video", input_file, output_base, optimized_file, ".mp4")

    async def _copy_fallback(
        self,
        media_type: MediaType,
        input_file: Path,
        output_base: str,
        failed_output: Path,
        default_ext: str,
    ) -> OptimizeResult:
        # A failed encoder may leave a truncated file behind
        failed_output.unlink(missing_ok=True)

        ext = input_file.suffix or default_ext
        fallback = self.optimized_dir / f"{output_base}{ext}"
        await asyncio.to_thread(shutil.copyfile, input_file, fallback)
        return OptimizeResult(
            type=media_type, optimized_file=fallback, ext=ext.lstrip("."), fallback=True
        )
