import httpx
import pytest

from whitelab_media.media.library import MediaLibrary
from whitelab_media.media.processing import MediaProcessor
from whitelab_media.models import MediaConfig, WorkerConfig
from whitelab_media.page_cache import PageCache
from whitelab_media.queue import MediaWorker, SQLiteJobQueue, SQLiteStore

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
MP4_BYTES = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 64


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def remote_media_handler(request: httpx.Request) -> httpx.Response:
    """Fake remote server for URL imports."""
    path = request.url.path
    if path == "/photo.png":
        return httpx.Response(200, headers={"content-type": "image/png"}, content=PNG_BYTES)
    if path == "/clip.mp4":
        return httpx.Response(200, headers={"content-type": "video/mp4"}, content=MP4_BYTES)
    if path == "/page.html":
        return httpx.Response(
            200, headers={"content-type": "text/html; charset=utf-8"}, content=b"<html></html>"
        )
    if path == "/broken":
        return httpx.Response(500, content=b"oops")
    return httpx.Response(404, content=b"not found")


@pytest.fixture
def store(tmp_path):
    """SQLiteStore on a temporary file."""
    db = SQLiteStore(tmp_path / "content" / "test.sqlite")
    yield db
    db.close()


@pytest.fixture
def queue(store):
    return SQLiteJobQueue(store)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def page_cache(clock):
    return PageCache(fresh_ttl_s=30, stale_ttl_s=180, clock=clock)


@pytest.fixture
def media_config(tmp_path):
    """Media dirs under tmp_path; tool paths point nowhere so optimization falls back."""
    return MediaConfig(
        source_dir=str(tmp_path / "public" / "media" / "source"),
        optimized_dir=str(tmp_path / "public" / "media" / "optimized"),
        cwebp_path=str(tmp_path / "bin" / "cwebp"),
        ffmpeg_path=str(tmp_path / "bin" / "ffmpeg"),
    )


@pytest.fixture
def processor(media_config, media_transport):
    return MediaProcessor(media_config, transport=media_transport)


@pytest.fixture
def library(tmp_path, store):
    return MediaLibrary(tmp_path / "content" / "media.json", store=store)


@pytest.fixture
def worker(queue, processor, library, page_cache):
    return MediaWorker(queue, processor, library, page_cache, WorkerConfig(poll_interval_s=0.01))


@pytest.fixture
def staged_upload(tmp_path):
    """Factory writing a file into a fake upload staging directory."""
    uploads = tmp_path / "uploads"
    uploads.mkdir(exist_ok=True)

    def _make(name: str, content: bytes = PNG_BYTES):
        path = uploads / name
        path.write_bytes(content)
        return path

    return _make


@pytest.fixture
def media_transport():
    return httpx.MockTransport(remote_media_handler)


@pytest.fixture
def png_bytes():
    return PNG_BYTES


@pytest.fixture
def mp4_bytes():
    return MP4_BYTES
