"""Process-level wiring of the media pipeline.

Builds every component once from a resolved config so the HTTP layer and
the CLI share the same store, queue, cache and worker.

Usage:
    runtime = build_runtime(resolve_config())
    job_id = runtime.queue.enqueue("import_url", {"url": "https://..."})
    runtime.worker.start()        # inside a running event loop
    ...
    await runtime.worker.stop()
    runtime.close()
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from .media.library import MediaLibrary
from .media.processing import MediaProcessor
from .models import WhiteLabConfig
from .page_cache import PageCache
from .queue import MediaWorker, SQLiteJobQueue, SQLiteStore


@dataclass
class Runtime:
    config: WhiteLabConfig
    store: SQLiteStore
    queue: SQLiteJobQueue
    processor: MediaProcessor
    library: MediaLibrary
    page_cache: PageCache
    worker: MediaWorker

    def close(self) -> None:
        self.store.close()


def build_runtime(
    config: WhiteLabConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    page_cache: Optional[PageCache] = None,
) -> Runtime:
    """Construct store, queue, processor, library, cache and worker.

    Args:
        config: Resolved application config
        transport: Optional httpx transport for URL imports
        page_cache: Existing cache to share (a new one is built from config otherwise)
    """
    store = SQLiteStore(config.storage.db_path, busy_timeout_ms=config.storage.busy_timeout_ms)
    queue = SQLiteJobQueue(store)

    processor = MediaProcessor(config.media, transport=transport)
    processor.ensure_dirs()

    library = MediaLibrary(config.storage.media_library_path, store=store)
    cache = page_cache or PageCache(
        fresh_ttl_s=config.cache.fresh_ttl_s, stale_ttl_s=config.cache.stale_ttl_s
    )
    worker = MediaWorker(queue, processor, library, cache, config.worker)

    return Runtime(
        config=config,
        store=store,
        queue=queue,
        processor=processor,
        library=library,
        page_cache=cache,
        worker=worker,
    )
