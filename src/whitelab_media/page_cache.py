"""In-memory stale-while-revalidate page cache.

Each entry has two windows: until ``fresh_until`` it is served as a hit;
until ``stale_until`` it is served as stale while one background render
refreshes it; after that it is evicted on read.

The cache is a plain dict. It is only touched from the event loop, so it
needs no locking.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Literal, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    html: str
    fresh_until: float
    stale_until: float
    revalidating: bool = False


@dataclass(frozen=True)
class CacheLookup:
    status: Literal["hit", "stale"]
    html: str


@dataclass
class RenderedPage:
    html: str
    status_code: int = 200


class PageCache:
    """Time-windowed page cache keyed by logical page identity (e.g. ``page:/``)."""

    def __init__(
        self,
        fresh_ttl_s: float = 30.0,
        stale_ttl_s: float = 180.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            fresh_ttl_s: Seconds an entry is served without revalidation (min 1)
            stale_ttl_s: Extra seconds it may be served stale (min 1)
            clock: Monotonic seconds; inject a fake clock in tests
        """
        self.fresh_ttl_s = fresh_ttl_s
        self.stale_ttl_s = stale_ttl_s
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[CacheLookup]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        now = self.clock()
        if now <= entry.fresh_until:
            return CacheLookup(status="hit", html=entry.html)
        if now <= entry.stale_until:
            return CacheLookup(status="stale", html=entry.html)

        del self._entries[key]
        return None

    def put(self, key: str, html: str) -> None:
        now = self.clock()
        fresh_until = now + max(1.0, self.fresh_ttl_s)
        self._entries[key] = CacheEntry(
            html=html,
            fresh_until=fresh_until,
            stale_until=fresh_until + max(1.0, self.stale_ttl_s),
        )

    def is_revalidating(self, key: str) -> bool:
        entry = self._entries.get(key)
        return bool(entry and entry.revalidating)

    def set_revalidating(self, key: str, value: bool) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            entry.revalidating = value

    def invalidate(self, prefix: Optional[str] = None) -> int:
        """Drop every entry, or only keys starting with ``prefix``.

        Returns:
            Number of entries removed
        """
        if not prefix:
            removed = len(self._entries)
            self._entries.clear()
            return removed

        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries


# Strong references to in-flight revalidations so they are not garbage collected
_background_tasks: Set["asyncio.Task[None]"] = set()


async def render_with_cache(
    cache: PageCache,
    key: str,
    render: Callable[[], Awaitable[RenderedPage]],
    allow_cache: bool = True,
) -> RenderedPage:
    """Serve a page through the cache.

    - fresh hit: cached html, no render
    - stale hit: cached html now; one background render refreshes the entry
    - miss: render, cache it if the status is 200, return it

    Admin sessions pass ``allow_cache=False`` and always render.
    """
    if allow_cache:
        cached = cache.get(key)
        if cached is not None and cached.status == "hit":
            return RenderedPage(html=cached.html)

        if cached is not None and cached.status == "stale":
            if not cache.is_revalidating(key):
                cache.set_revalidating(key, True)
                task = asyncio.create_task(_revalidate(cache, key, render))
                _background_tasks.add(task)
                task.add_done_callback(_background_tasks.discard)
            return RenderedPage(html=cached.html)

    page = await render()
    if allow_cache and page.status_code == 200:
        cache.put(key, page.html)
    return page


async def _revalidate(
    cache: PageCache, key: str, render: Callable[[], Awaitable[RenderedPage]]
) -> None:
    try:
        page = await render()
        if page.status_code == 200:
            cache.put(key, page.html)
    except Exception:
        logger.exception("Background render failed for %s", key)
    finally:
        cache.set_revalidating(key, False)
