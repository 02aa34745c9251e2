"""JSON-backed media library.

The site templates read ``content/media.json`` (newest first). Every save is
mirrored into the store's kv_store table under the ``media`` key.

Entries are kept as raw dicts on write, so fields this package does not
model (or legacy entries that no longer validate) survive a prepend.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from pydantic import ValidationError

from ..models import MediaRecord

if TYPE_CHECKING:
    from ..queue.sqlite_backend import SQLiteStore

logger = logging.getLogger(__name__)

KV_KEY = "media"


class MediaLibrary:
    def __init__(self, path: Union[str, Path], store: Optional["SQLiteStore"] = None):
        self.path = Path(path)
        self.store = store

    def load(self) -> List[MediaRecord]:
        """Read the library; a missing or corrupt file reads as empty."""
        return self._validate(self.load_raw())

    def load_raw(self) -> List[Dict[str, Any]]:
        """Read the library entries as stored, without validation."""
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except ValueError:
            logger.warning("Media library %s is not valid JSON, treating as empty", self.path)
            return []
        if not isinstance(raw, list):
            logger.warning("Media library %s is not a list, treating as empty", self.path)
            return []
        return raw

    def save(self, records: List[MediaRecord]) -> None:
        data = [record.to_library_dict() for record in records]
        previous = self._mirror(data)
        try:
            self._write(data)
        except BaseException:
            self._restore_mirror(previous)
            raise

    async def prepend(self, record: MediaRecord) -> List[MediaRecord]:
        """Add a record at the front of the library and persist it.

        Existing entries are written back untouched. Either both the file and
        the kv mirror get the new list, or neither does.
        """
        raw = await asyncio.to_thread(self.load_raw)
        data = [record.to_library_dict()] + raw

        # The store connection belongs to the event loop thread
        previous = self._mirror(data)
        try:
            await asyncio.to_thread(self._write, data)
        except BaseException:
            self._restore_mirror(previous)
            raise
        return self._validate(data)

    def _mirror(self, data: list) -> Optional[str]:
        """Write the kv mirror and return the value it replaced."""
        if self.store is None:
            return None
        previous = self.store.kv_get(KV_KEY)
        self.store.kv_put_json(KV_KEY, data)
        return previous

    def _restore_mirror(self, previous: Optional[str]) -> None:
        if self.store is None:
            return
        if previous is None:
            self.store.execute("DELETE FROM kv_store WHERE key = ?", (KV_KEY,))
        else:
            self.store.kv_put(KV_KEY, previous)

    def _validate(self, raw: list) -> List[MediaRecord]:
        records = []
        for item in raw:
            try:
                records.append(MediaRecord.model_validate(item))
            except ValidationError as e:
                logger.warning("Skipping malformed media entry in %s: %s", self.path, e)
        return records

    def _write(self, data: list) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
