"""Single-flight media worker.

Drives the job queue one job at a time on a fixed polling interval:
- Stall recycling before every claim (crash recovery)
- Exhaustive dispatch over the tagged job payload
- Media library update and page cache invalidation on success
- Failure recorded on the job row; nothing escapes a tick
- Upload temp files removed once the outcome is recorded; a cancelled
  tick leaves the file for the recycled job
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from ..media.library import MediaLibrary
from ..media.processing import MediaProcessor, UploadedFile
from ..models import MediaRecord, WorkerConfig
from ..page_cache import PageCache
from .backends import JobQueueBackend
from .models import (
    ImportUrlPayload,
    JobType,
    MediaJob,
    UploadFilePayload,
    parse_job_payload,
)
from .sqlite_backend import is_lock_error

logger = logging.getLogger(__name__)

CLAIM_ATTEMPTS = 3


def error_message(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or f"{type(exc).__name__}: media job failed"


class MediaWorker:
    """Polls the queue and processes at most one job per tick.

    The lease is an asyncio.Lock owned by this worker: a tick that finds it
    held is skipped, so overlapping timer ticks never process two jobs at
    once. The lease is released on every exit path.
    """

    def __init__(
        self,
        queue: JobQueueBackend,
        processor: MediaProcessor,
        library: MediaLibrary,
        page_cache: PageCache,
        config: Optional[WorkerConfig] = None,
    ):
        self.queue = queue
        self.processor = processor
        self.library = library
        self.page_cache = page_cache
        self.config = config or WorkerConfig()

        self._lease = asyncio.Lock()
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def busy(self) -> bool:
        return self._lease.locked()

    async def tick(self) -> Optional[MediaJob]:
        """Run one polling step.

        Returns:
            The job claimed in this tick, or None if the tick was skipped or
            nothing was pending
        """
        if self._lease.locked():
            logger.debug("Previous tick still running, skipping")
            return None

        async with self._lease:
            return await self._process_one()

    async def _process_one(self) -> Optional[MediaJob]:
        job: Optional[MediaJob] = None
        recorded = False
        try:
            self.queue.recycle_stalled(self.config.stalled_minutes)
            job = await self._claim()
            if job is None:
                return None

            record = await self._dispatch(job)
            try:
                await self.library.prepend(record)
            except Exception:
                await asyncio.to_thread(self.processor.discard_outputs, record)
                raise
            self.page_cache.invalidate(self.config.invalidate_prefix)
            self.queue.mark_done(job.id)
            recorded = True
            logger.info("Media job #%d done: %s", job.id, record.id)
            return job

        except Exception as e:
            if job is None:
                logger.exception("Media worker tick failed before claiming a job")
                return None

            logger.exception("Media job #%d failed", job.id)
            try:
                self.queue.mark_failed(job.id, error_message(e))
                recorded = True
            except Exception:
                logger.exception("Could not record failure of media job #%d", job.id)
            return job

        finally:
            if recorded and job.job_type == JobType.UPLOAD_FILE:
                await self._discard_upload(job.payload.get("path"))

    async def _claim(self) -> Optional[MediaJob]:
        """Claim one job, backing off on lock contention without blocking the loop."""
        for attempt in range(CLAIM_ATTEMPTS):
            try:
                return self.queue.claim_pending_job(max_retries=1)
            except Exception as e:
                if not is_lock_error(e) or attempt == CLAIM_ATTEMPTS - 1:
                    raise
                logger.debug("Queue locked, retrying claim")
                await asyncio.sleep(0.1 * (2 ** attempt))
        return None

    async def _dispatch(self, job: MediaJob) -> MediaRecord:
        payload = parse_job_payload(job)

        if isinstance(payload, ImportUrlPayload):
            return await self.processor.import_from_url(payload.url, payload.title)

        if isinstance(payload, UploadFilePayload):
            upload = UploadedFile(
                path=payload.path,
                originalname=payload.originalname,
                mimetype=payload.mimetype,
            )
            return await self.processor.process_uploaded_file(upload, payload.title)

        raise ValueError(f"Unknown media job type: {job.job_type}")

    async def _discard_upload(self, path: Optional[str]) -> None:
        if not path or not isinstance(path, str):
            return
        try:
            await asyncio.to_thread(Path(path).unlink, missing_ok=True)
        except OSError as e:
            logger.warning("Could not delete staged upload %s: %s", path, e)

    async def drain(self, max_jobs: Optional[int] = None) -> int:
        """Tick until nothing is pending (or max_jobs were processed).

        Returns:
            Number of jobs processed
        """
        processed = 0
        while max_jobs is None or processed < max_jobs:
            job = await self.tick()
            if job is None:
                break
            processed += 1
        return processed

    async def run_forever(self) -> None:
        """Tick every poll_interval_s until cancelled."""
        logger.info("Media worker polling every %.1fs", self.config.poll_interval_s)
        while True:
            await self.tick()
            await asyncio.sleep(self.config.poll_interval_s)

    def start(self) -> "asyncio.Task[None]":
        """Start the polling loop as a background task on the running loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
