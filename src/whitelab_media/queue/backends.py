from __future__ import annotations

"""Abstract base class for the media job queue.

The SQLite implementation is the only backend today; keeping the interface
separate lets the worker and its tests depend on the operations rather than
on the storage engine.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union

if TYPE_CHECKING:
    from pydantic import BaseModel

    from .models import JobType, MediaJob


class JobQueueBackend(ABC):
    """Durable media job queue.

    Implementations must provide:
    - FIFO, atomic claim of one pending job
    - Terminal marks that never resurrect a job
    - Crash recovery via recycle_stalled()
    """

    @abstractmethod
    def enqueue(
        self, job_type: Union["JobType", str], payload: Union[Mapping[str, Any], "BaseModel"]
    ) -> int:
        """Persist a new pending job and return its id.

        Implementation notes:
        - Payload shape is not validated here; the worker validates on claim
        """
        pass

    @abstractmethod
    def list(self, limit: int = 20) -> List["MediaJob"]:
        """Return the most recent jobs, newest first (limit clamped to [1, 200])."""
        pass

    @abstractmethod
    def claim_pending_job(self, max_retries: int = 3) -> Optional["MediaJob"]:
        """Atomically move the oldest pending job to processing.

        Returns:
            The claimed job, or None when nothing is pending

        Implementation notes:
        - MUST be atomic: no two callers may claim the same job
        - Increments attempts, sets started_at, clears last_error
        """
        pass

    @abstractmethod
    def mark_done(self, job_id: int) -> bool:
        """Set status=done, finished_at=now and clear last_error."""
        pass

    @abstractmethod
    def mark_failed(self, job_id: int, message: str) -> bool:
        """Set status=failed, finished_at=now and a truncated last_error."""
        pass

    @abstractmethod
    def recycle_stalled(self, stalled_minutes: int = 20) -> int:
        """Reset processing jobs older than the threshold back to pending.

        Returns:
            Count of recycled jobs

        Implementation notes:
        - attempts is preserved so repeated stalls stay visible
        """
        pass

    @abstractmethod
    def get(self, job_id: int) -> Optional["MediaJob"]:
        """Fetch a single job or None."""
        pass

    @abstractmethod
    def count_by_status(self) -> Dict[str, int]:
        """Job counts keyed by every status value."""
        pass
