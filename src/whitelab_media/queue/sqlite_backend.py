"""SQLite store and media job queue.

This module provides the local, crash-safe persistence layer using:
- sqlite-utils for schema management and simple inserts
- WAL mode so readers are not blocked by the single writer
- busy_timeout so a contending writer waits instead of failing
- BEGIN IMMEDIATE transactions for the atomic claim
- Exponential backoff retry when the database stays locked
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Union

try:
    from sqlite_utils import Database
except ImportError:
    raise ImportError(
        "sqlite-utils is required for queue functionality. "
        "Install it with: pip install sqlite-utils"
    )

from pydantic import BaseModel

from .backends import JobQueueBackend
from .models import JobStatus, JobType, MediaJob

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000
DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 200

JOB_COLUMNS = (
    "id, job_type, payload, status, attempts, last_error, created_at, started_at, finished_at"
)

SCHEMA_SQL = """
-- JSON mirror of site content blobs
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Media ingestion jobs
CREATE TABLE IF NOT EXISTS media_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_media_jobs_status_created ON media_jobs(status, created_at);
"""


def is_lock_error(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "database is locked" in str(exc).lower()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Fixed-width ISO-8601 so stored timestamps compare correctly as text."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


class SQLiteStore:
    """Single-file SQLite datastore holding kv_store and media_jobs.

    Creates the schema on open (idempotent) and exposes parameterized
    statements plus an explicit BEGIN IMMEDIATE transaction.
    """

    def __init__(self, db_path: Union[str, Path], busy_timeout_ms: int = 5000):
        """Open (or create) the database.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_ms: Lock wait before a writer gets SQLITE_BUSY
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.db = Database(str(self.db_path))

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        self.db.conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        self.db.conn.commit()

        self._create_schema()

    @property
    def conn(self) -> sqlite3.Connection:
        return self.db.conn

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        self.db.executescript(SCHEMA_SQL)

    def execute(self, sql: str, params: Union[tuple, list, dict] = ()) -> sqlite3.Cursor:
        """Run one parameterized statement and commit it."""
        with self.conn:
            return self.conn.execute(sql, params)

    def query(self, sql: str, params: Union[tuple, list, dict] = ()) -> List[Dict[str, Any]]:
        """Run a read query and return rows as dicts."""
        return list(self.db.query(sql, params))

    @contextmanager
    def immediate_transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolling back if the block raises.

        The write lock is taken at BEGIN, so a select followed by an update
        inside the block cannot interleave with another writer.
        """
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self.conn
        except BaseException:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()

    def kv_get(self, key: str) -> Optional[str]:
        rows = self.query("SELECT value FROM kv_store WHERE key = ?", (key,))
        return rows[0]["value"] if rows else None

    def kv_put(self, key: str, value: str) -> None:
        self.db["kv_store"].insert(
            {"key": key, "value": value, "updated_at": to_iso(utcnow())},
            pk="key",
            replace=True,
        )

    def kv_get_json(self, key: str, default: Any = None) -> Any:
        raw = self.kv_get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Corrupt JSON in kv_store[%s], using default", key)
            return default

    def kv_put_json(self, key: str, value: Any) -> None:
        self.kv_put(key, json.dumps(value, ensure_ascii=False))

    def close(self) -> None:
        self.db.close()


class SQLiteJobQueue(JobQueueBackend):
    """SQLite-backed media job queue.

    Features:
    - FIFO claim (ascending id) inside BEGIN IMMEDIATE
    - Exponential backoff retry for database lock contention
    - Crash recovery via recycle_stalled()

    Concurrency safety:
    - The write lock is held from transaction start, so two claimers
      cannot select the same pending row
    """

    def __init__(self, store: SQLiteStore, clock: Callable[[], datetime] = utcnow):
        """Initialize queue.

        Args:
            store: SQLiteStore instance (shares its connection)
            clock: Returns the current UTC time; injectable for tests
        """
        self.store = store
        self.db = store.db
        self.clock = clock

    def _now(self) -> str:
        return to_iso(self.clock())

    def enqueue(
        self, job_type: Union[JobType, str], payload: Union[Mapping[str, Any], BaseModel]
    ) -> int:
        """Insert a pending job and return its id.

        Args:
            job_type: import_url or upload_file
            payload: Job data; payload models are stored without their tag

        Raises:
            ValueError: job_type is not a known JobType
        """
        job_type = JobType(job_type)
        if isinstance(payload, BaseModel):
            data = payload.model_dump(exclude={"kind"})
        else:
            data = dict(payload)

        table = self.db["media_jobs"]
        table.insert(
            {
                "job_type": job_type.value,
                "payload": json.dumps(data, ensure_ascii=False),
                "status": JobStatus.PENDING.value,
                "attempts": 0,
                "created_at": self._now(),
            }
        )
        job_id = int(table.last_rowid)
        logger.info("Enqueued media job #%d (%s)", job_id, job_type.value)
        return job_id

    def list(self, limit: int = DEFAULT_LIST_LIMIT) -> List[MediaJob]:
        """Most recent jobs first.

        Args:
            limit: Clamped to [1, 200]; non-numeric values fall back to 20
        """
        try:
            safe_limit = int(limit)
        except (TypeError, ValueError):
            safe_limit = DEFAULT_LIST_LIMIT
        safe_limit = max(1, min(MAX_LIST_LIMIT, safe_limit))

        rows = self.store.query(
            f"SELECT {JOB_COLUMNS} FROM media_jobs ORDER BY id DESC LIMIT ?", (safe_limit,)
        )
        return [self._row_to_job(row) for row in rows]

    def get(self, job_id: int) -> Optional[MediaJob]:
        rows = self.store.query(f"SELECT {JOB_COLUMNS} FROM media_jobs WHERE id = ?", (job_id,))
        return self._row_to_job(rows[0]) if rows else None

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for row in self.store.query(
            "SELECT status, COUNT(*) AS total FROM media_jobs GROUP BY status"
        ):
            counts[row["status"]] = row["total"]
        return counts

    def claim_pending_job(self, max_retries: int = 3) -> Optional[MediaJob]:
        """Atomically claim the oldest pending job.

        Args:
            max_retries: Attempts while the database stays locked; 1 means
                raise on the first lock error and leave backoff to the caller

        Returns:
            The job in 'processing' state, or None if nothing is pending
        """
        return self._claim_with_retry(max_retries=max(1, int(max_retries)))

    def _claim_with_retry(self, max_retries: int = 3) -> Optional[MediaJob]:
        """Claim with exponential backoff on SQLITE_BUSY.

        Implementation note:
        - busy_timeout already waits for the lock; this covers the case
          where the wait expires under heavy contention
        - Backoff: 100ms, 200ms, 400ms
        """
        for attempt in range(max_retries):
            try:
                return self._claim_once()
            except sqlite3.OperationalError as e:
                if is_lock_error(e) and attempt < max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise
        return None

    def _claim_once(self) -> Optional[MediaJob]:
        now = self._now()
        with self.store.immediate_transaction() as conn:
            cursor = conn.execute(
                f"""
                SELECT {JOB_COLUMNS} FROM media_jobs
                WHERE status = ?
                ORDER BY id ASC
                LIMIT 1
                """,
                (JobStatus.PENDING.value,),
            )
            row = cursor.fetchone()
            if row is None:
                return None

            columns = [c[0] for c in cursor.description]
            job_row = dict(zip(columns, row))

            conn.execute(
                """
                UPDATE media_jobs
                SET status = ?, attempts = attempts + 1, started_at = ?, last_error = NULL
                WHERE id = ?
                """,
                (JobStatus.PROCESSING.value, now, job_row["id"]),
            )

        job_row.update(
            status=JobStatus.PROCESSING.value,
            attempts=int(job_row["attempts"] or 0) + 1,
            started_at=now,
            last_error=None,
        )
        job = self._row_to_job(job_row)
        logger.info("Claimed media job #%d (attempt %d)", job.id, job.attempts)
        return job

    def mark_done(self, job_id: int) -> bool:
        cursor = self.store.execute(
            """
            UPDATE media_jobs
            SET status = ?, finished_at = ?, last_error = NULL
            WHERE id = ?
            """,
            (JobStatus.DONE.value, self._now(), job_id),
        )
        return cursor.rowcount > 0

    def mark_failed(self, job_id: int, message: str) -> bool:
        """Mark job as failed.

        Args:
            job_id: Job identifier
            message: Error message (truncated to 2000 chars)
        """
        error_snippet = (message or "")[:MAX_ERROR_LENGTH]
        cursor = self.store.execute(
            """
            UPDATE media_jobs
            SET status = ?, finished_at = ?, last_error = ?
            WHERE id = ?
            """,
            (JobStatus.FAILED.value, self._now(), error_snippet, job_id),
        )
        return cursor.rowcount > 0

    def recycle_stalled(self, stalled_minutes: int = 20) -> int:
        """Crash recovery: reset jobs stuck in 'processing'.

        Args:
            stalled_minutes: Jobs started longer ago than this are re-offered

        Returns:
            Count of recycled jobs

        Implementation:
        - attempts is not reset, so a job that keeps stalling shows a
          growing attempt count
        - started_at is cleared
        """
        minutes = max(1, int(stalled_minutes))
        threshold = to_iso(self.clock() - timedelta(minutes=minutes))
        cursor = self.store.execute(
            """
            UPDATE media_jobs
            SET status = ?, started_at = NULL
            WHERE status = ? AND started_at < ?
            """,
            (JobStatus.PENDING.value, JobStatus.PROCESSING.value, threshold),
        )
        recycled = cursor.rowcount
        if recycled:
            logger.warning("Recycled %d stalled media job(s) older than %d min", recycled, minutes)
        return recycled

    def _row_to_job(self, row: Dict[str, Any]) -> MediaJob:
        """Convert a media_jobs row to MediaJob."""
        return MediaJob(
            id=row["id"],
            job_type=JobType(row["job_type"]),
            payload=self._parse_payload(row.get("payload"), row["id"]),
            status=JobStatus(row["status"]),
            attempts=int(row.get("attempts") or 0),
            last_error=row.get("last_error"),
            created_at=row["created_at"],
            started_at=row.get("started_at") or None,
            finished_at=row.get("finished_at") or None,
        )

    @staticmethod
    def _parse_payload(raw: Optional[str], job_id: int) -> Dict[str, Any]:
        """Decode a stored payload; corrupt data degrades to an empty dict."""
        try:
            data = json.loads(raw or "{}")
        except ValueError:
            logger.warning("Media job #%s has an unreadable payload, using {}", job_id)
            return {}
        if not isinstance(data, dict):
            logger.warning("Media job #%s payload is not an object, using {}", job_id)
            return {}
        return data
