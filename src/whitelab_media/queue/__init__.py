"""Durable media job queue and its single-flight worker."""

from .backends import JobQueueBackend
from .models import (
    ImportUrlPayload,
    JobPayload,
    JobStatus,
    JobType,
    MediaJob,
    UploadFilePayload,
    parse_job_payload,
)
from .sqlite_backend import SQLiteJobQueue, SQLiteStore
from .worker import MediaWorker

__all__ = [
    "JobQueueBackend",
    "ImportUrlPayload",
    "JobPayload",
    "JobStatus",
    "JobType",
    "MediaJob",
    "UploadFilePayload",
    "parse_job_payload",
    "SQLiteJobQueue",
    "SQLiteStore",
    "MediaWorker",
]
