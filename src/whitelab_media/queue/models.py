"""Pydantic models for media job queue data structures.

This module defines the job record as stored in ``media_jobs`` and the
tagged payload variants the worker dispatches on.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class JobStatus(str, Enum):
    """Job processing states.

    State transitions:
        pending → processing     (worker claims)
        processing → done        (media record stored)
        processing → failed      (processing raised)
        processing → pending     (stall recycling after a crashed tick)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class JobType(str, Enum):
    IMPORT_URL = "import_url"
    UPLOAD_FILE = "upload_file"


class ImportUrlPayload(BaseModel):
    """Import a remote image or video by URL."""

    kind: Literal["import_url"] = "import_url"
    url: str = Field(..., min_length=1, description="Remote media URL")
    title: str = Field(default="", description="Optional display title")

    model_config = {"str_strip_whitespace": True}


class UploadFilePayload(BaseModel):
    """Process a file the HTTP layer already staged on disk."""

    kind: Literal["upload_file"] = "upload_file"
    path: str = Field(..., min_length=1, description="Temporary upload path")
    originalname: str = Field(..., min_length=1, description="Client-side filename")
    mimetype: str = Field(..., min_length=1, description="Client-reported MIME type")
    title: str = Field(default="", description="Optional display title")

    model_config = {"str_strip_whitespace": True}


JobPayload = Annotated[Union[ImportUrlPayload, UploadFilePayload], Field(discriminator="kind")]

_payload_adapter = TypeAdapter(JobPayload)


class MediaJob(BaseModel):
    """A unit of asynchronous media work as persisted in ``media_jobs``."""

    id: int = Field(..., description="Store-assigned identifier")
    job_type: JobType = Field(..., description="import_url or upload_file")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Job-type-specific data")
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current job state")
    attempts: int = Field(default=0, ge=0, description="Incremented once per claim")
    last_error: Optional[str] = Field(default=None, description="Last error message (truncated)")
    created_at: datetime = Field(..., description="Queue time")
    started_at: Optional[datetime] = Field(default=None, description="Claim time")
    finished_at: Optional[datetime] = Field(default=None, description="Terminal transition time")

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.DONE, JobStatus.FAILED)


def parse_job_payload(job: MediaJob) -> Union[ImportUrlPayload, UploadFilePayload]:
    """Validate a job's stored payload against the variant named by its type.

    Raises:
        pydantic.ValidationError: required fields missing or empty
    """
    data = dict(job.payload)
    data["kind"] = job.job_type.value
    return _payload_adapter.validate_python(data)
