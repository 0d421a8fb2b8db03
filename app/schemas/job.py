from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class JobStatus(StrEnum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class JobStep(StrEnum):
    queued = "queued"
    fetching = "fetching"
    analyzing = "analyzing"
    extracting = "extracting"
    generating = "generating"
    saving = "saving"
    completed = "completed"


class ProcessingJobRecord(BaseModel):
    id: str
    user_id: str
    source: str
    source_external_id: str | None = None
    status: JobStatus
    current_step: JobStep
    progress: int = Field(ge=0, le=100)
    result: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class ProcessingJobsResponse(BaseModel):
    items: list[ProcessingJobRecord]


class ClearJobsResponse(BaseModel):
    message: str = "Cleared jobs"
    cleared: dict[str, int]
