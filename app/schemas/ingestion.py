from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class TranscriptSource(StrEnum):
    fireflies = "fireflies"
    granola = "granola"
    google_meet = "google_meet"
    manual = "manual"


class IngestRequest(BaseModel):
    source: TranscriptSource
    external_transcript_id: str | None = None
    user_id: str
    transcript_text: str | None = None
    title: str
    meeting_date: datetime | None = None
    participants: list[str] = Field(default_factory=list)
    duration_seconds: int | None = None


class WebhookAcknowledgement(BaseModel):
    processed: bool = False
    message: str
    source: TranscriptSource
    event_type: str | None = None


class WebhookChallengeResponse(BaseModel):
    challenge: str | None = None
    status: str | None = None


class ProcessingResultResponse(BaseModel):
    success: bool
    job_id: str | None = None
    memo_id: str | None = None
    company_id: str | None = None
    company_name: str | None = None
    document_filed: bool = False
    document_url: str | None = None
    duplicate: bool = False
    error: str | None = None


class ManualProcessRequest(BaseModel):
    job_id: str | None = None
    user_id: str | None = None
    source: TranscriptSource = TranscriptSource.manual
    transcript_id: str | None = None
    title: str | None = None
    transcript_text: str | None = None
    meeting_date: datetime | None = None
    participants: list[str] = Field(default_factory=list)


class ProcessPendingResponse(BaseModel):
    processed: int
    results: list[ProcessingResultResponse] = Field(default_factory=list)


class CompanyMergeSuggestion(BaseModel):
    primary: str
    duplicates: list[str]
    confidence: float


class CompanyMergeSuggestionsResponse(BaseModel):
    items: list[CompanyMergeSuggestion]
    metadata: dict[str, Any] = Field(default_factory=dict)
