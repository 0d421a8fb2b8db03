import logging
from collections.abc import Callable
from typing import TypeVar

from fastapi import HTTPException, status

from app.core.config import Settings
from app.schemas.ingestion import (
    CompanyMergeSuggestion,
    CompanyMergeSuggestionsResponse,
    IngestRequest,
    ManualProcessRequest,
    ProcessingResultResponse,
    ProcessPendingResponse,
    TranscriptSource,
)
from app.schemas.job import ClearJobsResponse, ProcessingJobRecord, ProcessingJobsResponse
from app.services.job_tracker import to_job_record
from app.services.pipeline_orchestrator import PipelineResult, TranscriptPipeline, create_pipeline

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_PENDING_BATCH = 10


class ProcessingService:
    def __init__(self, settings: Settings, *, pipeline: TranscriptPipeline | None = None) -> None:
        self.settings = settings
        self.pipeline = pipeline or create_pipeline(settings)

    def run_manual(self, request: ManualProcessRequest) -> ProcessingResultResponse:
        if request.job_id:
            result = self._call_pipeline(lambda: self.pipeline.process_job(request.job_id))
            return _raise_for_failure(result)

        if not request.user_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Either job_id or user_id is required.",
            )

        transcript_text = (request.transcript_text or "").strip() or None
        transcript_id = (request.transcript_id or "").strip() or None
        if not transcript_text and not transcript_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Either transcript_id or transcript_text is required.",
            )
        if not transcript_text and request.source != TranscriptSource.fireflies:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Transcripts for source={request.source.value} must include transcript_text.",
            )

        ingest_request = IngestRequest(
            source=request.source,
            external_transcript_id=transcript_id,
            user_id=request.user_id,
            transcript_text=transcript_text,
            title=(request.title or "").strip() or "Meeting memo",
            meeting_date=request.meeting_date,
            participants=request.participants,
        )
        logger.info(
            "Manual processing requested user_id=%s source=%s transcript_id=%s",
            request.user_id,
            request.source.value,
            transcript_id,
        )
        result = self._call_pipeline(lambda: self.pipeline.run(ingest_request))
        return _raise_for_failure(result)

    def process_pending(self, user_id: str, limit: int = 3) -> ProcessPendingResponse:
        normalized_limit = min(max(limit, 1), MAX_PENDING_BATCH)
        results = self._call_pipeline(
            lambda: self.pipeline.process_pending_jobs(user_id, limit=normalized_limit),
        )
        return ProcessPendingResponse(
            processed=len(results),
            results=[result.to_response() for result in results],
        )

    def clear_jobs(self, user_id: str | None) -> ClearJobsResponse:
        cleared = self._call_pipeline(lambda: self.pipeline.clear_jobs(user_id))
        return ClearJobsResponse(cleared=cleared)

    def list_jobs(self, user_id: str, limit: int = 50) -> ProcessingJobsResponse:
        normalized_limit = min(max(limit, 1), 200)
        records = self._call_pipeline(
            lambda: self.pipeline.tracker.list_jobs(user_id, limit=normalized_limit),
        )
        return ProcessingJobsResponse(items=[to_job_record(record) for record in records])

    def get_job(self, job_id: str) -> ProcessingJobRecord:
        record = self._call_pipeline(lambda: self.pipeline.tracker.get(job_id))
        if not record:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Processing job not found.",
            )
        return to_job_record(record)

    def merge_suggestions(self, user_id: str) -> CompanyMergeSuggestionsResponse:
        suggestions = self._call_pipeline(lambda: self.pipeline.suggest_company_merges(user_id))
        return CompanyMergeSuggestionsResponse(
            items=[
                CompanyMergeSuggestion(
                    primary=suggestion.primary,
                    duplicates=list(suggestion.duplicates),
                    confidence=suggestion.confidence,
                )
                for suggestion in suggestions
            ],
            metadata={"user_id": user_id, "count": len(suggestions)},
        )

    def _call_pipeline(self, operation: Callable[[], T]) -> T:
        try:
            return operation()
        except HTTPException:
            raise
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to query processing storage.",
            ) from exc


def _raise_for_failure(result: PipelineResult) -> ProcessingResultResponse:
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=result.error or "Transcript processing failed.",
        )
    return result.to_response()
