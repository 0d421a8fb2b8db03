import logging

from fastapi import APIRouter, HTTPException

from app.core.config import get_settings
from app.schemas.ingestion import (
    ManualProcessRequest,
    ProcessingResultResponse,
    ProcessPendingResponse,
)
from app.schemas.job import ClearJobsResponse, ProcessingJobRecord, ProcessingJobsResponse
from app.services.processing_service import ProcessingService

router = APIRouter(prefix="/processing", tags=["processing"])
logger = logging.getLogger(__name__)


@router.post("/run", response_model=ProcessingResultResponse)
def run_processing(payload: ManualProcessRequest) -> ProcessingResultResponse:
    service = ProcessingService(get_settings())
    try:
        response = service.run_manual(payload)
    except HTTPException as exc:
        logger.warning(
            "Manual processing rejected job_id=%s user_id=%s status_code=%s detail=%s",
            payload.job_id,
            payload.user_id,
            exc.status_code,
            exc.detail,
        )
        raise
    logger.info(
        "Manual processing finished job_id=%s memo_id=%s duplicate=%s",
        response.job_id,
        response.memo_id,
        response.duplicate,
    )
    return response


@router.post("/retry", response_model=ProcessPendingResponse)
def process_pending_jobs(user_id: str, limit: int = 3) -> ProcessPendingResponse:
    service = ProcessingService(get_settings())
    return service.process_pending(user_id, limit=limit)


@router.delete("/jobs", response_model=ClearJobsResponse)
def clear_jobs(user_id: str | None = None) -> ClearJobsResponse:
    service = ProcessingService(get_settings())
    return service.clear_jobs(user_id)


@router.get("/jobs", response_model=ProcessingJobsResponse)
def list_jobs(user_id: str, limit: int = 50) -> ProcessingJobsResponse:
    service = ProcessingService(get_settings())
    return service.list_jobs(user_id, limit=limit)


@router.get("/jobs/{job_id}", response_model=ProcessingJobRecord)
def get_job(job_id: str) -> ProcessingJobRecord:
    service = ProcessingService(get_settings())
    return service.get_job(job_id)
