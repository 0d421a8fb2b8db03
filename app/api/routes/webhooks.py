import logging

from fastapi import APIRouter, HTTPException, Request, status

from app.core.config import get_settings
from app.schemas.ingestion import (
    ProcessingResultResponse,
    WebhookAcknowledgement,
    WebhookChallengeResponse,
)
from app.services.ingestion_service import IngestionService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post(
    "/{source}",
    response_model=ProcessingResultResponse | WebhookAcknowledgement,
    status_code=status.HTTP_200_OK,
)
async def receive_webhook(
    source: str,
    request: Request,
) -> ProcessingResultResponse | WebhookAcknowledgement:
    return await _process_webhook(source=source, request=request)


@router.post(
    "/{source}/{webhook_id}",
    response_model=ProcessingResultResponse | WebhookAcknowledgement,
    status_code=status.HTTP_200_OK,
)
async def receive_user_webhook(
    source: str,
    webhook_id: str,
    request: Request,
) -> ProcessingResultResponse | WebhookAcknowledgement:
    return await _process_webhook(source=source, request=request, webhook_id=webhook_id)


@router.get("/{source}", response_model=WebhookChallengeResponse, response_model_exclude_none=True)
def verify_webhook(source: str, challenge: str | None = None) -> WebhookChallengeResponse:
    service = IngestionService(get_settings())
    return service.challenge(source, challenge)


@router.get(
    "/{source}/{webhook_id}",
    response_model=WebhookChallengeResponse,
    response_model_exclude_none=True,
)
def verify_user_webhook(
    source: str,
    webhook_id: str,
    challenge: str | None = None,
) -> WebhookChallengeResponse:
    service = IngestionService(get_settings())
    return service.challenge(source, challenge)


async def _process_webhook(
    *,
    source: str,
    request: Request,
    webhook_id: str | None = None,
) -> ProcessingResultResponse | WebhookAcknowledgement:
    raw_body = await request.body()
    logger.info(
        "Webhook received source=%s path=%s webhook_id=%s bytes=%s",
        source,
        str(request.url.path),
        webhook_id,
        len(raw_body),
    )
    service = IngestionService(get_settings())
    try:
        response = service.handle_webhook(
            source_slug=source,
            raw_body=raw_body,
            headers=request.headers,
            webhook_id=webhook_id,
        )
    except HTTPException as exc:
        logger.warning(
            "Webhook rejected source=%s path=%s status_code=%s detail=%s",
            source,
            str(request.url.path),
            exc.status_code,
            exc.detail,
        )
        raise
    except Exception:
        logger.exception(
            "Webhook processing failed source=%s path=%s",
            source,
            str(request.url.path),
        )
        raise

    if isinstance(response, WebhookAcknowledgement):
        logger.info(
            "Webhook acknowledged source=%s event_type=%s",
            source,
            response.event_type,
        )
    else:
        logger.info(
            "Webhook processed source=%s job_id=%s memo_id=%s duplicate=%s document_filed=%s",
            source,
            response.job_id,
            response.memo_id,
            response.duplicate,
            response.document_filed,
        )
    return response
