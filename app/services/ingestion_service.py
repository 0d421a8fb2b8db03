import json
import logging
from collections.abc import Mapping

from fastapi import HTTPException, status

from app.core.config import Settings
from app.schemas.ingestion import (
    ProcessingResultResponse,
    TranscriptSource,
    WebhookAcknowledgement,
    WebhookChallengeResponse,
)
from app.services.credential_store import (
    FIREFLIES_PROVIDER,
    GOOGLE_PROVIDER,
    GRANOLA_PROVIDER,
    CredentialStore,
    create_credential_store,
)
from app.services.payload_normalizer import (
    CalendarMeetingWebhook,
    FirefliesWebhook,
    GranolaWebhook,
    WebhookPayload,
    is_completion_event,
    parse_payload,
    participant_emails_of,
    to_ingest_request,
)
from app.services.pipeline_orchestrator import TranscriptPipeline, create_pipeline
from app.services.signature_verifier import read_signature_header, verify

logger = logging.getLogger(__name__)

WEBHOOK_SOURCES: dict[str, TranscriptSource] = {
    "fireflies": TranscriptSource.fireflies,
    "granola": TranscriptSource.granola,
    "google-calendar": TranscriptSource.google_meet,
}

CREDENTIAL_PROVIDERS: dict[TranscriptSource, str] = {
    TranscriptSource.fireflies: FIREFLIES_PROVIDER,
    TranscriptSource.granola: GRANOLA_PROVIDER,
    TranscriptSource.google_meet: GOOGLE_PROVIDER,
}


class IngestionService:
    def __init__(
        self,
        settings: Settings,
        *,
        pipeline: TranscriptPipeline | None = None,
        credential_store: CredentialStore | None = None,
    ) -> None:
        self.settings = settings
        self.pipeline = pipeline or create_pipeline(settings)
        self.credential_store = credential_store or create_credential_store(settings)

    def handle_webhook(
        self,
        *,
        source_slug: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        webhook_id: str | None = None,
    ) -> WebhookAcknowledgement | ProcessingResultResponse:
        source = resolve_webhook_source(source_slug)

        signature = read_signature_header(source, headers)
        if not verify(source, raw_body, signature, self._secret_for(source)):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature.",
            )

        try:
            body = json.loads(raw_body.decode("utf-8")) if raw_body else None
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid JSON payload.",
            ) from exc

        payload = parse_payload(source, body)
        if payload is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid payload format.",
            )

        if not is_completion_event(payload):
            logger.info(
                "Webhook acknowledged without processing source=%s event_type=%s",
                source.value,
                payload.event_type,
            )
            return WebhookAcknowledgement(
                processed=False,
                message="Event type not processed",
                source=source,
                event_type=payload.event_type or None,
            )

        user_id = self._resolve_user_id(source, payload, webhook_id)
        if not user_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Could not determine user for webhook.",
            )

        ingest_request = to_ingest_request(payload, user_id)
        try:
            result = self.pipeline.run(ingest_request)
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to query processing job storage.",
            ) from exc
        if not result.success:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=result.error or "Transcript processing failed.",
            )
        return result.to_response()

    def challenge(self, source_slug: str, challenge: str | None) -> WebhookChallengeResponse:
        source = resolve_webhook_source(source_slug)
        if challenge:
            return WebhookChallengeResponse(challenge=challenge)
        return WebhookChallengeResponse(status=f"{source.value} webhook endpoint active")

    def _secret_for(self, source: TranscriptSource) -> str:
        if source == TranscriptSource.fireflies:
            return self.settings.fireflies_webhook_secret
        if source == TranscriptSource.granola:
            return self.settings.granola_webhook_secret
        if source == TranscriptSource.google_meet:
            return self.settings.calendar_webhook_secret
        return ""

    def _resolve_user_id(
        self,
        source: TranscriptSource,
        payload: WebhookPayload,
        webhook_id: str | None,
    ) -> str | None:
        provider = CREDENTIAL_PROVIDERS[source]
        if webhook_id:
            user_id = self.credential_store.find_user_id(provider, "webhook_id", webhook_id)
            if user_id:
                return user_id
            logger.info("Webhook id not registered source=%s webhook_id=%s", source.value, webhook_id)

        user_id = self._resolve_user_from_payload(provider, payload)
        if user_id:
            return user_id

        default_user_id = self.settings.default_webhook_user_id.strip()
        return default_user_id or None

    def _resolve_user_from_payload(self, provider: str, payload: WebhookPayload) -> str | None:
        if isinstance(payload, FirefliesWebhook):
            reference = payload.client_reference_id
            if reference and self.credential_store.get_credentials(reference, provider):
                return reference
            return None

        if isinstance(payload, GranolaWebhook):
            for email in participant_emails_of(payload):
                user_id = self.credential_store.find_user_id(provider, "account_email", email)
                if user_id:
                    return user_id
            return None

        if isinstance(payload, CalendarMeetingWebhook):
            token = payload.channel_token
            if token and self.credential_store.get_credentials(token, provider):
                return token
            if payload.channel_id:
                return self.credential_store.find_user_id(
                    provider,
                    "calendar_channel_id",
                    payload.channel_id,
                )
        return None


def resolve_webhook_source(source_slug: str) -> TranscriptSource:
    source = WEBHOOK_SOURCES.get(source_slug.strip().lower())
    if source is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown webhook source: {source_slug}",
        )
    return source


