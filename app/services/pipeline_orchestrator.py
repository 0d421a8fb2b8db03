from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from app.core.config import Settings
from app.schemas.ingestion import IngestRequest, ProcessingResultResponse, TranscriptSource
from app.schemas.job import JobStatus, JobStep
from app.services.company_matcher import (
    Company,
    CompanyDetection,
    CompanyMatcher,
    MergeSuggestion,
    extract_participant_info,
    normalize_domain,
    suggest_merges,
)
from app.services.company_store import CompanyStore, create_company_store
from app.services.credential_store import (
    FIREFLIES_PROVIDER,
    GOOGLE_PROVIDER,
    CredentialStore,
    create_credential_store,
)
from app.services.document_filer import DocumentFiler, FilingResult, MemoDocument
from app.services.fireflies_api_client import FirefliesApiClient
from app.services.gemini_client import GeminiClient
from app.services.google_drive_client import GoogleDriveClient
from app.services.job_store import create_job_store
from app.services.job_tracker import InvalidJobTransitionError, JobTracker
from app.services.memo_store import DuplicateMemoError, MemoStore, create_memo_store
from app.services.memo_synthesizer import ActionItem, MemoSynthesizer
from app.services.payload_normalizer import FIREFLIES_DEFAULT_TITLE

logger = logging.getLogger(__name__)


class TranscriptUnavailableError(Exception):
    pass


@dataclass
class PipelineResult:
    success: bool
    job_id: str | None = None
    memo_id: str | None = None
    company_id: str | None = None
    company_name: str | None = None
    document_filed: bool = False
    document_url: str | None = None
    duplicate: bool = False
    error: str | None = None

    def to_response(self) -> ProcessingResultResponse:
        return ProcessingResultResponse(**asdict(self))


class TranscriptPipeline:
    """Runs one transcript through fetch, analysis, memo generation, persistence and filing."""

    def __init__(
        self,
        settings: Settings,
        *,
        tracker: JobTracker,
        memo_store: MemoStore,
        company_store: CompanyStore,
        credential_store: CredentialStore,
    ) -> None:
        self.settings = settings
        self.tracker = tracker
        self.memo_store = memo_store
        self.company_store = company_store
        self.credential_store = credential_store

    def ingest(self, ingest_request: IngestRequest) -> PipelineResult | str:
        """Create (or reuse) the job for a transcript.

        Returns the job id to process, or a finished ``PipelineResult`` when a
        memo already exists for the same source transcript.
        """
        source = ingest_request.source.value
        external_id = ingest_request.external_transcript_id
        if external_id:
            existing_memo = self.memo_store.get_by_source(
                user_id=ingest_request.user_id,
                source=source,
                source_external_id=external_id,
            )
            if existing_memo:
                logger.info(
                    "Ingestion skipped reason=memo_exists memo_id=%s source=%s external_id=%s",
                    existing_memo["_id"],
                    source,
                    external_id,
                )
                return PipelineResult(
                    success=True,
                    memo_id=str(existing_memo["_id"]),
                    company_id=existing_memo.get("company_id"),
                    company_name=existing_memo.get("company_name"),
                    document_filed=bool(existing_memo.get("document_id")),
                    document_url=existing_memo.get("document_url"),
                    duplicate=True,
                )

            active_job = self.tracker.find_active(
                user_id=ingest_request.user_id,
                source=source,
                source_external_id=external_id,
            )
            if active_job:
                logger.info("Ingestion reused active job job_id=%s", active_job["_id"])
                return str(active_job["_id"])

        job = self.tracker.create(
            user_id=ingest_request.user_id,
            source=source,
            source_external_id=external_id,
            metadata={
                "title": ingest_request.title,
                "participants": list(ingest_request.participants),
                "meeting_date": (
                    ingest_request.meeting_date.isoformat() if ingest_request.meeting_date else None
                ),
                "duration_seconds": ingest_request.duration_seconds,
                "transcript_content": ingest_request.transcript_text,
            },
        )
        return str(job["_id"])

    def run(self, ingest_request: IngestRequest) -> PipelineResult:
        ingested = self.ingest(ingest_request)
        if isinstance(ingested, PipelineResult):
            return ingested
        return self.process_job(ingested)

    def process_job(self, job_id: str) -> PipelineResult:
        job = self.tracker.claim(job_id)
        if not job:
            return self._result_for_unclaimed(job_id)

        try:
            return self._process_claimed(job)
        except Exception as exc:
            error_message = str(exc) or exc.__class__.__name__
            logger.exception("Pipeline failed job_id=%s", job_id)
            try:
                self.tracker.fail(job_id, error_message)
            except InvalidJobTransitionError:
                logger.warning("Job could not be marked failed job_id=%s", job_id)
            return PipelineResult(success=False, job_id=job_id, error=error_message)

    def process_pending_jobs(self, user_id: str, limit: int = 3) -> list[PipelineResult]:
        pending_jobs = self.tracker.list_pending(user_id, limit=limit)
        logger.info("Processing pending jobs user_id=%s count=%s", user_id, len(pending_jobs))
        return [self.process_job(str(job["_id"])) for job in pending_jobs]

    def clear_jobs(self, user_id: str | None) -> dict[str, int]:
        return self.tracker.clear(
            user_id=user_id,
            pending_ttl=timedelta(minutes=self.settings.pending_job_ttl_minutes),
            completed_ttl=timedelta(minutes=self.settings.completed_job_ttl_minutes),
            processing_ttl=timedelta(minutes=self.settings.processing_job_ttl_minutes),
        )

    def suggest_company_merges(self, user_id: str) -> list[MergeSuggestion]:
        companies = [Company.from_record(record) for record in self.company_store.list_by_user(user_id)]
        return suggest_merges(companies)

    def _process_claimed(self, job: dict[str, Any]) -> PipelineResult:
        job_id = str(job["_id"])
        user_id = str(job["user_id"])
        source = str(job["source"])
        metadata = dict(job.get("metadata") or {})
        text_client = self._build_text_client()
        synthesizer = MemoSynthesizer(text_client)
        matcher = CompanyMatcher(text_client)

        transcript, metadata_updates = self._resolve_transcript(job)
        participant_info = extract_participant_info(transcript)
        if participant_info.domains:
            metadata_updates["participant_domains"] = participant_info.domains
        metadata.update(metadata_updates)

        self.tracker.advance(job_id, JobStep.analyzing, metadata=metadata_updates)
        template = synthesizer.classify_meeting(transcript)

        self.tracker.advance(job_id, JobStep.extracting, metadata={"meeting_type": template.id})
        existing_companies = [
            Company.from_record(record) for record in self.company_store.list_by_user(user_id)
        ]
        detection = matcher.detect(transcript, existing_companies)
        company_id, company_name = self._resolve_company(user_id, detection)

        self.tracker.advance(job_id, JobStep.generating)
        title = metadata.get("title") or "Meeting memo"
        content = synthesizer.generate_memo(
            transcript,
            template,
            title=title,
            company_name=company_name,
        )
        summary = synthesizer.summarize(transcript)
        action_items = synthesizer.extract_action_items(content)

        self.tracker.advance(job_id, JobStep.saving)
        now = datetime.now(UTC)
        meeting_date = _parse_iso_datetime(metadata.get("meeting_date"))
        try:
            memo_id = self.memo_store.insert_memo(
                {
                    "user_id": user_id,
                    "company_id": company_id,
                    "company_name": company_name,
                    "source": source,
                    "source_external_id": job.get("source_external_id"),
                    "job_id": job_id,
                    "title": title,
                    "content": content,
                    "summary": summary,
                    "meeting_type": template.id,
                    "meeting_date": meeting_date,
                    "participants": list(metadata.get("participants") or []),
                    "duration_seconds": metadata.get("duration_seconds"),
                    "tags": [template.id],
                    "document_id": None,
                    "document_url": None,
                    "created_at": now,
                    "updated_at": now,
                },
            )
        except DuplicateMemoError as exc:
            logger.info(
                "Memo already exists job_id=%s memo_id=%s",
                job_id,
                exc.existing_memo_id,
            )
            existing = self.memo_store.get_by_id(exc.existing_memo_id) or {}
            result = PipelineResult(
                success=True,
                job_id=job_id,
                memo_id=exc.existing_memo_id,
                company_id=existing.get("company_id"),
                company_name=existing.get("company_name"),
                document_filed=bool(existing.get("document_id")),
                document_url=existing.get("document_url"),
                duplicate=True,
            )
            self.tracker.complete(job_id, _result_payload(result))
            return result

        saved_items_count = self._save_action_items(
            action_items,
            user_id=user_id,
            memo_id=memo_id,
            company_id=company_id,
            created_at=now,
        )

        filing = self._file_memo(
            user_id,
            memo_id,
            MemoDocument(
                title=title,
                content=content,
                summary=summary,
                meeting_date=meeting_date,
                company_name=company_name,
                meeting_type=template.id,
            ),
        )

        result = PipelineResult(
            success=True,
            job_id=job_id,
            memo_id=memo_id,
            company_id=company_id,
            company_name=company_name,
            document_filed=filing is not None,
            document_url=filing.document_url if filing else None,
        )
        payload = _result_payload(result)
        payload["meeting_type"] = template.id
        payload["action_items_count"] = saved_items_count
        self.tracker.complete(job_id, payload)
        return result

    def _resolve_transcript(self, job: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        metadata = job.get("metadata") or {}
        cached = metadata.get("transcript_content")
        if isinstance(cached, str) and cached.strip():
            return cached, {}

        source = job.get("source")
        external_id = job.get("source_external_id")
        if source != TranscriptSource.fireflies or not external_id:
            raise TranscriptUnavailableError(
                f"No transcript content available for source={source}.",
            )

        credentials = self.credential_store.get_credentials(str(job["user_id"]), FIREFLIES_PROVIDER)
        api_key = str(credentials.get("api_key") or self.settings.fireflies_api_key)
        client = FirefliesApiClient(
            api_url=self.settings.fireflies_api_url,
            api_key=api_key,
            timeout_seconds=self.settings.fireflies_api_timeout_seconds,
            user_agent=self.settings.fireflies_api_user_agent,
        )
        transcript = client.fetch_transcript(str(external_id))
        logger.info(
            "Transcript fetched job_id=%s length=%s speakers=%s",
            job["_id"],
            len(transcript.text),
            len(transcript.participants),
        )

        updates: dict[str, Any] = {"transcript_content": transcript.text}
        if transcript.title and metadata.get("title") in (None, "", FIREFLIES_DEFAULT_TITLE):
            updates["title"] = transcript.title
        if transcript.participants:
            updates["participants"] = transcript.participants
        if transcript.meeting_date and not metadata.get("meeting_date"):
            updates["meeting_date"] = transcript.meeting_date.isoformat()
        return transcript.text, updates

    def _resolve_company(
        self,
        user_id: str,
        detection: CompanyDetection | None,
    ) -> tuple[str | None, str | None]:
        threshold = self.settings.company_confidence_threshold
        if detection is None or detection.confidence <= threshold:
            logger.info(
                "Memo left unlinked confidence=%s threshold=%s",
                detection.confidence if detection else None,
                threshold,
            )
            return None, None

        if detection.existing_company_id:
            existing = self.company_store.get_by_id(detection.existing_company_id)
            if existing:
                return detection.existing_company_id, str(existing.get("name") or detection.name)

        now = datetime.now(UTC)
        company_id = self.company_store.insert(
            {
                "user_id": user_id,
                "name": detection.name,
                "website": detection.website,
                "domain": detection.domain,
                "normalized_domain": normalize_domain(detection.domain),
                "stage": detection.stage,
                "industry": detection.industry,
                "founders": [asdict(founder) for founder in detection.founders],
                "created_at": now,
                "updated_at": now,
            },
        )
        logger.info("Company created company_id=%s name=%s", company_id, detection.name)
        return company_id, detection.name

    def _save_action_items(
        self,
        action_items: list[ActionItem],
        *,
        user_id: str,
        memo_id: str,
        company_id: str | None,
        created_at: datetime,
    ) -> int:
        if not action_items:
            return 0
        try:
            self.memo_store.insert_action_items(
                [
                    {
                        **item.to_dict(),
                        "user_id": user_id,
                        "memo_id": memo_id,
                        "company_id": company_id,
                        "status": "pending",
                        "created_at": created_at,
                    }
                    for item in action_items
                ],
            )
        except Exception:
            logger.exception("Action items could not be saved memo_id=%s", memo_id)
            return 0
        return len(action_items)

    def _file_memo(self, user_id: str, memo_id: str, memo: MemoDocument) -> FilingResult | None:
        credentials = self.credential_store.get_credentials(user_id, GOOGLE_PROVIDER)
        filer = DocumentFiler(self._build_drive_client, self.settings.google_drive_folder_name)
        filing = filer.file(
            credentials.get("access_token"),
            credentials.get("refresh_token"),
            credentials.get("drive_folder_id"),
            memo,
        )
        if filing is None:
            return None

        try:
            self.memo_store.update_document_link(
                memo_id,
                document_id=filing.document_id,
                document_url=filing.document_url,
            )
        except Exception:
            logger.exception("Document link could not be saved memo_id=%s", memo_id)
            return None

        credential_updates: dict[str, Any] = {}
        if filing.folder_id != credentials.get("drive_folder_id"):
            credential_updates["drive_folder_id"] = filing.folder_id
        if filing.refreshed_access_token:
            credential_updates["access_token"] = filing.refreshed_access_token
            credential_updates["refresh_token"] = filing.refresh_token
        if credential_updates:
            try:
                self.credential_store.upsert_credentials(user_id, GOOGLE_PROVIDER, credential_updates)
            except Exception:
                logger.exception("Google credentials could not be updated user_id=%s", user_id)
        return filing

    def _result_for_unclaimed(self, job_id: str) -> PipelineResult:
        job = self.tracker.get(job_id)
        if not job:
            return PipelineResult(success=False, job_id=job_id, error="Job not found.")

        result = job.get("result") or {}
        if job.get("status") == JobStatus.completed:
            return PipelineResult(
                success=True,
                job_id=job_id,
                memo_id=result.get("memo_id"),
                company_id=result.get("company_id"),
                company_name=result.get("company_name"),
                document_filed=bool(result.get("document_filed")),
                document_url=result.get("document_url"),
                duplicate=bool(result.get("duplicate")),
            )
        if job.get("status") == JobStatus.failed:
            return PipelineResult(success=False, job_id=job_id, error=job.get("error"))

        logger.info("Job already processing job_id=%s", job_id)
        return PipelineResult(success=True, job_id=job_id)

    def _build_text_client(self) -> GeminiClient:
        return GeminiClient(
            api_key=self.settings.gemini_api_key,
            model=self.settings.gemini_model,
            timeout_seconds=self.settings.gemini_api_timeout_seconds,
        )

    def _build_drive_client(self, access_token: str, refresh_token: str) -> GoogleDriveClient:
        return GoogleDriveClient(
            access_token=access_token,
            refresh_token=refresh_token,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            timeout_seconds=self.settings.google_drive_api_timeout_seconds,
        )


def create_pipeline(settings: Settings) -> TranscriptPipeline:
    return TranscriptPipeline(
        settings,
        tracker=JobTracker(create_job_store(settings)),
        memo_store=create_memo_store(settings),
        company_store=create_company_store(settings),
        credential_store=create_credential_store(settings),
    )


def _result_payload(result: PipelineResult) -> dict[str, Any]:
    payload = asdict(result)
    payload.pop("success")
    payload.pop("job_id")
    payload.pop("error")
    return payload


def _parse_iso_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
