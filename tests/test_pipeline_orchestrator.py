import json
from datetime import UTC, datetime, timedelta

import pytest

from app.core.config import Settings
from app.schemas.ingestion import IngestRequest, TranscriptSource
from app.services.company_store import InMemoryCompanyStore
from app.services.credential_store import InMemoryCredentialStore
from app.services.fireflies_api_client import (
    FirefliesApiClient,
    FirefliesApiError,
    FirefliesTranscript,
)
from app.services.gemini_client import GeminiApiError, GeminiClient
from app.services.google_drive_client import GoogleDriveClient, GoogleDriveError
from app.services.job_store import InMemoryProcessingJobStore
from app.services.job_tracker import JobTracker
from app.services.memo_store import InMemoryMemoStore
from app.services.pipeline_orchestrator import PipelineResult, TranscriptPipeline

TRANSCRIPT = (
    "Ana Lopez: Thanks for making time. Acme Robotics builds warehouse robots.\n"
    "Bob Smith: Send me the deck at bob@northfund.vc afterwards."
)

MEMO_CONTENT = "## Company Overview\n\nAcme Robotics builds warehouse robots."


@pytest.fixture
def model_outputs(monkeypatch: pytest.MonkeyPatch) -> dict[str, str | Exception]:
    outputs: dict[str, str | Exception] = {
        "Classify": "founder-pitch",
        "Analyze this meeting transcript": json.dumps(
            {"company_name": "Acme Robotics, Inc.", "confidence": "high"},
        ),
        "Write a": MEMO_CONTENT,
        "Summarize": "Acme Robotics pitched their seed round.",
        "Extract action items": json.dumps([{"title": "Send the deck", "priority": "high"}]),
    }

    def fake_generate_text(self: GeminiClient, prompt: str, **kwargs: object) -> str:
        for prefix, output in outputs.items():
            if prompt.startswith(prefix):
                if isinstance(output, Exception):
                    raise output
                return output
        raise AssertionError(f"Unexpected prompt: {prompt[:60]}")

    monkeypatch.setattr(GeminiClient, "generate_text", fake_generate_text)
    return outputs


@pytest.fixture
def fireflies_calls(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, str]]:
    calls: list[dict[str, str]] = []

    def fake_fetch_transcript(self: FirefliesApiClient, transcript_id: str) -> FirefliesTranscript:
        calls.append({"transcript_id": transcript_id, "api_key": self.api_key})
        return FirefliesTranscript(
            transcript_id=transcript_id,
            title="Acme Robotics intro",
            meeting_date=datetime(2026, 1, 5, 15, 0, tzinfo=UTC),
            text=TRANSCRIPT,
            participants=["Ana Lopez", "Bob Smith"],
        )

    monkeypatch.setattr(FirefliesApiClient, "fetch_transcript", fake_fetch_transcript)
    return calls


@pytest.fixture
def pipeline() -> TranscriptPipeline:
    settings = Settings(data_store="memory", gemini_api_key="test-key", fireflies_api_key="")
    return TranscriptPipeline(
        settings,
        tracker=JobTracker(InMemoryProcessingJobStore()),
        memo_store=InMemoryMemoStore(),
        company_store=InMemoryCompanyStore(),
        credential_store=InMemoryCredentialStore(),
    )


def _fireflies_request(external_id: str = "ff-1") -> IngestRequest:
    return IngestRequest(
        source=TranscriptSource.fireflies,
        external_transcript_id=external_id,
        user_id="user-1",
        title="Fireflies Meeting",
        participants=["ana@acme.io"],
    )


def _granola_request(external_id: str = "gr-1") -> IngestRequest:
    return IngestRequest(
        source=TranscriptSource.granola,
        external_transcript_id=external_id,
        user_id="user-1",
        transcript_text=TRANSCRIPT,
        title="Weekly sync",
    )


def _job(pipeline: TranscriptPipeline, result: PipelineResult) -> dict:
    assert result.job_id is not None
    job = pipeline.tracker.get(result.job_id)
    assert job is not None
    return job


def test_fireflies_transcript_links_memo_to_existing_company(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
    fireflies_calls: list[dict[str, str]],
) -> None:
    existing_company_id = pipeline.company_store.insert({"user_id": "user-1", "name": "Acme Robotics"})
    pipeline.credential_store.upsert_credentials("user-1", "fireflies", {"api_key": "user-ff-key"})

    result = pipeline.run(_fireflies_request())

    assert result.success is True
    assert result.company_id == existing_company_id
    assert result.company_name == "Acme Robotics"
    assert result.document_filed is False
    assert fireflies_calls == [{"transcript_id": "ff-1", "api_key": "user-ff-key"}]
    assert len(pipeline.company_store.list_by_user("user-1")) == 1

    job = _job(pipeline, result)
    assert job["status"] == "completed"
    assert job["current_step"] == "completed"
    assert job["progress"] == 100
    assert job["error"] is None
    assert job["result"]["memo_id"] == result.memo_id
    assert job["result"]["meeting_type"] == "founder-pitch"
    assert job["result"]["action_items_count"] == 1
    assert job["metadata"]["title"] == "Acme Robotics intro"
    assert job["metadata"]["participant_domains"] == ["northfund.vc"]

    memo = pipeline.memo_store.get_by_id(str(result.memo_id))
    assert memo is not None
    assert memo["company_id"] == existing_company_id
    assert memo["title"] == "Acme Robotics intro"
    assert memo["meeting_date"] == datetime(2026, 1, 5, 15, 0, tzinfo=UTC)
    assert memo["content"].startswith(MEMO_CONTENT)
    assert "## Team" in memo["content"]
    assert memo["document_id"] is None

    action_items = pipeline.memo_store.list_action_items(str(result.memo_id))
    assert [(item["title"], item["priority"]) for item in action_items] == [("Send the deck", "high")]
    assert action_items[0]["company_id"] == existing_company_id


def test_new_company_is_created_with_normalized_domain(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
) -> None:
    model_outputs["Analyze this meeting transcript"] = json.dumps(
        {
            "company_name": "Globex",
            "website": "https://www.Globex.com/",
            "confidence": "high",
            "founders": [{"name": "Hank Scorpio", "title": "CEO"}],
        },
    )

    result = pipeline.run(_granola_request())

    companies = pipeline.company_store.list_by_user("user-1")
    assert result.success is True
    assert len(companies) == 1
    assert companies[0]["_id"] == result.company_id
    assert companies[0]["normalized_domain"] == "globex.com"
    assert companies[0]["founders"] == [{"name": "Hank Scorpio", "title": "CEO"}]


def test_low_confidence_detection_leaves_memo_unlinked(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
) -> None:
    model_outputs["Analyze this meeting transcript"] = json.dumps(
        {"company_name": "Maybe Corp", "confidence": "low"},
    )

    result = pipeline.run(_granola_request())

    assert result.success is True
    assert result.company_id is None
    assert pipeline.company_store.list_by_user("user-1") == []


def test_malformed_action_items_still_complete_the_job(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
) -> None:
    model_outputs["Extract action items"] = "[{'title': 'not json'"

    result = pipeline.run(_granola_request())

    assert result.success is True
    job = _job(pipeline, result)
    assert job["status"] == "completed"
    assert job["result"]["action_items_count"] == 0
    assert pipeline.memo_store.list_action_items(str(result.memo_id)) == []
    memo = pipeline.memo_store.get_by_id(str(result.memo_id))
    assert memo is not None and memo["summary"] == "Acme Robotics pitched their seed round."


def test_action_item_storage_failure_still_completes_the_job(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def failing_insert(records: object) -> int:
        raise RuntimeError("tasks collection unavailable")

    monkeypatch.setattr(pipeline.memo_store, "insert_action_items", failing_insert)

    result = pipeline.run(_granola_request())

    assert result.success is True
    assert result.memo_id is not None
    job = _job(pipeline, result)
    assert job["status"] == "completed"
    assert job["result"]["memo_id"] == result.memo_id
    assert job["result"]["action_items_count"] == 0
    assert pipeline.memo_store.get_by_id(result.memo_id) is not None


def test_duplicate_delivery_produces_one_memo(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
) -> None:
    first = pipeline.run(_granola_request("gr-dup"))
    second = pipeline.run(_granola_request("gr-dup"))

    assert first.success and second.success
    assert second.duplicate is True
    assert second.job_id is None
    assert second.memo_id == first.memo_id
    assert len(pipeline.tracker.list_jobs("user-1")) == 1


def test_pending_delivery_reuses_active_job(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
) -> None:
    first_job_id = pipeline.ingest(_granola_request("gr-race"))
    second_job_id = pipeline.ingest(_granola_request("gr-race"))

    assert isinstance(first_job_id, str)
    assert second_job_id == first_job_id


def test_clearing_stuck_processing_job_lets_redelivery_produce_memo(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
) -> None:
    job_id = pipeline.ingest(_granola_request("gr-stuck"))
    assert isinstance(job_id, str)
    pipeline.tracker.claim(job_id)
    pipeline.tracker.store.update_if_status(
        job_id,
        expected_statuses=["processing"],
        updates={"updated_at": datetime.now(UTC) - timedelta(days=3)},
    )

    blocked = pipeline.run(_granola_request("gr-stuck"))
    cleared = pipeline.clear_jobs("user-1")
    recovered = pipeline.run(_granola_request("gr-stuck"))

    assert blocked.job_id == job_id
    assert blocked.memo_id is None
    assert cleared["stuck_processing"] == 1
    assert recovered.success is True
    assert recovered.memo_id is not None
    assert recovered.job_id != job_id
    assert _job(pipeline, recovered)["status"] == "completed"

def test_concurrent_jobs_for_same_transcript_share_one_memo(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
) -> None:
    job_ids = [
        str(
            pipeline.tracker.create(
                user_id="user-1",
                source="granola",
                source_external_id="gr-race",
                metadata={"title": "Weekly sync", "transcript_content": TRANSCRIPT},
            )["_id"],
        )
        for _ in range(2)
    ]

    first = pipeline.process_job(job_ids[0])
    second = pipeline.process_job(job_ids[1])

    assert second.success is True
    assert second.duplicate is True
    assert second.memo_id == first.memo_id
    second_job = pipeline.tracker.get(job_ids[1])
    assert second_job is not None
    assert second_job["status"] == "completed"
    assert second_job["result"]["duplicate"] is True


def test_expired_drive_token_does_not_fail_the_job(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_ensure_folder(self: GoogleDriveClient, **kwargs: object) -> str:
        raise GoogleDriveError("Google Drive API HTTP 401: invalid token", status_code=401)

    monkeypatch.setattr(GoogleDriveClient, "ensure_folder", fake_ensure_folder)
    pipeline.credential_store.upsert_credentials(
        "user-1",
        "google",
        {"access_token": "expired-token"},
    )

    result = pipeline.run(_granola_request())

    assert result.success is True
    assert result.document_filed is False
    job = _job(pipeline, result)
    assert job["status"] == "completed"
    assert job["result"]["document_filed"] is False
    memo = pipeline.memo_store.get_by_id(str(result.memo_id))
    assert memo is not None
    assert memo["document_id"] is None
    assert memo["document_url"] is None


def test_filed_document_is_linked_and_folder_remembered(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(GoogleDriveClient, "ensure_folder", lambda self, **kwargs: "folder-1")
    monkeypatch.setattr(
        GoogleDriveClient,
        "create_document",
        lambda self, **kwargs: {"id": "doc-1", "web_view_link": "https://docs.google.com/d/doc-1"},
    )
    pipeline.credential_store.upsert_credentials("user-1", "google", {"access_token": "token"})

    result = pipeline.run(_granola_request())

    assert result.document_filed is True
    assert result.document_url == "https://docs.google.com/d/doc-1"
    memo = pipeline.memo_store.get_by_id(str(result.memo_id))
    assert memo is not None and memo["document_id"] == "doc-1"
    credentials = pipeline.credential_store.get_credentials("user-1", "google")
    assert credentials["drive_folder_id"] == "folder-1"


def test_transcript_fetch_failure_marks_job_failed(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_fetch_transcript(self: FirefliesApiClient, transcript_id: str) -> FirefliesTranscript:
        raise FirefliesApiError("Fireflies API HTTP 500: upstream down")

    monkeypatch.setattr(FirefliesApiClient, "fetch_transcript", fake_fetch_transcript)

    result = pipeline.run(_fireflies_request())

    assert result.success is False
    assert result.error == "Fireflies API HTTP 500: upstream down"
    job = _job(pipeline, result)
    assert job["status"] == "failed"
    assert job["current_step"] == "fetching"
    assert job["progress"] == 10
    assert job["error"] == "Fireflies API HTTP 500: upstream down"


def test_model_failure_during_detection_marks_job_failed(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
) -> None:
    model_outputs["Analyze this meeting transcript"] = GeminiApiError("Gemini API HTTP 500: boom")

    result = pipeline.run(_granola_request())

    job = _job(pipeline, result)
    assert job["status"] == "failed"
    assert job["current_step"] == "extracting"
    assert job["progress"] == 50
    assert job["error"] == "Gemini API HTTP 500: boom"
    assert pipeline.memo_store.get_by_source(
        user_id="user-1",
        source="granola",
        source_external_id="gr-1",
    ) is None


def test_granola_job_without_transcript_content_fails(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
) -> None:
    request = _granola_request()
    request.transcript_text = None

    result = pipeline.run(request)

    assert result.success is False
    assert "No transcript content" in str(result.error)


def test_process_job_on_finished_job_returns_stored_outcome(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
) -> None:
    first = pipeline.run(_granola_request())

    again = pipeline.process_job(str(first.job_id))

    assert again.success is True
    assert again.memo_id == first.memo_id
    assert pipeline.process_job("missing").success is False


def test_process_pending_jobs_runs_oldest_first(
    pipeline: TranscriptPipeline,
    model_outputs: dict[str, str | Exception],
) -> None:
    first_job_id = pipeline.ingest(_granola_request("gr-a"))
    second_job_id = pipeline.ingest(_granola_request("gr-b"))

    results = pipeline.process_pending_jobs("user-1", limit=3)

    assert [result.job_id for result in results] == [first_job_id, second_job_id]
    assert all(result.success for result in results)
    assert pipeline.tracker.list_pending("user-1", limit=3) == []


def test_suggest_company_merges_uses_user_companies(pipeline: TranscriptPipeline) -> None:
    primary_id = pipeline.company_store.insert(
        {"user_id": "user-1", "name": "Acme", "domain": "acme.io"},
    )
    duplicate_id = pipeline.company_store.insert(
        {"user_id": "user-1", "name": "Acme Inc", "domain": "www.acme.io"},
    )
    pipeline.company_store.insert({"user_id": "user-2", "name": "Acme"})

    suggestions = pipeline.suggest_company_merges("user-1")

    assert len(suggestions) == 1
    assert suggestions[0].primary == primary_id
    assert suggestions[0].duplicates == [duplicate_id]
