import json
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import app
from app.services.company_store import clear_company_store_cache, create_company_store
from app.services.credential_store import clear_credential_store_cache
from app.services.gemini_client import GeminiClient
from app.services.job_store import clear_job_store_cache, create_job_store
from app.services.job_tracker import JobTracker
from app.services.memo_store import clear_memo_store_cache
from app.services.pipeline_orchestrator import TranscriptPipeline

client = TestClient(app)

TRANSCRIPT = "Ana Lopez: Quarterly planning for the platform team.\nBob Smith: Agreed."


@pytest.fixture(autouse=True)
def reset_stores_and_settings() -> None:
    monkeypatch = pytest.MonkeyPatch()
    monkeypatch.setenv("DATA_STORE", "memory")
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    monkeypatch.setattr(GeminiClient, "generate_text", _fake_generate_text)
    _clear_caches()
    yield
    monkeypatch.undo()
    _clear_caches()


def _clear_caches() -> None:
    get_settings.cache_clear()
    clear_job_store_cache()
    clear_memo_store_cache()
    clear_company_store_cache()
    clear_credential_store_cache()


def _fake_generate_text(self: GeminiClient, prompt: str, **kwargs: object) -> str:
    if prompt.startswith("Classify"):
        return "internal"
    if prompt.startswith("Analyze this meeting transcript"):
        return json.dumps({"company_name": None})
    if prompt.startswith("Write a"):
        return "## Key Decisions\n\nShip the roadmap."
    if prompt.startswith("Summarize"):
        return "The platform team agreed on the quarterly plan."
    if prompt.startswith("Extract action items"):
        return json.dumps([{"title": "Publish roadmap", "due_date": "2026-03-01"}])
    raise AssertionError(f"Unexpected prompt: {prompt[:60]}")


def _tracker() -> JobTracker:
    return JobTracker(create_job_store(get_settings()))


def _pending_job(user_id: str = "user-1", external_id: str = "gr-1") -> str:
    record = _tracker().create(
        user_id=user_id,
        source="granola",
        source_external_id=external_id,
        metadata={"title": "Planning", "transcript_content": TRANSCRIPT},
    )
    return str(record["_id"])


def test_manual_run_with_transcript_text_creates_memo() -> None:
    response = client.post(
        "/api/processing/run",
        json={"user_id": "user-1", "title": "Planning", "transcript_text": TRANSCRIPT},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["memo_id"]
    assert data["company_id"] is None
    job = _tracker().get(data["job_id"])
    assert job is not None
    assert job["source"] == "manual"
    assert job["status"] == "completed"
    assert job["result"]["action_items_count"] == 1


def test_manual_run_processes_existing_job() -> None:
    job_id = _pending_job()

    response = client.post("/api/v1/processing/run", json={"job_id": job_id})

    assert response.status_code == 200
    assert response.json()["job_id"] == job_id
    job = _tracker().get(job_id)
    assert job is not None and job["status"] == "completed"


def test_manual_run_requires_job_or_transcript() -> None:
    assert client.post("/api/processing/run", json={}).status_code == 400
    assert client.post("/api/processing/run", json={"user_id": "user-1"}).status_code == 400
    assert (
        client.post(
            "/api/processing/run",
            json={"user_id": "user-1", "source": "granola", "transcript_id": "gr-1"},
        ).status_code
        == 400
    )


def test_manual_run_failure_returns_500() -> None:
    response = client.post(
        "/api/processing/run",
        json={"user_id": "user-1", "source": "fireflies", "transcript_id": "ff-1"},
    )

    assert response.status_code == 500
    assert response.json()["detail"] == "Fireflies API key is not configured."


def test_retry_processes_pending_jobs_oldest_first() -> None:
    first = _pending_job(external_id="gr-a")
    second = _pending_job(external_id="gr-b")

    response = client.post("/api/processing/retry", params={"user_id": "user-1"})

    assert response.status_code == 200
    data = response.json()
    assert data["processed"] == 2
    assert [result["job_id"] for result in data["results"]] == [first, second]


def test_list_and_get_jobs() -> None:
    job_id = _pending_job()
    _pending_job(user_id="user-2", external_id="gr-other")

    listed = client.get("/api/processing/jobs", params={"user_id": "user-1"})
    fetched = client.get(f"/api/processing/jobs/{job_id}")

    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()["items"]] == [job_id]
    assert fetched.status_code == 200
    assert fetched.json()["status"] == "pending"
    assert fetched.json()["current_step"] == "queued"
    assert client.get("/api/processing/jobs/missing").status_code == 404


def test_clear_jobs_reports_each_bucket() -> None:
    store = create_job_store(get_settings())
    tracker = _tracker()
    failed_id = _pending_job(external_id="gr-failed")
    tracker.claim(failed_id)
    tracker.fail(failed_id, "boom")
    stale_id = _pending_job(external_id="gr-stale")
    store.update_if_status(
        stale_id,
        expected_statuses=["pending"],
        updates={"created_at": datetime.now(UTC) - timedelta(hours=3)},
    )
    fresh_id = _pending_job(external_id="gr-fresh")

    response = client.delete("/api/processing/jobs", params={"user_id": "user-1"})

    assert response.status_code == 200
    assert response.json() == {
        "message": "Cleared jobs",
        "cleared": {
            "failed": 1,
            "stale_pending": 1,
            "old_completed": 0,
            "stuck_processing": 0,
        },
    }
    assert tracker.get(fresh_id) is not None


def test_merge_suggestions_endpoint() -> None:
    store = create_company_store(get_settings())
    primary_id = store.insert({"user_id": "user-1", "name": "Initech", "domain": "initech.com"})
    duplicate_id = store.insert({"user_id": "user-1", "name": "Initech LLC"})

    response = client.get("/api/companies/merge-suggestions", params={"user_id": "user-1"})

    assert response.status_code == 200
    data = response.json()
    assert data["items"] == [
        {"primary": primary_id, "duplicates": [duplicate_id], "confidence": 1.0},
    ]
    assert data["metadata"] == {"user_id": "user-1", "count": 1}


def test_storage_errors_return_503(monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_merges(self: TranscriptPipeline, user_id: str) -> list:
        raise RuntimeError("companies collection unavailable")

    monkeypatch.setattr(TranscriptPipeline, "suggest_company_merges", failing_merges)

    response = client.get("/api/companies/merge-suggestions", params={"user_id": "user-1"})

    assert response.status_code == 503
    assert response.json()["detail"] == "Unable to query processing storage."
