from datetime import UTC, datetime

from app.schemas.ingestion import TranscriptSource
from app.services.payload_normalizer import (
    CalendarMeetingWebhook,
    FirefliesWebhook,
    GranolaWebhook,
    is_completion_event,
    parse_payload,
    participant_emails_of,
    to_ingest_request,
)


def test_fireflies_payload_maps_to_ingest_request_without_transcript_text() -> None:
    payload = parse_payload(
        TranscriptSource.fireflies,
        {
            "meetingId": "ff-123",
            "eventType": "Transcription completed",
            "clientReferenceId": "user-1",
            "transcript": {
                "title": "Acme intro",
                "date": 1767268800000,
                "duration": 42.5,
                "participants": ["ana@acme.io", "ana@acme.io", "Bob"],
            },
        },
    )

    assert isinstance(payload, FirefliesWebhook)
    assert is_completion_event(payload)
    assert payload.participants == ("ana@acme.io", "Bob")

    ingest_request = to_ingest_request(payload, "user-1")
    assert ingest_request.source == TranscriptSource.fireflies
    assert ingest_request.external_transcript_id == "ff-123"
    assert ingest_request.transcript_text is None
    assert ingest_request.title == "Acme intro"
    assert ingest_request.duration_seconds == 2550
    assert ingest_request.meeting_date == datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def test_fireflies_payload_without_title_gets_placeholder() -> None:
    payload = parse_payload(
        TranscriptSource.fireflies,
        {"meetingId": "ff-1", "eventType": "Transcription completed"},
    )

    assert payload is not None
    assert to_ingest_request(payload, "user-1").title == "Fireflies Meeting"


def test_fireflies_payload_without_meeting_id_is_invalid() -> None:
    assert parse_payload(TranscriptSource.fireflies, {"eventType": "Transcription completed"}) is None
    assert parse_payload(TranscriptSource.fireflies, ["not", "an", "object"]) is None


def test_granola_payload_carries_content_and_participant_emails() -> None:
    payload = parse_payload(
        TranscriptSource.granola,
        {
            "event": "meeting.completed",
            "meetingId": "gr-9",
            "transcript": {
                "title": "Weekly sync",
                "content": "Ana: hello",
                "date": "2026-03-02T15:00:00Z",
                "duration": 1800,
                "participants": [
                    {"name": "Ana", "email": "Ana@Example.com"},
                    "Bob",
                    {"email": "no-name@example.com"},
                ],
            },
        },
    )

    assert isinstance(payload, GranolaWebhook)
    assert participant_emails_of(payload) == ["ana@example.com", "no-name@example.com"]

    ingest_request = to_ingest_request(payload, "user-2")
    assert ingest_request.transcript_text == "Ana: hello"
    assert ingest_request.participants == ["Ana", "Bob", "Unknown"]
    assert ingest_request.duration_seconds == 1800
    assert ingest_request.meeting_date == datetime(2026, 3, 2, 15, 0, tzinfo=UTC)


def test_granola_payload_requires_transcript_object() -> None:
    assert (
        parse_payload(
            TranscriptSource.granola,
            {"event": "meeting.completed", "meetingId": "gr-9", "transcript": "text"},
        )
        is None
    )


def test_granola_non_completion_event_is_not_processed() -> None:
    payload = parse_payload(
        TranscriptSource.granola,
        {"event": "meeting.started", "meetingId": "gr-1", "transcript": {}},
    )

    assert payload is not None
    assert not is_completion_event(payload)


def test_calendar_payload_derives_duration_from_start_and_end() -> None:
    payload = parse_payload(
        TranscriptSource.google_meet,
        {
            "eventType": "meeting.ended",
            "eventId": "evt-1",
            "calendarId": "primary",
            "title": "Customer call",
            "startTime": "2026-04-01T10:00:00+00:00",
            "endTime": "2026-04-01T10:45:00+00:00",
            "attendees": [
                {"email": "Buyer@Corp.com", "displayName": "Buyer"},
                {"displayName": "No email"},
            ],
            "transcript": "Buyer: we need SSO",
            "channelToken": "user-3",
            "meetingCode": "abc-defg-hij",
        },
    )

    assert isinstance(payload, CalendarMeetingWebhook)
    assert is_completion_event(payload)
    assert payload.extra == {"meetingCode": "abc-defg-hij"}

    ingest_request = to_ingest_request(payload, "user-3")
    assert ingest_request.source == TranscriptSource.google_meet
    assert ingest_request.external_transcript_id == "evt-1"
    assert ingest_request.duration_seconds == 2700
    assert ingest_request.participants == ["Buyer"]


def test_calendar_payload_with_unknown_event_type_is_acknowledged_only() -> None:
    payload = parse_payload(
        TranscriptSource.google_meet,
        {"eventType": "meeting.updated", "eventId": "evt-1", "calendarId": "primary"},
    )

    assert payload is not None
    assert not is_completion_event(payload)
    assert parse_payload(TranscriptSource.google_meet, {"eventId": "evt-1"}) is None


def test_non_finite_durations_are_dropped() -> None:
    fireflies = parse_payload(
        TranscriptSource.fireflies,
        {
            "meetingId": "ff-1",
            "eventType": "Transcription completed",
            "transcript": {"duration": float("inf")},
        },
    )
    oversized = parse_payload(
        TranscriptSource.fireflies,
        {
            "meetingId": "ff-2",
            "eventType": "Transcription completed",
            "transcript": {"duration": 1e308},
        },
    )
    granola = parse_payload(
        TranscriptSource.granola,
        {
            "event": "meeting.completed",
            "meetingId": "gr-1",
            "transcript": {"content": "Ana: hello", "duration": float("nan")},
        },
    )
    huge_int = parse_payload(
        TranscriptSource.granola,
        {
            "event": "meeting.completed",
            "meetingId": "gr-2",
            "transcript": {"content": "Ana: hello", "duration": 10**400},
        },
    )

    assert isinstance(fireflies, FirefliesWebhook)
    assert fireflies.duration_minutes is None
    assert to_ingest_request(fireflies, "user-1").duration_seconds is None
    assert oversized is not None
    assert to_ingest_request(oversized, "user-1").duration_seconds is None
    assert isinstance(granola, GranolaWebhook)
    assert granola.duration_seconds is None
    assert isinstance(huge_int, GranolaWebhook)
    assert huge_int.duration_seconds is None
