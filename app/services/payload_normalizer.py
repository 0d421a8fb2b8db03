from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from app.schemas.ingestion import IngestRequest, TranscriptSource

FIREFLIES_COMPLETED_EVENT = "Transcription completed"
GRANOLA_COMPLETED_EVENT = "meeting.completed"
FIREFLIES_DEFAULT_TITLE = "Fireflies Meeting"
CALENDAR_COMPLETED_EVENTS = frozenset({"meeting.ended", "meeting.completed"})


@dataclass(frozen=True)
class FirefliesWebhook:
    meeting_id: str
    event_type: str
    client_reference_id: str | None = None
    title: str | None = None
    meeting_date: datetime | None = None
    duration_minutes: float | None = None
    participants: tuple[str, ...] = ()


@dataclass(frozen=True)
class GranolaParticipant:
    name: str
    email: str | None = None


@dataclass(frozen=True)
class GranolaWebhook:
    meeting_id: str
    event_type: str
    title: str | None = None
    content: str | None = None
    meeting_date: datetime | None = None
    duration_seconds: int | None = None
    participants: tuple[GranolaParticipant, ...] = ()


@dataclass(frozen=True)
class CalendarAttendee:
    email: str
    display_name: str | None = None


@dataclass(frozen=True)
class CalendarMeetingWebhook:
    event_id: str
    calendar_id: str
    event_type: str
    title: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    attendees: tuple[CalendarAttendee, ...] = ()
    transcript: str | None = None
    channel_id: str | None = None
    channel_token: str | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False)


WebhookPayload = FirefliesWebhook | GranolaWebhook | CalendarMeetingWebhook


def parse_payload(source: TranscriptSource, body: Any) -> WebhookPayload | None:
    if source == TranscriptSource.fireflies:
        return parse_fireflies_payload(body)
    if source == TranscriptSource.granola:
        return parse_granola_payload(body)
    if source == TranscriptSource.google_meet:
        return parse_calendar_payload(body)
    return None


def parse_fireflies_payload(body: Any) -> FirefliesWebhook | None:
    if not isinstance(body, Mapping):
        return None

    meeting_id = _extract_first_string(body, ("meetingId", "meeting_id", "transcriptId"))
    if not meeting_id:
        return None

    transcript = body.get("transcript")
    transcript = transcript if isinstance(transcript, Mapping) else {}
    duration = _to_float(transcript.get("duration"))
    return FirefliesWebhook(
        meeting_id=meeting_id,
        event_type=_to_text(body.get("eventType")) or "",
        client_reference_id=_to_text(body.get("clientReferenceId")),
        title=_to_text(transcript.get("title")),
        meeting_date=_parse_datetime(transcript.get("date")),
        duration_minutes=duration,
        participants=tuple(_string_list(transcript.get("participants"))),
    )


def parse_granola_payload(body: Any) -> GranolaWebhook | None:
    if not isinstance(body, Mapping):
        return None

    meeting_id = _extract_first_string(body, ("meetingId", "meeting_id"))
    event_type = _to_text(body.get("event"))
    transcript = body.get("transcript")
    if not meeting_id or not event_type or not isinstance(transcript, Mapping):
        return None

    participants: list[GranolaParticipant] = []
    raw_participants = transcript.get("participants")
    if isinstance(raw_participants, list):
        for raw_participant in raw_participants:
            if isinstance(raw_participant, str) and raw_participant.strip():
                participants.append(GranolaParticipant(name=raw_participant.strip()))
            elif isinstance(raw_participant, Mapping):
                participants.append(
                    GranolaParticipant(
                        name=_to_text(raw_participant.get("name")) or "Unknown",
                        email=_normalize_email(raw_participant.get("email")),
                    ),
                )

    return GranolaWebhook(
        meeting_id=meeting_id,
        event_type=event_type,
        title=_to_text(transcript.get("title")),
        content=_to_text(transcript.get("content")),
        meeting_date=_parse_datetime(transcript.get("date")),
        duration_seconds=_to_int(transcript.get("duration")),
        participants=tuple(participants),
    )


def parse_calendar_payload(body: Any) -> CalendarMeetingWebhook | None:
    if not isinstance(body, Mapping):
        return None

    event_id = _to_text(body.get("eventId"))
    calendar_id = _to_text(body.get("calendarId"))
    if not event_id or not calendar_id:
        return None

    attendees: list[CalendarAttendee] = []
    raw_attendees = body.get("attendees")
    if isinstance(raw_attendees, list):
        for raw_attendee in raw_attendees:
            if not isinstance(raw_attendee, Mapping):
                continue
            email = _normalize_email(raw_attendee.get("email"))
            if not email:
                continue
            attendees.append(
                CalendarAttendee(email=email, display_name=_to_text(raw_attendee.get("displayName"))),
            )

    extra = {
        key: value
        for key in ("meetingCode", "recordingUrl", "transcriptUrl")
        if (value := _to_text(body.get(key)))
    }
    return CalendarMeetingWebhook(
        event_id=event_id,
        calendar_id=calendar_id,
        event_type=_to_text(body.get("eventType")) or "",
        title=_to_text(body.get("title")),
        start_time=_parse_datetime(body.get("startTime")),
        end_time=_parse_datetime(body.get("endTime")),
        attendees=tuple(attendees),
        transcript=_to_text(body.get("transcript")),
        channel_id=_to_text(body.get("channelId")),
        channel_token=_to_text(body.get("channelToken")),
        extra=extra,
    )


def is_completion_event(payload: WebhookPayload) -> bool:
    if isinstance(payload, FirefliesWebhook):
        return payload.event_type == FIREFLIES_COMPLETED_EVENT
    if isinstance(payload, GranolaWebhook):
        return payload.event_type == GRANOLA_COMPLETED_EVENT
    return payload.event_type in CALENDAR_COMPLETED_EVENTS


def to_ingest_request(payload: WebhookPayload, user_id: str) -> IngestRequest:
    if isinstance(payload, FirefliesWebhook):
        duration_seconds = (
            _to_int(payload.duration_minutes * 60) if payload.duration_minutes is not None else None
        )
        return IngestRequest(
            source=TranscriptSource.fireflies,
            external_transcript_id=payload.meeting_id,
            user_id=user_id,
            transcript_text=None,
            title=payload.title or FIREFLIES_DEFAULT_TITLE,
            meeting_date=payload.meeting_date,
            participants=list(payload.participants),
            duration_seconds=duration_seconds,
        )

    if isinstance(payload, GranolaWebhook):
        return IngestRequest(
            source=TranscriptSource.granola,
            external_transcript_id=payload.meeting_id,
            user_id=user_id,
            transcript_text=payload.content,
            title=payload.title or "Granola Meeting",
            meeting_date=payload.meeting_date,
            participants=[participant.name for participant in payload.participants],
            duration_seconds=payload.duration_seconds,
        )

    duration_seconds = None
    if payload.start_time and payload.end_time and payload.end_time >= payload.start_time:
        duration_seconds = int((payload.end_time - payload.start_time).total_seconds())
    return IngestRequest(
        source=TranscriptSource.google_meet,
        external_transcript_id=payload.event_id,
        user_id=user_id,
        transcript_text=payload.transcript,
        title=payload.title or "Google Meet",
        meeting_date=payload.start_time,
        participants=[
            attendee.display_name or attendee.email for attendee in payload.attendees
        ],
        duration_seconds=duration_seconds,
    )


def participant_emails_of(payload: WebhookPayload) -> list[str]:
    if isinstance(payload, GranolaWebhook):
        return [participant.email for participant in payload.participants if participant.email]
    if isinstance(payload, CalendarMeetingWebhook):
        return [attendee.email for attendee in payload.attendees]
    return [value for value in payload.participants if "@" in value]


def _extract_first_string(payload: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        text = _to_text(payload.get(key))
        if text:
            return text
    return None


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    values: list[str] = []
    for item in value:
        text = _to_text(item)
        if text and text not in values:
            values.append(text)
    return values


def _normalize_email(value: Any) -> str | None:
    text = _to_text(value)
    if not text or "@" not in text:
        return None
    return text.lower()


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        # Epoch milliseconds.
        try:
            return datetime.fromtimestamp(value / 1000, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    text = _to_text(value)
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def _to_text(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or None
    if isinstance(value, int | float):
        return str(value)
    return None


def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
    elif not isinstance(value, int | float):
        return None
    try:
        parsed = float(value)
    except (ValueError, OverflowError):
        return None
    # NaN and infinity are accepted by json.loads
    return parsed if math.isfinite(parsed) else None


def _to_int(value: Any) -> int | None:
    parsed = _to_float(value)
    if parsed is None:
        return None
    return int(parsed)
