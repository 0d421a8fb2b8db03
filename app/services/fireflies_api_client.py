import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib import error, request


class FirefliesApiError(Exception):
    pass


@dataclass(frozen=True)
class FirefliesTranscript:
    transcript_id: str
    title: str | None
    meeting_date: datetime | None
    text: str
    participants: list[str] = field(default_factory=list)


TRANSCRIPT_QUERY = """
query Transcript($id: String!) {
  transcript(id: $id) {
    id
    title
    date
    duration
    sentences {
      text
      speaker_name
    }
  }
}
"""


class FirefliesApiClient:
    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout_seconds: float = 10.0,
        user_agent: str = "MeetingMemoPipeline/1.0",
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key.strip()
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent

    def fetch_transcript(self, transcript_id: str) -> FirefliesTranscript:
        if not self.api_key:
            raise FirefliesApiError("Fireflies API key is not configured.")

        payload = {"query": TRANSCRIPT_QUERY, "variables": {"id": transcript_id}}
        req = request.Request(
            self.api_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": self.user_agent,
            },
            method="POST",
        )

        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise FirefliesApiError(
                f"Fireflies API HTTP {exc.code}: {body or 'empty response body'}"
            ) from exc
        except error.URLError as exc:
            raise FirefliesApiError(f"Fireflies API connection error: {exc.reason}") from exc
        except TimeoutError as exc:
            raise FirefliesApiError("Fireflies API request timed out.") from exc

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise FirefliesApiError("Fireflies API returned invalid JSON.") from exc

        if not isinstance(parsed_body, Mapping):
            raise FirefliesApiError("Fireflies API response is not a JSON object.")

        errors_payload = parsed_body.get("errors")
        if errors_payload:
            raise FirefliesApiError(f"Fireflies API GraphQL error: {_first_error_message(errors_payload)}")

        data = parsed_body.get("data")
        if not isinstance(data, Mapping):
            raise FirefliesApiError("Fireflies API response missing data.")

        transcript = data.get("transcript")
        if not isinstance(transcript, Mapping):
            raise FirefliesApiError("Fireflies transcript not found.")

        return build_fireflies_transcript(transcript_id, transcript)


def build_fireflies_transcript(
    transcript_id: str,
    transcript: Mapping[str, Any],
) -> FirefliesTranscript:
    lines: list[str] = []
    speakers: list[str] = []
    sentences = transcript.get("sentences")
    if isinstance(sentences, list):
        for sentence in sentences:
            if not isinstance(sentence, Mapping):
                continue
            text = sentence.get("text")
            if not isinstance(text, str) or not text.strip():
                continue
            speaker = sentence.get("speaker_name")
            speaker_name = speaker.strip() if isinstance(speaker, str) and speaker.strip() else ""
            lines.append(f"{speaker_name}: {text.strip()}" if speaker_name else text.strip())
            if speaker_name and speaker_name not in speakers:
                speakers.append(speaker_name)

    if not lines:
        raise FirefliesApiError("Fireflies transcript has no sentences.")

    title = transcript.get("title")
    return FirefliesTranscript(
        transcript_id=transcript_id,
        title=title.strip() if isinstance(title, str) and title.strip() else None,
        meeting_date=_parse_fireflies_date(transcript.get("date")),
        text="\n".join(lines),
        participants=speakers,
    )


def _parse_fireflies_date(value: Any) -> datetime | None:
    # Fireflies returns epoch milliseconds; older payloads carry ISO strings.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def _first_error_message(errors_payload: Any) -> str:
    if isinstance(errors_payload, list) and errors_payload:
        first_error = errors_payload[0]
        if isinstance(first_error, Mapping) and isinstance(first_error.get("message"), str):
            return first_error["message"]
    return str(errors_payload)
