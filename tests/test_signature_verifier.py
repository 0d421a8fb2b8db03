import hashlib
import hmac

from app.schemas.ingestion import TranscriptSource
from app.services.signature_verifier import read_signature_header, verify


def _sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def test_fireflies_accepts_bare_and_prefixed_signatures() -> None:
    body = b'{"meetingId":"m-1"}'
    digest = _sign("fireflies-secret", body)

    assert verify(TranscriptSource.fireflies, body, digest, "fireflies-secret")
    assert verify(TranscriptSource.fireflies, body, f"sha256={digest}", "fireflies-secret")
    assert verify(TranscriptSource.fireflies, body, digest.upper(), "fireflies-secret")


def test_granola_requires_prefixed_signature() -> None:
    body = b'{"event":"meeting.completed"}'
    digest = _sign("granola-secret", body)

    assert verify(TranscriptSource.granola, body, f"sha256={digest}", "granola-secret")
    assert not verify(TranscriptSource.granola, body, digest, "granola-secret")


def test_verify_rejects_tampered_body_and_missing_header() -> None:
    body = b'{"meetingId":"m-1"}'
    digest = _sign("secret", body)

    assert not verify(TranscriptSource.fireflies, b'{"meetingId":"m-2"}', digest, "secret")
    assert not verify(TranscriptSource.fireflies, body, None, "secret")
    assert not verify(TranscriptSource.google_meet, body, "   ", "secret")
    assert not verify(TranscriptSource.fireflies, body, "not-hex", "secret")


def test_verify_passes_when_no_secret_is_configured() -> None:
    assert verify(TranscriptSource.fireflies, b"{}", None, "")
    assert verify(TranscriptSource.granola, b"{}", "garbage", None)


def test_read_signature_header_uses_source_specific_names() -> None:
    headers = {"x-fireflies-signature": "abc", "x-granola-signature": "sha256=def"}

    assert read_signature_header(TranscriptSource.fireflies, headers) == "abc"
    assert read_signature_header(TranscriptSource.granola, headers) == "sha256=def"
    assert read_signature_header(TranscriptSource.google_meet, headers) is None
