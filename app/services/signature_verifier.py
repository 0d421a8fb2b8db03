import hashlib
import hmac
import logging
from collections.abc import Mapping

from app.schemas.ingestion import TranscriptSource

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS: dict[TranscriptSource, tuple[str, ...]] = {
    TranscriptSource.fireflies: ("x-hub-signature", "x-fireflies-signature"),
    TranscriptSource.granola: ("x-granola-signature",),
    TranscriptSource.google_meet: ("x-calendar-signature",),
}

# Sources whose header value must carry the "sha256=" prefix.
PREFIXED_SOURCES = frozenset({TranscriptSource.granola})


def verify(
    source: TranscriptSource,
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
) -> bool:
    """Check an inbound webhook body against its HMAC-SHA256 signature header.

    An empty ``secret`` disables verification for that source and always
    returns ``True``; operators that expose the endpoint publicly must
    configure one.
    """
    if not secret:
        logger.warning("Webhook signature verification skipped source=%s reason=no_secret", source)
        return True

    provided_signature = (signature_header or "").strip()
    if not provided_signature:
        return False

    if provided_signature.startswith("sha256="):
        provided_signature = provided_signature.split("=", maxsplit=1)[1].strip()
    elif source in PREFIXED_SOURCES:
        return False

    computed_signature = hmac.new(
        key=secret.encode("utf-8"),
        msg=raw_body,
        digestmod=hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(computed_signature, provided_signature.lower())


def read_signature_header(source: TranscriptSource, headers: Mapping[str, str]) -> str | None:
    for header_name in SIGNATURE_HEADERS.get(source, ()):
        value = headers.get(header_name)
        if value:
            return value
    return None
