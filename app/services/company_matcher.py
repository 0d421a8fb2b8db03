from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib import parse

from app.services.gemini_client import GeminiClient
from app.services.model_output import parse_first_json_object, truncate

logger = logging.getLogger(__name__)

DETECTION_TRANSCRIPT_LIMIT = 4000

DOMAIN_MATCH_CONFIDENCE = 1.0
EXACT_NAME_CONFIDENCE = 0.95
SIMILARITY_THRESHOLD = 0.85
CONTAINMENT_CONFIDENCE = 0.8
MERGE_DOMAIN_CONFIDENCE = 0.95

# tier -> (floor when matched, value when unmatched)
CONFIDENCE_TIERS: dict[str, tuple[float, float]] = {
    "high": (0.9, 0.85),
    "medium": (0.75, 0.7),
    "low": (0.6, 0.5),
}

WEBMAIL_DOMAINS = frozenset({"gmail.com", "yahoo.com", "hotmail.com", "outlook.com", "icloud.com"})

_LEGAL_SUFFIX_PATTERN = re.compile(
    r"\s+(inc|llc|ltd|corp|corporation|company|co|incorporated)\.?$",
    re.IGNORECASE,
)
_PUNCTUATION_PATTERN = re.compile(r"[^\w\s]")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_EMAIL_PATTERN = re.compile(r"[\w.-]+@[\w.-]+\.\w+")
_SPEAKER_PATTERN = re.compile(r"^([A-Z][a-z]+ [A-Z][a-z]+):", re.MULTILINE)

DETECTION_PROMPT = """Analyze this meeting transcript and extract information about the PRIMARY company being discussed (if this is a pitch meeting, the company pitching; if a customer call, the customer's company; etc.).

If multiple companies are discussed, focus on the main subject of the meeting.

Return a JSON object with the following structure (use null for unknown fields):
{{
  "company_name": "string or null",
  "website": "string or null",
  "domain": "string or null (just the domain like 'example.com')",
  "stage": "one of: idea, pre-seed, seed, series-a, series-b, series-c, growth, public, or null",
  "industry": "string or null",
  "founders": [{{"name": "string", "title": "string or null"}}],
  "confidence": "high, medium, or low",
  "mentioned_company_names": ["list of all company names mentioned"]
}}

If no company is clearly the subject of the meeting, return {{"company_name": null}}.

Return ONLY valid JSON, no other text.

Transcript:
{transcript}"""


@dataclass(frozen=True)
class Founder:
    name: str
    title: str | None = None


@dataclass
class Company:
    id: str
    name: str
    user_id: str | None = None
    website: str | None = None
    domain: str | None = None
    normalized_domain: str | None = None
    stage: str | None = None
    industry: str | None = None
    founders: list[Founder] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Company:
        return cls(
            id=str(record.get("_id") or record.get("id")),
            name=str(record.get("name") or ""),
            user_id=record.get("user_id"),
            website=record.get("website"),
            domain=record.get("domain"),
            normalized_domain=record.get("normalized_domain"),
            stage=record.get("stage"),
            industry=record.get("industry"),
            founders=_parse_founders(record.get("founders")),
        )


@dataclass
class CompanyDetection:
    name: str
    confidence: float
    existing_company_id: str | None = None
    website: str | None = None
    domain: str | None = None
    stage: str | None = None
    industry: str | None = None
    founders: list[Founder] = field(default_factory=list)
    model_confidence: str = "low"
    mentioned_company_names: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CompanyMatch:
    company: Company | None
    confidence: float


@dataclass(frozen=True)
class MergeSuggestion:
    primary: str
    duplicates: list[str]
    confidence: float


@dataclass(frozen=True)
class ParticipantInfo:
    names: list[str]
    emails: list[str]
    domains: list[str]


def normalize_company_name(name: str) -> str:
    normalized = name.strip().lower()
    normalized = _LEGAL_SUFFIX_PATTERN.sub("", normalized)
    normalized = _PUNCTUATION_PATTERN.sub("", normalized)
    normalized = _WHITESPACE_PATTERN.sub(" ", normalized)
    return normalized.strip()


def levenshtein_distance(first: str, second: str) -> int:
    if first == second:
        return 0
    if len(first) < len(second):
        first, second = second, first
    if not second:
        return len(first)

    previous_row = list(range(len(second) + 1))
    for i, first_char in enumerate(first, start=1):
        current_row = [i]
        for j, second_char in enumerate(second, start=1):
            insertion = current_row[j - 1] + 1
            deletion = previous_row[j] + 1
            substitution = previous_row[j - 1] + (first_char != second_char)
            current_row.append(min(insertion, deletion, substitution))
        previous_row = current_row
    return previous_row[-1]


def calculate_similarity(first: str, second: str) -> float:
    first = first.lower()
    second = second.lower()
    if first == second:
        return 1.0
    max_length = max(len(first), len(second))
    return (max_length - levenshtein_distance(first, second)) / max_length


def extract_domain(url: str | None) -> str | None:
    if not url or not url.strip():
        return None
    candidate = url.strip()
    if not candidate.lower().startswith(("http://", "https://")):
        candidate = f"https://{candidate}"
    try:
        hostname = parse.urlsplit(candidate).hostname
    except ValueError:
        return None
    if not hostname or "." not in hostname:
        return None
    return hostname.removeprefix("www.")


def normalize_domain(value: str | None) -> str | None:
    domain = extract_domain(value)
    return domain.lower() if domain else None


def find_matching_company(
    name: str,
    domain: str | None,
    existing_companies: Iterable[Company],
) -> CompanyMatch:
    normalized_name = normalize_company_name(name)
    normalized_domain = normalize_domain(domain)
    best_match: Company | None = None
    best_confidence = 0.0

    for company in existing_companies:
        if normalized_domain:
            company_domain = normalize_domain(company.normalized_domain or company.domain)
            if company_domain and company_domain == normalized_domain:
                return CompanyMatch(company=company, confidence=DOMAIN_MATCH_CONFIDENCE)

        existing_name = normalize_company_name(company.name)
        if not existing_name or not normalized_name:
            continue

        if normalized_name == existing_name:
            candidate_confidence = EXACT_NAME_CONFIDENCE
        else:
            similarity = calculate_similarity(normalized_name, existing_name)
            if similarity > SIMILARITY_THRESHOLD:
                candidate_confidence = similarity
            elif normalized_name in existing_name or existing_name in normalized_name:
                candidate_confidence = CONTAINMENT_CONFIDENCE
            else:
                continue

        if candidate_confidence > best_confidence:
            best_match = company
            best_confidence = candidate_confidence

    return CompanyMatch(company=best_match, confidence=best_confidence)


def blend_confidence(model_tier: str | None, match: CompanyMatch) -> float:
    matched_floor, unmatched_value = CONFIDENCE_TIERS.get(
        (model_tier or "").strip().lower(),
        CONFIDENCE_TIERS["low"],
    )
    if match.company is None:
        return unmatched_value
    return max(match.confidence, matched_floor)


def extract_participant_info(transcript: str) -> ParticipantInfo:
    names: list[str] = []
    emails: list[str] = []
    domains: list[str] = []

    for raw_email in _EMAIL_PATTERN.findall(transcript):
        email = raw_email.lower()
        if email not in emails:
            emails.append(email)
        domain = email.split("@", maxsplit=1)[1]
        if domain not in WEBMAIL_DOMAINS and domain not in domains:
            domains.append(domain)

    for speaker in _SPEAKER_PATTERN.findall(transcript):
        if speaker not in names:
            names.append(speaker)

    return ParticipantInfo(names=names, emails=emails, domains=domains)


def suggest_merges(companies: Sequence[Company]) -> list[MergeSuggestion]:
    suggestions: list[MergeSuggestion] = []
    consumed: set[str] = set()

    for index, primary in enumerate(companies):
        if primary.id in consumed:
            continue

        primary_domain = normalize_domain(primary.normalized_domain or primary.domain)
        primary_name = normalize_company_name(primary.name)
        duplicates: list[str] = []
        max_confidence = 0.0

        for candidate in companies[index + 1 :]:
            if candidate.id in consumed:
                continue

            candidate_domain = normalize_domain(candidate.normalized_domain or candidate.domain)
            if primary_domain and candidate_domain and primary_domain == candidate_domain:
                duplicates.append(candidate.id)
                consumed.add(candidate.id)
                max_confidence = max(max_confidence, MERGE_DOMAIN_CONFIDENCE)
                continue

            similarity = calculate_similarity(primary_name, normalize_company_name(candidate.name))
            if similarity > SIMILARITY_THRESHOLD:
                duplicates.append(candidate.id)
                consumed.add(candidate.id)
                max_confidence = max(max_confidence, similarity)

        if duplicates:
            consumed.add(primary.id)
            suggestions.append(
                MergeSuggestion(
                    primary=primary.id,
                    duplicates=duplicates,
                    confidence=round(max_confidence, 4),
                ),
            )

    return suggestions


class CompanyMatcher:
    def __init__(self, text_client: GeminiClient) -> None:
        self.text_client = text_client

    def detect(
        self,
        transcript_text: str,
        existing_companies: Sequence[Company],
    ) -> CompanyDetection | None:
        prompt = DETECTION_PROMPT.format(
            transcript=truncate(transcript_text, DETECTION_TRANSCRIPT_LIMIT),
        )
        raw_output = self.text_client.generate_text(prompt, json_output=True, temperature=0.1)
        parsed = parse_first_json_object(raw_output)
        if parsed is None:
            logger.warning("Company detection output was not JSON length=%s", len(raw_output))
            return None

        company_name = _clean_string(parsed.get("company_name"))
        if not company_name or company_name.lower() == "null":
            return None

        website = _clean_string(parsed.get("website"))
        domain = normalize_domain(_clean_string(parsed.get("domain"))) or normalize_domain(website)
        model_tier = (_clean_string(parsed.get("confidence")) or "low").lower()

        match = find_matching_company(company_name, domain, existing_companies)
        confidence = blend_confidence(model_tier, match)
        logger.info(
            "Company detected name=%s matched_id=%s match_confidence=%.2f confidence=%.2f",
            company_name,
            match.company.id if match.company else None,
            match.confidence,
            confidence,
        )
        return CompanyDetection(
            name=company_name,
            confidence=confidence,
            existing_company_id=match.company.id if match.company else None,
            website=website,
            domain=domain,
            stage=_clean_string(parsed.get("stage")),
            industry=_clean_string(parsed.get("industry")),
            founders=_parse_founders(parsed.get("founders")),
            model_confidence=model_tier,
            mentioned_company_names=_string_list(parsed.get("mentioned_company_names")),
        )


def _parse_founders(value: Any) -> list[Founder]:
    if not isinstance(value, list):
        return []
    founders: list[Founder] = []
    for item in value:
        if isinstance(item, Founder):
            founders.append(item)
            continue
        if not isinstance(item, Mapping):
            continue
        name = _clean_string(item.get("name"))
        if name:
            founders.append(Founder(name=name, title=_clean_string(item.get("title"))))
    return founders


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [text for item in value if (text := _clean_string(item))]


def _clean_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None
