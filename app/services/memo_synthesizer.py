from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from app.services.gemini_client import GeminiClient, GeminiApiError
from app.services.memo_templates import (
    MEMO_TEMPLATES,
    NOT_DISCUSSED,
    MemoTemplate,
    get_template,
    keyword_winner,
    match_template_id,
    missing_required_sections,
)
from app.services.model_output import parse_first_json_array, truncate

logger = logging.getLogger(__name__)

CLASSIFICATION_TRANSCRIPT_LIMIT = 4000
MEMO_TRANSCRIPT_LIMIT = 12000
SUMMARY_TRANSCRIPT_LIMIT = 4000
TASKS_INPUT_LIMIT = 12000

ACTION_ITEM_PRIORITIES = frozenset({"low", "medium", "high"})
DEFAULT_PRIORITY = "medium"


@dataclass
class ActionItem:
    title: str
    priority: str = DEFAULT_PRIORITY
    due_date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "priority": self.priority, "due_date": self.due_date}

    @classmethod
    def from_payload(cls, payload: Any) -> ActionItem | None:
        if not isinstance(payload, dict):
            return None

        raw_title = payload.get("title")
        if not isinstance(raw_title, str) or not raw_title.strip():
            return None

        raw_priority = payload.get("priority")
        priority = raw_priority.strip().lower() if isinstance(raw_priority, str) else ""
        if priority not in ACTION_ITEM_PRIORITIES:
            priority = DEFAULT_PRIORITY

        return cls(
            title=raw_title.strip(),
            priority=priority,
            due_date=_normalize_due_date(payload.get("due_date") or payload.get("dueDate")),
        )


class MemoSynthesizer:
    def __init__(self, text_client: GeminiClient) -> None:
        self.text_client = text_client

    def classify_meeting(self, transcript: str) -> MemoTemplate:
        winner = keyword_winner(transcript)
        if winner:
            logger.info("Meeting classified by keywords template=%s", winner)
            return get_template(winner)

        descriptions = "\n".join(
            f"- {template.id}: {template.description}" for template in MEMO_TEMPLATES
        )
        prompt = (
            "Classify this meeting transcript into one of the following categories:\n\n"
            f"{descriptions}\n\n"
            'Return ONLY the category ID (e.g., "founder-pitch", "customer-call", etc.).\n'
            'If unsure, return "internal".\n\n'
            "Transcript excerpt:\n"
            f"{truncate(transcript, CLASSIFICATION_TRANSCRIPT_LIMIT)}"
        )
        try:
            answer = self.text_client.generate_text(prompt, temperature=0.0)
        except GeminiApiError as exc:
            logger.warning("Meeting classification failed, using default template error=%s", exc)
            return get_template(None)

        template = get_template(match_template_id(answer))
        logger.info("Meeting classified by model template=%s", template.id)
        return template

    def generate_memo(
        self,
        transcript: str,
        template: MemoTemplate,
        *,
        title: str | None = None,
        company_name: str | None = None,
    ) -> str:
        outline = "\n\n".join(
            f"## {section.title}\n{section.prompt}" for section in template.sections
        )
        context_lines = []
        if title:
            context_lines.append(f"Meeting title: {title}")
        if company_name:
            context_lines.append(f"Company: {company_name}")
        context = "\n".join(context_lines)

        prompt = (
            f"Write a {template.name} memo from this meeting transcript.\n"
            "Use exactly these markdown sections, in this order, each starting with its "
            "'## ' heading:\n\n"
            f"{outline}\n\n"
            "Be concise but thorough. Extract specific numbers, quotes, and facts when "
            "available.\n"
            f'If information isn\'t available for a section, write "{NOT_DISCUSSED}"\n\n'
            f"{context}\n\n"
            "Transcript:\n"
            f"{truncate(transcript, MEMO_TRANSCRIPT_LIMIT)}"
        )
        content = self.text_client.generate_text(
            prompt,
            system_instruction=template.system_prompt,
            temperature=0.3,
        ).strip()
        return complete_required_sections(content, template)

    def summarize(self, transcript: str) -> str:
        prompt = (
            "Summarize this meeting in 1-2 sentences. Be specific about what was discussed "
            "and any key outcomes:\n\n"
            f"{truncate(transcript, SUMMARY_TRANSCRIPT_LIMIT)}"
        )
        return self.text_client.generate_text(prompt, temperature=0.2).strip()

    def extract_action_items(self, memo_content: str) -> list[ActionItem]:
        prompt = (
            "Extract action items from this meeting memo. Return a JSON array of objects "
            "with:\n"
            "- title: Brief task description (max 100 chars)\n"
            '- priority: "low", "medium", or "high"\n'
            "- due_date: YYYY-MM-DD if a date was agreed, otherwise null\n\n"
            "Return ONLY a valid JSON array. If no tasks, return [].\n\n"
            "Memo:\n"
            f"{truncate(memo_content, TASKS_INPUT_LIMIT)}"
        )
        try:
            raw_output = self.text_client.generate_text(prompt, json_output=True, temperature=0.1)
        except Exception as exc:
            logger.warning("Action item extraction failed error=%s", exc)
            return []

        raw_items = parse_first_json_array(raw_output)
        if raw_items is None:
            logger.warning("Action item output was not a JSON array length=%s", len(raw_output))
            return []

        items: list[ActionItem] = []
        for raw_item in raw_items:
            item = ActionItem.from_payload(raw_item)
            if item:
                items.append(item)
        return items


def complete_required_sections(content: str, template: MemoTemplate) -> str:
    missing = missing_required_sections(content, template)
    if not missing:
        return content
    logger.info(
        "Memo missing required sections template=%s missing=%s",
        template.id,
        [section.id for section in missing],
    )
    appended = "\n\n".join(f"## {section.title}\n\n{NOT_DISCUSSED}" for section in missing)
    return f"{content}\n\n{appended}" if content else appended


def _normalize_due_date(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    cleaned = value.strip()
    try:
        return date.fromisoformat(cleaned[:10]).isoformat()
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        return None
