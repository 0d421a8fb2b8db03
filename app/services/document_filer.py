from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from html import escape

from app.services.google_drive_client import GoogleDriveClient

logger = logging.getLogger(__name__)

_BOLD_PATTERN = re.compile(r"\*\*(.+?)\*\*")
_ITALIC_PATTERN = re.compile(r"\*(.+?)\*")
_UNDERSCORE_ITALIC_PATTERN = re.compile(r"\b_(.+?)_\b")

MEMO_DOCUMENT_STYLE = """
    body { font-family: Arial, sans-serif; font-size: 11pt; line-height: 1.5; color: #333; }
    h1 { font-size: 18pt; color: #1a73e8; border-bottom: 2px solid #1a73e8; }
    h2 { font-size: 14pt; color: #185abc; border-bottom: 1px solid #e0e0e0; }
    h3 { font-size: 12pt; color: #3c4043; }
    .header-meta { background-color: #f8f9fa; padding: 12px 16px; border-left: 4px solid #1a73e8; }
    .summary-box { background-color: #e8f0fe; padding: 12px 16px; }
"""


@dataclass(frozen=True)
class MemoDocument:
    title: str
    content: str
    summary: str | None = None
    meeting_date: datetime | None = None
    company_name: str | None = None
    meeting_type: str | None = None


@dataclass(frozen=True)
class FilingResult:
    document_id: str
    document_url: str
    folder_id: str
    refreshed_access_token: str | None = None
    refresh_token: str | None = None


DriveClientFactory = Callable[[str, str], GoogleDriveClient]


class DocumentFiler:
    """Mirrors a memo into Google Drive. ``file`` never raises."""

    def __init__(self, client_factory: DriveClientFactory, folder_name: str) -> None:
        self.client_factory = client_factory
        self.folder_name = folder_name

    def file(
        self,
        access_token: str | None,
        refresh_token: str | None,
        destination_folder: str | None,
        memo: MemoDocument,
    ) -> FilingResult | None:
        if not access_token and not refresh_token:
            logger.info("Document filing skipped reason=no_credentials title=%s", memo.title)
            return None

        try:
            client = self.client_factory(access_token or "", refresh_token or "")
            folder_id = client.ensure_folder(
                folder_name=self.folder_name,
                folder_id=destination_folder,
            )
            created = client.create_document(
                name=memo.title,
                html=memo_to_html(memo),
                folder_id=folder_id,
            )
        except Exception:
            logger.exception("Document filing failed title=%s", memo.title)
            return None

        logger.info("Document filed document_id=%s folder_id=%s", created["id"], folder_id)
        return FilingResult(
            document_id=created["id"],
            document_url=created["web_view_link"],
            folder_id=folder_id,
            refreshed_access_token=client.access_token if client.token_refreshed else None,
            refresh_token=client.refresh_token if client.token_refreshed else None,
        )


def memo_to_html(memo: MemoDocument, *, generated_at: datetime | None = None) -> str:
    meeting_date = (
        memo.meeting_date.strftime("%A, %B %d, %Y") if memo.meeting_date else "Date not specified"
    )
    generated = (generated_at or datetime.now(UTC)).strftime("%B %d, %Y")

    meta_lines: list[str] = []
    if memo.company_name:
        meta_lines.append(f"<p><strong>Company:</strong> {escape(memo.company_name)}</p>")
    meta_lines.append(f"<p><strong>Meeting Date:</strong> {meeting_date}</p>")
    if memo.meeting_type:
        meeting_type = " ".join(part.capitalize() for part in memo.meeting_type.split("-"))
        meta_lines.append(f"<p><strong>Meeting Type:</strong> {escape(meeting_type)}</p>")
    meta_lines.append(f"<p><strong>Generated:</strong> {generated}</p>")

    summary_html = ""
    if memo.summary:
        summary_html = (
            '<div class="summary-box"><p><strong>Executive Summary:</strong> '
            f"{escape(memo.summary)}</p></div>"
        )

    return (
        "<!DOCTYPE html>\n<html>\n<head>\n"
        f"<style>{MEMO_DOCUMENT_STYLE}</style>\n"
        "</head>\n<body>\n"
        f"<h1>{escape(memo.title)}</h1>\n"
        f'<div class="header-meta">\n{"".join(meta_lines)}\n</div>\n'
        f"{summary_html}\n"
        f'<div class="content">\n{markdown_to_html(memo.content)}</div>\n'
        "</body>\n</html>"
    )


def markdown_to_html(markdown: str) -> str:
    html_parts: list[str] = []
    paragraph: list[str] = []
    in_list = False

    def flush_paragraph() -> None:
        if paragraph:
            html_parts.append(f"<p>{' '.join(paragraph)}</p>\n")
            paragraph.clear()

    def close_list() -> None:
        nonlocal in_list
        if in_list:
            html_parts.append("</ul>\n")
            in_list = False

    for raw_line in markdown.splitlines():
        line = raw_line.strip()
        if not line or line == "---":
            flush_paragraph()
            close_list()
            continue

        heading_level = 0
        if line.startswith("### "):
            heading_level = 3
        elif line.startswith("## "):
            heading_level = 2
        elif line.startswith("# "):
            heading_level = 2
        if heading_level:
            flush_paragraph()
            close_list()
            text = line.split(" ", maxsplit=1)[1]
            html_parts.append(f"<h{heading_level}>{_format_inline(text)}</h{heading_level}>\n")
            continue

        if line.startswith(("- ", "* ")):
            flush_paragraph()
            if not in_list:
                html_parts.append("<ul>\n")
                in_list = True
            html_parts.append(f"  <li>{_format_inline(line[2:])}</li>\n")
            continue

        close_list()
        paragraph.append(_format_inline(line))

    flush_paragraph()
    close_list()
    return "".join(html_parts)


def _format_inline(text: str) -> str:
    escaped = escape(text, quote=False)
    escaped = _BOLD_PATTERN.sub(r"<strong>\1</strong>", escaped)
    escaped = _ITALIC_PATTERN.sub(r"<em>\1</em>", escaped)
    return _UNDERSCORE_ITALIC_PATTERN.sub(r"<em>\1</em>", escaped)
