from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any


_BOLD_RE = re.compile(r"(\*\*[^*]+\*\*|__[^_]+__)")
_NUMBERED_RE = re.compile(r"^\d+\.\s")

_HEADING_SIZES = {"h1": 16, "h2": 14, "h3": 12}

RESULTS_SEPARATOR = "\n--- RESULTS ---\n\n"


def doc_len(text: str) -> int:
    """Length in UTF-16 code units, the unit document indexes are counted in."""
    return len(text.encode("utf-16-le")) // 2


@dataclass(frozen=True)
class Section:
    kind: str
    text: str
    inline_bold: bool = False


def _has_bold(text: str) -> bool:
    return "**" in text or "__" in text


def parse_sections(content: str) -> list[Section]:
    """Split markdown answer text into typed lines."""
    sections: list[Section] = []
    for line in (content or "").split("\n"):
        s = line.strip()
        if not s:
            sections.append(Section("empty", ""))
        elif s.startswith("### "):
            sections.append(Section("h3", s[4:].strip()))
        elif s.startswith("## "):
            sections.append(Section("h2", s[3:].strip()))
        elif s.startswith("# "):
            sections.append(Section("h1", s[2:].strip()))
        elif s.startswith("- ") or s.startswith("• "):
            text = s[2:].strip()
            sections.append(Section("bullet", text, _has_bold(text)))
        elif _NUMBERED_RE.match(s):
            sections.append(Section("number", s))
        elif s.startswith("|") and s.endswith("|"):
            sections.append(Section("text", s))
        elif s.startswith("---") or s.startswith("==="):
            continue
        else:
            sections.append(Section("text", s, _has_bold(s)))
    return sections


class DocumentBuilder:
    """Accumulates insert/style requests, tracking the running insert index.

    Every insert lands at the current end of the document, so the index only
    ever advances by the length of the text just inserted.
    """

    def __init__(self, start_index: int = 1):
        self.index = start_index
        self.requests: list[dict[str, Any]] = []

    def insert(self, text: str) -> int:
        start = self.index
        if not text:
            return start
        self.requests.append({"insertText": {"location": {"index": start}, "text": text}})
        self.index += doc_len(text)
        return start

    def style(self, start: int, end: int, *, bold: bool = True, font_size: int | None = None) -> None:
        if end <= start:
            return
        text_style: dict[str, Any] = {"bold": bold}
        fields = ["bold"]
        if font_size is not None:
            text_style["fontSize"] = {"magnitude": font_size, "unit": "PT"}
            fields.append("fontSize")
        self.requests.append(
            {
                "updateTextStyle": {
                    "range": {"startIndex": start, "endIndex": end},
                    "textStyle": text_style,
                    "fields": ",".join(fields),
                }
            }
        )

    def insert_styled_line(self, text: str, font_size: int) -> None:
        start = self.insert(text + "\n")
        self.style(start, start + doc_len(text), font_size=font_size)

    def insert_inline(self, text: str) -> None:
        for part in _BOLD_RE.split(text):
            if not part:
                continue
            if _BOLD_RE.fullmatch(part):
                bold = part[2:-2]
                start = self.insert(bold)
                self.style(start, start + doc_len(bold))
                continue
            self.insert(part.replace("*", ""))


def _format_timestamp(value: Any) -> tuple[str, str]:
    try:
        ts = datetime.fromisoformat(str(value))
    except ValueError:
        return str(value or ""), ""
    return ts.strftime("%Y-%m-%d"), ts.strftime("%H:%M:%S")


def build_document_requests(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Rich-text requests rendering one execution payload into an empty document."""
    doc = DocumentBuilder()

    title = str(payload.get("query") or "")
    start = doc.insert(title + "\n\n")
    doc.style(start, start + doc_len(title), font_size=16)

    date, time = _format_timestamp(payload.get("timestamp"))
    doc.insert(f"Executed: {date} at {time}\nModel: {payload.get('model') or 'N/A'}\n")

    filters = payload.get("filters") or {}
    if filters.get("date_range"):
        doc.insert(f"Date Range: {filters['date_range']}\n")
    if filters.get("websites"):
        doc.insert(f"Website Filters: {filters['websites']}\n")

    start = doc.insert(RESULTS_SEPARATOR)
    doc.style(start + 1, start + 1 + doc_len("--- RESULTS ---"), font_size=14)

    for section in parse_sections(str(payload.get("content") or "")):
        if section.kind == "empty":
            doc.insert("\n")
        elif section.kind in _HEADING_SIZES:
            doc.insert_styled_line(section.text, _HEADING_SIZES[section.kind])
        elif section.kind == "bullet":
            line = "    " + section.text + "\n"
            if section.inline_bold:
                doc.insert_inline(line)
            else:
                doc.insert(line)
        elif section.inline_bold:
            doc.insert_inline(section.text + "\n")
        else:
            doc.insert(section.text + "\n")

    return doc.requests
