"""Paragraph and section boundary detection for raw document text."""

from __future__ import annotations

import re

from rag_core.types import DocumentStructure, Paragraph, Section

_HTML_PARAGRAPH = re.compile(r"<p\b[^>]*>(.*?)</p>", flags=re.IGNORECASE | re.DOTALL)
_BLANK_LINES = re.compile(r"\n[ \t\r\f\v]*\n\s*")
_MARKDOWN_HEADING = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t#]*$", flags=re.MULTILINE)
_HTML_HEADING = re.compile(r"<h([1-6])\b[^>]*>(.*?)</h\1\s*>", flags=re.IGNORECASE | re.DOTALL)
_NUMBERED_HEADING = re.compile(r"^(\d+(?:\.\d+)*)[ \t]+([A-Z][^\n]{0,79})$", flags=re.MULTILINE)
_TAG = re.compile(r"<[^>]+>")
_NUMBERED_DUPLICATE_DISTANCE = 10


class BoundaryDetector:
    """Finds paragraph and heading boundaries as character offsets.

    Paragraphs come from HTML `<p>` blocks when the text contains them, and
    from blank-line runs otherwise; text with neither is one paragraph.
    Sections merge markdown headings, HTML `h1..h6` and numbered headings
    (`2.1 Scope`), ordered by position, each ending where the next begins.
    """

    def detect_paragraphs(self, text: str) -> list[Paragraph]:
        if not text or not text.strip():
            return []

        spans: list[tuple[int, int]] = []
        if _HTML_PARAGRAPH.search(text):
            spans = [(m.start(), m.end()) for m in _HTML_PARAGRAPH.finditer(text)]
        else:
            cursor = 0
            for match in _BLANK_LINES.finditer(text):
                spans.append((cursor, match.start()))
                cursor = match.end()
            spans.append((cursor, len(text)))

        paragraphs: list[Paragraph] = []
        for start, end in spans:
            trimmed = _trim_span(text, start, end)
            if trimmed is None:
                continue
            paragraphs.append(Paragraph(index=len(paragraphs), start_char=trimmed[0], end_char=trimmed[1]))

        if not paragraphs:
            start, end = _trim_span(text, 0, len(text)) or (0, len(text))
            paragraphs.append(Paragraph(index=0, start_char=start, end_char=end))
        return paragraphs

    def detect_sections(self, text: str) -> list[Section]:
        if not text or not text.strip():
            return []

        found: list[tuple[int, str, int, str]] = []
        for match in _MARKDOWN_HEADING.finditer(text):
            found.append((match.start(), match.group(2).strip(), len(match.group(1)), "markdown"))
        for match in _HTML_HEADING.finditer(text):
            title = _TAG.sub("", match.group(2)).strip()
            if title:
                found.append((match.start(), title, int(match.group(1)), "html"))
        for match in _NUMBERED_HEADING.finditer(text):
            title = match.group(2).strip()
            if title.endswith((".", ",", ";")):
                continue
            start = match.start()
            if any(
                abs(start - other_start) <= _NUMBERED_DUPLICATE_DISTANCE and other_title == title
                for other_start, other_title, _, _ in found
            ):
                continue
            found.append((start, title, match.group(1).count(".") + 1, "numbered"))

        found.sort(key=lambda item: item[0])
        sections: list[Section] = []
        for i, (start, title, level, kind) in enumerate(found):
            end = found[i + 1][0] if i + 1 < len(found) else len(text)
            sections.append(
                Section(index=i, title=title, level=level, start_char=start, end_char=end, kind=kind)
            )
        return sections

    def detect_structure(self, text: str) -> DocumentStructure:
        paragraphs = self.detect_paragraphs(text)
        sections = self.detect_sections(text)
        for paragraph in paragraphs:
            section = self.find_section_at(sections, paragraph.start_char)
            paragraph.section_index = section.index if section else None
        return DocumentStructure(paragraphs=paragraphs, sections=sections)

    @staticmethod
    def find_section_at(sections: list[Section], position: int) -> Section | None:
        for section in sections:
            if section.start_char <= position < section.end_char:
                return section
        return None

    @staticmethod
    def paragraphs_in_range(paragraphs: list[Paragraph], start: int, end: int) -> list[Paragraph]:
        return [p for p in paragraphs if p.start_char < end and p.end_char > start]

    @staticmethod
    def is_paragraph_boundary(paragraphs: list[Paragraph], position: int) -> bool:
        return any(p.start_char == position or p.end_char == position for p in paragraphs)

    @staticmethod
    def is_section_boundary(sections: list[Section], position: int) -> bool:
        return any(s.start_char == position for s in sections)


def _trim_span(text: str, start: int, end: int) -> tuple[int, int] | None:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    if start >= end:
        return None
    return start, end
