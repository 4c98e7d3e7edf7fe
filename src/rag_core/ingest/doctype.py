"""Document type detection used to pick a chunk size profile."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePath

from rag_core.types import DocumentType

_EXTENSIONS: dict[str, DocumentType] = {
    "pdf": DocumentType.PDF,
    "doc": DocumentType.DOCX,
    "docx": DocumentType.DOCX,
    "txt": DocumentType.TEXT,
    "text": DocumentType.TEXT,
    "html": DocumentType.HTML,
    "htm": DocumentType.HTML,
    "xml": DocumentType.HTML,
    "md": DocumentType.MARKDOWN,
    "markdown": DocumentType.MARKDOWN,
    "mdown": DocumentType.MARKDOWN,
    "mkd": DocumentType.MARKDOWN,
}
_CODE_EXTENSIONS = frozenset(
    "js ts jsx tsx py java cpp c cs go rs rb php swift kt scala sh bash zsh fish sql "
    "css scss sass less json yaml yml toml ini conf config".split()
)

_MIME_TYPES: dict[str, DocumentType] = {
    "application/pdf": DocumentType.PDF,
    "application/msword": DocumentType.DOCX,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": DocumentType.DOCX,
    "text/plain": DocumentType.TEXT,
    "text/markdown": DocumentType.MARKDOWN,
    "text/x-markdown": DocumentType.MARKDOWN,
    "text/html": DocumentType.HTML,
    "application/xhtml+xml": DocumentType.HTML,
    "application/xml": DocumentType.HTML,
    "text/xml": DocumentType.HTML,
    "application/json": DocumentType.CODE,
    "application/javascript": DocumentType.CODE,
    "text/javascript": DocumentType.CODE,
    "text/x-python": DocumentType.CODE,
    "application/x-sh": DocumentType.CODE,
}

_CODE_PATTERNS = (
    re.compile(r"\b(function|def|class|interface|import|export|require|const|let|var)\s+"),
    re.compile(r"[{}\[\]]{2,}"),
    re.compile(r"//|/\*|#\s|--\s"),
    re.compile(r"=>|->|::"),
    re.compile(r";\s*$", flags=re.MULTILINE),
)
_HTML_PATTERNS = (
    re.compile(r"<!DOCTYPE\s+html", flags=re.IGNORECASE),
    re.compile(r"<html[\s>]", flags=re.IGNORECASE),
    re.compile(r"<head[\s>]", flags=re.IGNORECASE),
    re.compile(r"<body[\s>]", flags=re.IGNORECASE),
    re.compile(r"<[a-z][^>]*>", flags=re.IGNORECASE),
)
_MARKDOWN_PATTERNS = (
    re.compile(r"^#{1,6}\s+.+$", flags=re.MULTILINE),
    re.compile(r"^\s*[-*+]\s+", flags=re.MULTILINE),
    re.compile(r"^\s*\d+\.\s+", flags=re.MULTILINE),
    re.compile(r"\[.+\]\(.+\)"),
    re.compile(r"!\[.+\]\(.+\)"),
    re.compile(r"```[\s\S]*```"),
    re.compile(r"\*\*.*\*\*|__.*__"),
    re.compile(r"\*.*\*|_.*_"),
)
_SPECIAL_CHARS = re.compile(r"[{}\[\](),;=+\-*/%<>!&|]")
_SENTENCE_END = re.compile(r"[.!?]+")
_HEADER = re.compile(r"^#{1,6}\s+|<h[1-6]", flags=re.IGNORECASE | re.MULTILINE)

_SPECIAL_CHAR_RATIO = 0.05
_MIN_LENGTH_FOR_RATIO = 100


@dataclass(slots=True)
class DocumentCharacteristics:
    average_sentence_length: float
    average_paragraph_length: float
    code_density: float
    structure_complexity: str


_DEFAULT_CHARACTERISTICS: dict[DocumentType, DocumentCharacteristics] = {
    DocumentType.PDF: DocumentCharacteristics(120, 500, 0.0, "medium"),
    DocumentType.DOCX: DocumentCharacteristics(100, 400, 0.0, "medium"),
    DocumentType.TEXT: DocumentCharacteristics(80, 300, 0.0, "low"),
    DocumentType.CODE: DocumentCharacteristics(60, 200, 0.08, "high"),
    DocumentType.MARKDOWN: DocumentCharacteristics(90, 350, 0.0, "medium"),
    DocumentType.HTML: DocumentCharacteristics(70, 250, 0.02, "high"),
    DocumentType.UNKNOWN: DocumentCharacteristics(100, 400, 0.0, "medium"),
}


def detect_document_type(
    filename: str | None = None,
    mime_type: str | None = None,
    content: str | None = None,
) -> DocumentType:
    """Classify a document by extension, then MIME type, then content.

    The first signal that yields a known type wins; empty input with no
    filename or MIME hint is `UNKNOWN`.
    """

    if filename:
        detected = _from_extension(filename)
        if detected is not None:
            return detected
    if mime_type:
        detected = _MIME_TYPES.get(mime_type.split(";")[0].strip().lower())
        if detected is not None:
            return detected
    if content and content.strip():
        return _from_content(content)
    return DocumentType.UNKNOWN


def document_characteristics(content: str, document_type: DocumentType) -> DocumentCharacteristics:
    """Rough shape statistics used when tuning chunk profiles."""

    if not content or not content.strip():
        return _DEFAULT_CHARACTERISTICS[document_type]

    sentences = [s for s in _SENTENCE_END.split(content) if s.strip()]
    paragraphs = [p for p in re.split(r"\n\s*\n", content) if p.strip()]
    avg_sentence = sum(len(s.strip()) for s in sentences) / len(sentences) if sentences else 0.0
    avg_paragraph = sum(len(p.strip()) for p in paragraphs) / len(paragraphs) if paragraphs else 0.0

    code_density = 0.0
    if document_type is DocumentType.CODE:
        code_density = len(_SPECIAL_CHARS.findall(content)) / len(content)
        complexity = "high" if code_density > 0.1 else "medium" if code_density > 0.05 else "low"
    elif document_type in (DocumentType.HTML, DocumentType.MARKDOWN):
        headers = len(_HEADER.findall(content))
        complexity = "high" if headers > 10 else "medium" if headers > 5 else "low"
    else:
        count = len(paragraphs)
        complexity = "high" if count > 20 else "medium" if count > 10 else "low"

    return DocumentCharacteristics(
        average_sentence_length=avg_sentence,
        average_paragraph_length=avg_paragraph,
        code_density=code_density,
        structure_complexity=complexity,
    )


def _from_extension(filename: str) -> DocumentType | None:
    suffix = PurePath(filename).suffix.lower().lstrip(".")
    if not suffix:
        return None
    if suffix in _CODE_EXTENSIONS:
        return DocumentType.CODE
    return _EXTENSIONS.get(suffix)


def _from_content(content: str) -> DocumentType:
    if _looks_like_code(content):
        return DocumentType.CODE
    if any(pattern.search(content) for pattern in _HTML_PATTERNS):
        return DocumentType.HTML
    if sum(1 for pattern in _MARKDOWN_PATTERNS if pattern.search(content)) >= 2:
        return DocumentType.MARKDOWN
    return DocumentType.TEXT


def _looks_like_code(content: str) -> bool:
    if sum(1 for pattern in _CODE_PATTERNS if pattern.search(content)) >= 2:
        return True
    ratio = len(_SPECIAL_CHARS.findall(content)) / len(content)
    return ratio > _SPECIAL_CHAR_RATIO and len(content) > _MIN_LENGTH_FOR_RATIO
