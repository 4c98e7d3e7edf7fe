from rag_core.config import AdaptiveChunkingConfig, ChunkingConfig
from rag_core.ingest.doctype import detect_document_type, document_characteristics
from rag_core.ingest.profiles import calculate_overlap_size, resolve_options
from rag_core.types import ChunkingStrategy, DocumentType, OverlapMode


def test_extension_wins_over_mime_and_content() -> None:
    assert detect_document_type("report.PDF", "text/html", "<html>") is DocumentType.PDF
    assert detect_document_type("main.py") is DocumentType.CODE
    assert detect_document_type("notes.md") is DocumentType.MARKDOWN


def test_mime_type_used_when_extension_unknown() -> None:
    assert detect_document_type("blob.bin", "text/markdown; charset=utf-8") is DocumentType.MARKDOWN
    assert detect_document_type(None, "application/pdf") is DocumentType.PDF


def test_content_sniffing() -> None:
    code = "import os\n\ndef handler(event):\n    # respond\n    return {'ok': True}\n"
    html = "<!DOCTYPE html><html><body><p>Hi</p></body></html>"
    markdown = "# Title\n\n- first item\n- second item\n\nSee [docs](http://example.com)."

    assert detect_document_type(content=code) is DocumentType.CODE
    assert detect_document_type(content=html) is DocumentType.HTML
    assert detect_document_type(content=markdown) is DocumentType.MARKDOWN
    assert detect_document_type(content="Plain prose about gardens") is DocumentType.TEXT
    assert detect_document_type() is DocumentType.UNKNOWN


def test_characteristics_for_empty_content_use_defaults() -> None:
    stats = document_characteristics("", DocumentType.CODE)

    assert stats.structure_complexity == "high"
    assert stats.code_density == 0.08


def test_profiles_follow_document_type() -> None:
    config = ChunkingConfig()

    code = resolve_options(config, DocumentType.CODE)
    pdf = resolve_options(config, DocumentType.PDF)

    assert (code.max_tokens, code.min_tokens) == (600, 80)
    assert (pdf.max_tokens, pdf.min_tokens) == (1000, 150)
    assert code.document_type is DocumentType.CODE


def test_disabled_adaptive_sizing_uses_plain_config() -> None:
    config = ChunkingConfig(max_tokens=300, min_tokens=50, overlap_tokens=30)
    config.adaptive.enabled = False

    options = resolve_options(config, DocumentType.PDF)

    assert (options.max_tokens, options.min_tokens, options.overlap_tokens) == (300, 50, 30)
    assert options.strategy is ChunkingStrategy.SENTENCE


def test_overlap_modes() -> None:
    adaptive = AdaptiveChunkingConfig()
    profile = adaptive.profiles[DocumentType.CODE]

    assert calculate_overlap_size(600, OverlapMode.FIXED, adaptive, profile, fixed_tokens=40) == 40
    assert calculate_overlap_size(600, OverlapMode.RATIO, adaptive, profile) == 120
    # small chunks get a slightly larger share, large chunks a smaller one
    assert calculate_overlap_size(400, OverlapMode.DYNAMIC, adaptive) == 58
    assert calculate_overlap_size(2000, OverlapMode.DYNAMIC, adaptive) == 210
    assert calculate_overlap_size(800, OverlapMode.DYNAMIC, adaptive) == 100


def test_overlap_never_reaches_chunk_size() -> None:
    adaptive = AdaptiveChunkingConfig()

    assert calculate_overlap_size(10, OverlapMode.FIXED, adaptive, fixed_tokens=50) == 9
