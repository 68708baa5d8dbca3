"""Pipeline stages for psychoeducational score extraction.

Deterministic Stages:
1. stage_normalize - Raw bytes to Document IR (PDF layout, DOCX body, OCR, text)
2. stage_ocr - Tesseract fallback for pages without a text layer
3. stage_segment - Named report sections via tiered anchor patterns
4. stage_table - Score table detection and column-indexed reading
5. stage_extract - Ordered extraction strategies producing score batches
6. stage_classify - Bounds, qualitative bands and percentile lookups
7. stage_merge - Precedence merge into a write-once ScoreMap
8. stage_render - Canonical HTML score tables
9. stage_narrative - Deterministic WAIS/WPPSI cognitive sections

Each stage is independent and can be run separately or
orchestrated through ``runner.run_report``.
"""

from .runner import (
    ReportResult,
    SourceDocument,
    build_report,
    decode_all,
    extract_document,
    run_report,
    run_report_sync,
)
from .stage_classify import (
    annotate,
    classify,
    descriptor_to_strength_label,
    make_record,
    percentile_to_descriptor,
    scaled_to_percentile,
)
from .stage_extract import (
    STRATEGIES,
    BaseStrategy,
    ExtractionContext,
    FreeNarrativeStrategy,
    InlineNotationStrategy,
    LabeledFieldStrategy,
    PositionalTableStrategy,
    StructuralTableStrategy,
    extract_batches,
)
from .stage_merge import apply_overrides, merge_batches, missing_fields
from .stage_narrative import fill_cognitive_template, personalize
from .stage_normalize import (
    DecoderCache,
    build_lines,
    decode_document,
    guess_media_kind,
    normalize,
    normalize_layout,
)
from .stage_ocr import TesseractOCR
from .stage_render import RenderedTable, render_html, render_tables
from .stage_segment import (
    SECTION_SPECS,
    SectionSpec,
    clean_section_text,
    extract_between,
    segment_document,
    segment_section,
)
from .stage_table import find_positional_tables, find_text_tables, read_table

__all__ = [
    # Normalize
    "DecoderCache",
    "build_lines",
    "decode_document",
    "guess_media_kind",
    "normalize",
    "normalize_layout",
    # OCR
    "TesseractOCR",
    # Segment
    "SECTION_SPECS",
    "SectionSpec",
    "clean_section_text",
    "extract_between",
    "segment_document",
    "segment_section",
    # Tables
    "find_positional_tables",
    "find_text_tables",
    "read_table",
    # Extraction
    "STRATEGIES",
    "BaseStrategy",
    "ExtractionContext",
    "FreeNarrativeStrategy",
    "InlineNotationStrategy",
    "LabeledFieldStrategy",
    "PositionalTableStrategy",
    "StructuralTableStrategy",
    "extract_batches",
    # Classification
    "annotate",
    "classify",
    "descriptor_to_strength_label",
    "make_record",
    "percentile_to_descriptor",
    "scaled_to_percentile",
    # Merge
    "apply_overrides",
    "merge_batches",
    "missing_fields",
    # Render
    "RenderedTable",
    "render_html",
    "render_tables",
    # Narrative
    "fill_cognitive_template",
    "personalize",
    # Orchestration
    "ReportResult",
    "SourceDocument",
    "build_report",
    "decode_all",
    "extract_document",
    "run_report",
    "run_report_sync",
]
