"""IR models for the score extraction engine.

Pydantic models for data flowing between pipeline stages:
- Document → Pages → Lines → Items (page-layout sources)
- Document → Paragraph / TableNode body (word-processor sources)
- ScoreRecord → ScoreBatch → ScoreMap (extraction and merge)
- InstrumentDefinition (static registry data)
"""

from .base import (
    BaseIRModel,
    DocumentStatus,
    InstrumentKind,
    MediaKind,
    ScoreKind,
    ScoreScale,
    SectionStatus,
    SourceStrategy,
)
from .document import (
    BodyNode,
    Document,
    Line,
    OCRLine,
    Page,
    Paragraph,
    TableNode,
    TextItem,
)
from .instrument import (
    PERCENTILE_BOUNDS,
    SCALE_BOUNDS,
    ClassificationBand,
    FieldDefinition,
    InstrumentDefinition,
    ScoreBounds,
)
from .score import (
    ManualOverride,
    ScoreBatch,
    ScoreMap,
    ScoreRecord,
)
from .section import SectionExtract

__all__ = [
    # Base types
    "BaseIRModel",
    "DocumentStatus",
    "InstrumentKind",
    "MediaKind",
    "ScoreKind",
    "ScoreScale",
    "SectionStatus",
    "SourceStrategy",
    # Document
    "BodyNode",
    "Document",
    "Line",
    "OCRLine",
    "Page",
    "Paragraph",
    "TableNode",
    "TextItem",
    # Instrument registry
    "PERCENTILE_BOUNDS",
    "SCALE_BOUNDS",
    "ClassificationBand",
    "FieldDefinition",
    "InstrumentDefinition",
    "ScoreBounds",
    # Scores
    "ManualOverride",
    "ScoreBatch",
    "ScoreMap",
    "ScoreRecord",
    # Sections
    "SectionExtract",
]
