"""Base models and common types for the score extraction engine."""

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class MediaKind(str, Enum):
    """Declared or sniffed kind of an input document."""

    PDF = "pdf"
    DOCX = "docx"
    IMAGE = "image"
    TEXT = "text"


class DocumentStatus(str, Enum):
    """Outcome of normalizing one source document."""

    OK = "ok"
    NO_CONTENT = "no_content"


class SectionStatus(str, Enum):
    """Outcome of one section segmentation attempt."""

    OK = "ok"
    MISSING_ANCHOR = "missing_anchor"
    PARSE_ERROR = "parse_error"
    NO_CONTENT = "no_content"


class ScoreKind(str, Enum):
    """Role of a score within its battery."""

    SUBTEST = "subtest"
    COMPOSITE = "composite"
    INDEX = "index"


class ScoreScale(str, Enum):
    """Normative metric a score is reported on."""

    SCALED = "scaled"  # mean 10, SD 3
    STANDARD = "standard"  # mean 100, SD 15
    T_SCORE = "t_score"  # mean 50, SD 10


class InstrumentKind(str, Enum):
    """Supported test families."""

    WISC = "WISC"
    WAIS = "WAIS"
    WPPSI = "WPPSI"
    WIAT = "WIAT"
    WRAML = "WRAML"
    ABAS = "ABAS"
    BASC = "BASC"


class SourceStrategy(str, Enum):
    """Extraction strategy that produced a record.

    Declaration order is merge precedence: earlier members win.
    """

    STRUCTURAL_TABLE = "structural_table"
    POSITIONAL_TABLE = "positional_table"
    LABELED_FIELD = "labeled_field"
    INLINE_NOTATION = "inline_notation"
    FREE_NARRATIVE = "free_narrative"
    MANUAL = "manual"

    @property
    def precedence(self) -> int:
        """Rank used by the merger (0 = highest priority)."""
        return list(SourceStrategy).index(self)


class BaseIRModel(BaseModel):
    """Base class for document IR models with identity and creation time."""

    id: UUID = Field(default_factory=uuid4)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        from_attributes = True
