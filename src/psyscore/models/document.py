"""Document-level IR models produced by the structural normalizer."""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from .base import BaseIRModel, DocumentStatus, MediaKind


class TextItem(BaseModel):
    """Positioned text token from a page-layout source."""

    x: float
    y: float
    text: str
    width: float = Field(default=0.0, ge=0.0)
    height: float = Field(default=0.0, ge=0.0)
    font_size: float = Field(default=0.0, ge=0.0)

    @property
    def x2(self) -> float:
        """Right edge X coordinate."""
        return self.x + self.width


class Line(BaseModel):
    """Items sharing a vertical tolerance band, ordered left-to-right."""

    y: float
    items: list[TextItem] = Field(default_factory=list)
    text: str = ""

    @property
    def cells(self) -> list[str]:
        """Item texts, one per positioned token."""
        return [item.text.strip() for item in self.items if item.text.strip()]

    @property
    def column_count(self) -> int:
        return len(self.cells)


class Page(BaseModel):
    """Ordered lines of one page, top-to-bottom."""

    page_number: int = Field(..., ge=1, description="1-indexed page number")
    width: Optional[float] = None
    height: Optional[float] = None
    lines: list[Line] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(line.text for line in self.lines)


class Paragraph(BaseModel):
    """Word-processor paragraph node."""

    kind: Literal["paragraph"] = "paragraph"
    text: str = ""
    style: Optional[str] = None


class TableNode(BaseModel):
    """Ordered rows of ordered cell strings.

    Built either from a word-processor table element or from a run of
    multi-column layout lines. Rows keep source order and every cell is kept,
    including empty and repeated (merged) cells.
    """

    kind: Literal["table"] = "table"
    rows: list[list[str]] = Field(default_factory=list)
    title: Optional[str] = Field(None, description="Text immediately preceding the table")
    source: str = Field(default="docx", description="'docx', 'layout' or 'text'")
    page_number: Optional[int] = None

    @property
    def num_rows(self) -> int:
        return len(self.rows)

    @property
    def num_cols(self) -> int:
        return max((len(r) for r in self.rows), default=0)

    def to_text(self) -> str:
        """Tab-joined rows, used when flattening a body into full text."""
        return "\n".join("\t".join(row) for row in self.rows)


BodyNode = Annotated[Union[Paragraph, TableNode], Field(discriminator="kind")]


class OCRLine(BaseModel):
    """Line of text recovered by the OCR fallback."""

    text: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    page_number: int = Field(default=1, ge=1)
    top: float = Field(default=0.0, ge=0.0)


class Document(BaseIRModel):
    """
    Normalized source document.

    Holds the derived full text and at most one structural tree: ``pages``
    for page-layout sources or ``body`` for word-processor sources. Frozen
    once built; the pipeline discards it after extraction.
    """

    source_id: str = Field(..., description="Opaque source identifier (usually a filename)")
    media_kind: MediaKind
    full_text: str = ""
    pages: Optional[list[Page]] = None
    body: Optional[list[BodyNode]] = None
    ocr_lines: list[OCRLine] = Field(default_factory=list)
    status: DocumentStatus = DocumentStatus.OK

    class Config:
        frozen = True

    @property
    def is_empty(self) -> bool:
        return self.status == DocumentStatus.NO_CONTENT or not self.full_text.strip()

    @property
    def tables(self) -> list[TableNode]:
        """Structural tables from the word-processor body."""
        if not self.body:
            return []
        return [node for node in self.body if isinstance(node, TableNode)]

    @property
    def lines(self) -> list[Line]:
        """All layout lines in page order."""
        if not self.pages:
            return []
        return [line for page in self.pages for line in page.lines]

    @classmethod
    def empty(cls, source_id: str, media_kind: MediaKind) -> "Document":
        """Document with no recoverable text."""
        return cls(
            source_id=source_id,
            media_kind=media_kind,
            status=DocumentStatus.NO_CONTENT,
        )
