"""Normalize Stage - Turn raw document bytes into a Document IR.

Page-layout sources (PDF) become a page -> line -> item tree, word-processor
sources (DOCX) become a paragraph/table body, raster images go straight to
OCR and anything else is read as plain text.

Decoder libraries are loaded lazily through ``DecoderCache`` singletons:
the first call pays the import/initialization cost, later calls reuse the
instance, and a failed load leaves the cache empty so the next call retries.
"""

import asyncio
import importlib
import io
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Generic, Optional, TypeVar

from psyscore.config import settings
from psyscore.errors import DecoderUnavailableError, UnsupportedMediaError
from psyscore.models import (
    Document,
    Line,
    MediaKind,
    OCRLine,
    Page,
    Paragraph,
    TableNode,
    TextItem,
)
from psyscore.pipeline.stage_ocr import TesseractOCR, load_image, pixmap_to_array

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DecoderCache(Generic[T]):
    """Process-wide, lazily initialized decoder handle.

    ``get`` loads on first use and reuses the result afterwards. If the
    loader raises, nothing is cached and ``DecoderUnavailableError`` is
    raised; a later ``get`` tries again.
    """

    def __init__(self, name: str, loader: Callable[[], T]):
        self.name = name
        self.loader = loader
        self._instance: Optional[T] = None
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._instance is not None

    def get(self) -> T:
        if self._instance is not None:
            return self._instance
        with self._lock:
            if self._instance is None:
                try:
                    self._instance = self.loader()
                except Exception as e:
                    logger.warning("Failed to load %s decoder: %s", self.name, e)
                    raise DecoderUnavailableError(self.name, str(e)) from e
                logger.debug("Loaded %s decoder", self.name)
        return self._instance

    def reset(self) -> None:
        """Drop the cached instance so the next ``get`` reloads it."""
        with self._lock:
            self._instance = None


class DocxDecoder:
    """Thin handle over python-docx, imported on first use."""

    def __init__(self) -> None:
        self._docx = importlib.import_module("docx")
        self._table_type = importlib.import_module("docx.table").Table

    def open(self, raw: bytes) -> Any:
        return self._docx.Document(io.BytesIO(raw))

    def is_table(self, block: Any) -> bool:
        return isinstance(block, self._table_type)


def _load_pdf_decoder() -> Any:
    fitz = importlib.import_module("fitz")
    # Repair warnings on vendor PDFs would otherwise go to stderr
    fitz.TOOLS.mupdf_display_errors(False)
    return fitz


def _load_ocr_engine() -> TesseractOCR:
    engine = TesseractOCR(language=settings.ocr_language)
    # Fails fast when the tesseract binary is missing
    engine.version()
    return engine


PDF_DECODER: DecoderCache[Any] = DecoderCache("pdf", _load_pdf_decoder)
DOCX_DECODER: DecoderCache[DocxDecoder] = DecoderCache("docx", DocxDecoder)
OCR_ENGINE: DecoderCache[TesseractOCR] = DecoderCache("ocr", _load_ocr_engine)


# ---------------------------------------------------------------------------
# Media sniffing
# ---------------------------------------------------------------------------

_IMAGE_MAGIC = (
    b"\x89PNG\r\n\x1a\n",
    b"\xff\xd8\xff",
    b"II*\x00",
    b"MM\x00*",
)

_SUFFIX_KINDS = {
    ".pdf": MediaKind.PDF,
    ".docx": MediaKind.DOCX,
    ".png": MediaKind.IMAGE,
    ".jpg": MediaKind.IMAGE,
    ".jpeg": MediaKind.IMAGE,
    ".tif": MediaKind.IMAGE,
    ".tiff": MediaKind.IMAGE,
    ".txt": MediaKind.TEXT,
    ".md": MediaKind.TEXT,
}


def guess_media_kind(raw: bytes, filename: Optional[str] = None) -> MediaKind:
    """Media kind from magic bytes, falling back to the file suffix."""
    if raw.startswith(b"%PDF"):
        return MediaKind.PDF
    if raw.startswith(b"PK\x03\x04"):
        return MediaKind.DOCX
    if raw.startswith(_IMAGE_MAGIC):
        return MediaKind.IMAGE
    if filename:
        suffix = Path(filename).suffix.lower()
        if suffix in _SUFFIX_KINDS:
            return _SUFFIX_KINDS[suffix]
    return MediaKind.TEXT


# ---------------------------------------------------------------------------
# Layout reconstruction
# ---------------------------------------------------------------------------


def join_items(items: list[TextItem], tab_gap: float, space_gap: float) -> str:
    """Synthesize line text, marking wide gaps with a tab and medium gaps with two spaces."""
    if not items:
        return ""
    parts = [items[0].text]
    for prev, item in zip(items, items[1:]):
        gap = item.x - prev.x2
        if gap > tab_gap:
            parts.append("\t")
        elif gap > space_gap:
            parts.append("  ")
        parts.append(item.text)
    return "".join(parts).strip()


def build_lines(
    items: list[TextItem],
    tolerance: Optional[float] = None,
    inverted: bool = False,
    tab_gap: Optional[float] = None,
    space_gap: Optional[float] = None,
) -> list[Line]:
    """Group positioned items into lines.

    Args:
        items: Text items of one page.
        tolerance: Vertical bucket size; items whose ``y`` rounds to the
            same bucket share a line.
        inverted: True when the source numbers ``y`` bottom-up, so larger
            values are higher on the page.
        tab_gap: Horizontal gap above which a tab separates items.
        space_gap: Horizontal gap above which two spaces separate items.

    Returns:
        Lines top-to-bottom, items left-to-right within each line.
    """
    tolerance = tolerance or settings.line_tolerance
    tab_gap = settings.tab_gap if tab_gap is None else tab_gap
    space_gap = settings.space_gap if space_gap is None else space_gap

    buckets: dict[int, list[TextItem]] = {}
    for item in items:
        if not item.text.strip():
            continue
        buckets.setdefault(round(item.y / tolerance), []).append(item)

    lines = []
    for key in sorted(buckets, reverse=inverted):
        row = sorted(buckets[key], key=lambda i: i.x)
        lines.append(
            Line(
                y=min(i.y for i in row),
                items=row,
                text=join_items(row, tab_gap, space_gap),
            )
        )
    return lines


def page_items(page: Any) -> list[TextItem]:
    """Positioned spans of a PyMuPDF page."""
    items = []
    data = page.get_text("dict")
    for block in data.get("blocks", []):
        # type 1 blocks are images
        if block.get("type", 0) != 0:
            continue
        for line in block.get("lines", []):
            for span in line.get("spans", []):
                text = span.get("text", "")
                if not text.strip():
                    continue
                x0, y0, x1, y1 = span["bbox"]
                items.append(
                    TextItem(
                        x=x0,
                        y=y0,
                        text=text,
                        width=max(x1 - x0, 0.0),
                        height=max(y1 - y0, 0.0),
                        font_size=span.get("size", 0.0),
                    )
                )
    return items


def normalize_layout(
    pages: list[list[TextItem]],
    source_id: str,
    media_kind: MediaKind = MediaKind.PDF,
    inverted: bool = False,
) -> Document:
    """Build a Document from already-positioned items, one list per page."""
    built = [
        Page(page_number=index + 1, lines=build_lines(items, inverted=inverted))
        for index, items in enumerate(pages)
    ]
    full_text = "\n\n".join(page.text for page in built if page.lines)
    if len(full_text.strip()) < settings.ocr_min_chars:
        return Document.empty(source_id, media_kind)
    return Document(source_id=source_id, media_kind=media_kind, full_text=full_text, pages=built)


# ---------------------------------------------------------------------------
# OCR fallback
# ---------------------------------------------------------------------------


def ocr_lines(image: Any, page_number: int = 1) -> list[OCRLine]:
    """OCR a gray page image. Returns no lines when OCR is unavailable."""
    try:
        engine = OCR_ENGINE.get()
    except DecoderUnavailableError as e:
        logger.warning("OCR fallback skipped: %s", e)
        return []
    return engine.extract_lines(
        image,
        page_number=page_number,
        min_confidence=settings.ocr_min_confidence,
    )


def _ocr_page(page: Any, page_number: int) -> list[OCRLine]:
    pixmap = page.get_pixmap(dpi=settings.ocr_dpi, alpha=False)
    image = pixmap_to_array(pixmap.samples, pixmap.width, pixmap.height, pixmap.n)
    return ocr_lines(image, page_number=page_number)


# ---------------------------------------------------------------------------
# Format paths
# ---------------------------------------------------------------------------


def _normalize_pdf(raw: bytes, source_id: str) -> Document:
    fitz = PDF_DECODER.get()
    pages: list[Page] = []
    recovered: list[OCRLine] = []
    chunks: list[str] = []

    with fitz.open(stream=raw, filetype="pdf") as pdf:
        for index, pdf_page in enumerate(pdf):
            page_number = index + 1
            lines = build_lines(page_items(pdf_page))
            pages.append(
                Page(
                    page_number=page_number,
                    width=pdf_page.rect.width,
                    height=pdf_page.rect.height,
                    lines=lines,
                )
            )
            if lines:
                chunks.append("\n".join(line.text for line in lines))
                continue

            logger.info("Page %d of %s has no text layer, running OCR", page_number, source_id)
            page_ocr = _ocr_page(pdf_page, page_number)
            recovered.extend(page_ocr)
            if page_ocr:
                chunks.append("\n".join(line.text for line in page_ocr))

    full_text = "\n\n".join(chunks)
    if len(full_text.strip()) < settings.ocr_min_chars:
        logger.warning("No extractable text in %s", source_id)
        return Document.empty(source_id, MediaKind.PDF)

    return Document(
        source_id=source_id,
        media_kind=MediaKind.PDF,
        full_text=full_text,
        pages=pages,
        ocr_lines=recovered,
    )


def _cell_text(cell: Any) -> str:
    return " ".join(p.text.strip() for p in cell.paragraphs if p.text.strip())


def _normalize_docx(raw: bytes, source_id: str) -> Document:
    decoder = DOCX_DECODER.get()
    document = decoder.open(raw)

    body: list = []
    chunks: list[str] = []
    title: Optional[str] = None
    for block in document.iter_inner_content():
        if decoder.is_table(block):
            rows = [[_cell_text(cell) for cell in row.cells] for row in block.rows]
            node = TableNode(rows=rows, title=title, source="docx")
            body.append(node)
            chunks.append(node.to_text())
            continue

        text = "".join(run.text for run in block.runs)
        style = block.style.name if block.style is not None else None
        body.append(Paragraph(text=text, style=style))
        chunks.append(text)
        if text.strip():
            title = text.strip()

    full_text = "\n".join(chunks)
    if len(full_text.strip()) < settings.ocr_min_chars:
        logger.warning("No extractable text in %s", source_id)
        return Document.empty(source_id, MediaKind.DOCX)

    return Document(source_id=source_id, media_kind=MediaKind.DOCX, full_text=full_text, body=body)


def _normalize_image(raw: bytes, source_id: str) -> Document:
    recovered = ocr_lines(load_image(raw))
    full_text = "\n".join(line.text for line in recovered)
    if len(full_text.strip()) < settings.ocr_min_chars:
        logger.warning("OCR recovered no usable text from %s", source_id)
        return Document.empty(source_id, MediaKind.IMAGE)
    return Document(
        source_id=source_id,
        media_kind=MediaKind.IMAGE,
        full_text=full_text,
        ocr_lines=recovered,
    )


def _normalize_text(raw: bytes, source_id: str) -> Document:
    full_text = raw.decode("utf-8", errors="replace").replace("\r\n", "\n")
    if len(full_text.strip()) < settings.ocr_min_chars:
        return Document.empty(source_id, MediaKind.TEXT)
    return Document(source_id=source_id, media_kind=MediaKind.TEXT, full_text=full_text)


_NORMALIZERS = {
    MediaKind.PDF: _normalize_pdf,
    MediaKind.DOCX: _normalize_docx,
    MediaKind.IMAGE: _normalize_image,
    MediaKind.TEXT: _normalize_text,
}


def normalize(
    raw: bytes,
    media_kind: Optional[MediaKind] = None,
    source_id: str = "document",
) -> Document:
    """Decode raw bytes into a Document.

    Args:
        raw: Document bytes; never modified.
        media_kind: Declared kind. Sniffed from the bytes when omitted.
        source_id: Identifier carried through to score records.

    Returns:
        Document with a layout or body tree, or an empty ``no_content``
        Document when no usable text could be recovered.

    Raises:
        DecoderUnavailableError: If the decoder the kind needs cannot load.
        UnsupportedMediaError: If ``media_kind`` has no decoder.
    """
    kind = media_kind or guess_media_kind(raw, source_id)
    normalizer = _NORMALIZERS.get(kind)
    if normalizer is None:
        raise UnsupportedMediaError(f"No decoder for {kind}")

    logger.debug("Normalizing %s as %s (%d bytes)", source_id, kind.value, len(raw))
    return normalizer(raw, source_id)


async def decode_document(
    raw: bytes,
    media_kind: Optional[MediaKind] = None,
    source_id: str = "document",
) -> Document:
    """Run ``normalize`` in a worker thread.

    Cancelling the awaiting task stops waiting for the result; the decoder
    call already running in the thread finishes on its own.
    """
    return await asyncio.to_thread(normalize, raw, media_kind, source_id)
