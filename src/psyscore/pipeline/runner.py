"""Report runner - decode, extract, segment, merge and render in one pass.

Only decoding is asynchronous. Documents are decoded one after another by
default (``settings.concurrent_decode`` gathers them instead), each under a
timeout. A document that fails to decode or times out is dropped and the
report continues with the rest; cancelling the run itself propagates.
"""

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from psyscore.config import settings
from psyscore.errors import PsyscoreError
from psyscore.instruments import (
    InstrumentSelection,
    detect_instruments,
    parse_age_months,
)
from psyscore.models import (
    Document,
    InstrumentKind,
    ManualOverride,
    MediaKind,
    ScoreBatch,
    ScoreKind,
    ScoreMap,
    SectionExtract,
)
from psyscore.pipeline.stage_extract import ExtractionContext, extract_batches
from psyscore.pipeline.stage_merge import apply_overrides, missing_fields
from psyscore.pipeline.stage_normalize import decode_document, guess_media_kind
from psyscore.pipeline.stage_render import RenderedTable, render_tables
from psyscore.pipeline.stage_segment import segment_document

logger = logging.getLogger(__name__)


class SourceDocument(BaseModel):
    """Raw bytes handed over by the upload layer."""

    source_id: str
    raw: bytes
    media_kind: Optional[MediaKind] = None

    @classmethod
    def from_path(cls, path: Path, media_kind: Optional[MediaKind] = None) -> "SourceDocument":
        raw = Path(path).read_bytes()
        return cls(
            source_id=Path(path).name,
            raw=raw,
            media_kind=media_kind or guess_media_kind(raw, str(path)),
        )


class ReportResult(BaseModel):
    """Everything one report pass produces."""

    documents: list[Document] = Field(default_factory=list)
    sections: dict[str, list[SectionExtract]] = Field(
        default_factory=dict, description="Section id -> one extract per document"
    )
    batches: list[ScoreBatch] = Field(default_factory=list)
    score_map: ScoreMap
    tables: list[RenderedTable] = Field(default_factory=list)
    selection: InstrumentSelection
    unresolved: list[str] = Field(
        default_factory=list, description="Mandatory field keys with no score"
    )

    class Config:
        arbitrary_types_allowed = True

    def section(self, section_id: str) -> Optional[SectionExtract]:
        """First usable extract for a section, else the first attempt."""
        extracts = self.sections.get(section_id, [])
        for extract in extracts:
            if extract.ok:
                return extract
        return extracts[0] if extracts else None


async def _decode_one(source: SourceDocument, timeout: float) -> Optional[Document]:
    try:
        return await asyncio.wait_for(
            decode_document(source.raw, source.media_kind, source.source_id),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("Decoding %s timed out after %.0fs", source.source_id, timeout)
    except PsyscoreError as e:
        logger.warning("Skipping %s: %s", source.source_id, e)
    except Exception:
        # Corrupt or truncated input raises from inside the decoder library
        logger.exception("Failed to decode %s", source.source_id)
    return None


async def decode_all(
    sources: list[SourceDocument],
    concurrent: Optional[bool] = None,
    timeout: Optional[float] = None,
) -> list[Optional[Document]]:
    """Decode ``sources`` in order; failed entries are None."""
    concurrent = settings.concurrent_decode if concurrent is None else concurrent
    timeout = timeout or settings.decode_timeout
    if concurrent:
        return list(await asyncio.gather(*(_decode_one(s, timeout) for s in sources)))
    return [await _decode_one(source, timeout) for source in sources]


def extract_document(
    document: Document,
    document_index: int,
    instruments: Optional[list[InstrumentKind]] = None,
) -> list[ScoreBatch]:
    """Run every strategy on one document.

    Instruments are detected from the document text when not given.
    """
    if document.is_empty:
        return []
    kinds = instruments if instruments is not None else detect_instruments(document.full_text)
    context = ExtractionContext(document=document, instruments=kinds, document_index=document_index)
    return extract_batches(context)


def _selection(
    mentioned: list[list[InstrumentKind]],
    age_months: Optional[int],
) -> InstrumentSelection:
    detected: list[InstrumentKind] = []
    for kinds in mentioned:
        for kind in kinds:
            if kind not in detected:
                detected.append(kind)
    return InstrumentSelection.from_detected(detected, age_months)


def _instruments_for(mentioned: list[InstrumentKind], selection: InstrumentSelection) -> list[InstrumentKind]:
    """Selected instruments, those the document mentions first."""
    first = [k for k in mentioned if selection.includes(k)]
    return first + [k for k in selection.instruments if k not in first]


def build_report(
    documents: list[Document],
    student_label: str = "",
    selection: Optional[InstrumentSelection] = None,
    overrides: Iterable[ManualOverride] = (),
    age: Optional[str] = None,
) -> ReportResult:
    """Synchronous part of a report pass over already-decoded documents."""
    documents = [d for d in documents if not d.is_empty]
    # Classified once per document; reused for selection and extraction order
    mentioned = [detect_instruments(d.full_text) for d in documents]
    selection = selection or _selection(mentioned, parse_age_months(age))

    batches: list[ScoreBatch] = []
    sections: dict[str, list[SectionExtract]] = {}
    for index, document in enumerate(documents):
        batches.extend(extract_document(document, index, _instruments_for(mentioned[index], selection)))
        for section_id, extract in segment_document(
            document.full_text, source_document=document.source_id
        ).items():
            sections.setdefault(section_id, []).append(extract)

    score_map = apply_overrides(batches, overrides)
    unresolved = missing_fields(
        score_map, selection.cognitive, (ScoreKind.INDEX, ScoreKind.COMPOSITE)
    ) + missing_fields(score_map, selection.achievement, (ScoreKind.COMPOSITE,))

    logger.info(
        "Report for %s: %d documents, %d scores, %d unresolved mandatory fields",
        student_label or "student",
        len(documents),
        len(score_map),
        len(unresolved),
    )
    return ReportResult(
        documents=documents,
        sections=sections,
        batches=batches,
        score_map=score_map,
        tables=render_tables(student_label, score_map, selection),
        selection=selection,
        unresolved=unresolved,
    )


async def run_report(
    sources: list[SourceDocument],
    student_label: str = "",
    selection: Optional[InstrumentSelection] = None,
    overrides: Iterable[ManualOverride] = (),
    age: Optional[str] = None,
) -> ReportResult:
    """Decode every source, then extract, segment, merge and render.

    Args:
        sources: Documents in upload order; order breaks precedence ties.
        student_label: Shown in table captions.
        selection: Instruments for the report; detected when omitted
            (the student's age, if given, picks the cognitive battery).
        overrides: Manual values for fields no document yields.
        age: Age at testing, e.g. "10 years, 2 months".

    Returns:
        ReportResult; always complete, with sentinel cells where data is missing.
    """
    decoded = await decode_all(sources)
    documents = [d for d in decoded if d is not None]
    return build_report(documents, student_label, selection, overrides, age)


def run_report_sync(
    sources: list[SourceDocument],
    student_label: str = "",
    selection: Optional[InstrumentSelection] = None,
    overrides: Iterable[ManualOverride] = (),
    age: Optional[str] = None,
) -> ReportResult:
    """Blocking wrapper around ``run_report``."""
    return asyncio.run(run_report(sources, student_label, selection, overrides, age))

