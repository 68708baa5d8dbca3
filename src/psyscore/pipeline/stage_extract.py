"""Extract Stage - Recover score records with ordered strategies.

Strategies, in precedence order:
1. StructuralTableStrategy - word-processor tables in the Document body
2. PositionalTableStrategy - runs of multi-column layout (or spaced text) lines
3. LabeledFieldStrategy - line-anchored "Name  raw  scaled  CI  percentile" shapes
4. InlineNotationStrategy - "VCI = 100 (PR = 50)", "FSIQ: 96, 39th percentile"
5. FreeNarrativeStrategy - "...obtained a scaled score of 9 (37th percentile)..."

Every strategy is independent and pure. A strategy that raises is logged
and treated as having found nothing; it never stops the others. Values
outside an instrument's bounds are dropped without comment.
"""

import logging
import re
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field

from psyscore.config import settings
from psyscore.instruments import find_all_mentions, get_instrument, name_pattern
from psyscore.models import (
    Document,
    FieldDefinition,
    InstrumentKind,
    ScoreBatch,
    ScoreRecord,
    SourceStrategy,
)
from psyscore.pipeline.stage_classify import make_record
from psyscore.pipeline.stage_table import (
    find_positional_tables,
    find_text_tables,
    read_table,
)

logger = logging.getLogger(__name__)


class ExtractionContext(BaseModel):
    """Inputs shared by all strategies for one document."""

    document: Document
    instruments: list[InstrumentKind] = Field(default_factory=list)
    document_index: int = Field(default=0, ge=0)
    text: Optional[str] = Field(None, description="Span to search; defaults to the full text")

    @property
    def span(self) -> str:
        return self.text if self.text is not None else self.document.full_text

    @property
    def source_id(self) -> str:
        return self.document.source_id


class BaseStrategy(ABC):
    """One way of recovering scores from a document."""

    strategy: SourceStrategy

    @property
    def name(self) -> str:
        return self.__class__.__name__

    def applies(self, context: ExtractionContext) -> bool:
        """Whether the document carries the evidence this strategy reads."""
        return bool(context.span.strip())

    @abstractmethod
    def find_records(self, context: ExtractionContext) -> list[ScoreRecord]:
        ...

    def postprocess(self, records: list[ScoreRecord]) -> list[ScoreRecord]:
        """Keep the first record per field."""
        seen: set[str] = set()
        unique = []
        for record in records:
            if record.field_key not in seen:
                seen.add(record.field_key)
                unique.append(record)
        return unique

    def extract(self, context: ExtractionContext) -> list[ScoreRecord]:
        """Run the strategy; failures yield no records."""
        if not context.instruments or not self.applies(context):
            return []
        try:
            records = self.find_records(context)
        except Exception:
            logger.exception("%s failed on %s", self.name, context.source_id)
            return []
        return self.postprocess(records)


# ---------------------------------------------------------------------------
# Table strategies
# ---------------------------------------------------------------------------


class StructuralTableStrategy(BaseStrategy):
    strategy = SourceStrategy.STRUCTURAL_TABLE

    def applies(self, context: ExtractionContext) -> bool:
        return bool(context.document.tables)

    def find_records(self, context: ExtractionContext) -> list[ScoreRecord]:
        records = []
        for table in context.document.tables:
            records.extend(
                read_table(table, context.instruments, self.strategy, context.source_id)
            )
        return records


class PositionalTableStrategy(BaseStrategy):
    """Tables rebuilt from layout lines, or from column-aligned plain text."""

    strategy = SourceStrategy.POSITIONAL_TABLE

    def applies(self, context: ExtractionContext) -> bool:
        return bool(context.document.pages) or bool(context.span.strip())

    def find_records(self, context: ExtractionContext) -> list[ScoreRecord]:
        document = context.document
        if document.pages:
            tables = [
                table
                for page in document.pages
                for table in find_positional_tables(page.lines, page_number=page.page_number)
            ]
        elif document.body is None:
            tables = find_text_tables(context.span)
        else:
            # Word-processor tables are read structurally
            tables = []

        records = []
        for table in tables:
            records.extend(read_table(table, context.instruments, self.strategy, context.source_id))
        return records


# ---------------------------------------------------------------------------
# Text pattern strategies
# ---------------------------------------------------------------------------

SCORE = r"(?P<score>\d{1,3})(?![\d.])"
PERCENTILE = r"(?P<pct>[<>]?(?:100|\d{1,2}(?:\.\d+)?))(?:st|nd|rd|th|%)?(?![\d.])"
CI = r"(?P<ci>\d{1,3}[ \t]*[-–][ \t]*\d{1,3})"
SEP = r"[ \t]+"
SKIP = r"\d{1,3}(?![\d.])"
# Rest of a row after the last value: nothing or a descriptor
TAIL = r"[ \t]*(?:[A-Za-z(\[].*)?$"
PR = r"(?:PR|%ile|percentile(?:[ \t]+rank)?)"

LABELED_SHAPES = [
    # Name  raw  scaled  CI  percentile   (composites: sum  standard  CI  percentile)
    SEP + SKIP + SEP + SCORE + SEP + CI + SEP + PERCENTILE + TAIL,
    # Name  raw  scaled  percentile  CI
    SEP + SKIP + SEP + SCORE + SEP + PERCENTILE + SEP + CI + TAIL,
    # Name  raw  scaled  percentile
    SEP + SKIP + SEP + SCORE + SEP + PERCENTILE + TAIL,
    # Name  scaled  CI  percentile
    SEP + SCORE + SEP + CI + SEP + PERCENTILE + TAIL,
    # Name  scaled  percentile  CI
    SEP + SCORE + SEP + PERCENTILE + SEP + CI + TAIL,
    # Name  scaled  percentile
    SEP + SCORE + SEP + PERCENTILE + TAIL,
    # Name = scaled, PR = percentile
    r"[ \t]*[=:][ \t]*" + SCORE + r"[ \t]*[,;]?[ \t]*" + PR + r"[ \t]*[=:]?[ \t]*" + PERCENTILE,
]

INLINE_SHAPES = [
    # VCI = 100 (PR = 50)
    r"[ \t]*[=:][ \t]*" + SCORE + r"[ \t]*[,;(\[][ \t]*" + PR + r"[ \t]*[=:]?[ \t]*" + PERCENTILE,
    # Similarities (SS = 9, PR = 37)
    r"[ \t]*[(\[][ \t]*(?:SS|ScS|T|(?:scaled|standard|index|composite)[ \t]+score|score)[ \t]*[=:][ \t]*"
    + SCORE
    + r"[ \t]*[,;][ \t]*"
    + PR
    + r"[ \t]*[=:]?[ \t]*"
    + PERCENTILE,
    # FSIQ: 96, 39th percentile
    r"[ \t]*[=:][ \t]*" + SCORE + r"[ \t]*[,;(][ \t]*" + PERCENTILE + r"[ \t]*(?:percentile|%ile)",
    # VCI = 100
    r"[ \t]*[=:][ \t]*" + SCORE,
]


# Abbreviations that double as score notation ("SS = 9", "PR = 37")
NOTATION_TOKENS = {"SS", "PR", "T", "ScS", "SC"}


def _abbrev_suffix(field: FieldDefinition) -> str:
    return r"(?:[ \t]*\([ \t]*" + re.escape(field.abbrev) + r"[ \t]*\))?"


def _name_group(field: FieldDefinition, abbrev: bool) -> str:
    names = [f"(?i:{name_pattern(n)})" for n in field.names]
    if abbrev:
        names.append(r"\b" + re.escape(field.abbrev) + r"\b")
    return r"(?P<name>" + "|".join(names) + ")" + _abbrev_suffix(field)


FieldPatterns = tuple[tuple[FieldDefinition, tuple[re.Pattern, ...]], ...]


@lru_cache(maxsize=None)
def _labeled_patterns(kind: InstrumentKind) -> FieldPatterns:
    compiled = []
    for field in get_instrument(kind).fields:
        head = r"^[ \t]*" + _name_group(field, len(field.abbrev) >= 3) + r"[ \t]*[*†‡]*:?"
        patterns = tuple(re.compile(head + shape, re.MULTILINE) for shape in LABELED_SHAPES)
        compiled.append((field, patterns))
    return tuple(compiled)


@lru_cache(maxsize=None)
def _inline_patterns(kind: InstrumentKind) -> FieldPatterns:
    compiled = []
    for field in get_instrument(kind).fields:
        # A bare abbreviation is unambiguous when "=" or "(" follows it
        head = _name_group(field, field.abbrev not in NOTATION_TOKENS)
        patterns = tuple(re.compile(head + shape) for shape in INLINE_SHAPES)
        compiled.append((field, patterns))
    return tuple(compiled)


def _percentile(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    return float(value.lstrip("<>"))


def _overlaps(span: tuple[int, int], claimed: list[tuple[int, int]]) -> bool:
    return any(span[0] < end and start < span[1] for start, end in claimed)


class PatternStrategy(BaseStrategy):
    """Ordered regex shapes per field; the first in-bounds match wins.

    A spelled-out name only counts where it is the longest field name
    mentioned at that position, and a span claimed by one field is not
    reused for another.
    """

    @abstractmethod
    def patterns(self, kind: InstrumentKind) -> FieldPatterns:
        """Field definitions with their ordered shapes for one instrument."""

    def find_records(self, context: ExtractionContext) -> list[ScoreRecord]:
        text = context.span
        mentions = {
            (mention.start, kind, mention.field.abbrev)
            for mention, kind in find_all_mentions(text, context.instruments)
        }
        claimed: list[tuple[int, int]] = []
        records = []
        for instrument in context.instruments:
            for field, shapes in self.patterns(instrument):
                record = self._first_match(
                    text, instrument, field, shapes, mentions, claimed, context.source_id
                )
                if record is not None:
                    records.append(record)
        return records

    def _first_match(
        self,
        text: str,
        instrument: InstrumentKind,
        field: FieldDefinition,
        shapes: tuple[re.Pattern, ...],
        mentions: set[tuple[int, InstrumentKind, str]],
        claimed: list[tuple[int, int]],
        source_id: str,
    ) -> Optional[ScoreRecord]:
        for shape in shapes:
            for match in shape.finditer(text):
                by_abbrev = match.group("name") == field.abbrev
                if not by_abbrev and (match.start("name"), instrument, field.abbrev) not in mentions:
                    continue
                if _overlaps(match.span(), claimed):
                    continue
                groups = match.groupdict()
                record = make_record(
                    instrument,
                    field,
                    int(groups["score"]),
                    self.strategy,
                    percentile=_percentile(groups.get("pct")),
                    confidence_interval=groups.get("ci"),
                    source_document=source_id,
                )
                if record is not None:
                    claimed.append(match.span())
                    return record
        return None


class LabeledFieldStrategy(PatternStrategy):
    strategy = SourceStrategy.LABELED_FIELD

    def patterns(self, kind: InstrumentKind) -> FieldPatterns:
        return _labeled_patterns(kind)


class InlineNotationStrategy(PatternStrategy):
    strategy = SourceStrategy.INLINE_NOTATION

    def patterns(self, kind: InstrumentKind) -> FieldPatterns:
        return _inline_patterns(kind)


_NARRATIVE_SCORE = re.compile(
    r"\bscores?\s+(?:of|was|=)\s+(?P<score>\d{1,3})(?![\d.])",
    re.IGNORECASE,
)
# Value straight after the name: "Full Scale IQ of 96", "an FSIQ was 96", "VCI: 103"
_NARRATIVE_DIRECT = re.compile(
    r"\s*(?:\([A-Z]{2,5}\)\s*)?(?:(?:of|was)\s+|[=:]\s*)(?P<score>\d{1,3})(?![\d.])",
    re.IGNORECASE,
)
_NARRATIVE_PERCENTILE = re.compile(
    r"(?P<pct>100|\d{1,2}(?:\.\d+)?)(?:st|nd|rd|th)\s+percentile"
    r"|percentile(?:\s+rank)?\s+(?:of\s+)?(?P<pct2>100|\d{1,2}(?:\.\d+)?)(?![\d.])",
    re.IGNORECASE,
)


class FreeNarrativeStrategy(BaseStrategy):
    """Scores embedded in prose.

    After each field mention, take a value stated right after the name
    ("Full Scale IQ of 96") or else look for a "score of N" phrase within
    ``narrative_score_window`` characters (stopping at the next field
    mention), then an ordinal percentile within a further
    ``narrative_percentile_window`` characters.
    """

    strategy = SourceStrategy.FREE_NARRATIVE

    def __init__(
        self,
        score_window: Optional[int] = None,
        percentile_window: Optional[int] = None,
    ):
        self.score_window = score_window or settings.narrative_score_window
        self.percentile_window = percentile_window or settings.narrative_percentile_window

    def find_records(self, context: ExtractionContext) -> list[ScoreRecord]:
        text = context.span
        records = []
        found: set[str] = set()
        mentions = find_all_mentions(text, context.instruments)
        for index, (mention, instrument) in enumerate(mentions):
            key = get_instrument(instrument).field_key(mention.field.abbrev)
            if key in found:
                continue
            next_start = next(
                (m.start for m, _ in mentions[index + 1:] if m.start >= mention.end),
                len(text),
            )
            limit = min(mention.end + self.score_window, next_start)
            record = self._read_window(text, mention.end, limit, instrument, mention.field, context)
            if record is not None:
                found.add(key)
                records.append(record)
        return records

    def _read_window(
        self,
        text: str,
        start: int,
        limit: int,
        instrument: InstrumentKind,
        field: FieldDefinition,
        context: ExtractionContext,
    ) -> Optional[ScoreRecord]:
        score_match = _NARRATIVE_DIRECT.match(text, start, limit) or _NARRATIVE_SCORE.search(
            text, start, limit
        )
        if score_match is None:
            return None
        pct_match = _NARRATIVE_PERCENTILE.search(
            text,
            score_match.end(),
            min(score_match.end() + self.percentile_window, len(text)),
        )
        percentile = None
        if pct_match is not None:
            percentile = float(pct_match.group("pct") or pct_match.group("pct2"))
        return make_record(
            instrument,
            field,
            int(score_match.group("score")),
            self.strategy,
            percentile=percentile,
            source_document=context.source_id,
        )


# Precedence order; the merger relies on SourceStrategy order, not this list
STRATEGIES: list[BaseStrategy] = [
    StructuralTableStrategy(),
    PositionalTableStrategy(),
    LabeledFieldStrategy(),
    InlineNotationStrategy(),
    FreeNarrativeStrategy(),
]


def extract_batches(
    context: ExtractionContext,
    strategies: Optional[list[BaseStrategy]] = None,
) -> list[ScoreBatch]:
    """One batch per strategy that found anything in this document."""
    batches = []
    for strategy in strategies if strategies is not None else STRATEGIES:
        records = strategy.extract(context)
        logger.debug("%s: %d records from %s", strategy.name, len(records), context.source_id)
        if records:
            batches.append(
                ScoreBatch(
                    strategy=strategy.strategy,
                    document_index=context.document_index,
                    source_document=context.source_id,
                    records=records,
                )
            )
    return batches
