"""Table Stage - Detect score tables and read them by column index.

Two table sources feed the same reader:
- word-processor tables, already rows of cells in the Document body
- positional tables, detected as runs of multi-column layout lines

A header row is recognised by column-name patterns (raw, scaled, standard,
T, percentile, CI, descriptor). Tables without one are read with positional
defaults chosen from the field's scale.
"""

import logging
import re
import statistics
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from psyscore.config import settings
from psyscore.instruments import family_hits, get_instrument, match_label
from psyscore.models import (
    FieldDefinition,
    InstrumentKind,
    Line,
    ScoreKind,
    ScoreRecord,
    ScoreScale,
    SourceStrategy,
    TableNode,
)
from psyscore.pipeline.stage_classify import canonical_label, make_record

logger = logging.getLogger(__name__)


class ColumnRole(str, Enum):
    """Meaning of a table column."""

    LABEL = "label"
    RAW = "raw"
    SCALED = "scaled"
    STANDARD = "standard"
    T_SCORE = "t_score"
    PERCENTILE = "percentile"
    CI = "ci"
    DESCRIPTOR = "descriptor"
    SUM = "sum"


# Checked in order; the first pattern that matches a header cell decides its role
HEADER_PATTERNS: list[tuple[ColumnRole, re.Pattern]] = [
    (ColumnRole.SUM, re.compile(r"\bsum\b", re.I)),
    (ColumnRole.CI, re.compile(r"confidence|\bci\b|\d{2}\s*%", re.I)),
    (ColumnRole.PERCENTILE, re.compile(r"percentile|%ile|\bp\.?r\.?\b|\brank\b", re.I)),
    (ColumnRole.RAW, re.compile(r"\braw\b", re.I)),
    (ColumnRole.SCALED, re.compile(r"scaled", re.I)),
    (ColumnRole.T_SCORE, re.compile(r"^\s*t\s*$|\bt[\s\-]?scores?\b", re.I)),
    (
        ColumnRole.STANDARD,
        re.compile(r"standard|(?:composite|index)\s+score|^\s*score\s*$|^\s*ss\s*$", re.I),
    ),
    (
        ColumnRole.DESCRIPTOR,
        re.compile(r"descript|classification|qualitative|category|\brange\b|\blevel\b", re.I),
    ),
    (
        ColumnRole.LABEL,
        re.compile(r"subtest|composite|index|scale|domain|area|measure|\btest\b|skill", re.I),
    ),
]

VALUE_ROLES = {
    ColumnRole.RAW,
    ColumnRole.SCALED,
    ColumnRole.STANDARD,
    ColumnRole.T_SCORE,
    ColumnRole.PERCENTILE,
}

_INT = re.compile(r"^\s*(\d{1,3})\s*[*†‡]*\s*$")
_PERCENTILE = re.compile(r"^\s*[<>≤≥]?\s*(\d{1,2}(?:\.\d+)?|100)\s*(?:st|nd|rd|th|%)?\s*$", re.I)
_CI = re.compile(r"^\s*\d{1,3}\s*[-–]\s*\d{1,3}\s*$")


def parse_score(cell: Optional[str]) -> Optional[int]:
    """Integer score in a cell, tolerating footnote markers."""
    if cell is None:
        return None
    match = _INT.match(cell)
    return int(match.group(1)) if match else None


def parse_percentile(cell: Optional[str]) -> Optional[float]:
    """Percentile in a cell: "37", "37th", ">99.9", "<0.1"."""
    if cell is None:
        return None
    match = _PERCENTILE.match(cell)
    return float(match.group(1)) if match else None


def is_confidence_interval(cell: str) -> bool:
    return bool(_CI.match(cell))


class ColumnMap(BaseModel):
    """Column index per role for one header row."""

    columns: dict[ColumnRole, int]

    def get(self, role: ColumnRole) -> Optional[int]:
        return self.columns.get(role)

    @property
    def label(self) -> int:
        return self.columns.get(ColumnRole.LABEL, 0)

    def score_column(self, scale: ScoreScale) -> Optional[int]:
        """Column holding values on ``scale``.

        Generic "Score" / "SS" headers map to the standard column, so scaled
        and T values fall back to it; bounds checks reject mismatches later.
        """
        own = {
            ScoreScale.SCALED: ColumnRole.SCALED,
            ScoreScale.T_SCORE: ColumnRole.T_SCORE,
        }.get(scale)
        if own is not None and own in self.columns:
            return self.columns[own]
        return self.get(ColumnRole.STANDARD)


def classify_header_cell(cell: str) -> Optional[ColumnRole]:
    for role, pattern in HEADER_PATTERNS:
        if pattern.search(cell):
            return role
    return None


def detect_header(row: list[str]) -> Optional[ColumnMap]:
    """Column map for a header row, or None if ``row`` is not a header.

    A header names at least two columns, one of them a value column, and
    contains no numeric cells.
    """
    if any(parse_score(cell) is not None for cell in row):
        return None
    columns: dict[ColumnRole, int] = {}
    for index, cell in enumerate(row):
        role = classify_header_cell(cell)
        if role is not None and role not in columns:
            columns[role] = index
    if len(columns) < 2 or not VALUE_ROLES & set(columns):
        return None
    if ColumnRole.LABEL not in columns and 0 in columns.values():
        # First column is a value column; there is no label column to read
        return None
    return ColumnMap(columns=columns)


def kind_hint(text: Optional[str]) -> Optional[ScoreKind]:
    """Score kind suggested by a table title or header."""
    if not text:
        return None
    if re.search(r"\bindex|\bcomposite|\bIQ\b", text, re.I):
        return ScoreKind.COMPOSITE
    if re.search(r"\bsubtest|\bscaled\b", text, re.I):
        return ScoreKind.SUBTEST
    return None


# ---------------------------------------------------------------------------
# Positional table detection
# ---------------------------------------------------------------------------


def detect_runs(cell_rows: list[list[str]], min_rows: int) -> list[tuple[int, int]]:
    """(start, end) index pairs of multi-column row runs.

    A row joins the current run when it has at least three cells and its
    cell count stays within one of the run's median.
    """
    runs: list[tuple[int, int]] = []
    counts: list[int] = []
    start = 0

    for index, cells in enumerate(cell_rows):
        count = len(cells)
        if count >= 3 and (not counts or abs(count - statistics.median(counts + [count])) <= 1):
            if not counts:
                start = index
            counts.append(count)
            continue
        if len(counts) >= min_rows:
            runs.append((start, index))
        counts, start = ([count], index) if count >= 3 else ([], index)
    if len(counts) >= min_rows:
        runs.append((start, len(cell_rows)))
    return runs


def find_positional_tables(
    lines: list[Line],
    min_rows: Optional[int] = None,
    page_number: Optional[int] = None,
) -> list[TableNode]:
    """Tables formed by runs of consecutive multi-column layout lines.

    The line before a run becomes the table title.
    """
    cell_rows = [line.cells for line in lines]
    tables = []
    for start, end in detect_runs(cell_rows, min_rows or settings.min_table_rows):
        tables.append(
            TableNode(
                rows=cell_rows[start:end],
                title=lines[start - 1].text if start > 0 else None,
                source="layout",
                page_number=page_number,
            )
        )
    return tables


_TEXT_CELL_SPLIT = re.compile(r"\t+|[ ]{2,}")


def find_text_tables(text: str, min_rows: Optional[int] = None) -> list[TableNode]:
    """Tables in plain text whose columns are separated by tabs or wide spacing."""
    lines = [line for line in text.splitlines() if line.strip()]
    cell_rows = [[c.strip() for c in _TEXT_CELL_SPLIT.split(line.strip()) if c.strip()] for line in lines]
    tables = []
    for start, end in detect_runs(cell_rows, min_rows or settings.min_table_rows):
        tables.append(
            TableNode(
                rows=cell_rows[start:end],
                title=lines[start - 1].strip() if start > 0 else None,
                source="text",
            )
        )
    return tables


# ---------------------------------------------------------------------------
# Row reading
# ---------------------------------------------------------------------------


def _headerless_values(
    cells: list[str],
) -> tuple[Optional[int], Optional[float], Optional[str]]:
    """Positional defaults for a row with no header: (score, percentile, ci)."""
    numbers: list[str] = []
    ci = None
    for cell in cells:
        if is_confidence_interval(cell):
            ci = ci or cell.strip()
        elif parse_score(cell) is not None or parse_percentile(cell) is not None:
            numbers.append(cell)

    if not numbers:
        return None, None, ci
    if len(numbers) == 1:
        return parse_score(numbers[0]), None, ci
    # Subtest rows: raw, scaled, ..., percentile. Composite rows: sum, standard, ..., percentile
    score_cell = numbers[1] if len(numbers) >= 3 else numbers[0]
    return parse_score(score_cell), parse_percentile(numbers[-1]), ci


def _cell(row: list[str], index: Optional[int]) -> Optional[str]:
    if index is None or index >= len(row):
        return None
    return row[index]


def _candidate_fields(
    label: str,
    instruments: list[InstrumentKind],
    hint: Optional[ScoreKind],
) -> list[tuple[InstrumentKind, FieldDefinition]]:
    candidates = []
    for instrument in instruments:
        for field in match_label(label, instrument):
            candidates.append((instrument, field))
    if hint is not None:
        # Prefer fields of the hinted kind; composite and index read alike
        def matches(field: FieldDefinition) -> bool:
            if hint == ScoreKind.SUBTEST:
                return field.kind == ScoreKind.SUBTEST
            return field.kind != ScoreKind.SUBTEST

        candidates.sort(key=lambda c: not matches(c[1]))
    return candidates


def _descriptor(
    row: list[str],
    columns: Optional[ColumnMap],
    scale: ScoreScale,
    instrument: InstrumentKind,
) -> Optional[str]:
    if columns is not None and columns.get(ColumnRole.DESCRIPTOR) is not None:
        return _cell(row, columns.get(ColumnRole.DESCRIPTOR))
    for cell in row[1:]:
        if canonical_label(cell, scale, instrument):
            return cell
    return None


def read_row(
    row: list[str],
    columns: Optional[ColumnMap],
    instruments: list[InstrumentKind],
    strategy: SourceStrategy,
    hint: Optional[ScoreKind] = None,
    source_document: Optional[str] = None,
) -> Optional[ScoreRecord]:
    """Record for one table row, or None if the label or numbers don't fit.

    Every field the label could name is tried in preference order; the
    first whose value passes the bounds check wins.
    """
    label_index = columns.label if columns is not None else 0
    label = _cell(row, label_index)
    if not label or not label.strip():
        return None

    for instrument, field in _candidate_fields(label, instruments, hint):
        scale = get_instrument(instrument).scale_for(field.kind)
        if columns is not None:
            score = parse_score(_cell(row, columns.score_column(scale)))
            percentile = parse_percentile(_cell(row, columns.get(ColumnRole.PERCENTILE)))
            ci_cell = _cell(row, columns.get(ColumnRole.CI))
            ci = ci_cell.strip() if ci_cell and ci_cell.strip() else None
        else:
            score, percentile, ci = _headerless_values(row[label_index + 1:])

        record = make_record(
            instrument,
            field,
            score,
            strategy,
            percentile=percentile,
            classification=_descriptor(row, columns, scale, instrument),
            confidence_interval=ci,
            source_document=source_document,
        )
        if record is not None:
            return record
    return None


def table_instruments(table: TableNode, instruments: list[InstrumentKind]) -> list[InstrumentKind]:
    """Instruments to try for a table, those named in its title first."""
    title = table.title or ""
    named = [k for k in instruments if family_hits(title, k)]
    return named + [k for k in instruments if k not in named]


def read_table(
    table: TableNode,
    instruments: list[InstrumentKind],
    strategy: SourceStrategy,
    source_document: Optional[str] = None,
) -> list[ScoreRecord]:
    """Read every recognisable row of a table.

    A header row may appear anywhere (tables often repeat it per block);
    each header applies to the rows below it. Rows before any header use
    positional defaults. Unreadable rows are skipped.
    """
    ordered = table_instruments(table, instruments)
    columns: Optional[ColumnMap] = None
    hint = kind_hint(table.title)
    records: list[ScoreRecord] = []

    for row in table.rows:
        if not row:
            continue
        header = detect_header(row)
        if header is not None:
            columns = header
            hint = kind_hint(" ".join(row)) or kind_hint(table.title)
            continue
        record = read_row(row, columns, ordered, strategy, hint, source_document)
        if record is not None:
            records.append(record)

    logger.debug(
        "Read %d records from %s table %r",
        len(records),
        table.source,
        table.title,
    )
    return records
