"""Render Stage - Emit canonical score tables as self-contained HTML.

Four tables are always produced: the cognitive battery's subtest and
index tables and the achievement battery's subtest and composite tables.
Memory, adaptive and rating-scale tables are added only when their
instrument is selected. Rows follow registry order and never depend on
which scores were found; a missing value is shown as the sentinel.

Styling is inlined so the fragments survive being pasted into a word
processor or exported without a stylesheet.
"""

from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from pydantic import BaseModel, Field

from psyscore.config import settings
from psyscore.instruments import InstrumentSelection, get_instrument
from psyscore.models import (
    FieldDefinition,
    InstrumentDefinition,
    InstrumentKind,
    ScoreKind,
    ScoreMap,
    ScoreScale,
)

_TEMPLATE_ROOT = Path(__file__).resolve().parent.parent / "templates"

_ENV = Environment(
    loader=FileSystemLoader(str(_TEMPLATE_ROOT)),
    autoescape=select_autoescape(enabled_extensions=("html.jinja",), default=True),
    trim_blocks=True,
    lstrip_blocks=True,
)

SCORE_HEADERS = {
    ScoreScale.SCALED: "Scaled Score",
    ScoreScale.STANDARD: "Standard Score",
    ScoreScale.T_SCORE: "T-Score",
}


class RenderedTable(BaseModel):
    """One score table, as data and as an HTML fragment."""

    table_id: str = Field(..., description="Stable id, e.g. 'wisc_subtests'")
    title: str
    instrument: InstrumentKind
    mandatory: bool = False
    headers: list[str]
    rows: list[list[str]]
    html: str = ""


def format_percentile(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def _row_label(field: FieldDefinition) -> str:
    if field.kind == ScoreKind.SUBTEST:
        return field.name
    return f"{field.name} ({field.abbrev})"


def _label_header(definition: InstrumentDefinition, kinds: tuple[ScoreKind, ...]) -> str:
    if ScoreKind.SUBTEST in kinds:
        return "Scale" if definition.role in ("rating", "adaptive") else "Subtest"
    if any(f.kind == ScoreKind.INDEX for f in definition.fields_of(*kinds)):
        return "Index"
    return "Composite"


def build_table(
    student_label: str,
    score_map: ScoreMap,
    instrument: InstrumentKind,
    kinds: tuple[ScoreKind, ...],
    table_id: str,
    title: str,
    mandatory: bool = False,
    sentinel: Optional[str] = None,
) -> RenderedTable:
    """One table over every ``kinds`` field of ``instrument``."""
    sentinel = sentinel if sentinel is not None else settings.sentinel
    definition = get_instrument(instrument)
    fields = definition.fields_of(*kinds)
    scale = definition.scale_for(kinds[0])

    rows = []
    for field in fields:
        record = score_map.get(definition.field_key(field.abbrev))
        if record is None:
            rows.append([_row_label(field), sentinel, sentinel, sentinel])
            continue
        rows.append(
            [
                _row_label(field),
                str(record.score),
                format_percentile(record.percentile) or sentinel,
                record.classification or sentinel,
            ]
        )

    prefix = f"{student_label}: " if student_label else ""
    table = RenderedTable(
        table_id=table_id,
        title=f"{prefix}{definition.display_name} {title}",
        instrument=instrument,
        mandatory=mandatory,
        headers=[_label_header(definition, kinds), SCORE_HEADERS[scale], "Percentile Rank", "Classification"],
        rows=rows,
    )
    html = _ENV.get_template("score_table.html.jinja").render(table=table)
    return table.model_copy(update={"html": html})


def _instrument_tables(
    student_label: str,
    score_map: ScoreMap,
    instrument: InstrumentKind,
    mandatory: bool,
    sentinel: Optional[str],
) -> list[RenderedTable]:
    definition = get_instrument(instrument)
    prefix = instrument.value.lower()
    tables = []
    if definition.fields_of(ScoreKind.SUBTEST):
        tables.append(
            build_table(
                student_label,
                score_map,
                instrument,
                (ScoreKind.SUBTEST,),
                f"{prefix}_subtests",
                "Scale Scores" if definition.role == "rating" else "Subtest Scores",
                mandatory,
                sentinel,
            )
        )
    if definition.fields_of(ScoreKind.INDEX, ScoreKind.COMPOSITE):
        kinds = (ScoreKind.INDEX, ScoreKind.COMPOSITE)
        tables.append(
            build_table(
                student_label,
                score_map,
                instrument,
                kinds,
                f"{prefix}_composites",
                f"{_label_header(definition, kinds)} Scores",
                mandatory,
                sentinel,
            )
        )
    return tables


def render_tables(
    student_label: str,
    score_map: ScoreMap,
    selection: Optional[InstrumentSelection] = None,
    sentinel: Optional[str] = None,
) -> list[RenderedTable]:
    """Mandatory tables first, then one pair per selected optional instrument.

    Args:
        student_label: Name or identifier shown in table captions.
        score_map: Merged scores; may be empty.
        selection: Instruments covered by the report. Defaults to WISC + WIAT.
        sentinel: Placeholder for missing cells. Defaults to ``settings.sentinel``.
    """
    selection = selection or InstrumentSelection()
    tables = _instrument_tables(student_label, score_map, selection.cognitive, True, sentinel)
    tables += _instrument_tables(student_label, score_map, selection.achievement, True, sentinel)
    for instrument in selection.optional:
        if instrument in (selection.cognitive, selection.achievement):
            continue
        tables += _instrument_tables(student_label, score_map, instrument, False, sentinel)
    return tables


def render_html(
    student_label: str,
    score_map: ScoreMap,
    selection: Optional[InstrumentSelection] = None,
    sentinel: Optional[str] = None,
) -> str:
    """All tables joined into one embeddable fragment."""
    tables = render_tables(student_label, score_map, selection, sentinel)
    return _ENV.get_template("report_tables.html.jinja").render(
        student_label=student_label,
        tables=tables,
    )
