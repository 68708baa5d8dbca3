"""Pytest configuration and fixtures."""

import pytest

from psyscore.models import (
    Document,
    ManualOverride,
    MediaKind,
    Paragraph,
    TableNode,
    TextItem,
)
from psyscore.pipeline.stage_normalize import normalize_layout

REPORT_TEXT = """Background Information
Jordan is a fourth grade student referred for reading concerns.

Cognitive Functioning
The WISC-V was administered.
Similarities  8  9  7-11  37
Vocabulary  30  12  10-14  75
Full Scale IQ  96  39

Academic Achievement
WIAT-4 results follow.
Reading Comprehension  92  30

Recommendations
Provide extended time on reading tasks.
"""


def _items(y: float, *cells: str) -> list[TextItem]:
    """One layout row: a label column then value columns 100pt apart."""
    items = [TextItem(x=72.0, y=y, text=cells[0], width=len(cells[0]) * 5.0, height=10.0)]
    for index, cell in enumerate(cells[1:]):
        items.append(
            TextItem(x=260.0 + index * 100.0, y=y, text=cell, width=len(cell) * 5.0, height=10.0)
        )
    return items


@pytest.fixture
def report_text():
    """Plain-text report with cognitive and achievement sections."""
    return REPORT_TEXT


@pytest.fixture
def text_document(report_text):
    """Plain-text Document built from ``report_text``."""
    return Document(source_id="report.txt", media_kind=MediaKind.TEXT, full_text=report_text)


@pytest.fixture
def layout_document():
    """Single-page layout Document holding a WISC-V subtest table."""
    items = [TextItem(x=72.0, y=60.0, text="WISC-V Subtest Score Summary", width=150.0, height=12.0)]
    items += _items(80.0, "Subtest", "Raw Score", "Scaled Score", "Percentile Rank", "Descriptor")
    items += _items(100.0, "Similarities", "25", "9", "37", "Average")
    items += _items(120.0, "Vocabulary", "30", "12", "75", "High Average")
    items += _items(140.0, "Block Design", "20", "7", "16", "Low Average")
    return normalize_layout([items], "wisc.pdf")


@pytest.fixture
def docx_document():
    """Word-processor Document with a WIAT-4 composite table."""
    title = "WIAT-4 Composite Scores"
    table = TableNode(
        rows=[
            ["Composite", "Standard Score", "Percentile Rank", "Qualitative Description"],
            ["Total Achievement", "95", "37", "Average"],
            ["Reading", "88", "21", "Low Average"],
        ],
        title=title,
        source="docx",
    )
    body = [Paragraph(text=title, style="Heading 2"), table]
    return Document(
        source_id="wiat.docx",
        media_kind=MediaKind.DOCX,
        full_text=title + "\n" + table.to_text(),
        body=body,
    )


@pytest.fixture
def wais_overrides():
    """Manual WAIS-IV index entries sufficient for the cognitive template."""
    return [
        ManualOverride(field_key="WAIS.FSIQ", score=96, percentile=39),
        ManualOverride(field_key="WAIS.VCI", score=121, percentile=92),
        ManualOverride(field_key="WAIS.PRI", score=100, percentile=50),
        ManualOverride(field_key="WAIS.WMI", score=83, percentile=13),
        ManualOverride(field_key="WAIS.PSI", score=92, percentile=30),
    ]
