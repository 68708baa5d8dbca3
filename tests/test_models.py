"""Tests for IR models."""

import pytest
from pydantic import ValidationError

from psyscore.instruments import get_instrument
from psyscore.models import (
    Document,
    DocumentStatus,
    InstrumentKind,
    MediaKind,
    Paragraph,
    ScoreMap,
    SourceStrategy,
    TableNode,
)
from psyscore.pipeline.stage_classify import make_record


def record(abbrev, score, percentile=None, instrument=InstrumentKind.WISC, strategy=SourceStrategy.LABELED_FIELD):
    definition = get_instrument(instrument)
    return make_record(instrument, definition.field(abbrev), score, strategy, percentile=percentile)


class TestSourceStrategy:
    """Tests for strategy precedence."""

    def test_precedence_order(self):
        ordered = sorted(SourceStrategy, key=lambda s: s.precedence)
        assert ordered[0] == SourceStrategy.STRUCTURAL_TABLE
        assert ordered[-1] == SourceStrategy.MANUAL
        assert SourceStrategy.LABELED_FIELD.precedence < SourceStrategy.FREE_NARRATIVE.precedence


class TestScoreMap:
    """Tests for the write-once score map."""

    def test_write_once(self):
        score_map = ScoreMap()

        assert score_map.add(record("FSIQ", 96))
        assert not score_map.add(record("FSIQ", 120))
        assert score_map.get("WISC.FSIQ").score == 96
        assert len(score_map) == 1
        assert "WISC.FSIQ" in score_map

    def test_to_flat(self):
        score_map = ScoreMap()
        score_map.add(record("SI", 9, 37))
        score_map.add(record("FSIQ", 96, 39))

        assert score_map.to_flat() == {
            "WISC.SI.scaled": 9,
            "WISC.SI.percentile": 37,
            "WISC.SI.qualitative": "Average",
            "WISC.FSIQ.score": 96,
            "WISC.FSIQ.percentile": 39,
            "WISC.FSIQ.qualitative": "Average",
        }

    def test_for_instrument(self):
        score_map = ScoreMap()
        score_map.add(record("FSIQ", 96))
        score_map.add(record("TA", 95, instrument=InstrumentKind.WIAT))

        assert [r.field_key for r in score_map.for_instrument(InstrumentKind.WIAT)] == ["WIAT.TA"]

    def test_to_dict(self):
        score_map = ScoreMap()
        score_map.add(record("FSIQ", 96))

        data = score_map.to_dict()
        assert data["WISC.FSIQ"]["source_strategy"] == "labeled_field"
        assert data["WISC.FSIQ"]["instrument"] == "WISC"


class TestDocument:
    """Tests for the Document IR."""

    def test_empty(self):
        document = Document.empty("blank.pdf", MediaKind.PDF)

        assert document.status == DocumentStatus.NO_CONTENT
        assert document.is_empty
        assert document.lines == []
        assert document.tables == []

    def test_frozen(self):
        document = Document(source_id="a.txt", media_kind=MediaKind.TEXT, full_text="text")
        with pytest.raises(ValidationError):
            document.full_text = "changed"

    def test_body_round_trip(self):
        """Body nodes are restored to the right type from JSON."""
        document = Document(
            source_id="a.docx",
            media_kind=MediaKind.DOCX,
            full_text="x",
            body=[Paragraph(text="Scores"), TableNode(rows=[["Similarities", "9"]])],
        )
        restored = Document.model_validate_json(document.model_dump_json())

        assert isinstance(restored.body[1], TableNode)
        assert restored.tables[0].rows == [["Similarities", "9"]]
