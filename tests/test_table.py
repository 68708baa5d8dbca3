"""Tests for table detection and reading."""

import pytest

from psyscore.models import InstrumentKind, ScoreKind, ScoreScale, SourceStrategy, TableNode
from psyscore.pipeline.stage_table import (
    ColumnRole,
    detect_header,
    detect_runs,
    find_positional_tables,
    find_text_tables,
    kind_hint,
    parse_percentile,
    parse_score,
    read_row,
    read_table,
)


class TestCellParsing:
    """Tests for numeric cell parsing."""

    @pytest.mark.parametrize("cell,expected", [("9", 9), (" 103 ", 103), ("12*", 12), ("9.5", None), ("", None), ("Avg", None)])
    def test_parse_score(self, cell, expected):
        assert parse_score(cell) == expected

    @pytest.mark.parametrize(
        "cell,expected",
        [("37", 37.0), ("37th", 37.0), (">99.9", 99.9), ("<0.1", 0.1), ("100", 100.0), ("7-11", None)],
    )
    def test_parse_percentile(self, cell, expected):
        assert parse_percentile(cell) == expected


class TestHeaders:
    """Tests for header row recognition."""

    def test_subtest_header(self):
        columns = detect_header(["Subtest", "Raw Score", "Scaled Score", "Percentile Rank", "Descriptor"])

        assert columns is not None
        assert columns.label == 0
        assert columns.get(ColumnRole.RAW) == 1
        assert columns.get(ColumnRole.SCALED) == 2
        assert columns.get(ColumnRole.PERCENTILE) == 3
        assert columns.get(ColumnRole.DESCRIPTOR) == 4

    def test_composite_header(self):
        columns = detect_header(
            ["Composite", "Sum of Scaled Scores", "Composite Score", "Percentile Rank", "95% CI", "Qualitative Description"]
        )

        assert columns.get(ColumnRole.SUM) == 1
        assert columns.get(ColumnRole.STANDARD) == 2
        assert columns.get(ColumnRole.CI) == 4
        assert columns.get(ColumnRole.DESCRIPTOR) == 5

    def test_generic_score_column_serves_every_scale(self):
        """A plain "Score" header holds scaled, standard and T values alike."""
        columns = detect_header(["Subtest", "Score", "Percentile"])

        assert columns.get(ColumnRole.STANDARD) == 1
        assert columns.score_column(ScoreScale.SCALED) == 1
        assert columns.score_column(ScoreScale.T_SCORE) == 1

    def test_own_column_preferred(self):
        columns = detect_header(["Subtest", "Scaled Score", "Standard Score", "Percentile"])

        assert columns.score_column(ScoreScale.SCALED) == 1
        assert columns.score_column(ScoreScale.STANDARD) == 2

    def test_data_row_is_not_header(self):
        assert detect_header(["Similarities", "25", "9", "37"]) is None

    def test_prose_is_not_header(self):
        assert detect_header(["The student was cooperative", "and attentive"]) is None

    def test_kind_hint(self):
        assert kind_hint("Composite Score Summary") == ScoreKind.COMPOSITE
        assert kind_hint("Composite Sum of Scaled Scores") == ScoreKind.COMPOSITE
        assert kind_hint("Subtest Score Summary") == ScoreKind.SUBTEST
        assert kind_hint("Results") is None


class TestDetection:
    """Tests for positional table detection."""

    def test_detect_runs(self):
        rows = [["Title"], ["a", "1", "2"], ["b", "3", "4", "5"], ["Note"], ["c", "1", "2"]]
        assert detect_runs(rows, min_rows=2) == [(1, 3)]

    def test_find_positional_tables(self, layout_document):
        tables = find_positional_tables(layout_document.lines, page_number=1)

        assert len(tables) == 1
        assert tables[0].title == "WISC-V Subtest Score Summary"
        assert tables[0].rows[1] == ["Similarities", "25", "9", "37", "Average"]
        assert tables[0].source == "layout"

    def test_find_text_tables(self):
        text = "Index Scores\nVerbal Comprehension\t21\t103\t58\nWorking Memory   17   91   27\nEnd of table"
        tables = find_text_tables(text)

        assert len(tables) == 1
        assert tables[0].title == "Index Scores"
        assert tables[0].rows == [
            ["Verbal Comprehension", "21", "103", "58"],
            ["Working Memory", "17", "91", "27"],
        ]


class TestReadRow:
    """Tests for reading single rows."""

    def test_headerless_subtest(self):
        record = read_row(
            ["Similarities", "25", "9", "7-11", "37"], None, [InstrumentKind.WISC], SourceStrategy.POSITIONAL_TABLE
        )

        assert record.field_key == "WISC.SI"
        assert record.score == 9
        assert record.percentile == 37
        assert record.confidence_interval == "7-11"

    def test_headerless_two_values(self):
        record = read_row(["Full Scale IQ", "96", "39"], None, [InstrumentKind.WISC], SourceStrategy.POSITIONAL_TABLE)

        assert record.field_key == "WISC.FSIQ"
        assert (record.score, record.percentile) == (96, 39)

    def test_headerless_composite_with_descriptor(self):
        record = read_row(
            ["Verbal Comprehension", "21", "103", "97-109", "58", "Average"],
            None,
            [InstrumentKind.WISC],
            SourceStrategy.POSITIONAL_TABLE,
        )

        assert record.field_key == "WISC.VCI"
        assert record.score == 103
        assert record.classification == "Average"

    def test_out_of_bounds_row(self):
        assert (
            read_row(["Full Scale IQ", "220", "39"], None, [InstrumentKind.WISC], SourceStrategy.POSITIONAL_TABLE)
            is None
        )

    def test_unknown_label(self):
        assert read_row(["Total", "96", "39"], None, [InstrumentKind.WISC], SourceStrategy.POSITIONAL_TABLE) is None

    def test_bounds_disambiguate_shared_name(self):
        """A shared label resolves to whichever field its value fits."""
        scaled = read_row(["Social", "9", "37"], None, [InstrumentKind.ABAS], SourceStrategy.STRUCTURAL_TABLE)
        standard = read_row(["Social", "95", "37"], None, [InstrumentKind.ABAS], SourceStrategy.STRUCTURAL_TABLE)

        assert scaled.field_key == "ABAS.SO"
        assert standard.field_key == "ABAS.SOC"


class TestReadTable:
    """Tests for whole-table reading."""

    def test_structural_table(self, docx_document):
        records = read_table(docx_document.tables[0], [InstrumentKind.WIAT], SourceStrategy.STRUCTURAL_TABLE, "wiat.docx")

        assert [r.field_key for r in records] == ["WIAT.TA", "WIAT.RD"]
        assert records[1].score == 88
        assert records[1].classification == "Low Average"
        assert all(r.source_document == "wiat.docx" for r in records)

    def test_repeated_headers(self):
        """Each header applies to the rows beneath it."""
        table = TableNode(
            rows=[
                ["Subtest", "Scaled Score", "Percentile Rank"],
                ["Similarities", "9", "37"],
                ["Index", "Percentile Rank", "Index Score"],
                ["Verbal Comprehension", "58", "103"],
            ]
        )
        records = read_table(table, [InstrumentKind.WISC], SourceStrategy.STRUCTURAL_TABLE)

        assert [(r.field_key, r.score, r.percentile) for r in records] == [
            ("WISC.SI", 9, 37),
            ("WISC.VCI", 103, 58),
        ]

    def test_unreadable_rows_skipped(self):
        table = TableNode(rows=[["Subtest", "Scaled Score"], ["Similarities", "n/a"], [], ["Vocabulary", "12"]])
        records = read_table(table, [InstrumentKind.WISC], SourceStrategy.STRUCTURAL_TABLE)

        assert [r.field_key for r in records] == ["WISC.VC"]

    @pytest.mark.parametrize("score_header", ["Score", "SS"])
    def test_subtests_under_generic_score_header(self, score_header):
        table = TableNode(
            rows=[
                ["Subtest", score_header, "Percentile"],
                ["Similarities", "9", "37"],
                ["Vocabulary", "12", "75"],
            ]
        )
        records = read_table(table, [InstrumentKind.WISC], SourceStrategy.STRUCTURAL_TABLE)

        assert [(r.field_key, r.score, r.percentile) for r in records] == [
            ("WISC.SI", 9, 37),
            ("WISC.VC", 12, 75),
        ]
