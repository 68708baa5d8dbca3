"""Tests for the command-line interface."""

from unittest.mock import patch

import pytest
import typer
from typer.testing import CliRunner

from psyscore.cli import app, parse_override
from psyscore.errors import DecoderUnavailableError
from psyscore.pipeline.stage_normalize import DOCX_DECODER, OCR_ENGINE, PDF_DECODER

runner = CliRunner()

WAIS_OVERRIDES = [
    "--override", "WAIS.FSIQ=96:39",
    "--override", "WAIS.VCI=121:92",
    "--override", "WAIS.PRI=100:50",
    "--override", "WAIS.WMI=83:13",
    "--override", "WAIS.PSI=92:30",
]


@pytest.fixture
def report_file(tmp_path, report_text):
    path = tmp_path / "report.txt"
    path.write_text(report_text)
    return path


class TestParseOverride:
    """Tests for override arguments."""

    def test_score_and_percentile(self):
        override = parse_override("WAIS.FSIQ=96:39")

        assert override.field_key == "WAIS.FSIQ"
        assert override.score == 96
        assert override.percentile == 39

    def test_score_only(self):
        override = parse_override("WISC.SI=9")
        assert override.score == 9
        assert override.percentile is None

    @pytest.mark.parametrize("text", ["FSIQ=96", "WAIS.FSIQ", "WAIS.FSIQ=abc", "WAIS.FSIQ=96:high"])
    def test_invalid(self, text):
        with pytest.raises(typer.BadParameter):
            parse_override(text)


class TestClassifyCommand:
    """Tests for the classify command."""

    def test_standard(self):
        result = runner.invoke(app, ["classify", "100"])

        assert result.exit_code == 0
        assert "Average" in result.output

    def test_scaled(self):
        result = runner.invoke(app, ["classify", "5", "--scale", "scaled"])

        assert result.exit_code == 0
        assert "Low" in result.output

    def test_instrument_labels(self):
        result = runner.invoke(app, ["classify", "70", "--instrument", "WAIS"])
        assert "Borderline" in result.output

    def test_out_of_bounds(self):
        result = runner.invoke(app, ["classify", "200"])
        assert result.exit_code == 1


class TestExtractCommand:
    """Tests for the extract command."""

    def test_json(self, report_file):
        result = runner.invoke(app, ["extract", str(report_file), "--json"])

        assert result.exit_code == 0
        assert '"WISC.SI.scaled": 9' in result.output
        assert '"WIAT.RC.score": 92' in result.output

    def test_table(self, report_file):
        result = runner.invoke(app, ["extract", str(report_file), "--student", "Jordan"])

        assert result.exit_code == 0
        assert "Unresolved" in result.output
        assert "WISC.VCI" in result.output

    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, ["extract", str(tmp_path / "nope.pdf")])

        assert result.exit_code == 1
        assert "Not a file" in result.output


class TestSectionsCommand:
    """Tests for the sections command."""

    def test_sections(self, report_file):
        result = runner.invoke(app, ["sections", str(report_file)])

        assert result.exit_code == 0
        assert "cognitive" in result.output
        assert "strict" in result.output


class TestRenderCommand:
    """Tests for the render command."""

    def test_writes_html(self, report_file, tmp_path):
        output = tmp_path / "tables.html"
        result = runner.invoke(app, ["render", str(report_file), "--student", "Jordan", "--output", str(output)])

        assert result.exit_code == 0
        html = output.read_text()
        assert html.count("<table ") == 4
        assert ">Similarities</td>" in html


class TestNarrativeCommand:
    """Tests for the narrative command."""

    def test_from_overrides(self):
        result = runner.invoke(app, ["narrative", "WAIS", "--first-name", "Alex", "--pronouns", "he", *WAIS_OVERRIDES])

        assert result.exit_code == 0
        lines = [line.strip() for line in result.output.splitlines()]
        assert "Cognitive Functioning" in lines
        assert "Verbal Comprehension" in lines

    def test_missing_fields(self):
        result = runner.invoke(app, ["narrative", "WAIS", "--first-name", "Alex"])

        assert result.exit_code == 1
        assert "Missing fields" in result.output

    def test_unsupported_instrument(self):
        result = runner.invoke(app, ["narrative", "WISC", "--first-name", "Alex", *WAIS_OVERRIDES])
        assert result.exit_code == 2


class TestStatusCommand:
    """Tests for the status command."""

    def test_status(self):
        with patch.object(PDF_DECODER, "get", return_value=object()), patch.object(
            DOCX_DECODER, "get", return_value=object()
        ), patch.object(OCR_ENGINE, "get", side_effect=DecoderUnavailableError("ocr", "tesseract not found")):
            result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "pdf: available" in result.output
        assert "ocr: unavailable" in result.output
