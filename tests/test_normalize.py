"""Tests for structural normalization."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from psyscore.errors import DecoderUnavailableError, UnsupportedMediaError
from psyscore.models import DocumentStatus, MediaKind, OCRLine, TextItem
from psyscore.pipeline.stage_normalize import (
    DecoderCache,
    build_lines,
    guess_media_kind,
    join_items,
    normalize,
    normalize_layout,
    ocr_lines,
)


def item(x, y, text, width=None):
    return TextItem(x=x, y=y, text=text, width=len(text) * 5.0 if width is None else width, height=10.0)


class TestGuessMediaKind:
    """Tests for media sniffing."""

    @pytest.mark.parametrize(
        "raw,filename,expected",
        [
            (b"%PDF-1.7\n", None, MediaKind.PDF),
            (b"PK\x03\x04rest", None, MediaKind.DOCX),
            (b"\x89PNG\r\n\x1a\nrest", None, MediaKind.IMAGE),
            (b"\xff\xd8\xff\xe0", None, MediaKind.IMAGE),
            (b"plain", "notes.txt", MediaKind.TEXT),
            (b"plain", "scan.tiff", MediaKind.IMAGE),
            (b"plain", None, MediaKind.TEXT),
        ],
    )
    def test_guess(self, raw, filename, expected):
        assert guess_media_kind(raw, filename) == expected


class TestLayout:
    """Tests for line reconstruction from positioned items."""

    def test_join_items_gaps(self):
        items = [item(0, 0, "A", 10), item(12, 0, "B", 10), item(30, 0, "C", 10), item(80, 0, "D", 10)]
        # gaps: 2 (none), 8 (two spaces), 40 (tab)
        assert join_items(items, tab_gap=18, space_gap=6) == "AB  C\tD"

    def test_build_lines_groups_by_tolerance(self):
        items = [item(200, 100.9, "9"), item(72, 100.4, "Similarities"), item(72, 120, "Vocabulary")]
        lines = build_lines(items, tolerance=2.0)

        assert [line.cells for line in lines] == [["Similarities", "9"], ["Vocabulary"]]
        assert lines[0].text == "Similarities\t9"

    def test_build_lines_inverted(self):
        """Bottom-up coordinates put larger y values first."""
        items = [item(72, 100, "lower"), item(72, 700, "upper")]
        lines = build_lines(items, tolerance=2.0, inverted=True)

        assert [line.text for line in lines] == ["upper", "lower"]

    def test_blank_items_dropped(self):
        assert build_lines([item(72, 100, "   ")], tolerance=2.0) == []

    def test_normalize_layout(self, layout_document):
        assert layout_document.media_kind == MediaKind.PDF
        assert len(layout_document.pages) == 1
        assert layout_document.full_text.splitlines()[0] == "WISC-V Subtest Score Summary"
        assert "Similarities\t25\t9\t37\tAverage" in layout_document.full_text

    def test_normalize_layout_too_little_text(self):
        document = normalize_layout([[item(72, 100, "p. 1")]], "blank.pdf")

        assert document.status == DocumentStatus.NO_CONTENT
        assert document.is_empty


class TestDecoderCache:
    """Tests for lazy decoder loading."""

    def test_loads_once(self):
        loader = MagicMock(return_value="decoder")
        cache = DecoderCache("test", loader)

        assert not cache.loaded
        assert cache.get() == "decoder"
        assert cache.get() == "decoder"
        assert loader.call_count == 1

    def test_failure_not_cached(self):
        loader = MagicMock(side_effect=[ImportError("no module"), "decoder"])
        cache = DecoderCache("test", loader)

        with pytest.raises(DecoderUnavailableError) as excinfo:
            cache.get()
        assert excinfo.value.decoder == "test"
        assert not cache.loaded

        assert cache.get() == "decoder"
        assert loader.call_count == 2

    def test_reset(self):
        loader = MagicMock(return_value="decoder")
        cache = DecoderCache("test", loader)
        cache.get()
        cache.reset()
        cache.get()

        assert loader.call_count == 2


def failing_cache(name):
    def loader():
        raise ImportError(f"{name} not installed")

    return DecoderCache(name, loader)


class TestNormalize:
    """Tests for format routing."""

    def test_text(self, report_text):
        document = normalize(report_text.replace("\n", "\r\n").encode(), MediaKind.TEXT, "report.txt")

        assert document.media_kind == MediaKind.TEXT
        assert document.full_text == report_text
        assert document.pages is None and document.body is None

    def test_short_text_is_empty(self):
        document = normalize(b"n/a", MediaKind.TEXT, "empty.txt")
        assert document.status == DocumentStatus.NO_CONTENT

    def test_unsupported_media(self):
        with pytest.raises(UnsupportedMediaError):
            normalize(b"data", "rtf", "doc.rtf")

    def test_pdf_decoder_unavailable(self):
        with patch("psyscore.pipeline.stage_normalize.PDF_DECODER", failing_cache("pdf")):
            with pytest.raises(DecoderUnavailableError):
                normalize(b"%PDF-1.4", None, "report.pdf")

    def test_pdf(self):
        page = MagicMock()
        page.rect.width, page.rect.height = 612.0, 792.0
        page.get_text.return_value = {
            "blocks": [
                {
                    "type": 0,
                    "lines": [
                        {
                            "spans": [
                                {"text": "Full Scale IQ (FSIQ)", "bbox": (72, 100, 172, 110), "size": 10},
                                {"text": "96", "bbox": (260, 100, 270, 110), "size": 10},
                                {"text": "39", "bbox": (360, 100, 370, 110), "size": 10},
                            ]
                        }
                    ],
                },
                {"type": 1, "lines": []},
            ]
        }
        fitz = MagicMock()
        fitz.open.return_value.__enter__.return_value = [page]

        with patch("psyscore.pipeline.stage_normalize.PDF_DECODER", DecoderCache("pdf", lambda: fitz)):
            document = normalize(b"%PDF-1.4", None, "report.pdf")

        fitz.open.assert_called_once_with(stream=b"%PDF-1.4", filetype="pdf")
        assert document.media_kind == MediaKind.PDF
        assert document.full_text == "Full Scale IQ (FSIQ)\t96\t39"
        assert document.pages[0].lines[0].cells == ["Full Scale IQ (FSIQ)", "96", "39"]
        assert document.ocr_lines == []

    def test_pdf_ocr_fallback(self):
        """Pages without a text layer are OCRed."""
        page = MagicMock()
        page.rect.width, page.rect.height = 612.0, 792.0
        page.get_text.return_value = {"blocks": []}
        fitz = MagicMock()
        fitz.open.return_value.__enter__.return_value = [page]
        recovered = [OCRLine(text="Verbal Comprehension 103 58", confidence=0.91, page_number=1)]

        with patch("psyscore.pipeline.stage_normalize.PDF_DECODER", DecoderCache("pdf", lambda: fitz)), patch(
            "psyscore.pipeline.stage_normalize._ocr_page", return_value=recovered
        ):
            document = normalize(b"%PDF-1.4", MediaKind.PDF, "scan.pdf")

        assert document.full_text == "Verbal Comprehension 103 58"
        assert document.ocr_lines == recovered

    def test_docx(self):
        heading = SimpleNamespace(
            runs=[SimpleNamespace(text="WISC-V "), SimpleNamespace(text="Subtest Scores")],
            style=SimpleNamespace(name="Heading 2"),
        )

        def cell(text):
            return SimpleNamespace(paragraphs=[SimpleNamespace(text=text)])

        table = SimpleNamespace(
            rows=[
                SimpleNamespace(cells=[cell("Subtest"), cell("Scaled Score"), cell("Percentile Rank")]),
                SimpleNamespace(cells=[cell("Similarities"), cell("9"), cell("37")]),
            ]
        )
        decoder = MagicMock()
        decoder.open.return_value = SimpleNamespace(iter_inner_content=lambda: iter([heading, table]))
        decoder.is_table.side_effect = lambda block: block is table

        with patch("psyscore.pipeline.stage_normalize.DOCX_DECODER", DecoderCache("docx", lambda: decoder)):
            document = normalize(b"PK\x03\x04", None, "report.docx")

        assert document.media_kind == MediaKind.DOCX
        assert document.body[0].text == "WISC-V Subtest Scores"
        assert document.body[0].style == "Heading 2"
        assert document.tables[0].title == "WISC-V Subtest Scores"
        assert document.tables[0].rows[1] == ["Similarities", "9", "37"]
        assert "Similarities\t9\t37" in document.full_text

    def test_image(self):
        recovered = [
            OCRLine(text="Full Scale IQ 96 39th percentile", confidence=0.88),
            OCRLine(text="Verbal Comprehension 103", confidence=0.9),
        ]
        with patch("psyscore.pipeline.stage_normalize.load_image", return_value="pixels"), patch(
            "psyscore.pipeline.stage_normalize.ocr_lines", return_value=recovered
        ) as mock_ocr:
            document = normalize(b"\x89PNG\r\n\x1a\n", None, "scan.png")

        mock_ocr.assert_called_once_with("pixels")
        assert document.media_kind == MediaKind.IMAGE
        assert document.full_text == "Full Scale IQ 96 39th percentile\nVerbal Comprehension 103"

    def test_ocr_unavailable_yields_no_lines(self):
        with patch("psyscore.pipeline.stage_normalize.OCR_ENGINE", failing_cache("ocr")):
            assert ocr_lines(object()) == []
