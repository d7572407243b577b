from unittest.mock import Mock, patch

import pytest
from PyPDF2.errors import PdfReadError

from paperchat.core.errors import ExtractionFailure
from paperchat.papers.extractor import extract_text, read_document


def fake_reader(pages, title=None, author=None):
    reader = Mock()
    reader.pages = [Mock(**{"extract_text.return_value": text}) for text in pages]
    reader.metadata = Mock(title=title, author=author)
    return reader


class TestTextFiles:
    """Plain-text extraction."""

    def test_reads_and_normalises(self, tmp_path):
        path = tmp_path / "paper.txt"
        path.write_text("ABSTRACT\n\n\n\nThis   paper studies attention.", encoding="utf-8")

        assert extract_text(path) == "ABSTRACT\n\nThis paper studies attention."

    def test_too_short(self, tmp_path):
        path = tmp_path / "tiny.txt"
        path.write_text("   hi   \n\n", encoding="utf-8")

        with pytest.raises(ExtractionFailure):
            extract_text(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ExtractionFailure):
            extract_text(tmp_path / "nope.txt")


class TestPdfFiles:
    """PDF extraction via PyPDF2."""

    @patch("paperchat.papers.extractor.PdfReader")
    def test_pages_and_metadata(self, mock_reader, tmp_path):
        path = tmp_path / "paper.pdf"
        path.write_bytes(b"%PDF-1.4")
        mock_reader.return_value = fake_reader(
            ["Page one talks about attention.", None, "Page three has results."],
            title="  Attention Is All You Need ",
            author="Vaswani",
        )

        doc = read_document(path)

        assert doc.text == "Page one talks about attention.\n\nPage three has results."
        assert doc.title == "Attention Is All You Need"
        assert doc.authors == "Vaswani"
        assert doc.page_count == 3

    @patch("paperchat.papers.extractor.PdfReader")
    def test_scanned_pdf_without_text(self, mock_reader, tmp_path):
        path = tmp_path / "scan.pdf"
        path.write_bytes(b"%PDF-1.4")
        mock_reader.return_value = fake_reader(["", ""])

        with pytest.raises(ExtractionFailure):
            read_document(path)

    @patch("paperchat.papers.extractor.PdfReader")
    def test_corrupt_pdf(self, mock_reader, tmp_path):
        path = tmp_path / "broken.pdf"
        path.write_bytes(b"garbage")
        mock_reader.side_effect = PdfReadError("EOF marker not found")

        with pytest.raises(ExtractionFailure, match="broken.pdf"):
            read_document(path)
