"""
Extract text (and what metadata there is) from a local paper file.

PDFs go through PyPDF2; anything else is read as UTF-8 text.  The result is
whitespace-normalised so the chunker's heading patterns still see line
starts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError

from paperchat.core.config import MIN_READABLE_CHARS
from paperchat.core.errors import ExtractionFailure
from paperchat.rag.chunking import normalize_text

logger = logging.getLogger(__name__)


@dataclass
class ExtractedDocument:
    text: str
    title: Optional[str] = None
    authors: str = ""
    page_count: int = 0


def _read_pdf(path: Path) -> ExtractedDocument:
    try:
        reader = PdfReader(str(path))
        pages = [page.extract_text() or "" for page in reader.pages]
        meta = reader.metadata
    except (PdfReadError, OSError, ValueError) as exc:
        raise ExtractionFailure(f"Could not read PDF {path.name}: {exc}") from exc

    title = (meta.title or "").strip() if meta else ""
    authors = (meta.author or "").strip() if meta else ""
    return ExtractedDocument(
        text="\n\n".join(pages),
        title=title or None,
        authors=authors,
        page_count=len(pages),
    )


def read_document(path: Path | str) -> ExtractedDocument:
    """Text plus title/author metadata; raises ``ExtractionFailure`` if unusable."""
    path = Path(path)
    if not path.is_file():
        raise ExtractionFailure(f"No such file: {path}")

    if path.suffix.lower() == ".pdf":
        doc = _read_pdf(path)
    else:
        try:
            doc = ExtractedDocument(text=path.read_text(encoding="utf-8", errors="replace"))
        except OSError as exc:
            raise ExtractionFailure(f"Could not read {path.name}: {exc}") from exc

    doc.text = normalize_text(doc.text)
    if len(doc.text) < MIN_READABLE_CHARS:
        raise ExtractionFailure(
            f"{path.name}: only {len(doc.text)} readable characters "
            f"(need {MIN_READABLE_CHARS}); the file may be scanned or empty"
        )
    logger.info("Extracted %d chars from %s", len(doc.text), path.name)
    return doc


def extract_text(path: Path | str) -> str:
    return read_document(path).text
