"""
Section-aware chunking of extracted paper text.

Three tiers, each a fallback for the one before:
  1. split on detected section headings (abstract, introduction, …)
  2. paragraph-aware splitting bounded by ``fallback_size``
  3. fixed-size character slicing
"""

from __future__ import annotations

import logging
import re

from paperchat.core.config import CHUNK_FALLBACK_SIZE, MIN_CHUNK_CHARS

logger = logging.getLogger(__name__)

# Order matters only for readability; every match offset becomes a boundary.
_HEADING = r"(?:^|\n)[ \t]*{}[ \t]*(?=[:.\n])"
SECTION_PATTERNS = [
    re.compile(_HEADING.format(r"(?:ABSTRACT|Abstract|abstract)")),
    re.compile(_HEADING.format(r"(?:INTRODUCTION|Introduction|introduction)")),
    re.compile(_HEADING.format(r"(?:METHODS?|Methods?|METHODOLOGY|Methodology)")),
    re.compile(_HEADING.format(r"(?:RESULTS?|Results?)")),
    re.compile(_HEADING.format(r"(?:DISCUSSION|Discussion)")),
    re.compile(_HEADING.format(r"(?:CONCLUSIONS?|Conclusions?)")),
    re.compile(_HEADING.format(r"(?:REFERENCES|References|BIBLIOGRAPHY|Bibliography)")),
]
# Numbered headings ("2. Related Work", "3 Method") may occur many times.
NUMBERED_HEADING = re.compile(r"\n[ \t]*(?:\d+\.|\d+[ \t]+)[ \t]*[A-Z][^.!?\n]*(?=[:.\n])")


def normalize_text(text: str) -> str:
    """Collapse runs of blanks while keeping the line structure headings rely on."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t\f\v]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def section_offsets(text: str) -> list[int]:
    """Sorted, de-duplicated boundary offsets including 0 and ``len(text)``."""
    offsets = {0, len(text)}
    for pattern in SECTION_PATTERNS:
        match = pattern.search(text)
        if match:
            offsets.add(match.start())
    for match in NUMBERED_HEADING.finditer(text):
        offsets.add(match.start())
    return sorted(offsets)


def slice_text(text: str, size: int) -> list[str]:
    """Mechanical fixed-size slicing; the last resort that always terminates."""
    pieces = (text[i:i + size].strip() for i in range(0, len(text), size))
    return [p for p in pieces if p]


def chunk_text_by_size(text: str, chunk_size: int = CHUNK_FALLBACK_SIZE) -> list[str]:
    """Accumulate paragraphs until the next one would overflow *chunk_size*."""
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]
    chunks: list[str] = []
    current = ""

    for paragraph in paragraphs:
        if len(paragraph) > chunk_size:
            if current:
                chunks.append(current)
                current = ""
            chunks.extend(slice_text(paragraph, chunk_size))
            continue
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) > chunk_size and current:
            chunks.append(current)
            current = paragraph
        else:
            current = candidate

    if current:
        chunks.append(current)

    if len(chunks) <= 1 and len(text) > chunk_size:
        logger.info("Falling back to mechanical chunking by character count")
        return slice_text(text, chunk_size)

    logger.debug("Created %d chunks by paragraph-aware size splitting", len(chunks))
    return chunks


def chunk_text_by_sections(
    text: str,
    fallback_size: int = CHUNK_FALLBACK_SIZE,
    min_chars: int = MIN_CHUNK_CHARS,
) -> list[str]:
    """
    Split *text* on section headings, re-splitting oversized sections.

    Segments shorter than *min_chars* are dropped, except in documents so
    short (under ``2 * min_chars``) that every heading-delimited piece counts.
    """
    if not text or not text.strip():
        return []

    offsets = section_offsets(text)
    logger.debug("Found %d potential sections in the document", len(offsets) - 1)

    floor = min_chars if len(text) >= 2 * min_chars else 1
    chunks: list[str] = []
    for start, end in zip(offsets, offsets[1:]):
        section = text[start:end].strip()
        if len(section) < floor:
            continue
        if len(section) > fallback_size:
            sub_chunks = chunk_text_by_size(section, fallback_size)
            logger.debug(
                "Split large section (%d chars) into %d chunks", len(section), len(sub_chunks)
            )
            chunks.extend(sub_chunks)
        else:
            chunks.append(section)

    if len(chunks) <= 1:
        logger.info(
            "Section detection produced %d chunks; falling back to size-based chunking",
            len(chunks),
        )
        return chunk_text_by_size(text.strip(), fallback_size)

    logger.info("Created %d chunks by section detection", len(chunks))
    return chunks
