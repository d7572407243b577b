"""
Staged keyword search over one paper's chunks.

  1. TF-IDF relevance (scikit-learn), ranked by cosine similarity
  2. AND-match: every query term appears as a substring
  3. OR-match: first chunk hit per term longer than three characters
  4. the paper's first chunk, so the model always gets *some* context

Precision drops at every stage; the last one never comes back empty for a
paper that has any chunks at all.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import cosine_similarity

from paperchat.core.config import DEFAULT_SEARCH_RESULTS
from paperchat.core.models import Chunk

logger = logging.getLogger(__name__)

MIN_OR_TERM_CHARS = 4


def query_terms(query: str) -> list[str]:
    """Lower-cased whitespace-separated terms with surrounding punctuation removed."""
    terms = (t.strip(".,;:!?\"'()[]{}") for t in (query or "").lower().split())
    return [t for t in terms if t]


@dataclass
class SearchHits:
    chunks: list[Chunk]
    stage: str                                  # relevance | and | or | fallback | empty
    scores: list[float] = field(default_factory=list)


@dataclass
class ChunkRetriever:
    """TF-IDF based retriever over the chunks of a single paper."""

    chunks: list[Chunk] = field(default_factory=list)
    _vectorizer: Optional[TfidfVectorizer] = field(default=None, repr=False)
    _matrix: Optional[np.ndarray] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self._build_index()

    def _build_index(self) -> None:
        """Rebuild the TF-IDF matrix; a stop-word-only corpus has no index."""
        if not self.chunks:
            return
        vectorizer = TfidfVectorizer(stop_words="english")
        try:
            self._matrix = vectorizer.fit_transform([c.text for c in self.chunks])
            self._vectorizer = vectorizer
        except ValueError as exc:  # empty vocabulary
            logger.debug("TF-IDF index not built: %s", exc)
            self._vectorizer = None
            self._matrix = None

    # ── stages ──────────────────────────────────────────────────────────── #

    def relevance(self, query: str, max_results: int) -> tuple[list[Chunk], list[float]]:
        if self._vectorizer is None or self._matrix is None or not query.strip():
            return [], []
        query_vec = self._vectorizer.transform([query])
        scores = cosine_similarity(query_vec, self._matrix).flatten()
        top = [i for i in scores.argsort()[::-1][:max_results] if scores[i] > 0]
        return [self.chunks[i] for i in top], [float(scores[i]) for i in top]

    def and_match(self, query: str, max_results: int) -> list[Chunk]:
        terms = query_terms(query)
        if not terms:
            return []
        hits = [c for c in self.chunks if all(t in c.text.lower() for t in terms)]
        return hits[:max_results]

    def or_match(self, query: str, max_results: int) -> list[Chunk]:
        hits: list[Chunk] = []
        seen: set[int] = set()
        for term in query_terms(query):
            if len(term) < MIN_OR_TERM_CHARS:
                continue
            match = next((c for c in self.chunks if term in c.text.lower()), None)
            if match is not None and match.index not in seen:
                seen.add(match.index)
                hits.append(match)
        return hits[:max_results]

    # ── cascade ─────────────────────────────────────────────────────────── #

    def search(self, query: str, max_results: int = DEFAULT_SEARCH_RESULTS) -> SearchHits:
        max_results = max(1, int(max_results))
        if not self.chunks:
            return SearchHits(chunks=[], stage="empty")

        chunks, scores = self.relevance(query, max_results)
        if chunks:
            return SearchHits(chunks=chunks, stage="relevance", scores=scores)

        chunks = self.and_match(query, max_results)
        if chunks:
            return SearchHits(chunks=chunks, stage="and")

        chunks = self.or_match(query, max_results)
        if chunks:
            return SearchHits(chunks=chunks, stage="or")

        logger.debug("No match for %r; anchoring on the first chunk", query)
        return SearchHits(chunks=self.chunks[:1], stage="fallback")
