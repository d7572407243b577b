"""
Batch analysis pipeline: chunks → per-chunk summaries → hierarchical summary.

Chunks go to Gemini a few at a time.  Every batch prompt carries the merged
narrative of the batch before it, so batches run strictly in order and the
running state is threaded through ``BatchAccumulator``.  A failed batch
degrades to placeholder summaries instead of aborting the paper; the
hierarchical and refinement passes degrade the same way.

Progress: 20 once chunks exist, up to 70 across batches, 90 after the
hierarchical pass, 100 when done.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Sequence

from paperchat.core.config import (
    AGGREGATE_SUMMARY_CHARS,
    BATCH_SIZE,
    MAX_AGGREGATED_KEYWORDS,
    RAW_PREVIEW_CHARS,
)
from paperchat.core.errors import GenerationFailure
from paperchat.core.json_repair import is_fallback
from paperchat.core.llm import ModelGateway
from paperchat.core.models import ChunkAnalysis, HierarchicalSummary, SummarySection, AnalysisResult
from paperchat.core.rate_limit import TierRateLimiter
from paperchat.storage.document_store import DocumentStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

FAILED_SUMMARY = "analysis failed"
EMPTY_OVERVIEW = "No summary available."
PROGRESS_CHUNKED = 20
PROGRESS_BATCHES_DONE = 70
PROGRESS_HIERARCHY_DONE = 90
MIN_SECTIONS, MAX_SECTIONS = 3, 7
FALLBACK_OVERVIEW_CHARS = 1000
FALLBACK_AGGREGATE_CHARS = 500
FALLBACK_SECTION_CHARS = 300

ANALYSIS_SYSTEM = (
    "You are a research paper analysis AI. You read consecutive chunks of one "
    "paper and respond with valid JSON only, with no markdown and no text outside the JSON."
)

HIERARCHY_SYSTEM = (
    "You organise research paper summaries into a two-level outline. "
    "Respond with valid JSON only."
)

REFINE_SYSTEM = "You condense research paper overviews into a single tight summary."


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def dedupe_keywords(keywords: Sequence[str], limit: Optional[int] = None) -> list[str]:
    """Order-preserving, case-insensitive de-duplication."""
    seen: set[str] = set()
    out: list[str] = []
    for kw in keywords:
        kw = str(kw).strip()
        if kw and kw.lower() not in seen:
            seen.add(kw.lower())
            out.append(kw)
    return out[:limit] if limit is not None else out


def _string_list(value) -> list[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def topic_sections(analyses: Sequence[ChunkAnalysis]) -> list[SummarySection]:
    """One section per distinct topic, paired with the first chunk naming it."""
    sections: list[SummarySection] = []
    seen: set[str] = set()
    for a in analyses:
        for topic in a.topics:
            if topic.lower() in seen or len(sections) >= MAX_SECTIONS:
                continue
            seen.add(topic.lower())
            sections.append(SummarySection(topic, truncate(a.summary, FALLBACK_SECTION_CHARS)))
    return sections


def build_batch_prompt(batch: Sequence[str], previous_summary: Optional[str]) -> str:
    parts = []
    if previous_summary:
        parts.append(
            "PREVIOUS CONTEXT (summary of the text immediately before these chunks):\n"
            f"{previous_summary}\n"
        )
    for i, text in enumerate(batch, 1):
        parts.append(f"CHUNK {i}:\n{text}\n")
    parts.append(
        f"Analyse each of the {len(batch)} chunk(s) above, in order, keeping continuity "
        "with the previous context. Return JSON with exactly these fields:\n"
        '{\n'
        '  "mergedNarrative": "2-4 sentences covering all chunks together",\n'
        '  "chunks": [\n'
        '    {"summary": "concise summary (1-2 paragraphs)",\n'
        '     "keywords": ["5-10 important keywords"],\n'
        '     "topics": ["1-3 short topic names"],\n'
        '     "explanation": "explanation of the main concepts"}\n'
        "  ]\n"
        "}\n"
        f'"chunks" must contain exactly {len(batch)} entries.'
    )
    return "\n".join(parts)


def build_hierarchy_prompt(analyses: Sequence[ChunkAnalysis], keywords: Sequence[str]) -> str:
    lines = []
    for i, a in enumerate(analyses, 1):
        topics = ", ".join(a.topics) or "n/a"
        lines.append(f"[{i}] topics: {topics}\n{a.summary}")
    return (
        "Below are the summaries of consecutive chunks of one research paper, each "
        "with its extracted topics.\n\n"
        + "\n\n".join(lines)
        + f"\n\nKEYWORDS: {', '.join(keywords) or 'none'}\n\n"
        f"Group them into {MIN_SECTIONS}-{MAX_SECTIONS} thematic sections. Return JSON:\n"
        '{"overview": "one-paragraph overview of the whole paper",\n'
        ' "keywords": ["most important keywords"],\n'
        ' "sections": [{"title": "section title", "summary": "section summary"}]}'
    )


def build_refine_prompt(overview: str) -> str:
    return (
        f"Condense this overview of a research paper into at most {AGGREGATE_SUMMARY_CHARS} "
        "characters of plain prose. Keep the main contribution, method and findings.\n\n"
        f"{overview}"
    )


@dataclass
class BatchAccumulator:
    """Running state of the batch fold."""

    previous_summary: Optional[str] = None
    analyses: list[ChunkAnalysis] = field(default_factory=list)
    failed_batches: list[int] = field(default_factory=list)


@dataclass
class PipelineResult:
    per_chunk_summaries: list[str]
    keywords: list[str]
    hierarchical_summary: HierarchicalSummary
    aggregated_summary: str
    aggregated_explanations: str
    failed_batches: list[int] = field(default_factory=list)


class AnalysisPipeline:
    """Drives one paper's chunks through the rate limiter and the model gateway."""

    def __init__(
        self,
        gateway: ModelGateway,
        limiter: TierRateLimiter,
        store: DocumentStore,
        batch_size: int = BATCH_SIZE,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = gateway
        self.limiter = limiter
        self.store = store
        self.batch_size = max(1, batch_size)
        self._sleep = sleep

    # ── public API ──────────────────────────────────────────────────────── #

    def analyze(
        self,
        paper_id: str,
        chunks: Sequence[str],
        tier: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PipelineResult:
        progress = _Progress(self.store, paper_id, on_progress)
        progress.report(PROGRESS_CHUNKED)

        batches = [chunks[i:i + self.batch_size] for i in range(0, len(chunks), self.batch_size)]
        logger.info("Paper %s: analysing %d chunks in %d batches", paper_id, len(chunks), len(batches))

        acc = BatchAccumulator()
        for batch_index, batch in enumerate(batches):
            acc = self._fold_batch(paper_id, tier, acc, batch_index, batch)
            done = len(acc.analyses)
            span = PROGRESS_BATCHES_DONE - PROGRESS_CHUNKED
            progress.report(PROGRESS_CHUNKED + round(span * done / len(chunks)))
            if batch_index < len(batches) - 1:
                self._sleep(self.limiter.delay_for(tier))

        progress.report(PROGRESS_BATCHES_DONE)

        keywords = dedupe_keywords(
            [kw for a in acc.analyses for kw in a.keywords], MAX_AGGREGATED_KEYWORDS
        )
        hierarchy = self._hierarchical_summary(paper_id, tier, acc.analyses, keywords)
        progress.report(PROGRESS_HIERARCHY_DONE)

        aggregated = self._refine(paper_id, tier, hierarchy.overview)
        progress.report(100)

        if acc.failed_batches:
            logger.warning(
                "Paper %s finished with %d degraded batch(es): %s",
                paper_id, len(acc.failed_batches), acc.failed_batches,
            )
        return PipelineResult(
            per_chunk_summaries=[a.summary for a in acc.analyses],
            keywords=keywords,
            hierarchical_summary=hierarchy,
            aggregated_summary=aggregated,
            aggregated_explanations="\n\n".join(a.explanation for a in acc.analyses if a.explanation),
            failed_batches=acc.failed_batches,
        )

    # ── batch stage ─────────────────────────────────────────────────────── #

    def _fold_batch(
        self,
        paper_id: str,
        tier: str,
        acc: BatchAccumulator,
        batch_index: int,
        batch: Sequence[str],
    ) -> BatchAccumulator:
        first_index = len(acc.analyses)
        logger.info(
            "Paper %s: batch %d, chunks %d-%d",
            paper_id, batch_index + 1, first_index + 1, first_index + len(batch),
        )

        self.limiter.acquire(tier)
        result = self._analyze_batch(paper_id, batch_index, batch, acc.previous_summary)

        for offset, analysis in enumerate(result.chunk_details):
            self.store.update_chunk(
                paper_id,
                first_index + offset,
                summary=analysis.summary,
                keywords=analysis.keywords,
                topics=analysis.topics,
                explanation=analysis.explanation,
            )

        degraded = all(a.degraded for a in result.chunk_details)
        return replace(
            acc,
            previous_summary=acc.previous_summary if degraded else result.merged_narrative,
            analyses=acc.analyses + result.chunk_details,
            failed_batches=acc.failed_batches + [batch_index] if degraded else acc.failed_batches,
        )

    def _analyze_batch(
        self,
        paper_id: str,
        batch_index: int,
        batch: Sequence[str],
        previous_summary: Optional[str],
    ) -> AnalysisResult:
        prompt = build_batch_prompt(batch, previous_summary)
        try:
            data = self.gateway.generate_structured(prompt, system=ANALYSIS_SYSTEM)
        except GenerationFailure as exc:
            logger.error("Paper %s batch %d: generation failed: %s", paper_id, batch_index, exc)
            return self._degraded_batch(batch, previous_summary)

        if is_fallback(data):
            logger.error(
                "Paper %s batch %d: unparseable response: %s | raw: %r",
                paper_id, batch_index, data.get("parse_error"),
                str(data.get("raw_preview", ""))[:RAW_PREVIEW_CHARS],
            )
            return self._degraded_batch(batch, previous_summary)

        entries = data.get("chunks")
        if not isinstance(entries, list) and len(batch) == 1 and "summary" in data:
            entries = [data]                                     # single-chunk shape
        if not isinstance(entries, list):
            entries = []

        details: list[ChunkAnalysis] = []
        for j in range(len(batch)):
            entry = entries[j] if j < len(entries) and isinstance(entries[j], dict) else {}
            summary = str(entry.get("summary") or "").strip()
            if not summary:
                logger.warning(
                    "Paper %s batch %d: no summary for chunk %d", paper_id, batch_index, j + 1
                )
                details.append(ChunkAnalysis(previous_summary or FAILED_SUMMARY, degraded=True))
                continue
            details.append(ChunkAnalysis(
                summary=summary,
                keywords=dedupe_keywords(_string_list(entry.get("keywords"))),
                topics=dedupe_keywords(_string_list(entry.get("topics"))),
                explanation=str(entry.get("explanation") or "").strip(),
            ))

        fresh = [d.summary for d in details if not d.degraded]
        merged = str(data.get("mergedNarrative") or "").strip() or " ".join(fresh)
        return AnalysisResult(
            summaries=[d.summary for d in details],
            merged_narrative=merged or (previous_summary or ""),
            keywords=dedupe_keywords([kw for d in details for kw in d.keywords]),
            chunk_details=details,
        )

    @staticmethod
    def _degraded_batch(batch: Sequence[str], previous_summary: Optional[str]) -> AnalysisResult:
        summary = previous_summary or FAILED_SUMMARY
        details = [ChunkAnalysis(summary=summary, degraded=True) for _ in batch]
        return AnalysisResult(
            summaries=[summary] * len(batch),
            merged_narrative=previous_summary or "",
            keywords=[],
            chunk_details=details,
        )

    # ── hierarchical + refinement stages ────────────────────────────────── #

    def _hierarchical_summary(
        self,
        paper_id: str,
        tier: str,
        analyses: Sequence[ChunkAnalysis],
        keywords: list[str],
    ) -> HierarchicalSummary:
        usable = [a for a in analyses if not a.degraded]
        if usable:
            self.limiter.acquire(tier)
            try:
                data = self.gateway.generate_structured(
                    build_hierarchy_prompt(usable, keywords), system=HIERARCHY_SYSTEM
                )
                hierarchy = self._coerce_hierarchy(data, usable, keywords)
                if hierarchy is not None:
                    return hierarchy
                logger.warning(
                    "Paper %s: hierarchical summary incomplete; rebuilding from topics | raw: %r",
                    paper_id, str(data.get("raw_preview", data))[:RAW_PREVIEW_CHARS],
                )
            except GenerationFailure as exc:
                logger.error("Paper %s: hierarchical summary failed: %s", paper_id, exc)
        return self.fallback_hierarchy(analyses, keywords)

    @staticmethod
    def _coerce_hierarchy(
        data: dict, analyses: Sequence[ChunkAnalysis], keywords: list[str]
    ) -> Optional[HierarchicalSummary]:
        if is_fallback(data):
            return None
        overview = str(data.get("overview") or "").strip()
        raw_sections = data.get("sections")
        if not overview or not isinstance(raw_sections, list):
            return None
        sections = [
            SummarySection(title=str(s["title"]).strip(), summary=str(s["summary"]).strip())
            for s in raw_sections
            if isinstance(s, dict) and s.get("title") and s.get("summary")
        ][:MAX_SECTIONS]
        if len(sections) < MIN_SECTIONS:
            logger.info("Hierarchical summary has %d section(s); adding chunk topics", len(sections))
            titles = {s.title.lower() for s in sections}
            for extra in topic_sections(analyses):
                if len(sections) >= MIN_SECTIONS:
                    break
                if extra.title.lower() not in titles:
                    titles.add(extra.title.lower())
                    sections.append(extra)
        model_keywords = dedupe_keywords(_string_list(data.get("keywords")))
        return HierarchicalSummary(
            overview=overview,
            keywords=dedupe_keywords(model_keywords + keywords, MAX_AGGREGATED_KEYWORDS),
            sections=sections,
        )

    @staticmethod
    def fallback_hierarchy(analyses: Sequence[ChunkAnalysis], keywords: list[str]) -> HierarchicalSummary:
        """Minimal valid summary from topic names and concatenated chunk summaries."""
        usable = [a for a in analyses if not a.degraded] or list(analyses)
        joined = "\n\n".join(a.summary for a in usable if a.summary and a.summary != FAILED_SUMMARY)
        overview = truncate(joined, FALLBACK_OVERVIEW_CHARS) if joined else EMPTY_OVERVIEW
        return HierarchicalSummary(
            overview=overview, keywords=list(keywords), sections=topic_sections(usable)
        )

    def _refine(self, paper_id: str, tier: str, overview: str) -> str:
        self.limiter.acquire(tier)
        try:
            refined = self.gateway.generate(build_refine_prompt(overview), system=REFINE_SYSTEM).strip()
        except GenerationFailure as exc:
            logger.error("Paper %s: summary refinement failed: %s", paper_id, exc)
            refined = ""
        if not refined:
            return truncate(overview, FALLBACK_AGGREGATE_CHARS)
        return truncate(refined, AGGREGATE_SUMMARY_CHARS)


class _Progress:
    """Monotonic progress reporting to the store and an optional callback."""

    def __init__(self, store: DocumentStore, paper_id: str, callback: Optional[ProgressCallback]):
        self.store = store
        self.paper_id = paper_id
        self.callback = callback
        self.current = 0

    def report(self, percent: int) -> None:
        percent = max(self.current, min(100, int(percent)))
        self.current = percent
        self.store.set_progress(self.paper_id, percent)
        if self.callback:
            self.callback(percent)
