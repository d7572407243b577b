"""
Service façade — wires the store, cache, rate limiter, gateway, pipeline and
agent together and exposes the operations the CLI (or any other front end)
needs: ingest / chunk_and_analyze / ask / delete / cache invalidation.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Optional

from paperchat.agent import prompts
from paperchat.agent.chat_agent import PaperChatAgent
from paperchat.agent.tools import ToolBox
from paperchat.core.config import (
    CHUNK_FALLBACK_SIZE,
    DATA_DIR,
    DEFAULT_TIER,
    FORCE_RECHUNK_CHARS,
)
from paperchat.core.errors import ExtractionFailure, PaperNotFound
from paperchat.core.llm import ModelGateway, build_gateway
from paperchat.core.models import ChatMessage, HierarchicalSummary, Paper
from paperchat.core.rate_limit import TierRateLimiter
from paperchat.papers.extractor import extract_text, read_document
from paperchat.rag.chunking import chunk_text_by_sections, chunk_text_by_size
from paperchat.rag.pipeline import AnalysisPipeline, ProgressCallback
from paperchat.storage.cache import CacheService
from paperchat.storage.document_store import DocumentStore

logger = logging.getLogger(__name__)


def chunk_paper_text(text: str, fallback_size: int = CHUNK_FALLBACK_SIZE) -> list[str]:
    """Section chunking, re-split by size when a long text stays in one piece."""
    chunks = chunk_text_by_sections(text, fallback_size)
    if len(chunks) == 1 and len(text) > FORCE_RECHUNK_CHARS:
        logger.info("Single chunk for %d chars; forcing size-based chunking", len(text))
        chunks = chunk_text_by_size(text, fallback_size)
    return chunks


class PaperChatService:
    def __init__(
        self,
        store: DocumentStore,
        gateway: ModelGateway,
        cache: Optional[CacheService] = None,
        limiter: Optional[TierRateLimiter] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 4,
    ):
        self.store = store
        self.gateway = gateway
        self.cache = cache or CacheService()
        self.limiter = limiter or TierRateLimiter(sleep=sleep)
        self.max_workers = max_workers
        self.pipeline = AnalysisPipeline(gateway, self.limiter, store, sleep=sleep)
        self.tools = ToolBox(store, self.cache)
        self.agent = PaperChatAgent(gateway, self.tools, self.cache)

    @classmethod
    def from_config(cls, data_dir: Optional[Path] = None) -> "PaperChatService":
        """Service over the JSON store in ``DATA_DIR`` and the configured Gemini models."""
        return cls(store=DocumentStore(data_dir or DATA_DIR), gateway=build_gateway())

    # ── ingestion & analysis ────────────────────────────────────────────── #

    def create_paper(
        self,
        user_id: str,
        content: str,
        title: str,
        authors: str = "",
        abstract: str = "",
    ) -> Paper:
        paper = Paper(user_id=user_id, title=title, content=content, authors=authors, abstract=abstract)
        return self.store.create_paper(paper)

    def ingest(
        self,
        user_id: str,
        path: Path | str,
        title: Optional[str] = None,
        authors: str = "",
        abstract: str = "",
        tier: str = DEFAULT_TIER,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Paper:
        """
        Extract *path*, create the paper and analyse it.  Extraction failures
        propagate before any paper exists.
        """
        path = Path(path)
        doc = read_document(path)
        paper = self.create_paper(
            user_id,
            doc.text,
            title=title or doc.title or path.stem,
            authors=authors or doc.authors,
            abstract=abstract,
        )
        logger.info("Created paper %s (%r) for user %s", paper.id, paper.title, user_id)
        self.chunk_and_analyze(paper.id, tier=tier, on_progress=on_progress)
        return self.store.get_paper(paper.id)

    def attach_document(
        self,
        paper_id: str,
        user_id: str,
        path: Path | str,
        tier: str = DEFAULT_TIER,
        on_progress: Optional[ProgressCallback] = None,
    ) -> HierarchicalSummary:
        """Replace an existing paper's content with a new file and re-analyse it."""
        self.store.get_owned_paper(paper_id, user_id)
        text = extract_text(path)
        self.store.update_paper(paper_id, content=text, summary="", keywords=[])
        self.invalidate_document_cache(paper_id)
        return self.chunk_and_analyze(paper_id, tier=tier, on_progress=on_progress)

    def chunk_and_analyze(
        self,
        paper_id: str,
        tier: str = DEFAULT_TIER,
        on_progress: Optional[ProgressCallback] = None,
    ) -> HierarchicalSummary:
        paper = self.store.get_paper(paper_id)
        if paper is None:
            raise PaperNotFound(f"Paper {paper_id} not found")

        try:
            self.store.update_paper(paper_id, processing_status="analyzing", processing_progress=0)
            self.cache.invalidate_paper(paper_id)

            chunks = chunk_paper_text(paper.content)
            if not chunks:
                raise ExtractionFailure(f"Paper {paper_id} has no text to analyse")
            self.store.create_knowledge_base(paper_id, chunks)
            logger.info("Paper %s: %d chunks stored", paper_id, len(chunks))

            result = self.pipeline.analyze(paper_id, chunks, tier, on_progress=on_progress)

            self.store.update_knowledge_base(
                paper_id,
                aggregated_summary=result.aggregated_summary,
                aggregated_keywords=result.keywords,
                aggregated_explanations=result.aggregated_explanations,
                hierarchical_summary=result.hierarchical_summary,
            )
            self.store.update_paper(
                paper_id,
                summary=result.aggregated_summary,
                keywords=result.keywords,
                processing_status="completed",
                processing_progress=100,
            )
        except Exception:
            logger.exception("Analysis of paper %s failed", paper_id)
            if self.store.get_paper(paper_id) is not None:
                self.store.update_paper(paper_id, processing_status="failed")
            raise

        self.cache.invalidate_paper(paper_id)
        self.tools.paper_context(paper_id, paper.user_id)
        return result.hierarchical_summary

    def analyze_many(
        self,
        paper_ids: list[str],
        tier: str = DEFAULT_TIER,
    ) -> dict[str, HierarchicalSummary]:
        """Analyse independent papers in parallel; failed papers are left marked ``failed``."""
        results: dict[str, HierarchicalSummary] = {}
        if not paper_ids:
            return results
        with ThreadPoolExecutor(max_workers=min(len(paper_ids), self.max_workers)) as pool:
            futures = {
                pool.submit(self.chunk_and_analyze, pid, tier): pid
                for pid in paper_ids
            }
            for future in as_completed(futures):
                pid = futures[future]
                try:
                    results[pid] = future.result()
                except Exception as exc:
                    logger.error("Paper %s not analysed: %s", pid, exc)
        return results

    # ── chat ────────────────────────────────────────────────────────────── #

    def ask(self, paper_id: str, user_id: str, question: str) -> ChatMessage:
        self.store.get_owned_paper(paper_id, user_id)

        first_exchange = not self.store.get_messages(
            paper_id, user_id, roles=("user", "assistant"), limit=1
        )
        if first_exchange:
            details = self.tools.get_paper_details(paper_id, user_id)
            self.store.add_message(ChatMessage(
                paper_id=paper_id,
                user_id=user_id,
                role="system",
                content=prompts.paper_details_note(details),
            ))
        self.store.add_message(ChatMessage(
            paper_id=paper_id, user_id=user_id, role="user", content=question,
        ))

        result = self.agent.answer(paper_id, user_id, question)
        return self.store.add_message(ChatMessage(
            paper_id=paper_id,
            user_id=user_id,
            role="assistant",
            content=result.answer,
            metadata={
                "status": result.status.value,
                "turns": result.turns,
                "tool_calls": result.tool_calls,
                "api_calls_made": result.api_calls_made,
            },
        ))

    def history(self, paper_id: str, user_id: str) -> list[ChatMessage]:
        self.store.get_owned_paper(paper_id, user_id)
        return self.store.get_messages(paper_id, user_id, roles=("user", "assistant"))

    # ── cache & lifecycle ───────────────────────────────────────────────── #

    def invalidate_document_cache(self, paper_id: str) -> None:
        self.cache.invalidate_paper(paper_id)

    def delete_paper(self, paper_id: str, user_id: str) -> None:
        """Delete the paper with its knowledge base and chat messages."""
        self.store.get_owned_paper(paper_id, user_id)
        self.store.delete_paper(paper_id)
        self.invalidate_document_cache(paper_id)
        logger.info("Deleted paper %s", paper_id)
