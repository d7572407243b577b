"""
Retrieval tools the chat agent may call, and their closed dispatch.

Every tool checks paper ownership through the document store first and
returns JSON-ready values.  Paper details and search results go through
the cache layer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from paperchat.core.config import CHAT_HISTORY_LIMIT, DEFAULT_SEARCH_RESULTS
from paperchat.core.errors import ToolInvocationError
from paperchat.core.models import Chunk, PaperContext
from paperchat.rag.retriever import ChunkRetriever, query_terms, MIN_OR_TERM_CHARS
from paperchat.storage.cache import CacheService
from paperchat.storage.document_store import DocumentStore

logger = logging.getLogger(__name__)

EXCERPT_CHARS = 1500


class ToolName(str, Enum):
    GET_PAPER_DETAILS = "getPaperDetails"
    SEARCH_KNOWLEDGE_BASE = "searchKnowledgeBase"
    GET_CHAT_HISTORY = "getChatHistory"

    @classmethod
    def names(cls) -> list[str]:
        return [t.value for t in cls]


@dataclass
class ToolCall:
    name: ToolName
    args: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Identity of the call within one question (name + sorted args)."""
        args = ",".join(f"{k}={self.args[k]!r}" for k in sorted(self.args))
        return f"{self.name.value}({args})"


def parse_tool_call(name: Any, args: Any = None) -> ToolCall:
    """Validate a model-requested call; unknown names raise ``ToolInvocationError``."""
    try:
        tool = ToolName(name)
    except ValueError:
        raise ToolInvocationError(f"Unknown function {name!r}") from None
    if args is None:
        args = {}
    if not isinstance(args, dict):
        raise ToolInvocationError(f"Arguments for {tool.value} must be an object, got {args!r}")
    return ToolCall(name=tool, args=args)


def _int_arg(args: dict, names: tuple[str, ...], default: int) -> int:
    for name in names:
        if args.get(name) is not None:
            try:
                return max(1, int(args[name]))
            except (TypeError, ValueError):
                raise ToolInvocationError(f"{name} must be an integer, got {args[name]!r}") from None
    return default


def chunk_excerpt(chunk: Chunk) -> dict:
    text = chunk.text if len(chunk.text) <= EXCERPT_CHARS else chunk.text[:EXCERPT_CHARS] + "..."
    return {
        "index": chunk.index,
        "summary": chunk.summary,
        "keywords": list(chunk.keywords),
        "text": text,
    }


class ToolBox:
    """The three retrieval tools over one store and one cache."""

    def __init__(
        self,
        store: DocumentStore,
        cache: CacheService,
        history_limit: int = CHAT_HISTORY_LIMIT,
        default_results: int = DEFAULT_SEARCH_RESULTS,
    ):
        self.store = store
        self.cache = cache
        self.history_limit = history_limit
        self.default_results = default_results

    # ── tools ───────────────────────────────────────────────────────────── #

    def paper_context(self, paper_id: str, user_id: str) -> PaperContext:
        paper = self.store.get_owned_paper(paper_id, user_id)
        cached = self.cache.get_paper_context(paper_id)
        if cached is not None:
            return cached

        kb = self.store.get_knowledge_base(paper_id)
        context = PaperContext(
            paper_id=paper_id,
            title=paper.title,
            authors=paper.authors,
            abstract=paper.abstract,
            keywords=list(paper.keywords or (kb.aggregated_keywords if kb else [])),
            summary=paper.summary or (kb.aggregated_summary if kb else ""),
            hierarchical_summary=kb.hierarchical_summary if kb else None,
        )
        self.cache.set_paper_context(paper_id, context)
        return context

    def get_paper_details(self, paper_id: str, user_id: str, params: Optional[dict] = None) -> dict:
        return self.paper_context(paper_id, user_id).to_dict()

    def search_chunks(self, paper_id: str, user_id: str, query: str, max_results: int) -> list[Chunk]:
        self.store.get_owned_paper(paper_id, user_id)
        cached = self.cache.get_search(paper_id, query, max_results)
        if cached is not None:
            return cached

        hits = ChunkRetriever(self.store.get_chunks(paper_id)).search(query, max_results)
        logger.debug("Search %r on %s: %d hit(s) via %s", query, paper_id, len(hits.chunks), hits.stage)
        if hits.chunks:
            self.cache.set_search(paper_id, query, hits.chunks)
        return hits.chunks

    def search_knowledge_base(self, paper_id: str, user_id: str, params: Optional[dict] = None) -> list[dict]:
        params = params or {}
        query = str(params.get("query") or "").strip()
        if not query:
            raise ToolInvocationError("searchKnowledgeBase needs a non-empty 'query'")
        max_results = _int_arg(params, ("maxResults", "max_results"), self.default_results)
        return [chunk_excerpt(c) for c in self.search_chunks(paper_id, user_id, query, max_results)]

    def get_chat_history(self, paper_id: str, user_id: str, params: Optional[dict] = None) -> list[dict]:
        """Most recent user/assistant messages, oldest first."""
        self.store.get_owned_paper(paper_id, user_id)
        limit = _int_arg(params or {}, ("limit",), self.history_limit)
        recent = self.store.get_messages(
            paper_id, user_id, roles=("user", "assistant"), newest_first=True, limit=limit
        )
        return [
            {"role": m.role, "content": m.content, "created_at": m.created_at}
            for m in reversed(recent)
        ]

    # ── priming helper ──────────────────────────────────────────────────── #

    def prime_search(self, paper_id: str, user_id: str, question: str) -> list[dict]:
        """Search with the raw question, then term by term until something matches."""
        chunks = self.search_chunks(paper_id, user_id, question, self.default_results)
        if not chunks:
            for term in query_terms(question):
                if len(term) < MIN_OR_TERM_CHARS:
                    continue
                chunks = self.search_chunks(paper_id, user_id, term, self.default_results)
                if chunks:
                    break
        return [chunk_excerpt(c) for c in chunks]

    # ── dispatch ────────────────────────────────────────────────────────── #

    def execute(self, call: ToolCall, paper_id: str, user_id: str) -> Any:
        if call.name is ToolName.GET_PAPER_DETAILS:
            return self.get_paper_details(paper_id, user_id, call.args)
        elif call.name is ToolName.SEARCH_KNOWLEDGE_BASE:
            return self.search_knowledge_base(paper_id, user_id, call.args)
        elif call.name is ToolName.GET_CHAT_HISTORY:
            return self.get_chat_history(paper_id, user_id, call.args)
        raise ToolInvocationError(f"Unknown function {call.name!r}")
