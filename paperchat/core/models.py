"""
Data model for papers, their chunks, summaries and chat messages.

Everything here is a plain dataclass so the document store can persist it
as JSON and tests can build instances directly.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from paperchat.core.config import CONTENT_PREVIEW_CHARS


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class Paper:
    user_id: str
    title: str
    content: str
    authors: str = ""
    abstract: str = ""
    summary: str = ""
    keywords: list[str] = field(default_factory=list)
    processing_status: str = "pending"       # pending | analyzing | completed | failed
    processing_progress: int = 0
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=_now)

    @property
    def content_preview(self) -> str:
        if len(self.content) > CONTENT_PREVIEW_CHARS:
            return self.content[:CONTENT_PREVIEW_CHARS] + "..."
        return self.content

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Paper":
        return cls(**data)


@dataclass
class Chunk:
    index: int
    text: str
    summary: str = ""
    keywords: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)
    explanation: str = ""
    start_page: Optional[int] = None
    end_page: Optional[int] = None
    embedding: Optional[list[float]] = None   # reserved; never populated

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Chunk":
        return cls(**data)


@dataclass
class SummarySection:
    title: str
    summary: str


@dataclass
class HierarchicalSummary:
    overview: str
    keywords: list[str] = field(default_factory=list)
    sections: list[SummarySection] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "overview": self.overview,
            "keywords": list(self.keywords),
            "sections": [{"title": s.title, "summary": s.summary} for s in self.sections],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HierarchicalSummary":
        return cls(
            overview=data.get("overview", ""),
            keywords=list(data.get("keywords", [])),
            sections=[
                SummarySection(title=s.get("title", ""), summary=s.get("summary", ""))
                for s in data.get("sections", [])
            ],
        )


@dataclass
class KnowledgeBase:
    """Per-paper analysis record: the chunk ledger plus aggregate summaries."""

    paper_id: str
    chunks: list[Chunk] = field(default_factory=list)
    aggregated_summary: str = "Analysis in progress..."
    aggregated_keywords: list[str] = field(default_factory=list)
    aggregated_explanations: str = ""
    hierarchical_summary: HierarchicalSummary = field(
        default_factory=lambda: HierarchicalSummary(overview="Processing in progress...")
    )

    def to_dict(self) -> dict:
        return {
            "paper_id": self.paper_id,
            "chunks": [c.to_dict() for c in self.chunks],
            "aggregated_summary": self.aggregated_summary,
            "aggregated_keywords": list(self.aggregated_keywords),
            "aggregated_explanations": self.aggregated_explanations,
            "hierarchical_summary": self.hierarchical_summary.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "KnowledgeBase":
        return cls(
            paper_id=data["paper_id"],
            chunks=[Chunk.from_dict(c) for c in data.get("chunks", [])],
            aggregated_summary=data.get("aggregated_summary", ""),
            aggregated_keywords=list(data.get("aggregated_keywords", [])),
            aggregated_explanations=data.get("aggregated_explanations", ""),
            hierarchical_summary=HierarchicalSummary.from_dict(
                data.get("hierarchical_summary", {})
            ),
        )


@dataclass
class ChunkAnalysis:
    """One chunk's slice of a batch response."""

    summary: str
    keywords: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)
    explanation: str = ""
    degraded: bool = False


@dataclass
class AnalysisResult:
    """Output of one batch; folded into the chunks and then discarded."""

    summaries: list[str]
    merged_narrative: str
    keywords: list[str]
    chunk_details: list[ChunkAnalysis]


@dataclass
class PaperContext:
    """What ``getPaperDetails`` returns, and what the context cache holds."""

    paper_id: str
    title: str
    authors: str
    abstract: str
    keywords: list[str]
    summary: str
    hierarchical_summary: Optional[HierarchicalSummary] = None

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "authors": self.authors,
            "abstract": self.abstract,
            "keywords": list(self.keywords),
            "summary": self.summary,
            "hierarchicalSummary": (
                self.hierarchical_summary.to_dict() if self.hierarchical_summary else None
            ),
        }


@dataclass
class ChatMessage:
    paper_id: str
    user_id: str
    role: str                                   # user | assistant | system | tool
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ChatMessage":
        return cls(**data)
