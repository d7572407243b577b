"""
Document store — papers, their knowledge base, and the chat ledger.

Each paper is kept in memory and, when ``base_dir`` is given, mirrored to
``<base_dir>/<paper_id>.json`` after every mutation so completed analysis
work survives a crash mid-pipeline.

Reads hand out copies; callers never hold references into the store.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Iterable, Optional

from paperchat.core.errors import PaperNotFound
from paperchat.core.models import ChatMessage, Chunk, KnowledgeBase, Paper

logger = logging.getLogger(__name__)


class DocumentStore:
    """Thread-safe paper/chunk/message storage with optional JSON persistence."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = Path(base_dir) if base_dir else None
        self._papers: dict[str, Paper] = {}
        self._kbs: dict[str, KnowledgeBase] = {}
        self._messages: dict[str, list[ChatMessage]] = {}
        self._lock = threading.RLock()
        self._file_locks: dict[str, threading.Lock] = {}

        if self.base_dir:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            self._load_all()

    # ── papers ──────────────────────────────────────────────────────────── #

    def create_paper(self, paper: Paper) -> Paper:
        with self._lock:
            self._papers[paper.id] = copy.deepcopy(paper)
            self._messages.setdefault(paper.id, [])
        self._save(paper.id)
        return copy.deepcopy(paper)

    def get_paper(self, paper_id: str) -> Optional[Paper]:
        with self._lock:
            paper = self._papers.get(paper_id)
            return copy.deepcopy(paper) if paper else None

    def get_owned_paper(self, paper_id: str, user_id: str) -> Paper:
        """Return the paper if *user_id* owns it, else raise ``PaperNotFound``."""
        paper = self.get_paper(paper_id)
        if paper is None or paper.user_id != user_id:
            raise PaperNotFound(f"Paper {paper_id} not found for user {user_id}")
        return paper

    def list_papers(self, user_id: Optional[str] = None) -> list[Paper]:
        with self._lock:
            papers = [
                copy.deepcopy(p) for p in self._papers.values()
                if user_id is None or p.user_id == user_id
            ]
        return sorted(papers, key=lambda p: p.created_at)

    def update_paper(self, paper_id: str, **fields) -> Paper:
        with self._lock:
            paper = self._require_paper(paper_id)
            for name, value in fields.items():
                if not hasattr(paper, name):
                    raise AttributeError(f"Paper has no field {name!r}")
                setattr(paper, name, value)
            updated = copy.deepcopy(paper)
        self._save(paper_id)
        return updated

    def set_progress(self, paper_id: str, percent: int) -> None:
        with self._lock:
            paper = self._require_paper(paper_id)
            paper.processing_progress = max(0, min(100, int(percent)))
        self._save(paper_id)

    def delete_paper(self, paper_id: str) -> None:
        """Remove the paper together with its knowledge base and chat messages."""
        with self._file_lock(paper_id):
            with self._lock:
                self._papers.pop(paper_id, None)
                self._kbs.pop(paper_id, None)
                self._messages.pop(paper_id, None)
                self._file_locks.pop(paper_id, None)
            if self.base_dir:
                self._path(paper_id).unlink(missing_ok=True)

    # ── knowledge base / chunks ─────────────────────────────────────────── #

    def create_knowledge_base(self, paper_id: str, chunk_texts: Iterable[str]) -> KnowledgeBase:
        """Replace the paper's knowledge base with fresh, unanalysed chunks."""
        with self._lock:
            self._require_paper(paper_id)
            kb = KnowledgeBase(
                paper_id=paper_id,
                chunks=[Chunk(index=i, text=text) for i, text in enumerate(chunk_texts)],
            )
            self._kbs[paper_id] = kb
            created = copy.deepcopy(kb)
        self._save(paper_id)
        return created

    def get_knowledge_base(self, paper_id: str) -> Optional[KnowledgeBase]:
        with self._lock:
            kb = self._kbs.get(paper_id)
            return copy.deepcopy(kb) if kb else None

    def get_chunks(self, paper_id: str) -> list[Chunk]:
        with self._lock:
            kb = self._kbs.get(paper_id)
            return copy.deepcopy(kb.chunks) if kb else []

    def update_chunk(self, paper_id: str, index: int, **fields) -> None:
        with self._lock:
            kb = self._require_kb(paper_id)
            if not 0 <= index < len(kb.chunks):
                raise IndexError(f"Paper {paper_id} has no chunk {index}")
            chunk = kb.chunks[index]
            for name, value in fields.items():
                if not hasattr(chunk, name):
                    raise AttributeError(f"Chunk has no field {name!r}")
                setattr(chunk, name, value)
        self._save(paper_id)

    def update_knowledge_base(self, paper_id: str, **fields) -> None:
        with self._lock:
            kb = self._require_kb(paper_id)
            for name, value in fields.items():
                if name == "chunks" or not hasattr(kb, name):
                    raise AttributeError(f"KnowledgeBase field {name!r} cannot be updated")
                setattr(kb, name, value)
        self._save(paper_id)

    # ── chat ledger ─────────────────────────────────────────────────────── #

    def add_message(self, message: ChatMessage) -> ChatMessage:
        with self._lock:
            self._require_paper(message.paper_id)
            self._messages.setdefault(message.paper_id, []).append(copy.deepcopy(message))
        self._save(message.paper_id)
        return copy.deepcopy(message)

    def get_messages(
        self,
        paper_id: str,
        user_id: str,
        roles: Optional[Iterable[str]] = None,
        newest_first: bool = False,
        limit: Optional[int] = None,
    ) -> list[ChatMessage]:
        """Messages in creation order (or reversed), optionally filtered and capped."""
        wanted = set(roles) if roles else None
        with self._lock:
            messages = [
                copy.deepcopy(m) for m in self._messages.get(paper_id, [])
                if m.user_id == user_id and (wanted is None or m.role in wanted)
            ]
        if newest_first:
            messages.reverse()
        if limit is not None:
            messages = messages[:limit]
        return messages

    # ── persistence ─────────────────────────────────────────────────────── #

    def _require_paper(self, paper_id: str) -> Paper:
        paper = self._papers.get(paper_id)
        if paper is None:
            raise PaperNotFound(f"Paper {paper_id} not found")
        return paper

    def _require_kb(self, paper_id: str) -> KnowledgeBase:
        kb = self._kbs.get(paper_id)
        if kb is None:
            raise PaperNotFound(f"Paper {paper_id} has no knowledge base")
        return kb

    def _path(self, paper_id: str) -> Path:
        return self.base_dir / f"{paper_id}.json"

    def _file_lock(self, paper_id: str) -> threading.Lock:
        with self._lock:
            return self._file_locks.setdefault(paper_id, threading.Lock())

    def _save(self, paper_id: str) -> None:
        """Snapshot the paper under the store lock, write it under the paper's own lock."""
        if not self.base_dir:
            return
        with self._file_lock(paper_id):
            with self._lock:
                if paper_id not in self._papers:
                    return
                kb = self._kbs.get(paper_id)
                data = {
                    "paper": self._papers[paper_id].to_dict(),
                    "knowledge_base": kb.to_dict() if kb else None,
                    "messages": [m.to_dict() for m in self._messages.get(paper_id, [])],
                }
            self._write(self._path(paper_id), data)

    def _write(self, path: Path, data: dict) -> None:
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def _load_all(self) -> None:
        for path in sorted(self.base_dir.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                paper = Paper.from_dict(data["paper"])
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping unreadable paper file %s: %s", path, exc)
                continue
            self._papers[paper.id] = paper
            if data.get("knowledge_base"):
                self._kbs[paper.id] = KnowledgeBase.from_dict(data["knowledge_base"])
            self._messages[paper.id] = [
                ChatMessage.from_dict(m) for m in data.get("messages", [])
            ]
