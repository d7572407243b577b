"""
Caches that make repeated tool calls cheap.

Three independent key spaces, one lock each:

  paper context   paper_id                  → PaperContext
  search results  (paper_id, normalised q)  → list[Chunk]
  session tools   (user_id, paper_id)       → {tool_name → last result}

Nothing here persists across restarts; every entry can be rebuilt from the
document store.  Writes are last-writer-wins.
"""

from __future__ import annotations

import copy
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Optional, TypeVar

from paperchat.core.config import CACHE_TTL_SECONDS
from paperchat.core.models import Chunk, PaperContext

logger = logging.getLogger(__name__)

V = TypeVar("V")


def normalize_query(query: str) -> str:
    return re.sub(r"\s+", " ", (query or "").strip().lower())


@dataclass
class CacheEntry(Generic[V]):
    value: V
    created_at: float
    ttl: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        if self.ttl is None:
            return False
        return now - self.created_at > self.ttl


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0


class TTLMap(Generic[V]):
    """Lock-guarded dict with optional per-entry expiry."""

    def __init__(self, ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._data: Dict[Hashable, CacheEntry[V]] = {}
        self._lock = threading.RLock()
        self.stats = CacheStats()

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                self.stats.misses += 1
                return None
            if entry.is_expired(self._clock()):
                del self._data[key]
                self.stats.misses += 1
                return None
            self.stats.hits += 1
            return entry.value

    def set(self, key: Hashable, value: V) -> None:
        with self._lock:
            self._data[key] = CacheEntry(value=value, created_at=self._clock(), ttl=self.ttl)

    def pop(self, key: Hashable) -> None:
        with self._lock:
            self._data.pop(key, None)

    def remove_where(self, predicate: Callable[[Hashable], bool]) -> int:
        with self._lock:
            doomed = [k for k in self._data if predicate(k)]
            for key in doomed:
                del self._data[key]
            return len(doomed)

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._data.items() if e.is_expired(now)]
            for key in expired:
                del self._data[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class CacheService:
    """
    One instance per process (or per test), handed to the tools and the agent.

    The context and search maps honour ``ttl`` (best-effort, checked on read
    and in ``cleanup_expired``); session entries live until ``end_session``.
    """

    def __init__(
        self,
        ttl: Optional[float] = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.paper_context: TTLMap[PaperContext] = TTLMap(ttl=ttl, clock=clock)
        self.search: TTLMap[list[Chunk]] = TTLMap(ttl=ttl, clock=clock)
        self.session: TTLMap[dict[str, Any]] = TTLMap(ttl=None, clock=clock)
        self._session_lock = threading.Lock()

    # ── paper context ───────────────────────────────────────────────────── #

    def get_paper_context(self, paper_id: str) -> Optional[PaperContext]:
        return self.paper_context.get(paper_id)

    def set_paper_context(self, paper_id: str, context: PaperContext) -> None:
        self.paper_context.set(paper_id, context)

    # ── search results ──────────────────────────────────────────────────── #

    def get_search(self, paper_id: str, query: str, max_results: int) -> Optional[list[Chunk]]:
        """Cached chunks, but only if at least *max_results* of them were stored."""
        cached = self.search.get((paper_id, normalize_query(query)))
        if cached is None or len(cached) < max_results:
            return None
        return copy.deepcopy(cached[:max_results])

    def set_search(self, paper_id: str, query: str, results: list[Chunk]) -> None:
        self.search.set((paper_id, normalize_query(query)), copy.deepcopy(results))

    # ── per-session tool results ────────────────────────────────────────── #
    # Keyed by (user, paper, session id): concurrent questions on one paper
    # neither share results nor end each other's sessions.

    def get_session_result(
        self, user_id: str, paper_id: str, tool_name: str, session_id: str = ""
    ) -> Optional[Any]:
        results = self.session.get((user_id, paper_id, session_id))
        return None if results is None else results.get(tool_name)

    def set_session_result(
        self, user_id: str, paper_id: str, tool_name: str, result: Any, session_id: str = ""
    ) -> None:
        # Read-modify-write on the inner dict; serialised so no write is lost.
        with self._session_lock:
            results = dict(self.session.get((user_id, paper_id, session_id)) or {})
            results[tool_name] = result
            self.session.set((user_id, paper_id, session_id), results)

    def end_session(self, user_id: str, paper_id: str, session_id: str = "") -> None:
        self.session.pop((user_id, paper_id, session_id))

    # ── invalidation ────────────────────────────────────────────────────── #

    def invalidate_paper(self, paper_id: str) -> None:
        """Forget everything cached for *paper_id* (replaced or deleted paper)."""
        self.paper_context.pop(paper_id)
        searches = self.search.remove_where(lambda key: key[0] == paper_id)
        sessions = self.session.remove_where(lambda key: key[1] == paper_id)
        logger.info(
            "Invalidated cache for paper %s (%d searches, %d sessions)",
            paper_id, searches, sessions,
        )

    def cleanup_expired(self) -> int:
        return self.paper_context.cleanup_expired() + self.search.cleanup_expired()

    def clear(self) -> None:
        self.paper_context.clear()
        self.search.clear()
        self.session.clear()

    def stats(self) -> dict[str, dict[str, int]]:
        return {
            name: {"hits": m.stats.hits, "misses": m.stats.misses, "size": len(m)}
            for name, m in (
                ("paper_context", self.paper_context),
                ("search", self.search),
                ("session", self.session),
            )
        }
