"""
Pytest configuration and fixtures for Paper Chat tests.
"""

import json
import re

import pytest

from paperchat.core.llm import ModelGateway
from paperchat.core.models import Paper
from paperchat.core.rate_limit import TierRateLimiter
from paperchat.storage.cache import CacheService
from paperchat.storage.document_store import DocumentStore


class FakeClock:
    """Monotonic clock whose ``sleep`` just advances time."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedLLM:
    """
    LLM function replaying a script of responses.

    Items may be strings, dicts (sent as JSON), exceptions (raised) or
    callables taking (system, user).  With ``repeat_last`` the final item is
    replayed forever; otherwise running out raises.
    """

    def __init__(self, script, repeat_last: bool = False):
        self.script = list(script)
        self.repeat_last = repeat_last
        self.calls: list[tuple[str, str]] = []

    def __call__(self, system: str, user: str) -> str:
        self.calls.append((system, user))
        if not self.script:
            raise RuntimeError("script exhausted")
        item = self.script[0] if self.repeat_last and len(self.script) == 1 else self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            item = item(system, user)
        if isinstance(item, dict):
            return json.dumps(item)
        return item

    @property
    def prompts(self) -> list[str]:
        return [user for _, user in self.calls]


def batch_response(summaries, narrative="Merged narrative.", topics=None, keywords=None):
    """JSON text of a well-formed batch analysis reply."""
    return json.dumps({
        "mergedNarrative": narrative,
        "chunks": [
            {
                "summary": s,
                "keywords": (keywords or {}).get(i, [f"kw{i}", "shared"]),
                "topics": (topics or {}).get(i, [f"Topic {i}"]),
                "explanation": f"Explanation {i}",
            }
            for i, s in enumerate(summaries)
        ],
    })


def route_by_prompt(system: str, user: str) -> str:
    """Answer any pipeline prompt sensibly, whatever order the calls arrive in."""
    if "CHUNK 1:" in user:
        n = len(re.findall(r"^CHUNK \d+:", user, re.MULTILINE))
        return batch_response([f"Summary {i}" for i in range(n)])
    if "thematic sections" in user:
        return json.dumps({
            "overview": "The paper introduces a new model.",
            "keywords": ["model"],
            "sections": [
                {"title": "Background", "summary": "Prior work."},
                {"title": "Method", "summary": "The approach."},
                {"title": "Results", "summary": "It works."},
            ],
        })
    if "Condense this overview" in user:
        return "A new model that works."
    return json.dumps({"answer": "Hello!"})


SAMPLE_TEXT = (
    "ABSTRACT\n"
    "We present a transformer model that relies entirely on attention mechanisms "
    "and dispenses with recurrence.\n"
    "INTRODUCTION\n"
    "Recurrent neural networks have long dominated sequence modelling tasks such "
    "as machine translation and language modelling.\n"
    "METHODS\n"
    "Our encoder stacks six identical layers, each with multi-head self-attention "
    "and a position-wise feed-forward network.\n"
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    """In-memory document store."""
    return DocumentStore()


@pytest.fixture
def cache(clock):
    return CacheService(clock=clock)


@pytest.fixture
def limiter(clock):
    return TierRateLimiter(clock=clock, sleep=clock.sleep)


@pytest.fixture
def paper(store):
    return store.create_paper(Paper(
        user_id="alice",
        title="Attention Is All You Need",
        authors="Vaswani et al.",
        abstract="The dominant sequence transduction models...",
        content=SAMPLE_TEXT,
    ))


@pytest.fixture
def analysed_paper(store, paper):
    """Paper with a knowledge base whose chunks already carry summaries."""
    texts = [
        "Transformers rely on self-attention to relate positions of a sequence.",
        "Recurrent networks process tokens one at a time and are hard to parallelise.",
        "The model reaches a BLEU score of 28.4 on English-to-German translation.",
    ]
    store.create_knowledge_base(paper.id, texts)
    for i, text in enumerate(texts):
        store.update_chunk(paper.id, i, summary=f"Summary of chunk {i}", keywords=[f"kw{i}"])
    store.update_paper(
        paper.id,
        summary="A transformer built on attention.",
        keywords=["attention", "transformer"],
        processing_status="completed",
        processing_progress=100,
    )
    return store.get_paper(paper.id)


@pytest.fixture
def make_gateway():
    """Factory: ``make_gateway(script, repeat_last=False) -> (gateway, llm)``."""

    def _make(script, repeat_last: bool = False, fallback=None):
        llm = ScriptedLLM(script, repeat_last=repeat_last)
        return ModelGateway(llm, fallback=fallback, name="test"), llm

    return _make
