import json

import pytest

from conftest import batch_response

from paperchat.core.models import ChunkAnalysis
from paperchat.rag.pipeline import (
    EMPTY_OVERVIEW,
    FAILED_SUMMARY,
    AnalysisPipeline,
    dedupe_keywords,
    truncate,
)

CHUNKS = ["First chunk text.", "Second chunk text.", "Third chunk text."]

HIERARCHY = json.dumps({
    "overview": "A paper about attention.",
    "keywords": ["attention"],
    "sections": [
        {"title": "Motivation", "summary": "Why."},
        {"title": "Model", "summary": "How."},
        {"title": "Evaluation", "summary": "How well."},
    ],
})


@pytest.fixture
def kb_paper(store, paper):
    store.create_knowledge_base(paper.id, CHUNKS)
    return paper


@pytest.fixture
def sleeps():
    return []


def make_pipeline(gateway, limiter, store, sleeps):
    return AnalysisPipeline(gateway, limiter, store, batch_size=2, sleep=sleeps.append)


class TestAnalyze:
    """End-to-end runs of the batch pipeline against a scripted model."""

    def test_happy_path(self, store, limiter, kb_paper, make_gateway, sleeps):
        gateway, llm = make_gateway([
            batch_response(["S0", "S1"], narrative="Batch one story.",
                           keywords={0: ["Attention", "model"], 1: ["attention", "RNN"]}),
            batch_response(["S2"], narrative="Batch two story."),
            HIERARCHY,
            "Refined summary.",
        ])
        progress = []

        result = make_pipeline(gateway, limiter, store, sleeps).analyze(
            kb_paper.id, CHUNKS, "free", on_progress=progress.append
        )

        assert result.per_chunk_summaries == ["S0", "S1", "S2"]
        assert result.keywords[:3] == ["Attention", "model", "RNN"]
        assert result.hierarchical_summary.overview == "A paper about attention."
        assert [s.title for s in result.hierarchical_summary.sections] == [
            "Motivation", "Model", "Evaluation",
        ]
        assert result.aggregated_summary == "Refined summary."
        assert result.aggregated_explanations == "Explanation 0\n\nExplanation 1\n\nExplanation 0"
        assert result.failed_batches == []

        stored = store.get_chunks(kb_paper.id)
        assert [c.summary for c in stored] == ["S0", "S1", "S2"]
        assert stored[2].topics == ["Topic 0"]

        assert sleeps == [4.0]
        assert "PREVIOUS CONTEXT" not in llm.prompts[0]
        assert "Batch one story." in llm.prompts[1]

    def test_progress_is_monotonic(self, store, limiter, kb_paper, make_gateway, sleeps):
        gateway, _ = make_gateway([
            batch_response(["S0", "S1"]),
            batch_response(["S2"]),
            HIERARCHY,
            "Refined.",
        ])
        progress = []

        make_pipeline(gateway, limiter, store, sleeps).analyze(
            kb_paper.id, CHUNKS, "free", on_progress=progress.append
        )

        assert progress == sorted(progress)
        assert progress[0] == 20
        assert 70 in progress and 90 in progress
        assert progress[-1] == 100
        assert store.get_paper(kb_paper.id).processing_progress == 100

    def test_chunks_persisted_before_next_batch(self, store, limiter, kb_paper, make_gateway, sleeps):
        seen = {}

        def second_batch(system, user):
            seen["first"] = store.get_chunks(kb_paper.id)[0].summary
            seen["third"] = store.get_chunks(kb_paper.id)[2].summary
            return batch_response(["S2"])

        gateway, _ = make_gateway([batch_response(["S0", "S1"]), second_batch, HIERARCHY, "R."])

        make_pipeline(gateway, limiter, store, sleeps).analyze(kb_paper.id, CHUNKS, "free")

        assert seen == {"first": "S0", "third": ""}

    def test_failed_batch_degrades(self, store, limiter, kb_paper, make_gateway, sleeps):
        gateway, llm = make_gateway([
            RuntimeError("model down"),
            batch_response(["S2"]),
            HIERARCHY,
            "Refined.",
        ])

        result = make_pipeline(gateway, limiter, store, sleeps).analyze(kb_paper.id, CHUNKS, "free")

        assert result.per_chunk_summaries == [FAILED_SUMMARY, FAILED_SUMMARY, "S2"]
        assert result.failed_batches == [0]
        stored = store.get_chunks(kb_paper.id)
        assert stored[0].summary == FAILED_SUMMARY
        assert stored[0].keywords == []
        assert "PREVIOUS CONTEXT" not in llm.prompts[1]

    def test_unparseable_batch_reuses_previous_summary(self, store, limiter, kb_paper, make_gateway, sleeps):
        gateway, _ = make_gateway([
            batch_response(["S0", "S1"], narrative="So far so good."),
            "this is not json",
            HIERARCHY,
            "Refined.",
        ])

        result = make_pipeline(gateway, limiter, store, sleeps).analyze(kb_paper.id, CHUNKS, "free")

        assert result.per_chunk_summaries[2] == "So far so good."
        assert result.failed_batches == [1]

    def test_missing_chunk_entry_degrades_only_that_chunk(self, store, limiter, kb_paper, make_gateway, sleeps):
        gateway, _ = make_gateway([
            batch_response(["S0"]),
            batch_response(["S2"]),
            HIERARCHY,
            "Refined.",
        ])

        result = make_pipeline(gateway, limiter, store, sleeps).analyze(kb_paper.id, CHUNKS, "free")

        assert result.per_chunk_summaries == ["S0", FAILED_SUMMARY, "S2"]
        assert result.failed_batches == []

    def test_hierarchy_and_refine_fallbacks(self, store, limiter, kb_paper, make_gateway, sleeps):
        gateway, _ = make_gateway([
            batch_response(["S0", "S1"], topics={0: ["Attention"], 1: ["Attention", "Recurrence"]}),
            batch_response(["S2"], topics={0: ["Evaluation"]}),
            '{"keywords": ["x"]}',
            RuntimeError("refine failed"),
        ])

        result = make_pipeline(gateway, limiter, store, sleeps).analyze(kb_paper.id, CHUNKS, "free")

        hs = result.hierarchical_summary
        assert hs.overview == "S0\n\nS1\n\nS2"
        assert [(s.title, s.summary) for s in hs.sections] == [
            ("Attention", "S0"), ("Recurrence", "S1"), ("Evaluation", "S2"),
        ]
        assert hs.keywords == result.keywords
        assert result.aggregated_summary == hs.overview

    def test_short_section_list_is_filled_from_topics(self, store, limiter, kb_paper, make_gateway, sleeps):
        sparse = json.dumps({
            "overview": "A paper about attention.",
            "sections": [{"title": "attention", "summary": "Why."}],
        })
        gateway, _ = make_gateway([
            batch_response(["S0", "S1"], topics={0: ["Attention"], 1: ["Attention", "Recurrence"]}),
            batch_response(["S2"], topics={0: ["Evaluation"]}),
            sparse,
            "R.",
        ])

        result = make_pipeline(gateway, limiter, store, sleeps).analyze(kb_paper.id, CHUNKS, "free")

        hs = result.hierarchical_summary
        assert hs.overview == "A paper about attention."
        assert [(s.title, s.summary) for s in hs.sections] == [
            ("attention", "Why."), ("Recurrence", "S1"), ("Evaluation", "S2"),
        ]

    def test_everything_fails(self, store, limiter, kb_paper, make_gateway, sleeps):
        gateway, _ = make_gateway([RuntimeError("down")], repeat_last=True)

        result = make_pipeline(gateway, limiter, store, sleeps).analyze(kb_paper.id, CHUNKS, "free")

        assert result.failed_batches == [0, 1]
        assert result.keywords == []
        assert result.hierarchical_summary.overview == EMPTY_OVERVIEW
        assert result.aggregated_summary == EMPTY_OVERVIEW

    def test_each_call_takes_a_rate_limit_slot(self, store, limiter, kb_paper, make_gateway, sleeps):
        gateway, _ = make_gateway([
            batch_response(["S0", "S1"]), batch_response(["S2"]), HIERARCHY, "R.",
        ])

        make_pipeline(gateway, limiter, store, sleeps).analyze(kb_paper.id, CHUNKS, "pro")

        assert limiter.snapshot("pro").request_count == 4
        assert sleeps == [1.0]


class TestHelpers:
    """Keyword aggregation and fallback summary construction."""

    def test_dedupe_keywords_case_insensitive(self):
        assert dedupe_keywords(["RNN", "rnn", " Attention ", "attention", ""]) == ["RNN", "Attention"]

    def test_dedupe_keywords_limit(self):
        assert len(dedupe_keywords([f"k{i}" for i in range(30)], 20)) == 20

    def test_truncate(self):
        assert truncate("abc", 5) == "abc"
        assert truncate("abcdef", 3) == "abc..."

    def test_fallback_overview_is_truncated(self):
        analyses = [ChunkAnalysis(summary="x" * 800), ChunkAnalysis(summary="y" * 800)]

        hs = AnalysisPipeline.fallback_hierarchy(analyses, [])

        assert len(hs.overview) == 1003
        assert hs.overview.endswith("...")

    def test_fallback_sections_capped_at_seven(self):
        analyses = [ChunkAnalysis(summary=f"s{i}", topics=[f"t{i}"]) for i in range(10)]

        hs = AnalysisPipeline.fallback_hierarchy(analyses, ["k"])

        assert len(hs.sections) == 7
        assert hs.keywords == ["k"]
