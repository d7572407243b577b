import pytest

from paperchat.agent.chat_agent import PaperChatAgent, format_answer
from paperchat.agent.prompts import EXHAUSTED_ANSWER
from paperchat.agent.tools import ToolBox
from paperchat.core.errors import PaperNotFound
from paperchat.core.session import AgentState

SEARCH_CALL = {
    "functionCall": {"name": "searchKnowledgeBase", "args": {"query": "BLEU score"}},
    "reasoning": "Need the evaluation numbers.",
}

FINAL_ANSWER = {
    "reasoning": "The excerpt states the score.",
    "answer": {
        "mainIdea": "The model scores 28.4 BLEU.",
        "evidence": ["BLEU score of 28.4 on English-to-German"],
        "analysis": "Strong for its time.",
    },
}


@pytest.fixture
def make_agent(store, cache, make_gateway):
    def _make(script, repeat_last=False, **kwargs):
        gateway, llm = make_gateway(script, repeat_last=repeat_last)
        agent = PaperChatAgent(gateway, ToolBox(store, cache), cache, **kwargs)
        return agent, llm

    return _make


class TestAgentLoop:
    """Turn loop outcomes."""

    def test_one_tool_call_then_answer(self, make_agent, analysed_paper):
        agent, llm = make_agent([SEARCH_CALL, FINAL_ANSWER])

        result = agent.answer(analysed_paper.id, "alice", "What BLEU score does it reach?")

        assert result.status is AgentState.COMPLETED
        assert result.turns == 2
        assert result.api_calls_made == 1
        assert result.tool_calls[0]["name"] == "searchKnowledgeBase"
        assert result.used_functions == ["searchKnowledgeBase"]
        assert result.answer.startswith("## Main Idea\nThe model scores 28.4 BLEU.")
        assert "## Supporting Evidence\n- BLEU score" in result.answer
        assert "## Critical Analysis" in result.answer
        assert "FUNCTION RESULT (searchKnowledgeBase)" in llm.prompts[1]

    def test_paper_details_call_then_answer(self, make_agent, analysed_paper, cache):
        details_call = {
            "functionCall": {"name": "getPaperDetails", "args": {}},
            "reasoning": "Check the paper's own summary first.",
        }
        agent, llm = make_agent([details_call, FINAL_ANSWER])

        result = agent.answer(analysed_paper.id, "alice", "What is the paper about?")

        assert result.status is AgentState.COMPLETED
        assert result.turns == 2
        assert result.api_calls_made == 1
        assert result.used_functions == ["getPaperDetails"]
        assert "FUNCTION RESULT (getPaperDetails)" in llm.prompts[1]
        assert "Attention Is All You Need" in llm.prompts[1]
        assert cache.stats()["paper_context"] == {"hits": 1, "misses": 1, "size": 1}

    def test_answer_leaves_other_sessions_alone(self, make_agent, analysed_paper, cache):
        cache.set_session_result("alice", analysed_paper.id, "getChatHistory()", ["old"], session_id="other")
        agent, _ = make_agent([SEARCH_CALL, FINAL_ANSWER])

        agent.answer(analysed_paper.id, "alice", "What BLEU score?")

        assert cache.get_session_result(
            "alice", analysed_paper.id, "getChatHistory()", session_id="other"
        ) == ["old"]

    def test_general_conversation(self, make_agent, analysed_paper):
        agent, _ = make_agent([{"answer": "Hello! Ask me anything about the paper."}])

        result = agent.answer(analysed_paper.id, "alice", "hi")

        assert result.status is AgentState.COMPLETED
        assert result.answer == "Hello! Ask me anything about the paper."
        assert result.turns == 1
        assert result.api_calls_made == 0

    def test_max_turns_exhausted(self, make_agent, analysed_paper):
        agent, llm = make_agent([SEARCH_CALL], repeat_last=True)

        result = agent.answer(analysed_paper.id, "alice", "What BLEU score?")

        assert result.status is AgentState.EXHAUSTED
        assert result.answer == EXHAUSTED_ANSWER
        assert result.turns == 5
        assert result.api_calls_made <= 3
        assert len(llm.calls) == 5

    def test_unknown_function_gets_steering(self, make_agent, analysed_paper):
        bogus = {"functionCall": {"name": "deleteEverything", "args": {}}, "reasoning": "x"}
        agent, llm = make_agent([bogus, FINAL_ANSWER])

        result = agent.answer(analysed_paper.id, "alice", "Anything?")

        assert result.status is AgentState.COMPLETED
        assert result.api_calls_made == 0
        assert "no function named 'deleteEverything'" in llm.prompts[1]
        assert "searchKnowledgeBase" in llm.prompts[1]

    def test_call_ceiling_with_partial_answer_forces(self, make_agent, analysed_paper):
        greedy = dict(SEARCH_CALL, answer={"mainIdea": "Partial idea."})
        agent, _ = make_agent([greedy], repeat_last=True)

        result = agent.answer(analysed_paper.id, "alice", "What BLEU score?")

        assert result.status is AgentState.FORCED
        assert result.api_calls_made == 3
        assert result.turns == 4
        assert result.answer == "## Main Idea\nPartial idea."

    def test_duplicate_call_served_from_session_cache(self, make_agent, analysed_paper, cache):
        agent, _ = make_agent([SEARCH_CALL, SEARCH_CALL, FINAL_ANSWER])

        result = agent.answer(analysed_paper.id, "alice", "What BLEU score?")

        assert [c["cached"] for c in result.tool_calls] == [False, True]
        assert cache.stats()["session"]["size"] == 0

    def test_generation_failure_consumes_a_turn(self, make_agent, analysed_paper):
        agent, _ = make_agent([RuntimeError("503"), FINAL_ANSWER])

        result = agent.answer(analysed_paper.id, "alice", "What BLEU score?")

        assert result.status is AgentState.COMPLETED
        assert result.turns == 2

    def test_non_json_reply_gets_steering(self, make_agent, analysed_paper):
        agent, llm = make_agent(["I think it is good.", FINAL_ANSWER])

        result = agent.answer(analysed_paper.id, "alice", "Is it good?")

        assert result.status is AgentState.COMPLETED
        assert "not in the required format" in llm.prompts[1]

    def test_priming_does_not_count(self, make_agent, analysed_paper):
        agent, llm = make_agent([FINAL_ANSWER])

        result = agent.answer(analysed_paper.id, "alice", "BLEU?")

        assert result.api_calls_made == 0
        assert "PAPER DETAILS" in llm.prompts[0]
        assert "RELEVANT EXCERPTS" in llm.prompts[0]

    def test_other_users_paper_is_not_found(self, make_agent, analysed_paper):
        agent, _ = make_agent([FINAL_ANSWER])

        with pytest.raises(PaperNotFound):
            agent.answer(analysed_paper.id, "mallory", "What is it about?")


class TestFormatAnswer:
    """Rendering of structured answers."""

    def test_string_passthrough(self):
        assert format_answer("  plain  ") == "plain"

    def test_full_structure(self):
        text = format_answer({"mainIdea": "M", "evidence": ["e1", "e2"], "analysis": "A"})

        assert text == "## Main Idea\nM\n\n## Supporting Evidence\n- e1\n- e2\n\n## Critical Analysis\nA"

    def test_evidence_as_string(self):
        assert "- only one" in format_answer({"mainIdea": "M", "evidence": "only one"})

    def test_unknown_dict_is_dumped(self):
        assert '"foo": 1' in format_answer({"foo": 1})
