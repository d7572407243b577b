"""
Paper chat agent — a bounded multi-turn loop in which the model may call
retrieval tools before it answers.

Flow per question:
  1. priming: paper details + a search on the question seed the first prompt
  2. turns: the model replies with a function call, a final answer, or a
     plain conversational answer; tool results and steering instructions are
     appended to the history and the loop continues
  3. the loop ends COMPLETED, FORCED (call ceiling hit with a partial answer
     in hand) or EXHAUSTED (turn ceiling hit)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from paperchat.agent import prompts
from paperchat.agent.tools import ToolBox, ToolCall, ToolName, parse_tool_call
from paperchat.core.config import MAX_API_CALLS, MAX_TURNS
from paperchat.core.errors import GenerationFailure, ToolInvocationError
from paperchat.core.json_repair import is_fallback
from paperchat.core.llm import ModelGateway
from paperchat.core.session import AgentSession, AgentState
from paperchat.storage.cache import CacheService

logger = logging.getLogger(__name__)


def format_answer(answer: Any) -> str:
    """Render a structured answer as markdown; strings pass through."""
    if isinstance(answer, str):
        return answer.strip()
    if isinstance(answer, list):
        return "\n".join(f"- {item}" for item in answer)
    if not isinstance(answer, dict):
        return str(answer)

    parts = []
    if answer.get("mainIdea"):
        parts.append(f"## Main Idea\n{answer['mainIdea']}")
    evidence = answer.get("evidence")
    if isinstance(evidence, str) and evidence.strip():
        evidence = [evidence]
    if isinstance(evidence, list) and evidence:
        parts.append("## Supporting Evidence\n" + "\n".join(f"- {e}" for e in evidence))
    if answer.get("analysis"):
        parts.append(f"## Critical Analysis\n{answer['analysis']}")
    if not parts:
        return json.dumps(answer, indent=2, ensure_ascii=False)
    return "\n\n".join(parts)


@dataclass
class AgentResult:
    answer: str
    status: AgentState
    turns: int
    tool_calls: list[dict] = field(default_factory=list)
    api_calls_made: int = 0
    used_functions: list[str] = field(default_factory=list)

    @classmethod
    def from_session(cls, session: AgentSession, answer: str) -> "AgentResult":
        info = session.describe()
        return cls(
            answer=answer,
            status=session.state,
            turns=session.turn,
            tool_calls=info["tool_calls"],
            api_calls_made=session.api_calls_made,
            used_functions=info["used_functions"],
        )


class PaperChatAgent:
    """Answers questions about one paper by letting the model call tools."""

    def __init__(
        self,
        gateway: ModelGateway,
        tools: ToolBox,
        cache: CacheService,
        max_turns: int = MAX_TURNS,
        max_api_calls: int = MAX_API_CALLS,
    ):
        self.gateway = gateway
        self.tools = tools
        self.cache = cache
        self.max_turns = max_turns
        self.max_api_calls = max_api_calls
        self.system_prompt = prompts.agent_system_prompt(max_api_calls)

    def answer(self, paper_id: str, user_id: str, question: str) -> AgentResult:
        session = AgentSession(paper_id=paper_id, user_id=user_id, question=question)
        try:
            self._prime(session)
            session.state = AgentState.RUNNING

            final: Optional[str] = None
            while session.turn < self.max_turns:
                session.turn += 1
                try:
                    response = self.gateway.generate_structured(
                        session.render(), system=self.system_prompt
                    )
                except GenerationFailure as exc:
                    logger.error("Paper %s turn %d: %s", paper_id, session.turn, exc)
                    session.add("user", prompts.GENERATION_ERROR_MESSAGE)
                    continue

                final = self._step(session, response)
                if session.state.is_terminal:
                    break
            else:
                session.state = AgentState.EXHAUSTED
                final = prompts.EXHAUSTED_ANSWER
                logger.warning(
                    "Paper %s: no answer after %d turns (%d calls)",
                    paper_id, session.turn, session.api_calls_made,
                )

            logger.info(
                "Paper %s answered: %s in %d turn(s), %d call(s)",
                paper_id, session.state.value, session.turn, session.api_calls_made,
            )
            return AgentResult.from_session(session, final or prompts.EXHAUSTED_ANSWER)
        finally:
            self.cache.end_session(user_id, paper_id, session.id)

    # ── priming ─────────────────────────────────────────────────────────── #

    def _prime(self, session: AgentSession) -> None:
        details = self.tools.get_paper_details(session.paper_id, session.user_id)
        excerpts = self.tools.prime_search(session.paper_id, session.user_id, session.question)
        session.add("user", prompts.priming_message(session.question, details, excerpts))

    # ── one turn ────────────────────────────────────────────────────────── #

    def _step(self, session: AgentSession, response: dict) -> Optional[str]:
        if not response or is_fallback(response):
            logger.warning(
                "Paper %s turn %d: unusable response %r",
                session.paper_id, session.turn, response.get("raw_preview", "") if response else "",
            )
            session.add("user", prompts.RESPOND_IN_JSON_MESSAGE)
            return None

        session.add("assistant", json.dumps(response, ensure_ascii=False))
        function_call = response.get("functionCall")
        answer = response.get("answer")

        if answer and not function_call and "reasoning" not in response:
            session.state = AgentState.COMPLETED
            return answer if isinstance(answer, str) else format_answer(answer)

        if answer:
            session.partial_answer = format_answer(answer)

        if function_call:
            return self._handle_function_call(session, function_call)

        if answer:
            session.state = AgentState.COMPLETED
            return session.partial_answer

        session.add("user", prompts.RESPOND_IN_JSON_MESSAGE)
        return None

    def _handle_function_call(self, session: AgentSession, function_call: Any) -> Optional[str]:
        if not isinstance(function_call, dict):
            session.add("user", prompts.RESPOND_IN_JSON_MESSAGE)
            return None

        name = function_call.get("name")
        try:
            call = parse_tool_call(name, function_call.get("args"))
        except ToolInvocationError as exc:
            logger.warning("Paper %s: %s", session.paper_id, exc)
            session.add("user", prompts.unknown_function_message(str(name), ToolName.names()))
            return None

        if session.api_calls_made >= self.max_api_calls:
            if session.partial_answer:
                session.state = AgentState.FORCED
                return session.partial_answer
            session.add("user", prompts.CALL_LIMIT_MESSAGE)
            return None

        try:
            result, cached = self._run_tool(session, call)
        except ToolInvocationError as exc:
            logger.warning("Paper %s: bad call %s: %s", session.paper_id, call.key, exc)
            session.add("user", f"{exc}. Fix the arguments or give your final answer in JSON.")
            return None

        session.record_call(call.name.value, call.args, cached=cached)
        session.add(
            "tool",
            prompts.tool_result_message(
                call.name.value, result, session.calls_left(self.max_api_calls)
            ),
        )
        return None

    def _run_tool(self, session: AgentSession, call: ToolCall) -> tuple[Any, bool]:
        """Execute *call*, serving repeats within the question from the session cache."""
        cached = self.cache.get_session_result(
            session.user_id, session.paper_id, call.key, session_id=session.id
        )
        if cached is not None:
            logger.debug("Session cache hit for %s", call.key)
            return cached, True
        result = self.tools.execute(call, session.paper_id, session.user_id)
        self.cache.set_session_result(
            session.user_id, session.paper_id, call.key, result, session_id=session.id
        )
        return result, False
