"""
Prompt text for the paper-chat agent.

The model must answer in one of three JSON shapes:

  general conversation   {"answer": "..."}
  function call          {"functionCall": {"name": ..., "args": {...}}, "reasoning": "..."}
  final answer           {"reasoning": "...",
                          "answer": {"mainIdea": ..., "evidence": [...], "analysis": ...}}
"""

from __future__ import annotations

import json
from typing import Any, Iterable

EXHAUSTED_ANSWER = (
    "I wasn't able to find a complete answer to your question. Could you try "
    "rephrasing it or asking something more specific about the paper?"
)

TOOL_DESCRIPTIONS = {
    "getPaperDetails": (
        "Title, authors, abstract, keywords, summary and hierarchical summary of the paper. "
        "args: {}"
    ),
    "searchKnowledgeBase": (
        "Search the paper's analysed chunks. "
        'args: {"query": "search terms", "maxResults": 5}'
    ),
    "getChatHistory": (
        "Recent questions and answers in this conversation. "
        'args: {"limit": 10}'
    ),
}


def agent_system_prompt(max_api_calls: int) -> str:
    tools = "\n".join(f"  - {name}: {desc}" for name, desc in TOOL_DESCRIPTIONS.items())
    return (
        "You are a research assistant helping a user understand one specific research paper.\n"
        "You may call these functions to look things up:\n"
        f"{tools}\n\n"
        f"You can make at most {max_api_calls} function calls per question. "
        "Always respond with a single JSON object and nothing else, in one of these forms:\n\n"
        "1. To call a function:\n"
        '{"functionCall": {"name": "searchKnowledgeBase", "args": {"query": "..."}}, '
        '"reasoning": "why this call helps"}\n\n'
        "2. To answer a question about the paper:\n"
        '{"reasoning": "how the evidence supports the answer", '
        '"answer": {"mainIdea": "direct answer", '
        '"evidence": ["quote or fact from the paper", "..."], '
        '"analysis": "critical assessment, limitations, implications"}}\n\n'
        "3. For greetings or small talk that needs no paper content:\n"
        '{"answer": "your reply"}\n\n'
        "Ground every claim in the paper. If the paper does not contain the answer, say so."
    )


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def priming_message(question: str, details: dict, excerpts: list[dict]) -> str:
    return (
        f"PAPER DETAILS:\n{_dump(details)}\n\n"
        f"RELEVANT EXCERPTS:\n{_dump(excerpts) if excerpts else 'none found'}\n\n"
        f"USER QUESTION: {question}"
    )


def paper_details_note(details: dict) -> str:
    """Context message persisted on the first exchange about a paper."""
    return f"PAPER DETAILS:\n{_dump(details)}"


def tool_result_message(name: str, result: Any, calls_left: int) -> str:
    tail = (
        f"You have {calls_left} function call(s) left. Call another function if you still "
        "need information, otherwise give your final answer in JSON."
        if calls_left > 0
        else "You have no function calls left. Give your final answer in JSON now."
    )
    return f"FUNCTION RESULT ({name}):\n{_dump(result)}\n\n{tail}"


def unknown_function_message(name: str, allowed: Iterable[str]) -> str:
    return (
        f"There is no function named {name!r}. Available functions: "
        f"{', '.join(allowed)}. Call one of them or give your final answer in JSON."
    )


CALL_LIMIT_MESSAGE = (
    "You have used all of your function calls for this question. Do not request any "
    "more functions. Answer now with the information you already have, in JSON."
)

RESPOND_IN_JSON_MESSAGE = (
    "Your last response was not in the required format. Respond with a single JSON "
    "object: either a functionCall or a final answer."
)

GENERATION_ERROR_MESSAGE = (
    "The previous attempt to respond failed. Please answer the question in the "
    "required JSON format."
)
