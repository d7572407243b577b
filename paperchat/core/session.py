"""
Agent session — per-question conversation state for the tool-using loop.

A session stores:
- the message history the model sees on every turn
- which functions were used, and each call made
- API-call and turn counters for the loop's budgets

Sessions are never persisted; the chat ledger in the document store is the
durable record of a conversation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from paperchat.core.models import new_id

MAX_RENDERED_MESSAGE_CHARS = 6000


class AgentState(str, Enum):
    PRIMING = "priming"
    RUNNING = "running"
    COMPLETED = "completed"
    FORCED = "forced"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentState.COMPLETED, AgentState.FORCED, AgentState.EXHAUSTED)


@dataclass
class SessionMessage:
    role: str                  # user | assistant | tool
    content: str


@dataclass
class RecordedCall:
    name: str
    args: dict[str, Any]
    cached: bool = False


@dataclass
class AgentSession:
    """State of one question's turn loop."""

    paper_id: str
    user_id: str
    question: str
    message_history: list[SessionMessage] = field(default_factory=list)
    used_functions: set[str] = field(default_factory=set)
    api_calls_made: int = 0
    turn: int = 0
    tool_calls: list[RecordedCall] = field(default_factory=list)
    state: AgentState = AgentState.PRIMING
    partial_answer: Optional[str] = None
    id: str = field(default_factory=new_id)

    # ── history ─────────────────────────────────────────────────────────── #

    def add(self, role: str, content: str) -> None:
        self.message_history.append(SessionMessage(role=role, content=content))

    def record_call(self, name: str, args: dict[str, Any], cached: bool = False) -> None:
        self.tool_calls.append(RecordedCall(name=name, args=dict(args), cached=cached))
        self.used_functions.add(name)
        self.api_calls_made += 1

    def render(self) -> str:
        """
        Flatten the history into a single prompt.  Long messages (large tool
        results, mostly) are truncated.
        """
        lines = []
        for m in self.message_history:
            content = m.content
            if len(content) > MAX_RENDERED_MESSAGE_CHARS:
                content = content[:MAX_RENDERED_MESSAGE_CHARS] + "…"
            lines.append(f"[{m.role.upper()}]\n{content}\n")
        return "\n".join(lines)

    def calls_left(self, max_api_calls: int) -> int:
        return max(0, max_api_calls - self.api_calls_made)

    def describe(self) -> dict:
        """Summary for the assistant message metadata."""
        return {
            "status": self.state.value,
            "turns": self.turn,
            "api_calls_made": self.api_calls_made,
            "tool_calls": [
                {"name": c.name, "args": c.args, "cached": c.cached} for c in self.tool_calls
            ],
            "used_functions": sorted(self.used_functions),
        }
