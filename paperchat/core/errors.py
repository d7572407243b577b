"""Exception types shared across the analysis pipeline and the chat agent."""

from __future__ import annotations


class PaperChatError(Exception):
    """Base class for all Paper Chat errors."""


class ExtractionFailure(PaperChatError):
    """Source text is missing or unreadable; no chunks are created."""


class GenerationFailure(PaperChatError):
    """Both the primary and the fallback model call failed."""

    def __init__(self, message: str, errors: list[Exception] | None = None):
        super().__init__(message)
        self.errors = errors or []


class ParseFailure(PaperChatError):
    """A salvage stage could not recover an object from model output."""


class PaperNotFound(PaperChatError):
    """No paper with that id is owned by the requesting user."""


class ToolInvocationError(PaperChatError):
    """The model asked for a function outside the allow-list, or with bad arguments."""
