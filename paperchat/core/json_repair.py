"""
Recover a JSON object from model output that is only mostly JSON.

Gemini wraps answers in code fences, stops mid-string when it runs out of
tokens, and occasionally surrounds the object with prose.  Each stage below
is a pure ``str -> dict`` function that raises ``ParseFailure``; the stages
run in order and the last one cannot fail.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

from paperchat.core.config import RAW_PREVIEW_CHARS
from paperchat.core.errors import ParseFailure

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```[a-zA-Z]*\s*(.*?)\s*```", re.DOTALL)
_OPEN_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_SPAN_RE = re.compile(r"\{.*\}", re.DOTALL)
_PAIR_RE = re.compile(
    r'"(?P<key>[^"\\]+)"\s*:\s*'
    r'(?P<value>"(?:[^"\\]|\\.)*"'
    r"|-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?"
    r"|true|false|null"
    r"|\[[^\[\]]*\])",
    re.DOTALL,
)
_QUOTED_RE = re.compile(r'"((?:[^"\\]|\\.)*)"')

MAX_TRUNCATION_ATTEMPTS = 5


def _as_object(value: Any) -> dict:
    if isinstance(value, dict):
        return value
    if isinstance(value, list):
        return {"items": value}
    raise ParseFailure(f"expected a JSON object, got {type(value).__name__}")


def _loads(text: str) -> dict:
    try:
        return _as_object(json.loads(text, strict=False))
    except (ValueError, RecursionError) as exc:   # digit limit, deep nesting
        raise ParseFailure(str(exc)) from exc


def clean_response(text: str) -> str:
    """Strip code fences and control characters."""
    text = (text or "").strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1)
    else:
        text = _OPEN_FENCE_RE.sub("", text)   # opening fence of a truncated reply
    return _CONTROL_RE.sub("", text).strip()


# ── Stage 1 ─────────────────────────────────────────────────────────────────── #

def strip_and_parse(text: str) -> dict:
    cleaned = clean_response(text)
    if not cleaned:
        raise ParseFailure("empty response")
    return _loads(cleaned)


# ── Stage 2 ─────────────────────────────────────────────────────────────────── #

def close_structure(text: str) -> str:
    """Close an unterminated string and any unbalanced braces/brackets."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if not stack or stack[-1] != ch:
                raise ParseFailure(f"unbalanced closing {ch!r}")
            stack.pop()

    repaired = text
    if in_string:
        if escaped:
            repaired = repaired[:-1]
        repaired += '"'
    repaired = repaired.rstrip()
    if repaired.endswith(","):
        repaired = repaired[:-1]
    if repaired.endswith(":"):
        repaired += " null"
    repaired += "".join(reversed(stack))
    return _TRAILING_COMMA_RE.sub(r"\1", repaired)


def close_and_parse(text: str) -> dict:
    cleaned = clean_response(text)
    start = min((i for i in (cleaned.find("{"), cleaned.find("[")) if i != -1), default=-1)
    if start == -1:
        raise ParseFailure("no opening brace or bracket")
    body = cleaned[start:]

    last_error: Exception = ParseFailure("nothing to repair")
    for _ in range(MAX_TRUNCATION_ATTEMPTS):
        try:
            return _loads(close_structure(body))
        except ParseFailure as exc:
            last_error = exc
        # Drop the trailing, half-written member and try again.
        cut = body.rfind(",")
        if cut <= 0:
            break
        body = body[:cut]
    raise ParseFailure(f"could not close structure: {last_error}")


# ── Stage 3 ─────────────────────────────────────────────────────────────────── #

def extract_span_and_parse(text: str) -> dict:
    match = _SPAN_RE.search(clean_response(text))
    if not match:
        raise ParseFailure("no {...} span found")
    return _loads(match.group(0))


# ── Stage 4 ─────────────────────────────────────────────────────────────────── #

def _pair_value(raw: str) -> Any:
    try:
        return json.loads(raw, strict=False)
    except (ValueError, RecursionError):
        if raw.startswith("["):
            return _QUOTED_RE.findall(raw)
        return raw.strip('"')


def extract_pairs(text: str) -> dict:
    """Best-effort object from individual ``"key": value`` pairs."""
    result: dict = {}
    for match in _PAIR_RE.finditer(clean_response(text)):
        key = match.group("key")
        if key not in result:
            result[key] = _pair_value(match.group("value"))
    if not result:
        raise ParseFailure("no key/value pairs found")
    return result


# ── Stage 5 ─────────────────────────────────────────────────────────────────── #

def fallback_object(text: str, error: str) -> dict:
    return {
        "_fallback": True,
        "parse_error": error,
        "raw_preview": (text or "")[:RAW_PREVIEW_CHARS],
    }


SALVAGE_STAGES: list[tuple[str, Callable[[str], dict]]] = [
    ("strip", strip_and_parse),
    ("close", close_and_parse),
    ("span", extract_span_and_parse),
    ("pairs", extract_pairs),
]


def is_fallback(obj: dict) -> bool:
    return bool(obj.get("_fallback"))


def parse_model_json(text: str) -> dict:
    """Run the salvage chain; always returns a dict, never raises."""
    text = text if isinstance(text, str) else ""
    errors: list[str] = []
    for name, stage in SALVAGE_STAGES:
        try:
            result = stage(text)
        except ParseFailure as exc:
            errors.append(f"{name}: {exc}")
            continue
        if name != "strip":
            logger.debug("Recovered model JSON via %s stage", name)
        return result

    logger.warning("Model output is not JSON; returning fallback object (%s)", "; ".join(errors))
    return fallback_object(text, "; ".join(errors))
