"""
Payload recovery for insight-detection agent output.

The agent is asked for JSON but answers in whatever shape the model feels like:
bare JSON, JSON inside a markdown fence, JSON wrapped in prose, or nothing
useful in the text but a parsable provider response object. Everything in this
module is a pure function over strings and plain dicts. Nothing raises on bad
input; exhaustion yields None.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_LEADING_FENCE_RE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_TRAILING_FENCE_RE = re.compile(r"\s*```$")
_GREEDY_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

_COLLECTION_KEYS = ("insights", "items")
_SINGLE_INSIGHT_KEYS = ("content", "summary")
_FOREIGN_KEYS = ("keywords", "concepts", "themes")


class PayloadKind(str, Enum):
    """What a recovered payload looks like."""

    ARRAY = "array"
    INSIGHTS_OBJECT = "insights_object"
    SINGLE_INSIGHT = "single_insight"
    FOREIGN = "foreign"  # Keyword/theme extraction instead of insights
    UNRECOVERABLE = "unrecoverable"


def safe_json_parse(value: str) -> Optional[Any]:
    try:
        return json.loads(value)
    except (TypeError, ValueError, RecursionError):
        return None


def find_matching_bracket(value: str, start: int, opener: str, closer: str) -> int:
    """
    Return the index of the bracket closing the one at ``start``, or -1.

    Quote-aware: brackets inside single- or double-quoted strings are ignored
    and backslash escapes inside strings are honoured.
    """
    depth = 0
    in_string: Optional[str] = None
    escaped = False

    for index in range(start, len(value)):
        char = value[index]

        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == in_string:
                in_string = None
            continue

        if char in ('"', "'"):
            in_string = char
            continue

        if char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return index

    return -1


def extract_bracketed_json(value: str) -> Optional[str]:
    """Balanced span starting at the earliest ``[`` or ``{`` that closes, else None."""
    candidates: List[Tuple[int, str, str]] = []
    for opener, closer in (("[", "]"), ("{", "}")):
        index = value.find(opener)
        if index != -1:
            candidates.append((index, opener, closer))

    for start, opener, closer in sorted(candidates):
        end = find_matching_bracket(value, start, opener, closer)
        if end != -1:
            return value[start:end + 1].strip()

    return None


def _append_unique(attempts: List[str], candidate: Optional[str]) -> None:
    if candidate and candidate not in attempts:
        attempts.append(candidate)


def recover_structure(text: Optional[str]) -> Optional[Any]:
    """
    Recover a JSON value from free text.

    Candidates are tried in order: the trimmed text, the text with a leading
    fence stripped, the body of the first fenced block (and the bracketed span
    inside it), the first bracketed span of the whole text, and the greedy
    ``{...}`` match. The first candidate that parses wins.
    """
    if not isinstance(text, str):
        return None

    trimmed = text.strip()
    if not trimmed:
        return None

    attempts: List[str] = [trimmed]

    if trimmed.startswith("```"):
        stripped = _TRAILING_FENCE_RE.sub("", _LEADING_FENCE_RE.sub("", trimmed))
        _append_unique(attempts, stripped.strip())

    fenced = _FENCED_BLOCK_RE.search(trimmed)
    if fenced and fenced.group(1):
        body = fenced.group(1).strip()
        _append_unique(attempts, body)
        _append_unique(attempts, extract_bracketed_json(body))

    _append_unique(attempts, extract_bracketed_json(trimmed))

    greedy = _GREEDY_OBJECT_RE.search(trimmed)
    if greedy:
        _append_unique(attempts, greedy.group(0))

    for candidate in attempts:
        parsed = safe_json_parse(candidate)
        if parsed is not None:
            return parsed

    return None


def sanitize_json_string(raw: str) -> str:
    """Strip code fences and surrounding prose, keeping the JSON-looking part."""
    trimmed = raw.strip()

    fenced = _FENCED_BLOCK_RE.search(trimmed)
    if fenced and fenced.group(1) is not None:
        body = fenced.group(1).strip()
        return extract_bracketed_json(body) or body

    bracketed = extract_bracketed_json(trimmed)
    if bracketed:
        return bracketed

    if trimmed.startswith("```"):
        trimmed = _LEADING_FENCE_RE.sub("", trimmed)
    if trimmed.endswith("```"):
        trimmed = trimmed[:-3]

    return trimmed.strip()


def _block_text(block: Any) -> str:
    if not block:
        return ""
    if isinstance(block, str):
        return block
    if not isinstance(block, dict):
        return ""
    if isinstance(block.get("text"), str):
        return block["text"]
    inner = block.get("content")
    if isinstance(inner, list):
        parts = []
        for sub in inner:
            if isinstance(sub, str):
                parts.append(sub)
            elif isinstance(sub, dict) and isinstance(sub.get("text"), str):
                parts.append(sub["text"])
        return "".join(parts)
    return ""


def extract_text_from_raw_response(raw: Any) -> Optional[str]:
    """
    Pull human-readable text out of a provider response object.

    Known shapes:
    - content blocks: ``{"content": [{"type": "text", "text": "..."}]}``, where a
      block may nest its own ``content`` list of sub-blocks
    - flat string content: ``{"content": "..."}``
    - choices: ``{"choices": [{"message": {"content": "..."}}]}``
    """
    if not raw or not isinstance(raw, dict):
        return None

    content = raw.get("content")

    if isinstance(content, list):
        text = "".join(_block_text(block) for block in content).strip()
        if text:
            return text

    if isinstance(content, str) and content.strip():
        return content.strip()

    choices = raw.get("choices")
    if isinstance(choices, list):
        for choice in choices:
            message = choice.get("message") if isinstance(choice, dict) else None
            if isinstance(message, dict):
                message_content = message.get("content")
                if isinstance(message_content, str) and message_content.strip():
                    return message_content.strip()

    return None


def _has_any(obj: Dict[str, Any], keys: Tuple[str, ...]) -> bool:
    return any(key in obj for key in keys)


def _accept(parsed: Any) -> Optional[Any]:
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        if _has_any(parsed, _COLLECTION_KEYS):
            return parsed
        if _has_any(parsed, _SINGLE_INSIGHT_KEYS):
            return {"insights": [parsed]}
    return None


def _add_text_candidates(candidates: List[str], text: Optional[str]) -> None:
    if not isinstance(text, str):
        return
    for candidate in (text, sanitize_json_string(text)):
        candidate = candidate.strip()
        if candidate and candidate not in candidates:
            candidates.append(candidate)
    greedy = _GREEDY_OBJECT_RE.search(text)
    if greedy:
        candidate = greedy.group(0).strip()
        if candidate and candidate not in candidates:
            candidates.append(candidate)


def resolve_payload_with_kind(agent_result: Any) -> Tuple[Optional[Any], PayloadKind]:
    """
    Resolve the insight payload from an agent result and report its shape.

    ``agent_result`` is anything exposing ``content`` (text) and ``raw``
    (provider response dict) attributes. The payload is a list, an object
    carrying ``insights``/``items``, or None. When nothing qualifies the kind
    tells apart a foreign structure (keyword/theme extraction) from text that
    could not be recovered at all.
    """
    content = getattr(agent_result, "content", None)
    raw = getattr(agent_result, "raw", None)

    candidates: List[str] = []
    _add_text_candidates(candidates, content)
    _add_text_candidates(candidates, extract_text_from_raw_response(raw))

    saw_foreign = False
    for candidate in candidates:
        parsed = recover_structure(candidate)
        accepted = _accept(parsed)
        if accepted is not None:
            return accepted, classify_payload(parsed)
        if classify_payload(parsed) == PayloadKind.FOREIGN:
            saw_foreign = True

    if isinstance(raw, dict):
        if _has_any(raw, _COLLECTION_KEYS):
            return raw, PayloadKind.INSIGHTS_OBJECT
        nested = raw.get("content")
        if isinstance(nested, dict) and _has_any(nested, _COLLECTION_KEYS):
            return nested, PayloadKind.INSIGHTS_OBJECT
        if _has_any(raw, _FOREIGN_KEYS):
            saw_foreign = True

    return None, PayloadKind.FOREIGN if saw_foreign else PayloadKind.UNRECOVERABLE


def resolve_payload(agent_result: Any) -> Optional[Any]:
    payload, _ = resolve_payload_with_kind(agent_result)
    return payload


def classify_payload(payload: Any) -> PayloadKind:
    if payload is None:
        return PayloadKind.UNRECOVERABLE
    if isinstance(payload, list):
        return PayloadKind.ARRAY
    if not isinstance(payload, dict):
        return PayloadKind.UNRECOVERABLE
    if _has_any(payload, _COLLECTION_KEYS):
        return PayloadKind.INSIGHTS_OBJECT
    if _has_any(payload, _SINGLE_INSIGHT_KEYS):
        return PayloadKind.SINGLE_INSIGHT
    if _has_any(payload, _FOREIGN_KEYS):
        return PayloadKind.FOREIGN
    return PayloadKind.UNRECOVERABLE
