"""
Normalisation of raw agent payload items into insight candidates.

The agent mixes camelCase and snake_case keys, sometimes sends a single author
object instead of a list, and likes to attribute insights to "you" or to
itself. This module turns whatever came back into predictable dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

DELETE_ACTIONS = {"delete", "remove", "obsolete"}
MERGE_ACTION = "merge"

_SELF_NAMES = {"vous", "you", "yourself"}
_AGENT_NAMES = {"agent", "ai", "assistant"}

_AUTHOR_ID_KEYS = ("userId", "user_id", "authorId", "author_id")
_AUTHOR_NAME_KEYS = ("name", "authorName", "author_name", "displayName", "display_name")


@dataclass
class IncomingAuthor:
    user_id: Optional[str] = None
    name: Optional[str] = None


@dataclass
class IncomingKpi:
    label: str
    value: Any = None
    description: Optional[str] = None


@dataclass
class InsightCandidate:
    """One not-yet-persisted insight recovered from agent output."""

    id: Optional[str] = None
    content: Optional[str] = None
    summary: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    challenge_id: Optional[str] = None
    related_challenge_ids: Optional[List[str]] = None
    source_message_id: Optional[str] = None
    kpis: Optional[List[IncomingKpi]] = None
    authors: List[IncomingAuthor] = field(default_factory=list)
    authors_provided: bool = False
    action: Optional[str] = None
    merged_into_id: Optional[str] = None
    duplicate_of_id: Optional[str] = None

    @property
    def is_delete(self) -> bool:
        return self.action in DELETE_ACTIONS

    @property
    def is_merge(self) -> bool:
        return self.action == MERGE_ACTION


def _get_string(record: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _is_self_reference(name: str) -> bool:
    return name in _SELF_NAMES


def _is_agent_reference(name: str) -> bool:
    return name in _AGENT_NAMES or "agent" in name


def parse_incoming_author(value: Any, current_user_id: Optional[str] = None) -> Optional[IncomingAuthor]:
    """
    Parse one author entry.

    Names that point at the participant ("you") or at the agent itself are
    replaced by the acting user when one is known and dropped otherwise.
    """
    if not isinstance(value, dict):
        return None

    user_id = _get_string(value, *_AUTHOR_ID_KEYS)
    name = _get_string(value, *_AUTHOR_NAME_KEYS)

    normalized_name = (name or "").strip().lower()
    if normalized_name and (_is_self_reference(normalized_name) or _is_agent_reference(normalized_name)):
        if current_user_id:
            return IncomingAuthor(user_id=current_user_id, name=None)
        return None

    if not user_id and not name:
        return None

    return IncomingAuthor(user_id=user_id, name=name)


def normalize_incoming_kpis(kpis: Any) -> Optional[List[IncomingKpi]]:
    """KPI list with missing labels replaced by ``KPI <n>``; None when not a list."""
    if not isinstance(kpis, list):
        return None

    normalized = []
    for index, kpi in enumerate(kpis):
        raw = kpi if isinstance(kpi, dict) else {}
        label = raw.get("label")
        description = raw.get("description")
        normalized.append(
            IncomingKpi(
                label=label if isinstance(label, str) and label.strip() else f"KPI {index + 1}",
                value=raw.get("value"),
                description=description if isinstance(description, str) and description.strip() else None,
            )
        )
    return normalized


def _parse_authors(record: Dict[str, Any], current_user_id: Optional[str]) -> tuple:
    raw_authors = record.get("authors")
    authors: List[IncomingAuthor] = []
    provided = False

    if isinstance(raw_authors, list):
        provided = True
        for entry in raw_authors:
            parsed = parse_incoming_author(entry, current_user_id)
            if parsed:
                authors.append(parsed)
    elif raw_authors:
        parsed = parse_incoming_author(raw_authors, current_user_id)
        if parsed:
            provided = True
            authors.append(parsed)

    if not provided:
        fallback_id = _get_string(record, "authorId", "author_id")
        fallback_name = _get_string(record, "authorName", "author_name")
        if fallback_id or fallback_name:
            parsed = parse_incoming_author(
                {"userId": fallback_id, "name": fallback_name}, current_user_id
            )
            if parsed:
                provided = True
                authors.append(parsed)

    return authors, provided


def normalize_candidate(item: Any, current_user_id: Optional[str] = None) -> InsightCandidate:
    record = item if isinstance(item, dict) else {}

    related = record.get("relatedChallengeIds", record.get("related_challenge_ids"))
    related_ids = [str(value) for value in related] if isinstance(related, list) else None

    authors, authors_provided = _parse_authors(record, current_user_id)
    action = _get_string(record, "action")

    return InsightCandidate(
        id=_get_string(record, "id"),
        content=_get_string(record, "content"),
        summary=_get_string(record, "summary"),
        type=_get_string(record, "type"),
        category=_get_string(record, "category"),
        status=_get_string(record, "status"),
        priority=_get_string(record, "priority"),
        challenge_id=_get_string(record, "challengeId", "challenge_id"),
        related_challenge_ids=related_ids,
        source_message_id=_get_string(record, "sourceMessageId", "source_message_id"),
        kpis=normalize_incoming_kpis(record.get("kpis")),
        authors=authors,
        authors_provided=authors_provided,
        action=action.strip().lower() if action else None,
        merged_into_id=_get_string(record, "mergedIntoId", "merged_into_id", "mergeTargetId"),
        duplicate_of_id=_get_string(record, "duplicateOfId", "duplicate_of_id"),
    )


def normalize_candidates(payload: Any, current_user_id: Optional[str] = None) -> List[InsightCandidate]:
    """
    Candidates from a resolved payload.

    Accepts a bare list, ``{"insights": [...]}`` or ``{"items": [...]}``.
    """
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        if isinstance(payload.get("items"), list):
            items = payload["items"]
        elif isinstance(payload.get("insights"), list):
            items = payload["insights"]
        else:
            items = []
    else:
        items = []

    return [normalize_candidate(item, current_user_id) for item in items]
