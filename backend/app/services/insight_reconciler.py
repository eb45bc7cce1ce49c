"""
Insight reconciliation.

Merges a batch of freshly extracted candidates into the insights already
persisted for a conversation. Re-running detection over the same conversation
must not create duplicates, so every candidate is first matched against the
existing rows:

1. explicit ``id`` of a persisted row
2. ``duplicate_of_id`` pointing at a persisted row
3. a row in the same thread whose normalized content matches
4. a row in the same thread whose normalized summary matches

Matching never crosses thread boundaries. The in-memory indexes are updated
after each candidate so later candidates in the batch see earlier writes.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from app.core.ids import parse_uuid
from app.models import Insight, InsightAuthor, InsightKpi, InsightStatus
from app.services.graph import delete_edges_for_insight
from app.services.insight_candidates import IncomingAuthor, IncomingKpi, InsightCandidate
from app.services.insight_queries import fetch_insight_type_map
from app.services.profiles import find_active_profiles

logger = logging.getLogger(__name__)

DEFAULT_INSIGHT_TYPE = "idea"
NO_THREAD = "no-thread"

_WHITESPACE_RE = re.compile(r"\s+")


class InsightConfigurationError(Exception):
    """Raised when no insight type vocabulary is configured."""
    pass


def normalize_key(value: Optional[str]) -> str:
    """Collapse whitespace, trim and lower-case. Non-strings become ''."""
    if not isinstance(value, str):
        return ""
    return _WHITESPACE_RE.sub(" ", value).strip().lower()


def _thread_marker(thread_id: Optional[uuid.UUID]) -> str:
    return str(thread_id) if thread_id else NO_THREAD


def build_dedupe_key(candidate: InsightCandidate, thread_id: Optional[uuid.UUID]) -> str:
    """Type, thread, content and summary joined with ``|``."""
    return "|".join(
        [
            normalize_key(candidate.type),
            _thread_marker(thread_id),
            normalize_key(candidate.content),
            normalize_key(candidate.summary),
        ]
    )


def resolve_type_id(type_name: Optional[str], type_map: Dict[str, uuid.UUID]) -> uuid.UUID:
    """
    Resolve a type name to a type id.

    Falls back to ``idea`` and then to any configured type.

    Raises:
        InsightConfigurationError: If the vocabulary is empty.
    """
    normalized = type_name.strip().lower() if type_name else None

    if normalized and normalized in type_map:
        return type_map[normalized]

    if DEFAULT_INSIGHT_TYPE in type_map:
        return type_map[DEFAULT_INSIGHT_TYPE]

    for type_id in type_map.values():
        return type_id

    raise InsightConfigurationError("No insight types configured")


def build_kpi_rows(kpis: Optional[List[IncomingKpi]]) -> List[InsightKpi]:
    rows = []
    for index, kpi in enumerate(kpis or []):
        rows.append(
            InsightKpi(
                name=kpi.label or f"KPI {index + 1}",
                description=kpi.description,
                metric_data=kpi.value,
            )
        )
    return rows


def resolve_author_rows(
    db: Session,
    authors: Iterable[IncomingAuthor],
    current_user_id: Optional[uuid.UUID] = None,
) -> List[InsightAuthor]:
    """
    Build author rows for the profiles that are known and active.

    Unresolvable entries are dropped. When nothing survives, the acting user is
    used if that profile is itself active; otherwise the result is empty.
    """
    authors = list(authors)
    requested = [parse_uuid(author.user_id) for author in authors]
    lookup = [user_id for user_id in requested if user_id]
    if current_user_id:
        lookup.append(current_user_id)

    valid_ids = find_active_profiles(db, lookup)

    rows: List[InsightAuthor] = []
    seen: Set[uuid.UUID] = set()
    for user_id in requested:
        if user_id and user_id in valid_ids and user_id not in seen:
            seen.add(user_id)
            rows.append(InsightAuthor(user_id=user_id, display_name=None))

    if not rows and current_user_id and current_user_id in valid_ids:
        rows.append(InsightAuthor(user_id=current_user_id, display_name=None))

    return rows


def _schedule_default(insight_id: uuid.UUID) -> None:
    from app.tasks.insight_tasks import schedule_insight_embeddings

    schedule_insight_embeddings(insight_id)


class InsightReconciler:
    """
    Applies one batch of candidates to a conversation's insights.

    A reconciler instance holds the per-batch indexes; create a new one for
    every batch.
    """

    def __init__(
        self,
        db: Session,
        conversation_id: uuid.UUID,
        existing: Iterable[Insight],
        thread_id: Optional[uuid.UUID] = None,
        current_user_id: Optional[uuid.UUID] = None,
        plan_step_id: Optional[uuid.UUID] = None,
        fallback_challenge_id: Optional[str] = None,
        fallback_message_id: Optional[str] = None,
        embedding_scheduler: Optional[Callable[[uuid.UUID], None]] = None,
    ):
        self.db = db
        self.conversation_id = conversation_id
        self.thread_id = thread_id
        self.current_user_id = current_user_id
        self.plan_step_id = plan_step_id
        self.fallback_challenge_id = fallback_challenge_id
        self.fallback_message_id = fallback_message_id
        self.embedding_scheduler = embedding_scheduler or _schedule_default

        self._rows: Dict[str, Insight] = {}
        self._content_index: Dict[str, Insight] = {}
        self._summary_index: Dict[str, Insight] = {}
        self._index_keys: Dict[str, Tuple[str, str]] = {}
        self._processed_keys: Set[str] = set()
        self._type_map: Dict[str, uuid.UUID] = {}

        for row in existing:
            self._rows[str(row.id)] = row
            self._index(row)

    # ------------------------------------------------------------------
    # Indexes
    # ------------------------------------------------------------------

    @staticmethod
    def _scoped(thread_id: Optional[uuid.UUID], key: str) -> str:
        return f"{_thread_marker(thread_id)}::{key}"

    def _index(self, row: Insight) -> None:
        content_key = normalize_key(row.content)
        summary_key = normalize_key(row.summary)
        scoped_content = self._scoped(row.conversation_thread_id, content_key) if content_key else ""
        scoped_summary = self._scoped(row.conversation_thread_id, summary_key) if summary_key else ""

        if scoped_content:
            self._content_index[scoped_content] = row
        if scoped_summary:
            self._summary_index[scoped_summary] = row
        self._index_keys[str(row.id)] = (scoped_content, scoped_summary)

    def _unindex(self, row: Insight) -> None:
        scoped_content, scoped_summary = self._index_keys.pop(str(row.id), ("", ""))
        if scoped_content and self._content_index.get(scoped_content) is row:
            del self._content_index[scoped_content]
        if scoped_summary and self._summary_index.get(scoped_summary) is row:
            del self._summary_index[scoped_summary]

    def _reindex(self, row: Insight) -> None:
        self._unindex(row)
        self.db.refresh(row)
        self._rows[str(row.id)] = row
        self._index(row)

    def find_match(self, candidate: InsightCandidate) -> Optional[Insight]:
        candidate_id = parse_uuid(candidate.id)
        if candidate_id and str(candidate_id) in self._rows:
            return self._rows[str(candidate_id)]

        duplicate_of = parse_uuid(candidate.duplicate_of_id)
        if duplicate_of and str(duplicate_of) in self._rows:
            return self._rows[str(duplicate_of)]

        content_key = normalize_key(candidate.content)
        if content_key:
            match = self._content_index.get(self._scoped(self.thread_id, content_key))
            if match is not None:
                return match

        summary_key = normalize_key(candidate.summary)
        if summary_key:
            return self._summary_index.get(self._scoped(self.thread_id, summary_key))

        return None

    @property
    def insights(self) -> List[Insight]:
        """Rows known to this batch after reconciliation."""
        return list(self._rows.values())

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, candidates: List[InsightCandidate]) -> List[Insight]:
        """
        Apply every candidate in order.

        Returns:
            The conversation's insights as known after the batch.

        Raises:
            InsightConfigurationError: If no insight types are configured.
        """
        if not candidates:
            return self.insights

        self._type_map = fetch_insight_type_map(self.db)
        if not self._type_map:
            raise InsightConfigurationError("No insight types configured")

        for candidate in candidates:
            dedupe_key = build_dedupe_key(candidate, self.thread_id)
            if dedupe_key in self._processed_keys:
                logger.debug(f"Skipping duplicate candidate in batch: {dedupe_key[:80]}")
                continue
            self._processed_keys.add(dedupe_key)

            match = self.find_match(candidate)

            if candidate.is_delete:
                if match is not None:
                    self._delete(match)
                continue

            if candidate.is_merge and match is not None:
                self._merge(match, candidate)
                continue

            if match is not None:
                self._update(match, candidate)
            else:
                self._create(candidate)

        return self.insights

    def _delete(self, row: Insight) -> None:
        insight_id = row.id
        delete_edges_for_insight(self.db, insight_id)
        self._unindex(row)
        self._rows.pop(str(insight_id), None)

        # KPI and author rows go with the insight (delete-orphan cascade)
        self.db.delete(row)
        self.db.commit()
        logger.info(f"Deleted insight {insight_id}")

    def _merge(self, row: Insight, candidate: InsightCandidate) -> None:
        note = candidate.summary or row.summary or ""
        if candidate.merged_into_id:
            separator = "\n\n" if note else ""
            note = f"{note}{separator}[Merge] Merged into insight {candidate.merged_into_id}"

        self._unindex(row)

        row.user_id = self.current_user_id or row.user_id
        row.content = candidate.content or row.content or ""
        row.summary = note
        row.category = candidate.category or row.category
        row.status = InsightStatus.ARCHIVED
        row.priority = candidate.priority or row.priority
        row.challenge_id = candidate.challenge_id or row.challenge_id or self.fallback_challenge_id
        if candidate.related_challenge_ids is not None:
            row.related_challenge_ids = candidate.related_challenge_ids
        row.source_message_id = (
            candidate.source_message_id or row.source_message_id or self.fallback_message_id
        )
        row.conversation_thread_id = self.thread_id or row.conversation_thread_id
        row.plan_step_id = self.plan_step_id or row.plan_step_id
        row.updated_at = datetime.utcnow()

        row.kpis = []
        if candidate.authors_provided:
            row.authors = resolve_author_rows(self.db, candidate.authors, self.current_user_id)

        self.db.commit()
        self._reindex(row)
        logger.info(f"Archived insight {row.id} after merge")

    def _update(self, row: Insight, candidate: InsightCandidate) -> None:
        type_name = candidate.type or row.type_name or DEFAULT_INSIGHT_TYPE

        self._unindex(row)

        row.user_id = self.current_user_id or row.user_id
        row.content = candidate.content or row.content or ""
        row.summary = candidate.summary or row.summary
        row.insight_type_id = resolve_type_id(type_name, self._type_map)
        row.category = candidate.category or row.category
        row.status = candidate.status or row.status or InsightStatus.NEW
        row.priority = candidate.priority or row.priority
        row.challenge_id = candidate.challenge_id or row.challenge_id or self.fallback_challenge_id
        if candidate.related_challenge_ids is not None:
            row.related_challenge_ids = candidate.related_challenge_ids
        elif row.related_challenge_ids is None:
            row.related_challenge_ids = []
        row.source_message_id = (
            candidate.source_message_id or row.source_message_id or self.fallback_message_id
        )
        row.conversation_thread_id = self.thread_id or row.conversation_thread_id
        row.plan_step_id = self.plan_step_id or row.plan_step_id
        row.updated_at = datetime.utcnow()

        row.kpis = build_kpi_rows(candidate.kpis)
        if candidate.authors_provided:
            row.authors = resolve_author_rows(self.db, candidate.authors, self.current_user_id)

        self.db.commit()
        self._reindex(row)
        logger.info(f"Updated insight {row.id}")
        self._schedule_embeddings(row.id)

    def _pick_new_id(self, candidate: InsightCandidate) -> uuid.UUID:
        requested = parse_uuid(candidate.id)
        if requested and str(requested) not in self._rows and self.db.get(Insight, requested) is None:
            return requested
        return uuid.uuid4()

    def _create(self, candidate: InsightCandidate) -> None:
        now = datetime.utcnow()
        row = Insight(
            id=self._pick_new_id(candidate),
            conversation_id=self.conversation_id,
            conversation_thread_id=self.thread_id,
            user_id=self.current_user_id,
            content=candidate.content or "",
            summary=candidate.summary,
            insight_type_id=resolve_type_id(candidate.type or DEFAULT_INSIGHT_TYPE, self._type_map),
            category=candidate.category,
            status=candidate.status or InsightStatus.NEW,
            priority=candidate.priority,
            challenge_id=candidate.challenge_id or self.fallback_challenge_id,
            related_challenge_ids=candidate.related_challenge_ids or [],
            source_message_id=candidate.source_message_id or self.fallback_message_id,
            plan_step_id=self.plan_step_id,
            created_at=now,
            updated_at=now,
        )
        row.kpis = build_kpi_rows(candidate.kpis)
        if candidate.authors_provided:
            row.authors = resolve_author_rows(self.db, candidate.authors, self.current_user_id)

        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)

        self._rows[str(row.id)] = row
        self._index(row)
        logger.info(f"Created insight {row.id} ({row.type_name})")
        self._schedule_embeddings(row.id)

    def _schedule_embeddings(self, insight_id: uuid.UUID) -> None:
        try:
            self.embedding_scheduler(insight_id)
        except Exception as e:
            logger.warning(f"Could not schedule embeddings for insight {insight_id}: {e}")


def reconcile_insights(
    db: Session,
    conversation_id: uuid.UUID,
    candidates: List[InsightCandidate],
    existing: Iterable[Insight],
    thread_id: Optional[uuid.UUID] = None,
    current_user_id: Optional[uuid.UUID] = None,
    plan_step_id: Optional[uuid.UUID] = None,
    fallback_challenge_id: Optional[str] = None,
    fallback_message_id: Optional[str] = None,
    embedding_scheduler: Optional[Callable[[uuid.UUID], None]] = None,
) -> List[Insight]:
    reconciler = InsightReconciler(
        db,
        conversation_id,
        existing,
        thread_id=thread_id,
        current_user_id=current_user_id,
        plan_step_id=plan_step_id,
        fallback_challenge_id=fallback_challenge_id,
        fallback_message_id=fallback_message_id,
        embedding_scheduler=embedding_scheduler,
    )
    return reconciler.reconcile(candidates)
