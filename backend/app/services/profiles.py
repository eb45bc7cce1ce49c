"""
Profile directory lookups used to validate insight authors.
"""
import logging
import uuid
from typing import Iterable, Set

from sqlalchemy.orm import Session

from app.core.ids import parse_uuid
from app.models import User

logger = logging.getLogger(__name__)


def find_active_profiles(db: Session, ids: Iterable) -> Set[uuid.UUID]:
    """
    Return the subset of ``ids`` that belong to known, active users.

    Identifiers that are not UUIDs are ignored.
    """
    candidates = {parsed for parsed in (parse_uuid(value) for value in ids) if parsed}
    if not candidates:
        return set()

    rows = (
        db.query(User.id)
        .filter(User.id.in_(candidates), User.is_active.is_(True))
        .all()
    )
    active = {row[0] for row in rows}

    if len(active) < len(candidates):
        logger.debug(f"Dropped {len(candidates) - len(active)} unknown or inactive author profile(s)")

    return active
