"""
Optimistic Locking Infrastructure
Version-based concurrency control for trades and escrow accounts
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import Column, Integer, DateTime, func, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from utils.exceptions import ConcurrentModificationConflict

logger = logging.getLogger(__name__)


class VersionMixin:
    """
    Mixin class to add version tracking to database models
    Every versioned update bumps the version; a stale version is a conflict
    """

    version = Column(Integer, nullable=False, default=1, server_default="1")
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )


def versioned_update(
    session: Session,
    entity: Any,
    updates: Dict[str, Any],
    expected_version: int,
) -> int:
    """
    Apply updates to a versioned entity only if its stored version still matches.

    Returns the new version. Raises ConcurrentModificationConflict when another
    writer got there first; the caller must re-read state and retry.
    """
    model_class = type(entity)
    new_version = expected_version + 1
    values = {
        **updates,
        "version": new_version,
        "updated_at": datetime.now(timezone.utc),
    }

    stmt = (
        update(model_class)
        .where(model_class.id == entity.id, model_class.version == expected_version)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)

    if result.rowcount == 0:
        logger.warning(
            f"🔒 OPTIMISTIC_LOCK_CONFLICT: {model_class.__name__} id={entity.id} "
            f"expected_version={expected_version}"
        )
        raise ConcurrentModificationConflict(
            f"{model_class.__name__} {entity.id} was modified concurrently "
            f"(expected version {expected_version})",
            details={"entity": model_class.__name__, "id": entity.id, "expected_version": expected_version},
        )

    # Keep the in-session object in step with the row without re-dirtying it
    for key, value in values.items():
        set_committed_value(entity, key, value)

    logger.debug(
        f"✅ Versioned update: {model_class.__name__} id={entity.id} "
        f"v{expected_version} → v{new_version}"
    )
    return new_version
