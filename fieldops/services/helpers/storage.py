"""
Storage helpers shared by every service.

Usage:
    intervention = get_or_raise(Intervention, intervention_id)
    applied = conditional_update(Intervention, 42,
                                 where=[Intervention.state == InterventionState.OPEN],
                                 values={"state": InterventionState.CLOSED})
    commit_or_raise("close intervention")

``commit_or_raise`` is the only place a service commits: database errors
are rolled back, logged and re-raised as StorageError so callers see one
infrastructure exception type whatever the backend.
"""

import logging
from datetime import datetime

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError

from fieldops.core.exceptions import NotFoundError, StorageError
from fieldops.models import db

logger = logging.getLogger(__name__)


def get_or_raise(model, pk, *, fresh: bool = False):
    """Load ``model`` by primary key or raise NotFoundError.

    Args:
        fresh: re-read the row even if it is already in the identity map
               (used after a conditional UPDATE matched zero rows).
    """
    if pk is None:
        raise NotFoundError(resource=model.__name__, resource_id=None)
    options = {"populate_existing": True} if fresh else {}
    obj = db.session.get(model, pk, **options)
    if obj is None:
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return obj


def conditional_update(model, pk, *, where, values: dict) -> bool:
    """Guard + write as one UPDATE statement.

    Returns True when exactly the target row matched ``where``. The
    session's identity map is not synchronised; reload with
    ``get_or_raise(..., fresh=True)`` afterwards.
    """
    stmt = (
        update(model)
        .where(model.id == pk, *where)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.session.execute(stmt)
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Conditional update failed on %s id=%s", model.__tablename__, pk)
        raise StorageError(f"update {model.__tablename__}", str(exc)) from exc
    return result.rowcount == 1


def append_note_expr(column, entry: str):
    """SQL expression appending ``entry`` as a new line of a text log column."""
    return func.coalesce(column + "\n", "") + entry


def format_note(text: str, at: datetime, author: str | None = None) -> str:
    stamp = at.strftime("%Y-%m-%d %H:%M UTC")
    who = f" {author}" if author else ""
    return f"[{stamp}{who}] {text.strip()}"


def commit_or_raise(operation: str) -> None:
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Database error during %s", operation)
        raise StorageError(operation, str(exc)) from exc
