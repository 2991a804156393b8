import logging
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from models import Activity

log = logging.getLogger("resourcehub.activity")


def record(
    session: Session,
    actor_id: Optional[int],
    action: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    """
    Append an audit entry.

    Called after the business change has been committed. A failure here
    rolls back the log row only and is reported as a warning.
    """
    entry = Activity(
        user_id=actor_id,
        action=action,
        entity_type=entity_type or "",
        entity_id=entity_id,
        details=details,
    )
    try:
        session.add(entry)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        log.warning(
            "Could not record activity %s (user=%s, %s #%s)",
            action,
            actor_id,
            entity_type,
            entity_id,
            exc_info=True,
        )


def recent(session: Session, limit: int = 20) -> list[Activity]:
    stmt = (
        select(Activity)
        .order_by(Activity.created_at.desc(), Activity.id.desc())
        .limit(limit)
    )
    return list(session.exec(stmt).all())


def query(
    session: Session,
    user_id: Optional[int] = None,
    action: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[Activity], int]:
    stmt = select(Activity)
    if user_id is not None:
        stmt = stmt.where(Activity.user_id == user_id)
    if action is not None:
        stmt = stmt.where(Activity.action == action)

    total = session.exec(select(func.count()).select_from(stmt.subquery())).one()
    rows = session.exec(
        stmt.order_by(Activity.created_at.desc(), Activity.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    return list(rows), total
