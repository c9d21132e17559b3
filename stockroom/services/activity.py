"""
Append-only activity log.

Business code never writes ``ActivityLog`` rows inline. It queues an event on
the session with ``record_activity``; once that session's unit of work has
committed, the ``after_commit`` listener below writes the queued events in a
separate session through ``log_activity``. A rollback drops the queue, and a
failed audit write is logged and swallowed, so the audit trail can never undo
or block the business change that produced it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from fastapi.encoders import jsonable_encoder
from sqlalchemy import event, inspect
from sqlalchemy.orm import Session as OrmSession
from sqlmodel import Session, SQLModel

from stockroom.models import ActivityLog, utcnow
from stockroom.schemas import ActivityAction, EntityType

logger = logging.getLogger(__name__)

OUTBOX_KEY = "activity_outbox"


@dataclass
class ActivityEvent:
    entity_type: EntityType
    entity_id: Any
    action: ActivityAction
    actor_name: Optional[str] = None
    before: Optional[dict] = None
    after: Optional[dict] = None
    metadata: Optional[dict] = None
    occurred_at: Optional[datetime] = None


def snapshot(obj: SQLModel | None) -> dict | None:
    if obj is None:
        return None
    # 逐列 getattr，过期的属性会自动重新加载（model_dump 会漏掉它们）
    data = {attr.key: getattr(obj, attr.key) for attr in inspect(obj).mapper.column_attrs}
    return jsonable_encoder(data)


def record_activity(
    session: Session,
    entity_type: EntityType,
    entity_id: Any,
    action: ActivityAction,
    actor_name: str | None = None,
    before: dict | None = None,
    after: dict | None = None,
    metadata: dict | None = None,
    occurred_at: datetime | None = None,
) -> None:
    session.info.setdefault(OUTBOX_KEY, []).append(
        ActivityEvent(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_name=actor_name,
            before=before,
            after=after,
            metadata=metadata,
            occurred_at=occurred_at,
        )
    )


def log_activity(
    bind,
    entity_type: EntityType,
    entity_id: Any,
    action: ActivityAction,
    actor_name: str | None = None,
    before: dict | None = None,
    after: dict | None = None,
    metadata: dict | None = None,
    occurred_at: datetime | None = None,
) -> None:
    """Write one audit row in its own session. Never raises."""
    try:
        with Session(bind) as audit_session:
            audit_session.add(
                ActivityLog(
                    entity_type=EntityType(entity_type).value,
                    entity_id=str(entity_id),
                    action=ActivityAction(action).value,
                    actor_name=actor_name,
                    before=before,
                    after=after,
                    meta=metadata,
                    created_at=occurred_at or utcnow(),
                )
            )
            audit_session.commit()
    except Exception:
        # 审计日志写失败只记运维日志，不影响业务
        logger.exception(
            "failed to write activity log: %s %s %s", entity_type, entity_id, action
        )


@event.listens_for(OrmSession, "after_commit")
def _flush_outbox(session: OrmSession) -> None:
    events = session.info.pop(OUTBOX_KEY, None)
    if not events:
        return
    bind = session.get_bind()
    for ev in events:
        log_activity(
            bind,
            ev.entity_type,
            ev.entity_id,
            ev.action,
            actor_name=ev.actor_name,
            before=ev.before,
            after=ev.after,
            metadata=ev.metadata,
            occurred_at=ev.occurred_at,
        )


@event.listens_for(OrmSession, "after_rollback")
def _discard_outbox(session: OrmSession) -> None:
    dropped = session.info.pop(OUTBOX_KEY, None)
    if dropped:
        logger.info("discarded %d activity event(s) after rollback", len(dropped))


class ActivityLogImmutableError(Exception):
    pass


@event.listens_for(ActivityLog, "before_update")
def _reject_update(mapper, connection, target) -> None:
    raise ActivityLogImmutableError(f"activity log entry {target.id} is append-only")


@event.listens_for(ActivityLog, "before_delete")
def _reject_delete(mapper, connection, target) -> None:
    raise ActivityLogImmutableError(f"activity log entry {target.id} is append-only")
