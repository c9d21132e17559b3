"""
Display-ID counters.

``TL-001`` / ``MT-001`` / ``BR-2024-001`` / ``CS-2024-001`` are cosmetic labels,
but two concurrent creates must still never get the same one. Each prefix owns
one ``DisplaySequence`` row; the row is bumped with a single UPDATE inside the
caller's unit of work, so the value is held (row-locked on PostgreSQL) until
that unit of work commits and is given back on rollback.
"""

import logging
from datetime import datetime
from sqlalchemy import update
from sqlmodel import Session, select

from stockroom.models import DisplaySequence

logger = logging.getLogger(__name__)

TOOL_PREFIX = "TL"
MATERIAL_PREFIX = "MT"
BORROWING_PREFIX = "BR"
CONSUMPTION_PREFIX = "CS"


def next_value(session: Session, name: str) -> int:
    result = session.execute(
        update(DisplaySequence)
        .where(DisplaySequence.name == name)
        .values(value=DisplaySequence.value + 1)
    )
    if result.rowcount == 0:
        # 第一次用这个前缀
        session.add(DisplaySequence(name=name, value=1))
        session.flush()
        return 1
    value = session.exec(select(DisplaySequence.value).where(DisplaySequence.name == name)).one()
    logger.debug("display sequence %s -> %s", name, value)
    return value


def next_display_id(session: Session, prefix: str, year: int | None = None) -> str:
    name = f"{prefix}-{year}" if year is not None else prefix
    return f"{name}-{next_value(session, name):03d}"


def next_yearly_display_id(session: Session, prefix: str, now: datetime) -> str:
    return next_display_id(session, prefix, year=now.year)
