"""
Borrowing lifecycle.

    ACTIVE --due date passes (sweep)--> OVERDUE
    ACTIVE/OVERDUE --extend--> ACTIVE
    ACTIVE/OVERDUE --return, all units back--> COMPLETED
    ACTIVE/OVERDUE --cancel, nothing returned yet--> CANCELLED

COMPLETED and CANCELLED are terminal. The OVERDUE flag is not kept current by
a timer; ``sweep_overdue`` is run at the start of every read and write path
that looks at borrowing status.

Each mutation first "claims" the transaction row with a conditional UPDATE
(status still open). That both re-checks the state under concurrency and, on
PostgreSQL, row-locks the transaction until the unit of work commits, so a
concurrent cancel and return on the same borrowing are serialized.
"""

import logging
import math
from datetime import datetime, timedelta
from sqlalchemy import func, or_, update
from sqlmodel import Session, select

from stockroom.clock import to_utc_naive
from stockroom.config import get_settings
from stockroom.db import atomic
from stockroom.error import (
    ExceedsHorizon,
    InvalidStateTransition,
    NotFound,
    NotLaterThanCurrent,
    PastDate,
    UnitAlreadyReturned,
)
from stockroom.models import BorrowingItem, BorrowingItemUnit, BorrowingTransaction
from stockroom.schemas import (
    OPEN_STATUSES,
    ActivityAction,
    BorrowingCreate,
    BorrowingExtend,
    BorrowingItemRead,
    BorrowingItemUnitRead,
    BorrowingRead,
    BorrowingReturn,
    BorrowingStatus,
    EntityType,
    ListSort,
    ToolCondition,
)
from stockroom.services import reservation
from stockroom.services.activity import record_activity, snapshot
from stockroom.services.reservation import UnitRelease
from stockroom.services.sequence import BORROWING_PREFIX, next_yearly_display_id

logger = logging.getLogger(__name__)

_CLAIMED_FIELDS = ["status", "due_date", "notes", "return_date", "updated_at"]


def _append_note(existing: str | None, line: str) -> str:
    return f"{existing}\n\n{line}" if existing else line


# ---------- overdue sweep ----------

def sweep_overdue(session: Session, now: datetime) -> int:
    """Mark every ACTIVE borrowing whose due date has passed as OVERDUE. Idempotent."""
    result = session.execute(
        update(BorrowingTransaction)
        .where(
            BorrowingTransaction.status == BorrowingStatus.ACTIVE.value,
            BorrowingTransaction.due_date < now,
        )
        .values(status=BorrowingStatus.OVERDUE.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    count = result.rowcount
    if count:
        logger.info("overdue sweep marked %d borrowing(s)", count)
        for obj in list(session.identity_map.values()):
            if isinstance(obj, BorrowingTransaction):
                session.expire(obj, ["status", "updated_at"])
    return count


def run_overdue_sweep(session: Session, now: datetime) -> int:
    with atomic(session):
        return sweep_overdue(session, now)


# ---------- helpers ----------

def _get(session: Session, borrowing_id: int) -> BorrowingTransaction:
    txn = session.get(BorrowingTransaction, borrowing_id)
    if not txn:
        raise NotFound("Borrowing transaction", borrowing_id)
    return txn


def _ensure_open(txn: BorrowingTransaction, action: str) -> None:
    if txn.status not in OPEN_STATUSES:
        raise InvalidStateTransition(txn.status, action, "borrowing is already closed")


def _claim(session: Session, txn: BorrowingTransaction, action: str, now: datetime, **values) -> None:
    result = session.execute(
        update(BorrowingTransaction)
        .where(
            BorrowingTransaction.id == txn.id,
            BorrowingTransaction.status.in_(OPEN_STATUSES),
        )
        .values(updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    session.refresh(txn, _CLAIMED_FIELDS)
    if result.rowcount != 1:
        raise InvalidStateTransition(txn.status, action, "borrowing was closed concurrently")


# ---------- create ----------

def create_borrowing(session: Session, data: BorrowingCreate, now: datetime) -> BorrowingTransaction:
    due_date = to_utc_naive(data.due_date)
    if due_date <= now:
        raise PastDate(due_date, now)

    with atomic(session):
        txn = BorrowingTransaction(
            display_id=next_yearly_display_id(session, BORROWING_PREFIX, now),
            borrower_name=data.borrower_name.strip(),
            borrow_date=now,
            due_date=due_date,
            status=BorrowingStatus.ACTIVE.value,
            purpose=data.purpose,
            notes=data.notes,
            created_at=now,
            updated_at=now,
        )
        session.add(txn)
        session.flush()  # 生成 txn.id

        total_units = 0
        for line in data.items:
            item = reservation.reserve_tool_units(
                session,
                txn.id,
                line.tool_id,
                now,
                unit_ids=line.unit_ids,
                quantity=line.quantity,
                notes=line.notes,
            )
            total_units += item.quantity

        record_activity(
            session, EntityType.BORROWING_TRANSACTION, txn.id, ActivityAction.BORROW,
            actor_name=txn.borrower_name,
            after=snapshot(txn),
            metadata={"item_count": len(data.items), "total_quantity": total_units},
            occurred_at=now,
        )

    session.refresh(txn)
    return txn


# ---------- read ----------

def get_borrowing(session: Session, borrowing_id: int, now: datetime) -> BorrowingTransaction:
    run_overdue_sweep(session, now)
    return _get(session, borrowing_id)


def list_borrowings(
    session: Session,
    now: datetime,
    statuses: list[BorrowingStatus] | None = None,
    q: str | None = None,
    borrower_name: str | None = None,
    sort: ListSort = ListSort.created_desc,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[BorrowingTransaction], int]:
    run_overdue_sweep(session, now)

    conds = []
    if statuses:
        conds.append(BorrowingTransaction.status.in_([s.value for s in statuses]))
    if q:
        conds.append(or_(
            BorrowingTransaction.borrower_name.contains(q),
            BorrowingTransaction.purpose.contains(q),
            BorrowingTransaction.display_id.contains(q),
        ))
    if borrower_name:
        conds.append(BorrowingTransaction.borrower_name == borrower_name.strip())

    stmt = select(BorrowingTransaction)
    count_stmt = select(func.count()).select_from(BorrowingTransaction)
    if conds:
        stmt = stmt.where(*conds)
        count_stmt = count_stmt.where(*conds)

    order_map = {
        ListSort.id_desc: (BorrowingTransaction.id.desc(),),
        ListSort.id_asc: (BorrowingTransaction.id.asc(),),
        ListSort.created_desc: (BorrowingTransaction.created_at.desc(), BorrowingTransaction.id.desc()),
        ListSort.created_asc: (BorrowingTransaction.created_at.asc(), BorrowingTransaction.id.asc()),
    }
    total = session.exec(count_stmt).one()
    items = session.exec(stmt.order_by(*order_map[sort]).offset(offset).limit(limit)).all()
    return list(items), total


def present_borrowing(txn: BorrowingTransaction, now: datetime) -> BorrowingRead:
    items = []
    total_units = 0
    units_returned = 0
    for item in txn.items:
        units = [
            BorrowingItemUnitRead(
                id=iu.id,
                tool_unit_id=iu.tool_unit_id,
                unit_number=iu.tool_unit.unit_number,
                condition=iu.condition,
                return_condition=iu.return_condition,
                return_date=iu.return_date,
                notes=iu.notes,
            )
            for iu in item.units
        ]
        total_units += len(units)
        units_returned += sum(1 for u in units if u.return_date is not None)
        items.append(
            BorrowingItemRead(
                id=item.id,
                tool_id=item.tool_id,
                tool_name=item.tool.name,
                quantity=item.quantity,
                notes=item.notes,
                return_date=item.return_date,
                units=units,
            )
        )

    is_overdue = txn.status == BorrowingStatus.OVERDUE.value or (
        txn.status == BorrowingStatus.ACTIVE.value and txn.due_date < now
    )
    return BorrowingRead(
        id=txn.id,
        display_id=txn.display_id,
        borrower_name=txn.borrower_name,
        borrow_date=txn.borrow_date,
        due_date=txn.due_date,
        return_date=txn.return_date,
        status=txn.status,
        purpose=txn.purpose,
        notes=txn.notes,
        items=items,
        is_overdue=is_overdue,
        days_overdue=max((now - txn.due_date).days, 0) if is_overdue else 0,
        total_units=total_units,
        units_returned=units_returned,
        can_extend=txn.status in OPEN_STATUSES,
    )


# ---------- extend ----------

def extend_due_date(session: Session, borrowing_id: int, data: BorrowingExtend, now: datetime) -> BorrowingTransaction:
    new_due = to_utc_naive(data.new_due_date)
    max_days = get_settings().max_extension_days

    with atomic(session):
        sweep_overdue(session, now)
        txn = _get(session, borrowing_id)
        _ensure_open(txn, "EXTEND")

        # 三种情况分别报错，不做静默截断
        if new_due <= now:
            raise PastDate(new_due, now)
        if new_due <= txn.due_date:
            raise NotLaterThanCurrent(new_due, txn.due_date)
        max_due = now + timedelta(days=max_days)
        if new_due > max_due:
            raise ExceedsHorizon(new_due, max_due, max_days)

        before = snapshot(txn)
        old_due = txn.due_date
        _claim(
            session, txn, "EXTEND", now,
            due_date=new_due,
            status=BorrowingStatus.ACTIVE.value,
            notes=_append_note(txn.notes, f"Extended on {now:%Y-%m-%d}: {data.reason}"),
        )

        record_activity(
            session, EntityType.BORROWING_TRANSACTION, txn.id, ActivityAction.EXTEND,
            actor_name=txn.borrower_name,
            before=before,
            after=snapshot(txn),
            metadata={
                "old_due_date": old_due.isoformat(),
                "new_due_date": new_due.isoformat(),
                "reason": data.reason,
                "extension_days": math.ceil((new_due - old_due).total_seconds() / 86400),
            },
            occurred_at=now,
        )

    session.refresh(txn)
    return txn


# ---------- return ----------

def return_units(
    session: Session, borrowing_id: int, data: BorrowingReturn, now: datetime
) -> tuple[BorrowingTransaction, list[BorrowingItemUnit], bool]:
    with atomic(session):
        sweep_overdue(session, now)
        txn = _get(session, borrowing_id)
        _ensure_open(txn, "RETURN")
        _claim(session, txn, "RETURN", now)

        items_by_id = {item.id: item for item in txn.items}
        units_by_id = {iu.id: iu for item in txn.items for iu in item.units}

        releases: dict[int, UnitRelease] = {}
        already: list[int] = []
        for u in data.units:
            iu = units_by_id.get(u.borrowing_item_unit_id)
            if iu is None:
                raise NotFound(f"Borrowed unit in borrowing {txn.id}", u.borrowing_item_unit_id)
            if iu.return_date is not None:
                already.append(iu.id)
                continue
            releases[iu.id] = UnitRelease(iu.id, u.return_condition, u.notes)

        for it in data.items:
            item = items_by_id.get(it.borrowing_item_id)
            if item is None:
                raise NotFound(f"Borrowing item in borrowing {txn.id}", it.borrowing_item_id)
            outstanding = [iu for iu in item.units if iu.return_date is None]
            if not outstanding:
                already.extend(iu.id for iu in item.units)
            for iu in outstanding:
                # 单独指定了成色的 unit 以单独指定的为准
                releases.setdefault(iu.id, UnitRelease(iu.id, it.return_condition, it.notes))

        if already:
            raise UnitAlreadyReturned(txn.status, sorted(set(already)))

        released = reservation.release_tool_units(session, list(releases.values()), now)

        for item in txn.items:
            if item.return_date is None and all(iu.return_date is not None for iu in item.units):
                item.return_date = now
                session.add(item)

        # 每次都重新数一遍未归还的 unit，不用增量计数
        remaining = session.exec(
            select(func.count())
            .select_from(BorrowingItemUnit)
            .join(BorrowingItem, BorrowingItem.id == BorrowingItemUnit.borrowing_item_id)
            .where(
                BorrowingItem.borrowing_transaction_id == txn.id,
                BorrowingItemUnit.return_date.is_(None),
            )
        ).one()
        all_returned = remaining == 0

        if all_returned:
            txn.status = BorrowingStatus.COMPLETED.value
            txn.return_date = now
            if data.notes:
                txn.notes = _append_note(txn.notes, f"Return notes: {data.notes}")
        txn.updated_at = now
        session.add(txn)
        session.flush()

        record_activity(
            session, EntityType.BORROWING_TRANSACTION, txn.id, ActivityAction.RETURN,
            actor_name=txn.borrower_name,
            after=snapshot(txn),
            metadata={
                "returned_units": len(released),
                "all_returned": all_returned,
                "units": [
                    {
                        "tool_unit_id": iu.tool_unit_id,
                        "unit_number": iu.tool_unit.unit_number,
                        "condition": iu.return_condition,
                    }
                    for iu in released
                ],
            },
            occurred_at=now,
        )

    session.refresh(txn)
    return txn, released, all_returned


# ---------- cancel ----------

def cancel_borrowing(
    session: Session, borrowing_id: int, now: datetime, reason: str | None = None
) -> BorrowingTransaction:
    with atomic(session):
        sweep_overdue(session, now)
        txn = _get(session, borrowing_id)
        _ensure_open(txn, "CANCEL")
        before = snapshot(txn)
        _claim(session, txn, "CANCEL", now)

        units = [iu for item in txn.items for iu in item.units]
        returned = [iu for iu in units if iu.return_date is not None]
        if returned:
            raise InvalidStateTransition(txn.status, "CANCEL", f"{len(returned)} unit(s) already returned")

        # 取消：按借出时的成色原样放回
        reservation.release_tool_units(
            session,
            [UnitRelease(iu.id, ToolCondition(iu.condition)) for iu in units],
            now,
        )
        for item in txn.items:
            item.return_date = now
            session.add(item)

        txn.status = BorrowingStatus.CANCELLED.value
        if reason:
            txn.notes = _append_note(txn.notes, f"Cancelled on {now:%Y-%m-%d}: {reason}")
        txn.updated_at = now
        session.add(txn)
        session.flush()

        record_activity(
            session, EntityType.BORROWING_TRANSACTION, txn.id, ActivityAction.DELETE,
            before=before,
            after=snapshot(txn),
            metadata={"reason": reason or "Cancelled", "restored_units": len(units)},
            occurred_at=now,
        )

    session.refresh(txn)
    return txn
