from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from stockroom.clock import Clock
from stockroom.config import get_settings
from stockroom.db import get_session
from stockroom.deps import get_clock
from stockroom.schemas import (
    BorrowingCreate,
    BorrowingExtend,
    BorrowingItemUnitRead,
    BorrowingListResponse,
    BorrowingRead,
    BorrowingReturn,
    BorrowingStatus,
    ListSort,
    ReturnResult,
)
from stockroom.services import borrowing

router = APIRouter(prefix="/borrowings", tags=["borrowings"])


@router.post("", response_model=BorrowingRead, status_code=201)
def create_borrowing(
        data: BorrowingCreate,
        session: Session = Depends(get_session),
        clock: Clock = Depends(get_clock),
):
    now = clock.now()
    txn = borrowing.create_borrowing(session, data, now)
    return borrowing.present_borrowing(txn, now)


@router.get("", response_model=BorrowingListResponse)
def list_borrowings(
        status: Optional[list[BorrowingStatus]] = Query(None, description="可多选：?status=ACTIVE&status=OVERDUE"),
        q: Optional[str] = Query(None, description="按借用人/用途/编号搜索"),
        borrower_name: Optional[str] = Query(None, min_length=1, max_length=100),
        sort: ListSort = Query(ListSort.created_desc),
        limit: int = Query(get_settings().default_page_limit, ge=1, le=200),
        offset: int = Query(0, ge=0),
        session: Session = Depends(get_session),
        clock: Clock = Depends(get_clock),
):
    now = clock.now()
    items, total = borrowing.list_borrowings(
        session, now,
        statuses=status, q=q, borrower_name=borrower_name,
        sort=sort, limit=limit, offset=offset,
    )
    return {
        "items": [borrowing.present_borrowing(t, now) for t in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.post("/sweep")
def sweep_overdue(
        session: Session = Depends(get_session),
        clock: Clock = Depends(get_clock),
):
    return {"marked_overdue": borrowing.run_overdue_sweep(session, clock.now())}


@router.get("/{borrowing_id}", response_model=BorrowingRead)
def get_borrowing(
        borrowing_id: int,
        session: Session = Depends(get_session),
        clock: Clock = Depends(get_clock),
):
    now = clock.now()
    return borrowing.present_borrowing(borrowing.get_borrowing(session, borrowing_id, now), now)


@router.post("/{borrowing_id}/extend", response_model=BorrowingRead)
def extend_borrowing(
        borrowing_id: int,
        body: BorrowingExtend,
        session: Session = Depends(get_session),
        clock: Clock = Depends(get_clock),
):
    now = clock.now()
    txn = borrowing.extend_due_date(session, borrowing_id, body, now)
    return borrowing.present_borrowing(txn, now)


@router.post("/{borrowing_id}/return", response_model=ReturnResult)
def return_borrowing(
        borrowing_id: int,
        body: BorrowingReturn,
        session: Session = Depends(get_session),
        clock: Clock = Depends(get_clock),
):
    now = clock.now()
    txn, released, all_returned = borrowing.return_units(session, borrowing_id, body, now)
    return ReturnResult(
        borrowing=borrowing.present_borrowing(txn, now),
        returned_units=[
            BorrowingItemUnitRead(
                id=iu.id,
                tool_unit_id=iu.tool_unit_id,
                unit_number=iu.tool_unit.unit_number,
                condition=iu.condition,
                return_condition=iu.return_condition,
                return_date=iu.return_date,
                notes=iu.notes,
            )
            for iu in released
        ],
        all_returned=all_returned,
    )


@router.delete("/{borrowing_id}", response_model=BorrowingRead)
def cancel_borrowing(
        borrowing_id: int,
        reason: Optional[str] = Query(None, max_length=500),
        session: Session = Depends(get_session),
        clock: Clock = Depends(get_clock),
):
    now = clock.now()
    txn = borrowing.cancel_borrowing(session, borrowing_id, now, reason=reason)
    return borrowing.present_borrowing(txn, now)
