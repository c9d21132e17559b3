from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from stockroom.clock import Clock
from stockroom.config import get_settings
from stockroom.db import get_session
from stockroom.deps import get_clock
from stockroom.error import abort
from stockroom.models import Tool
from stockroom.schemas import (
    ToolCreate,
    ToolListItem,
    ToolListResponse,
    ToolRead,
    ToolUnitRead,
    ToolUnitUpdate,
    UnitHistoryEntry,
)
from stockroom.services import borrowing, inventory

router = APIRouter(prefix="/tools", tags=["tools"])


def _tool_read(tool: Tool) -> ToolRead:
    return ToolRead(
        **tool.model_dump(exclude={"created_at"}),
        condition=inventory.displayed_condition(tool),
        units=[ToolUnitRead.model_validate(u, from_attributes=True) for u in tool.units],
    )


def _tool_list_item(tool: Tool) -> ToolListItem:
    return ToolListItem(
        id=tool.id,
        display_id=tool.display_id,
        name=tool.name,
        location=tool.location,
        total_quantity=tool.total_quantity,
        available_quantity=tool.available_quantity,
        condition=inventory.displayed_condition(tool),
    )


@router.post("", response_model=ToolRead, status_code=201)
def create_tool(
        data: ToolCreate,
        session: Session = Depends(get_session),
        clock: Clock = Depends(get_clock),
):
    tool = inventory.create_tool(session, data, clock.now())
    return _tool_read(tool)


@router.get("", response_model=ToolListResponse)
def list_tools(
        q: str | None = None,
        available_only: bool = Query(False, description="只看还有可借 unit 的工具"),
        category_id: Optional[int] = Query(None, ge=1),
        limit: int = Query(get_settings().default_page_limit, ge=1, le=200),
        offset: int = Query(0, ge=0),
        sort: str = Query(
            "id_desc",
            description="排序：id_desc/id_asc/name_asc/name_desc/available_asc/available_desc",
        ),
        session: Session = Depends(get_session),
):
    order_map = {
        "id_desc": Tool.id.desc(),
        "id_asc": Tool.id.asc(),
        "name_asc": Tool.name.asc(),
        "name_desc": Tool.name.desc(),
        "available_asc": Tool.available_quantity.asc(),
        "available_desc": Tool.available_quantity.desc(),
    }
    if sort not in order_map:
        abort(400, "BAD_REQUEST", f"unsupported sort: {sort}")

    items, total = inventory.list_tools(
        session,
        q=q,
        available_only=available_only,
        category_id=category_id,
        order_by=order_map[sort],
        limit=limit,
        offset=offset,
    )
    return {
        "items": [_tool_list_item(t) for t in items],
        "total": total,
        "limit": limit,
        "offset": offset,
        "q": q,
    }


@router.patch("/units/{unit_id}", response_model=ToolUnitRead)
def update_unit(
        unit_id: int,
        body: ToolUnitUpdate,
        session: Session = Depends(get_session),
        clock: Clock = Depends(get_clock),
):
    return inventory.update_unit(session, unit_id, body, clock.now())


@router.get("/units/{unit_id}/history", response_model=list[UnitHistoryEntry])
def unit_history(
        unit_id: int,
        session: Session = Depends(get_session),
        clock: Clock = Depends(get_clock),
):
    # 借用单状态要先过一遍逾期检查
    borrowing.run_overdue_sweep(session, clock.now())
    return [
        UnitHistoryEntry(
            borrowing_item_unit_id=iu.id,
            borrowing_id=txn.id,
            borrowing_display_id=txn.display_id,
            borrower_name=txn.borrower_name,
            status=txn.status,
            borrow_date=txn.borrow_date,
            due_date=txn.due_date,
            condition=iu.condition,
            return_condition=iu.return_condition,
            return_date=iu.return_date,
        )
        for iu, txn in inventory.unit_history(session, unit_id)
    ]


@router.get("/{tool_id}", response_model=ToolRead)
def get_tool(tool_id: int, session: Session = Depends(get_session)):
    return _tool_read(inventory.get_tool(session, tool_id))
