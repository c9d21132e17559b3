from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from stockroom.clock import Clock
from stockroom.config import get_settings
from stockroom.db import get_session
from stockroom.deps import get_clock
from stockroom.schemas import ConsumptionCreate, ConsumptionListResponse, ConsumptionRead, ListSort
from stockroom.services import consumption

router = APIRouter(prefix="/consumptions", tags=["consumptions"])


@router.post("", response_model=ConsumptionRead, status_code=201)
def create_consumption(
        data: ConsumptionCreate,
        session: Session = Depends(get_session),
        clock: Clock = Depends(get_clock),
):
    txn = consumption.create_consumption(session, data, clock.now())
    return consumption.present_consumption(txn)


@router.get("", response_model=ConsumptionListResponse)
def list_consumptions(
        q: Optional[str] = Query(None, description="按领用人/用途/项目搜索"),
        project_name: Optional[str] = Query(None, min_length=1),
        sort: ListSort = Query(ListSort.created_desc),
        limit: int = Query(get_settings().default_page_limit, ge=1, le=200),
        offset: int = Query(0, ge=0),
        session: Session = Depends(get_session),
):
    items, total = consumption.list_consumptions(
        session, q=q, project_name=project_name, sort=sort, limit=limit, offset=offset
    )
    return {
        "items": [consumption.present_consumption(t) for t in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/{consumption_id}", response_model=ConsumptionRead)
def get_consumption(consumption_id: int, session: Session = Depends(get_session)):
    return consumption.present_consumption(consumption.get_consumption(session, consumption_id))


@router.delete("/{consumption_id}")
def delete_consumption(
        consumption_id: int,
        actor_name: Optional[str] = Query(None, max_length=100),
        session: Session = Depends(get_session),
        clock: Clock = Depends(get_clock),
):
    consumption.reverse_consumption(session, consumption_id, clock.now(), actor_name=actor_name)
    return {"ok": True}
