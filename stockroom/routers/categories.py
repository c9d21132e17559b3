from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from stockroom.clock import Clock
from stockroom.db import get_session
from stockroom.deps import get_clock
from stockroom.schemas import CategoryCreate, CategoryRead, ItemType
from stockroom.services import inventory

router = APIRouter(prefix="/categories", tags=["categories"])


@router.post("", response_model=CategoryRead, status_code=201)
def create_category(
        data: CategoryCreate,
        session: Session = Depends(get_session),
        clock: Clock = Depends(get_clock),
):
    return inventory.create_category(session, data, clock.now())


@router.get("", response_model=list[CategoryRead])
def list_categories(
        type: Optional[ItemType] = Query(None, description="TOOL / MATERIAL"),
        session: Session = Depends(get_session),
):
    return inventory.list_categories(session, type.value if type else None)
