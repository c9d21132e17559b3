import logging
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from sqlalchemy import func, or_
from sqlmodel import Session, select

from stockroom.config import get_settings
from stockroom.db import atomic
from stockroom.error import InsufficientStock, NotFound, ReversalWindowExpired, fmt_qty
from stockroom.models import ConsumptionItem, ConsumptionTransaction, Material
from stockroom.schemas import (
    ActivityAction,
    ConsumptionCreate,
    ConsumptionItemRead,
    ConsumptionRead,
    EntityType,
    ListSort,
)
from stockroom.services import reservation
from stockroom.services.activity import record_activity, snapshot
from stockroom.services.sequence import CONSUMPTION_PREFIX, next_yearly_display_id

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def line_total(quantity: Decimal, unit_price: Decimal | None) -> Decimal | None:
    if unit_price is None:
        return None
    return (quantity * unit_price).quantize(CENT, rounding=ROUND_HALF_UP)


def _check_stock(session: Session, data: ConsumptionCreate) -> dict[int, Material]:
    """All lines are checked before anything is decremented."""
    wanted: dict[int, Decimal] = defaultdict(Decimal)
    for line in data.items:
        wanted[line.material_id] += line.quantity

    materials: dict[int, Material] = {}
    for material_id, quantity in wanted.items():
        material = session.get(Material, material_id)
        if not material:
            raise NotFound("Material", material_id)
        if material.current_quantity < quantity:
            raise InsufficientStock(material.name, material.current_quantity, quantity, material.unit)
        materials[material_id] = material
    return materials


def create_consumption(session: Session, data: ConsumptionCreate, now: datetime) -> ConsumptionTransaction:
    with atomic(session):
        materials = _check_stock(session, data)

        totals = [line_total(line.quantity, line.unit_price) for line in data.items]
        priced = [t for t in totals if t is not None]

        txn = ConsumptionTransaction(
            display_id=next_yearly_display_id(session, CONSUMPTION_PREFIX, now),
            consumer_name=data.consumer_name.strip(),
            consumption_date=now,
            purpose=data.purpose,
            project_name=data.project_name,
            notes=data.notes,
            total_value=sum(priced, Decimal("0")) if priced else None,
            created_at=now,
            updated_at=now,
        )
        session.add(txn)
        session.flush()

        for line, total in zip(data.items, totals):
            session.add(
                ConsumptionItem(
                    consumption_transaction_id=txn.id,
                    material_id=line.material_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    total_value=total,
                    notes=line.notes,
                    created_at=now,
                )
            )
            reservation.reserve_material(session, line.material_id, line.quantity, now)
        session.flush()

        record_activity(
            session, EntityType.CONSUMPTION_TRANSACTION, txn.id, ActivityAction.CONSUME,
            actor_name=txn.consumer_name,
            after=snapshot(txn),
            metadata={
                "item_count": len(data.items),
                "materials": [
                    {"material_id": line.material_id, "name": materials[line.material_id].name,
                     "quantity": fmt_qty(line.quantity)}
                    for line in data.items
                ],
            },
            occurred_at=now,
        )

    session.refresh(txn)
    return txn


def reverse_consumption(
    session: Session, consumption_id: int, now: datetime, actor_name: str | None = None
) -> None:
    """Delete a consumption and put every line's recorded quantity back in stock."""
    window_hours = get_settings().reversal_window_hours

    with atomic(session):
        txn = session.get(ConsumptionTransaction, consumption_id)
        if not txn:
            raise NotFound("Consumption transaction", consumption_id)
        if now - txn.created_at > timedelta(hours=window_hours):
            raise ReversalWindowExpired(txn.id, window_hours)

        before = snapshot(txn)
        restored = []
        for item in list(txn.items):
            # 按当时记下的数量还回去，不重新计算
            reservation.release_material(session, item.material_id, item.quantity, now)
            restored.append({"material_id": item.material_id, "quantity": fmt_qty(item.quantity)})
            session.delete(item)
        session.flush()  # 先删明细再删主表

        session.expire(txn, ["items"])
        session.delete(txn)
        session.flush()

        record_activity(
            session, EntityType.CONSUMPTION_TRANSACTION, consumption_id, ActivityAction.DELETE,
            actor_name=actor_name,
            before=before,
            metadata={"restored": restored},
            occurred_at=now,
        )
    logger.info("consumption %s reversed", consumption_id)


def get_consumption(session: Session, consumption_id: int) -> ConsumptionTransaction:
    txn = session.get(ConsumptionTransaction, consumption_id)
    if not txn:
        raise NotFound("Consumption transaction", consumption_id)
    return txn


def list_consumptions(
    session: Session,
    q: str | None = None,
    project_name: str | None = None,
    sort: ListSort = ListSort.created_desc,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ConsumptionTransaction], int]:
    conds = []
    if q:
        conds.append(or_(
            ConsumptionTransaction.consumer_name.contains(q),
            ConsumptionTransaction.purpose.contains(q),
            ConsumptionTransaction.project_name.contains(q),
            ConsumptionTransaction.display_id.contains(q),
        ))
    if project_name:
        conds.append(ConsumptionTransaction.project_name == project_name)

    stmt = select(ConsumptionTransaction)
    count_stmt = select(func.count()).select_from(ConsumptionTransaction)
    if conds:
        stmt = stmt.where(*conds)
        count_stmt = count_stmt.where(*conds)

    order_map = {
        ListSort.id_desc: (ConsumptionTransaction.id.desc(),),
        ListSort.id_asc: (ConsumptionTransaction.id.asc(),),
        ListSort.created_desc: (ConsumptionTransaction.created_at.desc(), ConsumptionTransaction.id.desc()),
        ListSort.created_asc: (ConsumptionTransaction.created_at.asc(), ConsumptionTransaction.id.asc()),
    }
    total = session.exec(count_stmt).one()
    items = session.exec(stmt.order_by(*order_map[sort]).offset(offset).limit(limit)).all()
    return list(items), total


def present_consumption(txn: ConsumptionTransaction) -> ConsumptionRead:
    items = [
        ConsumptionItemRead(
            id=item.id,
            material_id=item.material_id,
            material_name=item.material.name,
            unit=item.material.unit,
            quantity=float(item.quantity),
            unit_price=float(item.unit_price) if item.unit_price is not None else None,
            total_value=float(item.total_value) if item.total_value is not None else None,
            notes=item.notes,
        )
        for item in txn.items
    ]
    return ConsumptionRead(
        id=txn.id,
        display_id=txn.display_id,
        consumer_name=txn.consumer_name,
        consumption_date=txn.consumption_date,
        purpose=txn.purpose,
        project_name=txn.project_name,
        notes=txn.notes,
        total_value=float(txn.total_value) if txn.total_value is not None else None,
        created_at=txn.created_at,
        items=items,
        total_items=len(items),
        total_quantity=float(sum((item.quantity for item in txn.items), Decimal("0"))),
    )
