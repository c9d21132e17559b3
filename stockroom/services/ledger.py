from datetime import datetime
from decimal import Decimal
from sqlmodel import Session

from stockroom.db import atomic
from stockroom.error import InsufficientStock, StockroomError, fmt_qty
from stockroom.models import Material
from stockroom.schemas import ActivityAction, EntityType, MaterialStockUpdate, StockAction
from stockroom.services import reservation
from stockroom.services.activity import record_activity
from stockroom.services.inventory import get_material


class InvalidDelta(StockroomError):
    code = "INVALID_DELTA"


class NoChange(StockroomError):
    code = "NO_CHANGE"


def calc_signed_delta_and_new_qty(
    action: StockAction, quantity: Decimal, old_qty: Decimal, material_name: str = ""
) -> tuple[Decimal, Decimal]:
    # 统一口径：IN/OUT quantity>0，ADJUST quantity>=0(目标库存)
    if action in (StockAction.IN, StockAction.OUT) and quantity <= 0:
        raise InvalidDelta("IN/OUT quantity must be > 0")

    if action == StockAction.ADJUST and quantity < 0:
        raise InvalidDelta("ADJUST quantity must be >= 0 (target stock)")

    if action == StockAction.IN:
        signed_delta = quantity
        new_qty = old_qty + quantity
    elif action == StockAction.OUT:
        signed_delta = -quantity
        new_qty = old_qty - quantity
    else:  # ADJUST：quantity 是目标库存
        new_qty = quantity
        signed_delta = new_qty - old_qty

    if new_qty < 0:
        raise InsufficientStock(material_name, old_qty, quantity)

    if signed_delta == 0:
        raise NoChange("Quantity unchanged, nothing to submit")

    return signed_delta, new_qty


def build_note(
    action: StockAction,
    quantity: Decimal,
    old_qty: Decimal,
    new_qty: Decimal,
    note: str | None,
) -> str:
    note_clean = (note or "").strip()
    if note_clean:
        return note_clean

    if action == StockAction.IN:
        return f"Restock +{fmt_qty(quantity)} ({fmt_qty(old_qty)}->{fmt_qty(new_qty)})"
    if action == StockAction.OUT:
        return f"Stock out {fmt_qty(quantity)} ({fmt_qty(old_qty)}->{fmt_qty(new_qty)})"
    # ADJUST：quantity 是目标库存
    return f"Stock-take adjusted to {fmt_qty(quantity)} ({fmt_qty(old_qty)}->{fmt_qty(new_qty)})"


def apply_stock_movement(session: Session, material_id: int, body: MaterialStockUpdate, now: datetime) -> Material:
    with atomic(session):
        material = get_material(session, material_id)
        old_qty = material.current_quantity
        signed_delta, new_qty = calc_signed_delta_and_new_qty(body.action, body.quantity, old_qty, material.name)

        if body.action == StockAction.IN:
            reservation.release_material(session, material.id, body.quantity, now)
        elif body.action == StockAction.OUT:
            reservation.reserve_material(session, material.id, body.quantity, now)
        else:
            reservation.adjust_material_stock(session, material.id, new_qty, now)

        record_activity(
            session, EntityType.MATERIAL, material.id, ActivityAction.UPDATE,
            actor_name=body.actor_name,
            before={"current_quantity": fmt_qty(old_qty)},
            after={"current_quantity": fmt_qty(new_qty)},
            metadata={
                "action": body.action.value,
                "delta": fmt_qty(signed_delta),
                "note": build_note(body.action, body.quantity, old_qty, new_qty, body.note),
            },
            occurred_at=now,
        )

    session.refresh(material)
    return material
