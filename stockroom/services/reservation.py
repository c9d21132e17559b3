"""
Reservation engine.

The only code allowed to write ``ToolUnit.is_available``,
``Tool.available_quantity`` and ``Material.current_quantity``.

Every write is a conditional UPDATE whose WHERE clause re-checks the
precondition and whose row count is verified: a unit must still be
available, and a material row must still hold the quantity the new value was
computed from. Under read-committed or stronger isolation the second of two
racing requests sees the first one's committed effect and matches fewer
rows, so it fails (or re-reads stock) instead of double-booking. Callers run
these functions inside ``db.atomic`` so a failure rolls back the whole unit
of work.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from sqlalchemy import update
from sqlmodel import Session, select

from stockroom.error import InsufficientAvailability, InsufficientStock, NotFound, StockroomError
from stockroom.models import BorrowingItem, BorrowingItemUnit, Material, Tool, ToolUnit
from stockroom.schemas import ToolCondition, condition_rank

logger = logging.getLogger(__name__)


class UnitNotReserved(StockroomError):
    status_code = 409
    code = "UNIT_NOT_RESERVED"


class StockInvariantViolation(StockroomError):
    status_code = 409
    code = "STOCK_INVARIANT_VIOLATION"


@dataclass
class UnitRelease:
    borrowing_item_unit_id: int
    condition: ToolCondition
    notes: Optional[str] = None


def _conditional_update(session: Session, stmt) -> int:
    # 不让 ORM 去同步内存对象，调用方自己 expire；rowcount 才是可信的
    result = session.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount


def _downgraded(current: str, returned: ToolCondition) -> str:
    # 成色只会在归还时变差，不会自动变好
    if condition_rank(returned) < condition_rank(current):
        return returned.value
    return current


# ---------- tool units ----------

def reserve_tool_units(
    session: Session,
    borrowing_transaction_id: int,
    tool_id: int,
    now: datetime,
    unit_ids: list[int] | None = None,
    quantity: int | None = None,
    notes: str | None = None,
) -> BorrowingItem:
    """
    Take units of one tool out of circulation for a borrowing transaction.

    Either ``unit_ids`` (explicit units) or ``quantity`` (engine picks the
    lowest-numbered available units). All or nothing: a shortfall raises
    ``InsufficientAvailability`` and nothing is reserved. On success one
    BorrowingItem is created with one BorrowingItemUnit per unit, each
    recording the unit's condition at the time of borrowing.
    """
    tool = session.get(Tool, tool_id)
    if not tool:
        raise NotFound("Tool", tool_id)

    if unit_ids is not None:
        requested = len(unit_ids)
        owned = set(
            session.exec(
                select(ToolUnit.id).where(ToolUnit.tool_id == tool.id, ToolUnit.id.in_(unit_ids))
            ).all()
        )
        foreign = [uid for uid in unit_ids if uid not in owned]
        if foreign:
            raise NotFound(f"Unit of tool {tool.name}", ", ".join(map(str, foreign)))

        stmt = (
            select(ToolUnit)
            .where(
                ToolUnit.tool_id == tool.id,
                ToolUnit.id.in_(unit_ids),
                ToolUnit.is_available == True,  # noqa: E712
            )
            .order_by(ToolUnit.unit_number)
        )
    else:
        requested = quantity or 0
        stmt = (
            select(ToolUnit)
            .where(ToolUnit.tool_id == tool.id, ToolUnit.is_available == True)  # noqa: E712
            .order_by(ToolUnit.unit_number)
            .limit(requested)
        )

    candidates = list(session.exec(stmt).all())
    if requested <= 0 or len(candidates) < requested:
        logger.info("reservation rejected: tool=%s available=%s requested=%s", tool.id, len(candidates), requested)
        raise InsufficientAvailability(tool.name, available=len(candidates), requested=requested)

    ids = [u.id for u in candidates]
    flipped = _conditional_update(
        session,
        update(ToolUnit)
        .where(ToolUnit.id.in_(ids), ToolUnit.is_available == True)  # noqa: E712
        .values(is_available=False, updated_at=now),
    )
    if flipped != len(ids):
        # 并发请求抢先拿走了其中的 unit，整个工作单元回滚
        logger.info("reservation lost race: tool=%s flipped=%s requested=%s", tool.id, flipped, requested)
        raise InsufficientAvailability(tool.name, available=flipped, requested=requested)

    counted = _conditional_update(
        session,
        update(Tool)
        .where(Tool.id == tool.id, Tool.available_quantity >= len(ids))
        .values(available_quantity=Tool.available_quantity - len(ids), updated_at=now),
    )
    if counted != 1:
        raise StockInvariantViolation(f"available quantity of {tool.name} is out of sync with its units")

    for unit in candidates:
        session.expire(unit, ["is_available", "updated_at"])
    session.expire(tool, ["available_quantity", "updated_at"])

    item = BorrowingItem(
        borrowing_transaction_id=borrowing_transaction_id,
        tool_id=tool.id,
        quantity=len(candidates),
        notes=notes,
        created_at=now,
    )
    session.add(item)
    session.flush()  # 生成 item.id

    for unit in candidates:
        session.add(
            BorrowingItemUnit(
                borrowing_item_id=item.id,
                tool_unit_id=unit.id,
                condition=unit.condition,
                created_at=now,
                updated_at=now,
            )
        )
    session.flush()
    return item


def release_tool_units(session: Session, releases: list[UnitRelease], now: datetime) -> list[BorrowingItemUnit]:
    """
    Put borrowed units back into circulation (return or cancel).

    Records the return condition and date on each BorrowingItemUnit, lowers the
    unit's own condition when it came back worse, and gives the counts back to
    each tool.
    """
    released: list[BorrowingItemUnit] = []
    per_tool: Counter[int] = Counter()

    for rel in releases:
        item_unit = session.get(BorrowingItemUnit, rel.borrowing_item_unit_id)
        if not item_unit:
            raise NotFound("Borrowed unit", rel.borrowing_item_unit_id)
        unit = item_unit.tool_unit

        flipped = _conditional_update(
            session,
            update(ToolUnit)
            .where(ToolUnit.id == unit.id, ToolUnit.is_available == False)  # noqa: E712
            .values(
                is_available=True,
                condition=_downgraded(unit.condition, rel.condition),
                updated_at=now,
            ),
        )
        if flipped != 1:
            raise UnitNotReserved(f"Unit #{unit.unit_number} of tool {unit.tool_id} is not out on loan")
        session.expire(unit, ["is_available", "condition", "updated_at"])

        item_unit.return_condition = rel.condition.value
        item_unit.return_date = now
        if rel.notes is not None:
            item_unit.notes = rel.notes
        item_unit.updated_at = now
        session.add(item_unit)

        per_tool[unit.tool_id] += 1
        released.append(item_unit)

    for tool_id, count in per_tool.items():
        counted = _conditional_update(
            session,
            update(Tool)
            .where(Tool.id == tool_id, Tool.available_quantity + count <= Tool.total_quantity)
            .values(available_quantity=Tool.available_quantity + count, updated_at=now),
        )
        if counted != 1:
            raise StockInvariantViolation(f"available quantity of tool {tool_id} would exceed its total")
        tool = session.get(Tool, tool_id)
        session.expire(tool, ["available_quantity", "updated_at"])

    session.flush()
    return released


# ---------- material stock ----------

# 与 Material.current_quantity 的 decimal_places 保持一致
QUANTITY_STEP = Decimal("0.001")
CAS_ATTEMPTS = 3


def _quantize(value) -> Decimal:
    return Decimal(value).quantize(QUANTITY_STEP)


def _load_material(session: Session, material_id: int) -> Material:
    material = session.get(Material, material_id)
    if not material:
        raise NotFound("Material", material_id)
    return material


def _swap_quantity(
    session: Session,
    material: Material,
    compute: Callable[[Decimal], Decimal],
    now: datetime,
) -> Material:
    """
    Compare-and-set on ``current_quantity``.

    The new value is computed in Python as a Decimal and written only if the
    row still holds the value it was computed from. SQLite stores Numeric as
    REAL, so arithmetic inside SQL would drift; writing quantized values keeps
    every stored value an exact image of a 3-place decimal. ``compute`` raises
    when the precondition fails (insufficient stock). A lost race re-reads the
    row and re-checks.
    """
    for _ in range(CAS_ATTEMPTS):
        old = _quantize(material.current_quantity)
        new = _quantize(compute(old))
        if new < 0:
            raise StockInvariantViolation(f"stock of {material.name} would become negative")

        counted = _conditional_update(
            session,
            update(Material)
            .where(Material.id == material.id, Material.current_quantity == old)
            .values(current_quantity=new, updated_at=now),
        )
        if counted == 1:
            session.expire(material, ["current_quantity", "updated_at"])
            return material

        logger.info("stock changed underneath: material=%s expected=%s", material.id, old)
        session.refresh(material)

    raise StockInvariantViolation(f"stock of {material.name} kept changing, try again")


def reserve_material(session: Session, material_id: int, quantity: Decimal, now: datetime) -> Material:
    material = _load_material(session, material_id)
    quantity = _quantize(quantity)

    def take(old: Decimal) -> Decimal:
        if old < quantity:
            raise InsufficientStock(material.name, old, quantity, material.unit)
        return old - quantity

    return _swap_quantity(session, material, take, now)


def release_material(session: Session, material_id: int, quantity: Decimal, now: datetime) -> Material:
    material = _load_material(session, material_id)
    quantity = _quantize(quantity)
    return _swap_quantity(session, material, lambda old: old + quantity, now)


def adjust_material_stock(session: Session, material_id: int, target: Decimal, now: datetime) -> Material:
    # 盘点：直接设成目标库存
    material = _load_material(session, material_id)
    return _swap_quantity(session, material, lambda old: target, now)
