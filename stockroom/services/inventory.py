import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from stockroom.db import atomic
from stockroom.error import NotFound, StockroomError
from stockroom.models import (
    BorrowingItem,
    BorrowingItemUnit,
    BorrowingTransaction,
    Category,
    Material,
    Tool,
    ToolUnit,
)
from stockroom.schemas import (
    ActivityAction,
    CategoryCreate,
    EntityType,
    MaterialCreate,
    StockStatus,
    ToolCondition,
    ToolCreate,
    ToolUnitUpdate,
    condition_rank,
)
from stockroom.services.activity import record_activity, snapshot
from stockroom.services.sequence import MATERIAL_PREFIX, TOOL_PREFIX, next_display_id

logger = logging.getLogger(__name__)


class DuplicateCategory(StockroomError):
    status_code = 409
    code = "CATEGORY_EXISTS"


def worst_condition(conditions: Iterable[str]) -> Optional[ToolCondition]:
    ranked = [ToolCondition(c) for c in conditions]
    if not ranked:
        return None
    return min(ranked, key=condition_rank)


def displayed_condition(tool: Tool) -> Optional[ToolCondition]:
    # 工具的成色不单独存，取所有 unit 里最差的那个
    return worst_condition(u.condition for u in tool.units)


def stock_status(current: Decimal, threshold: Decimal) -> StockStatus:
    if current <= 0:
        return StockStatus.out
    if current <= threshold:
        return StockStatus.low
    return StockStatus.normal


# ---------- categories ----------

def create_category(session: Session, data: CategoryCreate, now: datetime) -> Category:
    category = Category(
        name=data.name.strip(),
        type=data.type.value,
        description=data.description,
        created_at=now,
    )
    try:
        with atomic(session):
            session.add(category)
            session.flush()
            record_activity(
                session, EntityType.CATEGORY, category.id, ActivityAction.CREATE,
                after=snapshot(category), occurred_at=now,
            )
    except IntegrityError:
        raise DuplicateCategory(f"Category already exists: {data.name} ({data.type.value})")
    session.refresh(category)
    return category


def list_categories(session: Session, item_type: str | None = None) -> list[Category]:
    stmt = select(Category).order_by(Category.name.asc())
    if item_type:
        stmt = stmt.where(Category.type == item_type)
    return list(session.exec(stmt).all())


def _check_category(session: Session, category_id: int | None) -> None:
    if category_id is not None and session.get(Category, category_id) is None:
        raise NotFound("Category", category_id)


# ---------- tools ----------

def create_tool(session: Session, data: ToolCreate, now: datetime) -> Tool:
    _check_category(session, data.category_id)

    with atomic(session):
        tool = Tool(
            display_id=next_display_id(session, TOOL_PREFIX),
            name=data.name.strip(),
            category_id=data.category_id,
            total_quantity=data.total_quantity,
            available_quantity=data.total_quantity,
            location=data.location,
            supplier=data.supplier,
            notes=data.notes,
            created_at=now,
            updated_at=now,
        )
        session.add(tool)
        session.flush()  # 生成 tool.id

        for number in range(1, data.total_quantity + 1):
            session.add(
                ToolUnit(
                    tool_id=tool.id,
                    unit_number=number,
                    condition=data.condition.value,
                    is_available=True,
                    created_at=now,
                    updated_at=now,
                )
            )
        session.flush()

        record_activity(
            session, EntityType.TOOL, tool.id, ActivityAction.CREATE,
            actor_name=data.actor_name, after=snapshot(tool),
            metadata={"units": data.total_quantity, "condition": data.condition.value},
            occurred_at=now,
        )

    session.refresh(tool)
    return tool


def get_tool(session: Session, tool_id: int) -> Tool:
    tool = session.get(Tool, tool_id)
    if not tool:
        raise NotFound("Tool", tool_id)
    return tool


def list_tools(
    session: Session,
    q: str | None = None,
    available_only: bool = False,
    category_id: int | None = None,
    order_by=None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Tool], int]:
    conds = []
    if q:
        conds.append(or_(Tool.name.contains(q), Tool.location.contains(q), Tool.display_id.contains(q)))
    if available_only:
        conds.append(Tool.available_quantity > 0)
    if category_id is not None:
        conds.append(Tool.category_id == category_id)

    count_stmt = select(func.count()).select_from(Tool)
    items_stmt = select(Tool)
    if conds:
        count_stmt = count_stmt.where(*conds)
        items_stmt = items_stmt.where(*conds)

    total = session.exec(count_stmt).one()
    items = session.exec(
        items_stmt.order_by(order_by if order_by is not None else Tool.id.desc()).offset(offset).limit(limit)
    ).all()
    return list(items), total


def get_unit(session: Session, unit_id: int) -> ToolUnit:
    unit = session.get(ToolUnit, unit_id)
    if not unit:
        raise NotFound("Tool unit", unit_id)
    return unit


def update_unit(session: Session, unit_id: int, data: ToolUnitUpdate, now: datetime) -> ToolUnit:
    """
    Manual maintenance of a unit: condition and notes only.

    This is the one path where a condition may go *up* (e.g. after a repair).
    Availability is owned by the reservation engine and is not writable here.
    """
    with atomic(session):
        unit = get_unit(session, unit_id)
        before = snapshot(unit)
        if data.condition is not None:
            unit.condition = data.condition.value
        if data.notes is not None:
            unit.notes = data.notes
        unit.updated_at = now
        session.add(unit)
        session.flush()
        record_activity(
            session, EntityType.TOOL, unit.tool_id, ActivityAction.UPDATE,
            actor_name=data.actor_name, before=before, after=snapshot(unit),
            metadata={"tool_unit_id": unit.id, "unit_number": unit.unit_number},
            occurred_at=now,
        )
    session.refresh(unit)
    return unit


def unit_history(session: Session, unit_id: int) -> list[tuple[BorrowingItemUnit, BorrowingTransaction]]:
    get_unit(session, unit_id)
    stmt = (
        select(BorrowingItemUnit, BorrowingTransaction)
        .join(BorrowingItem, BorrowingItem.id == BorrowingItemUnit.borrowing_item_id)
        .join(BorrowingTransaction, BorrowingTransaction.id == BorrowingItem.borrowing_transaction_id)
        .where(BorrowingItemUnit.tool_unit_id == unit_id)
        .order_by(BorrowingItemUnit.id.desc())
    )
    return list(session.exec(stmt).all())


# ---------- materials ----------

def create_material(session: Session, data: MaterialCreate, now: datetime) -> Material:
    _check_category(session, data.category_id)

    with atomic(session):
        material = Material(
            display_id=next_display_id(session, MATERIAL_PREFIX),
            name=data.name.strip(),
            category_id=data.category_id,
            current_quantity=data.current_quantity,
            threshold_quantity=data.threshold_quantity,
            unit=data.unit,
            unit_price=data.unit_price,
            location=data.location,
            supplier=data.supplier,
            notes=data.notes,
            created_at=now,
            updated_at=now,
        )
        session.add(material)
        session.flush()
        record_activity(
            session, EntityType.MATERIAL, material.id, ActivityAction.CREATE,
            actor_name=data.actor_name, after=snapshot(material), occurred_at=now,
        )

    session.refresh(material)
    return material


def get_material(session: Session, material_id: int) -> Material:
    material = session.get(Material, material_id)
    if not material:
        raise NotFound("Material", material_id)
    return material


def list_materials(
    session: Session,
    q: str | None = None,
    status: StockStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Material], int]:
    conds = []
    if q:
        conds.append(or_(Material.name.contains(q), Material.location.contains(q), Material.display_id.contains(q)))
    if status == StockStatus.out:
        conds.append(Material.current_quantity <= 0)
    elif status == StockStatus.low:
        conds.append(Material.current_quantity > 0)
        conds.append(Material.current_quantity <= Material.threshold_quantity)
    elif status == StockStatus.normal:
        conds.append(Material.current_quantity > Material.threshold_quantity)

    count_stmt = select(func.count()).select_from(Material)
    items_stmt = select(Material)
    if conds:
        count_stmt = count_stmt.where(*conds)
        items_stmt = items_stmt.where(*conds)

    total = session.exec(count_stmt).one()
    items = session.exec(items_stmt.order_by(Material.id.desc()).offset(offset).limit(limit)).all()
    return list(items), total
