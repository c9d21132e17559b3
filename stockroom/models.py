from typing import Optional
from decimal import Decimal
from datetime import datetime, timezone
from sqlalchemy import CheckConstraint, Column, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship

from stockroom.schemas import BorrowingStatus, ToolCondition


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Category(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("name", "type", name="uq_category_name_type"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    type: str                          # TOOL / MATERIAL
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Tool(SQLModel, table=True):
    __table_args__ = (
        CheckConstraint(
            "available_quantity >= 0 AND available_quantity <= total_quantity",
            name="ck_tool_available_range",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    display_id: Optional[str] = Field(default=None, index=True, unique=True)
    name: str = Field(index=True)
    category_id: Optional[int] = Field(default=None, foreign_key="category.id", index=True)

    total_quantity: int                         # 建好后不再变
    available_quantity: int = Field(index=True)  # 冗余字段，必须等于可用 unit 数

    location: Optional[str] = None
    supplier: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    units: list["ToolUnit"] = Relationship(
        back_populates="tool",
        sa_relationship_kwargs={"order_by": "ToolUnit.unit_number"},
    )


class ToolUnit(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("tool_id", "unit_number", name="uq_toolunit_tool_number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    tool_id: int = Field(foreign_key="tool.id", index=True)
    unit_number: int
    condition: str = Field(default=ToolCondition.GOOD.value)
    is_available: bool = Field(default=True, index=True)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    tool: Optional[Tool] = Relationship(back_populates="units")


class Material(SQLModel, table=True):
    __table_args__ = (CheckConstraint("current_quantity >= 0", name="ck_material_non_negative"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    display_id: Optional[str] = Field(default=None, index=True, unique=True)
    name: str = Field(index=True)
    category_id: Optional[int] = Field(default=None, foreign_key="category.id", index=True)

    current_quantity: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=3)
    threshold_quantity: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=3)
    unit: str
    unit_price: Optional[Decimal] = Field(default=None, max_digits=14, decimal_places=2)

    location: Optional[str] = None
    supplier: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class BorrowingTransaction(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    display_id: Optional[str] = Field(default=None, index=True, unique=True)

    borrower_name: str = Field(index=True)
    borrow_date: datetime
    due_date: datetime = Field(index=True)
    return_date: Optional[datetime] = None
    status: str = Field(default=BorrowingStatus.ACTIVE.value, index=True)
    purpose: str
    notes: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    items: list["BorrowingItem"] = Relationship(
        back_populates="transaction",
        sa_relationship_kwargs={"order_by": "BorrowingItem.id"},
    )


class BorrowingItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    borrowing_transaction_id: int = Field(foreign_key="borrowingtransaction.id", index=True)
    tool_id: int = Field(foreign_key="tool.id", index=True)
    quantity: int
    notes: Optional[str] = None
    return_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    transaction: Optional[BorrowingTransaction] = Relationship(back_populates="items")
    tool: Optional[Tool] = Relationship()
    units: list["BorrowingItemUnit"] = Relationship(
        back_populates="item",
        sa_relationship_kwargs={"order_by": "BorrowingItemUnit.id"},
    )


class BorrowingItemUnit(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    borrowing_item_id: int = Field(foreign_key="borrowingitem.id", index=True)
    tool_unit_id: int = Field(foreign_key="toolunit.id", index=True)

    condition: str                           # 借出时的成色
    return_condition: Optional[str] = None
    return_date: Optional[datetime] = None
    notes: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    item: Optional[BorrowingItem] = Relationship(back_populates="units")
    tool_unit: Optional[ToolUnit] = Relationship()


class ConsumptionTransaction(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    display_id: Optional[str] = Field(default=None, index=True, unique=True)

    consumer_name: str = Field(index=True)
    consumption_date: datetime
    purpose: str
    project_name: Optional[str] = Field(default=None, index=True)
    notes: Optional[str] = None
    total_value: Optional[Decimal] = Field(default=None, max_digits=16, decimal_places=2)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    items: list["ConsumptionItem"] = Relationship(
        back_populates="transaction",
        sa_relationship_kwargs={"order_by": "ConsumptionItem.id"},
    )


class ConsumptionItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    consumption_transaction_id: int = Field(foreign_key="consumptiontransaction.id", index=True)
    material_id: int = Field(foreign_key="material.id", index=True)

    quantity: Decimal = Field(max_digits=14, decimal_places=3)   # 冲销时按这个数量还回去
    unit_price: Optional[Decimal] = Field(default=None, max_digits=14, decimal_places=2)
    total_value: Optional[Decimal] = Field(default=None, max_digits=16, decimal_places=2)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    transaction: Optional[ConsumptionTransaction] = Relationship(back_populates="items")
    material: Optional[Material] = Relationship()


class ActivityLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)

    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    action: str = Field(index=True)
    actor_name: Optional[str] = Field(default=None, index=True)

    before: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    after: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    meta: Optional[dict] = Field(default=None, sa_column=Column("metadata", JSON))

    created_at: datetime = Field(default_factory=utcnow, index=True)


class DisplaySequence(SQLModel, table=True):
    # 每个前缀一行计数器，例如 "TL"、"BR-2024"
    name: str = Field(primary_key=True)
    value: int = Field(default=0)
