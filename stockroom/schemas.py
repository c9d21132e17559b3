from typing import Optional, Any
from enum import Enum
from decimal import Decimal
from pydantic import BaseModel, Field, model_validator
from datetime import datetime


class ToolCondition(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"


# 数值越大成色越好
CONDITION_RANK = {
    ToolCondition.EXCELLENT: 4,
    ToolCondition.GOOD: 3,
    ToolCondition.FAIR: 2,
    ToolCondition.POOR: 1,
}


def condition_rank(condition: str) -> int:
    return CONDITION_RANK[ToolCondition(condition)]


class BorrowingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


OPEN_STATUSES = (BorrowingStatus.ACTIVE.value, BorrowingStatus.OVERDUE.value)


class ItemType(str, Enum):
    TOOL = "TOOL"
    MATERIAL = "MATERIAL"


class StockStatus(str, Enum):
    out = "out"
    low = "low"
    normal = "normal"


class StockAction(str, Enum):
    IN = "IN"
    OUT = "OUT"
    ADJUST = "ADJUST"


class ActivityAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    BORROW = "BORROW"
    RETURN = "RETURN"
    EXTEND = "EXTEND"
    CONSUME = "CONSUME"


class EntityType(str, Enum):
    CATEGORY = "CATEGORY"
    TOOL = "TOOL"
    MATERIAL = "MATERIAL"
    BORROWING_TRANSACTION = "BORROWING_TRANSACTION"
    CONSUMPTION_TRANSACTION = "CONSUMPTION_TRANSACTION"


class ListSort(str, Enum):
    id_desc = "id_desc"
    id_asc = "id_asc"
    created_desc = "created_desc"
    created_asc = "created_asc"


# ---------- categories ----------

class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: ItemType
    description: Optional[str] = None


class CategoryRead(BaseModel):
    id: int
    name: str
    type: ItemType
    description: Optional[str] = None


# ---------- tools ----------

class ToolCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    category_id: Optional[int] = None
    total_quantity: int = Field(..., ge=1, le=1000)
    condition: ToolCondition = ToolCondition.GOOD
    location: Optional[str] = None
    supplier: Optional[str] = None
    notes: Optional[str] = None
    actor_name: Optional[str] = None


class ToolUnitUpdate(BaseModel):
    condition: Optional[ToolCondition] = None
    notes: Optional[str] = None
    actor_name: Optional[str] = None


class ToolUnitRead(BaseModel):
    id: int
    tool_id: int
    unit_number: int
    condition: ToolCondition
    is_available: bool
    notes: Optional[str] = None


class ToolRead(BaseModel):
    id: int
    display_id: Optional[str] = None
    name: str
    category_id: Optional[int] = None
    total_quantity: int
    available_quantity: int
    condition: Optional[ToolCondition] = None
    location: Optional[str] = None
    supplier: Optional[str] = None
    notes: Optional[str] = None
    updated_at: datetime
    units: list[ToolUnitRead] = []


class ToolListItem(BaseModel):
    id: int
    display_id: Optional[str] = None
    name: str
    location: Optional[str] = None
    total_quantity: int
    available_quantity: int
    condition: Optional[ToolCondition] = None


class ToolListResponse(BaseModel):
    items: list[ToolListItem]
    total: int
    limit: int
    offset: int
    q: Optional[str] = None


class UnitHistoryEntry(BaseModel):
    borrowing_item_unit_id: int
    borrowing_id: int
    borrowing_display_id: Optional[str] = None
    borrower_name: str
    status: BorrowingStatus
    borrow_date: datetime
    due_date: datetime
    condition: ToolCondition
    return_condition: Optional[ToolCondition] = None
    return_date: Optional[datetime] = None


# ---------- materials ----------

class MaterialCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    category_id: Optional[int] = None
    current_quantity: Decimal = Field(..., ge=0)
    threshold_quantity: Decimal = Field(..., ge=0)
    unit: str = Field(..., min_length=1, max_length=20)
    unit_price: Optional[Decimal] = Field(None, ge=0)
    location: Optional[str] = None
    supplier: Optional[str] = None
    notes: Optional[str] = None
    actor_name: Optional[str] = None


class MaterialStockUpdate(BaseModel):
    action: StockAction = Field(..., description="IN/OUT/ADJUST")
    quantity: Decimal = Field(..., ge=0, description="IN/OUT=变更量(>0)，ADJUST=目标库存(>=0)")
    note: Optional[str] = None
    actor_name: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"action": "IN", "quantity": 50, "note": "restock"},
                {"action": "OUT", "quantity": 2.5},
                {"action": "ADJUST", "quantity": 0, "note": "stock-take"},
            ]
        }
    }


class MaterialRead(BaseModel):
    id: int
    display_id: Optional[str] = None
    name: str
    category_id: Optional[int] = None
    current_quantity: float
    threshold_quantity: float
    unit: str
    unit_price: Optional[float] = None
    location: Optional[str] = None
    supplier: Optional[str] = None
    stock_status: StockStatus
    updated_at: datetime


class MaterialListResponse(BaseModel):
    items: list[MaterialRead]
    total: int
    limit: int
    offset: int
    q: Optional[str] = None


# ---------- borrowings ----------

class BorrowingItemCreate(BaseModel):
    tool_id: int
    unit_ids: Optional[list[int]] = Field(None, min_length=1)
    quantity: Optional[int] = Field(None, ge=1)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _units_or_quantity(self):
        if (self.unit_ids is None) == (self.quantity is None):
            raise ValueError("give either unit_ids or quantity")
        if self.unit_ids is not None and len(set(self.unit_ids)) != len(self.unit_ids):
            raise ValueError("unit_ids contains duplicates")
        return self


class BorrowingCreate(BaseModel):
    borrower_name: str = Field(..., min_length=1, max_length=100)
    due_date: datetime
    purpose: str = Field(..., min_length=1, max_length=500)
    notes: Optional[str] = None
    items: list[BorrowingItemCreate] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _one_line_per_tool(self):
        tool_ids = [i.tool_id for i in self.items]
        if len(set(tool_ids)) != len(tool_ids):
            raise ValueError("each tool may appear only once")
        return self


class UnitReturn(BaseModel):
    borrowing_item_unit_id: int
    return_condition: ToolCondition
    notes: Optional[str] = None


class ItemReturn(BaseModel):
    borrowing_item_id: int
    return_condition: ToolCondition
    notes: Optional[str] = None


class BorrowingReturn(BaseModel):
    units: list[UnitReturn] = []
    items: list[ItemReturn] = []
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _something_to_return(self):
        if not self.units and not self.items:
            raise ValueError("at least one unit or item is required")
        return self


class BorrowingExtend(BaseModel):
    new_due_date: datetime
    reason: str = Field(..., min_length=1, max_length=500)


class BorrowingItemUnitRead(BaseModel):
    id: int
    tool_unit_id: int
    unit_number: int
    condition: ToolCondition
    return_condition: Optional[ToolCondition] = None
    return_date: Optional[datetime] = None
    notes: Optional[str] = None


class BorrowingItemRead(BaseModel):
    id: int
    tool_id: int
    tool_name: str
    quantity: int
    notes: Optional[str] = None
    return_date: Optional[datetime] = None
    units: list[BorrowingItemUnitRead]


class BorrowingRead(BaseModel):
    id: int
    display_id: Optional[str] = None
    borrower_name: str
    borrow_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    status: BorrowingStatus
    purpose: str
    notes: Optional[str] = None
    items: list[BorrowingItemRead]
    is_overdue: bool
    days_overdue: int
    total_units: int
    units_returned: int
    can_extend: bool


class BorrowingListResponse(BaseModel):
    items: list[BorrowingRead]
    total: int
    limit: int
    offset: int


class ReturnResult(BaseModel):
    borrowing: BorrowingRead
    returned_units: list[BorrowingItemUnitRead]
    all_returned: bool


# ---------- consumptions ----------

class ConsumptionItemCreate(BaseModel):
    material_id: int
    quantity: Decimal = Field(..., gt=0)
    unit_price: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None


class ConsumptionCreate(BaseModel):
    consumer_name: str = Field(..., min_length=1, max_length=100)
    purpose: str = Field(..., min_length=1, max_length=500)
    project_name: Optional[str] = None
    notes: Optional[str] = None
    items: list[ConsumptionItemCreate] = Field(..., min_length=1)


class ConsumptionItemRead(BaseModel):
    id: int
    material_id: int
    material_name: str
    unit: str
    quantity: float
    unit_price: Optional[float] = None
    total_value: Optional[float] = None
    notes: Optional[str] = None


class ConsumptionRead(BaseModel):
    id: int
    display_id: Optional[str] = None
    consumer_name: str
    consumption_date: datetime
    purpose: str
    project_name: Optional[str] = None
    notes: Optional[str] = None
    total_value: Optional[float] = None
    created_at: datetime
    items: list[ConsumptionItemRead]
    total_items: int
    total_quantity: float


class ConsumptionListResponse(BaseModel):
    items: list[ConsumptionRead]
    total: int
    limit: int
    offset: int


# ---------- activity log ----------

class ActivityRead(BaseModel):
    id: int
    entity_type: EntityType
    entity_id: str
    action: ActivityAction
    actor_name: Optional[str] = None
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    meta: Optional[dict[str, Any]] = None
    created_at: datetime


class ActivityListResponse(BaseModel):
    items: list[ActivityRead]
    total: int
    limit: int
    offset: int
