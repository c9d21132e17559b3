from decimal import Decimal
from fastapi import HTTPException
from typing import Any


def fmt_qty(value) -> str:
    # Decimal("10.000") -> "10"，Decimal("0.500") -> "0.5"
    if isinstance(value, Decimal):
        text = format(value.normalize(), "f")
        return text
    return str(value)


class StockroomError(Exception):
    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_detail(self) -> dict:
        body = {"code": self.code, "message": self.message}
        body.update(self.details)
        return body


class NotFound(StockroomError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} not found: {entity_id}", entity=entity, entity_id=entity_id)


class InsufficientAvailability(StockroomError):
    code = "INSUFFICIENT_AVAILABILITY"

    def __init__(self, tool_name: str, available: int, requested: int):
        super().__init__(
            f"Insufficient units available for {tool_name}. Available: {available}, Requested: {requested}",
            tool=tool_name,
            available=available,
            requested=requested,
            shortfall=requested - available,
        )


class InsufficientStock(StockroomError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, material_name: str, available, requested, unit: str | None = None):
        unit_hint = f" ({unit})" if unit else ""
        super().__init__(
            f"Insufficient stock for {material_name}{unit_hint}. "
            f"Available: {fmt_qty(available)}, Requested: {fmt_qty(requested)}",
            material=material_name,
            available=fmt_qty(available),
            requested=fmt_qty(requested),
        )


class InvalidStateTransition(StockroomError):
    status_code = 409
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, current: str, attempted: str, reason: str | None = None):
        message = f"Cannot {attempted.lower()} a borrowing in state {current}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, current=current, attempted=attempted)


class UnitAlreadyReturned(InvalidStateTransition):
    code = "UNIT_ALREADY_RETURNED"

    def __init__(self, current: str, unit_ids: list[int]):
        super().__init__(current, "RETURN", f"units already returned: {', '.join(map(str, unit_ids))}")
        self.details["unit_ids"] = unit_ids


class InvalidTemporalConstraint(StockroomError):
    code = "INVALID_DUE_DATE"


class PastDate(InvalidTemporalConstraint):
    code = "DUE_DATE_IN_PAST"

    def __init__(self, new_due_date, now):
        super().__init__(
            "New due date must be in the future",
            new_due_date=new_due_date.isoformat(),
            now=now.isoformat(),
        )


class NotLaterThanCurrent(InvalidTemporalConstraint):
    code = "DUE_DATE_NOT_LATER"

    def __init__(self, new_due_date, current_due_date):
        super().__init__(
            "New due date must be later than current due date",
            new_due_date=new_due_date.isoformat(),
            current_due_date=current_due_date.isoformat(),
        )


class ExceedsHorizon(InvalidTemporalConstraint):
    code = "EXTENSION_TOO_LONG"

    def __init__(self, new_due_date, max_due_date, max_days: int):
        super().__init__(
            f"Extension cannot be more than {max_days} days from today",
            new_due_date=new_due_date.isoformat(),
            max_due_date=max_due_date.isoformat(),
        )


class ReversalWindowExpired(StockroomError):
    code = "REVERSAL_WINDOW_EXPIRED"

    def __init__(self, transaction_id: int, window_hours: int):
        super().__init__(
            f"Cannot delete consumption older than {window_hours} hours",
            transaction_id=transaction_id,
            window_hours=window_hours,
        )


def abort(status_code: int, code: str, message: str):
    # 路由层参数问题直接走 HTTPException，body 形状与业务错误一致
    raise HTTPException(status_code=status_code, detail={"code": code, "message": message})
