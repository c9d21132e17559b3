import logging
from datetime import timedelta
from decimal import Decimal
import pytest
from sqlmodel import Session, select

from stockroom.error import InsufficientAvailability
from stockroom.models import ActivityLog, Tool
from stockroom.schemas import (
    ActivityAction,
    BorrowingCreate,
    BorrowingExtend,
    BorrowingItemCreate,
    ConsumptionCreate,
    ConsumptionItemCreate,
    EntityType,
    MaterialStockUpdate,
    StockAction,
)
from stockroom.services import activity, borrowing, consumption
from stockroom.services.activity import ActivityLogImmutableError, log_activity
from stockroom.services.ledger import apply_stock_movement


def _entries(session, **filters):
    stmt = select(ActivityLog).order_by(ActivityLog.id)
    for key, value in filters.items():
        stmt = stmt.where(getattr(ActivityLog, key) == value)
    return session.exec(stmt).all()


def _borrow(session, clock, tool, quantity):
    return borrowing.create_borrowing(
        session,
        BorrowingCreate(
            borrower_name="alice",
            due_date=clock.now() + timedelta(days=2),
            purpose="repairs",
            items=[BorrowingItemCreate(tool_id=tool.id, quantity=quantity)],
        ),
        clock.now(),
    )


def test_every_mutation_is_logged(session, clock, make_tool, make_material):
    tool = make_tool(units=2)
    cement = make_material(current="50")
    txn = _borrow(session, clock, tool, 1)
    borrowing.extend_due_date(
        session, txn.id, BorrowingExtend(new_due_date=clock.now() + timedelta(days=5), reason="late"), clock.now()
    )
    consumption.create_consumption(
        session,
        ConsumptionCreate(
            consumer_name="carol", purpose="slab",
            items=[ConsumptionItemCreate(material_id=cement.id, quantity=Decimal("5"))],
        ),
        clock.now(),
    )

    actions = [(e.entity_type, e.action) for e in _entries(session)]
    assert actions == [
        ("TOOL", "CREATE"),
        ("MATERIAL", "CREATE"),
        ("BORROWING_TRANSACTION", "BORROW"),
        ("BORROWING_TRANSACTION", "EXTEND"),
        ("CONSUMPTION_TRANSACTION", "CONSUME"),
    ]

    extend = _entries(session, action="EXTEND")[0]
    assert extend.actor_name == "alice"
    assert extend.meta["reason"] == "late"
    assert extend.meta["extension_days"] == 3
    assert extend.before["due_date"] != extend.after["due_date"]


def test_rolled_back_operation_is_not_logged(session, clock, make_tool):
    tool = make_tool(units=1)
    with pytest.raises(InsufficientAvailability):
        _borrow(session, clock, tool, 2)

    assert _entries(session, action=ActivityAction.BORROW.value) == []


def test_audit_failure_does_not_fail_business_operation(session, clock, make_tool, monkeypatch, caplog):
    def broken(**kwargs):
        raise RuntimeError("audit store down")

    monkeypatch.setattr(activity, "ActivityLog", broken)

    with caplog.at_level(logging.ERROR, logger="stockroom.services.activity"):
        tool = make_tool(units=2)

    assert session.get(Tool, tool.id).total_quantity == 2
    assert "failed to write activity log" in caplog.text
    assert _entries(session) == []


def test_log_activity_never_raises(engine, monkeypatch):
    monkeypatch.setattr(activity, "ActivityLog", lambda **kwargs: 1 / 0)
    log_activity(engine, EntityType.TOOL, 1, ActivityAction.UPDATE, actor_name="x")


def test_log_activity_writes_row(engine, session):
    log_activity(engine, EntityType.MATERIAL, 7, ActivityAction.UPDATE, actor_name="ops", metadata={"k": "v"})
    entry = _entries(session)[0]
    assert (entry.entity_type, entry.entity_id, entry.actor_name) == ("MATERIAL", "7", "ops")
    assert entry.meta == {"k": "v"}


def test_activity_rows_are_append_only(engine, session, make_tool):
    make_tool(units=1)
    entry = _entries(session)[0]

    entry.actor_name = "someone else"
    with pytest.raises(ActivityLogImmutableError):
        session.commit()
    session.rollback()

    with Session(engine) as other:
        row = other.get(ActivityLog, entry.id)
        other.delete(row)
        with pytest.raises(ActivityLogImmutableError):
            other.commit()


def test_stock_movement_logged_with_note(session, clock, make_material):
    cement = make_material(current="10")
    apply_stock_movement(
        session, cement.id, MaterialStockUpdate(action=StockAction.IN, quantity=Decimal("5"), actor_name="ops"),
        clock.now(),
    )
    entry = _entries(session, action="UPDATE")[0]
    assert entry.actor_name == "ops"
    assert entry.before == {"current_quantity": "10"}
    assert entry.after == {"current_quantity": "15"}
    assert entry.meta["note"] == "Restock +5 (10->15)"
