from datetime import timedelta
from decimal import Decimal
import pytest
from sqlalchemy import func
from sqlmodel import select

from stockroom.error import InsufficientStock, NotFound, ReversalWindowExpired
from stockroom.models import ConsumptionItem, ConsumptionTransaction, Material
from stockroom.schemas import ConsumptionCreate, ConsumptionItemCreate, StockStatus
from stockroom.services import consumption, inventory


def _consume(session, clock, *lines, consumer="carol", project=None):
    data = ConsumptionCreate(
        consumer_name=consumer,
        purpose="foundation",
        project_name=project,
        items=[
            ConsumptionItemCreate(material_id=m.id, quantity=Decimal(q), unit_price=Decimal(p) if p else None)
            for m, q, p in lines
        ],
    )
    return consumption.create_consumption(session, data, clock.now())


def _stock(session, material_id) -> Decimal:
    material = session.get(Material, material_id)
    session.refresh(material)
    return material.current_quantity


def test_scenario_b_consume_to_low_then_shortfall(session, clock, make_material):
    cement = make_material(name="Cement", current="100", threshold="20")

    _consume(session, clock, (cement, "90", None))
    assert _stock(session, cement.id) == Decimal("10")
    assert inventory.stock_status(_stock(session, cement.id), cement.threshold_quantity) == StockStatus.low

    with pytest.raises(InsufficientStock) as exc:
        _consume(session, clock, (cement, "20", None))
    assert "Available: 10, Requested: 20" in exc.value.message
    assert _stock(session, cement.id) == Decimal("10")


def test_all_lines_checked_before_any_decrement(session, clock, make_material):
    cement = make_material(name="Cement", current="100")
    sand = make_material(name="Sand", current="5")

    with pytest.raises(InsufficientStock):
        _consume(session, clock, (cement, "10", None), (sand, "6", None))

    assert _stock(session, cement.id) == Decimal("100")
    assert _stock(session, sand.id) == Decimal("5")
    assert session.exec(select(func.count()).select_from(ConsumptionTransaction)).one() == 0


def test_same_material_twice_is_checked_in_total(session, clock, make_material):
    sand = make_material(name="Sand", current="5")
    with pytest.raises(InsufficientStock):
        _consume(session, clock, (sand, "3", None), (sand, "3", None))
    assert _stock(session, sand.id) == Decimal("5")


def test_unknown_material(session, clock):
    data = ConsumptionCreate(
        consumer_name="carol", purpose="x",
        items=[ConsumptionItemCreate(material_id=999, quantity=Decimal("1"))],
    )
    with pytest.raises(NotFound):
        consumption.create_consumption(session, data, clock.now())


def test_line_and_transaction_totals(session, clock, make_material):
    cement = make_material(name="Cement", current="100")
    sand = make_material(name="Sand", current="100")

    txn = _consume(session, clock, (cement, "2.5", "10.00"), (sand, "3", None))
    view = consumption.present_consumption(txn)

    assert txn.display_id == "CS-2024-001"
    assert view.total_value == 25.0
    assert [i.total_value for i in view.items] == [25.0, None]
    assert view.total_items == 2
    assert view.total_quantity == 5.5


def test_total_is_null_without_prices(session, clock, make_material):
    cement = make_material(current="10")
    txn = _consume(session, clock, (cement, "1", None))
    assert txn.total_value is None


def test_reverse_within_window_restores_recorded_quantity(session, clock, make_material):
    cement = make_material(current="100")
    txn = _consume(session, clock, (cement, "40", None), (cement, "0.5", None))
    assert _stock(session, cement.id) == Decimal("59.5")

    clock.advance(hours=24)
    consumption.reverse_consumption(session, txn.id, clock.now(), actor_name="carol")

    assert _stock(session, cement.id) == Decimal("100")
    assert session.exec(select(func.count()).select_from(ConsumptionItem)).one() == 0
    assert session.exec(select(func.count()).select_from(ConsumptionTransaction)).one() == 0


def test_scenario_d_reverse_after_25_hours_fails(session, clock, make_material):
    cement = make_material(current="100")
    txn = _consume(session, clock, (cement, "30", None))

    clock.advance(hours=25)
    with pytest.raises(ReversalWindowExpired):
        consumption.reverse_consumption(session, txn.id, clock.now())

    assert _stock(session, cement.id) == Decimal("70")
    assert consumption.get_consumption(session, txn.id).id == txn.id


def test_reverse_missing(session, clock):
    with pytest.raises(NotFound):
        consumption.reverse_consumption(session, 77, clock.now())


def test_list_consumptions_filters(session, clock, make_material):
    cement = make_material(current="100")
    _consume(session, clock, (cement, "1", None), consumer="carol", project="Bridge")
    _consume(session, clock, (cement, "1", None), consumer="dave", project="Tower")

    items, total = consumption.list_consumptions(session, project_name="Tower")
    assert total == 1
    assert items[0].consumer_name == "dave"

    items, total = consumption.list_consumptions(session, q="carol")
    assert [t.project_name for t in items] == ["Bridge"]


def test_fractional_consumptions_use_up_exact_stock(session, clock, make_material):
    cement = make_material(name="Cement", current="0.3", threshold="0")

    _consume(session, clock, (cement, "0.1", None))
    _consume(session, clock, (cement, "0.2", None))
    assert _stock(session, cement.id) == Decimal("0")

    with pytest.raises(InsufficientStock):
        _consume(session, clock, (cement, "0.001", None))
