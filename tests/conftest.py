import os
from datetime import datetime
from decimal import Decimal
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, create_engine
from sqlalchemy.pool import StaticPool

# 保险：import app 之前先把默认库指到内存，避免在工作目录建 stockroom.db
os.environ.setdefault("STOCKROOM_DATABASE_URL", "sqlite://")

from stockroom.clock import FixedClock
from stockroom.db import create_db_and_tables, enable_sqlite_foreign_keys, get_session
from stockroom.deps import get_clock
from stockroom.main import app
from stockroom.schemas import MaterialCreate, ToolCondition, ToolCreate
from stockroom.services import inventory

START = datetime(2024, 3, 1, 9, 0, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def client(engine, clock):
    def override_get_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_clock] = lambda: clock

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def make_tool(session, clock):
    def _make(name="Drill", units=3, condition=ToolCondition.GOOD):
        return inventory.create_tool(
            session,
            ToolCreate(name=name, total_quantity=units, condition=condition, location="A1"),
            clock.now(),
        )
    return _make


@pytest.fixture
def make_material(session, clock):
    def _make(name="Cement", current="100", threshold="20", unit="kg", unit_price=None):
        return inventory.create_material(
            session,
            MaterialCreate(
                name=name,
                current_quantity=Decimal(current),
                threshold_quantity=Decimal(threshold),
                unit=unit,
                unit_price=Decimal(unit_price) if unit_price is not None else None,
            ),
            clock.now(),
        )
    return _make
