import logging
from contextlib import contextmanager
from fastapi import HTTPException
from sqlalchemy import event
from sqlmodel import SQLModel, Session, create_engine

from stockroom.config import get_settings
from stockroom.error import StockroomError

logger = logging.getLogger(__name__)


def enable_sqlite_foreign_keys(engine) -> None:
    # SQLite 默认不检查外键，每个新连接都要打开
    @event.listens_for(engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def build_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
    if engine.dialect.name == "sqlite":
        enable_sqlite_foreign_keys(engine)
    return engine


engine = build_engine(get_settings().database_url)


def create_db_and_tables(bind=None) -> None:
    # 导入模型，确保所有表都注册到 metadata，并挂上审计日志的监听
    from stockroom import models  # noqa: F401
    from stockroom.services import activity  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)


def get_session():
    session = Session(engine)
    try:
        yield session
    except (StockroomError, HTTPException):
        # 业务错误：atomic() 里已经回滚过了，直接抛出
        raise
    except Exception:
        session.rollback()
        logger.exception("request failed, session rolled back")
        raise
    finally:
        session.close()


@contextmanager
def atomic(session: Session):
    """One unit of work: commit everything on success, roll back everything on any error."""
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
