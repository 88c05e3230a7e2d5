from __future__ import annotations

from collections.abc import Generator
from typing import Any, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from ..models import db as _db_models  # noqa: F401 - ensure models register with metadata
from .config import get_settings


def _configure_sqlite(dbapi_connection, connection_record) -> None:
    # pysqlite must not emit its own BEGIN; _begin_immediate does it instead.
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def _begin_immediate(conn) -> None:
    # Take the write lock up front so concurrent writers queue on busy_timeout
    # instead of reading the same balance and losing the compare-and-set.
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_url(database_url: str) -> Engine:
    connect_args: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    new_engine = create_engine(database_url, echo=False, connect_args=connect_args)
    if database_url.startswith("sqlite"):
        event.listen(new_engine, "connect", _configure_sqlite)
        event.listen(new_engine, "begin", _begin_immediate)
    return new_engine


settings = get_settings()
engine = create_engine_for_url(settings.database_url)


def init_db(target: Optional[Engine] = None) -> None:
    SQLModel.metadata.create_all(target or engine)


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


def set_engine(new_engine: Engine) -> None:
    global engine
    engine = new_engine
