from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from typing import Optional

from ..config import DEFAULT_DB_URL, ROOT_DIR
from .utils import resolve_sqlite_url


def make_engine(database_url: Optional[str] = None, echo: bool = False):
    url = resolve_sqlite_url(database_url or DEFAULT_DB_URL, ROOT_DIR)
    engine = create_engine(
        url,
        echo=echo,
        future=True,
    )
    if url.startswith("sqlite"):
        # Take the write lock at BEGIN so concurrent draw processes serialize
        # their transactions instead of failing on lock upgrade.
        from sqlalchemy import event

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def get_sessionmaker(engine):
    return sessionmaker(
        bind=engine,
        expire_on_commit=False,  # Keep documents readable after the transaction closes
        future=True,
    )
