"""Engine construction shared by branch stores and the terminal's local queue."""

import os
from typing import Any, Dict

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url


def create_store_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine with the pool settings appropriate for the backend."""
    connect_args: Dict[str, Any] = {}
    pool_config: Dict[str, Any] = {}

    if database_url.startswith("sqlite"):
        database = make_url(database_url).database
        if database and database != ":memory:" and not database.startswith("file:"):
            os.makedirs(os.path.dirname(os.path.abspath(database)), exist_ok=True)
        connect_args = {"check_same_thread": False, "timeout": 30}
        pool_config = {
            "pool_pre_ping": True,
            "pool_recycle": 1800,  # Recycle connections every 30 minutes
        }
    else:
        # PostgreSQL/MySQL connection pooling configuration
        pool_config = {
            "pool_size": 10,
            "max_overflow": 20,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
        }

    engine = create_engine(database_url, connect_args=connect_args, echo=echo, **pool_config)
    if database_url.startswith("sqlite"):
        configure_sqlite(engine)
    return engine


def configure_sqlite(engine: Engine) -> None:
    """Foreign keys on, and transactions controlled by SQLAlchemy.

    pysqlite defers BEGIN until the first DML statement, which breaks
    SAVEPOINT; emitting BEGIN ourselves makes nested transactions reliable.
    """

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")
