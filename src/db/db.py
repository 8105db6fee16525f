from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from config import AppSettings, config
from db.models import Base

# Execution option marking connections that will write.
WRITE_INTENT = "wallet_ledger_write"


@dataclass(frozen=True)
class Database:
    """Engine plus the two session factories the services use.

    ``write`` sessions take the store's write lock when their transaction
    starts so that check-then-act sequences cannot interleave; ``read``
    sessions never do.
    """

    engine: Engine
    read: sessionmaker[Session]
    write: sessionmaker[Session]

    def dispose(self) -> None:
        self.engine.dispose()


def _configure_sqlite(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        # Let SQLAlchemy emit BEGIN itself so savepoints and BEGIN IMMEDIATE work.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection: Any) -> None:
        if connection.get_execution_options().get(WRITE_INTENT):
            connection.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            connection.exec_driver_sql("BEGIN")


def init_db(settings: AppSettings | None = None, *, url: str | None = None) -> Database:
    settings = settings or config()
    database_url = url or settings.database_url

    is_sqlite = database_url.startswith("sqlite")
    engine_args: dict[str, Any] = {}
    if is_sqlite:
        engine_args["connect_args"] = {"timeout": settings.store_timeout_seconds, "check_same_thread": False}
    else:
        engine_args["pool_timeout"] = settings.store_timeout_seconds
        engine_args["pool_pre_ping"] = True

    engine: Engine = create_engine(database_url, echo=settings.echo_sql, **engine_args)
    if is_sqlite:
        _configure_sqlite(engine)

    Base.metadata.create_all(engine)
    return Database(
        engine=engine,
        read=sessionmaker(engine),
        write=sessionmaker(engine.execution_options(**{WRITE_INTENT: True})),
    )
