from pathlib import Path
from typing import Generator

import pytest
from sqlalchemy.orm import Session

from config import AppSettings
from db.db import Database, init_db
from services.balance_engine import BalanceEngine
from services.reservations import ReservationManager
from tests.constants import LOCK_TIMEOUT_SECONDS


@pytest.fixture(scope="function")
def settings(tmp_path: Path) -> AppSettings:
    return AppSettings(
        database_url=f"sqlite:///{tmp_path / 'wallet_ledger.db'}",
        lock_timeout_seconds=LOCK_TIMEOUT_SECONDS,
        store_timeout_seconds=LOCK_TIMEOUT_SECONDS,
    )


@pytest.fixture(scope="function")
def database(settings: AppSettings) -> Generator[Database, None, None]:
    db = init_db(settings)
    yield db
    db.dispose()


@pytest.fixture(scope="function")
def test_session(database: Database) -> Generator[Session, None, None]:
    with database.write() as session:
        yield session


@pytest.fixture(scope="function")
def engine(database: Database) -> BalanceEngine:
    return BalanceEngine(database, lock_timeout=LOCK_TIMEOUT_SECONDS)


@pytest.fixture(scope="function")
def reservations(engine: BalanceEngine) -> ReservationManager:
    return ReservationManager(engine)
