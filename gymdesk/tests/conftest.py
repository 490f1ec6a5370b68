from datetime import datetime, timedelta

import pytest

from gymdesk.database import create_database
from gymdesk.database_manager import DatabaseManager

START = datetime(2024, 1, 10, 9, 30, 0)


class FixedClock:
    """Stands in for datetime.now; tests move it forward explicitly."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


# Fixture for database manager with an in-memory database
@pytest.fixture
def db_manager(clock) -> DatabaseManager:
    conn = create_database(":memory:")
    conn.execute("PRAGMA foreign_keys = ON;")
    manager = DatabaseManager(connection=conn, clock=clock)
    yield manager
    conn.close()


@pytest.fixture
def monthly_plan(db_manager):
    return db_manager.add_membership("Monthly", 200.0, 30, ["Gym floor", "Cardio"])


@pytest.fixture
def quarterly_plan(db_manager):
    return db_manager.add_membership(
        "Quarterly", 500.0, 90, ["Full access", "Group classes"], "Three months"
    )


@pytest.fixture
def count_rows(db_manager):
    def count(table: str) -> int:
        return db_manager.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    return count
