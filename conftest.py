import os
import threading
from datetime import date, datetime, timedelta, timezone

import pytest

from circulation.engine import CirculationEngine
from circulation.models import Policy

START = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)
ISBN = "9780441172719"


class ManualClock:
    """A clock the test moves by hand; shared safely between threads."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, days: int = 0, hours: int = 0) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(days=days, hours=hours)
            return self._now

    def day(self, n: int) -> datetime:
        """Jump to day ``n`` counted from the start."""
        with self._lock:
            self._now = START + timedelta(days=n)
            return self._now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def db_file(tmp_path, request):
    # unique database file per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def engine(db_file, clock):
    """Engine with a 14 day / 2 renewals / 3 loans policy and a small stock.

    Copies C1..C5 of one title; members M1 and M2 valid during 2025, M3 whose
    membership ended in 2024.
    """
    eng = CirculationEngine(
        db_file=db_file,
        clock=clock,
        lock_timeout=2.0,
        policy_defaults=Policy(loan_duration_days=14, max_renewals=2, max_concurrent_loans=3),
    )
    eng.register_book(ISBN, "Dune", "Frank Herbert")
    for n in range(1, 6):
        eng.register_copy(f"C{n}", ISBN)
    eng.register_member("M1", "CARD-1", "Alice Reader", date(2025, 1, 1), date(2025, 12, 31))
    eng.register_member("M2", "CARD-2", "Bob Borrower", date(2025, 1, 1), date(2025, 12, 31))
    eng.register_member("M3", "CARD-3", "Carol Lapsed", date(2024, 1, 1), date(2024, 12, 31))
    yield eng
    eng.close()
    if os.path.exists(db_file):
        os.remove(db_file)
