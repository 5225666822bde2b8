from datetime import datetime, timedelta, timezone

import pytest

from campuslib.library import Library
from campuslib.models import Role
from campuslib.ui_helpers import OUTPUT_MODE_ENV


class FixedClock:
    """Callable clock for tests; only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    # CLI --output writes to os.environ; keep it from leaking between tests
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def lib(tmp_path, request, clock):
    # Unique database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file, clock=clock)
    yield lib
    lib.close()


@pytest.fixture
def student(lib):
    return lib.profiles.create("student@campus.edu", "Stu Student", Role.STUDENT)


@pytest.fixture
def staff(lib):
    return lib.profiles.create("staff@campus.edu", "Sam Staff", Role.STAFF)


@pytest.fixture
def make_book(lib):
    counter = {"n": 0}

    def _make(total=2, available=None, title=None):
        counter["n"] += 1
        n = counter["n"]
        data = {
            "title": title or f"Book {n}",
            "author": "Test Author",
            "isbn": f"978000000{n:04d}",
            "total_copies": total,
        }
        if available is not None:
            data["available_copies"] = available
        return lib.books.create(data)

    return _make
