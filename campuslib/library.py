import logging
from datetime import datetime
from typing import Callable, Optional

from campuslib.database import Database
from campuslib.lifecycle import LifecycleEngine
from campuslib.models import Role
from campuslib.repositories import (
    FINE_RATE_PER_DAY,
    LOAN_PERIOD_DAYS,
    MAX_RENEWALS,
    CatalogRepository,
    ConfigStore,
    FineLedger,
    LoanLedger,
    ProfileRepository,
    RequestLedger,
)
from campuslib.utils import utcnow

logger = logging.getLogger(__name__)


class Library:
    """Owns the database and wires the repositories into the lifecycle engine.

    Construct one per application entry point (API app, CLI invocation, test)
    and pass it around; nothing here is a module-level singleton.
    """

    def __init__(self, db_file: Optional[str] = None, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = Database(db_file)
        self.db.initialize()
        self.clock = clock

        self.books = CatalogRepository(self.db, clock)
        self.profiles = ProfileRepository(self.db, clock)
        self.requests = RequestLedger(self.db, clock)
        self.loans = LoanLedger(self.db, clock)
        self.fines = FineLedger(self.db, clock)
        self.config = ConfigStore(self.db, clock)

        self.engine = LifecycleEngine(
            self.db,
            self.books,
            self.profiles,
            self.requests,
            self.loans,
            self.fines,
            self.config,
            clock=clock,
        )
        logger.debug(f"Library opened on {self.db.db_file}")

    def seed_demo_data(self) -> None:
        """Insert a few users, books and settings for local demos. No-op if books exist."""
        if self.books.list():
            return
        admin = self.profiles.create("admin@campus.edu", "Ada Admin", Role.ADMIN)
        self.profiles.create("staff@campus.edu", "Sam Staff", Role.STAFF)
        self.profiles.create("student@campus.edu", "Stu Student", Role.STUDENT)

        self.books.create({
            "title": "Introduction to Algorithms",
            "author": "Thomas H. Cormen",
            "isbn": "9780262033848",
            "genre": "Computer Science",
            "total_copies": 3,
        })
        self.books.create({
            "title": "Structure and Interpretation of Computer Programs",
            "author": "Harold Abelson",
            "isbn": "9780262510875",
            "genre": "Computer Science",
            "total_copies": 2,
        })
        self.books.create({
            "title": "Sapiens",
            "author": "Yuval Noah Harari",
            "isbn": "9780099590088",
            "genre": "History",
            "total_copies": 1,
        })

        self.config.set(LOAN_PERIOD_DAYS, "14", admin.id)
        self.config.set(FINE_RATE_PER_DAY, "0.50", admin.id)
        self.config.set(MAX_RENEWALS, "2", admin.id)
        logger.info("Demo data seeded")

    def close(self) -> None:
        """Connections are opened per call, so there is nothing to release."""
        return None
