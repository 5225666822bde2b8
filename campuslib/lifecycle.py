"""Borrow request -> loan -> return -> fine lifecycle.

``LifecycleEngine`` is the only writer of request and loan status, fines and
book availability counters. Each mutating operation runs in one
``Database.transaction()`` and returns an ``OperationResult``; domain failures
never escape as exceptions.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TypeVar

from campuslib.database import Database
from campuslib.errors import (
    DOMAIN_ERRORS,
    CapacityError,
    InvalidStateError,
    NotFoundError,
    OperationResult,
    ValidationError,
)
from campuslib.models import (
    BorrowRequest,
    Fine,
    Loan,
    LoanStatus,
    RequestStatus,
)
from campuslib.repositories import (
    CatalogRepository,
    ConfigStore,
    FineLedger,
    LoanLedger,
    ProfileRepository,
    RequestLedger,
)
from campuslib.utils import new_id, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

MS_PER_DAY = 86_400_000


def days_overdue(due_date: datetime, returned_at: datetime) -> int:
    """Whole days late, rounded up; any positive overage counts as one day."""
    elapsed_ms = (returned_at - due_date) / timedelta(milliseconds=1)
    if elapsed_ms <= 0:
        return 0
    return max(1, math.ceil(elapsed_ms / MS_PER_DAY))


def fine_amount(days: int, rate_per_day: Decimal) -> float:
    """Days late times the daily rate, at the rate's full precision."""
    return float(Decimal(days) * rate_per_day)


class LifecycleEngine:
    """Enforces the request/loan/fine transition rules over the repositories."""

    def __init__(
        self,
        db: Database,
        catalog: CatalogRepository,
        profiles: ProfileRepository,
        requests: RequestLedger,
        loans: LoanLedger,
        fines: FineLedger,
        config: ConfigStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.catalog = catalog
        self.profiles = profiles
        self.requests = requests
        self.loans = loans
        self.fines = fines
        self.config = config
        self.clock = clock

    def _run(self, operation: str, work: Callable[[sqlite3.Connection], T]) -> OperationResult[T]:
        try:
            with self.db.transaction() as conn:
                value = work(conn)
        except DOMAIN_ERRORS as exc:
            logger.warning(f"{operation} rejected ({exc.kind}): {exc.message}")
            return OperationResult.failure(exc)
        return OperationResult.success(value)

    # ------------------------- Borrow requests ------------------------- #
    def submit_borrow_request(self, user_id: str, book_id: str) -> OperationResult[BorrowRequest]:
        """Create a PENDING request. Availability is only checked at approval."""

        def work(conn: sqlite3.Connection) -> BorrowRequest:
            if self.catalog.get(book_id, conn) is None:
                raise NotFoundError("book", book_id)
            if self.profiles.get(user_id, conn) is None:
                raise NotFoundError("user", user_id)
            now = self.clock()
            request = BorrowRequest(
                id=new_id(),
                user_id=user_id,
                book_id=book_id,
                status=RequestStatus.PENDING,
                request_date=now,
                created_at=now,
            )
            return self.requests.create(request, conn)

        result = self._run("submit_borrow_request", work)
        if result.ok:
            logger.info(f"Borrow request {result.value.id} submitted by {user_id} for book {book_id}")
        return result

    def approve_borrow_request(self, request_id: str, staff_id: str) -> OperationResult[Loan]:
        """Turn a PENDING request into an ACTIVE loan and take one copy off the shelf."""

        def work(conn: sqlite3.Connection) -> Loan:
            loan_period = self.config.loan_period_days(conn)
            request = self.requests.get(request_id, conn)
            if request is None:
                raise NotFoundError("request", request_id)
            if not request.is_pending:
                raise InvalidStateError(f"Request {request_id} is already {request.status.value}")
            book = self.catalog.get(request.book_id, conn)
            if book is None:
                raise NotFoundError("book", request.book_id)
            if book.available_copies <= 0:
                raise CapacityError("No copies available")
            if self.profiles.get(staff_id, conn) is None:
                raise NotFoundError("staff", staff_id)

            now = self.clock()
            loan = Loan(
                id=new_id(),
                user_id=request.user_id,
                book_id=request.book_id,
                checkout_date=now,
                due_date=now + timedelta(days=loan_period),
                status=LoanStatus.ACTIVE,
                renewed_count=0,
                checked_out_by=staff_id,
                created_at=now,
            )
            self.loans.create(loan, conn)
            self.catalog.adjust_available_copies(book.id, -1, conn)
            self.requests.update(
                request_id,
                {
                    "status": RequestStatus.APPROVED,
                    "processed_date": now,
                    "processed_by": staff_id,
                },
                conn,
            )
            return loan

        result = self._run("approve_borrow_request", work)
        if result.ok:
            loan = result.value
            logger.info(
                f"Request {request_id} approved by {staff_id}: loan {loan.id} due {loan.due_date.isoformat()}"
            )
        return result

    def reject_borrow_request(self, request_id: str, staff_id: str, reason: str) -> OperationResult[bool]:
        """Close a PENDING request with a reason. Books and loans are untouched."""
        if reason is None or not reason.strip():
            error = ValidationError("A rejection reason is required")
            logger.warning(f"reject_borrow_request rejected ({error.kind}): {error.message}")
            return OperationResult.failure(error)

        def work(conn: sqlite3.Connection) -> bool:
            request = self.requests.get(request_id, conn)
            if request is None:
                raise NotFoundError("request", request_id)
            if not request.is_pending:
                raise InvalidStateError(f"Request {request_id} is already {request.status.value}")
            if self.profiles.get(staff_id, conn) is None:
                raise NotFoundError("staff", staff_id)
            self.requests.update(
                request_id,
                {
                    "status": RequestStatus.REJECTED,
                    "processed_date": self.clock(),
                    "processed_by": staff_id,
                    "notes": reason.strip(),
                },
                conn,
            )
            return True

        result = self._run("reject_borrow_request", work)
        if result.ok:
            logger.info(f"Request {request_id} rejected by {staff_id}: {reason.strip()}")
        return result

    # ------------------------- Loans ------------------------- #
    def return_loan(self, loan_id: str) -> OperationResult[Optional[Fine]]:
        """Close a loan, put the copy back and assess a late fine if it is overdue."""

        def work(conn: sqlite3.Connection) -> Optional[Fine]:
            rate = self.config.fine_rate_per_day(conn)
            loan = self.loans.get(loan_id, conn)
            if loan is None:
                raise NotFoundError("loan", loan_id)
            if loan.is_returned:
                raise InvalidStateError(f"Loan {loan_id} is already RETURNED")
            book = self.catalog.get(loan.book_id, conn)
            if book is None:
                raise NotFoundError("book", loan.book_id)

            now = self.clock()
            fine = None
            if loan.is_overdue(now):
                days = days_overdue(loan.due_date, now)
                fine = Fine(
                    id=new_id(),
                    user_id=loan.user_id,
                    loan_id=loan.id,
                    amount=fine_amount(days, rate),
                    paid=False,
                    created_at=now,
                    reason=f"Late return: {days} day(s) overdue",
                )
                self.fines.create(fine, conn)

            self.loans.update(loan.id, {"status": LoanStatus.RETURNED, "return_date": now}, conn)
            self.catalog.adjust_available_copies(book.id, 1, conn)
            return fine

        result = self._run("return_loan", work)
        if result.ok:
            fine = result.value
            if fine is not None:
                logger.info(f"Loan {loan_id} returned late; fine {fine.id} assessed: {fine.amount:.2f}")
            else:
                logger.info(f"Loan {loan_id} returned on time")
        return result

    def renew_loan(self, loan_id: str) -> OperationResult[Loan]:
        """Extend an open, not yet overdue loan by one loan period."""

        def work(conn: sqlite3.Connection) -> Loan:
            loan_period = self.config.loan_period_days(conn)
            max_renewals = self.config.max_renewals(conn)
            loan = self.loans.get(loan_id, conn)
            if loan is None:
                raise NotFoundError("loan", loan_id)
            if loan.is_returned:
                raise InvalidStateError(f"Loan {loan_id} is already RETURNED")
            if loan.is_overdue(self.clock()):
                raise InvalidStateError("Overdue loans cannot be renewed")
            if loan.renewed_count >= max_renewals:
                raise InvalidStateError(f"Renewal limit of {max_renewals} reached")
            return self.loans.update(
                loan.id,
                {
                    "due_date": loan.due_date + timedelta(days=loan_period),
                    "renewed_count": loan.renewed_count + 1,
                },
                conn,
            )

        result = self._run("renew_loan", work)
        if result.ok:
            logger.info(f"Loan {loan_id} renewed; now due {result.value.due_date.isoformat()}")
        return result

    # ------------------------- Fines ------------------------- #
    def mark_fine_paid(self, fine_id: str) -> OperationResult[Fine]:
        """Record that a fine was settled. Payment itself happens elsewhere."""

        def work(conn: sqlite3.Connection) -> Fine:
            fine = self.fines.get(fine_id, conn)
            if fine is None:
                raise NotFoundError("fine", fine_id)
            if fine.paid:
                raise InvalidStateError(f"Fine {fine_id} is already paid")
            return self.fines.update(fine_id, {"paid": True, "paid_at": self.clock()}, conn)

        result = self._run("mark_fine_paid", work)
        if result.ok:
            logger.info(f"Fine {fine_id} marked paid")
        return result

    # ------------------------- Derived views ------------------------- #
    def effective_status(self, loan: Loan, as_of: Optional[datetime] = None) -> LoanStatus:
        return loan.effective_status(as_of or self.clock())

    def list_active_loans(self, user_id: Optional[str] = None) -> List[Loan]:
        """Open loans, earliest due first (staff triage order)."""
        return self.loans.list_open(user_id=user_id)

    def list_overdue_loans(self, as_of: Optional[datetime] = None, user_id: Optional[str] = None) -> List[Loan]:
        return self.loans.list_open(due_before=as_of or self.clock(), user_id=user_id)

    def list_user_loans(self, user_id: str) -> List[Loan]:
        return self.loans.find_by_user_id(user_id)

    def list_requests(
        self, user_id: Optional[str] = None, status: Optional[RequestStatus] = None
    ) -> List[BorrowRequest]:
        return self.requests.list(user_id=user_id, status=status)

    def list_outstanding_fines(self, user_id: str) -> List[Fine]:
        return self.fines.list_unpaid(user_id)

    def sum_outstanding_fines(self, user_id: str) -> float:
        return self.fines.sum_unpaid(user_id)

    def get_user_summary(self, user_id: str) -> OperationResult[Dict[str, Any]]:
        """Counts behind the student dashboard."""
        if self.profiles.get(user_id) is None:
            return OperationResult.failure(NotFoundError("user", user_id))
        now = self.clock()
        open_loans = self.loans.list_open(user_id=user_id)
        pending = self.requests.list(user_id=user_id, status=RequestStatus.PENDING)
        return OperationResult.success({
            "user_id": user_id,
            "active_loans": len(open_loans),
            "overdue_loans": sum(1 for loan in open_loans if loan.is_overdue(now)),
            "pending_requests": len(pending),
            "outstanding_fines": self.fines.sum_unpaid(user_id),
        })

    def get_statistics(self) -> Dict[str, Any]:
        """Counts behind the staff and admin dashboards."""
        now = self.clock()
        books = self.catalog.get_statistics()
        open_loans = self.loans.list_open()
        return {
            "total_titles": books["titles"],
            "total_copies": books["total_copies"],
            "available_copies": books["available_copies"],
            "pending_requests": self.requests.count_by_status(RequestStatus.PENDING),
            "active_loans": len(open_loans),
            "overdue_loans": sum(1 for loan in open_loans if loan.is_overdue(now)),
            "outstanding_fines": self.fines.sum_unpaid(),
            "users_by_role": self.profiles.count_by_role(),
        }
