import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from campuslib.errors import StorageError
from campuslib.lifecycle import days_overdue, fine_amount
from campuslib.models import Loan, LoanStatus, RequestStatus
from campuslib.repositories import FINE_RATE_PER_DAY, LOAN_PERIOD_DAYS, MAX_RENEWALS
from campuslib.utils import new_id


def _checkout(lib, user, staff, book):
    request = lib.engine.submit_borrow_request(user.id, book.id).value
    return lib.engine.approve_borrow_request(request.id, staff.id).value


# ------------------------- Fine arithmetic ------------------------- #
def test_days_overdue_rounds_up():
    due = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert days_overdue(due, due) == 0
    assert days_overdue(due, due - timedelta(days=1)) == 0
    assert days_overdue(due, due + timedelta(milliseconds=1)) == 1
    assert days_overdue(due, due + timedelta(days=1)) == 1
    assert days_overdue(due, due + timedelta(days=1, seconds=1)) == 2
    assert days_overdue(due, due + timedelta(days=5)) == 5


def test_fine_amount_is_days_times_rate():
    assert fine_amount(3, Decimal("0.50")) == 1.50
    assert fine_amount(5, Decimal("0.75")) == 3.75
    assert fine_amount(3, Decimal("0.333")) == 0.999
    assert fine_amount(3, Decimal("0.335")) == 1.005
    assert fine_amount(2, Decimal("0")) == 0.0


# ------------------------- Submit ------------------------- #
def test_submit_creates_pending_request(lib, student, make_book, clock):
    book = make_book(total=1, available=0)

    result = lib.engine.submit_borrow_request(student.id, book.id)

    assert result.ok
    request = lib.requests.get(result.value.id)
    assert request.status == RequestStatus.PENDING
    assert request.request_date == clock.now
    assert request.processed_date is None
    assert request.processed_by is None


def test_submit_unknown_book_or_user(lib, student, make_book):
    result = lib.engine.submit_borrow_request(student.id, "missing-book")
    assert result.error_kind == "not_found"
    assert "Book" in result.message

    result = lib.engine.submit_borrow_request("missing-user", make_book().id)
    assert result.error_kind == "not_found"
    assert "User" in result.message
    assert lib.requests.list() == []


# ------------------------- Approve ------------------------- #
def test_scenario_a_approve_creates_loan(lib, student, staff, make_book, clock):
    book = make_book(total=2)
    request = lib.engine.submit_borrow_request(student.id, book.id).value

    result = lib.engine.approve_borrow_request(request.id, staff.id)

    assert result.ok
    loan = result.value
    assert loan.due_date == clock.now + timedelta(days=14)
    assert loan.status == LoanStatus.ACTIVE
    assert loan.renewed_count == 0
    assert loan.checked_out_by == staff.id
    assert lib.loans.get(loan.id) == loan
    assert lib.books.get(book.id).available_copies == 1
    processed = lib.requests.get(request.id)
    assert processed.status == RequestStatus.APPROVED
    assert processed.processed_by == staff.id
    assert processed.processed_date == clock.now


def test_scenario_b_no_copies_available(lib, student, staff, make_book):
    book = make_book(total=1, available=0)
    request = lib.engine.submit_borrow_request(student.id, book.id).value

    result = lib.engine.approve_borrow_request(request.id, staff.id)

    assert result.error_kind == "capacity"
    assert result.message == "No copies available"
    assert lib.requests.get(request.id).status == RequestStatus.PENDING
    assert lib.loans.list() == []
    assert lib.books.get(book.id).available_copies == 0


def test_approve_uses_configured_loan_period(lib, student, staff, make_book, clock):
    lib.config.set(LOAN_PERIOD_DAYS, "7")
    loan = _checkout(lib, student, staff, make_book())
    assert loan.due_date == clock.now + timedelta(days=7)


def test_approve_missing_request(lib, staff):
    result = lib.engine.approve_borrow_request("missing", staff.id)
    assert result.error_kind == "not_found"


def test_approve_twice_is_invalid_state(lib, student, staff, make_book):
    book = make_book(total=3)
    request = lib.engine.submit_borrow_request(student.id, book.id).value
    assert lib.engine.approve_borrow_request(request.id, staff.id).ok

    result = lib.engine.approve_borrow_request(request.id, staff.id)

    assert result.error_kind == "invalid_state"
    assert len(lib.loans.list()) == 1
    assert lib.books.get(book.id).available_copies == 2


def test_approve_rejected_request_is_invalid_state(lib, student, staff, make_book):
    request = lib.engine.submit_borrow_request(student.id, make_book().id).value
    lib.engine.reject_borrow_request(request.id, staff.id, "Reserved for course")

    assert lib.engine.approve_borrow_request(request.id, staff.id).error_kind == "invalid_state"


def test_approve_unknown_staff_changes_nothing(lib, student, make_book):
    book = make_book(total=1)
    request = lib.engine.submit_borrow_request(student.id, book.id).value

    result = lib.engine.approve_borrow_request(request.id, "ghost")

    assert result.error_kind == "not_found"
    assert lib.requests.get(request.id).is_pending
    assert lib.books.get(book.id).available_copies == 1


# ------------------------- Reject ------------------------- #
def test_reject_records_reason(lib, student, staff, make_book, clock):
    book = make_book()
    request = lib.engine.submit_borrow_request(student.id, book.id).value

    result = lib.engine.reject_borrow_request(request.id, staff.id, "Reference copy only")

    assert result.ok and result.value is True
    rejected = lib.requests.get(request.id)
    assert rejected.status == RequestStatus.REJECTED
    assert rejected.notes == "Reference copy only"
    assert rejected.processed_by == staff.id
    assert rejected.processed_date == clock.now
    assert lib.books.get(book.id).available_copies == book.available_copies
    assert lib.loans.list() == []


@pytest.mark.parametrize("reason", ["", "   ", None])
def test_scenario_d_reject_requires_reason(lib, student, staff, make_book, reason):
    request = lib.engine.submit_borrow_request(student.id, make_book().id).value

    result = lib.engine.reject_borrow_request(request.id, staff.id, reason)

    assert result.error_kind == "validation"
    assert lib.requests.get(request.id) == request


def test_reject_blank_reason_wins_over_missing_request(lib, staff):
    assert lib.engine.reject_borrow_request("missing", staff.id, "").error_kind == "validation"
    assert lib.engine.reject_borrow_request("missing", staff.id, "x").error_kind == "not_found"


def test_reject_approved_request_is_invalid_state(lib, student, staff, make_book):
    request = lib.engine.submit_borrow_request(student.id, make_book().id).value
    lib.engine.approve_borrow_request(request.id, staff.id)

    result = lib.engine.reject_borrow_request(request.id, staff.id, "Too late")

    assert result.error_kind == "invalid_state"
    assert lib.requests.get(request.id).status == RequestStatus.APPROVED


# ------------------------- Return ------------------------- #
def test_return_on_time_creates_no_fine(lib, student, staff, make_book, clock):
    book = make_book(total=1)
    loan = _checkout(lib, student, staff, book)
    clock.advance(days=14)

    result = lib.engine.return_loan(loan.id)

    assert result.ok and result.value is None
    returned = lib.loans.get(loan.id)
    assert returned.status == LoanStatus.RETURNED
    assert returned.return_date == clock.now
    assert lib.books.get(book.id).available_copies == 1
    assert lib.fines.list() == []


def test_return_three_days_late(lib, student, staff, make_book, clock):
    loan = _checkout(lib, student, staff, make_book())
    clock.advance(days=17)

    fine = lib.engine.return_loan(loan.id).value

    assert fine.amount == 1.50
    assert fine.reason == "Late return: 3 day(s) overdue"
    assert fine.user_id == student.id
    assert fine.loan_id == loan.id
    assert fine.paid is False
    assert lib.fines.find_by_loan_id(loan.id) == [fine]


def test_scenario_c_return_with_configured_rate(lib, student, staff, make_book, clock):
    book = make_book(total=2)
    loan = _checkout(lib, student, staff, book)
    lib.config.set(FINE_RATE_PER_DAY, "0.75")
    lib.loans.update(loan.id, {"due_date": clock.now - timedelta(days=5)})

    fine = lib.engine.return_loan(loan.id).value

    assert fine.amount == 3.75
    assert lib.loans.get(loan.id).status == LoanStatus.RETURNED
    assert lib.books.get(book.id).available_copies == 2


def test_fine_keeps_full_rate_precision(lib, student, staff, make_book, clock):
    lib.config.set(FINE_RATE_PER_DAY, "0.333")
    loan = _checkout(lib, student, staff, make_book())
    clock.advance(days=17)

    fine = lib.engine.return_loan(loan.id).value

    assert fine.amount == 0.999
    assert lib.fines.get(fine.id).amount == 0.999
    assert lib.engine.sum_outstanding_fines(student.id) == 0.999


@pytest.mark.parametrize(
    "repository, method",
    [("fines", "create"), ("loans", "update"), ("books", "adjust_available_copies")],
)
def test_storage_failure_during_return_rolls_back(lib, student, staff, make_book, clock, monkeypatch,
                                                  repository, method):
    book = make_book(total=1)
    loan = _checkout(lib, student, staff, book)
    clock.advance(days=20)

    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(getattr(lib, repository), method, broken)

    with pytest.raises(StorageError):
        lib.engine.return_loan(loan.id)

    assert lib.loans.get(loan.id).status == LoanStatus.ACTIVE
    assert lib.loans.get(loan.id).return_date is None
    assert lib.books.get(book.id).available_copies == 0
    assert lib.fines.find_by_loan_id(loan.id) == []


def test_return_a_few_minutes_late_counts_one_day(lib, student, staff, make_book, clock):
    loan = _checkout(lib, student, staff, make_book())
    clock.advance(days=14, minutes=5)

    fine = lib.engine.return_loan(loan.id).value

    assert fine.amount == 0.50
    assert fine.reason == "Late return: 1 day(s) overdue"


def test_return_twice_is_invalid_state(lib, student, staff, make_book, clock):
    book = make_book(total=1)
    loan = _checkout(lib, student, staff, book)
    clock.advance(days=20)
    lib.engine.return_loan(loan.id)

    result = lib.engine.return_loan(loan.id)

    assert result.error_kind == "invalid_state"
    assert len(lib.fines.list()) == 1
    assert lib.books.get(book.id).available_copies == 1


def test_return_missing_loan(lib):
    assert lib.engine.return_loan("missing").error_kind == "not_found"


def test_return_does_not_clamp_available_copies(lib, student, staff, make_book):
    book = make_book(total=1)
    loan = _checkout(lib, student, staff, book)
    lib.books.update(book.id, {"available_copies": 1})

    assert lib.engine.return_loan(loan.id).ok
    assert lib.books.get(book.id).available_copies == 2


# ------------------------- Renew ------------------------- #
def test_renew_extends_due_date(lib, student, staff, make_book, clock):
    loan = _checkout(lib, student, staff, make_book())
    clock.advance(days=10)

    renewed = lib.engine.renew_loan(loan.id).value

    assert renewed.due_date == loan.due_date + timedelta(days=14)
    assert renewed.renewed_count == 1


def test_renew_limit(lib, student, staff, make_book):
    lib.config.set(MAX_RENEWALS, "1")
    loan = _checkout(lib, student, staff, make_book())

    assert lib.engine.renew_loan(loan.id).ok
    result = lib.engine.renew_loan(loan.id)

    assert result.error_kind == "invalid_state"
    assert lib.loans.get(loan.id).renewed_count == 1


def test_renew_overdue_or_returned_loan(lib, student, staff, make_book, clock):
    loan = _checkout(lib, student, staff, make_book())
    clock.advance(days=15)
    assert lib.engine.renew_loan(loan.id).error_kind == "invalid_state"

    lib.engine.return_loan(loan.id)
    assert lib.engine.renew_loan(loan.id).error_kind == "invalid_state"
    assert lib.engine.renew_loan("missing").error_kind == "not_found"


# ------------------------- Fines ------------------------- #
def test_mark_fine_paid(lib, student, staff, make_book, clock):
    loan = _checkout(lib, student, staff, make_book())
    clock.advance(days=16)
    fine = lib.engine.return_loan(loan.id).value

    paid = lib.engine.mark_fine_paid(fine.id).value

    assert paid.paid is True
    assert paid.paid_at == clock.now
    assert lib.engine.list_outstanding_fines(student.id) == []
    assert lib.engine.sum_outstanding_fines(student.id) == 0.0
    assert lib.engine.mark_fine_paid(fine.id).error_kind == "invalid_state"
    assert lib.engine.mark_fine_paid("missing").error_kind == "not_found"


def test_outstanding_fines_total(lib, student, staff, make_book, clock):
    first = _checkout(lib, student, staff, make_book())
    second = _checkout(lib, student, staff, make_book())
    clock.advance(days=16)
    lib.engine.return_loan(first.id)
    clock.advance(days=1)
    lib.engine.return_loan(second.id)

    amounts = [f.amount for f in lib.engine.list_outstanding_fines(student.id)]
    assert amounts == [1.00, 1.50]
    assert lib.engine.sum_outstanding_fines(student.id) == 2.50


# ------------------------- Derived views ------------------------- #
def test_scenario_e_active_loans_sorted_by_due_date(lib, student, make_book):
    book = make_book(total=3)
    for day in (10, 5, 20):
        due = datetime(2024, 1, day, tzinfo=timezone.utc)
        lib.loans.create(Loan(
            id=new_id(),
            user_id=student.id,
            book_id=book.id,
            checkout_date=due - timedelta(days=14),
            due_date=due,
            created_at=due - timedelta(days=14),
        ))

    due_days = [loan.due_date.day for loan in lib.engine.list_active_loans()]

    assert due_days == [5, 10, 20]


def test_overdue_is_derived_from_due_date(lib, student, staff, make_book, clock):
    loan = _checkout(lib, student, staff, make_book())
    assert lib.engine.effective_status(loan) == LoanStatus.ACTIVE
    assert lib.engine.list_overdue_loans() == []

    clock.advance(days=15)

    assert lib.loans.get(loan.id).status == LoanStatus.ACTIVE
    assert lib.engine.effective_status(loan) == LoanStatus.OVERDUE
    assert [found.id for found in lib.engine.list_overdue_loans()] == [loan.id]
    assert lib.engine.list_overdue_loans(as_of=loan.due_date) == []

    lib.engine.return_loan(loan.id)
    assert lib.engine.effective_status(lib.loans.get(loan.id)) == LoanStatus.RETURNED
    assert lib.engine.list_active_loans() == []


def test_user_summary(lib, student, staff, make_book, clock):
    overdue = _checkout(lib, student, staff, make_book())
    clock.advance(days=10)
    _checkout(lib, student, staff, make_book())
    lib.engine.submit_borrow_request(student.id, make_book().id)
    clock.advance(days=6)

    summary = lib.engine.get_user_summary(student.id).value

    assert summary == {
        "user_id": student.id,
        "active_loans": 2,
        "overdue_loans": 1,
        "pending_requests": 1,
        "outstanding_fines": 0.0,
    }

    lib.engine.return_loan(overdue.id)
    assert lib.engine.get_user_summary(student.id).value["outstanding_fines"] == 1.00
    assert lib.engine.get_user_summary("missing").error_kind == "not_found"


def test_statistics(lib, student, staff, make_book, clock):
    _checkout(lib, student, staff, make_book(total=2))
    make_book(total=3)
    lib.engine.submit_borrow_request(student.id, make_book(total=1).id)
    clock.advance(days=15)

    stats = lib.engine.get_statistics()

    assert stats["total_titles"] == 3
    assert stats["total_copies"] == 6
    assert stats["available_copies"] == 5
    assert stats["pending_requests"] == 1
    assert stats["active_loans"] == 1
    assert stats["overdue_loans"] == 1
    assert stats["users_by_role"]["STAFF"] == 1


# ------------------------- Conservation ------------------------- #
def test_copies_are_conserved_across_the_lifecycle(lib, student, staff, make_book, clock):
    book = make_book(total=3)

    def open_loans():
        return len([loan for loan in lib.loans.find_by_book_id(book.id) if not loan.is_returned])

    loans = [_checkout(lib, student, staff, book) for _ in range(3)]
    extra = lib.engine.submit_borrow_request(student.id, book.id).value
    assert lib.engine.approve_borrow_request(extra.id, staff.id).error_kind == "capacity"

    current = lib.books.get(book.id)
    assert current.available_copies + open_loans() == current.total_copies

    clock.advance(days=20)
    lib.engine.return_loan(loans[0].id)
    lib.engine.renew_loan(loans[1].id)
    assert lib.engine.approve_borrow_request(extra.id, staff.id).ok

    current = lib.books.get(book.id)
    assert current.available_copies == 0
    assert current.available_copies + open_loans() == current.total_copies


def test_list_user_loans_includes_history(lib, student, staff, make_book, clock):
    first = _checkout(lib, student, staff, make_book())
    clock.advance(minutes=1)
    second = _checkout(lib, student, staff, make_book())
    lib.engine.return_loan(first.id)

    loans = lib.engine.list_user_loans(student.id)

    assert [loan.id for loan in loans] == [first.id, second.id]
    assert [loan.id for loan in lib.engine.list_active_loans(user_id=student.id)] == [second.id]
