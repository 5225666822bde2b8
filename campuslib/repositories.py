"""Repositories over the SQLite store.

These are intentionally dumb stores: field-level validation only, no
cross-entity rules. Every method takes an optional ``conn`` so the lifecycle
engine can run several calls inside one ``Database.transaction()``; without
one, reads open a short-lived connection and writes their own transaction.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from campuslib.config import settings
from campuslib.database import Database
from campuslib.errors import InvalidStateError, NotFoundError, ValidationError
from campuslib.models import (
    OPEN_LOAN_STATUSES,
    Book,
    BorrowRequest,
    Fine,
    Loan,
    LoanStatus,
    Profile,
    RequestStatus,
    Role,
    SystemSetting,
)
from campuslib.utils import new_id, parse_decimal_prefix, parse_int_prefix, to_iso, utcnow

logger = logging.getLogger(__name__)


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return float(value)
    return value


class _Repository:
    table = ""
    columns: Sequence[str] = ()
    updatable: Sequence[str] = ()

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.clock = clock

    @contextmanager
    def _reading(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with self.db.connection() as own:
                yield own

    @contextmanager
    def _writing(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with self.db.transaction() as own:
                yield own

    def _fetch_one(self, sql: str, params: Iterable[Any], conn=None) -> Optional[Dict[str, Any]]:
        with self._reading(conn) as c:
            row = c.execute(sql, tuple(params)).fetchone()
            return dict(row) if row else None

    def _fetch_all(self, sql: str, params: Iterable[Any] = (), conn=None) -> List[Dict[str, Any]]:
        with self._reading(conn) as c:
            return [dict(row) for row in c.execute(sql, tuple(params)).fetchall()]

    def _insert(self, values: Dict[str, Any], conn=None, duplicate_message: Optional[str] = None) -> None:
        """Insert one row. A unique-key clash raises ValidationError when ``duplicate_message`` is given."""
        names = list(values.keys())
        placeholders = ", ".join("?" for _ in names)
        sql = f"INSERT INTO {self.table} ({', '.join(names)}) VALUES ({placeholders})"
        with self._writing(conn) as c:
            try:
                c.execute(sql, [_to_db(values[n]) for n in names])
            except sqlite3.IntegrityError as e:
                if duplicate_message is None:
                    raise
                raise ValidationError(duplicate_message) from e

    def _update_fields(self, row_id: str, fields: Dict[str, Any], conn=None) -> int:
        unknown = set(fields) - set(self.updatable)
        if unknown:
            raise ValidationError(f"Unknown or read-only field(s): {', '.join(sorted(unknown))}")
        if not fields:
            return 0
        set_clause = ", ".join(f"{name} = ?" for name in fields)
        params = [_to_db(v) for v in fields.values()] + [row_id]
        with self._writing(conn) as c:
            cursor = c.execute(f"UPDATE {self.table} SET {set_clause} WHERE id = ?", params)
            return cursor.rowcount


# ------------------------- Catalog ------------------------- #
class CatalogRepository(_Repository):
    table = "books"
    updatable = (
        "title", "author", "isbn", "description", "genre", "cover_image_url",
        "total_copies", "available_copies", "updated_at",
    )

    @staticmethod
    def _validate_copies(total: Any, available: Any) -> None:
        if isinstance(total, bool) or not isinstance(total, int):
            raise ValidationError("total_copies must be an integer")
        if isinstance(available, bool) or not isinstance(available, int):
            raise ValidationError("available_copies must be an integer")
        if total < 1:
            raise ValidationError("total_copies must be at least 1")
        if available < 0 or available > total:
            raise ValidationError("available_copies must be between 0 and total_copies")

    @staticmethod
    def _require_text(data: Dict[str, Any], name: str) -> str:
        value = data.get(name)
        if value is None or not str(value).strip():
            raise ValidationError(f"{name} is required")
        return str(value).strip()

    def get(self, book_id: str, conn=None) -> Optional[Book]:
        row = self._fetch_one("SELECT * FROM books WHERE id = ?", (book_id,), conn)
        return Book.from_dict(row) if row else None

    def list(self, search: Optional[str] = None, conn=None) -> List[Book]:
        """List books ordered by title, optionally matching title, author or ISBN."""
        if search and search.strip():
            pattern = f"%{search.strip().lower()}%"
            rows = self._fetch_all(
                """
                SELECT * FROM books
                WHERE lower(title) LIKE ? OR lower(author) LIKE ? OR lower(isbn) LIKE ?
                ORDER BY title
                """,
                (pattern, pattern, pattern),
                conn,
            )
        else:
            rows = self._fetch_all("SELECT * FROM books ORDER BY title", (), conn)
        return [Book.from_dict(r) for r in rows]

    def create(self, data: Dict[str, Any], conn=None) -> Book:
        total = data.get("total_copies", 1)
        available = data.get("available_copies")
        if available is None:
            available = total
        self._validate_copies(total, available)
        now = self.clock()
        book = Book(
            id=new_id(),
            title=self._require_text(data, "title"),
            author=self._require_text(data, "author"),
            isbn=self._require_text(data, "isbn"),
            total_copies=total,
            available_copies=available,
            description=data.get("description"),
            genre=data.get("genre"),
            cover_image_url=data.get("cover_image_url"),
            created_at=now,
            updated_at=now,
        )
        self._insert(book.to_dict(), conn, duplicate_message=f"Book with ISBN {book.isbn} already exists.")
        return book

    def update(self, book_id: str, partial: Dict[str, Any], conn=None) -> Optional[Book]:
        """Merge ``partial`` into the book. Returns None if the book does not exist."""
        fields = {k: v for k, v in partial.items() if k not in ("id", "created_at", "updated_at")}
        with self._writing(conn) as c:
            existing = self.get(book_id, c)
            if existing is None:
                return None
            merged = existing.to_dict()
            merged.update(fields)
            self._validate_copies(merged["total_copies"], merged["available_copies"])
            for name in ("title", "author", "isbn"):
                if name in fields:
                    fields[name] = self._require_text(fields, name)
            if not fields:
                return existing
            fields["updated_at"] = self.clock()
            try:
                self._update_fields(book_id, fields, c)
            except sqlite3.IntegrityError as e:
                raise ValidationError(f"Book with ISBN {fields.get('isbn')} already exists.") from e
            return self.get(book_id, c)

    def delete(self, book_id: str, conn=None) -> bool:
        with self._writing(conn) as c:
            try:
                cursor = c.execute("DELETE FROM books WHERE id = ?", (book_id,))
            except sqlite3.IntegrityError as e:
                raise InvalidStateError("Book has borrow requests or loans and cannot be deleted") from e
            return cursor.rowcount > 0

    def adjust_available_copies(self, book_id: str, delta: int, conn=None) -> None:
        """Counter primitive for the lifecycle engine. No clamping against total_copies."""
        with self._writing(conn) as c:
            cursor = c.execute(
                "UPDATE books SET available_copies = available_copies + ?, updated_at = ? WHERE id = ?",
                (delta, to_iso(self.clock()), book_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("book", book_id)

    def get_statistics(self, conn=None) -> Dict[str, int]:
        row = self._fetch_one(
            """
            SELECT COUNT(*) AS titles,
                   COALESCE(SUM(total_copies), 0) AS total_copies,
                   COALESCE(SUM(available_copies), 0) AS available_copies
            FROM books
            """,
            (),
            conn,
        )
        return {k: int(v) for k, v in row.items()}


# ------------------------- Identity ------------------------- #
class ProfileRepository(_Repository):
    table = "profiles"
    updatable = ("email", "full_name", "role", "updated_at")

    @staticmethod
    def _parse_role(value: Any) -> Role:
        try:
            return Role(value.value if isinstance(value, Role) else str(value).upper())
        except ValueError as e:
            raise ValidationError(f"Invalid role: {value}. Allowed: STUDENT, STAFF, ADMIN") from e

    def get(self, user_id: str, conn=None) -> Optional[Profile]:
        row = self._fetch_one("SELECT * FROM profiles WHERE id = ?", (user_id,), conn)
        return Profile.from_dict(row) if row else None

    def get_by_email(self, email: str, conn=None) -> Optional[Profile]:
        row = self._fetch_one("SELECT * FROM profiles WHERE lower(email) = ?", (email.strip().lower(),), conn)
        return Profile.from_dict(row) if row else None

    def list(self, role: Optional[Any] = None, conn=None) -> List[Profile]:
        if role is not None:
            rows = self._fetch_all(
                "SELECT * FROM profiles WHERE role = ? ORDER BY full_name",
                (self._parse_role(role).value,),
                conn,
            )
        else:
            rows = self._fetch_all("SELECT * FROM profiles ORDER BY full_name", (), conn)
        return [Profile.from_dict(r) for r in rows]

    def create(self, email: str, full_name: str, role: Any = Role.STUDENT, conn=None) -> Profile:
        if not email or "@" not in email:
            raise ValidationError("A valid email is required")
        if not full_name or not full_name.strip():
            raise ValidationError("full_name is required")
        now = self.clock()
        profile = Profile(
            id=new_id(),
            email=email.strip().lower(),
            full_name=full_name.strip(),
            role=self._parse_role(role),
            created_at=now,
            updated_at=now,
        )
        self._insert(profile.to_dict(), conn, duplicate_message=f"Email {profile.email} already exists")
        return profile

    def update(self, user_id: str, partial: Dict[str, Any], conn=None) -> Optional[Profile]:
        fields = {k: v for k, v in partial.items() if v is not None}
        if "role" in fields:
            fields["role"] = self._parse_role(fields["role"])
        if "email" in fields:
            if "@" not in str(fields["email"]):
                raise ValidationError("A valid email is required")
            fields["email"] = str(fields["email"]).strip().lower()
        if "full_name" in fields and not str(fields["full_name"]).strip():
            raise ValidationError("full_name is required")
        with self._writing(conn) as c:
            if self.get(user_id, c) is None:
                return None
            if fields:
                fields["updated_at"] = self.clock()
                try:
                    self._update_fields(user_id, fields, c)
                except sqlite3.IntegrityError as e:
                    raise ValidationError(f"Email {fields.get('email')} already exists") from e
            return self.get(user_id, c)

    def delete(self, user_id: str, conn=None) -> bool:
        with self._writing(conn) as c:
            try:
                cursor = c.execute("DELETE FROM profiles WHERE id = ?", (user_id,))
            except sqlite3.IntegrityError as e:
                raise InvalidStateError("User has library history and cannot be deleted") from e
            return cursor.rowcount > 0

    def count_by_role(self, conn=None) -> Dict[str, int]:
        counts = {role.value: 0 for role in Role}
        for row in self._fetch_all("SELECT role, COUNT(*) AS n FROM profiles GROUP BY role", (), conn):
            counts[row["role"]] = int(row["n"])
        return counts


# ------------------------- Ledgers ------------------------- #
class RequestLedger(_Repository):
    table = "borrow_requests"
    updatable = ("status", "processed_date", "processed_by", "notes")

    def get(self, request_id: str, conn=None) -> Optional[BorrowRequest]:
        row = self._fetch_one("SELECT * FROM borrow_requests WHERE id = ?", (request_id,), conn)
        return BorrowRequest.from_dict(row) if row else None

    def list(
        self,
        user_id: Optional[str] = None,
        status: Optional[RequestStatus] = None,
        book_id: Optional[str] = None,
        conn=None,
    ) -> List[BorrowRequest]:
        clauses, params = [], []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if book_id:
            clauses.append("book_id = ?")
            params.append(book_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(RequestStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetch_all(
            f"SELECT * FROM borrow_requests {where} ORDER BY request_date, id", params, conn
        )
        return [BorrowRequest.from_dict(r) for r in rows]

    def find_by_user_id(self, user_id: str, conn=None) -> List[BorrowRequest]:
        return self.list(user_id=user_id, conn=conn)

    def find_by_book_id(self, book_id: str, conn=None) -> List[BorrowRequest]:
        return self.list(book_id=book_id, conn=conn)

    def count_by_status(self, status: RequestStatus, conn=None) -> int:
        row = self._fetch_one(
            "SELECT COUNT(*) AS n FROM borrow_requests WHERE status = ?", (RequestStatus(status).value,), conn
        )
        return int(row["n"])

    def create(self, request: BorrowRequest, conn=None) -> BorrowRequest:
        self._insert(request.to_dict(), conn)
        return request

    def update(self, request_id: str, fields: Dict[str, Any], conn=None) -> Optional[BorrowRequest]:
        with self._writing(conn) as c:
            if self._update_fields(request_id, fields, c) == 0:
                return None
            return self.get(request_id, c)


class LoanLedger(_Repository):
    table = "loans"
    updatable = ("due_date", "return_date", "status", "renewed_count")

    def get(self, loan_id: str, conn=None) -> Optional[Loan]:
        row = self._fetch_one("SELECT * FROM loans WHERE id = ?", (loan_id,), conn)
        return Loan.from_dict(row) if row else None

    def list(
        self,
        user_id: Optional[str] = None,
        statuses: Optional[Sequence[LoanStatus]] = None,
        book_id: Optional[str] = None,
        conn=None,
    ) -> List[Loan]:
        clauses, params = [], []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if book_id:
            clauses.append("book_id = ?")
            params.append(book_id)
        if statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(LoanStatus(s).value for s in statuses)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetch_all(f"SELECT * FROM loans {where} ORDER BY checkout_date, id", params, conn)
        return [Loan.from_dict(r) for r in rows]

    def find_by_user_id(self, user_id: str, conn=None) -> List[Loan]:
        return self.list(user_id=user_id, conn=conn)

    def find_by_book_id(self, book_id: str, conn=None) -> List[Loan]:
        return self.list(book_id=book_id, conn=conn)

    def list_open(
        self,
        due_before: Optional[datetime] = None,
        user_id: Optional[str] = None,
        conn=None,
    ) -> List[Loan]:
        """ACTIVE/OVERDUE loans, earliest due first."""
        clauses = ["status IN (?, ?)"]
        params: List[Any] = [s.value for s in OPEN_LOAN_STATUSES]
        if due_before is not None:
            clauses.append("due_date < ?")
            params.append(to_iso(due_before))
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        rows = self._fetch_all(
            f"SELECT * FROM loans WHERE {' AND '.join(clauses)} ORDER BY due_date, id", params, conn
        )
        return [Loan.from_dict(r) for r in rows]

    def create(self, loan: Loan, conn=None) -> Loan:
        self._insert(loan.to_dict(), conn)
        return loan

    def update(self, loan_id: str, fields: Dict[str, Any], conn=None) -> Optional[Loan]:
        with self._writing(conn) as c:
            if self._update_fields(loan_id, fields, c) == 0:
                return None
            return self.get(loan_id, c)


class FineLedger(_Repository):
    table = "fines"
    updatable = ("paid", "paid_at")

    def get(self, fine_id: str, conn=None) -> Optional[Fine]:
        row = self._fetch_one("SELECT * FROM fines WHERE id = ?", (fine_id,), conn)
        return Fine.from_dict(row) if row else None

    def list(self, user_id: Optional[str] = None, paid: Optional[bool] = None, conn=None) -> List[Fine]:
        clauses, params = [], []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if paid is not None:
            clauses.append("paid = ?")
            params.append(int(paid))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetch_all(f"SELECT * FROM fines {where} ORDER BY created_at, id", params, conn)
        return [Fine.from_dict(r) for r in rows]

    def find_by_user_id(self, user_id: str, conn=None) -> List[Fine]:
        return self.list(user_id=user_id, conn=conn)

    def find_by_loan_id(self, loan_id: str, conn=None) -> List[Fine]:
        rows = self._fetch_all("SELECT * FROM fines WHERE loan_id = ? ORDER BY created_at", (loan_id,), conn)
        return [Fine.from_dict(r) for r in rows]

    def list_unpaid(self, user_id: str, conn=None) -> List[Fine]:
        return self.list(user_id=user_id, paid=False, conn=conn)

    def sum_unpaid(self, user_id: Optional[str] = None, conn=None) -> float:
        """Total of unpaid fines, summed exactly in Decimal."""
        if user_id:
            rows = self._fetch_all("SELECT amount FROM fines WHERE user_id = ? AND paid = 0", (user_id,), conn)
        else:
            rows = self._fetch_all("SELECT amount FROM fines WHERE paid = 0", (), conn)
        total = sum((Decimal(str(r["amount"])) for r in rows), Decimal("0"))
        return float(total)

    def create(self, fine: Fine, conn=None) -> Fine:
        self._insert(fine.to_dict(), conn)
        return fine

    def update(self, fine_id: str, fields: Dict[str, Any], conn=None) -> Optional[Fine]:
        with self._writing(conn) as c:
            if self._update_fields(fine_id, fields, c) == 0:
                return None
            return self.get(fine_id, c)


# ------------------------- Config Store ------------------------- #
LOAN_PERIOD_DAYS = "loan_period_days"
FINE_RATE_PER_DAY = "fine_rate_per_day"
MAX_RENEWALS = "max_renewals"


class ConfigStore(_Repository):
    """Named circulation settings. Values are strings; typed readers fall back to defaults."""

    table = "system_settings"

    @property
    def defaults(self) -> Dict[str, Any]:
        return {
            LOAN_PERIOD_DAYS: settings.default_loan_period_days,
            FINE_RATE_PER_DAY: Decimal(settings.default_fine_rate_per_day),
            MAX_RENEWALS: settings.default_max_renewals,
        }

    def get_setting(self, key: str, conn=None) -> Optional[SystemSetting]:
        row = self._fetch_one("SELECT * FROM system_settings WHERE setting_key = ?", (key,), conn)
        return SystemSetting.from_dict(row) if row else None

    def get(self, key: str, conn=None) -> Optional[str]:
        setting = self.get_setting(key, conn)
        return setting.setting_value if setting else None

    def list(self, conn=None) -> List[SystemSetting]:
        rows = self._fetch_all("SELECT * FROM system_settings ORDER BY setting_key", (), conn)
        return [SystemSetting.from_dict(r) for r in rows]

    def set(self, key: str, value: Any, updated_by: Optional[str] = None, conn=None) -> SystemSetting:
        """Upsert a setting; the row is created if absent."""
        if not key or not key.strip():
            raise ValidationError("Setting key is required")
        if value is None:
            raise ValidationError("Setting value is required")
        key = key.strip()
        now = self.clock()
        with self._writing(conn) as c:
            c.execute(
                """
                INSERT INTO system_settings (id, setting_key, setting_value, updated_at, updated_by)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(setting_key) DO UPDATE SET
                    setting_value = excluded.setting_value,
                    updated_at = excluded.updated_at,
                    updated_by = excluded.updated_by
                """,
                (new_id(), key, str(value), to_iso(now), updated_by),
            )
            setting = self.get_setting(key, c)
        logger.info(f"Setting {key} = {value!r} (by {updated_by or 'system'})")
        return setting

    @staticmethod
    def validate(key: str, value: Any) -> None:
        """Reject values the typed readers would ignore. Unknown keys are free-form."""
        if key in (LOAN_PERIOD_DAYS, MAX_RENEWALS):
            minimum = 1 if key == LOAN_PERIOD_DAYS else 0
            parsed = parse_int_prefix(value)
            if parsed is None or parsed < minimum:
                raise ValidationError(f"{key} must be an integer >= {minimum}")
        elif key == FINE_RATE_PER_DAY:
            parsed = parse_decimal_prefix(value)
            if parsed is None or parsed < 0:
                raise ValidationError(f"{key} must be a non-negative number")

    def get_int(self, key: str, default: Optional[int] = None, minimum: int = 0, conn=None) -> int:
        if default is None:
            default = self.defaults[key]
        parsed = parse_int_prefix(self.get(key, conn))
        if parsed is None or parsed < minimum:
            return default
        return parsed

    def get_decimal(self, key: str, default: Optional[Decimal] = None, conn=None) -> Decimal:
        if default is None:
            default = self.defaults[key]
        parsed = parse_decimal_prefix(self.get(key, conn))
        if parsed is None or parsed < 0:
            return Decimal(default)
        return parsed

    def loan_period_days(self, conn=None) -> int:
        return self.get_int(LOAN_PERIOD_DAYS, minimum=1, conn=conn)

    def fine_rate_per_day(self, conn=None) -> Decimal:
        return self.get_decimal(FINE_RATE_PER_DAY, conn=conn)

    def max_renewals(self, conn=None) -> int:
        return self.get_int(MAX_RENEWALS, minimum=0, conn=conn)
