from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from campuslib.utils import parse_iso, to_iso


class Role(str, Enum):
    STUDENT = "STUDENT"
    STAFF = "STAFF"
    ADMIN = "ADMIN"


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class LoanStatus(str, Enum):
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    RETURNED = "RETURNED"


OPEN_LOAN_STATUSES = (LoanStatus.ACTIVE, LoanStatus.OVERDUE)


@dataclass
class Book:
    """A catalog title and its copy counters."""

    id: str
    title: str
    author: str
    isbn: str
    total_copies: int
    available_copies: int
    description: Optional[str] = None
    genre: Optional[str] = None
    cover_image_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "description": self.description,
            "genre": self.genre,
            "cover_image_url": self.cover_image_url,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Book":
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            isbn=data["isbn"],
            total_copies=int(data["total_copies"]),
            available_copies=int(data["available_copies"]),
            description=data.get("description"),
            genre=data.get("genre"),
            cover_image_url=data.get("cover_image_url"),
            created_at=parse_iso(data.get("created_at")),
            updated_at=parse_iso(data.get("updated_at")),
        )


@dataclass
class Profile:
    """A library user. Authentication lives elsewhere."""

    id: str
    email: str
    full_name: str
    role: Role = Role.STUDENT
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_staff(self) -> bool:
        return self.role in (Role.STAFF, Role.ADMIN)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role.value,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Profile":
        return Profile(
            id=data["id"],
            email=data["email"],
            full_name=data["full_name"],
            role=Role(data["role"]),
            created_at=parse_iso(data.get("created_at")),
            updated_at=parse_iso(data.get("updated_at")),
        )


@dataclass
class BorrowRequest:
    id: str
    user_id: str
    book_id: str
    status: RequestStatus
    request_date: datetime
    processed_date: Optional[datetime] = None
    processed_by: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "status": self.status.value,
            "request_date": to_iso(self.request_date),
            "processed_date": to_iso(self.processed_date),
            "processed_by": self.processed_by,
            "notes": self.notes,
            "created_at": to_iso(self.created_at),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "BorrowRequest":
        return BorrowRequest(
            id=data["id"],
            user_id=data["user_id"],
            book_id=data["book_id"],
            status=RequestStatus(data["status"]),
            request_date=parse_iso(data["request_date"]),
            processed_date=parse_iso(data.get("processed_date")),
            processed_by=data.get("processed_by"),
            notes=data.get("notes"),
            created_at=parse_iso(data.get("created_at")),
        )


@dataclass
class Loan:
    id: str
    user_id: str
    book_id: str
    checkout_date: datetime
    due_date: datetime
    status: LoanStatus = LoanStatus.ACTIVE
    return_date: Optional[datetime] = None
    renewed_count: int = 0
    checked_out_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_returned(self) -> bool:
        return self.status == LoanStatus.RETURNED

    def is_overdue(self, as_of: datetime) -> bool:
        """Overdue is derived from the due date, never from the stored status."""
        return not self.is_returned and as_of > self.due_date

    def effective_status(self, as_of: datetime) -> LoanStatus:
        if self.is_returned:
            return LoanStatus.RETURNED
        return LoanStatus.OVERDUE if self.is_overdue(as_of) else LoanStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "checkout_date": to_iso(self.checkout_date),
            "due_date": to_iso(self.due_date),
            "return_date": to_iso(self.return_date),
            "status": self.status.value,
            "renewed_count": self.renewed_count,
            "checked_out_by": self.checked_out_by,
            "created_at": to_iso(self.created_at),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Loan":
        return Loan(
            id=data["id"],
            user_id=data["user_id"],
            book_id=data["book_id"],
            checkout_date=parse_iso(data["checkout_date"]),
            due_date=parse_iso(data["due_date"]),
            status=LoanStatus(data["status"]),
            return_date=parse_iso(data.get("return_date")),
            renewed_count=int(data.get("renewed_count") or 0),
            checked_out_by=data.get("checked_out_by"),
            created_at=parse_iso(data.get("created_at")),
        )


@dataclass
class Fine:
    id: str
    user_id: str
    loan_id: str
    amount: float
    paid: bool = False
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "loan_id": self.loan_id,
            "amount": self.amount,
            "paid": self.paid,
            "created_at": to_iso(self.created_at),
            "paid_at": to_iso(self.paid_at),
            "reason": self.reason,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Fine":
        return Fine(
            id=data["id"],
            user_id=data["user_id"],
            loan_id=data["loan_id"],
            amount=float(data["amount"]),
            paid=bool(data.get("paid")),
            created_at=parse_iso(data.get("created_at")),
            paid_at=parse_iso(data.get("paid_at")),
            reason=data.get("reason"),
        )


@dataclass
class SystemSetting:
    id: str
    setting_key: str
    setting_value: str
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "setting_key": self.setting_key,
            "setting_value": self.setting_value,
            "updated_at": to_iso(self.updated_at),
            "updated_by": self.updated_by,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SystemSetting":
        return SystemSetting(
            id=data["id"],
            setting_key=data["setting_key"],
            setting_value=data["setting_value"],
            updated_at=parse_iso(data.get("updated_at")),
            updated_by=data.get("updated_by"),
        )
