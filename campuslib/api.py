import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from campuslib.config import configure_logging, settings
from campuslib.errors import LibraryError, NotFoundError
from campuslib.library import Library
from campuslib.models import Loan, RequestStatus
from campuslib.repositories import FINE_RATE_PER_DAY, LOAN_PERIOD_DAYS, MAX_RENEWALS
from campuslib.utils import to_iso

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "not_found": 404,
    "invalid_state": 409,
    "capacity": 422,
    "validation": 422,
    "storage": 500,
}


# --- Models ---
class BookModel(BaseModel):
    id: str
    title: str
    author: str
    isbn: str
    description: str | None = None
    genre: str | None = None
    cover_image_url: str | None = None
    total_copies: int
    available_copies: int
    created_at: str | None = None
    updated_at: str | None = None


class BookCreateModel(BaseModel):
    title: str
    author: str
    isbn: str
    description: str | None = None
    genre: str | None = None
    cover_image_url: str | None = None
    total_copies: int = Field(default=1, description="Copies owned by the library")
    available_copies: int | None = Field(default=None, description="Defaults to total_copies")


class BookUpdateModel(BaseModel):
    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    description: str | None = None
    genre: str | None = None
    cover_image_url: str | None = None
    total_copies: int | None = None
    available_copies: int | None = None


class ProfileModel(BaseModel):
    id: str
    email: str
    full_name: str
    role: str
    created_at: str | None = None
    updated_at: str | None = None


class ProfileCreateModel(BaseModel):
    email: str
    full_name: str
    role: str = "STUDENT"


class ProfileUpdateModel(BaseModel):
    email: str | None = None
    full_name: str | None = None
    role: str | None = None


class BorrowRequestModel(BaseModel):
    id: str
    user_id: str
    book_id: str
    status: str
    request_date: str
    processed_date: str | None = None
    processed_by: str | None = None
    notes: str | None = None
    created_at: str | None = None


class BorrowRequestCreateModel(BaseModel):
    user_id: str
    book_id: str


class ApproveModel(BaseModel):
    staff_id: str


class RejectModel(BaseModel):
    staff_id: str
    reason: str = ""


class LoanModel(BaseModel):
    id: str
    user_id: str
    book_id: str
    checkout_date: str
    due_date: str
    return_date: str | None = None
    status: str
    effective_status: str
    renewed_count: int
    checked_out_by: str | None = None
    created_at: str | None = None


class FineModel(BaseModel):
    id: str
    user_id: str
    loan_id: str
    amount: float
    paid: bool
    created_at: str | None = None
    paid_at: str | None = None
    reason: str | None = None


class ReturnResultModel(BaseModel):
    loan_id: str
    fine: FineModel | None = None


class FineListModel(BaseModel):
    items: List[FineModel]
    total: float


class SettingModel(BaseModel):
    setting_key: str
    setting_value: str
    updated_at: str | None = None
    updated_by: str | None = None


class SettingUpdateModel(BaseModel):
    value: str
    updated_by: str | None = None


class SettingsResponse(BaseModel):
    settings: List[SettingModel]
    effective: Dict[str, Any]


class UserSummaryModel(BaseModel):
    user_id: str
    active_loans: int
    overdue_loans: int
    pending_requests: int
    outstanding_fines: float


class StatsModel(BaseModel):
    total_titles: int
    total_copies: int
    available_copies: int
    pending_requests: int
    active_loans: int
    overdue_loans: int
    outstanding_fines: float
    users_by_role: Dict[str, int]


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_api_key(api_key: Optional[str] = Security(api_key_header)):
    """Dependency that validates the API key on mutating routes."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_library(request: Request) -> Library:
    return request.app.state.library


# --- Helpers ---
def _loan_model(library: Library, loan: Loan) -> LoanModel:
    data = loan.to_dict()
    data["effective_status"] = library.engine.effective_status(loan).value
    return LoanModel(**data)


def create_app(library: Optional[Library] = None) -> FastAPI:
    """Build the API around an explicitly constructed ``Library``."""
    configure_logging()
    app = FastAPI(title=settings.app_name, version=settings.app_version)
    app.state.library = library or Library(settings.database_file)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LibraryError)
    async def library_error_handler(request: Request, exc: LibraryError):
        status = STATUS_BY_KIND.get(exc.kind, 400)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status, content={"detail": exc.message, "kind": exc.kind})

    # --- Health ---
    @app.get("/health")
    def health(library: Library = Depends(get_library)):
        """Lightweight health check with a quick database round trip."""
        db_ok = True
        try:
            with library.db.connection() as conn:
                conn.execute("SELECT 1")
        except LibraryError:
            db_ok = False
        return {
            "status": "healthy" if db_ok else "degraded",
            "timestamp": to_iso(datetime.now(timezone.utc)),
            "db": db_ok,
            "version": settings.app_version,
        }

    # --- Books ---
    @app.get("/books", response_model=List[BookModel])
    def list_books(
        q: Optional[str] = Query(None, description="Search title, author or ISBN"),
        library: Library = Depends(get_library),
    ):
        return [BookModel(**b.to_dict()) for b in library.books.list(search=q)]

    @app.get("/books/{book_id}", response_model=BookModel)
    def get_book(book_id: str, library: Library = Depends(get_library)):
        book = library.books.get(book_id)
        if not book:
            raise NotFoundError("book", book_id)
        return BookModel(**book.to_dict())

    @app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
    def create_book(payload: BookCreateModel, library: Library = Depends(get_library)):
        book = library.books.create(payload.model_dump())
        return BookModel(**book.to_dict())

    @app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
    def update_book(book_id: str, payload: BookUpdateModel, library: Library = Depends(get_library)):
        book = library.books.update(book_id, payload.model_dump(exclude_unset=True))
        if not book:
            raise NotFoundError("book", book_id)
        return BookModel(**book.to_dict())

    @app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
    def delete_book(book_id: str, library: Library = Depends(get_library)):
        if not library.books.delete(book_id):
            raise NotFoundError("book", book_id)
        return {"message": "Book removed."}

    # --- Users ---
    @app.get("/users", response_model=List[ProfileModel])
    def list_users(role: Optional[str] = Query(None), library: Library = Depends(get_library)):
        return [ProfileModel(**p.to_dict()) for p in library.profiles.list(role=role)]

    @app.post("/users", response_model=ProfileModel, status_code=201, dependencies=[Depends(get_api_key)])
    def create_user(payload: ProfileCreateModel, library: Library = Depends(get_library)):
        profile = library.profiles.create(payload.email, payload.full_name, payload.role)
        return ProfileModel(**profile.to_dict())

    @app.get("/users/{user_id}", response_model=ProfileModel)
    def get_user(user_id: str, library: Library = Depends(get_library)):
        profile = library.profiles.get(user_id)
        if not profile:
            raise NotFoundError("user", user_id)
        return ProfileModel(**profile.to_dict())

    @app.put("/users/{user_id}", response_model=ProfileModel, dependencies=[Depends(get_api_key)])
    def update_user(user_id: str, payload: ProfileUpdateModel, library: Library = Depends(get_library)):
        profile = library.profiles.update(user_id, payload.model_dump(exclude_unset=True))
        if not profile:
            raise NotFoundError("user", user_id)
        return ProfileModel(**profile.to_dict())

    @app.delete("/users/{user_id}", dependencies=[Depends(get_api_key)])
    def delete_user(user_id: str, library: Library = Depends(get_library)):
        if not library.profiles.delete(user_id):
            raise NotFoundError("user", user_id)
        return {"message": "User removed."}

    @app.get("/users/{user_id}/summary", response_model=UserSummaryModel)
    def user_summary(user_id: str, library: Library = Depends(get_library)):
        return UserSummaryModel(**library.engine.get_user_summary(user_id).unwrap())

    @app.get("/users/{user_id}/fines", response_model=FineListModel)
    def user_fines(user_id: str, library: Library = Depends(get_library)):
        fines = library.engine.list_outstanding_fines(user_id)
        return FineListModel(
            items=[FineModel(**f.to_dict()) for f in fines],
            total=library.engine.sum_outstanding_fines(user_id),
        )

    # --- Borrow requests ---
    @app.post(
        "/borrow-requests",
        response_model=BorrowRequestModel,
        status_code=201,
        dependencies=[Depends(get_api_key)],
    )
    def submit_request(payload: BorrowRequestCreateModel, library: Library = Depends(get_library)):
        request = library.engine.submit_borrow_request(payload.user_id, payload.book_id).unwrap()
        return BorrowRequestModel(**request.to_dict())

    @app.get("/borrow-requests", response_model=List[BorrowRequestModel])
    def list_requests(
        status: Optional[str] = Query(None, description="PENDING | APPROVED | REJECTED"),
        user_id: Optional[str] = Query(None),
        library: Library = Depends(get_library),
    ):
        try:
            parsed = RequestStatus(status.upper()) if status else None
        except ValueError:
            raise HTTPException(status_code=422, detail="Invalid status. Allowed: PENDING, APPROVED, REJECTED")
        return [BorrowRequestModel(**r.to_dict()) for r in library.engine.list_requests(user_id, parsed)]

    @app.post(
        "/borrow-requests/{request_id}/approve",
        response_model=LoanModel,
        dependencies=[Depends(get_api_key)],
    )
    def approve_request(request_id: str, payload: ApproveModel, library: Library = Depends(get_library)):
        loan = library.engine.approve_borrow_request(request_id, payload.staff_id).unwrap()
        return _loan_model(library, loan)

    @app.post("/borrow-requests/{request_id}/reject", dependencies=[Depends(get_api_key)])
    def reject_request(request_id: str, payload: RejectModel, library: Library = Depends(get_library)):
        library.engine.reject_borrow_request(request_id, payload.staff_id, payload.reason).unwrap()
        return {"id": request_id, "status": RequestStatus.REJECTED.value}

    # --- Loans ---
    @app.get("/loans", response_model=List[LoanModel])
    def list_loans(
        status: Optional[str] = Query(None, description="active | overdue"),
        user_id: Optional[str] = Query(None),
        library: Library = Depends(get_library),
    ):
        if status is None:
            loans = library.loans.list(user_id=user_id)
        elif status.lower() == "active":
            loans = library.engine.list_active_loans(user_id=user_id)
        elif status.lower() == "overdue":
            loans = library.engine.list_overdue_loans(user_id=user_id)
        else:
            raise HTTPException(status_code=422, detail="Invalid status. Allowed: active, overdue")
        return [_loan_model(library, loan) for loan in loans]

    @app.post("/loans/{loan_id}/return", response_model=ReturnResultModel, dependencies=[Depends(get_api_key)])
    def return_loan(loan_id: str, library: Library = Depends(get_library)):
        fine = library.engine.return_loan(loan_id).unwrap()
        return ReturnResultModel(loan_id=loan_id, fine=FineModel(**fine.to_dict()) if fine else None)

    @app.post("/loans/{loan_id}/renew", response_model=LoanModel, dependencies=[Depends(get_api_key)])
    def renew_loan(loan_id: str, library: Library = Depends(get_library)):
        loan = library.engine.renew_loan(loan_id).unwrap()
        return _loan_model(library, loan)

    # --- Fines ---
    @app.post("/fines/{fine_id}/pay", response_model=FineModel, dependencies=[Depends(get_api_key)])
    def pay_fine(fine_id: str, library: Library = Depends(get_library)):
        fine = library.engine.mark_fine_paid(fine_id).unwrap()
        return FineModel(**fine.to_dict())

    # --- Settings ---
    @app.get("/settings", response_model=SettingsResponse)
    def list_settings(library: Library = Depends(get_library)):
        return SettingsResponse(
            settings=[SettingModel(**s.to_dict()) for s in library.config.list()],
            effective={
                LOAN_PERIOD_DAYS: library.config.loan_period_days(),
                FINE_RATE_PER_DAY: float(library.config.fine_rate_per_day()),
                MAX_RENEWALS: library.config.max_renewals(),
            },
        )

    @app.get("/settings/{key}", response_model=SettingModel)
    def get_setting(key: str, library: Library = Depends(get_library)):
        setting = library.config.get_setting(key)
        if not setting:
            raise NotFoundError("setting", key)
        return SettingModel(**setting.to_dict())

    @app.put("/settings/{key}", response_model=SettingModel, dependencies=[Depends(get_api_key)])
    def update_setting(key: str, payload: SettingUpdateModel, library: Library = Depends(get_library)):
        library.config.validate(key, payload.value)
        setting = library.config.set(key, payload.value, payload.updated_by)
        return SettingModel(**setting.to_dict())

    # --- Stats ---
    @app.get("/stats", response_model=StatsModel)
    def get_stats(library: Library = Depends(get_library)):
        return StatsModel(**library.engine.get_statistics())

    return app
