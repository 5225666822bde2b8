import os
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

from campuslib.config import configure_logging, settings
from campuslib.errors import OperationResult
from campuslib.library import Library
from campuslib.models import Loan, RequestStatus
from campuslib.ui_helpers import print_record, print_rows, print_stats_result, set_output_mode

APP_NAME = "Campus Library CLI"

console = Console()

app = typer.Typer(help=APP_NAME)

BOOK_COLUMNS = [("id", "ID"), ("isbn", "ISBN"), ("title", "Title"), ("author", "Author"),
                ("available_copies", "Available"), ("total_copies", "Total")]
USER_COLUMNS = [("id", "ID"), ("full_name", "Name"), ("email", "Email"), ("role", "Role")]
REQUEST_COLUMNS = [("id", "ID"), ("user_id", "User"), ("book_id", "Book"), ("status", "Status"),
                   ("request_date", "Requested"), ("notes", "Notes")]
LOAN_COLUMNS = [("id", "ID"), ("user_id", "User"), ("book_id", "Book"), ("due_date", "Due"),
                ("effective_status", "Status"), ("renewed_count", "Renewals")]
FINE_COLUMNS = [("id", "ID"), ("loan_id", "Loan"), ("amount", "Amount"), ("reason", "Reason")]


def _library(ctx: typer.Context) -> Library:
    return ctx.obj["library"]


def _unwrap(result: OperationResult):
    """Return the value or print the error and exit with status 1."""
    if not result.ok:
        print(f"Error: {result.message}")
        raise typer.Exit(code=1)
    return result.value


def _loan_row(lib: Library, loan: Loan) -> dict:
    row = loan.to_dict()
    row["effective_status"] = lib.engine.effective_status(loan).value
    return row


@app.callback()
def _global_options(
    ctx: typer.Context,
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE)"),
):
    """Global CLI options (output mode, database file)."""
    configure_logging()
    if output:
        set_output_mode(output)
    ctx.obj = {"library": Library(db or settings.database_file)}


# ------------------------- Catalog ------------------------- #
@app.command("books")
def cli_books(ctx: typer.Context, search: Optional[str] = typer.Option(None, "--search", "-s")):
    """List books, optionally filtered by title, author or ISBN."""
    books = _library(ctx).books.list(search=search)
    print_rows(
        "📚 Books",
        [b.to_dict() for b in books],
        BOOK_COLUMNS,
        "No books in library.",
        "{id} - {title} by {author} ({available_copies}/{total_copies} available)",
    )


@app.command("add-book")
def cli_add_book(
    ctx: typer.Context,
    title: str,
    author: str,
    isbn: str,
    copies: int = typer.Option(1, "--copies", "-c", help="Total copies owned"),
    genre: Optional[str] = typer.Option(None, "--genre"),
    description: Optional[str] = typer.Option(None, "--description"),
):
    """Add a book to the catalog."""
    try:
        book = _library(ctx).books.create({
            "title": title,
            "author": author,
            "isbn": isbn,
            "total_copies": copies,
            "genre": genre,
            "description": description,
        })
    except ValueError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    print(f"Successfully added: {book.title} by {book.author} (id {book.id})")


# ------------------------- Users ------------------------- #
@app.command("users")
def cli_users(ctx: typer.Context, role: Optional[str] = typer.Option(None, "--role")):
    """List users, optionally by role."""
    try:
        profiles = _library(ctx).profiles.list(role=role)
    except ValueError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    print_rows("👥 Users", [p.to_dict() for p in profiles], USER_COLUMNS,
               "No users.", "{id} - {full_name} <{email}> [{role}]")


@app.command("add-user")
def cli_add_user(
    ctx: typer.Context,
    email: str,
    full_name: str,
    role: str = typer.Option("STUDENT", "--role", help="STUDENT | STAFF | ADMIN"),
):
    """Create a user profile."""
    try:
        profile = _library(ctx).profiles.create(email, full_name, role)
    except ValueError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    print(f"Created {profile.role.value.lower()} {profile.full_name} (id {profile.id})")


# ------------------------- Circulation ------------------------- #
@app.command("request")
def cli_request(ctx: typer.Context, user_id: str, book_id: str):
    """Submit a borrow request on behalf of a user."""
    request = _unwrap(_library(ctx).engine.submit_borrow_request(user_id, book_id))
    print(f"Request {request.id} submitted ({request.status.value})")


@app.command("requests")
def cli_requests(
    ctx: typer.Context,
    status: Optional[str] = typer.Option(None, "--status", help="PENDING | APPROVED | REJECTED"),
    user: Optional[str] = typer.Option(None, "--user"),
):
    """List borrow requests."""
    try:
        parsed = RequestStatus(status.upper()) if status else None
    except ValueError:
        print(f"Error: invalid status {status}")
        raise typer.Exit(code=1)
    requests = _library(ctx).engine.list_requests(user_id=user, status=parsed)
    print_rows("📝 Borrow Requests", [r.to_dict() for r in requests], REQUEST_COLUMNS,
               "No borrow requests.", "{id} - user {user_id} book {book_id} [{status}]")


@app.command("approve")
def cli_approve(ctx: typer.Context, request_id: str, staff_id: str):
    """Approve a pending request and check the book out."""
    loan = _unwrap(_library(ctx).engine.approve_borrow_request(request_id, staff_id))
    print(f"Approved. Loan {loan.id} due {loan.due_date.date().isoformat()}")


@app.command("reject")
def cli_reject(ctx: typer.Context, request_id: str, staff_id: str, reason: str):
    """Reject a pending request with a reason."""
    _unwrap(_library(ctx).engine.reject_borrow_request(request_id, staff_id, reason))
    print(f"Request {request_id} rejected.")


@app.command("return")
def cli_return(ctx: typer.Context, loan_id: str):
    """Return a loan; late returns are fined."""
    fine = _unwrap(_library(ctx).engine.return_loan(loan_id))
    if fine:
        print(f"Returned late. Fine {fine.id}: {fine.amount:.2f} ({fine.reason})")
    else:
        print(f"Loan {loan_id} returned on time.")


@app.command("renew")
def cli_renew(ctx: typer.Context, loan_id: str):
    """Extend a loan by one loan period."""
    loan = _unwrap(_library(ctx).engine.renew_loan(loan_id))
    print(f"Renewed. Now due {loan.due_date.date().isoformat()} (renewal {loan.renewed_count})")


@app.command("loans")
def cli_loans(
    ctx: typer.Context,
    overdue: bool = typer.Option(False, "--overdue", help="Only overdue loans"),
    user: Optional[str] = typer.Option(None, "--user"),
):
    """List open loans, earliest due first."""
    lib = _library(ctx)
    if overdue:
        loans = lib.engine.list_overdue_loans(user_id=user)
    else:
        loans = lib.engine.list_active_loans(user_id=user)
    print_rows("📖 Loans", [_loan_row(lib, loan) for loan in loans], LOAN_COLUMNS,
               "No open loans.", "{id} - book {book_id} user {user_id} due {due_date} [{effective_status}]")


@app.command("fines")
def cli_fines(ctx: typer.Context, user_id: str):
    """Show a user's outstanding fines and their total."""
    lib = _library(ctx)
    fines = lib.engine.list_outstanding_fines(user_id)
    print_rows("💰 Fines", [f.to_dict() for f in fines], FINE_COLUMNS,
               "No outstanding fines.", "{id} - {amount:.2f} {reason}")
    if fines:
        print(f"Total: {lib.engine.sum_outstanding_fines(user_id):.2f}")


@app.command("pay-fine")
def cli_pay_fine(ctx: typer.Context, fine_id: str):
    """Mark a fine as paid."""
    fine = _unwrap(_library(ctx).engine.mark_fine_paid(fine_id))
    print(f"Fine {fine.id} marked paid ({fine.amount:.2f}).")


# ------------------------- Settings ------------------------- #
@app.command("setting-get")
def cli_setting_get(ctx: typer.Context, key: str):
    """Show a stored system setting."""
    setting = _library(ctx).config.get_setting(key)
    if not setting:
        print(f"Setting {key} is not set.")
        raise typer.Exit(code=1)
    print_record("⚙️  Setting", setting.to_dict(),
                 [("setting_key", "Key"), ("setting_value", "Value"), ("updated_by", "Updated by")])


@app.command("setting-set")
def cli_setting_set(
    ctx: typer.Context,
    key: str,
    value: str,
    by: Optional[str] = typer.Option(None, "--by", help="ID of the admin making the change"),
):
    """Create or update a system setting."""
    config = _library(ctx).config
    try:
        config.validate(key, value)
        setting = config.set(key, value, by)
    except ValueError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    print(f"{setting.setting_key} = {setting.setting_value}")


# ------------------------- Misc ------------------------- #
@app.command("stats")
def cli_stats(ctx: typer.Context):
    """Show circulation statistics."""
    print_stats_result(_library(ctx).engine.get_statistics())


@app.command("seed")
def cli_seed(ctx: typer.Context):
    """Insert demo users, books and settings into an empty database."""
    _library(ctx).seed_demo_data()
    print("Demo data ready.")


@app.command("serve")
def cli_serve(
    ctx: typer.Context,
    timeout: int = typer.Option(0, "--timeout", help="Seconds to run before exiting (0 = no timeout)"),
):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    console.print(f"[bold green]Starting API on http://{host}:{port}/[/bold green]")
    env = dict(os.environ, LIBRARY_DB_FILE=_library(ctx).db.db_file)
    args = [
        sys.executable,
        "-m", "uvicorn",
        "--factory",
        "campuslib.api:create_app",
        "--host", host,
        "--port", str(port),
    ]
    if timeout and timeout > 0:
        proc = subprocess.Popen(args, env=env)
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
    else:
        subprocess.run(args, env=env)


if __name__ == "__main__":
    app()
