import logging
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

import database
from config import settings
from errors import LibraryError
from library import Library
from models import ReportType, Role
from reports import ReportService
from ui_helpers import set_output_mode, print_books, print_overdue, print_record

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

console = Console(stderr=True)

app = typer.Typer(help="Library circulation CLI")


def _library() -> Library:
    # Resolved per command so LIBRARY_DB_FILE changes are picked up
    return Library()


def _fail(e: LibraryError) -> None:
    print(f"Error: {e.message}")
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    if output:
        set_output_mode(output)


@app.command("init-db")
def cli_init_db():
    """Create the database tables if they do not exist."""
    db_file = database.resolve_database_file()
    database.initialize_database(db_file)
    print(f"Database initialized: {db_file}")


@app.command("create-user")
def cli_create_user(
    name: str = typer.Argument(..., help="Full name"),
    email: str = typer.Argument(..., help="Unique email address"),
    role: Role = typer.Option(Role.STUDENT, "--role", "-r", help="Admin, Librarian, Student or Member"),
    phone: Optional[str] = typer.Option(None, "--phone", help="Contact number"),
):
    """Create a user. This is how the first Admin account is made."""
    try:
        user = _library().add_user(name, email, role=role, phone=phone)
    except LibraryError as e:
        _fail(e)
    print_record("User created", user.to_dict())


@app.command("books")
def cli_books(
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Title, author or ISBN substring"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Exact category"),
    page: int = typer.Option(1, "--page", min=1),
    limit: int = typer.Option(settings.default_page_size, "--limit", "-l", min=1, help="Books per page"),
):
    """List catalog entries with their copy counts."""
    books, total = _library().list_books(search=search, category=category, page=page, limit=limit)
    print_books(books)
    if books and total > len(books):
        console.print(f"[dim]Showing {len(books)} of {total} books (page {page})[/]")


@app.command("overdue")
def cli_overdue(
    today: Optional[str] = typer.Option(None, "--today", help="Reference date (YYYY-MM-DD), defaults to today"),
):
    """List active loans past their due date."""
    lib = _library()
    try:
        data = ReportService(lib.db_file).overdue(today)
    except LibraryError as e:
        _fail(e)
    print_overdue(data["overdue_loans"])


@app.command("report")
def cli_report(
    report_type: str = typer.Argument(..., help=", ".join(t.value for t in ReportType)),
    generated_by: Optional[str] = typer.Option(
        None, "--by", help="User id to record the report under; without it the report is not stored"
    ),
):
    """Compute one of the circulation reports."""
    lib = _library()
    service = ReportService(lib.db_file)
    try:
        if generated_by:
            lib.require_user(generated_by)
            result = service.generate(report_type, generated_by=generated_by)
            print_record(f"Report {result['report']['report_type']}", result)
        else:
            print_record(f"Report {report_type}", service.build(report_type))
    except LibraryError as e:
        _fail(e)


@app.command("assess-fine")
def cli_assess_fine(
    loan_id: str = typer.Argument(..., help="Loan to fine"),
    amount: Optional[float] = typer.Option(None, "--amount", min=0, help="Fixed amount instead of days x rate"),
):
    """Create the fine for an overdue loan."""
    try:
        fine = _library().assess_fine(loan_id, amount=amount)
    except LibraryError as e:
        _fail(e)
    print_record("Fine assessed", fine.to_dict())


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default from API_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Port (default from API_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False)
    except KeyboardInterrupt:
        print("Server stopped.")


if __name__ == "__main__":
    app()
