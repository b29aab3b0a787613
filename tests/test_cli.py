import json

import pytest
from typer.testing import CliRunner
from unittest.mock import patch

from main import app
from models import Role
from ui_helpers import OUTPUT_MODE_ENV

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_db(lib, monkeypatch):
    # Every command builds its own Library(); point it at the test database
    monkeypatch.setenv("LIBRARY_DB_FILE", lib.db_file)
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")
    return lib


def test_init_db(lib):
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0
    assert f"Database initialized: {lib.db_file}" in result.stdout


def test_books_empty():
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_books_lists_copies(lib):
    lib.add_book("Dune", "Frank Herbert", copies_total=2, copies_available=1)
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 0
    assert "Dune by Frank Herbert (1/2 available)" in result.stdout


def test_books_json_output(lib):
    lib.add_book("Emma", "Jane Austen", category="Fiction")
    lib.add_book("Dune", "Frank Herbert", category="SciFi")
    result = runner.invoke(app, ["--output", "json", "books", "--category", "Fiction"])
    assert result.exit_code == 0
    books = json.loads(result.stdout)
    assert [b["title"] for b in books] == ["Emma"]


def test_create_user(lib):
    result = runner.invoke(app, ["create-user", "Ada Admin", "ada@example.com", "--role", "Admin"])
    assert result.exit_code == 0
    assert "User created" in result.stdout
    assert "role: Admin" in result.stdout
    assert lib.list_users(role=Role.ADMIN)[0].email == "ada@example.com"


def test_create_user_duplicate_email(lib):
    lib.add_user("Ada", "ada@example.com")
    result = runner.invoke(app, ["create-user", "Ada Again", "ada@example.com"])
    assert result.exit_code == 1
    assert "Error: User with this email already exists" in result.stdout


def test_overdue(lib, student):
    book = lib.add_book("Late", "Author")
    loan = lib.create_loan(book.book_id, student.user_id, borrow_date="2024-01-01")
    result = runner.invoke(app, ["overdue", "--today", "2024-01-20"])
    assert result.exit_code == 0
    assert loan.loan_id in result.stdout
    assert "5 days overdue" in result.stdout

    result = runner.invoke(app, ["overdue", "--today", "2024-01-02"])
    assert "No overdue loans." in result.stdout


def test_report_without_storing(lib, student):
    book = lib.add_book("Popular", "Author")
    lib.create_loan(book.book_id, student.user_id)
    result = runner.invoke(app, ["--output", "json", "report", "popular_books"])
    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["popular_books"][0]["book_id"] == book.book_id


def test_report_stored_under_user(lib, librarian):
    result = runner.invoke(app, ["--output", "json", "report", "fines_collected", "--by", librarian.user_id])
    assert result.exit_code == 0
    body = json.loads(result.stdout)
    assert body["report"]["generated_by"] == librarian.user_id
    assert body["data"]["paid_count"] == 0


def test_report_invalid_type():
    result = runner.invoke(app, ["report", "nonsense"])
    assert result.exit_code == 1
    assert "Error: Invalid report type" in result.stdout


def test_assess_fine(lib, student):
    book = lib.add_book("Damaged", "Author")
    loan = lib.create_loan(book.book_id, student.user_id)
    result = runner.invoke(app, ["assess-fine", loan.loan_id, "--amount", "7.5"])
    assert result.exit_code == 0
    assert "Fine assessed" in result.stdout
    assert "amount: 7.5" in result.stdout

    result = runner.invoke(app, ["assess-fine", loan.loan_id])
    assert result.exit_code == 1
    assert "already has a fine" in result.stdout


@patch("subprocess.run")
def test_serve_command(mock_subprocess_run):
    result = runner.invoke(app, ["serve", "--port", "8123"])
    assert result.exit_code == 0
    assert "Starting API on http://" in result.stdout
    args = mock_subprocess_run.call_args[0][0]
    assert "uvicorn" in args
    assert "api:app" in args
    assert "8123" in args
