import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_books(books: List[Any]) -> None:
    """Print catalog entries in the current output mode.
    - plain: 'Title by Author (available/total available)' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Copies", justify="right")
        table.add_column("Status", style="green")
        for b in books:
            table.add_row(
                b.book_id, b.title, b.author,
                f"{b.copies_available}/{b.copies_total}", b.availability_status.value,
            )
        _console.print(table)
    else:
        for b in books:
            print(f"{b.book_id} - {b.title} by {b.author} ({b.copies_available}/{b.copies_total} available)")


def print_overdue(loans: List[Dict[str, Any]]) -> None:
    mode = get_output_mode()

    if not loans:
        print("No overdue loans.")
        return

    if mode == "json":
        print(json.dumps(loans, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="⏰ Overdue loans", header_style="bold red")
        table.add_column("Loan", style="magenta", no_wrap=True)
        table.add_column("Book")
        table.add_column("Borrower")
        table.add_column("Due")
        table.add_column("Days", justify="right")
        table.add_column("Fine", justify="right")
        for loan in loans:
            fine = loan.get("fine")
            table.add_row(
                loan["loan_id"],
                (loan.get("book") or {}).get("title", ""),
                (loan.get("user") or {}).get("name", ""),
                loan["due_date"],
                str(loan["days_overdue"]),
                f"{fine['amount']:.2f} ({fine['payment_status']})" if fine else "-",
            )
        _console.print(table)
    else:
        for loan in loans:
            title = (loan.get("book") or {}).get("title", "")
            name = (loan.get("user") or {}).get("name", "")
            print(f"{loan['loan_id']} - {title} ({name}) due {loan['due_date']}, {loan['days_overdue']} days overdue")


def print_record(title: str, data: Dict[str, Any]) -> None:
    """Print a single result object (user, fine, report).
    - plain: 'key: value' lines
    - json: JSON object
    - rich: Panel with the same lines
    """
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(data, ensure_ascii=False, default=str))
        return

    lines = []
    for key, value in data.items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value, ensure_ascii=False, default=str)
        lines.append(f"{key}: {value}")

    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title=title, border_style="blue"))
    else:
        print(title)
        for line in lines:
            print(line)
