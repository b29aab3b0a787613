import json
import logging
import sqlite3
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from config import settings
from database import get_db_connection
from errors import ValidationError
from lifecycle import DateLike, days_overdue, to_date
from models import Book, Fine, Loan, ReportType, User

logger = logging.getLogger(__name__)


class ReportService:
    """Read-only rollups over the loan ledger, plus a log of generated reports."""

    def __init__(self, db_file: str) -> None:
        self.db_file = db_file

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    def build(self, report_type: ReportType, today: Optional[DateLike] = None) -> Dict[str, Any]:
        """Compute one report without storing it."""
        try:
            report_type = ReportType(report_type)
        except ValueError as e:
            raise ValidationError("Invalid report type") from e

        if report_type == ReportType.BORROWING_TRENDS:
            return self.borrowing_trends()
        if report_type == ReportType.POPULAR_BOOKS:
            return self.popular_books()
        if report_type == ReportType.OVERDUE:
            return self.overdue(today)
        if report_type == ReportType.FINES_COLLECTED:
            return self.fines_collected()
        return self.active_users()

    def generate(
        self,
        report_type: ReportType,
        generated_by: str,
        today: Optional[DateLike] = None,
    ) -> Dict[str, Any]:
        """Compute a report and record it in the ``reports`` table."""
        data = self.build(report_type, today)
        report = {
            "report_id": str(uuid.uuid4()),
            "generated_by": generated_by,
            "report_type": ReportType(report_type).value,
            "date_generated": datetime.now(timezone.utc).isoformat(),
        }
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO reports (report_id, generated_by, report_type, date_generated, report_data)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    report["report_id"], generated_by, report["report_type"],
                    report["date_generated"], json.dumps(data, default=str),
                ),
            )
        finally:
            conn.close()
        logger.info(f"Report generated: type={report['report_type']} by={generated_by}")
        return {"report": report, "data": data}

    def borrowing_trends(self) -> Dict[str, Any]:
        """Loans grouped by borrow month (YYYY-MM) with Borrowed/Returned counts."""
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT substr(borrow_date, 1, 7) AS month,
                       SUM(CASE WHEN status = 'Borrowed' THEN 1 ELSE 0 END) AS borrowed,
                       SUM(CASE WHEN status = 'Returned' THEN 1 ELSE 0 END) AS returned
                FROM loans
                GROUP BY month
                ORDER BY month
                """
            ).fetchall()
        finally:
            conn.close()
        trends = {r["month"]: {"borrowed": r["borrowed"], "returned": r["returned"]} for r in rows}
        return {"trends": trends}

    def popular_books(self, limit: Optional[int] = None) -> Dict[str, Any]:
        limit = limit or settings.popular_books_limit
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT l.book_id AS book_id, COUNT(*) AS count
                FROM loans l
                WHERE l.status = 'Borrowed'
                GROUP BY l.book_id
                ORDER BY count DESC, l.book_id
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
            popular = []
            for r in rows:
                book = _fetch_one(conn, "books", "book_id", r["book_id"], Book)
                popular.append({"book_id": r["book_id"], "book": book, "count": r["count"]})
        finally:
            conn.close()
        return {"popular_books": popular}

    def overdue(self, today: Optional[DateLike] = None) -> Dict[str, Any]:
        """Active loans whose due date is before today, with their fine if one exists."""
        ref = to_date(today) if today is not None else date.today()
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM loans WHERE status = 'Borrowed' AND due_date < ? ORDER BY due_date",
                (ref.isoformat(),),
            ).fetchall()
            overdue_loans = []
            for r in rows:
                loan = Loan.from_row(r)
                overdue_loans.append({
                    **loan.to_dict(),
                    "days_overdue": days_overdue(loan.due_date, ref),
                    "book": _fetch_one(conn, "books", "book_id", loan.book_id, Book),
                    "user": _fetch_one(conn, "users", "user_id", loan.user_id, User),
                    "fine": _fetch_one(conn, "fines", "loan_id", loan.loan_id, Fine),
                })
        finally:
            conn.close()
        return {"overdue_loans": overdue_loans}

    def fines_collected(self) -> Dict[str, Any]:
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT payment_status, COALESCE(SUM(amount), 0) AS total, COUNT(*) AS count
                FROM fines
                GROUP BY payment_status
                """
            ).fetchall()
        finally:
            conn.close()
        totals = {r["payment_status"]: (float(r["total"]), r["count"]) for r in rows}
        paid_total, paid_count = totals.get("Paid", (0.0, 0))
        unpaid_total, unpaid_count = totals.get("Unpaid", (0.0, 0))
        return {
            "total_collected": round(paid_total, 2),
            "total_unpaid": round(unpaid_total, 2),
            "paid_count": paid_count,
            "unpaid_count": unpaid_count,
        }

    def active_users(self) -> Dict[str, Any]:
        """Users ranked by how many books they currently have out."""
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT user_id, COUNT(*) AS count
                FROM loans
                WHERE status = 'Borrowed'
                GROUP BY user_id
                ORDER BY count DESC, user_id
                """
            ).fetchall()
            active = [
                {
                    "user_id": r["user_id"],
                    "user": _fetch_one(conn, "users", "user_id", r["user_id"], User),
                    "count": r["count"],
                }
                for r in rows
            ]
        finally:
            conn.close()
        return {"active_users": active}


def _fetch_one(conn: sqlite3.Connection, table: str, key: str, value: str, model: Any) -> Optional[Dict[str, Any]]:
    row = conn.execute(f"SELECT * FROM {table} WHERE {key} = ?", (value,)).fetchone()
    return model.from_row(row).to_dict() if row else None
