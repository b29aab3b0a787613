import importlib

import pytest
from fastapi.testclient import TestClient

from models import Role


@pytest.fixture
def api_module(tmp_path, request, monkeypatch):
    # Unique per-test DB; api builds its Library() at import time
    db_file = str(tmp_path / f"api_test_{request.node.name}.db")
    monkeypatch.setenv("LIBRARY_DB_FILE", db_file)

    import api as api_module
    # Reload api so its global Library() instance uses the test-specific DB
    importlib.reload(api_module)
    return api_module


@pytest.fixture
def client(api_module):
    return TestClient(api_module.app)


@pytest.fixture
def users(api_module):
    lib = api_module.library
    return {
        "admin": lib.add_user("Ada Admin", "ada@example.com", role=Role.ADMIN),
        "librarian": lib.add_user("Libby Rarian", "libby@example.com", role=Role.LIBRARIAN),
        "student": lib.add_user("Sam Student", "sam@example.com", role=Role.STUDENT),
        "member": lib.add_user("Morgan Member", "morgan@example.com", role=Role.MEMBER),
    }


def as_user(user):
    return {"X-User-Id": user.user_id}


@pytest.fixture
def book(client, users):
    response = client.post(
        "/books",
        headers=as_user(users["librarian"]),
        json={"title": "Dune", "author": "Frank Herbert", "isbn": "9780441172719", "copies_total": 2},
    )
    assert response.status_code == 201
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["db"] is True
    assert body["total_books"] == 0
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_requires_identity(client, users):
    assert client.get("/books").status_code == 401
    response = client.get("/books", headers={"X-User-Id": "nobody"})
    assert response.status_code == 401
    assert response.json()["code"] == "unauthorized"


def test_get_books(client, users, book):
    response = client.get("/books", headers=as_user(users["student"]))
    assert response.status_code == 200
    body = response.json()
    assert [b["book_id"] for b in body["books"]] == [book["book_id"]]
    assert body["pagination"] == {"page": 1, "limit": 20, "total": 1, "total_pages": 1}


def test_create_book_requires_staff(client, users):
    payload = {"title": "Emma", "author": "Jane Austen"}
    response = client.post("/books", headers=as_user(users["student"]), json=payload)
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


def test_create_book_defaults(client, book):
    assert book["copies_total"] == 2
    assert book["copies_available"] == 2
    assert book["availability_status"] == "Available"


def test_create_book_schema_validation(client, users):
    response = client.post(
        "/books",
        headers=as_user(users["librarian"]),
        json={"title": "Bad", "author": "Author", "copies_total": 0},
    )
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "validation_error"
    assert "copies_total" in body["detail"]


def test_create_book_rejects_available_above_total(client, users):
    response = client.post(
        "/books",
        headers=as_user(users["librarian"]),
        json={"title": "Bad", "author": "Author", "copies_total": 1, "copies_available": 3},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_update_and_delete_book(client, users, book):
    headers = as_user(users["librarian"])
    response = client.put(f"/books/{book['book_id']}", headers=headers, json={"copies_available": 0})
    assert response.status_code == 200
    assert response.json()["availability_status"] == "Borrowed"

    response = client.delete(f"/books/{book['book_id']}", headers=headers)
    assert response.status_code == 200
    assert client.get(f"/books/{book['book_id']}", headers=headers).status_code == 404
    assert client.delete(f"/books/{book['book_id']}", headers=headers).status_code == 404


def test_loan_and_return_flow(client, users, book):
    staff = as_user(users["librarian"])
    student = users["student"]

    response = client.post(
        "/loans",
        headers=staff,
        json={"book_id": book["book_id"], "user_id": student.user_id, "borrow_date": "2024-01-01"},
    )
    assert response.status_code == 201
    loan = response.json()
    assert loan["status"] == "Borrowed"
    assert loan["due_date"] == "2024-01-15"
    assert loan["book"]["copies_available"] == 1

    response = client.patch(
        f"/loans/{loan['loan_id']}",
        headers=staff,
        json={"action": "return", "return_date": "2024-01-18", "assess_fine": True},
    )
    assert response.status_code == 200
    returned = response.json()
    assert returned["status"] == "Returned"
    assert returned["days_overdue"] == 3
    assert returned["fine"]["payment_status"] == "Unpaid"
    assert returned["book"]["copies_available"] == 2

    response = client.patch(f"/loans/{loan['loan_id']}", headers=staff, json={"action": "return"})
    assert response.status_code == 400


def test_loan_invalid_action(client, users, book):
    staff = as_user(users["librarian"])
    loan = client.post(
        "/loans", headers=staff, json={"book_id": book["book_id"], "user_id": users["student"].user_id}
    ).json()
    response = client.patch(f"/loans/{loan['loan_id']}", headers=staff, json={"action": "renew"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid action"


def test_loan_unavailable_and_duplicate(client, users, book):
    staff = as_user(users["librarian"])
    for who in ("student", "member"):
        response = client.post("/loans", headers=staff, json={"book_id": book["book_id"], "user_id": users[who].user_id})
        assert response.status_code == 201

    response = client.post(
        "/loans", headers=staff, json={"book_id": book["book_id"], "user_id": users["admin"].user_id}
    )
    assert response.status_code == 400
    assert response.json()["code"] == "unavailable"

    response = client.post(
        "/loans", headers=staff, json={"book_id": book["book_id"], "user_id": users["student"].user_id}
    )
    assert response.status_code == 400
    assert response.json()["code"] == "unavailable"


def test_duplicate_loan_while_copies_remain(client, users):
    staff = as_user(users["librarian"])
    book = client.post("/books", headers=staff, json={"title": "Emma", "author": "Jane Austen", "copies_total": 3}).json()
    payload = {"book_id": book["book_id"], "user_id": users["student"].user_id}

    assert client.post("/loans", headers=staff, json=payload).status_code == 201
    response = client.post("/loans", headers=staff, json=payload)
    assert response.status_code == 400
    assert response.json()["code"] == "duplicate_loan"
    assert client.get(f"/books/{book['book_id']}", headers=staff).json()["copies_available"] == 2


def test_student_cannot_create_loan(client, users, book):
    response = client.post(
        "/loans",
        headers=as_user(users["student"]),
        json={"book_id": book["book_id"], "user_id": users["student"].user_id},
    )
    assert response.status_code == 403


def test_loans_are_scoped_to_caller(client, users, book):
    staff = as_user(users["librarian"])
    own = client.post("/loans", headers=staff, json={"book_id": book["book_id"], "user_id": users["student"].user_id}).json()
    other = client.post("/loans", headers=staff, json={"book_id": book["book_id"], "user_id": users["member"].user_id}).json()

    response = client.get("/loans", headers=as_user(users["student"]))
    assert [l["loan_id"] for l in response.json()["loans"]] == [own["loan_id"]]

    # user_id filter is ignored for non-staff
    response = client.get("/loans", params={"user_id": users["member"].user_id}, headers=as_user(users["student"]))
    assert [l["loan_id"] for l in response.json()["loans"]] == [own["loan_id"]]

    response = client.get("/loans", params={"user_id": users["member"].user_id}, headers=staff)
    assert [l["loan_id"] for l in response.json()["loans"]] == [other["loan_id"]]

    assert client.get(f"/loans/{other['loan_id']}", headers=as_user(users["student"])).status_code == 403
    assert client.get(f"/loans/{own['loan_id']}", headers=as_user(users["student"])).status_code == 200


def test_reservation_flow(client, users, book):
    student = as_user(users["student"])
    response = client.post("/reservations", headers=student, json={"book_id": book["book_id"]})
    assert response.status_code == 201
    reservation = response.json()
    assert reservation["status"] == "Pending"
    assert reservation["user_id"] == users["student"].user_id

    response = client.post("/reservations", headers=student, json={"book_id": book["book_id"]})
    assert response.status_code == 400
    assert response.json()["code"] == "duplicate_reservation"

    url = f"/reservations/{reservation['reservation_id']}"
    assert client.patch(url, headers=student, json={"status": "Collected"}).status_code == 403
    assert client.patch(url, headers=as_user(users["member"]), json={"status": "Cancelled"}).status_code == 403

    response = client.patch(url, headers=student, json={"status": "Cancelled"})
    assert response.status_code == 200
    assert response.json()["status"] == "Cancelled"

    response = client.patch(url, headers=as_user(users["librarian"]), json={"status": "Collected"})
    assert response.status_code == 400

    assert client.delete(url, headers=student).status_code == 200
    assert client.get("/reservations", headers=student).json()["reservations"] == []


def test_reservation_for_someone_else(client, users, book):
    payload = {"book_id": book["book_id"], "user_id": users["member"].user_id}
    assert client.post("/reservations", headers=as_user(users["student"]), json=payload).status_code == 403
    assert client.post("/reservations", headers=as_user(users["librarian"]), json=payload).status_code == 201


def test_reservation_invalid_status(client, users, book):
    student = as_user(users["student"])
    reservation = client.post("/reservations", headers=student, json={"book_id": book["book_id"]}).json()
    response = client.patch(
        f"/reservations/{reservation['reservation_id']}",
        headers=as_user(users["librarian"]),
        json={"status": "Lost"},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_fines_flow(client, users, book):
    staff = as_user(users["librarian"])
    student = as_user(users["student"])
    loan = client.post(
        "/loans",
        headers=staff,
        json={"book_id": book["book_id"], "user_id": users["student"].user_id, "borrow_date": "2024-01-01"},
    ).json()

    assert client.post("/fines", headers=student, json={"loan_id": loan["loan_id"]}).status_code == 403

    response = client.post("/fines", headers=staff, json={"loan_id": loan["loan_id"], "amount": 4.0})
    assert response.status_code == 201
    fine = response.json()
    assert fine["amount"] == 4.0
    assert fine["loan"]["user"]["user_id"] == users["student"].user_id

    assert client.post("/fines", headers=staff, json={"loan_id": loan["loan_id"]}).status_code == 400

    assert client.get("/fines", headers=as_user(users["member"])).json()["fines"] == []
    assert len(client.get("/fines", headers=student).json()["fines"]) == 1

    url = f"/fines/{fine['fine_id']}"
    assert client.patch(url, headers=as_user(users["member"]), json={"payment_status": "Paid"}).status_code == 403
    response = client.patch(url, headers=student, json={"payment_status": "Paid"})
    assert response.status_code == 200
    assert response.json()["payment_status"] == "Paid"
    assert client.patch(url, headers=student, json={"payment_status": "Unpaid"}).status_code == 403


def test_reports(client, users, book):
    staff = as_user(users["librarian"])
    client.post("/loans", headers=staff, json={"book_id": book["book_id"], "user_id": users["student"].user_id})

    response = client.get("/reports", params={"type": "popular_books"}, headers=staff)
    assert response.status_code == 200
    body = response.json()
    assert body["report"]["report_type"] == "popular_books"
    assert body["report"]["generated_by"] == users["librarian"].user_id
    assert body["data"]["popular_books"][0]["count"] == 1

    assert client.get("/reports", params={"type": "bogus"}, headers=staff).status_code == 400
    assert client.get("/reports", headers=staff).status_code == 400
    assert client.get("/reports", params={"type": "overdue"}, headers=as_user(users["student"])).status_code == 403


def test_register_user(client, users):
    response = client.post("/users", json={"name": "New Reader", "email": "new@example.com"})
    assert response.status_code == 201
    assert response.json()["user"]["role"] == "Student"

    response = client.post("/users", json={"name": "Dup", "email": "new@example.com"})
    assert response.status_code == 400

    payload = {"name": "Sneaky", "email": "sneaky@example.com", "role": "Admin"}
    assert client.post("/users", json=payload).status_code == 403
    assert client.post("/users", headers=as_user(users["librarian"]), json=payload).status_code == 403
    assert client.post("/users", headers=as_user(users["admin"]), json=payload).status_code == 201


def test_list_and_get_users(client, users):
    assert client.get("/users", headers=as_user(users["librarian"])).status_code == 403

    response = client.get("/users", params={"role": "Member"}, headers=as_user(users["admin"]))
    assert response.status_code == 200
    assert [u["email"] for u in response.json()["users"]] == ["morgan@example.com"]

    me = client.get("/users/me", headers=as_user(users["student"])).json()
    assert me["user_id"] == users["student"].user_id

    other = users["member"].user_id
    assert client.get(f"/users/{other}", headers=as_user(users["student"])).status_code == 403
    assert client.get(f"/users/{other}", headers=as_user(users["admin"])).status_code == 200
    assert client.get("/users/missing", headers=as_user(users["admin"])).status_code == 404


def test_bad_enum_values_are_validation_errors(client, users, book):
    staff = as_user(users["librarian"])
    loan = client.post(
        "/loans", headers=staff, json={"book_id": book["book_id"], "user_id": users["student"].user_id}
    ).json()
    fine = client.post("/fines", headers=staff, json={"loan_id": loan["loan_id"], "amount": 1.0}).json()

    response = client.patch(f"/fines/{fine['fine_id']}", headers=staff, json={"payment_status": "Waived"})
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"
    assert "payment_status" in response.json()["detail"]

    response = client.post("/users", json={"name": "Odd", "email": "odd@example.com", "role": "Wizard"})
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"

    response = client.post("/loans", headers=staff, json={"book_id": book["book_id"]})
    assert response.status_code == 400
    assert "user_id" in response.json()["detail"]
