import os
import pytest

from library import Library
from models import Role


@pytest.fixture
def lib(tmp_path, request):
    # Unique database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file)
    yield lib
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def librarian(lib):
    return lib.add_user("Libby Rarian", "libby@example.com", role=Role.LIBRARIAN)


@pytest.fixture
def student(lib):
    return lib.add_user("Sam Student", "sam@example.com", role=Role.STUDENT)


@pytest.fixture
def member(lib):
    return lib.add_user("Morgan Member", "morgan@example.com", role=Role.MEMBER)
