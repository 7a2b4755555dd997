"""
APSConnect - Test Configuration and Fixtures
"""
import os
import sqlite3
import tempfile

import pytest

# Point the import-time database at a scratch file before the app loads.
os.environ["DATABASE_PATH"] = os.path.join(tempfile.mkdtemp(), "import.db")
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only"

from app import app as flask_app, init_db  # noqa: E402
import storage  # noqa: E402

PASSWORD = "secret123"


@pytest.fixture
def app(tmp_path):
    """Flask app bound to a fresh, empty database for each test"""
    flask_app.config.update(
        TESTING=True,
        DATABASE_PATH=str(tmp_path / "test.db"),
        SEED_DEMO_DATA=False,
    )
    with flask_app.app_context():
        init_db()
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    """Direct connection to the test database, outside any request"""
    conn = sqlite3.connect(app.config["DATABASE_PATH"])
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    yield conn
    conn.close()


@pytest.fixture
def make_student(db):
    def _make(usn="1AP21CS001", branch="CSE", semester="3rd Sem", approved=True, name="Test Student"):
        storage.register_student(db, usn, f"{usn.lower()}@apsconnect.edu", name, PASSWORD, branch, semester)
        if approved:
            storage.approve_user(db, usn.upper(), "admin@apsconnect.local")
        db.commit()
        return storage.get_user(db, usn.upper())

    return _make


@pytest.fixture
def faculty(db):
    user = storage.create_staff_user(
        db,
        "faculty@apsconnect.edu",
        "Test Faculty",
        PASSWORD,
        "faculty",
        assigned_branches=["CSE"],
        assigned_semesters=["3rd Sem"],
    )
    db.commit()
    return user


@pytest.fixture
def admin(db):
    user = storage.create_staff_user(db, "admin@apsconnect.local", "Campus Admin", PASSWORD, "admin")
    db.commit()
    return user


@pytest.fixture
def login(client):
    def _login(identifier, password=PASSWORD):
        return client.post(
            "/login",
            data={"identifier": identifier, "password": password},
            follow_redirects=True,
        )

    return _login
