from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

from flask import current_app, g
from werkzeug.security import generate_password_hash

from config import DEFAULT_NOTIFICATION_PREFERENCES

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


class RecordNotFoundError(StorageError):
    pass


class StaleRecordError(StorageError):
    """Raised when a versioned update was made against an outdated copy."""


def get_db() -> sqlite3.Connection:
    if "db" not in g:
        g.db = sqlite3.connect(current_app.config["DATABASE_PATH"])
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA foreign_keys = ON")
    return g.db


def close_db(_error: Any = None) -> None:
    db = g.pop("db", None)
    if db is not None:
        db.close()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def table_columns(db: sqlite3.Connection, table_name: str) -> set[str]:
    rows = db.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {row["name"] for row in rows}


def ensure_column(db: sqlite3.Connection, table_name: str, column_name: str, column_sql: str) -> None:
    if column_name not in table_columns(db, table_name):
        db.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_sql}")


def load_json(raw: str | None, fallback: Any) -> Any:
    if not raw:
        return fallback
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed stored JSON: %.60r", raw)
        return fallback
    if not isinstance(value, type(fallback)):
        logger.warning("Ignoring stored JSON of unexpected type %s", type(value).__name__)
        return fallback
    return value


def create_schema(db: sqlite3.Connection) -> None:
    db.executescript(
        """
        CREATE TABLE IF NOT EXISTS users (
            uid TEXT PRIMARY KEY,
            email TEXT NOT NULL,
            display_name TEXT,
            password_hash TEXT NOT NULL,
            role TEXT NOT NULL CHECK(role IN ('student', 'admin', 'pending', 'faculty', 'alumni')),
            usn TEXT,
            branch TEXT,
            semester TEXT,
            is_approved INTEGER NOT NULL DEFAULT 0,
            approved_by_uid TEXT,
            approval_date TEXT,
            rejection_reason TEXT,
            rejected_by_uid TEXT,
            rejected_date TEXT,
            assigned_branches TEXT NOT NULL DEFAULT '[]',
            assigned_semesters TEXT NOT NULL DEFAULT '[]',
            faculty_title TEXT,
            notification_preferences TEXT NOT NULL DEFAULT '{}',
            registration_date TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS attendance_records (
            id TEXT PRIMARY KEY,
            student_uid TEXT NOT NULL,
            student_name TEXT NOT NULL DEFAULT '',
            student_usn TEXT NOT NULL DEFAULT '',
            date TEXT NOT NULL,
            period INTEGER NOT NULL,
            subject TEXT NOT NULL,
            status TEXT NOT NULL CHECK(status IN ('present', 'absent')),
            marked_by_uid TEXT NOT NULL,
            branch TEXT NOT NULL DEFAULT '',
            semester TEXT NOT NULL DEFAULT ''
        );

        CREATE TABLE IF NOT EXISTS fee_records (
            id TEXT PRIMARY KEY,
            student_uid TEXT NOT NULL,
            student_name TEXT NOT NULL DEFAULT '',
            student_usn TEXT NOT NULL DEFAULT '',
            branch TEXT NOT NULL DEFAULT '',
            semester TEXT NOT NULL DEFAULT '',
            description TEXT NOT NULL,
            amount REAL NOT NULL,
            due_date TEXT NOT NULL,
            status TEXT NOT NULL CHECK(status IN ('paid', 'pending', 'overdue')),
            paid_on TEXT,
            created_at TEXT NOT NULL,
            created_by_uid TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS assignments (
            id TEXT PRIMARY KEY,
            branch TEXT NOT NULL,
            semester TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            due_date TEXT,
            posted_by_uid TEXT NOT NULL,
            posted_by_display_name TEXT NOT NULL DEFAULT '',
            posted_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS notifications (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            type TEXT NOT NULL CHECK(type IN ('approval', 'assignment_deadline', 'fee_due', 'low_attendance')),
            title TEXT NOT NULL,
            message TEXT NOT NULL,
            href TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            is_read INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY (user_id) REFERENCES users(uid) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_attendance_student ON attendance_records(student_uid, subject);
        CREATE INDEX IF NOT EXISTS idx_attendance_scope ON attendance_records(branch, semester, date);
        CREATE INDEX IF NOT EXISTS idx_fee_student ON fee_records(student_uid, status);
        CREATE INDEX IF NOT EXISTS idx_assignment_scope ON assignments(branch, semester);
        CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, is_read, created_at DESC);
        """
    )

    # Older databases were created before fee records were versioned.
    ensure_column(db, "fee_records", "version", "INTEGER NOT NULL DEFAULT 1")


# Users


def user_from_row(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    user = dict(row)
    user["is_approved"] = bool(user["is_approved"])
    user["assigned_branches"] = load_json(user["assigned_branches"], [])
    user["assigned_semesters"] = load_json(user["assigned_semesters"], [])
    user["notification_preferences"] = {
        **DEFAULT_NOTIFICATION_PREFERENCES,
        **load_json(user["notification_preferences"], {}),
    }
    return user


def get_user(db: sqlite3.Connection, uid: str) -> dict[str, Any] | None:
    return user_from_row(db.execute("SELECT * FROM users WHERE uid = ?", (uid,)).fetchone())


def find_user_for_login(db: sqlite3.Connection, identifier: str) -> dict[str, Any] | None:
    """Students sign in with their USN, faculty and admins with their email."""
    ident = identifier.strip()
    if "@" in ident:
        row = db.execute(
            "SELECT * FROM users WHERE LOWER(email) = ? AND role IN ('faculty', 'admin')",
            (ident.lower(),),
        ).fetchone()
    else:
        row = db.execute(
            "SELECT * FROM users WHERE uid = ? AND role IN ('student', 'pending', 'alumni')",
            (ident.upper(),),
        ).fetchone()
    return user_from_row(row)


def email_in_use(db: sqlite3.Connection, email: str) -> bool:
    row = db.execute(
        "SELECT 1 FROM users WHERE LOWER(email) = ?", (email.strip().lower(),)
    ).fetchone()
    return row is not None


def list_users(db: sqlite3.Connection, role: str | None = None) -> list[dict[str, Any]]:
    if role:
        rows = db.execute(
            "SELECT * FROM users WHERE role = ? ORDER BY display_name", (role,)
        ).fetchall()
    else:
        rows = db.execute("SELECT * FROM users ORDER BY role, display_name").fetchall()
    return [user_from_row(row) for row in rows]


def list_students(
    db: sqlite3.Connection,
    branches: list[str] | None = None,
    semesters: list[str] | None = None,
) -> list[dict[str, Any]]:
    students = [
        user
        for user in list_users(db, "student")
        if (not branches or user["branch"] in branches)
        and (not semesters or user["semester"] in semesters)
    ]
    return students


def register_student(
    db: sqlite3.Connection,
    usn: str,
    email: str,
    display_name: str,
    password: str,
    branch: str,
    semester: str,
) -> dict[str, Any]:
    uid = usn.strip().upper()
    if get_user(db, uid):
        raise StorageError(f"USN {uid} is already registered.")
    if email_in_use(db, email):
        raise StorageError(f"The email {email.strip().lower()} is already in use.")

    db.execute(
        """
        INSERT INTO users (
            uid, email, display_name, password_hash, role, usn, branch, semester,
            is_approved, registration_date
        )
        VALUES (?, ?, ?, ?, 'pending', ?, ?, ?, 0, ?)
        """,
        (
            uid,
            email.strip().lower(),
            display_name.strip(),
            generate_password_hash(password),
            uid,
            branch,
            semester,
            now_iso(),
        ),
    )
    return get_user(db, uid)


def create_staff_user(
    db: sqlite3.Connection,
    email: str,
    display_name: str,
    password: str,
    role: str,
    assigned_branches: list[str] | None = None,
    assigned_semesters: list[str] | None = None,
    faculty_title: str = "",
) -> dict[str, Any]:
    if role not in {"faculty", "admin"}:
        raise StorageError("Staff accounts must be faculty or admin.")

    uid = email.strip().lower()
    if get_user(db, uid):
        raise StorageError(f"An account for {uid} already exists.")
    if email_in_use(db, uid):
        raise StorageError(f"The email {uid} is already in use.")

    db.execute(
        """
        INSERT INTO users (
            uid, email, display_name, password_hash, role, branch, is_approved,
            assigned_branches, assigned_semesters, faculty_title, registration_date
        )
        VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
        """,
        (
            uid,
            uid,
            display_name.strip(),
            generate_password_hash(password),
            role,
            (assigned_branches or [None])[0],
            json.dumps(assigned_branches or []),
            json.dumps(assigned_semesters or []),
            faculty_title,
            now_iso(),
        ),
    )
    return get_user(db, uid)


def approve_user(db: sqlite3.Connection, uid: str, approver_uid: str) -> None:
    cursor = db.execute(
        """
        UPDATE users
        SET role = 'student', is_approved = 1, approved_by_uid = ?, approval_date = ?,
            rejection_reason = NULL, rejected_by_uid = NULL, rejected_date = NULL
        WHERE uid = ? AND role = 'pending'
        """,
        (approver_uid, now_iso(), uid),
    )
    if cursor.rowcount == 0:
        raise RecordNotFoundError(f"No pending registration for {uid}.")
    logger.info("Registration %s approved by %s", uid, approver_uid)


def reject_user(db: sqlite3.Connection, uid: str, approver_uid: str, reason: str) -> None:
    cursor = db.execute(
        """
        UPDATE users
        SET is_approved = 0, rejection_reason = ?, rejected_by_uid = ?, rejected_date = ?
        WHERE uid = ? AND role = 'pending'
        """,
        (reason.strip(), approver_uid, now_iso(), uid),
    )
    if cursor.rowcount == 0:
        raise RecordNotFoundError(f"No pending registration for {uid}.")
    logger.info("Registration %s rejected by %s", uid, approver_uid)


def delete_user(db: sqlite3.Connection, uid: str) -> None:
    cursor = db.execute("DELETE FROM users WHERE uid = ?", (uid,))
    if cursor.rowcount == 0:
        raise RecordNotFoundError(f"User {uid} not found.")


def update_notification_preferences(
    db: sqlite3.Connection, uid: str, preferences: dict[str, bool]
) -> None:
    merged = {
        key: bool(preferences.get(key, default))
        for key, default in DEFAULT_NOTIFICATION_PREFERENCES.items()
    }
    db.execute(
        "UPDATE users SET notification_preferences = ? WHERE uid = ?",
        (json.dumps(merged), uid),
    )


# Attendance


def upsert_attendance(db: sqlite3.Connection, record: dict[str, Any]) -> str:
    record_id = f"{record['student_uid']}-{record['date']}-{record['period']}"
    db.execute(
        """
        INSERT INTO attendance_records (
            id, student_uid, student_name, student_usn, date, period, subject,
            status, marked_by_uid, branch, semester
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            subject = excluded.subject,
            status = excluded.status,
            marked_by_uid = excluded.marked_by_uid
        """,
        (
            record_id,
            record["student_uid"],
            record.get("student_name", ""),
            record.get("student_usn", ""),
            record["date"],
            int(record["period"]),
            record["subject"],
            record["status"],
            record["marked_by_uid"],
            record.get("branch", ""),
            record.get("semester", ""),
        ),
    )
    return record_id


def list_attendance(db: sqlite3.Connection, student_uid: str | None = None) -> list[dict[str, Any]]:
    if student_uid:
        rows = db.execute(
            "SELECT * FROM attendance_records WHERE student_uid = ? ORDER BY date, period",
            (student_uid,),
        ).fetchall()
    else:
        rows = db.execute("SELECT * FROM attendance_records ORDER BY date, period").fetchall()
    return [dict(row) for row in rows]


# Fees


def insert_fee_record(db: sqlite3.Connection, record: dict[str, Any]) -> str:
    fee_id = record.get("id") or new_id()
    db.execute(
        """
        INSERT INTO fee_records (
            id, student_uid, student_name, student_usn, branch, semester, description,
            amount, due_date, status, paid_on, created_at, created_by_uid, version
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
        """,
        (
            fee_id,
            record["student_uid"],
            record.get("student_name", ""),
            record.get("student_usn", ""),
            record.get("branch", ""),
            record.get("semester", ""),
            record["description"],
            float(record["amount"]),
            record["due_date"],
            record.get("status", "pending"),
            record.get("paid_on"),
            record.get("created_at") or now_iso(),
            record["created_by_uid"],
        ),
    )
    return fee_id


def get_fee_record(db: sqlite3.Connection, fee_id: str) -> dict[str, Any] | None:
    row = db.execute("SELECT * FROM fee_records WHERE id = ?", (fee_id,)).fetchone()
    return dict(row) if row else None


def list_fee_records(db: sqlite3.Connection, student_uid: str | None = None) -> list[dict[str, Any]]:
    if student_uid:
        rows = db.execute(
            "SELECT * FROM fee_records WHERE student_uid = ? ORDER BY due_date",
            (student_uid,),
        ).fetchall()
    else:
        rows = db.execute("SELECT * FROM fee_records ORDER BY created_at DESC").fetchall()
    return [dict(row) for row in rows]


def update_fee_status(
    db: sqlite3.Connection,
    fee_id: str,
    status: str,
    expected_version: int,
    paid_on: str | None = None,
) -> int:
    if status == "paid" and not paid_on:
        paid_on = str(date.today())
    if status != "paid":
        paid_on = None

    cursor = db.execute(
        """
        UPDATE fee_records
        SET status = ?, paid_on = ?, version = version + 1
        WHERE id = ? AND version = ?
        """,
        (status, paid_on, fee_id, expected_version),
    )
    if cursor.rowcount == 0:
        current = get_fee_record(db, fee_id)
        if current is None:
            raise RecordNotFoundError(f"Fee record {fee_id} not found.")
        raise StaleRecordError(
            f"Fee record {fee_id} is at version {current['version']}, not {expected_version}."
        )
    return expected_version + 1


def delete_fee_record(db: sqlite3.Connection, fee_id: str) -> None:
    cursor = db.execute("DELETE FROM fee_records WHERE id = ?", (fee_id,))
    if cursor.rowcount == 0:
        raise RecordNotFoundError(f"Fee record {fee_id} not found.")


# Assignments


def insert_assignment(db: sqlite3.Connection, assignment: dict[str, Any]) -> str:
    assignment_id = assignment.get("id") or new_id()
    db.execute(
        """
        INSERT INTO assignments (
            id, branch, semester, title, description, due_date, posted_by_uid,
            posted_by_display_name, posted_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            assignment_id,
            assignment["branch"],
            assignment["semester"],
            assignment["title"],
            assignment.get("description", ""),
            assignment.get("due_date") or None,
            assignment["posted_by_uid"],
            assignment.get("posted_by_display_name", ""),
            assignment.get("posted_at") or now_iso(),
        ),
    )
    return assignment_id


def list_assignments(
    db: sqlite3.Connection, branch: str | None = None, semester: str | None = None
) -> list[dict[str, Any]]:
    if branch and semester:
        rows = db.execute(
            """
            SELECT * FROM assignments
            WHERE branch = ? AND semester = ?
            ORDER BY COALESCE(due_date, '9999-12-31'), posted_at DESC
            """,
            (branch, semester),
        ).fetchall()
    else:
        rows = db.execute("SELECT * FROM assignments ORDER BY posted_at DESC").fetchall()
    return [dict(row) for row in rows]


# Notifications


def notification_from_row(row: sqlite3.Row) -> dict[str, Any]:
    notification = dict(row)
    notification["is_read"] = bool(notification["is_read"])
    return notification


def list_notification_ids(db: sqlite3.Connection, user_id: str) -> set[str]:
    rows = db.execute("SELECT id FROM notifications WHERE user_id = ?", (user_id,)).fetchall()
    return {row["id"] for row in rows}


def insert_notifications(db: sqlite3.Connection, notifications: list[dict[str, Any]]) -> int:
    inserted = 0
    for notification in notifications:
        cursor = db.execute(
            """
            INSERT OR IGNORE INTO notifications (
                id, user_id, type, title, message, href, created_at, is_read
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                notification["id"],
                notification["user_id"],
                notification["type"],
                notification["title"],
                notification["message"],
                notification["href"],
                notification["created_at"],
                1 if notification["is_read"] else 0,
            ),
        )
        inserted += cursor.rowcount
    return inserted


def list_notifications(
    db: sqlite3.Connection, user_id: str, limit: int | None = None
) -> list[dict[str, Any]]:
    sql = "SELECT * FROM notifications WHERE user_id = ? ORDER BY created_at DESC, id"
    params: tuple[Any, ...] = (user_id,)
    if limit:
        sql += " LIMIT ?"
        params = (user_id, limit)
    return [notification_from_row(row) for row in db.execute(sql, params).fetchall()]


def unread_count(db: sqlite3.Connection, user_id: str) -> int:
    return db.execute(
        "SELECT COUNT(*) AS c FROM notifications WHERE user_id = ? AND is_read = 0",
        (user_id,),
    ).fetchone()["c"]


def mark_notification_read(db: sqlite3.Connection, user_id: str, notification_id: str) -> None:
    cursor = db.execute(
        "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?",
        (notification_id, user_id),
    )
    if cursor.rowcount == 0:
        raise RecordNotFoundError(f"Notification {notification_id} not found.")


def mark_all_notifications_read(db: sqlite3.Connection, user_id: str) -> None:
    db.execute("UPDATE notifications SET is_read = 1 WHERE user_id = ?", (user_id,))


def clear_notifications(db: sqlite3.Connection, user_id: str) -> None:
    db.execute("DELETE FROM notifications WHERE user_id = ?", (user_id,))


# Demo content


def seed_demo_data(db: sqlite3.Connection, today: date | None = None) -> None:
    today = today or date.today()
    if db.execute("SELECT 1 FROM users LIMIT 1").fetchone():
        return

    create_staff_user(db, "admin@apsconnect.local", "Campus Admin", "admin123", "admin")
    faculty = create_staff_user(
        db,
        "priya.sharma@apsconnect.edu",
        "Dr. Priya Sharma",
        "faculty123",
        "faculty",
        assigned_branches=["CSE", "ISE"],
        assigned_semesters=["3rd Sem", "5th Sem"],
        faculty_title="Associate Professor",
    )

    students = [
        ("1AP21CS001", "ayaan.gupta@apsconnect.edu", "Ayaan Gupta", "CSE", "3rd Sem"),
        ("1AP21CS002", "meera.nair@apsconnect.edu", "Meera Nair", "CSE", "3rd Sem"),
        ("1AP21IS001", "neha.kapoor@apsconnect.edu", "Neha Kapoor", "ISE", "5th Sem"),
    ]
    for usn, email, name, branch, semester in students:
        register_student(db, usn, email, name, "student123", branch, semester)
        approve_user(db, usn.upper(), "admin@apsconnect.local")

    register_student(
        db, "1AP22CS050", "rohan.patil@apsconnect.edu", "Rohan Patil", "student123", "CSE", "1st Sem"
    )

    # Meera attends regularly; Ayaan falls under the threshold in DS.
    attendance_plan = {
        "1AP21CS001": ["present", "absent", "absent", "present", "absent"],
        "1AP21CS002": ["present", "present", "present", "absent", "present"],
    }
    for usn, statuses in attendance_plan.items():
        student = get_user(db, usn)
        for offset, status in enumerate(statuses):
            class_day = today - timedelta(days=len(statuses) - offset)
            for period, subject in ((1, "Data Structures"), (2, "DBMS")):
                upsert_attendance(
                    db,
                    {
                        "student_uid": usn,
                        "student_name": student["display_name"],
                        "student_usn": usn,
                        "date": class_day.isoformat(),
                        "period": period,
                        "subject": subject,
                        "status": status if subject == "Data Structures" else "present",
                        "marked_by_uid": faculty["uid"],
                        "branch": student["branch"],
                        "semester": student["semester"],
                    },
                )

    for usn, _email, name, branch, semester in students:
        insert_fee_record(
            db,
            {
                "student_uid": usn,
                "student_name": name,
                "student_usn": usn,
                "branch": branch,
                "semester": semester,
                "description": "Tuition Fee - Odd Semester",
                "amount": 45000,
                "due_date": (today + timedelta(days=2)).isoformat(),
                "status": "pending",
                "created_by_uid": faculty["uid"],
            },
        )
    insert_fee_record(
        db,
        {
            "student_uid": "1AP21CS001",
            "student_name": "Ayaan Gupta",
            "student_usn": "1AP21CS001",
            "branch": "CSE",
            "semester": "3rd Sem",
            "description": "Lab Fee",
            "amount": 3000,
            "due_date": (today - timedelta(days=20)).isoformat(),
            "status": "paid",
            "paid_on": (today - timedelta(days=25)).isoformat(),
            "created_by_uid": faculty["uid"],
        },
    )

    insert_assignment(
        db,
        {
            "branch": "CSE",
            "semester": "3rd Sem",
            "title": "AVL Tree Rotations",
            "description": "Solve the four rotation cases with one worked example each.",
            "due_date": (today + timedelta(days=1)).isoformat(),
            "posted_by_uid": faculty["uid"],
            "posted_by_display_name": faculty["display_name"],
        },
    )
    insert_assignment(
        db,
        {
            "branch": "ISE",
            "semester": "5th Sem",
            "title": "Normalization Case Study",
            "description": "Normalize the library schema up to BCNF.",
            "due_date": (today + timedelta(days=10)).isoformat(),
            "posted_by_uid": faculty["uid"],
            "posted_by_display_name": faculty["display_name"],
        },
    )
    logger.info("Seeded demo data")
