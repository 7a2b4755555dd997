from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from config import DEADLINE_WARNING_DAYS, DEFAULT_NOTIFICATION_PREFERENCES, LOW_ATTENDANCE_THRESHOLD
from storage import (
    insert_notifications,
    list_assignments,
    list_attendance,
    list_fee_records,
    list_notification_ids,
)

logger = logging.getLogger(__name__)


@dataclass
class RecordSnapshot:
    """The record sets one notification pass looks at."""

    assignments: list[dict[str, Any]] = field(default_factory=list)
    fee_records: list[dict[str, Any]] = field(default_factory=list)
    attendance_records: list[dict[str, Any]] = field(default_factory=list)


def notification_id(user_id: str, kind: str, related_id: str) -> str:
    return f"{user_id}-{kind}-{related_id}"


def preference_enabled(user: dict[str, Any], kind: str) -> bool:
    preferences = user.get("notification_preferences") or {}
    return bool(preferences.get(kind, DEFAULT_NOTIFICATION_PREFERENCES.get(kind, True)))


def _due_day(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        logger.warning("Skipping record with unparseable due date %r", value)
        return None


def _format_amount(amount: float) -> str:
    if float(amount).is_integer():
        return f"{int(amount):,}"
    return f"{amount:,.2f}"


def _due_phrase(days_left: int) -> str:
    if days_left == 0:
        return "today"
    return f"in {days_left} day(s)"


class _Builder:
    def __init__(self, user: dict[str, Any], existing_ids: set[str], created_at: str) -> None:
        self.user = user
        self.seen = set(existing_ids)
        self.created_at = created_at
        self.created: list[dict[str, Any]] = []

    def add(self, kind: str, related_id: str, title: str, message: str, href: str) -> None:
        uid = notification_id(self.user["uid"], kind, related_id)
        if uid in self.seen:
            return
        self.seen.add(uid)
        self.created.append(
            {
                "id": uid,
                "user_id": self.user["uid"],
                "type": kind,
                "title": title,
                "message": message,
                "href": href,
                "created_at": self.created_at,
                "is_read": False,
            }
        )


def _check_approval(builder: _Builder) -> None:
    user = builder.user
    if not preference_enabled(user, "approval"):
        return

    if not user.get("is_approved") and user.get("rejection_reason"):
        builder.add(
            "approval",
            "rejection",
            "Registration Rejected",
            f"Your registration was rejected. Reason: {user['rejection_reason']}",
            "/dashboard",
        )
    elif user.get("is_approved") and user.get("role") == "student":
        builder.add(
            "approval",
            "approved",
            "Registration Approved!",
            "Your account has been approved. You now have full access.",
            "/dashboard",
        )


def _check_assignment_deadlines(builder: _Builder, assignments: list[dict[str, Any]], today: date) -> None:
    user = builder.user
    if user.get("role") != "student" or not preference_enabled(user, "assignment_deadline"):
        return

    for assignment in assignments:
        if assignment.get("branch") != user.get("branch") or assignment.get("semester") != user.get("semester"):
            continue
        due = _due_day(assignment.get("due_date"))
        if due is None:
            continue
        days_left = (due - today).days
        if 0 <= days_left <= DEADLINE_WARNING_DAYS:
            builder.add(
                "assignment_deadline",
                assignment["id"],
                f"Assignment Due Soon: {assignment['title']}",
                f"This assignment is due {_due_phrase(days_left)}.",
                "/student/assignments",
            )


def _check_fee_dues(builder: _Builder, fee_records: list[dict[str, Any]], today: date) -> None:
    user = builder.user
    if user.get("role") != "student" or not preference_enabled(user, "fee_due"):
        return

    for fee in fee_records:
        if fee.get("student_uid") != user["uid"] or fee.get("status") == "paid":
            continue
        due = _due_day(fee.get("due_date"))
        if due is None:
            continue
        amount = _format_amount(fee["amount"])
        days_left = (due - today).days
        if days_left < 0:
            builder.add(
                "fee_due",
                f"overdue-{fee['id']}",
                f"Fee Overdue: {fee['description']}",
                f"Your fee of ₹{amount} was due on {due.isoformat()}. Please pay it as soon as possible.",
                "/student/fee-details",
            )
        elif days_left <= DEADLINE_WARNING_DAYS:
            builder.add(
                "fee_due",
                fee["id"],
                f"Fee Reminder: {fee['description']}",
                f"Your fee of ₹{amount} is due {_due_phrase(days_left)}.",
                "/student/fee-details",
            )


def _check_low_attendance(builder: _Builder, attendance_records: list[dict[str, Any]]) -> None:
    user = builder.user
    if user.get("role") != "student" or not preference_enabled(user, "low_attendance"):
        return

    own = [record for record in attendance_records if record.get("student_uid") == user["uid"]]
    if not own:
        return

    present = sum(1 for record in own if record.get("status") == "present")
    percentage = present / len(own) * 100
    if percentage < LOW_ATTENDANCE_THRESHOLD:
        builder.add(
            "low_attendance",
            "overall-attendance-warning",
            "Low Attendance Warning",
            f"Your overall attendance is {percentage:.1f}%, which is below the required "
            f"{LOW_ATTENDANCE_THRESHOLD}%.",
            "/student/attendance",
        )


def generate_notifications(
    user: dict[str, Any],
    snapshot: RecordSnapshot,
    existing_ids: set[str] | None = None,
    today: date | None = None,
    created_at: str | None = None,
) -> list[dict[str, Any]]:
    """Return the notifications ``user`` is due that are not yet in ``existing_ids``.

    Ids are ``{uid}-{type}-{related_id}``, so feeding the result back in as
    ``existing_ids`` makes a second pass over the same snapshot return nothing.
    """
    today = today or date.today()
    created_at = created_at or datetime.now(timezone.utc).isoformat()
    builder = _Builder(user, existing_ids or set(), created_at)

    _check_approval(builder)
    _check_assignment_deadlines(builder, snapshot.assignments, today)
    _check_fee_dues(builder, snapshot.fee_records, today)
    _check_low_attendance(builder, snapshot.attendance_records)
    return builder.created


def load_snapshot(db: sqlite3.Connection, user: dict[str, Any]) -> RecordSnapshot:
    if user.get("role") != "student":
        return RecordSnapshot()
    return RecordSnapshot(
        assignments=list_assignments(db, user.get("branch"), user.get("semester")),
        fee_records=list_fee_records(db, user["uid"]),
        attendance_records=list_attendance(db, user["uid"]),
    )


def sync_notifications(
    db: sqlite3.Connection, user: dict[str, Any], today: date | None = None
) -> list[dict[str, Any]]:
    created = generate_notifications(
        user,
        load_snapshot(db, user),
        existing_ids=list_notification_ids(db, user["uid"]),
        today=today,
    )
    if created:
        with db:
            insert_notifications(db, created)
        logger.info("Generated %d notification(s) for %s", len(created), user["uid"])
    return created
