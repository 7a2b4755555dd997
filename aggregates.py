from __future__ import annotations

import math
from datetime import date
from typing import Any, Iterable

from config import LOW_ATTENDANCE_THRESHOLD


def attendance_percentage(present: int, total: int) -> int:
    if not total:
        return 0
    # Half-up rounding; round() would send 12.5 to 12.
    return int(math.floor(present * 100.0 / total + 0.5))


def attendance_color(percentage: int) -> str:
    if percentage >= LOW_ATTENDANCE_THRESHOLD:
        return "success"
    if percentage >= 50:
        return "warning"
    return "danger"


def subject_attendance(records: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    counts: dict[str, dict[str, int]] = {}
    for record in records:
        bucket = counts.setdefault(record["subject"], {"present": 0, "total": 0})
        bucket["total"] += 1
        if record["status"] == "present":
            bucket["present"] += 1

    return [
        {
            "subject": subject,
            "present": data["present"],
            "total": data["total"],
            "percentage": attendance_percentage(data["present"], data["total"]),
        }
        for subject, data in counts.items()
    ]


def overall_attendance(summary_rows: list[dict[str, Any]]) -> dict[str, int]:
    present = sum(row["present"] for row in summary_rows)
    total = sum(row["total"] for row in summary_rows)
    return {"present": present, "total": total, "percentage": attendance_percentage(present, total)}


def _is_set(value: str | None) -> bool:
    return bool(value) and value != "all"


def _parse_day(value: str | date | None) -> date | None:
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def filter_attendance(
    records: Iterable[dict[str, Any]],
    branch: str | None = None,
    semester: str | None = None,
    student_uid: str | None = None,
    date_from: str | date | None = None,
    date_to: str | date | None = None,
) -> list[dict[str, Any]]:
    start = _parse_day(date_from)
    end = _parse_day(date_to)

    filtered = []
    for record in records:
        if _is_set(branch) and record["branch"] != branch:
            continue
        if _is_set(semester) and record["semester"] != semester:
            continue
        if _is_set(student_uid) and record["student_uid"] != student_uid:
            continue
        if start and end:
            day = _parse_day(record["date"])
            if day is None or not start <= day <= end:
                continue
        filtered.append(record)
    return filtered


def daily_attendance(records: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    daily: dict[str, dict[str, int]] = {}
    for record in records:
        bucket = daily.setdefault(record["date"], {"present": 0, "absent": 0})
        if record["status"] == "present":
            bucket["present"] += 1
        else:
            bucket["absent"] += 1

    return [
        {"date": day, "present": counts["present"], "absent": counts["absent"]}
        for day, counts in sorted(daily.items())
    ]


def filter_fee_records(
    records: Iterable[dict[str, Any]],
    branches: list[str] | None = None,
    semesters: list[str] | None = None,
    branch: str | None = None,
    semester: str | None = None,
    status: str | None = None,
    search: str | None = None,
) -> list[dict[str, Any]]:
    term = (search or "").strip().lower()

    filtered = []
    for record in records:
        if branches and record["branch"] not in branches:
            continue
        if semesters and record["semester"] not in semesters:
            continue
        if _is_set(branch) and record["branch"] != branch:
            continue
        if _is_set(semester) and record["semester"] != semester:
            continue
        if _is_set(status) and record["status"] != status:
            continue
        if term and not any(
            term in (record.get(field) or "").lower()
            for field in ("description", "student_name", "student_usn")
        ):
            continue
        filtered.append(record)
    return filtered


def total_due(records: Iterable[dict[str, Any]]) -> float:
    return sum(record["amount"] for record in records if record["status"] != "paid")
