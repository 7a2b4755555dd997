from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
IS_VERCEL = bool(os.environ.get("VERCEL"))

SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-me")
DB_PATH = os.environ.get(
    "DATABASE_PATH",
    "/tmp/apsconnect.db" if IS_VERCEL else os.path.join(BASE_DIR, "apsconnect.db"),
)
SEED_DEMO_DATA = os.environ.get("SEED_DEMO_DATA", "true").lower() == "true"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
PORT = int(os.environ.get("PORT", "5050"))

LOW_ATTENDANCE_THRESHOLD = int(os.environ.get("LOW_ATTENDANCE_THRESHOLD", "75"))
DEADLINE_WARNING_DAYS = int(os.environ.get("DEADLINE_WARNING_DAYS", "3"))

ROLES = ("student", "admin", "pending", "faculty", "alumni")

DEFAULT_BRANCHES = ["CSE", "ISE", "ECE", "ME", "CIVIL", "AI & ML", "OTHER"]
SEMESTERS = [
    "1st Sem",
    "2nd Sem",
    "3rd Sem",
    "4th Sem",
    "5th Sem",
    "6th Sem",
    "7th Sem",
    "8th Sem",
]

FEE_STATUSES = ("paid", "pending", "overdue")
ATTENDANCE_STATUSES = ("present", "absent")

NOTIFICATION_TYPES = ("approval", "assignment_deadline", "fee_due", "low_attendance")

DEFAULT_NOTIFICATION_PREFERENCES = {
    "news": True,
    "events": True,
    "notes": True,
    "schedules": True,
    "general": True,
    "approval": True,
    "assignment_deadline": True,
    "fee_due": True,
    "low_attendance": True,
}
