from __future__ import annotations

import logging
import math
from datetime import date
from typing import Any

from flask import (
    Flask,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from werkzeug.security import check_password_hash

import storage
from aggregates import (
    attendance_color,
    daily_attendance,
    filter_attendance,
    filter_fee_records,
    overall_attendance,
    subject_attendance,
    total_due,
)
from config import (
    ATTENDANCE_STATUSES,
    DB_PATH,
    DEFAULT_BRANCHES,
    DEFAULT_NOTIFICATION_PREFERENCES,
    FEE_STATUSES,
    LOG_LEVEL,
    LOW_ATTENDANCE_THRESHOLD,
    PORT,
    ROLES,
    SECRET_KEY,
    SEED_DEMO_DATA,
    SEMESTERS,
)
from notifications import sync_notifications

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("apsconnect")

MAX_FORM_BYTES = 1024 * 1024
STUDENT_ROLES = ("student", "pending")

ROUTE_POLICY: dict[str, tuple[str, ...]] = {
    "dashboard": ROLES,
    "notifications": ROLES,
    "notification_count": ROLES,
    "profile_settings": ROLES,
    "student_attendance": STUDENT_ROLES,
    "student_fees": STUDENT_ROLES,
    "student_assignments": STUDENT_ROLES,
    "faculty_attendance": ("faculty",),
    "faculty_fees": ("faculty",),
    "create_fee_record": ("faculty",),
    "update_fee_status": ("faculty", "admin"),
    "admin_fees": ("admin",),
    "delete_fee_record": ("admin",),
    "faculty_assignments": ("faculty",),
    "admin_attendance": ("admin",),
    "admin_users": ("admin",),
    "approve_registration": ("admin",),
    "reject_registration": ("admin",),
    "create_faculty": ("admin",),
    "remove_user": ("admin",),
}

NAV_MAP = {
    "dashboard": "dashboard",
    "student_attendance": "attendance",
    "faculty_attendance": "attendance",
    "admin_attendance": "attendance",
    "student_fees": "fees",
    "faculty_fees": "fees",
    "admin_fees": "fees",
    "student_assignments": "assignments",
    "faculty_assignments": "assignments",
    "admin_users": "users",
    "notifications": "notifications",
    "profile_settings": "settings",
}

app = Flask(__name__)
app.config["SECRET_KEY"] = SECRET_KEY
app.config["MAX_CONTENT_LENGTH"] = MAX_FORM_BYTES
app.config["DATABASE_PATH"] = DB_PATH
app.config["SEED_DEMO_DATA"] = SEED_DEMO_DATA
app.teardown_appcontext(storage.close_db)


def init_db() -> None:
    db = storage.get_db()
    storage.create_schema(db)
    if app.config["SEED_DEMO_DATA"]:
        storage.seed_demo_data(db)
    db.commit()


def current_user() -> dict[str, Any] | None:
    if "current_user" in g:
        return g.current_user

    uid = session.get("uid")
    user = storage.get_user(storage.get_db(), uid) if uid else None
    g.current_user = user
    return user


def in_scope(user: dict[str, Any], branch: str | None, semester: str | None) -> bool:
    branches = user["assigned_branches"]
    semesters = user["assigned_semesters"]
    return (not branches or branch in branches) and (not semesters or semester in semesters)


def parse_day(value: str) -> date | None:
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


@app.before_request
def enforce_route_policy():
    allowed = ROUTE_POLICY.get(request.endpoint or "")
    if allowed is None:
        return None

    user = current_user()
    if not user:
        flash("Please login first.", "warning")
        return redirect(url_for("login"))
    if user["role"] not in allowed:
        logger.warning("Denied %s to %s (%s)", request.endpoint, user["uid"], user["role"])
        abort(403)
    return None


@app.context_processor
def inject_globals() -> dict[str, Any]:
    user = current_user()
    unread = 0
    quick_notifications: list[dict[str, Any]] = []

    if user:
        db = storage.get_db()
        unread = storage.unread_count(db, user["uid"])
        quick_notifications = storage.list_notifications(db, user["uid"], limit=5)

    return {
        "current_user": user,
        "unread_count": unread,
        "quick_notifications": quick_notifications,
        "active_nav": NAV_MAP.get(request.endpoint or "", "dashboard"),
        "attendance_threshold": LOW_ATTENDANCE_THRESHOLD,
        "attendance_color": attendance_color,
        "branches": DEFAULT_BRANCHES,
        "semesters": SEMESTERS,
    }


@app.route("/")
def index():
    if current_user():
        return redirect(url_for("dashboard"))
    return render_template("index.html", page_title="APSConnect")


@app.route("/login", methods=["GET", "POST"])
def login():
    if current_user():
        return redirect(url_for("dashboard"))

    if request.method == "POST":
        identifier = request.form.get("identifier", "").strip()
        password = request.form.get("password", "")

        if not identifier or not password:
            flash("Please enter your USN or email and password.", "danger")
            return render_template("login.html", page_title="Sign In")

        db = storage.get_db()
        user = storage.find_user_for_login(db, identifier)
        if not user or not check_password_hash(user["password_hash"], password):
            logger.info("Failed sign-in for %s", identifier)
            flash("Invalid credentials.", "danger")
            return render_template("login.html", page_title="Sign In")

        session.clear()
        session["uid"] = user["uid"]
        logger.info("Signed in %s (%s)", user["uid"], user["role"])
        sync_notifications(db, user)
        flash(f"Welcome back, {user['display_name']}.", "success")
        return redirect(url_for("dashboard"))

    return render_template("login.html", page_title="Sign In")


@app.route("/register", methods=["GET", "POST"])
def register():
    if current_user():
        return redirect(url_for("dashboard"))

    if request.method == "POST":
        usn = request.form.get("usn", "").strip().upper()
        email = request.form.get("email", "").strip().lower()
        display_name = request.form.get("display_name", "").strip()
        password = request.form.get("password", "")
        branch = request.form.get("branch", "").strip()
        semester = request.form.get("semester", "").strip()

        if len(usn) < 5 or "@" in usn or "@" not in email or len(display_name) < 2 or len(password) < 6:
            flash("Use a valid USN, name, email and password (min 6 chars).", "danger")
            return render_template("register.html", page_title="Create Account")

        if branch not in DEFAULT_BRANCHES or semester not in SEMESTERS:
            flash("Please choose your branch and semester.", "danger")
            return render_template("register.html", page_title="Create Account")

        db = storage.get_db()
        try:
            storage.register_student(db, usn, email, display_name, password, branch, semester)
        except storage.StorageError as exc:
            flash(f"{exc} Please login.", "warning")
            return redirect(url_for("login"))
        db.commit()
        logger.info("New registration %s pending approval", usn)
        flash("Registration submitted. You can sign in while it awaits approval.", "success")
        return redirect(url_for("login"))

    return render_template("register.html", page_title="Create Account")


@app.route("/logout")
def logout():
    session.clear()
    flash("You have been logged out.", "info")
    return redirect(url_for("index"))


@app.route("/dashboard")
def dashboard():
    user = current_user()
    db = storage.get_db()
    sync_notifications(db, user)
    stats: dict[str, Any] = {}

    if user["role"] == "student":
        summary = subject_attendance(storage.list_attendance(db, user["uid"]))
        stats["attendance"] = overall_attendance(summary)
        stats["total_due"] = total_due(storage.list_fee_records(db, user["uid"]))
        stats["assignments"] = storage.list_assignments(db, user["branch"], user["semester"])
    elif user["role"] == "faculty":
        stats["students"] = storage.list_students(
            db, user["assigned_branches"], user["assigned_semesters"]
        )
        fees = filter_fee_records(
            storage.list_fee_records(db),
            branches=user["assigned_branches"],
            semesters=user["assigned_semesters"],
        )
        stats["total_due"] = total_due(fees)
    elif user["role"] == "admin":
        stats["pending"] = storage.list_users(db, "pending")
        stats["user_count"] = len(storage.list_users(db))

    return render_template("dashboard.html", page_title="Dashboard", stats=stats)


@app.route("/student/attendance")
def student_attendance():
    user = current_user()
    rows: list[dict[str, Any]] = []
    overall = {"present": 0, "total": 0, "percentage": 0}

    if user["role"] == "student" and user["branch"] and user["semester"]:
        rows = subject_attendance(storage.list_attendance(storage.get_db(), user["uid"]))
        overall = overall_attendance(rows)

    return render_template(
        "student_attendance.html",
        page_title="My Attendance",
        rows=rows,
        overall=overall,
    )


@app.route("/student/fee-details")
def student_fees():
    user = current_user()
    records: list[dict[str, Any]] = []
    if user["role"] == "student":
        records = storage.list_fee_records(storage.get_db(), user["uid"])

    return render_template(
        "student_fees.html",
        page_title="Fee Details",
        records=records,
        total_due=total_due(records),
    )


@app.route("/student/assignments")
def student_assignments():
    user = current_user()
    assignments: list[dict[str, Any]] = []
    if user["role"] == "student":
        assignments = storage.list_assignments(storage.get_db(), user["branch"], user["semester"])

    return render_template(
        "student_assignments.html",
        page_title="Assignments",
        assignments=assignments,
    )


@app.route("/faculty/attendance", methods=["GET", "POST"])
def faculty_attendance():
    user = current_user()
    db = storage.get_db()

    if request.method == "POST":
        student_uid = request.form.get("student_uid", "").strip().upper()
        subject = request.form.get("subject", "").strip()
        status = request.form.get("status", "").strip().lower()
        class_date = request.form.get("date", "").strip() or str(date.today())
        period = request.form.get("period", type=int)

        if status not in ATTENDANCE_STATUSES:
            flash("Invalid attendance status.", "danger")
            return redirect(url_for("faculty_attendance"))

        if len(subject) < 2 or not period or period < 1 or parse_day(class_date) is None:
            flash("Please provide a subject, period and valid date.", "danger")
            return redirect(url_for("faculty_attendance"))

        student = storage.get_user(db, student_uid)
        if not student or student["role"] != "student":
            flash("Student not found.", "danger")
            return redirect(url_for("faculty_attendance"))

        if not in_scope(user, student["branch"], student["semester"]):
            flash("This student is outside your assigned branches.", "danger")
            return redirect(url_for("faculty_attendance"))

        storage.upsert_attendance(
            db,
            {
                "student_uid": student["uid"],
                "student_name": student["display_name"],
                "student_usn": student["usn"],
                "date": class_date,
                "period": period,
                "subject": subject,
                "status": status,
                "marked_by_uid": user["uid"],
                "branch": student["branch"],
                "semester": student["semester"],
            },
        )
        db.commit()
        flash(f"Attendance marked for {student['display_name']}.", "success")
        return redirect(url_for("faculty_attendance", student_uid=student["uid"]))

    students = storage.list_students(db, user["assigned_branches"], user["assigned_semesters"])
    selected_uid = request.args.get("student_uid", "").strip().upper()
    if selected_uid and selected_uid not in {student["uid"] for student in students}:
        abort(403)
    if not selected_uid and students:
        selected_uid = students[0]["uid"]
    rows: list[dict[str, Any]] = []
    if selected_uid:
        rows = subject_attendance(storage.list_attendance(db, selected_uid))

    return render_template(
        "faculty_attendance.html",
        page_title="Mark Attendance",
        students=students,
        selected_uid=selected_uid,
        rows=rows,
        overall=overall_attendance(rows),
        today=str(date.today()),
    )


def fee_filters() -> dict[str, str]:
    return {
        "branch": request.args.get("branch", "all"),
        "semester": request.args.get("semester", "all"),
        "status": request.args.get("status", "all"),
        "search": request.args.get("search", ""),
    }


def fee_page_for(user: dict[str, Any]) -> str:
    return url_for("admin_fees" if user["role"] == "admin" else "faculty_fees")


@app.route("/faculty/fee-management")
def faculty_fees():
    user = current_user()
    db = storage.get_db()
    filters = fee_filters()
    records = filter_fee_records(
        storage.list_fee_records(db),
        branches=user["assigned_branches"],
        semesters=user["assigned_semesters"],
        **filters,
    )

    return render_template(
        "fee_management.html",
        page_title="Fee Management",
        records=records,
        total_due=total_due(records),
        filters=filters,
        students=storage.list_students(db, user["assigned_branches"], user["assigned_semesters"]),
        fee_statuses=FEE_STATUSES,
    )


@app.route("/faculty/fee-management/new", methods=["POST"])
def create_fee_record():
    user = current_user()
    db = storage.get_db()
    student_uid = request.form.get("student_uid", "").strip().upper()
    description = request.form.get("description", "").strip()
    amount = request.form.get("amount", type=float)
    due_date = request.form.get("due_date", "").strip()
    status = request.form.get("status", "pending").strip().lower()

    valid_amount = amount is not None and math.isfinite(amount) and amount > 0
    if not description or not valid_amount or parse_day(due_date) is None:
        flash("Please provide a description, a positive amount and a due date.", "danger")
        return redirect(url_for("faculty_fees"))

    if status not in FEE_STATUSES:
        flash("Invalid fee status.", "danger")
        return redirect(url_for("faculty_fees"))

    student = storage.get_user(db, student_uid)
    if not student or student["role"] != "student":
        flash("Student not found.", "danger")
        return redirect(url_for("faculty_fees"))

    if not in_scope(user, student["branch"], student["semester"]):
        flash("This student is outside your assigned branches.", "danger")
        return redirect(url_for("faculty_fees"))

    storage.insert_fee_record(
        db,
        {
            "student_uid": student["uid"],
            "student_name": student["display_name"],
            "student_usn": student["usn"],
            "branch": student["branch"],
            "semester": student["semester"],
            "description": description,
            "amount": amount,
            "due_date": due_date,
            "status": status,
            "paid_on": str(date.today()) if status == "paid" else None,
            "created_by_uid": user["uid"],
        },
    )
    db.commit()
    flash(f"Fee record added for {student['display_name']}.", "success")
    return redirect(url_for("faculty_fees"))


@app.route("/faculty/fee-management/<fee_id>/status", methods=["POST"])
def update_fee_status(fee_id: str):
    user = current_user()
    db = storage.get_db()
    status = request.form.get("status", "").strip().lower()
    version = request.form.get("version", type=int)

    if status not in FEE_STATUSES or version is None:
        flash("Invalid fee update.", "danger")
        return redirect(fee_page_for(user))

    record = storage.get_fee_record(db, fee_id)
    if not record:
        abort(404)
    if user["role"] == "faculty" and not in_scope(user, record["branch"], record["semester"]):
        abort(403)

    try:
        storage.update_fee_status(db, fee_id, status, version)
    except storage.StaleRecordError:
        db.rollback()
        flash("This fee record was changed by someone else. Review it and try again.", "warning")
        return redirect(fee_page_for(user))

    db.commit()
    logger.info("Fee %s set to %s by %s", fee_id, status, user["uid"])
    flash("Fee status updated.", "success")
    return redirect(fee_page_for(user))


@app.route("/admin/fee-management")
def admin_fees():
    db = storage.get_db()
    filters = fee_filters()
    records = filter_fee_records(storage.list_fee_records(db), **filters)

    return render_template(
        "fee_management.html",
        page_title="Fee Management",
        records=records,
        total_due=total_due(records),
        filters=filters,
        students=[],
        fee_statuses=FEE_STATUSES,
    )


@app.route("/admin/fee-management/<fee_id>/delete", methods=["POST"])
def delete_fee_record(fee_id: str):
    db = storage.get_db()
    try:
        storage.delete_fee_record(db, fee_id)
    except storage.RecordNotFoundError:
        abort(404)
    db.commit()
    logger.info("Fee %s deleted by %s", fee_id, current_user()["uid"])
    flash("Fee record deleted.", "info")
    return redirect(url_for("admin_fees"))


@app.route("/faculty/assignments", methods=["GET", "POST"])
def faculty_assignments():
    user = current_user()
    db = storage.get_db()

    if request.method == "POST":
        title = request.form.get("title", "").strip()
        description = request.form.get("description", "").strip()
        branch = request.form.get("branch", "").strip()
        semester = request.form.get("semester", "").strip()
        due_date = request.form.get("due_date", "").strip()

        if len(title) < 3 or semester not in SEMESTERS or not branch:
            flash("Please provide a title, branch and semester.", "danger")
            return redirect(url_for("faculty_assignments"))

        if due_date and parse_day(due_date) is None:
            flash("Invalid due date.", "danger")
            return redirect(url_for("faculty_assignments"))

        if not in_scope(user, branch, semester):
            flash("You can only post to your assigned branches and semesters.", "danger")
            return redirect(url_for("faculty_assignments"))

        storage.insert_assignment(
            db,
            {
                "branch": branch,
                "semester": semester,
                "title": title,
                "description": description,
                "due_date": due_date or None,
                "posted_by_uid": user["uid"],
                "posted_by_display_name": user["display_name"],
            },
        )
        db.commit()
        flash("Assignment posted.", "success")
        return redirect(url_for("faculty_assignments"))

    assignments = [
        row for row in storage.list_assignments(db) if row["posted_by_uid"] == user["uid"]
    ]
    return render_template(
        "faculty_assignments.html",
        page_title="Assignments",
        assignments=assignments,
    )


@app.route("/admin/attendance")
def admin_attendance():
    db = storage.get_db()
    filters = {
        "branch": request.args.get("branch", "all"),
        "semester": request.args.get("semester", "all"),
        "student_uid": request.args.get("student_uid", "all"),
        "date_from": request.args.get("date_from") or None,
        "date_to": request.args.get("date_to") or None,
    }
    records = filter_attendance(storage.list_attendance(db), **filters)

    return render_template(
        "admin_attendance.html",
        page_title="Attendance Analytics",
        records=records,
        daily=daily_attendance(records),
        summary=subject_attendance(records),
        filters=filters,
        students=storage.list_students(db),
    )


@app.route("/admin/users")
def admin_users():
    db = storage.get_db()
    return render_template(
        "admin_users.html",
        page_title="Manage Users",
        pending=storage.list_users(db, "pending"),
        students=storage.list_users(db, "student"),
        faculty=storage.list_users(db, "faculty"),
    )


@app.route("/admin/users/<uid>/approve", methods=["POST"])
def approve_registration(uid: str):
    db = storage.get_db()
    try:
        storage.approve_user(db, uid, current_user()["uid"])
    except storage.RecordNotFoundError:
        abort(404)
    db.commit()
    flash(f"Approved {uid}.", "success")
    return redirect(url_for("admin_users"))


@app.route("/admin/users/<uid>/reject", methods=["POST"])
def reject_registration(uid: str):
    reason = request.form.get("reason", "").strip()
    if len(reason) < 3:
        flash("Please give a reason for the rejection.", "danger")
        return redirect(url_for("admin_users"))

    db = storage.get_db()
    try:
        storage.reject_user(db, uid, current_user()["uid"], reason)
    except storage.RecordNotFoundError:
        abort(404)
    db.commit()
    flash(f"Rejected {uid}.", "info")
    return redirect(url_for("admin_users"))


@app.route("/admin/users/faculty", methods=["POST"])
def create_faculty():
    email = request.form.get("email", "").strip().lower()
    display_name = request.form.get("display_name", "").strip()
    password = request.form.get("password", "")
    branches = [b for b in request.form.getlist("assigned_branches") if b in DEFAULT_BRANCHES]
    semesters = [s for s in request.form.getlist("assigned_semesters") if s in SEMESTERS]

    if "@" not in email or len(display_name) < 2 or len(password) < 6:
        flash("Use a valid name, email and password (min 6 chars).", "danger")
        return redirect(url_for("admin_users"))

    db = storage.get_db()
    try:
        storage.create_staff_user(
            db,
            email,
            display_name,
            password,
            "faculty",
            assigned_branches=branches,
            assigned_semesters=semesters,
            faculty_title=request.form.get("faculty_title", "").strip(),
        )
    except storage.StorageError as exc:
        flash(str(exc), "warning")
        return redirect(url_for("admin_users"))
    db.commit()
    flash(f"Faculty account created for {display_name}.", "success")
    return redirect(url_for("admin_users"))


@app.route("/admin/users/<uid>/delete", methods=["POST"])
def remove_user(uid: str):
    viewer = current_user()
    if uid == viewer["uid"]:
        flash("You cannot delete your own admin account.", "danger")
        return redirect(url_for("admin_users"))

    db = storage.get_db()
    try:
        storage.delete_user(db, uid)
    except storage.RecordNotFoundError:
        abort(404)
    db.commit()
    logger.info("User %s deleted by %s", uid, viewer["uid"])
    flash(f"Deleted account: {uid}", "info")
    return redirect(url_for("admin_users"))


@app.route("/notifications", methods=["GET", "POST"])
def notifications():
    user = current_user()
    db = storage.get_db()

    if request.method == "POST":
        action = request.form.get("action", "mark_all_read")
        if action == "mark_read":
            try:
                storage.mark_notification_read(db, user["uid"], request.form.get("notification_id", ""))
            except storage.RecordNotFoundError:
                abort(404)
            message = "Notification marked as read."
        elif action == "clear_all":
            storage.clear_notifications(db, user["uid"])
            message = "All notifications cleared."
        else:
            storage.mark_all_notifications_read(db, user["uid"])
            message = "All notifications marked as read."
        db.commit()
        flash(message, "success")
        return redirect(url_for("notifications"))

    rows = storage.list_notifications(db, user["uid"])
    return render_template("notifications.html", page_title="Notifications", notifications=rows)


@app.route("/notifications/count")
def notification_count():
    user = current_user()
    return jsonify({"unread": storage.unread_count(storage.get_db(), user["uid"])})


@app.route("/profile/settings", methods=["GET", "POST"])
def profile_settings():
    user = current_user()

    if request.method == "POST":
        preferences = {key: request.form.get(key) == "on" for key in DEFAULT_NOTIFICATION_PREFERENCES}
        db = storage.get_db()
        storage.update_notification_preferences(db, user["uid"], preferences)
        db.commit()
        flash("Notification preferences saved.", "success")
        return redirect(url_for("profile_settings"))

    return render_template(
        "profile_settings.html",
        page_title="Settings",
        preferences=user["notification_preferences"],
    )


@app.errorhandler(403)
def forbidden(_error):
    return render_template("error.html", code=403, message="You do not have permission for this page."), 403


@app.errorhandler(404)
def not_found(_error):
    return render_template("error.html", code=404, message="The page you requested was not found."), 404


@app.errorhandler(413)
def too_large(_error):
    return render_template(
        "error.html",
        code=413,
        message=f"Request too large. Forms are limited to {MAX_FORM_BYTES // 1024} KB.",
    ), 413


with app.app_context():
    init_db()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=PORT, debug=True)
