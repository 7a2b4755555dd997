from datetime import date, timedelta

import pytest

import storage


def test_index_is_public(client):
    response = client.get("/")
    assert response.status_code == 200
    assert b"APSConnect" in response.data


def test_protected_page_redirects_anonymous(client):
    response = client.get("/dashboard")
    assert response.status_code == 302
    assert "/login" in response.headers["Location"]


def test_bad_password_rejected(client, make_student, login):
    make_student()
    response = login("1AP21CS001", "wrong-password")
    assert b"Invalid credentials." in response.data


def test_student_login_generates_notifications(client, db, make_student, login):
    make_student()
    response = login("1ap21cs001")
    assert response.status_code == 200
    assert b"Welcome back" in response.data

    assert storage.list_notification_ids(db, "1AP21CS001") == {"1AP21CS001-approval-approved"}
    assert client.get("/notifications/count").get_json() == {"unread": 1}


def test_student_cannot_open_admin_pages(client, make_student, login):
    make_student()
    login("1AP21CS001")
    assert client.get("/admin/users").status_code == 403
    assert client.get("/faculty/fee-management").status_code == 403


def test_faculty_cannot_open_student_pages(client, faculty, login):
    login(faculty["email"])
    assert client.get("/student/fee-details").status_code == 403


def test_register_creates_pending_account(client, db, login):
    response = client.post(
        "/register",
        data={
            "usn": "1ap22cs050",
            "display_name": "Rohan Patil",
            "email": "rohan@apsconnect.edu",
            "password": "secret123",
            "branch": "CSE",
            "semester": "1st Sem",
        },
        follow_redirects=True,
    )
    assert b"Registration submitted" in response.data
    assert storage.get_user(db, "1AP22CS050")["role"] == "pending"

    response = login("1AP22CS050")
    assert b"Account Pending" in response.data
    assert storage.list_notification_ids(db, "1AP22CS050") == set()


def test_admin_approval_flow(client, db, make_student, admin, login):
    make_student(approved=False)
    login(admin["email"])

    response = client.post("/admin/users/1AP21CS001/approve", follow_redirects=True)
    assert b"Approved 1AP21CS001." in response.data
    assert storage.get_user(db, "1AP21CS001")["role"] == "student"


def test_admin_rejection_needs_reason(client, db, make_student, admin, login):
    make_student(approved=False)
    login(admin["email"])

    response = client.post("/admin/users/1AP21CS001/reject", data={"reason": ""}, follow_redirects=True)
    assert b"Please give a reason" in response.data

    client.post("/admin/users/1AP21CS001/reject", data={"reason": "USN mismatch"})
    assert storage.get_user(db, "1AP21CS001")["rejection_reason"] == "USN mismatch"


def test_admin_cannot_delete_self(client, db, admin, login):
    login(admin["email"])
    response = client.post(f"/admin/users/{admin['uid']}/delete", follow_redirects=True)
    assert b"cannot delete your own" in response.data
    assert storage.get_user(db, admin["uid"]) is not None


def test_notification_center_actions(client, db, make_student, login):
    make_student()
    login("1AP21CS001")
    notification_id = "1AP21CS001-approval-approved"

    response = client.get("/notifications")
    assert b"Registration Approved!" in response.data

    client.post("/notifications", data={"action": "mark_read", "notification_id": notification_id})
    assert storage.unread_count(db, "1AP21CS001") == 0

    client.post("/notifications", data={"action": "clear_all"})
    assert storage.list_notifications(db, "1AP21CS001") == []


def test_mark_read_of_foreign_notification_is_404(client, db, make_student, login):
    make_student()
    make_student(usn="1AP21CS002")
    login("1AP21CS001")

    response = client.post(
        "/notifications",
        data={"action": "mark_read", "notification_id": "1AP21CS002-approval-approved"},
    )
    assert response.status_code == 404


def test_disabling_preference_suppresses_next_pass(client, db, make_student, faculty, login):
    make_student()
    storage.insert_fee_record(
        db,
        {
            "id": "fee-1",
            "student_uid": "1AP21CS001",
            "description": "Tuition Fee",
            "amount": 5000,
            "due_date": (date.today() + timedelta(days=1)).isoformat(),
            "created_by_uid": faculty["uid"],
        },
    )
    db.commit()
    login("1AP21CS001")

    form = {key: "on" for key in ("approval", "assignment_deadline", "low_attendance")}
    client.post("/profile/settings", data=form)
    client.post("/notifications", data={"action": "clear_all"})
    client.get("/dashboard")

    assert storage.list_notification_ids(db, "1AP21CS001") == {"1AP21CS001-approval-approved"}


def test_student_fee_page_shows_total_due(client, db, make_student, faculty, login):
    make_student()
    for amount, status in ((5000, "pending"), (3000, "paid")):
        storage.insert_fee_record(
            db,
            {
                "student_uid": "1AP21CS001",
                "description": f"Fee {amount}",
                "amount": amount,
                "due_date": "2026-12-01",
                "status": status,
                "created_by_uid": faculty["uid"],
            },
        )
    db.commit()
    login("1AP21CS001")

    response = client.get("/student/fee-details")
    assert "₹5,000".encode() in response.data


def test_faculty_marks_attendance_in_scope_only(client, db, make_student, faculty, login):
    make_student()
    make_student(usn="1AP21EC001", branch="ECE")
    login(faculty["email"])

    for student_uid in ("1AP21CS001", "1AP21EC001"):
        client.post(
            "/faculty/attendance",
            data={
                "student_uid": student_uid,
                "subject": "DS",
                "status": "present",
                "date": "2026-10-19",
                "period": "1",
            },
        )

    assert len(storage.list_attendance(db, "1AP21CS001")) == 1
    assert storage.list_attendance(db, "1AP21EC001") == []


def test_student_attendance_summary_page(client, db, make_student, faculty, login):
    make_student()
    for period, status in enumerate(["present", "absent", "present"], start=1):
        storage.upsert_attendance(
            db,
            {
                "student_uid": "1AP21CS001",
                "date": "2026-10-19",
                "period": period,
                "subject": "DS",
                "status": status,
                "marked_by_uid": faculty["uid"],
                "branch": "CSE",
                "semester": "3rd Sem",
            },
        )
    db.commit()
    login("1AP21CS001")

    response = client.get("/student/attendance")
    assert b"67%" in response.data
    assert b"2 / 3 classes attended" in response.data


def test_fee_update_with_stale_version(client, db, make_student, faculty, login):
    make_student()
    fee_id = storage.insert_fee_record(
        db,
        {
            "student_uid": "1AP21CS001",
            "branch": "CSE",
            "semester": "3rd Sem",
            "description": "Tuition Fee",
            "amount": 5000,
            "due_date": "2026-12-01",
            "created_by_uid": faculty["uid"],
        },
    )
    db.commit()
    login(faculty["email"])

    client.post(f"/faculty/fee-management/{fee_id}/status", data={"status": "paid", "version": "1"})
    response = client.post(
        f"/faculty/fee-management/{fee_id}/status",
        data={"status": "pending", "version": "1"},
        follow_redirects=True,
    )

    assert b"changed by someone else" in response.data
    record = storage.get_fee_record(db, fee_id)
    assert record["status"] == "paid"
    assert record["version"] == 2


def test_admin_attendance_filters(client, db, make_student, faculty, admin, login):
    make_student()
    storage.upsert_attendance(
        db,
        {
            "student_uid": "1AP21CS001",
            "student_name": "Test Student",
            "date": "2026-10-19",
            "period": 1,
            "subject": "DS",
            "status": "absent",
            "marked_by_uid": faculty["uid"],
            "branch": "CSE",
            "semester": "3rd Sem",
        },
    )
    db.commit()
    login(admin["email"])

    response = client.get("/admin/attendance?branch=CSE")
    assert b"Showing 1 records" in response.data
    response = client.get("/admin/attendance?branch=ECE")
    assert b"Showing 0 records" in response.data


def test_unknown_page_renders_error(client):
    response = client.get("/no-such-page")
    assert response.status_code == 404
    assert b"not found" in response.data


def test_registration_cannot_claim_staff_email(client, db, faculty, login):
    response = client.post(
        "/register",
        data={
            "usn": "1ap21cs077",
            "display_name": "Imposter",
            "email": faculty["email"],
            "password": "secret123",
            "branch": "CSE",
            "semester": "3rd Sem",
        },
        follow_redirects=True,
    )
    assert b"already in use" in response.data
    assert storage.get_user(db, "1AP21CS077") is None

    response = login(faculty["email"])
    assert b"Welcome back, Test Faculty." in response.data


def test_faculty_cannot_view_out_of_scope_attendance(client, db, make_student, faculty, login):
    make_student(usn="1AP21EC001", branch="ECE")
    storage.upsert_attendance(
        db,
        {
            "student_uid": "1AP21EC001",
            "date": "2026-10-19",
            "period": 1,
            "subject": "SecretSubject",
            "status": "present",
            "marked_by_uid": "someone@apsconnect.edu",
            "branch": "ECE",
            "semester": "3rd Sem",
        },
    )
    db.commit()
    login(faculty["email"])

    response = client.get("/faculty/attendance?student_uid=1AP21EC001")
    assert response.status_code == 403
    assert b"SecretSubject" not in response.data


def test_faculty_views_in_scope_attendance(client, db, make_student, faculty, login):
    make_student()
    login(faculty["email"])
    response = client.get("/faculty/attendance?student_uid=1ap21cs001")
    assert response.status_code == 200
    assert b"Summary for 1AP21CS001" in response.data


@pytest.mark.parametrize("amount", ["nan", "inf", "-inf", "0"])
def test_fee_amount_must_be_finite_and_positive(client, db, make_student, faculty, login, amount):
    make_student()
    login(faculty["email"])

    response = client.post(
        "/faculty/fee-management/new",
        data={
            "student_uid": "1AP21CS001",
            "description": "Tuition Fee",
            "amount": amount,
            "due_date": "2026-12-01",
            "status": "pending",
        },
    )
    assert response.status_code == 302
    assert storage.list_fee_records(db) == []

    page = client.get("/faculty/fee-management")
    assert b"a positive amount" in page.data


def _admin_fee(db, faculty, student_uid="1AP21CS001", branch="CSE", status="pending", amount=5000):
    return storage.insert_fee_record(
        db,
        {
            "student_uid": student_uid,
            "student_name": "Test Student",
            "student_usn": student_uid,
            "branch": branch,
            "semester": "3rd Sem",
            "description": f"Fee {student_uid}",
            "amount": amount,
            "due_date": "2026-12-01",
            "status": status,
            "created_by_uid": faculty["uid"],
        },
    )


def test_admin_fee_page_lists_every_branch(client, db, faculty, admin, login):
    _admin_fee(db, faculty)
    _admin_fee(db, faculty, student_uid="1AP21EC001", branch="ECE", amount=2500)
    _admin_fee(db, faculty, student_uid="1AP21ME001", branch="ME", status="paid", amount=1000)
    db.commit()
    login(admin["email"])

    response = client.get("/admin/fee-management")
    assert response.status_code == 200
    assert "₹7,500".encode() in response.data
    assert b"across 3 record(s)" in response.data

    response = client.get("/admin/fee-management?branch=ECE")
    assert "₹2,500".encode() in response.data
    assert b"across 1 record(s)" in response.data


def test_admin_deletes_fee_record(client, db, faculty, admin, login):
    fee_id = _admin_fee(db, faculty)
    db.commit()
    login(admin["email"])

    response = client.post(f"/admin/fee-management/{fee_id}/delete", follow_redirects=True)
    assert b"Fee record deleted." in response.data
    assert storage.get_fee_record(db, fee_id) is None
    assert client.post(f"/admin/fee-management/{fee_id}/delete").status_code == 404


def test_admin_status_update_returns_to_admin_page(client, db, faculty, admin, login):
    fee_id = _admin_fee(db, faculty, branch="ECE")
    db.commit()
    login(admin["email"])

    response = client.post(f"/faculty/fee-management/{fee_id}/status", data={"status": "paid", "version": "1"})
    assert response.headers["Location"].endswith("/admin/fee-management")
    assert storage.get_fee_record(db, fee_id)["status"] == "paid"


def test_faculty_cannot_delete_fee_records(client, db, faculty, login):
    fee_id = _admin_fee(db, faculty)
    db.commit()
    login(faculty["email"])
    assert client.post(f"/admin/fee-management/{fee_id}/delete").status_code == 403
    assert client.get("/admin/fee-management").status_code == 403


def test_bell_polls_unread_count(client, make_student, login):
    make_student()
    response = login("1AP21CS001")
    assert b'data-count-url="/notifications/count"' in response.data


def test_oversized_form_is_rejected(client):
    response = client.post("/login", data={"identifier": "x" * (2 * 1024 * 1024), "password": "x"})
    assert response.status_code == 413
    assert b"Request too large" in response.data
