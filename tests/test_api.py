from datetime import timedelta

from bson import ObjectId

from conftest import PASSWORD, auth_headers, reload
from database import USERS
from security import create_access_token

PARENT_SIGNUP = {
    "username": "dad",
    "email": "dad@example.com",
    "password": PASSWORD,
    "first_name": "Dan",
    "last_name": "Doe",
    "role": "parent",
    "parent_info": {"relationship": "father"},
}


def test_root_and_health(client):
    assert client.get("/").json()["success"] is True
    assert client.get("/health").json()["data"]["ok"] is True
    assert client.get("/test").json()["database_name"] == "schoolway"


# ----------------------- Auth -----------------------

def test_signup_and_signin(client):
    res = client.post("/auth/signup", json=PARENT_SIGNUP)
    assert res.status_code == 201
    body = res.json()
    assert body["success"] is True
    assert body["data"]["token"]
    assert body["data"]["user"]["role"] == "parent"
    assert "password_hash" not in body["data"]["user"]

    res = client.post("/auth/signin", json={"username": "dad", "password": PASSWORD})
    assert res.status_code == 200
    token = res.json()["data"]["token"]

    res = client.get("/auth/profile", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200
    assert res.json()["data"]["user"]["username"] == "dad"


def test_signup_duplicate_is_bad_request(client):
    client.post("/auth/signup", json=PARENT_SIGNUP)
    res = client.post("/auth/signup", json=PARENT_SIGNUP)
    assert res.status_code == 400
    assert res.json() == {"success": False, "message": "User with this email or username already exists"}


def test_signup_validation_errors(client):
    res = client.post("/auth/signup", json={**PARENT_SIGNUP, "username": "ab", "email": "not-an-email"})
    assert res.status_code == 400
    body = res.json()
    assert body["success"] is False
    assert body["message"] == "Validation error"
    assert len(body["errors"]) >= 2

    res = client.post("/auth/signup", json={**PARENT_SIGNUP, "role": "janitor"})
    assert res.status_code == 400


def test_signup_student_needs_student_info(client):
    res = client.post("/auth/signup", json={**PARENT_SIGNUP, "role": "student"})
    assert res.status_code == 400


def test_public_signup_cannot_register_school_admin(client, db):
    payload = {**PARENT_SIGNUP, "role": "schoolAdmin", "admin_info": {"school_id": "S1", "school_name": "North High"}}
    payload.pop("parent_info")
    res = client.post("/auth/signup", json=payload)
    assert res.status_code == 400
    assert res.json()["success"] is False
    assert db[USERS].find_one({"username": "dad"}) is None

    res = client.post("/auth/signin", json={"username": "dad", "password": PASSWORD})
    assert res.status_code == 401


def test_public_signup_drops_school_binding(client, db):
    res = client.post("/auth/signup", json={**PARENT_SIGNUP, "admin_info": {"school_id": "S1", "school_name": "North High"}})
    assert res.status_code == 201
    assert "admin_info" not in db[USERS].find_one({"username": "dad"})


def test_signin_failures(client, parent):
    res = client.post("/auth/signin", json={"username": parent["username"], "password": "wrong-password"})
    assert res.status_code == 401
    assert res.json() == {"success": False, "message": "Invalid credentials"}


def test_token_required(client):
    res = client.get("/auth/profile")
    assert res.status_code == 401
    assert res.json()["message"] == "Access token required"

    res = client.get("/auth/profile", headers={"Authorization": "Bearer garbage"})
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid token"

    res = client.get("/auth/profile", headers=auth_headers({"_id": ObjectId(), "role": "parent"}))
    assert res.status_code == 401
    assert res.json()["message"] == "User not found or inactive"


def test_password_reset_endpoints(client, parent):
    res = client.post("/auth/reset-password", json={"email": parent["email"]})
    token = res.json()["data"]["reset_token"]
    res = client.post("/auth/confirm-reset", json={"token": token, "new_password": "fresh-pass"})
    assert res.status_code == 200
    res = client.post("/auth/signin", json={"username": parent["username"], "password": "fresh-pass"})
    assert res.status_code == 200


def test_verify_email_endpoint(client, db, parent):
    res = client.get(f"/auth/verify-email/{parent['email_verification_token']}")
    assert res.status_code == 200
    assert reload(db, parent)["is_verified"] is True
    assert client.get("/auth/verify-email/nope").status_code == 400


def test_create_parent_requires_school_admin(client, school_admin, system_admin):
    payload = {**PARENT_SIGNUP}
    payload.pop("role")
    res = client.post("/auth/create-parent", json=payload, headers=auth_headers(system_admin))
    assert res.status_code == 403

    res = client.post("/auth/create-parent", json=payload, headers=auth_headers(school_admin))
    assert res.status_code == 201
    assert res.json()["data"]["admin_info"]["school_id"] == "S1"


def test_create_school_admin_requires_system_admin(client, school_admin, system_admin):
    payload = {**PARENT_SIGNUP, "role": "schoolAdmin", "admin_info": {"school_id": "S5", "school_name": "West"}}
    payload.pop("parent_info")
    assert client.post("/auth/create-school-admin", json=payload, headers=auth_headers(school_admin)).status_code == 403
    assert client.post("/auth/create-school-admin", json=payload, headers=auth_headers(system_admin)).status_code == 201


def test_lock_endpoint(client, parent, system_admin):
    res = client.put(f"/auth/users/{parent['_id']}/lock", json={"lock": True}, headers=auth_headers(system_admin))
    assert res.status_code == 200
    res = client.post("/auth/signin", json={"username": parent["username"], "password": PASSWORD})
    assert res.status_code == 401
    assert "locked" in res.json()["message"]


def test_permission_and_school_access_checks(client, school_admin, system_admin):
    res = client.get(f"/auth/users/{school_admin['_id']}/permissions", params={"permission": "view_reports"},
                     headers=auth_headers(system_admin))
    assert res.json()["data"]["has_permission"] is True
    res = client.get(f"/auth/users/{school_admin['_id']}/school-access", params={"school_id": "S2"},
                     headers=auth_headers(system_admin))
    assert res.json()["data"]["can_access"] is False


# ----------------------- Students -----------------------

def test_students_list_by_role(client, student, parent, school_admin, system_admin):
    res = client.get("/students", headers=auth_headers(school_admin))
    assert res.status_code == 200
    data = res.json()["data"]
    assert [s["id"] for s in data["students"]] == [str(student["_id"])]
    assert data["pagination"]["total"] == 1

    assert client.get("/students", headers=auth_headers(system_admin)).status_code == 200
    assert client.get("/students", headers=auth_headers(parent)).status_code == 403
    assert client.get("/students", headers=auth_headers(student)).status_code == 403


def test_parent_children(client, student, parent, school_admin):
    res = client.get("/students/parent/children", headers=auth_headers(parent))
    assert res.status_code == 200
    assert [s["id"] for s in res.json()["data"]] == [str(student["_id"])]
    assert client.get("/students/parent/children", headers=auth_headers(school_admin)).status_code == 403


def test_student_crud(client, db, parent, school_admin):
    res = client.post("/students", headers=auth_headers(school_admin), json={
        "username": "kiddo",
        "email": "kiddo@example.com",
        "password": PASSWORD,
        "first_name": "Kid",
        "last_name": "Doe",
        "student_info": {"parent_id": str(parent["_id"]), "grade": 3},
    })
    assert res.status_code == 201
    student_id = res.json()["data"]["id"]

    res = client.put(f"/students/{student_id}", headers=auth_headers(school_admin),
                     json={"bus_info": {"bus_number": "B3"}})
    assert res.json()["data"]["bus_info"]["bus_number"] == "B3"

    assert client.get(f"/students/{student_id}", headers=auth_headers(school_admin)).status_code == 200
    assert client.delete(f"/students/{student_id}", headers=auth_headers(school_admin)).status_code == 200
    assert client.get(f"/students/{student_id}", headers=auth_headers(school_admin)).status_code == 404
    assert client.get("/students/not-an-id", headers=auth_headers(school_admin)).status_code == 400


def test_student_stats_route(client, student, school_admin):
    res = client.get("/students/stats", headers=auth_headers(school_admin))
    assert res.json()["data"]["total_students"] == 1


# ----------------------- Tracking -----------------------

def test_location_update_validation(client, student, school_admin):
    url = f"/tracking/{student['_id']}/location"
    res = client.put(url, json={"latitude": 91, "longitude": 0}, headers=auth_headers(school_admin))
    assert res.status_code == 400
    assert res.json()["errors"][0]["field"] == "latitude"

    res = client.put(url, json={"latitude": 45, "longitude": 181}, headers=auth_headers(school_admin))
    assert res.status_code == 400

    res = client.put(url, json={"latitude": 45, "longitude": 90}, headers=auth_headers(school_admin))
    assert res.status_code == 200
    assert res.json()["data"]["tracking_info"]["status"] == "tracking"


def test_tracking_writes_need_update_tracking(client, student, parent, system_admin):
    url = f"/tracking/{student['_id']}/status"
    assert client.put(url, json={"status": "active"}, headers=auth_headers(parent)).status_code == 403
    assert client.put(url, json={"status": "active"}, headers=auth_headers(system_admin)).status_code == 403


def test_status_enum_is_validated(client, student, school_admin):
    res = client.put(f"/tracking/{student['_id']}/status", json={"status": "flying"}, headers=auth_headers(school_admin))
    assert res.status_code == 400


def test_emergency_alert_route(client, db, student, school_admin):
    url = f"/tracking/{student['_id']}/emergency"
    res = client.post(url, json={"type": "medical", "message": "   "}, headers=auth_headers(school_admin))
    assert res.status_code == 400
    res = client.post(url, json={"type": "weather", "message": "Storm"}, headers=auth_headers(school_admin))
    assert res.status_code == 400

    res = client.post(url, json={"type": "safety", "message": "Wrong stop"}, headers=auth_headers(school_admin))
    assert res.status_code == 200
    assert reload(db, student)["tracking_info"]["status"] == "emergency"


def test_bulk_status_route(client, student, school_admin):
    res = client.put("/tracking/bulk/status", headers=auth_headers(school_admin), json={"updates": [
        {"student_id": str(student["_id"]), "status": "inactive"},
        {"student_id": "nope", "status": "inactive"},
    ]})
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["matched"] == 1
    assert data["failed"] == [{"student_id": "nope", "reason": "Invalid ID format"}]

    assert client.put("/tracking/bulk/status", headers=auth_headers(school_admin), json={"updates": []}).status_code == 400


def test_history_access(client, student, parent, make_parent, school_admin):
    url = f"/tracking/{student['_id']}/history"
    assert client.get(url, headers=auth_headers(parent)).status_code == 200
    assert client.get(url, headers=auth_headers(school_admin)).status_code == 200
    assert client.get(url, headers=auth_headers(make_parent())).status_code == 403
    assert client.get(url, headers=auth_headers(student)).status_code == 403


def test_location_query(client, student, school_admin):
    client.put(f"/tracking/{student['_id']}/location", json={"latitude": 5, "longitude": 5},
               headers=auth_headers(school_admin))
    res = client.get("/tracking/location", params={"latitude": 5.01, "longitude": 5, "radius": 5},
                     headers=auth_headers(school_admin))
    assert [s["id"] for s in res.json()["data"]] == [str(student["_id"])]


def test_analytics_access(client, student, parent, school_admin, system_admin):
    assert client.get("/tracking/analytics", headers=auth_headers(school_admin)).status_code == 200
    assert client.get("/tracking/analytics", headers=auth_headers(system_admin)).status_code == 200
    assert client.get("/tracking/analytics", headers=auth_headers(parent)).status_code == 403


# ----------------------- Admin -----------------------

def test_admin_routes_require_admin_role(client, parent, school_admin):
    assert client.get("/admin/dashboard/stats", headers=auth_headers(parent)).status_code == 403
    res = client.get("/admin/dashboard/stats", headers=auth_headers(school_admin))
    assert res.status_code == 200
    assert res.json()["data"]["total_parents"] == 1


def test_user_stats_need_view_reports(client, school_admin, other_school_admin, system_admin):
    assert client.get("/admin/users/stats", headers=auth_headers(school_admin)).status_code == 200
    assert client.get("/admin/users/stats", headers=auth_headers(other_school_admin)).status_code == 403
    assert client.get("/admin/users/stats", headers=auth_headers(system_admin)).status_code == 200


def test_school_admin_cannot_grant_itself_report_access(client, other_school_admin):
    headers = auth_headers(other_school_admin)
    assert client.get("/admin/users/stats", headers=headers).status_code == 403

    res = client.put(f"/admin/{other_school_admin['_id']}", headers=headers,
                     json={"admin_info": {"permissions": ["view_reports"]}})
    assert res.status_code == 403
    assert client.get("/admin/users/stats", headers=headers).status_code == 403


def test_admin_create_and_delete(client, school_admin):
    res = client.post("/admin", headers=auth_headers(school_admin), json={
        "username": "deputy",
        "email": "deputy@example.com",
        "password": PASSWORD,
        "first_name": "Dep",
        "last_name": "Uty",
    })
    assert res.status_code == 201
    admin_id = res.json()["data"]["id"]
    assert res.json()["data"]["admin_info"]["school_id"] == "S1"

    res = client.post("/admin", headers=auth_headers(school_admin), json={
        "username": "boss", "email": "boss@example.com", "password": PASSWORD,
        "first_name": "B", "last_name": "Oss", "role": "systemAdmin",
    })
    assert res.status_code == 403

    assert client.delete(f"/admin/{admin_id}", headers=auth_headers(school_admin)).status_code == 200
    assert client.delete(f"/admin/{school_admin['_id']}", headers=auth_headers(school_admin)).status_code == 400


def test_admin_user_listing_and_status(client, parent, school_admin):
    res = client.get("/admin/users", params={"role": "parent"}, headers=auth_headers(school_admin))
    assert [u["id"] for u in res.json()["data"]["users"]] == [str(parent["_id"])]

    res = client.put(f"/admin/users/{parent['_id']}/status", json={"is_active": False},
                     headers=auth_headers(school_admin))
    assert res.status_code == 200
    assert client.get("/auth/profile", headers=auth_headers(parent)).status_code == 401


def test_expired_token(client, parent):
    token = create_access_token(str(parent["_id"]), "parent", expires_delta=timedelta(seconds=-1))
    res = client.get("/auth/profile", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401
    assert res.json()["message"] == "Token expired"
