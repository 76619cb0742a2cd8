import itertools
import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.pop("DATABASE_URL", None)

import mongomock
import pytest
from fastapi.testclient import TestClient

import account_service
import database
from database import USERS
from main import app
from security import create_access_token

PASSWORD = "secret123"


@pytest.fixture
def db():
    return mongomock.MongoClient()["schoolway_test"]


@pytest.fixture
def client(db):
    app.dependency_overrides[database.get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    def factory(role, **extra):
        n = next(counter)
        data = {
            "username": f"{role.lower()}{n}",
            "email": f"{role.lower()}{n}@example.com",
            "password": PASSWORD,
            "first_name": role.capitalize(),
            "last_name": f"User{n}",
            "role": role,
        }
        data.update(extra)
        account_service.signup(db, data)
        return db[USERS].find_one({"username": data["username"]})

    return factory


def school(school_id, name):
    return {"school_id": school_id, "school_name": name}


@pytest.fixture
def system_admin(make_user):
    return make_user("systemAdmin", admin_info={"access_level": "full"})


@pytest.fixture
def school_admin(make_user):
    return make_user("schoolAdmin", admin_info={**school("S1", "North High"), "permissions": ["view_reports"]})


@pytest.fixture
def other_school_admin(make_user):
    return make_user("schoolAdmin", admin_info=school("S2", "South High"))


@pytest.fixture
def make_parent(make_user):
    def factory(school_id="S1", **extra):
        return make_user(
            "parent",
            parent_info={"relationship": "mother"},
            admin_info=school(school_id, "North High" if school_id == "S1" else "South High"),
            **extra,
        )
    return factory


@pytest.fixture
def parent(make_parent):
    return make_parent()


@pytest.fixture
def make_student(db, make_user):
    def factory(parent, school_id="S1", grade=5, bus_number="B7", student_info=None, **extra):
        info = {"parent_id": str(parent["_id"]), "grade": grade, "section": "A"}
        info.update(student_info or {})
        return make_user(
            "student",
            student_info=info,
            bus_info={"bus_number": bus_number},
            admin_info=school(school_id, "North High" if school_id == "S1" else "South High"),
            **extra,
        )
    return factory


@pytest.fixture
def student(make_student, parent):
    return make_student(parent)


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(str(user['_id']), user['role'])}"}


def reload(db, user):
    return db[USERS].find_one({"_id": user["_id"]})
