import os

os.environ.pop("DATABASE_URL", None)
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET"] = "test-secret-that-is-long-enough-for-hs256-signing"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_123"

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import users
from auth import sign_token
from main import app


def tour_payload(**overrides):
    data = {
        "name": "The Forest Hiker",
        "duration": 5,
        "max_group_size": 25,
        "difficulty": "easy",
        "price": 397,
        "summary": "Breathtaking hike through the Canadian Banff National Park",
        "description": "Lorem ipsum dolor sit amet.",
        "image_cover": "tour-1-cover.jpg",
        "images": ["tour-1-1.jpg", "tour-1-2.jpg"],
        "start_location": {
            "type": "Point",
            "coordinates": [-116.214531, 51.417611],
            "address": "224 Banff Ave, Banff, AB, Canada",
            "description": "Banff National Park",
        },
    }
    data.update(overrides)
    return data


@pytest.fixture
def db():
    mongo = mongomock.MongoClient()["natours_test"]
    database.ensure_indexes(mongo)
    return mongo


@pytest.fixture
def client(db):
    app.dependency_overrides[database.get_db] = lambda: db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="user", name=None, email=None, password="pass1234"):
        counter["n"] += 1
        n = counter["n"]
        return users.create_user(db, {
            "name": name or f"User {n}",
            "email": email or f"user{n}@example.com",
            "role": role,
            "password": password,
            "password_confirm": password,
        })
    return _make


def auth_headers(user):
    return {"Authorization": f"Bearer {sign_token(user['id'])}"}
