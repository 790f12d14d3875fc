import os

os.environ.setdefault("SECRET_KEY", "test-secret")

import mongomock
import pytest
from fastapi.testclient import TestClient
from passlib.context import CryptContext

import database
import main

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def week_schedule(**overrides):
    schedule = [{"day": day, "open": "09:00", "close": "18:00", "is_open": day != "sunday"} for day in WEEKDAYS]
    for entry in schedule:
        entry.update(overrides.get(entry["day"], {}))
    return schedule


def store_payload(**overrides):
    payload = {
        "name": "La Esquina",
        "responsible_name": "Ana Ruiz",
        "phone": "+525512345678",
        "categories": ["Restaurante", "Otros"],
        "description": "Neighbourhood kitchen",
        "schedule": week_schedule(),
        "location": {"alias": "Centro", "map_url": "https://maps.example.com/?q=centro"},
        "social_media": {"instagram": "@laesquina"},
    }
    payload.update(overrides)
    return payload


def user_payload(email, role="client", store=None, **overrides):
    payload = {
        "name": email.split("@")[0].title(),
        "email": email,
        "password": "secret123",
        "phone": "+525511112222",
        "locations": [{"alias": "Home", "map_url": "https://maps.example.com/?q=home"}],
        "role": role,
    }
    if store is not None:
        payload["store"] = store
    payload.update(overrides)
    return payload


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def mongo(monkeypatch):
    mock_db = mongomock.MongoClient().marketplace
    monkeypatch.setattr(database, "db", mock_db)
    monkeypatch.setattr(main, "db", mock_db)
    monkeypatch.setattr(main, "SECRET_KEY", "test-secret")
    monkeypatch.setattr(main, "pwd_context", CryptContext(schemes=["bcrypt"], bcrypt__rounds=4))
    return mock_db


@pytest.fixture
def client(mongo):
    main.app.dependency_overrides.clear()
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def register_user(client):
    def _register(email, role="client", store=None, **overrides):
        if role == "admin" and store is None:
            store = store_payload()
        res = client.post("/api/auth/register", json=user_payload(email, role, store, **overrides))
        assert res.status_code == 201, res.json()
        data = res.json()["data"]
        return {
            "token": data["token"],
            "headers": bearer(data["token"]),
            "user": data["user"],
            "store_id": data["store_id"],
        }

    return _register


@pytest.fixture
def admin(register_user):
    return register_user("owner@example.com", role="admin")


@pytest.fixture
def other_admin(register_user):
    return register_user("rival@example.com", role="admin", store=store_payload(name="Rival Shop"))


@pytest.fixture
def customer(register_user):
    return register_user("buyer@example.com")


@pytest.fixture
def platform_admin(register_user, mongo):
    account = register_user("root@example.com")
    mongo["user"].update_one({"email": "root@example.com"}, {"$set": {"role": "platform_admin"}})
    return account


@pytest.fixture
def make_product(client, admin):
    def _make(owner=None, **fields):
        owner = owner or admin
        payload = {
            "name": "Tacos al pastor",
            "description": "Three tacos",
            "price": 45.5,
            "stock": 10,
            "images": ["https://img.example.com/tacos.jpg"],
            "category": "Restaurante",
        }
        payload.update(fields)
        res = client.post(f"/api/stores/{owner['store_id']}/products", json=payload, headers=owner["headers"])
        assert res.status_code == 201, res.json()
        return res.json()["data"]

    return _make
