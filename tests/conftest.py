import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("SECRET_KEY", "test-secret")

import mongomock  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import config  # noqa: E402
import database  # noqa: E402
from security import get_password_hash, token_for  # noqa: E402


@pytest.fixture
def db(monkeypatch, tmp_path):
    mock_db = mongomock.MongoClient()["agri_test"]
    database.ensure_indexes(mock_db)
    monkeypatch.setattr(database, "db", mock_db)
    monkeypatch.setattr(config, "UPLOAD_DIR", str(tmp_path / "uploads"))
    return mock_db


@pytest.fixture
def client(db):
    from main import app

    with TestClient(app) as test_client:
        yield test_client


def make_user(db, email, role="staff", password="secret123", is_active=True, name=None) -> dict:
    now = database.utcnow()
    doc = {
        "name": name or email.split("@")[0],
        "email": email,
        "role": role,
        "password_hash": get_password_hash(password),
        "is_active": is_active,
        "created_at": now,
        "updated_at": now,
    }
    db.user.insert_one(doc)
    return doc


def auth(user: dict) -> dict:
    return {"Authorization": f"Bearer {token_for(user)}"}


@pytest.fixture
def admin(db):
    return make_user(db, "admin@example.com", role="admin")


@pytest.fixture
def staff(db):
    return make_user(db, "staff@example.com", role="staff")


@pytest.fixture
def other_staff(db):
    return make_user(db, "other@example.com", role="staff")


def product_payload(**overrides) -> dict:
    payload = {
        "name": "Hybrid Maize Seed",
        "category": "Seeds",
        "sku": "seed-001",
        "hsn_code": "1005",
        "unit": "packet",
        "price": 500,
        "cost_price": 400,
        "tax_rate": 0,
        "stock": 50,
    }
    payload.update(overrides)
    return payload


def customer_payload(**overrides) -> dict:
    payload = {
        "name": "Ramesh Patil",
        "phone": "9876543210",
        "email": "ramesh@example.com",
        "address": {"street": "12 Market Road", "city": "Nashik", "state": "Maharashtra", "pincode": "422001"},
        "credit_limit": 5000,
    }
    payload.update(overrides)
    return payload


def create_product(client, headers, **overrides) -> dict:
    res = client.post("/products", json=product_payload(**overrides), headers=headers)
    assert res.status_code == 201, res.text
    return res.json()["data"]


def create_customer(client, headers, **overrides) -> dict:
    res = client.post("/customers", json=customer_payload(**overrides), headers=headers)
    assert res.status_code == 201, res.text
    return res.json()["data"]


def create_invoice(client, headers, customer_id, items, **extra) -> dict:
    res = client.post("/invoices", json={"customer": customer_id, "items": items, **extra}, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()["data"]
