"""
Pytest fixtures for the billing API test suite.

MongoDB is replaced by mongomock; mail is captured by a recording notifier
instead of being handed to SMTP.
"""
import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("ADMIN_EMAIL", "admin@vault.io")
os.environ.setdefault("SUMMARY_RETRIES", "2")

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import hash_password
from database import USERS, ensure_indexes, get_db, now
from notifier import Notifier, get_notifier

ADMIN_EMAIL = "admin@vault.io"
ADMIN_PASSWORD = "admin-pass"


class RecordingNotifier(Notifier):
    """Captures queued mail instead of delivering it."""

    def __init__(self):
        self.sent = []

    def queue(self, to_address, subject, body, attachments=None):
        self.sent.append({"to": to_address, "subject": subject, "body": body, "attachments": attachments or []})
        return None

    def subjects(self):
        return [m["subject"] for m in self.sent]


@pytest.fixture
def db():
    database = mongomock.MongoClient()["invoice_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def admin_user(db):
    doc = {
        "name": "Ada Admin",
        "email": ADMIN_EMAIL,
        "password": hash_password(ADMIN_PASSWORD),
        "role": "admin",
        "myCreatedInvoices": [],
        "createdAt": now(),
    }
    doc["_id"] = db[USERS].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def client_user(db):
    """A bare client-role user with no client document, for ledger-only tests."""
    doc = {"name": "Cathy Client", "email": "cathy@client.io", "password": hash_password("pw"),
           "role": "client", "invoicesReceived": []}
    doc["_id"] = db[USERS].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def api(db, notifier, admin_user):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers(api):
    response = api.post("/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD, "role": "admin"})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


def invoice_payload(**overrides):
    data = {
        "adminEmail": ADMIN_EMAIL,
        "clientEmail": "cathy@client.io",
        "clientName": "Cathy Client",
        "projectTitle": "Retainer",
        "currency": "USD",
        "items": [{"name": "Hours", "qty": 10, "price": 50}, {"name": "Hosting", "qty": 1, "price": 25}],
    }
    data.update(overrides)
    return data


@pytest.fixture(name="invoice_payload")
def invoice_payload_fixture():
    return invoice_payload
