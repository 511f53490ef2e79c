"""
Shared fixtures for the storefront tests.

MongoDB is replaced with an in-memory mongomock database patched into both
`database` (used by create_document) and `main` (used by the route handlers).
"""
import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main


@pytest.fixture
def mongo_db(monkeypatch):
    test_db = mongomock.MongoClient()["pharmasoft_test"]
    monkeypatch.setattr(database, "db", test_db)
    monkeypatch.setattr(main, "db", test_db)
    return test_db


@pytest.fixture
def test_client(mongo_db):
    """TestClient that returns 500 responses instead of re-raising."""
    return TestClient(main.app, raise_server_exceptions=False)


@pytest.fixture
def registered_user(test_client):
    response = test_client.post(
        "/api/auth/register",
        json={"email": "Asha@Example.com", "password": "secret123", "name": "Asha Rao"},
    )
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def auth_headers(registered_user):
    return {"Authorization": f"Bearer {registered_user['token']}"}


@pytest.fixture
def address_data():
    return {
        "name": "Asha Rao",
        "phone": "98765 43210",
        "address": "12 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "pincode": "560 001",
    }
