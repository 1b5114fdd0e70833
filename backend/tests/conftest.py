import asyncio

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

import server

PASSWORD = "correct-horse-42"


@pytest.fixture
def db(monkeypatch):
    mock_db = AsyncMongoMockClient()["skillswap_test"]
    monkeypatch.setattr(server, "db", mock_db)
    return mock_db


@pytest.fixture
def client(db, monkeypatch, tmp_path):
    monkeypatch.setattr(server, "UPLOAD_DIR", tmp_path / "uploads")
    server._RL_STORE.clear()
    return TestClient(server.app)


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, email, name="Tester", password=PASSWORD, location=None):
    body = {"email": email, "password": password, "name": name}
    if location is not None:
        body["location"] = location
    r = client.post("/api/register", json=body)
    assert r.status_code == 201, r.text
    data = r.json()
    return data["token"], data["user"]


def login(client, email, password=PASSWORD):
    r = client.post("/api/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    return r.json()["token"]


def make_admin(client, email="admin@example.com", password=PASSWORD):
    asyncio.run(server.bootstrap_admin(email, password))
    return login(client, email, password)
