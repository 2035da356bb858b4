import asyncio
import itertools
import os
import tempfile
from dataclasses import dataclass
from typing import Dict

_TMP_DIR = tempfile.mkdtemp(prefix="cotisation-api-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RATE_LIMIT_MAX"] = "10000"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import update  # noqa: E402

from database import async_session, reset_models  # noqa: E402
from main import app, rate_limiter  # noqa: E402
from models import UserModel  # noqa: E402
from schemas import Role  # noqa: E402

API = "/api/v1"


@dataclass
class Account:
    id: int
    email: str
    password: str
    token: str

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


def set_role(user_id: int, role: Role) -> None:
    async def _update():
        async with async_session() as session:
            await session.execute(update(UserModel).where(UserModel.id == user_id).values(role=role))
            await session.commit()

    asyncio.run(_update())


@pytest.fixture
def client():
    asyncio.run(reset_models())
    rate_limiter.reset()
    app.dependency_overrides.clear()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(client):
    counter = itertools.count(1)

    def _make(role: Role = Role.MEMBER, **overrides) -> Account:
        n = next(counter)
        payload = {
            "name": f"User{n}",
            "surname": "Tester",
            "email": f"user{n}@example.com",
            "password": "secret123",
            "phone": "0612345678",
            "address": f"{n} Main Street",
        }
        payload.update(overrides)
        resp = client.post(f"{API}/auth/register", json=payload)
        assert resp.status_code == 201, resp.text
        # Requests must opt into the cookie explicitly
        client.cookies.clear()
        body = resp.json()
        if role != Role.MEMBER:
            set_role(body["data"]["id"], role)
        return Account(body["data"]["id"], payload["email"], payload["password"], body["token"])

    return _make


@pytest.fixture
def admin(make_user) -> Account:
    return make_user(role=Role.ADMIN)


@pytest.fixture
def member(make_user) -> Account:
    return make_user()


def dues_payload(**overrides):
    payload = {
        "amount": 50,
        "month": "March",
        "year": 2025,
        "payment_method": "Cash",
    }
    payload.update(overrides)
    return payload


def transaction_payload(**overrides):
    payload = {
        "type": "Outflow",
        "amount": 20,
        "description": "Stationery",
        "category": "Administrative Expense",
    }
    payload.update(overrides)
    return payload
