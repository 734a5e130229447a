import os
import re
import tempfile
import uuid

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///" + os.path.join(tempfile.mkdtemp(), "test.db"))
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = ""

from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, select  # noqa: E402

import app as app_module  # noqa: E402
from db import engine, User  # noqa: E402


@pytest.fixture
def client():
    app_module.login_attempts.clear()
    with TestClient(app_module.app) as c:
        yield c


def csrf(client):
    return client.cookies.get("crm_csrf")


def register(client, plan=None):
    email = f"user-{uuid.uuid4().hex[:10]}@example.com"
    client.get("/register")
    resp = client.post(
        "/register",
        data={"csrf_token": csrf(client), "email": email, "password": "correct-horse"},
        follow_redirects=False,
    )
    assert resp.status_code == 303
    if plan:
        set_plan(email, plan)
    return email


def set_plan(email, plan):
    with Session(engine) as session:
        user = session.exec(select(User).where(User.email == email)).first()
        user.plan = plan
        session.add(user)
        session.commit()


def get_user(email):
    with Session(engine) as session:
        return session.exec(select(User).where(User.email == email)).first()


def confirm_token(html):
    match = re.search(r'name="confirm_token" value="([^"]+)"', html)
    return match.group(1) if match else None
