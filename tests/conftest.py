import os
import tempfile
from types import SimpleNamespace

# Settings are read at import time, so the environment must be ready first.
_TMP_DIR = tempfile.mkdtemp(prefix="coordena-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["INSTITUTION_DOMAIN"] = "inst.edu"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["ADMIN_EMAIL"] = "admin@admin.inst.edu"
os.environ["ADMIN_PASSWORD"] = "admin-pass"
os.environ["VAPID_PRIVATE_KEY"] = "test-private-key"
os.environ["VAPID_PUBLIC_KEY"] = "test-public-key"
os.environ["SMTP_HOST"] = ""

import pytest
from fastapi.testclient import TestClient
from pywebpush import WebPushException

from coordena import services
from coordena.api import app
from coordena.database import Base, engine

ADMIN_EMAIL = os.environ["ADMIN_EMAIL"]
ADMIN_PASSWORD = os.environ["ADMIN_PASSWORD"]


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


def reservation_payload(**overrides):
    data = {
        "title": "Aula de redes",
        "description": "Pratica de roteamento",
        "date": "2025-10-01",
        "start_time": "08:00",
        "end_time": "10:00",
        "resource": "Lab 1",
        "type": "aula",
        "room": "101",
        "department": "TI",
    }
    data.update(overrides)
    return data


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    services.seed_admin()
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def admin_token(client):
    resp = client.post(
        "/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}
    )
    assert resp.status_code == 200
    return resp.json()["access_token"]


@pytest.fixture
def make_user(client, admin_token):
    """Register a user, optionally approve it, and return ``(id, token)``."""

    def _make(email, name="Test User", password="pw", approve=True, **extra):
        resp = client.post(
            "/api/auth/register",
            json={"name": name, "email": email, "password": password, **extra},
        )
        assert resp.status_code == 201, resp.text
        user_id = resp.json()["id"]
        if not approve:
            return user_id, None
        resp = client.patch(
            f"/api/admin/approve-user/{user_id}", headers=auth_header(admin_token)
        )
        assert resp.status_code == 200
        resp = client.post("/api/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200
        return user_id, resp.json()["access_token"]

    return _make


@pytest.fixture
def professor(make_user):
    return make_user("prof.ana@professor.inst.edu", name="Ana Souza")


@pytest.fixture
def student(make_user):
    return make_user("joao@alunos.inst.edu", name="Joao Lima")


@pytest.fixture
def push_calls(monkeypatch):
    """Replace the Web Push transport and record every delivery attempt.

    Endpoints listed in ``push_calls.failures`` raise ``WebPushException``
    with the mapped HTTP status.
    """
    recorder = SimpleNamespace(calls=[], failures={})

    def fake_webpush(subscription_info, data, vapid_private_key, vapid_claims):
        endpoint = subscription_info["endpoint"]
        recorder.calls.append({"endpoint": endpoint, "data": data})
        status = recorder.failures.get(endpoint)
        if status is not None:
            raise WebPushException(
                "push failed", response=SimpleNamespace(status_code=status, text="")
            )

    monkeypatch.setattr("coordena.notifications.webpush", fake_webpush)
    return recorder


class FakeSMTP:
    sent = []
    fail = False

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def send_message(self, msg):
        if FakeSMTP.fail:
            raise OSError("connection refused")
        FakeSMTP.sent.append(msg)


@pytest.fixture
def smtp(monkeypatch):
    from coordena.config import settings

    FakeSMTP.sent = []
    FakeSMTP.fail = False
    monkeypatch.setattr(settings, "smtp_host", "smtp.inst.edu")
    monkeypatch.setattr("coordena.notifications.smtplib.SMTP", FakeSMTP)
    return FakeSMTP
