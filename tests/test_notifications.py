import json

from conftest import auth_header, reservation_payload
from coordena import tasks
from coordena.database import PushSubscription, SessionLocal


def _subscribe(client, token, endpoint):
    resp = client.post(
        "/api/push/subscribe",
        json={"endpoint": endpoint, "keys": {"p256dh": "p256dh-key", "auth": "auth-key"}},
        headers=auth_header(token),
    )
    assert resp.status_code == 201
    return resp


def _subscription_count(endpoint=None):
    session = SessionLocal()
    try:
        query = session.query(PushSubscription)
        if endpoint:
            query = query.filter(PushSubscription.endpoint == endpoint)
        return query.count()
    finally:
        session.close()


def test_public_key_is_exposed(client):
    resp = client.get("/api/push/public-key")
    assert resp.status_code == 200
    assert resp.json() == {"public_key": "test-public-key"}


def test_subscribe_requires_token(client):
    resp = client.post(
        "/api/push/subscribe",
        json={"endpoint": "https://push.test/x", "keys": {"p256dh": "a", "auth": "b"}},
    )
    assert resp.status_code == 401


def test_subscribe_and_unsubscribe(client, professor):
    _, token = professor
    _subscribe(client, token, "https://push.test/prof")
    _subscribe(client, token, "https://push.test/prof")
    assert _subscription_count("https://push.test/prof") == 1

    resp = client.post(
        "/api/push/unsubscribe",
        json={"endpoint": "https://push.test/prof"},
        headers=auth_header(token),
    )
    assert resp.status_code == 200
    assert _subscription_count() == 0


def test_registration_pushes_to_admins(client, admin_token, push_calls):
    _subscribe(client, admin_token, "https://push.test/admin")
    client.post(
        "/api/auth/register",
        json={"name": "Lia", "email": "lia@alunos.inst.edu", "password": "pw"},
    )
    assert [call["endpoint"] for call in push_calls.calls] == ["https://push.test/admin"]
    message = json.loads(push_calls.calls[0]["data"])
    assert message["title"] == "New registration request"
    assert "Lia" in message["body"]


def test_reservation_request_pushes_to_admins(client, admin_token, professor, push_calls):
    _, token = professor
    _subscribe(client, admin_token, "https://push.test/admin")
    client.post("/api/reservations", json=reservation_payload(), headers=auth_header(token))
    assert len(push_calls.calls) == 1
    assert "Lab 1" in json.loads(push_calls.calls[0]["data"])["body"]


def test_gone_subscription_is_removed(client, admin_token, professor, push_calls):
    _, token = professor
    headers = auth_header(token)
    _subscribe(client, token, "https://push.test/gone")
    _subscribe(client, token, "https://push.test/alive")
    push_calls.failures["https://push.test/gone"] = 410

    reservation_id = client.post(
        "/api/reservations", json=reservation_payload(), headers=headers
    ).json()["id"]
    resp = client.patch(
        f"/api/admin/approve-reservation/{reservation_id}", headers=auth_header(admin_token)
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "approved"
    assert _subscription_count("https://push.test/gone") == 0
    assert _subscription_count("https://push.test/alive") == 1

    push_calls.calls.clear()
    client.patch(
        f"/api/admin/reject-reservation/{reservation_id}", headers=auth_header(admin_token)
    )
    assert [call["endpoint"] for call in push_calls.calls] == ["https://push.test/alive"]


def test_transient_push_failure_keeps_subscription(client, admin_token, professor, push_calls):
    _, token = professor
    _subscribe(client, token, "https://push.test/flaky")
    push_calls.failures["https://push.test/flaky"] = 500

    reservation_id = client.post(
        "/api/reservations", json=reservation_payload(), headers=auth_header(token)
    ).json()["id"]
    resp = client.patch(
        f"/api/admin/approve-reservation/{reservation_id}", headers=auth_header(admin_token)
    )
    assert resp.status_code == 200
    assert _subscription_count("https://push.test/flaky") == 1


def test_approval_email_goes_to_personal_address(client, admin_token, smtp):
    resp = client.post(
        "/api/auth/register",
        json={
            "name": "Rui",
            "email": "rui@alunos.inst.edu",
            "password": "pw",
            "personal_email": "rui@example.com",
        },
    )
    user_id = resp.json()["id"]
    client.patch(f"/api/admin/approve-user/{user_id}", headers=auth_header(admin_token))

    assert len(smtp.sent) == 1
    msg = smtp.sent[0]
    assert msg["To"] == "rui@example.com"
    assert msg["Subject"] == "Welcome to Coordena+!"


def test_rejection_email_includes_reason(client, admin_token, smtp):
    resp = client.post(
        "/api/auth/register",
        json={"name": "Bia", "email": "bia@alunos.inst.edu", "password": "pw"},
    )
    user_id = resp.json()["id"]
    client.patch(
        f"/api/admin/reject-user/{user_id}",
        json={"reason": "Dados incompletos"},
        headers=auth_header(admin_token),
    )

    msg = smtp.sent[0]
    assert msg["To"] == "bia@alunos.inst.edu"
    assert "Dados incompletos" in msg.get_content()


def test_email_failure_does_not_fail_approval(client, admin_token, smtp):
    smtp.fail = True
    resp = client.post(
        "/api/auth/register",
        json={"name": "Caio", "email": "caio@alunos.inst.edu", "password": "pw"},
    )
    user_id = resp.json()["id"]
    resp = client.patch(f"/api/admin/approve-user/{user_id}", headers=auth_header(admin_token))
    assert resp.status_code == 200
    assert resp.json()["status"] == "approved"
    assert smtp.sent == []


def test_queue_outage_does_not_fail_registration(client, monkeypatch):
    def broken_delay(*args, **kwargs):
        raise ConnectionError("broker unavailable")

    monkeypatch.setattr(tasks.dispatch_notification, "delay", broken_delay)
    resp = client.post(
        "/api/auth/register",
        json={"name": "Davi", "email": "davi@alunos.inst.edu", "password": "pw"},
    )
    assert resp.status_code == 201


def test_unknown_event_is_ignored():
    assert tasks.dispatch_notification("nothing.happened", {}) == 0


def test_push_disabled_without_vapid_key(client, admin_token, push_calls, monkeypatch):
    from coordena.config import settings

    monkeypatch.setattr(settings, "vapid_private_key", "")
    _subscribe(client, admin_token, "https://push.test/admin")
    client.post(
        "/api/auth/register",
        json={"name": "Eva", "email": "eva@alunos.inst.edu", "password": "pw"},
    )
    assert push_calls.calls == []
