"""Celery tasks turning workflow events into push and email notifications."""

import logging
from typing import Callable, Dict, List

from sqlalchemy.orm import Session

from . import events
from .database import Reservation, SessionLocal
from .models.user import User
from .notifications import push_to_users, send_email
from .worker import celery_app


logger = logging.getLogger(__name__)

ADMIN_PAGE_URL = "/pages/admin.html"
RESERVATIONS_PAGE_URL = "/pages/reservations.html"


def _approved_admin_ids(session: Session) -> List[int]:
    rows = (
        session.query(User.id)
        .filter(User.role == "admin", User.status == "approved")
        .all()
    )
    return [row[0] for row in rows]


def _notify_registration(session: Session, payload: Dict[str, object]) -> int:
    message = {
        "title": "New registration request",
        "body": f"{payload.get('name')} requested access.",
        "data": {"url": ADMIN_PAGE_URL},
    }
    return push_to_users(session, _approved_admin_ids(session), message)


def _notify_user_status(session: Session, payload: Dict[str, object]) -> int:
    user = session.get(User, payload["user_id"])
    if user is None:
        logger.info("user %s vanished before notification", payload["user_id"])
        return 0

    if payload.get("status") == "approved":
        subject = "Welcome to Coordena+!"
        line = "Your registration has been approved."
        body = f"Hello, {user.name}!\n\n{line}\n\n- Coordena+"
    else:
        subject = "Coordena+ registration rejected"
        line = "Your registration has been rejected."
        reason = payload.get("reason") or "not informed"
        body = f"Hello, {user.name}!\n\n{line}\nReason: {reason}\n\n- Coordena+"
    send_email(user.contact_email, subject, body)
    return push_to_users(
        session,
        [user.id],
        {"title": subject, "body": line, "data": {"url": "/"}},
    )


def _notify_reservation_created(session: Session, payload: Dict[str, object]) -> int:
    message = {
        "title": "New reservation request",
        "body": (
            f"{payload.get('responsible')} requested {payload.get('resource')} "
            f"on {payload.get('date')}."
        ),
        "data": {"url": ADMIN_PAGE_URL},
    }
    return push_to_users(session, _approved_admin_ids(session), message)


def _notify_reservation_status(session: Session, payload: Dict[str, object]) -> int:
    reservation = session.get(Reservation, payload["reservation_id"])
    if reservation is None:
        logger.info("reservation %s vanished before notification", payload["reservation_id"])
        return 0
    owner = session.get(User, reservation.owner_id)
    if owner is None:
        return 0

    summary = (
        f"Your reservation for {reservation.resource} on {reservation.date.isoformat()} "
        f"at {reservation.start_time.strftime('%H:%M')}"
    )
    if payload.get("status") == "approved":
        subject = f"Reservation approved for {reservation.date.isoformat()}"
        line = f"{summary} has been approved."
        body = f"Hello, {owner.name}!\n\n{line}\n\n- Coordena+"
    else:
        subject = f"Reservation rejected for {reservation.date.isoformat()}"
        line = f"{summary} has been rejected."
        reason = payload.get("reason") or "not informed"
        body = f"Hello, {owner.name}!\n\n{line}\nReason: {reason}\n\n- Coordena+"
    send_email(owner.contact_email, subject, body)
    return push_to_users(
        session,
        [owner.id],
        {"title": subject, "body": line, "data": {"url": RESERVATIONS_PAGE_URL}},
    )


HANDLERS: Dict[str, Callable[[Session, Dict[str, object]], int]] = {
    events.USER_REGISTERED: _notify_registration,
    events.USER_APPROVED: _notify_user_status,
    events.USER_REJECTED: _notify_user_status,
    events.RESERVATION_CREATED: _notify_reservation_created,
    events.RESERVATION_APPROVED: _notify_reservation_status,
    events.RESERVATION_REJECTED: _notify_reservation_status,
}


@celery_app.task(name="coordena.tasks.dispatch_notification")
def dispatch_notification(event_type: str, payload: Dict[str, object]) -> int:
    """Deliver the notifications for one event.

    Returns the number of push messages delivered. Failures are logged and
    never retried.
    """
    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.warning("no notification handler for event %s", event_type)
        return 0

    session = SessionLocal()
    try:
        return handler(session, payload)
    except Exception:
        session.rollback()
        logger.exception("notification for %s failed", event_type)
        return 0
    finally:
        session.close()
