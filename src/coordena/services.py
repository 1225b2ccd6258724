"""Service layer for users, reservations and the approval workflow."""

import logging
from datetime import date, time
from typing import Dict, List, Optional, Tuple

from fastapi import HTTPException
from prometheus_client import Counter
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import events
from .auth import BCRYPT_MAX_BYTES, hash_password, verify_password
from .config import settings
from .database import SessionLocal, PushSubscription, Reservation
from .errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    CoordenaError,
    NotFoundError,
    ValidationError,
)
from .models.user import User
from .rules import (
    RESERVATION_MANAGERS,
    RESERVATION_STATUSES,
    USER_STATUSES,
    infer_role,
    normalize_email,
    windows_overlap,
)


logger = logging.getLogger(__name__)

REGISTRATION_COUNTER = Counter(
    "user_registrations_total", "Total user registrations", ["role"]
)
LOGIN_COUNTER = Counter(
    "login_attempts_total", "Login attempts by outcome", ["outcome"]
)
TRANSITION_COUNTER = Counter(
    "status_transitions_total", "Approval workflow transitions", ["entity", "status"]
)
RESERVATION_COUNTER = Counter(
    "reservations_created_total", "Total reservations created"
)

DECISIONS = ("approved", "rejected")
REQUIRED_RESERVATION_FIELDS = ("title", "resource", "type", "department")
OPTIONAL_RESERVATION_FIELDS = ("description", "room")
SCHEDULE_FIELDS = ("date", "start_time", "end_time", "resource")


def _handle_service_error(session: Session, exc: Exception) -> None:
    """Rollback the transaction and translate unexpected errors.

    Domain errors pass through untouched; everything else is logged and
    reported with a generic message.
    """
    session.rollback()
    if isinstance(exc, (CoordenaError, HTTPException)):
        raise exc
    logger.exception("service layer error", exc_info=exc)
    if isinstance(exc, IntegrityError):
        raise ConflictError("Record conflicts with existing data") from exc
    if isinstance(exc, SQLAlchemyError):
        raise HTTPException(status_code=500, detail="Database error") from exc
    raise HTTPException(status_code=500, detail="Internal server error") from exc


def _require_role(actor: User, roles: Tuple[str, ...], message: str) -> None:
    if actor.role not in roles:
        raise AuthorizationError(message)


def _require_text(field: str, value: Optional[str]) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{field} is required")
    return value


def _validate_window(start_time: time, end_time: time) -> None:
    if start_time >= end_time:
        raise ValidationError("start_time must be before end_time")


def _can_manage(actor: User, reservation: Reservation) -> bool:
    return actor.role in RESERVATION_MANAGERS or reservation.owner_id == actor.id


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def register_user(
    name: str,
    email: str,
    password: str,
    registration: Optional[str] = None,
    personal_email: Optional[str] = None,
) -> User:
    """Create a pending account for an institutional email.

    The role comes from the email sub-domain; callers cannot choose it.
    """
    name = _require_text("name", name)
    email = normalize_email(email)
    if not email or not password:
        raise ValidationError("name, email and password are required")
    if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValidationError(f"password must be at most {BCRYPT_MAX_BYTES} bytes")

    role = infer_role(
        email,
        settings.institution_domain,
        settings.student_subdomain,
        settings.professor_subdomain,
    )
    if role is None:
        raise ValidationError(
            "Use a valid institutional email "
            f"(@{settings.student_subdomain}.{settings.institution_domain} or "
            f"@{settings.professor_subdomain}.{settings.institution_domain})"
        )

    logger.info("register user email=%s role=%s", email, role)
    session: Session = SessionLocal()
    try:
        if session.query(User).filter(User.email == email).first():
            raise ConflictError("Email already registered")
        user = User(
            name=name,
            email=email,
            registration=(registration or "").strip() or None,
            personal_email=normalize_email(personal_email) or None,
            password_hash=hash_password(password),
            role=role,
            status="pending",
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        REGISTRATION_COUNTER.labels(role=role).inc()
        logger.info("registered pending user id=%s email=%s", user.id, email)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()

    events.publish_event(events.USER_REGISTERED, {"user_id": user.id, "name": user.name})
    return user


def authenticate_user(email: str, password: str) -> User:
    """Check credentials and approval status, returning the user on success."""

    email = normalize_email(email)
    if not email or not password:
        raise ValidationError("email and password are required")

    session: Session = SessionLocal()
    try:
        user = session.query(User).filter(User.email == email).first()
        if user is None or not verify_password(password, user.password_hash):
            LOGIN_COUNTER.labels(outcome="invalid").inc()
            raise AuthenticationError("Invalid credentials")
        if not user.is_admin and user.status != "approved":
            LOGIN_COUNTER.labels(outcome="not_approved").inc()
            raise AuthorizationError("Your account has not been approved by an administrator")
        LOGIN_COUNTER.labels(outcome="success").inc()
        logger.info("login user id=%s role=%s", user.id, user.role)
        return user
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def seed_admin() -> User:
    """Create the configured administrator once; later calls are no-ops."""

    email = normalize_email(settings.admin_email)
    session: Session = SessionLocal()
    try:
        admin = session.query(User).filter(User.email == email).first()
        if admin is not None:
            logger.info("admin %s already exists, not recreated", email)
            return admin
        admin = User(
            name=settings.admin_name,
            email=email,
            password_hash=hash_password(settings.admin_password),
            role="admin",
            status="approved",
        )
        session.add(admin)
        session.commit()
        session.refresh(admin)
        logger.info("seeded admin user id=%s email=%s", admin.id, email)
        return admin
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def list_users(actor: User, status: Optional[str] = None) -> List[User]:
    """Return users ordered by registration time, optionally by status."""

    _require_role(actor, ("admin",), "Only administrators can list users")
    if status and status not in USER_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(USER_STATUSES)}")

    session: Session = SessionLocal()
    try:
        query = session.query(User)
        if status:
            query = query.filter(User.status == status)
        return query.order_by(User.created_at, User.id).all()
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def set_user_status(
    actor: User, user_id: int, status: str, reason: Optional[str] = None
) -> User:
    """Approve or reject a user account.

    Re-applying the current status simply overwrites it. The affected user is
    notified after the change is committed.
    """
    _require_role(actor, ("admin",), "Only administrators can approve or reject users")
    if status not in DECISIONS:
        raise ValidationError("status must be approved or rejected")

    session: Session = SessionLocal()
    try:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        user.status = status
        user.rejection_reason = reason if status == "rejected" else None
        session.commit()
        session.refresh(user)
        TRANSITION_COUNTER.labels(entity="user", status=status).inc()
        logger.info("user id=%s %s by admin id=%s", user.id, status, actor.id)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()

    event = events.USER_APPROVED if status == "approved" else events.USER_REJECTED
    events.publish_event(event, {"user_id": user.id, "status": status, "reason": reason})
    return user


# ---------------------------------------------------------------------------
# Reservations
# ---------------------------------------------------------------------------


def create_reservation(
    actor: User,
    title: str,
    date: date,
    start_time: time,
    end_time: time,
    resource: str,
    reservation_type: str,
    department: str,
    description: str = "",
    room: str = "",
) -> Reservation:
    """Record a pending reservation owned by ``actor``."""

    _require_role(
        actor, RESERVATION_MANAGERS, "Only professors and administrators can create reservations"
    )
    _validate_window(start_time, end_time)
    logger.info(
        "create reservation user=%s resource=%s date=%s %s-%s",
        actor.id,
        resource,
        date,
        start_time,
        end_time,
    )
    session: Session = SessionLocal()
    try:
        reservation = Reservation(
            title=_require_text("title", title),
            description=(description or "").strip(),
            date=date,
            start_time=start_time,
            end_time=end_time,
            resource=_require_text("resource", resource),
            type=_require_text("type", reservation_type),
            room=(room or "").strip(),
            department=_require_text("department", department),
            owner_id=actor.id,
            responsible=actor.name,
            status="pending",
        )
        session.add(reservation)
        session.commit()
        session.refresh(reservation)
        RESERVATION_COUNTER.inc()
        logger.info("created reservation id=%s user=%s", reservation.id, actor.id)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()

    events.publish_event(
        events.RESERVATION_CREATED,
        {
            "reservation_id": reservation.id,
            "responsible": reservation.responsible,
            "resource": reservation.resource,
            "date": reservation.date.isoformat(),
        },
    )
    return reservation


def list_reservations(
    actor: User,
    status: Optional[str] = None,
    resource: Optional[str] = None,
    mine: bool = False,
    skip: int = 0,
    limit: Optional[int] = 50,
) -> Tuple[List[Reservation], int]:
    """Retrieve paginated reservations visible to ``actor``.

    A ``limit`` of ``None`` returns every matching record.

    Professors and admins see every reservation unless ``mine`` is set;
    everyone else only sees their own.
    """
    if status and status not in RESERVATION_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(RESERVATION_STATUSES)}")

    session: Session = SessionLocal()
    try:
        query = session.query(Reservation)
        if mine or actor.role not in RESERVATION_MANAGERS:
            query = query.filter(Reservation.owner_id == actor.id)
        if status:
            query = query.filter(Reservation.status == status)
        if resource:
            query = query.filter(Reservation.resource == resource)
        total = query.count()
        records = (
            query.order_by(Reservation.date, Reservation.start_time, Reservation.id)
            .offset(skip)
            .limit(limit)
            .all()
        )
        return records, total
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def list_pending_reservations(actor: User) -> List[Reservation]:
    _require_role(
        actor, RESERVATION_MANAGERS, "Only professors and administrators can review reservations"
    )
    session: Session = SessionLocal()
    try:
        return (
            session.query(Reservation)
            .filter(Reservation.status == "pending")
            .order_by(Reservation.date, Reservation.start_time, Reservation.id)
            .all()
        )
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def get_reservation(actor: User, reservation_id: int) -> Reservation:
    session: Session = SessionLocal()
    try:
        reservation = session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found")
        if not _can_manage(actor, reservation):
            raise AuthorizationError("You cannot access this reservation")
        return reservation
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def update_reservation(
    actor: User, reservation_id: int, changes: Dict[str, object]
) -> Reservation:
    """Apply field changes to a reservation.

    Status is not editable here. Moving an approved reservation to another
    date, time or resource sends it back to pending review.
    """
    session: Session = SessionLocal()
    try:
        reservation = session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found")
        if not _can_manage(actor, reservation):
            raise AuthorizationError("You cannot modify this reservation")

        rescheduled = False
        for field, value in changes.items():
            if field in REQUIRED_RESERVATION_FIELDS:
                value = _require_text(field, value)
            elif field in OPTIONAL_RESERVATION_FIELDS:
                value = (value or "").strip()
            elif field in ("date", "start_time", "end_time"):
                if value is None:
                    raise ValidationError(f"{field} is required")
            else:
                continue
            if field in SCHEDULE_FIELDS and getattr(reservation, field) != value:
                rescheduled = True
            setattr(reservation, field, value)

        _validate_window(reservation.start_time, reservation.end_time)
        if rescheduled and reservation.status == "approved":
            reservation.status = "pending"
            logger.info("reservation id=%s rescheduled, back to pending", reservation.id)

        session.commit()
        session.refresh(reservation)
        logger.info("updated reservation id=%s by user=%s", reservation.id, actor.id)
        return reservation
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def delete_reservation(actor: User, reservation_id: int) -> None:
    session: Session = SessionLocal()
    try:
        reservation = session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found")
        if not _can_manage(actor, reservation):
            raise AuthorizationError("You cannot delete this reservation")
        session.delete(reservation)
        session.commit()
        logger.info("deleted reservation id=%s by user=%s", reservation_id, actor.id)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def find_conflict(session: Session, reservation: Reservation) -> Optional[Reservation]:
    """Return an approved reservation overlapping ``reservation``, if any."""

    candidates = (
        session.query(Reservation)
        .filter(
            Reservation.id != reservation.id,
            Reservation.resource == reservation.resource,
            Reservation.date == reservation.date,
            Reservation.status == "approved",
        )
        .all()
    )
    for other in candidates:
        if windows_overlap(
            reservation.start_time, reservation.end_time, other.start_time, other.end_time
        ):
            return other
    return None


def set_reservation_status(
    actor: User, reservation_id: int, status: str, reason: Optional[str] = None
) -> Reservation:
    """Approve or reject a reservation.

    Approval is refused while another approved reservation holds an
    overlapping window on the same resource.
    """
    _require_role(
        actor,
        RESERVATION_MANAGERS,
        "Only professors and administrators can approve or reject reservations",
    )
    if status not in DECISIONS:
        raise ValidationError("status must be approved or rejected")

    session: Session = SessionLocal()
    try:
        reservation = session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found")
        if status == "approved":
            conflict = find_conflict(session, reservation)
            if conflict is not None:
                raise ConflictError(
                    f"{reservation.resource} is already booked from "
                    f"{conflict.start_time.strftime('%H:%M')} to "
                    f"{conflict.end_time.strftime('%H:%M')} on {conflict.date.isoformat()}"
                )
        reservation.status = status
        reservation.rejection_reason = reason if status == "rejected" else None
        session.commit()
        session.refresh(reservation)
        TRANSITION_COUNTER.labels(entity="reservation", status=status).inc()
        logger.info(
            "reservation id=%s %s by user=%s", reservation.id, status, actor.id
        )
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()

    event = events.RESERVATION_APPROVED if status == "approved" else events.RESERVATION_REJECTED
    events.publish_event(
        event, {"reservation_id": reservation.id, "status": status, "reason": reason}
    )
    return reservation


# ---------------------------------------------------------------------------
# Push subscriptions
# ---------------------------------------------------------------------------


def save_push_subscription(
    actor: User, endpoint: str, p256dh: str, auth: str
) -> PushSubscription:
    """Store a browser push subscription, re-assigning a known endpoint."""

    if not endpoint or not p256dh or not auth:
        raise ValidationError("Invalid subscription")

    session: Session = SessionLocal()
    try:
        subscription = (
            session.query(PushSubscription)
            .filter(PushSubscription.endpoint == endpoint)
            .first()
        )
        if subscription is None:
            subscription = PushSubscription(
                endpoint=endpoint, p256dh=p256dh, auth=auth, user_id=actor.id
            )
            session.add(subscription)
        else:
            subscription.user_id = actor.id
            subscription.p256dh = p256dh
            subscription.auth = auth
        session.commit()
        session.refresh(subscription)
        logger.info("saved push subscription id=%s user=%s", subscription.id, actor.id)
        return subscription
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def delete_push_subscription(actor: User, endpoint: str) -> int:
    """Remove the caller's subscription for ``endpoint``; returns rows deleted."""

    if not endpoint:
        raise ValidationError("endpoint is required")

    session: Session = SessionLocal()
    try:
        deleted = (
            session.query(PushSubscription)
            .filter(
                PushSubscription.endpoint == endpoint,
                PushSubscription.user_id == actor.id,
            )
            .delete()
        )
        session.commit()
        logger.info("removed %d push subscription(s) for user=%s", deleted, actor.id)
        return deleted
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()
