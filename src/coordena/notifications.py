"""Best-effort delivery of push and email notifications.

Nothing in this module raises on delivery failure. Push endpoints that the
push service reports as gone (HTTP 404/410) are removed so later
notifications skip them.
"""

from __future__ import annotations

import json
import logging
import smtplib
from email.message import EmailMessage
from typing import Dict, Iterable

from prometheus_client import Counter
from pywebpush import WebPushException, webpush
from sqlalchemy.orm import Session

from .config import settings
from .database import PushSubscription

logger = logging.getLogger(__name__)

GONE_STATUS_CODES = (404, 410)

NOTIFICATION_COUNTER = Counter(
    "notifications_total",
    "Notification delivery attempts",
    ["channel", "outcome"],
)


def send_push(subscription: PushSubscription, payload: Dict[str, object]) -> None:
    """Deliver one Web Push message. Raises :class:`WebPushException` on failure."""
    webpush(
        subscription_info={
            "endpoint": subscription.endpoint,
            "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
        },
        data=json.dumps(payload),
        vapid_private_key=settings.vapid_private_key,
        # webpush adds aud/exp to the claims dict, so build a new one each call
        vapid_claims={"sub": settings.vapid_subject},
    )


def push_to_users(session: Session, user_ids: Iterable[int], payload: Dict[str, object]) -> int:
    """Push ``payload`` to every subscription owned by ``user_ids``.

    Returns the number of successful deliveries.
    """
    user_ids = list(user_ids)
    if not user_ids:
        return 0
    if not settings.vapid_private_key:
        logger.debug("push disabled, no VAPID private key configured")
        return 0

    subscriptions = (
        session.query(PushSubscription)
        .filter(PushSubscription.user_id.in_(user_ids))
        .all()
    )
    delivered = 0
    removed = 0
    for subscription in subscriptions:
        try:
            send_push(subscription, payload)
        except WebPushException as exc:
            status = getattr(exc.response, "status_code", None)
            if status in GONE_STATUS_CODES:
                session.delete(subscription)
                removed += 1
                NOTIFICATION_COUNTER.labels(channel="push", outcome="gone").inc()
                logger.info(
                    "removed expired push subscription id=%s status=%s",
                    subscription.id,
                    status,
                )
            else:
                NOTIFICATION_COUNTER.labels(channel="push", outcome="failed").inc()
                logger.warning(
                    "push delivery failed id=%s status=%s: %s",
                    subscription.id,
                    status,
                    exc,
                )
        except Exception:
            NOTIFICATION_COUNTER.labels(channel="push", outcome="failed").inc()
            logger.exception("push delivery failed id=%s", subscription.id)
        else:
            delivered += 1
            NOTIFICATION_COUNTER.labels(channel="push", outcome="sent").inc()

    if removed:
        session.commit()
    logger.info(
        "push delivered=%d removed=%d of %d subscriptions",
        delivered,
        removed,
        len(subscriptions),
    )
    return delivered


def send_email(to_email: str, subject: str, body: str) -> bool:
    """Send a plain-text email. Returns ``False`` when skipped or failed."""
    if not settings.smtp_host:
        logger.debug("email disabled, no SMTP host configured")
        return False

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.email_from
    msg["To"] = to_email
    msg.set_content(body)

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as smtp:
            if settings.smtp_use_tls:
                smtp.starttls()
            if settings.smtp_user:
                smtp.login(settings.smtp_user, settings.smtp_password)
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError):
        NOTIFICATION_COUNTER.labels(channel="email", outcome="failed").inc()
        logger.exception("failed to send email to %s", to_email)
        return False

    NOTIFICATION_COUNTER.labels(channel="email", outcome="sent").inc()
    logger.info("email sent to %s subject=%r", to_email, subject)
    return True
