"""Outbound events emitted after workflow state changes.

The service layer only publishes events; resolving recipients and delivering
push/email happens in :mod:`coordena.tasks` on the Celery worker.
"""

import logging
from typing import Dict

from prometheus_client import Counter

logger = logging.getLogger(__name__)

USER_REGISTERED = "user.registered"
USER_APPROVED = "user.approved"
USER_REJECTED = "user.rejected"
RESERVATION_CREATED = "reservation.created"
RESERVATION_APPROVED = "reservation.approved"
RESERVATION_REJECTED = "reservation.rejected"

EVENT_PUBLISH_FAILURES = Counter(
    "event_publish_failures_total",
    "Events that could not be handed to the task queue",
    ["event_type"],
)


def publish_event(event_type: str, payload: Dict[str, object]) -> None:
    """Enqueue an event for asynchronous delivery.

    Never raises: a broker outage must not fail the state change that
    triggered the event.
    """
    from .tasks import dispatch_notification  # tasks imports the event names above

    try:
        dispatch_notification.delay(event_type, payload)
        logger.info("published event %s %s", event_type, payload)
    except Exception:
        EVENT_PUBLISH_FAILURES.labels(event_type=event_type).inc()
        logger.exception("failed to publish event %s", event_type)
