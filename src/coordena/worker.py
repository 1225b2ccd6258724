"""Celery application delivering notifications outside the request cycle."""

from celery import Celery

from .config import settings


celery_app = Celery(
    "coordena",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["coordena.tasks"],
)

celery_app.conf.task_always_eager = settings.celery_task_always_eager
celery_app.conf.task_ignore_result = True
celery_app.conf.timezone = "UTC"
