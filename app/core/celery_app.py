from __future__ import annotations

from celery import Celery

from app.core.config import settings

celery = Celery(
    "project_store",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.tasks.notify_tasks"],
)

# Owner notices are fire-and-forget; nobody waits on their results.
celery.conf.update(
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
    task_eager_propagates=True,
    task_default_queue="default",
    task_routes={"app.tasks.notify_tasks.*": {"queue": "notify"}},
    task_ignore_result=True,
    task_serializer="json",
    accept_content=["json"],
    task_acks_late=True,
)
