from celery import Celery
from kombu import Queue

from core.config import settings

NOTIFICATIONS_QUEUE = "notifications"

celery_app = Celery(
    "checkout_service",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["tasks.notification_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_queues=(Queue(NOTIFICATIONS_QUEUE),),
    task_default_queue=NOTIFICATIONS_QUEUE,
    task_routes={"tasks.notification_tasks.*": {"queue": NOTIFICATIONS_QUEUE}},
    # A notification is only acknowledged once sent, so a crashed worker does not lose it
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    result_expires=24 * 60 * 60,
    # Tests run notification tasks in-process; the task itself skips SMTP when TESTING
    task_always_eager=settings.TESTING,
    task_eager_propagates=False,
    task_store_eager_result=False,
)
