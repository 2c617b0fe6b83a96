#!/usr/bin/env python3
"""
Celery worker for order, payment and refund notifications.

    python celery_worker.py

CELERY_LOGLEVEL and CELERY_CONCURRENCY tune the worker.
"""

import os
from dotenv import load_dotenv

load_dotenv()

if __name__ == "__main__":
    from core.celery import NOTIFICATIONS_QUEUE, celery_app
    from core.logging import configure_logging

    configure_logging()
    celery_app.worker_main([
        "worker",
        f"--loglevel={os.getenv('CELERY_LOGLEVEL', 'info')}",
        f"--concurrency={os.getenv('CELERY_CONCURRENCY', '4')}",
        "--queues",
        NOTIFICATIONS_QUEUE,
        "--without-gossip",
        "--without-mingle",
    ])
