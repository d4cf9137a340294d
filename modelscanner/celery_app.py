"""Celery application factory for ModelScanner.

Creates and configures the shared Celery application that delivers
file-processing jobs to the worker.

The broker and result backend are both configured to use Redis (sourced from
``settings.redis_url``).  Three queues are declared: ``default`` plus the
``low-prio`` and ``x-low-prio`` lanes.  Lanes only affect scheduling; every
lane runs the same pipeline.

Starting a worker that drains all lanes, highest priority first::

    celery -A modelscanner.celery_app worker --loglevel=info -Q default,low-prio,x-low-prio
"""

from celery import Celery
from kombu import Queue

from modelscanner import logging_config  # noqa: F401  (connects the setup_logging receiver)
from modelscanner.config import settings

#: Queue names, highest priority first.
QUEUE_DEFAULT = "default"
QUEUE_LOW_PRIO = "low-prio"
QUEUE_EXTRA_LOW_PRIO = "x-low-prio"

#: Shared Celery application instance.  Import this in task modules.
celery_app = Celery(
    "modelscanner",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["modelscanner.workers.process_worker"],
)

celery_app.conf.update(
    # Serialisation
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Routing
    task_queues=(
        Queue(QUEUE_DEFAULT),
        Queue(QUEUE_LOW_PRIO),
        Queue(QUEUE_EXTRA_LOW_PRIO),
    ),
    task_default_queue=QUEUE_DEFAULT,
    # A job holds a local file for its whole run; hand out one at a time.
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Result expiry: keep results for 24 h
    result_expires=86400,
)
