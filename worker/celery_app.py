from celery import Celery
from swapmarket.core.config import settings

celery = Celery(
    "swap-worker",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=["worker.tasks"],
)

celery.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "worker.tasks.close_due_auctions": {"queue": "auctions"},
        "worker.tasks.close_auction": {"queue": "auctions"},
    },
    beat_schedule={
        "close-due-auctions": {
            "task": "worker.tasks.close_due_auctions",
            "schedule": float(settings.auction_sweep_seconds),
        },
    },
)
