import os
from celery import Celery
from celery.schedules import crontab
from celery.utils.log import get_task_logger

from .database import SessionLocal
from .services import policy_store

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")
celery_app = Celery("tasks", broker=CELERY_BROKER_URL)
celery_app.conf.task_always_eager = (
    CELERY_BROKER_URL == "memory://" or os.getenv("TESTING") == "1"
)

_logger = get_task_logger(__name__)

celery_app.conf.beat_schedule = {
    "expired-policy-cleanup": {
        "task": "careerline.tasks.cleanup_expired_policies",
        "schedule": crontab(minute=0),
    },
}


@celery_app.task(name="careerline.tasks.cleanup_expired_policies")
def cleanup_expired_policies() -> int:
    db = SessionLocal()
    try:
        removed = policy_store.cleanup_expired_policies(db)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    if removed:
        _logger.info("removed %d expired node policies", removed)
    return removed
