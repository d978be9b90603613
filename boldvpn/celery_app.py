import logging

from celery import Celery
from celery.signals import worker_ready

from boldvpn.config import settings
from boldvpn.logging import configure_logging
from boldvpn.services.scheduler_config import (
    RECONCILIATION_TASK,
    build_beat_schedule,
    get_celery_config,
)

logger = logging.getLogger(__name__)

configure_logging()

celery_app = Celery("boldvpn")
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.autodiscover_tasks(["boldvpn.tasks"])


@worker_ready.connect
def _reconcile_on_startup(sender=None, **kwargs):
    """Queue one reconciliation pass when a worker comes up."""
    if not (settings.reconciliation_enabled and settings.reconciliation_on_startup):
        return
    logger.info("Queueing startup firewall reconciliation")
    celery_app.send_task(RECONCILIATION_TASK)
