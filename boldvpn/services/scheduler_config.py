"""Celery configuration and beat schedule built from settings."""

from celery.schedules import crontab

from boldvpn.config import settings

RECONCILIATION_TASK = "boldvpn.tasks.reconciliation.reconcile_firewall_peers"


def get_celery_config() -> dict:
    return {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend,
        "timezone": settings.celery_timezone,
    }


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    if settings.reconciliation_enabled:
        schedule["firewall_reconciliation"] = {
            "task": RECONCILIATION_TASK,
            "schedule": crontab(
                hour=settings.reconciliation_hour,
                minute=settings.reconciliation_minute,
            ),
        }
    return schedule
