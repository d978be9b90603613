"""Firewall reconciliation task.

Scheduled daily by Celery beat and queued once whenever a worker starts.
"""

import logging

from boldvpn.celery_app import celery_app
from boldvpn.db import SessionLocal
from boldvpn.services.reconciliation import reconciliation

logger = logging.getLogger(__name__)


@celery_app.task(name="boldvpn.tasks.reconciliation.reconcile_firewall_peers")
def reconcile_firewall_peers() -> dict:
    """Run one reconciliation pass and return its report."""
    session = SessionLocal()
    try:
        report = reconciliation.run(session)
        if report.aborted:
            logger.warning("Firewall reconciliation aborted: %s", report.aborted)
        return report.as_dict()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
