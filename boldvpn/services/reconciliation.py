"""Firewall reconciliation.

Diffs every device row against every firewall peer and repairs drift in
both directions:

* an active row without a peer gets one created (or is relinked to a peer
  carrying its ``<username>-<device>`` name);
* a peer no active row claims is removed from the firewall, and inactive
  rows still pointing at it are unlinked.

Rows are matched to peers by firewall id first and by name second. Every
corrective action is committed on its own and failures are isolated per
item, so one bad peer never blocks the rest of the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from boldvpn.models.vpn import UserDevice
from boldvpn.services.locks import reconciliation_lock
from boldvpn.services.opnsense import (
    FirewallPeer,
    OPNsenseClient,
    OPNsenseError,
    get_firewall_client,
)
from boldvpn.services.wireguard_crypto import decrypt_secret

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    created: int = 0
    relinked: int = 0
    removed: int = 0
    unlinked: int = 0
    skipped: int = 0
    failed: int = 0
    aborted: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def corrective_actions(self) -> int:
        return self.created + self.relinked + self.removed + self.unlinked

    def as_dict(self) -> dict:
        return {
            "created": self.created,
            "relinked": self.relinked,
            "removed": self.removed,
            "unlinked": self.unlinked,
            "skipped": self.skipped,
            "failed": self.failed,
            "corrective_actions": self.corrective_actions,
            "aborted": self.aborted,
            "errors": list(self.errors),
        }


class ReconciliationService:
    @staticmethod
    def run(db: Session, firewall: OPNsenseClient | None = None) -> ReconciliationReport:
        """Run one reconciliation pass.

        If the firewall cannot be listed the pass is aborted before any
        change, since an empty answer would otherwise read as "every peer
        is missing".
        """
        firewall = firewall or get_firewall_client()
        report = ReconciliationReport()

        with reconciliation_lock(db):
            logger.info("Starting firewall peer reconciliation")
            try:
                peers = firewall.fetch_peers()
            except OPNsenseError as e:
                logger.error("Reconciliation aborted, firewall peers unavailable: %s", e)
                report.aborted = str(e)
                return report

            rows = db.query(UserDevice).order_by(UserDevice.created_at).all()
            claimed = ReconciliationService._sync_rows_to_firewall(db, firewall, rows, peers, report)
            ReconciliationService._remove_orphaned_peers(db, firewall, rows, peers, claimed, report)

        logger.info(
            "Reconciliation finished: created=%d relinked=%d removed=%d unlinked=%d failed=%d",
            report.created,
            report.relinked,
            report.removed,
            report.unlinked,
            report.failed,
        )
        return report

    @staticmethod
    def _sync_rows_to_firewall(
        db: Session,
        firewall: OPNsenseClient,
        rows: list[UserDevice],
        peers: list[FirewallPeer],
        report: ReconciliationReport,
    ) -> set[str]:
        peers_by_id = {peer.peer_id: peer for peer in peers if peer.peer_id}
        peers_by_name: dict[str, list[FirewallPeer]] = {}
        for peer in peers:
            if peer.name and peer.peer_id:
                peers_by_name.setdefault(peer.name, []).append(peer)

        claimed: set[str] = set()
        pending: list[UserDevice] = []
        for row in rows:
            if not row.is_active:
                continue
            if row.firewall_peer_id and row.firewall_peer_id in peers_by_id:
                claimed.add(row.firewall_peer_id)
            else:
                pending.append(row)

        for row in pending:
            peer_name = row.peer_name
            try:
                candidate = next(
                    (peer for peer in peers_by_name.get(peer_name, []) if peer.peer_id not in claimed),
                    None,
                )
                if candidate:
                    logger.info(
                        "Relinking %s from peer %s to %s",
                        peer_name,
                        row.firewall_peer_id,
                        candidate.peer_id,
                    )
                    row.firewall_peer_id = candidate.peer_id
                    db.commit()
                    claimed.add(candidate.peer_id)
                    report.relinked += 1
                    continue

                logger.info("Creating missing firewall peer for %s", peer_name)
                preshared_key = decrypt_secret(row.preshared_key) if row.preshared_key else None
                peer_id = firewall.add_peer(
                    peer_name, row.public_key, row.assigned_ip, preshared_key
                )
                claimed.add(peer_id)
                row.firewall_peer_id = peer_id
                db.commit()
                report.created += 1
            except (OPNsenseError, SQLAlchemyError, ValueError) as e:
                db.rollback()
                logger.exception("Failed to reconcile device %s", peer_name)
                report.failed += 1
                report.errors.append(f"{peer_name}: {e}")
        return claimed

    @staticmethod
    def _remove_orphaned_peers(
        db: Session,
        firewall: OPNsenseClient,
        rows: list[UserDevice],
        peers: list[FirewallPeer],
        claimed: set[str],
        report: ReconciliationReport,
    ) -> None:
        live_ids = {peer.peer_id for peer in peers if peer.peer_id}
        inactive_links: dict[str, list[UserDevice]] = {}
        for row in rows:
            if not row.is_active and row.firewall_peer_id:
                inactive_links.setdefault(row.firewall_peer_id, []).append(row)

        for peer in peers:
            if peer.peer_id in claimed:
                continue
            if not peer.peer_id:
                logger.warning("Cannot remove firewall peer %r: no id reported", peer.name)
                report.skipped += 1
                continue
            try:
                logger.info("Removing orphaned firewall peer %s (%s)", peer.name, peer.peer_id)
                firewall.remove_peer(peer.peer_id)
                report.removed += 1
                for row in inactive_links.pop(peer.peer_id, []):
                    row.firewall_peer_id = None
                db.commit()
            except (OPNsenseError, SQLAlchemyError) as e:
                db.rollback()
                logger.exception("Failed to remove orphaned peer %s", peer.peer_id)
                report.failed += 1
                report.errors.append(f"{peer.name or peer.peer_id}: {e}")

        # Inactive rows pointing at peers that no longer exist
        for peer_id, stale_rows in inactive_links.items():
            if peer_id in live_ids:
                continue
            try:
                for row in stale_rows:
                    row.firewall_peer_id = None
                db.commit()
                report.unlinked += len(stale_rows)
            except SQLAlchemyError as e:
                db.rollback()
                logger.exception("Failed to clear stale peer link %s", peer_id)
                report.failed += 1
                report.errors.append(f"{peer_id}: {e}")


# Service instances for module-level access
reconciliation = ReconciliationService()
