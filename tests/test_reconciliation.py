"""Tests for firewall reconciliation."""

from boldvpn.models import UserDevice
from boldvpn.services.devices import devices
from boldvpn.services.opnsense import FirewallPeer
from boldvpn.services.reconciliation import reconciliation


def _create(db, server, firewall, name, username="alice"):
    return devices.create(db, username, name, server.id, firewall=firewall)


class TestReconciliation:
    """Tests for ReconciliationService.run."""

    def test_in_sync_is_noop(self, db_session, server, subscriber, firewall):
        _create(db_session, server, firewall, "Laptop")

        report = reconciliation.run(db_session, firewall=firewall)

        assert report.corrective_actions == 0
        assert report.failed == 0
        assert report.aborted is None

    def test_orphaned_peer_removed(self, db_session, server, subscriber, firewall):
        _create(db_session, server, firewall, "Laptop")
        orphan_id = firewall.seed_peer("ghost-Phone", address="10.0.0.50")

        report = reconciliation.run(db_session, firewall=firewall)

        assert report.removed == 1
        assert orphan_id not in firewall.peers
        assert firewall.names() == {"alice-Laptop"}

    def test_missing_peer_created(self, db_session, server, subscriber, firewall):
        """Test an active row whose peer vanished gets it recreated from stored keys."""
        device = _create(db_session, server, firewall, "Laptop")
        firewall.peers.pop(device.firewall_peer_id)

        report = reconciliation.run(db_session, firewall=firewall)

        assert report.created == 1
        db_session.refresh(device)
        peer = firewall.peers[device.firewall_peer_id]
        assert peer.name == "alice-Laptop"
        assert peer.public_key == device.public_key
        assert peer.tunnel_address == "10.0.0.2/32"

    def test_relinked_by_name(self, db_session, server, subscriber, firewall):
        device = _create(db_session, server, firewall, "Laptop")
        firewall.peers.pop(device.firewall_peer_id)
        new_peer_id = firewall.seed_peer("alice-Laptop", address="10.0.0.2")

        report = reconciliation.run(db_session, firewall=firewall)

        assert report.relinked == 1
        assert report.created == 0
        db_session.refresh(device)
        assert device.firewall_peer_id == new_peer_id

    def test_second_run_makes_no_changes(self, db_session, server, subscriber, firewall):
        device = _create(db_session, server, firewall, "Laptop")
        firewall.peers.pop(device.firewall_peer_id)
        firewall.seed_peer("ghost-Phone")

        first = reconciliation.run(db_session, firewall=firewall)
        second = reconciliation.run(db_session, firewall=firewall)

        assert first.corrective_actions == 2
        assert second.corrective_actions == 0
        assert len(firewall.peers) == 1

    def test_aborted_when_firewall_unreachable(self, db_session, server, subscriber, firewall):
        """Test an unreachable firewall aborts before touching anything."""
        device = _create(db_session, server, firewall, "Laptop")
        peer_id = device.firewall_peer_id
        firewall.unavailable = True

        report = reconciliation.run(db_session, firewall=firewall)

        assert report.aborted is not None
        assert report.corrective_actions == 0
        db_session.refresh(device)
        assert device.firewall_peer_id == peer_id
        assert device.is_active is True

    def test_item_failure_does_not_block_others(self, db_session, server, subscriber, firewall):
        laptop = _create(db_session, server, firewall, "Laptop")
        phone = _create(db_session, server, firewall, "Phone")
        firewall.peers.clear()
        firewall.fail_add_names = {"alice-Laptop"}

        report = reconciliation.run(db_session, firewall=firewall)

        assert report.created == 1
        assert report.failed == 1
        assert report.errors[0].startswith("alice-Laptop")
        db_session.refresh(phone)
        assert phone.firewall_peer_id in firewall.peers
        assert firewall.names() == {"alice-Phone"}
        db_session.refresh(laptop)
        assert laptop.is_active is True

    def test_peer_of_removed_device_is_cleaned(self, db_session, server, subscriber, firewall):
        """Test a peer left behind by a failed removal is removed and unlinked."""
        device = _create(db_session, server, firewall, "Laptop")
        firewall.fail_remove = True
        devices.remove(db_session, "alice", device.id, firewall=firewall)
        firewall.fail_remove = False

        report = reconciliation.run(db_session, firewall=firewall)

        assert report.removed == 1
        assert firewall.peers == {}
        db_session.refresh(device)
        assert device.firewall_peer_id is None

    def test_stale_link_to_missing_peer_unlinked(self, db_session, server, subscriber, firewall):
        device = _create(db_session, server, firewall, "Laptop")
        firewall.fail_remove = True
        devices.remove(db_session, "alice", device.id, firewall=firewall)
        firewall.peers.clear()

        report = reconciliation.run(db_session, firewall=firewall)

        assert report.unlinked == 1
        db_session.refresh(device)
        assert device.firewall_peer_id is None

    def test_peer_without_id_is_skipped(self, db_session, server, subscriber, firewall):
        firewall.peers["anonymous"] = FirewallPeer(peer_id=None, name="unknown-peer")

        report = reconciliation.run(db_session, firewall=firewall)

        assert report.skipped == 1
        assert report.removed == 0

    def test_inactive_rows_never_recreated(self, db_session, server, subscriber, firewall):
        device = _create(db_session, server, firewall, "Laptop")
        devices.remove(db_session, "alice", device.id, firewall=firewall)

        report = reconciliation.run(db_session, firewall=firewall)

        assert report.created == 0
        assert firewall.peers == {}
        assert db_session.query(UserDevice).filter(UserDevice.is_active.is_(True)).count() == 0

    def test_report_as_dict(self, db_session, server, subscriber, firewall):
        firewall.seed_peer("ghost-Phone")

        result = reconciliation.run(db_session, firewall=firewall).as_dict()

        assert result["removed"] == 1
        assert result["corrective_actions"] == 1
        assert result["aborted"] is None
        assert result["errors"] == []
