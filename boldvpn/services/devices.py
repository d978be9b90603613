"""Device provisioning.

Creating a device touches two stores that fail independently: the database
row and the firewall peer. The row is inserted inside a transaction, the
firewall peer is created while that transaction is still open, and the
transaction is rolled back if the firewall does not confirm. A row never
survives without its peer; the reverse (peer created, final commit lost) is
compensated once and otherwise left to reconciliation.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from boldvpn.config import settings
from boldvpn.models.vpn import UserDevice, VpnServer, VpnServerStatus
from boldvpn.services import entitlements, ip_allocation
from boldvpn.services.common import coerce_uuid
from boldvpn.services.device_config import (
    config_detail,
    config_filename,
    render_config,
    render_qr_png,
)
from boldvpn.services.locks import acquire_provisioning_lock, server_lock, user_lock
from boldvpn.services.opnsense import (
    FirewallPeer,
    OPNsenseClient,
    OPNsenseError,
    SubnetMismatch,
    get_firewall_client,
)
from boldvpn.services.provisioning_errors import (
    DeviceLimitReached,
    DeviceNotFound,
    DuplicateDeviceName,
    FirewallRejected,
    ProvisioningError,
    ServerMisconfigured,
    ServerUnavailable,
    SubnetConfigMismatch,
)
from boldvpn.services.wireguard_crypto import (
    decrypt_secret,
    encrypt_secret,
    generate_device_keys,
)

logger = logging.getLogger(__name__)


def _active_devices_query(db: Session, username: str):
    return (
        db.query(UserDevice)
        .filter(UserDevice.username == username)
        .filter(UserDevice.is_active.is_(True))
    )


def _presync_user_devices(
    db: Session, firewall: OPNsenseClient, username: str
) -> list[FirewallPeer]:
    """Align the user's active rows with the peers the firewall actually has.

    Returns the user's firewall peers that no active row claims.
    """
    try:
        peers = firewall.find_peers_by_username(username)
    except OPNsenseError as e:
        logger.warning("Skipping peer pre-sync for %s: firewall unreachable (%s)", username, e)
        return []

    rows = _active_devices_query(db, username).all()
    if not peers:
        for row in rows:
            row.is_active = False
        if rows:
            logger.warning(
                "No firewall peers found for %s; deactivated %d device(s)", username, len(rows)
            )
        db.flush()
        return []

    by_id = {peer.peer_id: peer for peer in peers if peer.peer_id}
    claimed: set[str] = set()
    unmatched: list[UserDevice] = []
    for row in rows:
        if row.firewall_peer_id and row.firewall_peer_id in by_id:
            claimed.add(row.firewall_peer_id)
        else:
            unmatched.append(row)

    for row in unmatched:
        candidate = next(
            (
                peer
                for peer in peers
                if peer.name == row.peer_name and peer.peer_id and peer.peer_id not in claimed
            ),
            None,
        )
        if candidate:
            logger.info(
                "Relinking device %s from peer %s to %s",
                row.id,
                row.firewall_peer_id,
                candidate.peer_id,
            )
            row.firewall_peer_id = candidate.peer_id
            claimed.add(candidate.peer_id)
        else:
            logger.warning(
                "Device %s (%s) has no firewall peer; deactivating", row.id, row.peer_name
            )
            row.is_active = False

    db.flush()
    return [peer for peer in peers if peer.peer_id not in claimed]


def _release_device_name(
    db: Session,
    firewall: OPNsenseClient,
    username: str,
    device_name: str,
    unclaimed_peers: list[FirewallPeer],
) -> None:
    """Fail on an active duplicate, otherwise clear stale holders of the name."""
    duplicate = (
        _active_devices_query(db, username)
        .filter(UserDevice.device_name == device_name)
        .first()
    )
    if duplicate:
        raise DuplicateDeviceName(device_name=device_name)

    stale_rows = (
        db.query(UserDevice)
        .filter(UserDevice.username == username)
        .filter(UserDevice.device_name == device_name)
        .filter(UserDevice.is_active.is_(False))
        .all()
    )
    for row in stale_rows:
        if row.firewall_peer_id:
            try:
                firewall.remove_peer(row.firewall_peer_id)
            except OPNsenseError as e:
                logger.warning(
                    "Could not remove stale peer %s for %s: %s", row.firewall_peer_id, row.peer_name, e
                )
        db.delete(row)

    peer_name = f"{username}-{device_name}"
    for peer in unclaimed_peers:
        if peer.name != peer_name or not peer.peer_id:
            continue
        linked = (
            db.query(UserDevice.id)
            .filter(UserDevice.firewall_peer_id == peer.peer_id)
            .filter(UserDevice.is_active.is_(True))
            .first()
        )
        if linked:
            continue
        try:
            firewall.remove_peer(peer.peer_id)
        except OPNsenseError as e:
            logger.warning("Could not remove orphaned peer %s (%s): %s", peer.peer_id, peer_name, e)
    db.flush()


def _load_server(db: Session, server_id) -> VpnServer:
    try:
        server_uuid = coerce_uuid(server_id)
    except ValueError as e:
        raise ServerUnavailable(server_id=str(server_id)) from e
    server = db.get(VpnServer, server_uuid)
    if not server or server.status != VpnServerStatus.active:
        raise ServerUnavailable(server_id=str(server_id))
    if not server.subnet or not server.ip_range_start or not server.ip_range_end:
        raise ServerMisconfigured(
            f"Server {server.name} has no subnet or address range configured",
            server_id=str(server.id),
        )
    return server


def _ensure_below_limit(db: Session, username: str) -> None:
    limit = entitlements.device_limit(db, username)
    active_count = (
        _active_devices_query(db, username).with_entities(func.count(UserDevice.id)).scalar()
    )
    if active_count >= limit:
        raise DeviceLimitReached(
            f"Device limit reached. Your plan allows {limit} device(s).", limit=limit
        )


class DeviceService:
    @staticmethod
    def create(
        db: Session,
        username: str,
        device_name: str,
        server_id: str | uuid.UUID,
        firewall: OPNsenseClient | None = None,
    ) -> UserDevice:
        """Provision a device and its firewall peer.

        Raises:
            ProvisioningError: Subclass naming the stage that failed
        """
        firewall = firewall or get_firewall_client()
        device_name = device_name.strip()

        try:
            details = entitlements.ensure_can_provision(db, username)

            unclaimed = _presync_user_devices(db, firewall, username)
            _release_device_name(db, firewall, username, device_name, unclaimed)
            db.commit()

            _ensure_below_limit(db, username)
            server = _load_server(db, server_id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Database error while preparing device %s for %s", device_name, username)
            raise ProvisioningError() from e

        entitlements.ensure_server_access(details, server)

        try:
            firewall.verify_subnet_match(server.subnet)
        except SubnetMismatch as e:
            raise SubnetConfigMismatch(
                str(e), expected=e.expected, actual=e.actual, server_id=str(server.id)
            ) from e
        except OPNsenseError as e:
            raise FirewallRejected(f"Could not verify firewall subnet: {e}") from e

        device = DeviceService._create_with_peer(db, firewall, username, device_name, server)
        DeviceService._store_config(db, device, server)
        return device

    @staticmethod
    def _create_with_peer(
        db: Session,
        firewall: OPNsenseClient,
        username: str,
        device_name: str,
        server: VpnServer,
    ) -> UserDevice:
        server_id = server.id
        with user_lock(username), server_lock(server_id):
            try:
                acquire_provisioning_lock(db)
                entitlements.lock_user_details(db, username)
                _ensure_below_limit(db, username)
                keys = generate_device_keys()
                address = ip_allocation.next_address(db, server_id)
                device = UserDevice(
                    username=username,
                    device_name=device_name,
                    server_id=server_id,
                    private_key=encrypt_secret(keys.private_key),
                    public_key=keys.public_key,
                    preshared_key=encrypt_secret(keys.preshared_key),
                    assigned_ip=address,
                    allowed_ips=settings.default_client_allowed_ips,
                    persistent_keepalive=settings.peer_keepalive_seconds,
                    is_active=True,
                )
                db.add(device)
                db.flush()
            except ProvisioningError:
                db.rollback()
                raise
            except IntegrityError as e:
                db.rollback()
                raise DuplicateDeviceName(device_name=device_name) from e
            except SQLAlchemyError as e:
                db.rollback()
                logger.exception("Database error while creating device %s for %s", device_name, username)
                raise ProvisioningError() from e

            try:
                peer_id = firewall.add_peer(
                    device.peer_name, keys.public_key, address, keys.preshared_key
                )
            except OPNsenseError as e:
                db.rollback()
                logger.error(
                    "Firewall rejected peer %s-%s; device creation rolled back: %s",
                    username,
                    device_name,
                    e,
                )
                raise FirewallRejected(f"Failed to configure VPN server: {e}") from e

            device.firewall_peer_id = peer_id
            try:
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.exception("Commit failed after creating peer %s; removing it", peer_id)
                try:
                    firewall.remove_peer(peer_id)
                except OPNsenseError as remove_error:
                    logger.warning(
                        "Compensating removal of peer %s failed, left for reconciliation: %s",
                        peer_id,
                        remove_error,
                    )
                raise ProvisioningError() from e

        db.refresh(device)
        logger.info(
            "Device %s created for %s on %s at %s (peer %s)",
            device.id,
            username,
            server.name,
            device.assigned_ip,
            peer_id,
        )
        return device

    @staticmethod
    def _store_config(db: Session, device: UserDevice, server: VpnServer) -> str | None:
        """Cache the rendered config. Failures are logged; the config is regenerated on read."""
        try:
            config_text = render_config(device, server)
            device.config_file = encrypt_secret(config_text)
            db.commit()
            return config_text
        except (SQLAlchemyError, ValueError) as e:
            db.rollback()
            logger.warning("Could not cache config for device %s: %s", device.id, e)
            return None

    @staticmethod
    def remove(
        db: Session,
        username: str,
        device_id: str | uuid.UUID,
        firewall: OPNsenseClient | None = None,
    ) -> dict:
        """Soft-delete a device and remove its peer on a best-effort basis.

        Firewall failures do not fail the removal; ``firewall_removed`` tells
        the caller whether the peer is gone yet.
        """
        firewall = firewall or get_firewall_client()
        device = DeviceService.get_for_user(db, username, device_id)
        device.is_active = False
        peer_id = device.firewall_peer_id
        db.commit()
        logger.info("Device %s (%s) deactivated", device.id, device.peer_name)

        firewall_removed = True
        if peer_id:
            try:
                firewall.remove_peer(peer_id)
            except OPNsenseError as e:
                firewall_removed = False
                logger.warning(
                    "Failed to remove peer %s for device %s, left for reconciliation: %s",
                    peer_id,
                    device.id,
                    e,
                )
            else:
                device.firewall_peer_id = None
                db.commit()

        return {"device_id": device.id, "firewall_removed": firewall_removed}

    @staticmethod
    def list_for_user(db: Session, username: str) -> list[UserDevice]:
        return (
            _active_devices_query(db, username)
            .order_by(UserDevice.created_at.desc())
            .all()
        )

    @staticmethod
    def get_for_user(db: Session, username: str, device_id: str | uuid.UUID) -> UserDevice:
        try:
            device_uuid = coerce_uuid(device_id)
        except ValueError as e:
            raise DeviceNotFound() from e
        device = (
            _active_devices_query(db, username)
            .filter(UserDevice.id == device_uuid)
            .first()
        )
        if not device:
            raise DeviceNotFound()
        return device

    @staticmethod
    def update(
        db: Session,
        username: str,
        device_id: str | uuid.UUID,
        device_name: str | None = None,
        dns_servers: str | None = None,
    ) -> UserDevice:
        """Rename a device or change its DNS servers, then refresh the cached config.

        The firewall peer keeps its original name; it stays linked by id.
        """
        device = DeviceService.get_for_user(db, username, device_id)

        if device_name is not None:
            device_name = device_name.strip()
            if device_name != device.device_name:
                clash = (
                    _active_devices_query(db, username)
                    .filter(UserDevice.device_name == device_name)
                    .filter(UserDevice.id != device.id)
                    .first()
                )
                if clash:
                    raise DuplicateDeviceName(device_name=device_name)
                device.device_name = device_name
        if dns_servers is not None:
            device.dns_servers = dns_servers.strip() or None

        device.config_file = encrypt_secret(render_config(device, device.server))
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise DuplicateDeviceName(device_name=device_name) from e
        db.refresh(device)
        return device

    @staticmethod
    def get_config(db: Session, username: str, device_id: str | uuid.UUID) -> tuple[str, str]:
        """Return (config_text, filename), regenerating the cache if missing."""
        device = DeviceService.get_for_user(db, username, device_id)
        config_text = None
        if device.config_file:
            try:
                config_text = decrypt_secret(device.config_file)
            except ValueError as e:
                logger.warning("Cached config for device %s unreadable, regenerating: %s", device.id, e)
        if config_text is None:
            config_text = DeviceService._store_config(db, device, device.server)
            if config_text is None:
                config_text = render_config(device, device.server)
        return config_text, config_filename(device)

    @staticmethod
    def get_config_detail(db: Session, username: str, device_id: str | uuid.UUID) -> dict:
        device = DeviceService.get_for_user(db, username, device_id)
        config_text, _ = DeviceService.get_config(db, username, device.id)
        detail = config_detail(device, device.server)
        detail["device_name"] = device.device_name
        detail["server"] = {"id": device.server.id, "name": device.server.name, "location": device.server.location}
        detail["config_file"] = config_text
        return detail

    @staticmethod
    def get_config_qr(db: Session, username: str, device_id: str | uuid.UUID) -> bytes:
        config_text, _ = DeviceService.get_config(db, username, device_id)
        return render_qr_png(config_text)


# Service instances for module-level access
devices = DeviceService()
