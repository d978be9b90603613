from __future__ import annotations

import ipaddress
import uuid
from dataclasses import asdict

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session

from boldvpn.models.vpn import UserDevice, VpnServer, VpnServerStatus
from boldvpn.schemas.servers import VpnServerCreate
from boldvpn.services.common import coerce_uuid
from boldvpn.services.numbering import next_location_number
from boldvpn.services.opnsense import OPNsenseClient, get_firewall_client
from boldvpn.services.wireguard_crypto import validate_key


class VpnServerService:
    """Service for VPN server management."""

    @staticmethod
    def create(db: Session, payload: VpnServerCreate) -> VpnServer:
        """Register a server; its address range must sit inside its subnet."""
        existing = db.query(VpnServer).filter(VpnServer.name == payload.name).first()
        if existing:
            raise HTTPException(status_code=400, detail="Server with this name already exists")

        try:
            network = ipaddress.ip_network(payload.subnet.strip(), strict=False)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid subnet: {e}") from e

        start = ipaddress.ip_address(payload.ip_range_start)
        end = ipaddress.ip_address(payload.ip_range_end)
        if start not in network or end not in network:
            raise HTTPException(
                status_code=400,
                detail=f"Address range {start}-{end} is not inside subnet {network}",
            )
        if int(start) > int(end):
            raise HTTPException(status_code=400, detail="ip_range_start is after ip_range_end")
        if payload.wireguard_public_key and not validate_key(payload.wireguard_public_key):
            raise HTTPException(
                status_code=400, detail="wireguard_public_key is not a base64-encoded 32-byte key"
            )

        country_code = payload.country_code.upper() if payload.country_code else None
        server = VpnServer(
            **payload.model_dump(exclude={"subnet", "country_code"}),
            subnet=str(network),
            country_code=country_code,
            location_number=next_location_number(db, country_code),
        )
        db.add(server)
        db.commit()
        db.refresh(server)
        return server

    @staticmethod
    def get(db: Session, server_id: str | uuid.UUID) -> VpnServer:
        try:
            server_uuid = coerce_uuid(server_id)
        except ValueError as e:
            raise HTTPException(status_code=404, detail="VPN server not found") from e
        server = db.get(VpnServer, server_uuid)
        if not server:
            raise HTTPException(status_code=404, detail="VPN server not found")
        return server

    @staticmethod
    def list_active(db: Session) -> list[VpnServer]:
        return (
            db.query(VpnServer)
            .filter(VpnServer.status == VpnServerStatus.active)
            .order_by(VpnServer.country_code, VpnServer.location_number, VpnServer.name)
            .all()
        )

    @staticmethod
    def health_overview(db: Session, firewall: OPNsenseClient | None = None) -> dict:
        """Server load plus live firewall status. Handshake data is display-only."""
        firewall = firewall or get_firewall_client()

        counts = dict(
            db.query(UserDevice.server_id, func.count(UserDevice.id))
            .filter(UserDevice.is_active.is_(True))
            .group_by(UserDevice.server_id)
            .all()
        )
        servers = [
            {
                "id": server.id,
                "name": server.name,
                "status": server.status,
                "active_devices": counts.get(server.id, 0),
                "max_connections": server.max_connections,
            }
            for server in db.query(VpnServer).order_by(VpnServer.name).all()
        ]

        active_peers = firewall.list_active_peers()
        return {
            "firewall": firewall.health_check(),
            "wireguard": firewall.get_status(),
            "servers": servers,
            "active_peers": [asdict(peer) for peer in active_peers],
            "connected_peers": sum(1 for peer in active_peers if peer.is_active),
        }


# Service instances for module-level access
vpn_servers = VpnServerService()
