"""Pydantic schemas for VPN server administration."""

import ipaddress
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from boldvpn.models.vpn import VpnServerStatus


class VpnServerCreate(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    hostname: str | None = None
    country_code: str | None = Field(default=None, min_length=2, max_length=2)
    country: str | None = None
    city: str | None = None
    flag_emoji: str | None = None
    wireguard_public_key: str | None = None
    wireguard_endpoint: str | None = Field(
        default=None, description="host:port handed to clients"
    )
    wireguard_port: int = Field(default=51820, ge=1, le=65535)
    subnet: str = Field(description="Tunnel subnet in CIDR notation (e.g., 10.11.0.0/24)")
    ip_range_start: str
    ip_range_end: str
    dns_servers: str | None = None
    status: VpnServerStatus = VpnServerStatus.active
    is_premium: bool = False
    max_connections: int = Field(default=250, ge=1)

    @field_validator("ip_range_start", "ip_range_end")
    @classmethod
    def _valid_address(cls, v: str) -> str:
        return str(ipaddress.ip_address(v.strip()))


class VpnServerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    hostname: str | None = None
    country_code: str | None = None
    country: str | None = None
    city: str | None = None
    flag_emoji: str | None = None
    location_number: int | None = None
    location: str
    wireguard_public_key: str | None = None
    wireguard_endpoint: str | None = None
    wireguard_port: int
    subnet: str | None = None
    ip_range_start: str | None = None
    ip_range_end: str | None = None
    dns_servers: str | None = None
    status: VpnServerStatus
    is_premium: bool
    max_connections: int
    created_at: datetime


class ServerLoad(BaseModel):
    id: UUID
    name: str
    status: VpnServerStatus
    active_devices: int
    max_connections: int


class ActivePeerRead(BaseModel):
    public_key: str | None = None
    endpoint: str | None = None
    last_handshake_at: datetime
    transfer_rx: int
    transfer_tx: int
    is_active: bool


class ServerHealth(BaseModel):
    firewall: dict
    wireguard: dict
    servers: list[ServerLoad]
    active_peers: list[ActivePeerRead]
    connected_peers: int


class ReconciliationRead(BaseModel):
    created: int
    relinked: int
    removed: int
    unlinked: int
    skipped: int
    failed: int
    corrective_actions: int
    aborted: str | None = None
    errors: list[str] = []
