"""VPN server and user device models.

Each device is one WireGuard peer owned by one user. The firewall holds the
live peer; the row mirrors it and carries the billing-relevant identity.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from boldvpn.db import Base


class VpnServerStatus(enum.Enum):
    """Operational status of a VPN endpoint."""

    active = "active"
    maintenance = "maintenance"
    offline = "offline"


class VpnServer(Base):
    """A WireGuard endpoint terminated on the firewall.

    Devices are provisioned against a server and receive an address from
    its [ip_range_start, ip_range_end] range inside ``subnet``.
    """

    __tablename__ = "vpn_servers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(160), nullable=False, unique=True)
    hostname: Mapped[str | None] = mapped_column(String(255))

    # Location
    country_code: Mapped[str | None] = mapped_column(String(2))
    country: Mapped[str | None] = mapped_column(String(80))
    city: Mapped[str | None] = mapped_column(String(80))
    flag_emoji: Mapped[str | None] = mapped_column(String(16))
    location_number: Mapped[int | None] = mapped_column(Integer)

    # Tunnel endpoint handed to clients
    wireguard_public_key: Mapped[str | None] = mapped_column(String(64))
    wireguard_endpoint: Mapped[str | None] = mapped_column(String(255))  # host:port
    wireguard_port: Mapped[int] = mapped_column(Integer, default=51820)

    # Addressing; must match the tunnel address configured on the firewall
    subnet: Mapped[str | None] = mapped_column(String(64))  # e.g. 10.11.0.0/24
    ip_range_start: Mapped[str | None] = mapped_column(String(64))
    ip_range_end: Mapped[str | None] = mapped_column(String(64))
    dns_servers: Mapped[str | None] = mapped_column(String(255))

    status: Mapped[VpnServerStatus] = mapped_column(
        Enum(VpnServerStatus), default=VpnServerStatus.active
    )
    is_premium: Mapped[bool] = mapped_column(Boolean, default=False)
    max_connections: Mapped[int] = mapped_column(Integer, default=250)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    devices = relationship("UserDevice", back_populates="server")

    @property
    def location(self) -> str:
        parts = [part for part in (self.country, self.city) if part]
        label = ", ".join(parts)
        if self.flag_emoji:
            return f"{self.flag_emoji} {label}".strip()
        return label


class UserDevice(Base):
    """A provisioned WireGuard device.

    Rows are soft-deleted (``is_active = False``). ``firewall_peer_id`` stays
    NULL until the firewall confirms peer creation.
    """

    __tablename__ = "user_devices"
    __table_args__ = (
        Index(
            "uq_user_devices_active_name",
            "username",
            "device_name",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index(
            "uq_user_devices_active_address",
            "server_id",
            "assigned_ip",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_user_devices_username", "username"),
        Index("ix_user_devices_firewall_peer_id", "firewall_peer_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    username: Mapped[str] = mapped_column(String(64), nullable=False)
    device_name: Mapped[str] = mapped_column(String(64), nullable=False)
    server_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("vpn_servers.id"), nullable=False
    )

    # Key material; private and preshared keys are stored with an enc:/plain: prefix
    private_key: Mapped[str] = mapped_column(Text, nullable=False)
    public_key: Mapped[str] = mapped_column(String(64), nullable=False)
    preshared_key: Mapped[str | None] = mapped_column(Text)

    assigned_ip: Mapped[str] = mapped_column(String(64), nullable=False)
    firewall_peer_id: Mapped[str | None] = mapped_column(String(64))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Rendered wg-quick config, regenerable
    config_file: Mapped[str | None] = mapped_column(Text)
    dns_servers: Mapped[str | None] = mapped_column(String(255))
    allowed_ips: Mapped[str | None] = mapped_column(String(255))
    persistent_keepalive: Mapped[int] = mapped_column(Integer, default=25)

    last_used: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_ip_address: Mapped[str | None] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    server = relationship("VpnServer", back_populates="devices")

    @property
    def peer_name(self) -> str:
        """Name of the matching firewall peer."""
        return f"{self.username}-{self.device_name}"
