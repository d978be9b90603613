"""initial device provisioning tables

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing_tables = set(inspector.get_table_names())

    # Owned by FreeRADIUS on existing installs
    if "radreply" not in existing_tables:
        op.create_table(
            "radreply",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("username", sa.String(64), nullable=False, server_default=""),
            sa.Column("attribute", sa.String(64), nullable=False, server_default=""),
            sa.Column("op", sa.String(2), nullable=False, server_default=":="),
            sa.Column("value", sa.String(253), nullable=False, server_default=""),
        )
        op.create_index("ix_radreply_username", "radreply", ["username"])

    if "user_details" not in existing_tables:
        op.create_table(
            "user_details",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            sa.Column("username", sa.String(64), nullable=False, unique=True),
            sa.Column("email", sa.String(255), nullable=True),
            sa.Column(
                "plan_tier",
                sa.Enum("basic", "premium", "family", name="plantier"),
                nullable=True,
            ),
            sa.Column(
                "subscription_status",
                sa.Enum(
                    "none",
                    "active",
                    "trialing",
                    "past_due",
                    "canceled",
                    "expired",
                    name="subscriptionstatus",
                ),
                nullable=True,
            ),
            sa.Column("subscription_expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("is_admin", sa.Boolean, nullable=True, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )

    op.create_table(
        "vpn_servers",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(160), nullable=False, unique=True),
        sa.Column("hostname", sa.String(255), nullable=True),
        sa.Column("country_code", sa.String(2), nullable=True),
        sa.Column("country", sa.String(80), nullable=True),
        sa.Column("city", sa.String(80), nullable=True),
        sa.Column("flag_emoji", sa.String(16), nullable=True),
        sa.Column("location_number", sa.Integer, nullable=True),
        sa.Column("wireguard_public_key", sa.String(64), nullable=True),
        sa.Column("wireguard_endpoint", sa.String(255), nullable=True),
        sa.Column("wireguard_port", sa.Integer, nullable=True, server_default="51820"),
        sa.Column("subnet", sa.String(64), nullable=True),
        sa.Column("ip_range_start", sa.String(64), nullable=True),
        sa.Column("ip_range_end", sa.String(64), nullable=True),
        sa.Column("dns_servers", sa.String(255), nullable=True),
        sa.Column(
            "status",
            sa.Enum("active", "maintenance", "offline", name="vpnserverstatus"),
            nullable=True,
        ),
        sa.Column("is_premium", sa.Boolean, nullable=True, server_default=sa.false()),
        sa.Column("max_connections", sa.Integer, nullable=True, server_default="250"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "user_devices",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("username", sa.String(64), nullable=False),
        sa.Column("device_name", sa.String(64), nullable=False),
        sa.Column(
            "server_id",
            UUID(as_uuid=True),
            sa.ForeignKey("vpn_servers.id"),
            nullable=False,
        ),
        sa.Column("private_key", sa.Text, nullable=False),
        sa.Column("public_key", sa.String(64), nullable=False),
        sa.Column("preshared_key", sa.Text, nullable=True),
        sa.Column("assigned_ip", sa.String(64), nullable=False),
        sa.Column("firewall_peer_id", sa.String(64), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("config_file", sa.Text, nullable=True),
        sa.Column("dns_servers", sa.String(255), nullable=True),
        sa.Column("allowed_ips", sa.String(255), nullable=True),
        sa.Column("persistent_keepalive", sa.Integer, nullable=True, server_default="25"),
        sa.Column("last_used", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_ip_address", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_user_devices_username", "user_devices", ["username"])
    op.create_index("ix_user_devices_firewall_peer_id", "user_devices", ["firewall_peer_id"])
    op.create_index(
        "uq_user_devices_active_name",
        "user_devices",
        ["username", "device_name"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )
    op.create_index(
        "uq_user_devices_active_address",
        "user_devices",
        ["server_id", "assigned_ip"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "named_sequences",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("key", sa.String(80), nullable=False),
        sa.Column("next_value", sa.Integer, nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("key", name="uq_named_sequences_key"),
    )


def downgrade() -> None:
    op.drop_table("named_sequences")
    op.drop_index("uq_user_devices_active_address", table_name="user_devices")
    op.drop_index("uq_user_devices_active_name", table_name="user_devices")
    op.drop_index("ix_user_devices_firewall_peer_id", table_name="user_devices")
    op.drop_index("ix_user_devices_username", table_name="user_devices")
    op.drop_table("user_devices")
    op.drop_table("vpn_servers")
    sa.Enum(name="vpnserverstatus").drop(op.get_bind(), checkfirst=True)
