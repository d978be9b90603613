"""wg-quick client configuration rendering and QR export."""

from __future__ import annotations

import io
import re

import qrcode

from boldvpn.config import settings
from boldvpn.models.vpn import UserDevice, VpnServer
from boldvpn.services.wireguard_crypto import decrypt_secret


def _endpoint(server: VpnServer) -> str:
    if server.wireguard_endpoint:
        return server.wireguard_endpoint
    host = server.hostname or "YOUR_SERVER_IP"
    return f"{host}:{server.wireguard_port}"


def _dns(device: UserDevice, server: VpnServer) -> str:
    return device.dns_servers or server.dns_servers or settings.default_client_dns


def config_detail(device: UserDevice, server: VpnServer) -> dict:
    """Structured view of a device configuration, secrets decrypted."""
    preshared_key = decrypt_secret(device.preshared_key) if device.preshared_key else None
    return {
        "interface": {
            "private_key": decrypt_secret(device.private_key),
            "address": f"{device.assigned_ip}/32",
            "dns": _dns(device, server),
        },
        "peer": {
            "public_key": server.wireguard_public_key,
            "preshared_key": preshared_key,
            "endpoint": _endpoint(server),
            "allowed_ips": device.allowed_ips or settings.default_client_allowed_ips,
            "persistent_keepalive": device.persistent_keepalive or settings.peer_keepalive_seconds,
        },
    }


def render_config(device: UserDevice, server: VpnServer) -> str:
    """Render a wg-quick compatible client configuration."""
    detail = config_detail(device, server)
    interface = detail["interface"]
    peer = detail["peer"]

    lines = [
        "[Interface]",
        f"# Device: {device.device_name}",
        f"# Server: {server.name}",
        f"PrivateKey = {interface['private_key']}",
        f"Address = {interface['address']}",
        f"DNS = {interface['dns']}",
        "",
        "[Peer]",
        f"# BoldVPN Server - {server.name}",
        f"PublicKey = {peer['public_key'] or ''}",
    ]
    if peer["preshared_key"]:
        lines.append(f"PresharedKey = {peer['preshared_key']}")
    lines.extend(
        [
            f"Endpoint = {peer['endpoint']}",
            f"AllowedIPs = {peer['allowed_ips']}",
            f"PersistentKeepalive = {peer['persistent_keepalive']}",
        ]
    )
    return "\n".join(lines) + "\n"


def config_filename(device: UserDevice) -> str:
    safe = re.sub(r"[^A-Za-z0-9_.-]+", "-", device.device_name).strip("-.") or "device"
    return f"boldvpn-{safe}.conf"


def render_qr_png(config_text: str) -> bytes:
    """Encode a configuration as a PNG QR code the WireGuard mobile apps can scan."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(config_text)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()
