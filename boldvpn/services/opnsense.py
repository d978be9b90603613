"""OPNsense API client for WireGuard peer management.

OPNsense calls WireGuard peers "clients" and the local interface a
"server". Peer changes are not applied until the WireGuard service is
restarted, so every successful mutation is followed by a restart request.
"""

from __future__ import annotations

import ipaddress
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from boldvpn.config import settings

logger = logging.getLogger(__name__)


class OPNsenseError(Exception):
    """Base exception for OPNsense client errors."""

    pass


class OPNsenseUnavailable(OPNsenseError):
    """The API could not be reached or answered with an error status."""

    pass


class OPNsenseRejected(OPNsenseError):
    """The API answered but did not confirm the requested change."""

    pass


class SubnetMismatch(OPNsenseError):
    """The firewall tunnel subnet differs from the one recorded for a server."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Subnet mismatch: database has {expected}, firewall has {actual}. "
            "Update the firewall WireGuard interface subnet to match."
        )


@dataclass(frozen=True)
class FirewallPeer:
    peer_id: str | None
    name: str | None
    public_key: str | None = None
    tunnel_address: str | None = None
    enabled: bool = True


@dataclass(frozen=True)
class ActivePeer:
    public_key: str | None
    endpoint: str | None
    last_handshake_at: datetime
    transfer_rx: int
    transfer_tx: int
    is_active: bool


def _selected_value(field: Any) -> str | None:
    """Flatten an OPNsense model field to its selected string value.

    Fields arrive either as plain strings, as ``{"value": ..., "selected": 1}``
    or as a mapping of options keyed by value.
    """
    if field is None:
        return None
    if isinstance(field, str):
        return field or None
    if isinstance(field, dict):
        if isinstance(field.get("value"), str):
            return field["value"] or None
        options = list(field.items())
        if not options:
            return None
        selected = [
            (key, option)
            for key, option in options
            if isinstance(option, dict) and str(option.get("selected", "0")) in ("1", "True", "true")
        ]
        key, option = (selected or options)[0]
        if isinstance(option, dict) and option.get("value"):
            return str(option["value"])
        if isinstance(option, str) and option:
            return option
        return str(key)
    return str(field)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return True
    return str(_selected_value(value)) in ("1", "true", "True")


def _parse_peer(peer_id: str | None, raw: dict) -> FirewallPeer:
    nested = raw.get("client") if isinstance(raw.get("client"), dict) else {}
    name = raw.get("name") or nested.get("name") or raw.get("client_name")
    return FirewallPeer(
        peer_id=peer_id or raw.get("uuid") or nested.get("uuid"),
        name=_selected_value(name),
        public_key=_selected_value(raw.get("pubkey") or nested.get("pubkey")),
        tunnel_address=_selected_value(raw.get("tunneladdress") or nested.get("tunneladdress")),
        enabled=_as_bool(raw.get("enabled", nested.get("enabled"))),
    )


class OPNsenseClient:
    """HTTP client for the OPNsense WireGuard API.

    Credentials are a static API key/secret pair sent as HTTP basic auth.
    Certificate validation is off by default because firewalls ship
    self-signed certificates.
    """

    def __init__(
        self,
        host: str,
        port: int,
        api_key: str | None,
        api_secret: str | None,
        timeout: float = 10.0,
        verify_tls: bool = False,
        keepalive_seconds: int = 25,
        active_window_seconds: int = 180,
    ):
        self.base_url = f"https://{host}:{port}/api"
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.keepalive_seconds = keepalive_seconds
        self.active_window_seconds = active_window_seconds

    def _request(
        self,
        method: str,
        path: str,
        json_data: dict | None = None,
    ) -> Any:
        """Make an HTTP request to the OPNsense API.

        Returns:
            Decoded JSON body, or None when the body is not JSON

        Raises:
            OPNsenseUnavailable: On transport failure, timeout or error status
        """
        if not self.api_key or not self.api_secret:
            raise OPNsenseUnavailable("OPNsense API credentials are not configured")

        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(
                timeout=self.timeout,
                verify=self.verify_tls,
                auth=(self.api_key, self.api_secret),
            ) as client:
                response = client.request(method, url, json=json_data)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "OPNsense API error on %s %s: %s", method, path, e.response.status_code
            )
            raise OPNsenseUnavailable(f"API error: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error("OPNsense request error on %s %s: %s", method, path, e)
            raise OPNsenseUnavailable(f"Request error: {e}") from e

        try:
            return response.json()
        except ValueError:
            return None

    # -------------------------------------------------------------------------
    # Local WireGuard instance
    # -------------------------------------------------------------------------

    def _first_server(self) -> tuple[str, dict]:
        response = self._request("GET", "/wireguard/server/get")
        servers = None
        if isinstance(response, dict):
            servers = ((response.get("server") or {}).get("servers") or {}).get("server")
        if not isinstance(servers, dict):
            raise OPNsenseRejected("No WireGuard server found in OPNsense")
        if not servers:
            raise OPNsenseRejected("No WireGuard servers configured in OPNsense")
        server_uuid = next(iter(servers))
        return server_uuid, servers[server_uuid] or {}

    def get_server_uuid(self) -> str:
        """Return the UUID of the first configured WireGuard server."""
        server_uuid, _ = self._first_server()
        return server_uuid

    def get_server_subnet(self) -> str:
        """Return the tunnel subnet in network form (10.11.0.1/24 -> 10.11.0.0/24)."""
        _, server = self._first_server()
        tunnel_address = _selected_value(server.get("tunneladdress"))
        if not tunnel_address:
            raise OPNsenseRejected("WireGuard server tunneladdress not found in OPNsense")
        # Interfaces may carry several addresses; the first one is the IPv4 tunnel
        first = tunnel_address.split(",")[0].strip()
        try:
            return str(ipaddress.ip_network(first, strict=False))
        except ValueError as e:
            raise OPNsenseRejected(f"Invalid tunneladdress format: {first}") from e

    def verify_subnet_match(self, expected_subnet: str) -> None:
        """Ensure the firewall routes the subnet recorded in the database.

        Raises:
            SubnetMismatch: If the subnets differ
            OPNsenseError: If the firewall subnet cannot be read
        """
        actual = self.get_server_subnet()
        try:
            expected = str(ipaddress.ip_network(expected_subnet.strip(), strict=False))
        except ValueError:
            expected = expected_subnet
        if actual != expected:
            raise SubnetMismatch(expected=expected, actual=actual)
        logger.debug("Subnet verification passed: %s", expected)

    # -------------------------------------------------------------------------
    # Peer Operations
    # -------------------------------------------------------------------------

    def add_peer(
        self,
        name: str,
        public_key: str,
        address: str,
        preshared_key: str | None = None,
    ) -> str:
        """Create a peer and return its firewall identifier.

        Raises:
            OPNsenseRejected: If the firewall does not confirm creation
            OPNsenseUnavailable: On transport failure
        """
        server_uuid = self.get_server_uuid()
        payload = {
            "client": {
                "enabled": "1",
                "name": name,
                "pubkey": public_key,
                "psk": preshared_key or "",
                "tunneladdress": f"{address}/32",
                "keepalive": str(self.keepalive_seconds),
                "servers": server_uuid,
            }
        }
        response = self._request("POST", "/wireguard/client/addClient", payload)
        if not isinstance(response, dict):
            raise OPNsenseRejected("Unexpected response while adding peer")

        peer_id = response.get("uuid")
        if not peer_id and response.get("result") == "saved":
            # Some firmware versions omit the uuid on save
            found = self.find_peer_by_name(name)
            peer_id = found.peer_id if found else None
        if not peer_id:
            logger.error("OPNsense did not confirm peer %s: %s", name, response.get("validations") or response.get("result"))
            raise OPNsenseRejected(f"Failed to add peer {name}")

        logger.info("WireGuard peer %s added with id %s", name, peer_id)
        self.restart_service()
        return peer_id

    def remove_peer(self, peer_id: str) -> None:
        """Delete a peer.

        Raises:
            OPNsenseRejected: If the firewall does not confirm deletion
            OPNsenseUnavailable: On transport failure
        """
        response = self._request("POST", f"/wireguard/client/delClient/{peer_id}")
        if not isinstance(response, dict) or response.get("result") != "deleted":
            raise OPNsenseRejected(f"Failed to delete peer {peer_id}")
        logger.info("WireGuard peer %s removed", peer_id)
        self.restart_service()

    def fetch_peers(self) -> list[FirewallPeer]:
        """List all peers.

        Raises:
            OPNsenseUnavailable: If the firewall cannot be listed
        """
        response = self._request("GET", "/wireguard/client/get")
        if not isinstance(response, dict):
            raise OPNsenseUnavailable("Unexpected response while listing peers")

        clients = ((response.get("client") or {}).get("clients") or {}).get("client")
        if isinstance(clients, dict):
            return [_parse_peer(peer_id, raw or {}) for peer_id, raw in clients.items()]
        if isinstance(clients, list):
            return [_parse_peer(None, raw) for raw in clients if isinstance(raw, dict)]
        peers = response.get("peers") or []
        return [_parse_peer(None, raw) for raw in peers if isinstance(raw, dict)]

    def list_peers(self) -> list[FirewallPeer]:
        """List all peers, returning an empty list when the firewall is unreachable."""
        try:
            return self.fetch_peers()
        except OPNsenseError as e:
            logger.warning("Listing OPNsense peers failed: %s", e)
            return []

    def find_peer_by_name(self, name: str) -> FirewallPeer | None:
        for peer in self.fetch_peers():
            if peer.name == name:
                return peer
        return None

    def find_peers_by_username(self, username: str) -> list[FirewallPeer]:
        """Return peers named ``<username>-<device>``."""
        prefix = f"{username}-"
        return [peer for peer in self.fetch_peers() if peer.name and peer.name.startswith(prefix)]

    # -------------------------------------------------------------------------
    # Service Operations
    # -------------------------------------------------------------------------

    def list_active_peers(self) -> list[ActivePeer]:
        """Peers with a recorded handshake, for display only."""
        try:
            response = self._request("GET", "/wireguard/service/showconf")
        except OPNsenseError as e:
            logger.warning("Reading OPNsense handshakes failed: %s", e)
            return []

        peers = response.get("peers") if isinstance(response, dict) else None
        now = time.time()
        active: list[ActivePeer] = []
        for peer in peers or []:
            try:
                handshake = int(peer.get("latest_handshake") or 0)
            except (TypeError, ValueError):
                continue
            if handshake <= 0:
                continue
            active.append(
                ActivePeer(
                    public_key=peer.get("public_key"),
                    endpoint=peer.get("endpoint"),
                    last_handshake_at=datetime.fromtimestamp(handshake, tz=timezone.utc),
                    transfer_rx=int(peer.get("transfer_rx") or 0),
                    transfer_tx=int(peer.get("transfer_tx") or 0),
                    is_active=(now - handshake) < self.active_window_seconds,
                )
            )
        return active

    def get_status(self) -> dict:
        try:
            response = self._request("GET", "/wireguard/service/show")
        except OPNsenseError as e:
            logger.warning("Reading OPNsense WireGuard status failed: %s", e)
            return {"running": False, "peers": []}
        response = response if isinstance(response, dict) else {}
        return {
            "running": str(response.get("running")) == "1",
            "peers": response.get("peers") or [],
            "interface": response.get("interface") or settings.wireguard_interface,
        }

    def restart_service(self) -> bool:
        """Ask the firewall to apply peer changes. Failures are logged, not raised."""
        try:
            self._request("POST", "/wireguard/service/restart")
        except OPNsenseError as e:
            logger.warning("WireGuard service restart failed: %s", e)
            return False
        logger.debug("WireGuard service restarted")
        return True

    def health_check(self) -> dict:
        """Report API reachability. Never raises."""
        try:
            response = self._request("GET", "/core/firmware/status")
        except OPNsenseError as e:
            return {"healthy": False, "detail": str(e), "version": None}
        version = response.get("product_version") if isinstance(response, dict) else None
        return {"healthy": True, "detail": "ok", "version": version or "unknown"}


def get_firewall_client() -> OPNsenseClient:
    return OPNsenseClient(
        host=settings.opnsense_host,
        port=settings.opnsense_port,
        api_key=settings.opnsense_api_key,
        api_secret=settings.opnsense_api_secret,
        timeout=settings.opnsense_timeout_seconds,
        verify_tls=settings.opnsense_verify_tls,
        keepalive_seconds=settings.peer_keepalive_seconds,
        active_window_seconds=settings.active_handshake_window_seconds,
    )
