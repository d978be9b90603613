"""Tests for the OPNsense client."""

import json
import time
from unittest.mock import MagicMock, patch

import httpx
import pytest

from boldvpn.services.opnsense import (
    OPNsenseClient,
    OPNsenseRejected,
    OPNsenseUnavailable,
    SubnetMismatch,
)

SERVER_UUID = "6f0e8f3a-8b0e-4d6e-9a57-1f4f5b7d2c11"
BASE = "https://firewall.test:8443/api"


@pytest.fixture
def client():
    return OPNsenseClient(
        host="firewall.test",
        port=8443,
        api_key="key",
        api_secret="secret",
        timeout=10.0,
    )


@pytest.fixture
def mock_response():
    """Create a mock HTTP response."""
    def _create(json_data=None, status_code=200):
        response = MagicMock(spec=httpx.Response)
        response.status_code = status_code
        response.text = json.dumps(json_data) if json_data is not None else ""
        if json_data is None:
            response.json.side_effect = ValueError("no json")
        else:
            response.json.return_value = json_data
        response.raise_for_status.return_value = None
        return response
    return _create


def _server_get(tunneladdress):
    return {
        "server": {
            "servers": {
                "server": {
                    SERVER_UUID: {"name": "wg0", "tunneladdress": tunneladdress},
                }
            }
        }
    }


def _route(routes, mock_response):
    """Dispatch mocked requests on path suffix."""
    def _request(method, url, json=None):
        for suffix, payload in routes.items():
            if url.endswith(suffix):
                if isinstance(payload, Exception):
                    raise payload
                return mock_response(payload)
        raise AssertionError(f"unexpected request {method} {url}")
    return _request


# =============================================================================
# Request Handling Tests
# =============================================================================


class TestRequestHandling:
    """Tests for _request."""

    def test_uses_basic_auth_and_relaxed_tls(self, client, mock_response):
        """Test client is built with credentials, timeout and TLS setting."""
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.return_value = mock_response({})

            client._request("GET", "/core/firmware/status")

            kwargs = mock_client.call_args.kwargs
            assert kwargs["auth"] == ("key", "secret")
            assert kwargs["verify"] is False
            assert kwargs["timeout"] == 10.0
            args = mock_client.return_value.__enter__.return_value.request.call_args.args
            assert args == ("GET", f"{BASE}/core/firmware/status")

    def test_raises_unavailable_on_http_error(self, client):
        """Test error status maps to OPNsenseUnavailable."""
        with patch("httpx.Client") as mock_client:
            response = MagicMock()
            response.status_code = 401
            response.raise_for_status.side_effect = httpx.HTTPStatusError(
                "Unauthorized", request=MagicMock(), response=response
            )
            mock_client.return_value.__enter__.return_value.request.return_value = response

            with pytest.raises(OPNsenseUnavailable) as exc_info:
                client._request("GET", "/wireguard/client/get")

            assert "401" in str(exc_info.value)

    def test_raises_unavailable_on_timeout(self, client):
        """Test transport timeout maps to OPNsenseUnavailable."""
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.side_effect = (
                httpx.ConnectTimeout("timed out")
            )

            with pytest.raises(OPNsenseUnavailable):
                client._request("GET", "/wireguard/client/get")

    def test_missing_credentials_never_hit_network(self):
        """Test unconfigured credentials fail before any request."""
        client = OPNsenseClient("firewall.test", 8443, None, None)
        with patch("httpx.Client") as mock_client:
            with pytest.raises(OPNsenseUnavailable):
                client._request("GET", "/core/firmware/status")
            mock_client.assert_not_called()

    def test_non_json_body_returns_none(self, client, mock_response):
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.return_value = mock_response(None)

            assert client._request("POST", "/wireguard/service/restart") is None


# =============================================================================
# Server Subnet Tests
# =============================================================================


class TestServerSubnet:
    """Tests for tunnel subnet discovery and verification."""

    @pytest.mark.parametrize(
        "tunneladdress",
        [
            "10.11.0.1/24",
            {"value": "10.11.0.1/24", "selected": 1},
            {"10.11.0.1/24": {"value": "10.11.0.1/24", "selected": 1}},
        ],
    )
    def test_subnet_formats(self, client, mock_response, tunneladdress):
        """Test string and option-map tunneladdress formats normalize to the network."""
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.return_value = mock_response(
                _server_get(tunneladdress)
            )

            assert client.get_server_subnet() == "10.11.0.0/24"

    def test_server_uuid(self, client, mock_response):
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.return_value = mock_response(
                _server_get("10.11.0.1/24")
            )

            assert client.get_server_uuid() == SERVER_UUID

    def test_no_server_configured(self, client, mock_response):
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.return_value = mock_response(
                {"server": {"servers": {"server": {}}}}
            )

            with pytest.raises(OPNsenseRejected):
                client.get_server_uuid()

    def test_verify_subnet_match_passes(self, client, mock_response):
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.return_value = mock_response(
                _server_get("10.11.0.1/24")
            )

            client.verify_subnet_match("10.11.0.0/24")

    def test_verify_subnet_mismatch(self, client, mock_response):
        """Test differing subnets raise SubnetMismatch with both values."""
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.return_value = mock_response(
                _server_get("10.12.0.1/24")
            )

            with pytest.raises(SubnetMismatch) as exc_info:
                client.verify_subnet_match("10.11.0.0/24")

            assert exc_info.value.expected == "10.11.0.0/24"
            assert exc_info.value.actual == "10.12.0.0/24"


# =============================================================================
# Peer Operations Tests
# =============================================================================


class TestPeerOperations:
    """Tests for add/remove/list peers."""

    def test_add_peer_sends_client_payload_and_restarts(self, client, mock_response):
        """Test add_peer posts the client model and restarts the service."""
        routes = {
            "/wireguard/server/get": _server_get("10.0.0.1/24"),
            "/wireguard/client/addClient": {"result": "saved", "uuid": "peer-1"},
            "/wireguard/service/restart": {"status": "ok"},
        }
        with patch("httpx.Client") as mock_client:
            request = mock_client.return_value.__enter__.return_value.request
            request.side_effect = _route(routes, mock_response)

            peer_id = client.add_peer("alice-Laptop", "pubkey", "10.0.0.2", "psk")

            assert peer_id == "peer-1"
            calls = [call.args[1] for call in request.call_args_list]
            assert calls[-1].endswith("/wireguard/service/restart")
            add_call = next(c for c in request.call_args_list if c.args[1].endswith("addClient"))
            payload = add_call.kwargs["json"]["client"]
            assert payload["name"] == "alice-Laptop"
            assert payload["tunneladdress"] == "10.0.0.2/32"
            assert payload["servers"] == SERVER_UUID
            assert payload["keepalive"] == "25"
            assert payload["psk"] == "psk"

    def test_add_peer_resolves_uuid_by_name_when_omitted(self, client, mock_response):
        routes = {
            "/wireguard/server/get": _server_get("10.0.0.1/24"),
            "/wireguard/client/addClient": {"result": "saved"},
            "/wireguard/client/get": {
                "client": {"clients": {"client": {"peer-9": {"name": "alice-Laptop"}}}}
            },
            "/wireguard/service/restart": {},
        }
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.side_effect = _route(
                routes, mock_response
            )

            assert client.add_peer("alice-Laptop", "pubkey", "10.0.0.2") == "peer-9"

    def test_add_peer_rejected(self, client, mock_response):
        """Test validation failure raises OPNsenseRejected without restart."""
        routes = {
            "/wireguard/server/get": _server_get("10.0.0.1/24"),
            "/wireguard/client/addClient": {
                "result": "failed",
                "validations": {"client.pubkey": "invalid"},
            },
        }
        with patch("httpx.Client") as mock_client:
            request = mock_client.return_value.__enter__.return_value.request
            request.side_effect = _route(routes, mock_response)

            with pytest.raises(OPNsenseRejected):
                client.add_peer("alice-Laptop", "bad", "10.0.0.2")

            assert not any(c.args[1].endswith("restart") for c in request.call_args_list)

    def test_remove_peer(self, client, mock_response):
        routes = {
            "/wireguard/client/delClient/peer-1": {"result": "deleted"},
            "/wireguard/service/restart": {},
        }
        with patch("httpx.Client") as mock_client:
            request = mock_client.return_value.__enter__.return_value.request
            request.side_effect = _route(routes, mock_response)

            client.remove_peer("peer-1")

            assert request.call_args_list[-1].args[1].endswith("/wireguard/service/restart")

    def test_remove_peer_not_confirmed(self, client, mock_response):
        routes = {"/wireguard/client/delClient/peer-1": {"result": "not found"}}
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.side_effect = _route(
                routes, mock_response
            )

            with pytest.raises(OPNsenseRejected):
                client.remove_peer("peer-1")

    def test_fetch_peers_parses_uuid_keyed_clients(self, client, mock_response):
        payload = {
            "client": {
                "clients": {
                    "client": {
                        "peer-1": {
                            "name": "alice-Laptop",
                            "pubkey": "pk1",
                            "tunneladdress": {"10.0.0.2/32": {"value": "10.0.0.2/32", "selected": 1}},
                            "enabled": "1",
                        },
                        "peer-2": {"name": "bob-Phone", "pubkey": "pk2", "enabled": "0"},
                    }
                }
            }
        }
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.return_value = mock_response(payload)

            peers = client.fetch_peers()

        assert [peer.peer_id for peer in peers] == ["peer-1", "peer-2"]
        assert peers[0].name == "alice-Laptop"
        assert peers[0].tunnel_address == "10.0.0.2/32"
        assert peers[0].enabled is True
        assert peers[1].enabled is False

    def test_list_peers_degrades_to_empty(self, client):
        """Test read path returns [] when the firewall is unreachable."""
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.side_effect = (
                httpx.ConnectError("refused")
            )

            assert client.list_peers() == []

    def test_fetch_peers_is_strict(self, client):
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.side_effect = (
                httpx.ConnectError("refused")
            )

            with pytest.raises(OPNsenseUnavailable):
                client.fetch_peers()

    def test_find_peers_by_username(self, client, mock_response):
        payload = {
            "client": {
                "clients": {
                    "client": {
                        "p1": {"name": "alice-Laptop"},
                        "p2": {"name": "alice-Phone"},
                        "p3": {"name": "alicia-Phone"},
                    }
                }
            }
        }
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.return_value = mock_response(payload)

            peers = client.find_peers_by_username("alice")

        assert sorted(peer.name for peer in peers) == ["alice-Laptop", "alice-Phone"]


# =============================================================================
# Service Operations Tests
# =============================================================================


class TestServiceOperations:
    """Tests for status, handshakes, restart and health."""

    def test_list_active_peers_applies_window(self, client, mock_response):
        now = int(time.time())
        payload = {
            "peers": [
                {"public_key": "recent", "latest_handshake": now - 30, "transfer_rx": 10, "transfer_tx": 20},
                {"public_key": "stale", "latest_handshake": now - 600},
                {"public_key": "never", "latest_handshake": 0},
            ]
        }
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.return_value = mock_response(payload)

            peers = client.list_active_peers()

        assert [(peer.public_key, peer.is_active) for peer in peers] == [
            ("recent", True),
            ("stale", False),
        ]
        assert peers[0].transfer_rx == 10

    def test_restart_failure_is_swallowed(self, client):
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.side_effect = (
                httpx.ReadTimeout("timeout")
            )

            assert client.restart_service() is False

    def test_health_check_healthy(self, client, mock_response):
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.return_value = mock_response(
                {"product_version": "24.7.1"}
            )

            result = client.health_check()

        assert result["healthy"] is True
        assert result["version"] == "24.7.1"

    def test_health_check_never_raises(self, client):
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.side_effect = (
                httpx.ConnectError("refused")
            )

            result = client.health_check()

        assert result["healthy"] is False
        assert "refused" in result["detail"]

    def test_get_status(self, client, mock_response):
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.request.return_value = mock_response(
                {"running": "1", "peers": []}
            )

            assert client.get_status()["running"] is True
