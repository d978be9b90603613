"""Errors raised by device provisioning.

Every error carries a stable ``code`` so API clients can tell failures apart
without parsing messages.
"""

from __future__ import annotations


class ProvisioningError(Exception):
    """Base exception for provisioning failures."""

    code = "provisioning_failed"
    status_code = 500
    default_message = "Device provisioning failed"

    def __init__(self, message: str | None = None, **details: object):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details or None,
        }


class ToolingUnavailable(ProvisioningError):
    """WireGuard key generation is not supported on this host."""

    code = "tooling_unavailable"
    status_code = 503
    default_message = "WireGuard key generation is unavailable on this host"


class RangeNotConfigured(ProvisioningError):
    code = "range_not_configured"
    status_code = 500
    default_message = "Server address range is not configured"


class RangeExhausted(ProvisioningError):
    code = "range_exhausted"
    status_code = 503
    default_message = "No free addresses left on this server"


class AddressOutOfRange(ProvisioningError):
    code = "address_out_of_range"
    status_code = 500
    default_message = "Allocated address falls outside the server range"


class SubscriptionRequired(ProvisioningError):
    code = "subscription_required"
    status_code = 402
    default_message = "An active subscription is required to add devices"

    def __init__(self, message: str | None = None, **details: object):
        details.setdefault("requires_payment", True)
        super().__init__(message, **details)


class SubscriptionExpired(SubscriptionRequired):
    code = "subscription_expired"
    default_message = "Your subscription has expired"


class PremiumServerRequired(ProvisioningError):
    code = "premium_server_required"
    status_code = 403
    default_message = (
        "Premium servers are only available for Premium or Family plan users"
    )

    def __init__(self, message: str | None = None, **details: object):
        details.setdefault("requires_upgrade", True)
        super().__init__(message, **details)


class DuplicateDeviceName(ProvisioningError):
    code = "duplicate_device_name"
    status_code = 409
    default_message = "Device name already exists"


class DeviceLimitReached(ProvisioningError):
    code = "device_limit_reached"
    status_code = 403
    default_message = "Device limit reached"


class DeviceNotFound(ProvisioningError):
    code = "device_not_found"
    status_code = 404
    default_message = "Device not found"


class ServerUnavailable(ProvisioningError):
    code = "server_unavailable"
    status_code = 404
    default_message = "Server not found or unavailable"


class ServerMisconfigured(ProvisioningError):
    code = "server_misconfigured"
    status_code = 500
    default_message = "Server addressing is not configured"


class SubnetConfigMismatch(ProvisioningError):
    code = "subnet_config_mismatch"
    status_code = 500
    default_message = "Server subnet does not match the firewall configuration"


class FirewallRejected(ProvisioningError):
    code = "firewall_rejected"
    status_code = 502
    default_message = "Failed to configure VPN server"
