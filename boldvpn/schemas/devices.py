"""Pydantic schemas for user devices and their configurations."""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator

DeviceName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=64)]


class DeviceCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_name: DeviceName = Field(alias="deviceName")
    server_id: UUID = Field(alias="serverId")


class DeviceUpdate(BaseModel):
    """Rename a device or change its DNS servers.

    Moving a device to another server is not supported; remove and re-create it.
    """

    model_config = ConfigDict(populate_by_name=True)

    device_name: DeviceName | None = Field(default=None, alias="deviceName")
    dns_servers: str | None = Field(default=None, alias="dnsServers", max_length=255)

    @model_validator(mode="after")
    def _require_change(self):
        if self.device_name is None and self.dns_servers is None:
            raise ValueError("No updates provided")
        return self


class ServerDescriptor(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    location: str


class DeviceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    device_name: str = Field(serialization_alias="deviceName")
    server: ServerDescriptor | None = None
    assigned_ip: str = Field(serialization_alias="assignedIP")
    public_key: str = Field(serialization_alias="publicKey")
    last_used: datetime | None = Field(default=None, serialization_alias="lastUsed")
    last_ip_address: str | None = Field(default=None, serialization_alias="lastIPAddress")
    created_at: datetime = Field(serialization_alias="createdAt")


class DeviceCreated(BaseModel):
    message: str = "Device added successfully"
    device: DeviceRead


class DeviceRemoved(BaseModel):
    message: str = "Device removed successfully"
    device_id: UUID = Field(serialization_alias="deviceId")
    firewall_removed: bool = Field(serialization_alias="opnsenseRemoved")


class InterfaceSection(BaseModel):
    private_key: str = Field(serialization_alias="privateKey")
    address: str
    dns: str


class PeerSection(BaseModel):
    public_key: str | None = Field(default=None, serialization_alias="publicKey")
    preshared_key: str | None = Field(default=None, serialization_alias="presharedKey")
    endpoint: str
    allowed_ips: str = Field(serialization_alias="allowedIPs")
    persistent_keepalive: int = Field(serialization_alias="persistentKeepalive")


class DeviceConfigDetail(BaseModel):
    device_name: str = Field(serialization_alias="deviceName")
    server: ServerDescriptor
    interface: InterfaceSection
    peer: PeerSection
    config_file: str = Field(serialization_alias="configFile")
