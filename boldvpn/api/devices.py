"""Device management endpoints for the authenticated user."""

from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from boldvpn.api.deps import get_current_user, get_firewall
from boldvpn.db import get_db
from boldvpn.schemas.devices import (
    DeviceConfigDetail,
    DeviceCreate,
    DeviceCreated,
    DeviceRead,
    DeviceRemoved,
    DeviceUpdate,
)
from boldvpn.services.devices import devices
from boldvpn.services.opnsense import OPNsenseClient

router = APIRouter(prefix="/devices", tags=["devices"])


@router.get("", response_model=list[DeviceRead])
def list_devices(
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    return devices.list_for_user(db, current_user["username"])


@router.post("", response_model=DeviceCreated, status_code=status.HTTP_201_CREATED)
def create_device(
    payload: DeviceCreate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    firewall: OPNsenseClient = Depends(get_firewall),
):
    """Provision a device: firewall peer, address and keys."""
    device = devices.create(
        db,
        current_user["username"],
        payload.device_name,
        payload.server_id,
        firewall=firewall,
    )
    return DeviceCreated(device=DeviceRead.model_validate(device))


@router.get("/{device_id}", response_model=DeviceRead)
def get_device(
    device_id: UUID,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    return devices.get_for_user(db, current_user["username"], device_id)


@router.patch("/{device_id}", response_model=DeviceRead)
def update_device(
    device_id: UUID,
    payload: DeviceUpdate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    return devices.update(
        db,
        current_user["username"],
        device_id,
        device_name=payload.device_name,
        dns_servers=payload.dns_servers,
    )


@router.delete("/{device_id}", response_model=DeviceRemoved)
def remove_device(
    device_id: UUID,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    firewall: OPNsenseClient = Depends(get_firewall),
):
    """Remove a device. Succeeds even if the firewall peer could not be removed yet."""
    result = devices.remove(db, current_user["username"], device_id, firewall=firewall)
    return DeviceRemoved(**result)


@router.get("/{device_id}/config", response_class=PlainTextResponse)
def download_device_config(
    device_id: UUID,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    config_text, filename = devices.get_config(db, current_user["username"], device_id)
    return PlainTextResponse(
        content=config_text,
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Type": "text/plain; charset=utf-8",
        },
    )


@router.get("/{device_id}/config/json", response_model=DeviceConfigDetail)
def get_device_config_detail(
    device_id: UUID,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    return devices.get_config_detail(db, current_user["username"], device_id)


@router.get("/{device_id}/qr")
def get_device_config_qr(
    device_id: UUID,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    png = devices.get_config_qr(db, current_user["username"], device_id)
    return Response(content=png, media_type="image/png")
