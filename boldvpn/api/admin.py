"""Operator endpoints: server registration, health and reconciliation."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from boldvpn.api.deps import get_firewall, require_admin
from boldvpn.db import get_db
from boldvpn.schemas.servers import (
    ReconciliationRead,
    ServerHealth,
    VpnServerCreate,
    VpnServerRead,
)
from boldvpn.services.opnsense import OPNsenseClient
from boldvpn.services.reconciliation import reconciliation
from boldvpn.services.vpn_servers import vpn_servers

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/servers", response_model=VpnServerRead, status_code=status.HTTP_201_CREATED)
def create_server(payload: VpnServerCreate, db: Session = Depends(get_db)):
    return vpn_servers.create(db, payload)


@router.get("/servers/health", response_model=ServerHealth)
def server_health(
    db: Session = Depends(get_db),
    firewall: OPNsenseClient = Depends(get_firewall),
):
    return vpn_servers.health_overview(db, firewall=firewall)


@router.get("/servers/{server_id}", response_model=VpnServerRead)
def get_server(server_id: str, db: Session = Depends(get_db)):
    return vpn_servers.get(db, server_id)


@router.post("/firewall/reconcile", response_model=ReconciliationRead)
def reconcile_firewall(
    db: Session = Depends(get_db),
    firewall: OPNsenseClient = Depends(get_firewall),
):
    """Run a reconciliation pass now and return its report."""
    report = reconciliation.run(db, firewall=firewall)
    return report.as_dict()
