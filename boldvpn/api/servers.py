from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from boldvpn.api.deps import get_current_user
from boldvpn.db import get_db
from boldvpn.schemas.servers import VpnServerRead
from boldvpn.services.vpn_servers import vpn_servers

router = APIRouter(prefix="/servers", tags=["servers"])


@router.get("", response_model=list[VpnServerRead])
def list_servers(
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Servers currently accepting new devices."""
    return vpn_servers.list_active(db)
