from typing import Any, cast

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from boldvpn.config import settings
from boldvpn.db import get_db
from boldvpn.services.opnsense import OPNsenseClient, get_firewall_client


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def decode_access_token(token: str) -> dict:
    if not settings.jwt_secret:
        raise HTTPException(status_code=503, detail="Authentication is not configured")
    try:
        return cast(
            dict[Any, Any],
            jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]),
        )
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc


def get_current_user(authorization: str | None = Header(default=None)) -> dict:
    """Authenticated user from a bearer token issued by the account service.

    Returns a dict with username and roles.
    """
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    payload = decode_access_token(token)
    username = payload.get("sub")
    if not username:
        raise HTTPException(status_code=401, detail="Unauthorized")
    roles_value = payload.get("roles")
    roles = [str(role) for role in roles_value] if isinstance(roles_value, list) else []
    return {"username": str(username), "roles": roles}


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if "admin" not in user["roles"]:
        raise HTTPException(status_code=403, detail="Forbidden")
    return user


def get_firewall() -> OPNsenseClient:
    return get_firewall_client()


__all__ = [
    "get_db",
    "get_current_user",
    "get_firewall",
    "require_admin",
]
