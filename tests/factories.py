"""Row factories shared by the test modules."""

import uuid
from datetime import datetime, timedelta, timezone

from boldvpn.models import (
    SIMULTANEOUS_USE,
    PlanTier,
    RadReply,
    SubscriptionStatus,
    UserDetails,
    VpnServer,
    VpnServerStatus,
)


def make_server(db, **overrides) -> VpnServer:
    values = {
        "name": f"US East {uuid.uuid4().hex[:6]}",
        "country_code": "US",
        "country": "United States",
        "city": "New York",
        "flag_emoji": "\U0001F1FA\U0001F1F8",
        "wireguard_public_key": "c2VydmVyLXB1YmxpYy1rZXktYmFzZTY0LWVuY29kZWQ=",
        "wireguard_endpoint": "us-east.boldvpn.net:51820",
        "subnet": "10.0.0.0/24",
        "ip_range_start": "10.0.0.2",
        "ip_range_end": "10.0.0.10",
        "status": VpnServerStatus.active,
        "is_premium": False,
    }
    values.update(overrides)
    server = VpnServer(**values)
    db.add(server)
    db.commit()
    db.refresh(server)
    return server


def make_user(
    db,
    username: str = "alice",
    status: SubscriptionStatus = SubscriptionStatus.active,
    plan_tier: PlanTier = PlanTier.basic,
    expires_in: timedelta | None = timedelta(days=30),
    device_limit: int | None = None,
) -> UserDetails:
    expires_at = datetime.now(timezone.utc) + expires_in if expires_in is not None else None
    user = UserDetails(
        username=username,
        email=f"{username}@example.com",
        plan_tier=plan_tier,
        subscription_status=status,
        subscription_expires_at=expires_at,
    )
    db.add(user)
    if device_limit is not None:
        db.add(RadReply(username=username, attribute=SIMULTANEOUS_USE, op=":=", value=str(device_limit)))
    db.commit()
    db.refresh(user)
    return user
