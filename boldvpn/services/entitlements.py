"""Subscription eligibility and plan limits for device provisioning."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from boldvpn.config import settings
from boldvpn.models.radius import SIMULTANEOUS_USE, RadReply
from boldvpn.models.subscriber import PlanTier, SubscriptionStatus, UserDetails
from boldvpn.models.vpn import VpnServer
from boldvpn.services.common import ensure_utc_aware, utc_now
from boldvpn.services.provisioning_errors import (
    PremiumServerRequired,
    SubscriptionExpired,
    SubscriptionRequired,
)

logger = logging.getLogger(__name__)

ENTITLED_STATUSES = {SubscriptionStatus.active, SubscriptionStatus.trialing}
PREMIUM_TIERS = {PlanTier.premium, PlanTier.family}


def get_user_details(db: Session, username: str) -> UserDetails | None:
    return db.query(UserDetails).filter(UserDetails.username == username).first()


def lock_user_details(db: Session, username: str) -> UserDetails | None:
    """Lock the user's row until the current transaction ends."""
    return (
        db.query(UserDetails)
        .filter(UserDetails.username == username)
        .with_for_update()
        .first()
    )


def ensure_can_provision(db: Session, username: str) -> UserDetails:
    """Check the user's subscription allows adding devices.

    Raises:
        SubscriptionExpired: If the subscription lapsed
        SubscriptionRequired: If there is no entitling subscription
    """
    details = get_user_details(db, username)
    if details is None:
        raise SubscriptionRequired()

    status = details.subscription_status
    if status == SubscriptionStatus.expired:
        raise SubscriptionExpired()
    if status not in ENTITLED_STATUSES:
        raise SubscriptionRequired(subscription_status=status.value if status else None)

    expires_at = ensure_utc_aware(details.subscription_expires_at)
    if expires_at is not None and expires_at <= utc_now():
        raise SubscriptionExpired(expired_at=expires_at.isoformat())
    return details


def device_limit(db: Session, username: str) -> int:
    """Maximum active devices, from the RADIUS Simultaneous-Use reply attribute."""
    reply = (
        db.query(RadReply)
        .filter(RadReply.username == username)
        .filter(RadReply.attribute == SIMULTANEOUS_USE)
        .order_by(RadReply.id.desc())
        .first()
    )
    if reply is None:
        return settings.default_device_limit
    try:
        return int(reply.value)
    except (TypeError, ValueError):
        logger.warning(
            "Invalid %s value %r for %s; using default", SIMULTANEOUS_USE, reply.value, username
        )
        return settings.default_device_limit


def ensure_server_access(details: UserDetails, server: VpnServer) -> None:
    """Premium servers need a premium or family plan."""
    if not server.is_premium:
        return
    if details.plan_tier not in PREMIUM_TIERS:
        raise PremiumServerRequired(
            plan_tier=details.plan_tier.value if details.plan_tier else None,
            server_id=str(server.id),
        )
