from boldvpn.models.radius import SIMULTANEOUS_USE, RadReply  # noqa: F401
from boldvpn.models.sequence import NamedSequence  # noqa: F401
from boldvpn.models.subscriber import (  # noqa: F401
    PlanTier,
    SubscriptionStatus,
    UserDetails,
)
from boldvpn.models.vpn import UserDevice, VpnServer, VpnServerStatus  # noqa: F401
