"""Account details that sit beside the FreeRADIUS tables."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Enum, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from boldvpn.db import Base


class PlanTier(enum.Enum):
    basic = "basic"
    premium = "premium"
    family = "family"


class SubscriptionStatus(enum.Enum):
    none = "none"
    active = "active"
    trialing = "trialing"
    past_due = "past_due"
    canceled = "canceled"
    expired = "expired"


class UserDetails(Base):
    __tablename__ = "user_details"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(String(255))
    plan_tier: Mapped[PlanTier] = mapped_column(Enum(PlanTier), default=PlanTier.basic)
    subscription_status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.none
    )
    subscription_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
