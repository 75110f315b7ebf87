from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def timestamp_field(**kwargs: Any) -> Any:
    # Timestamps are naive UTC; the column type is fixed so sqlmodel never
    # picks a timezone-aware type for plain datetime annotations.
    return Field(sa_type=DateTime(timezone=False), **kwargs)


class PlanId(str, Enum):
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


class FileRecord(SQLModel, table=True):
    __tablename__ = "files"

    id: str = Field(primary_key=True)
    name: str
    owner_id: str = Field(index=True)
    parent_id: Optional[str] = Field(default=None, nullable=True, index=True)
    size: int
    mime_type: str
    storage_key: Optional[str] = Field(default=None, nullable=True, unique=True)
    is_deleted: bool = Field(default=False)
    is_favorite: bool = Field(default=False)
    created_at: datetime = timestamp_field(default_factory=utcnow)
    updated_at: datetime = timestamp_field(default_factory=utcnow)

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "ownerId": self.owner_id,
            "parentId": self.parent_id,
            "size": self.size,
            "mimeType": self.mime_type,
            "isDeleted": self.is_deleted,
            "isFavorite": self.is_favorite,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


class SubscriptionRecord(SQLModel, table=True):
    __tablename__ = "subscriptions"

    user_id: str = Field(primary_key=True)
    plan_id: str
    status: str
    is_trial: bool = Field(default=False)
    current_period_start: Optional[datetime] = timestamp_field(default=None, nullable=True)
    current_period_end: Optional[datetime] = timestamp_field(default=None, nullable=True)
    trial_start: Optional[datetime] = timestamp_field(default=None, nullable=True)
    trial_end: Optional[datetime] = timestamp_field(default=None, nullable=True)
    cancel_at_period_end: bool = Field(default=False)
    provider_subscription_id: Optional[str] = Field(default=None, nullable=True, unique=True)
    provider_customer_id: Optional[str] = Field(default=None, nullable=True, index=True)
    created_at: datetime = timestamp_field(default_factory=utcnow)
    updated_at: datetime = timestamp_field(default_factory=utcnow)

    def to_public(self) -> dict:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "userId": self.user_id,
            "planId": self.plan_id,
            "status": self.status,
            "isTrial": self.is_trial,
            "currentPeriodStart": _iso(self.current_period_start),
            "currentPeriodEnd": _iso(self.current_period_end),
            "trialStart": _iso(self.trial_start),
            "trialEnd": _iso(self.trial_end),
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "providerSubscriptionId": self.provider_subscription_id,
            "providerCustomerId": self.provider_customer_id,
            "updatedAt": _iso(self.updated_at),
        }
