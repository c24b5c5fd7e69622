"""
Response schemas for the subscription backend.

Fields are camelCase on the wire. Optional fields are explicit, counters
default to zero, unknown fields are ignored.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..models import BackendSubscriptionRecord, SubscriptionStatus


class BackendModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class SubscriptionPayload(BackendModel):
    status: SubscriptionStatus = SubscriptionStatus.FREE
    plan: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None

    def to_record(self) -> BackendSubscriptionRecord:
        return BackendSubscriptionRecord(
            status=self.status,
            plan=self.plan,
            start_date=self.start_date,
            end_date=self.end_date,
            trial_end_date=self.trial_end_date,
        )


class VerifyResponse(BackendModel):
    """POST /subscriptions/verify"""
    success: bool
    subscription_status: SubscriptionStatus
    plan: Optional[str] = None
    expires_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    trial_days_remaining: int = Field(0, ge=0)
    subscription_days_remaining: int = Field(0, ge=0)
    is_in_trial: bool = False

    def to_record(self) -> BackendSubscriptionRecord:
        # Store expiry dates are accelerated in sandbox; the backend's own
        # calculated end date follows the real renewal calendar.
        return BackendSubscriptionRecord(
            status=self.subscription_status,
            plan=self.plan,
            end_date=self.end_date or self.expires_date,
        )


class StatusResponse(BackendModel):
    """GET /subscriptions/status"""
    has_active_subscription: bool = False
    is_premium_active: bool = False
    is_in_trial: bool = False
    is_cancelled: bool = False
    is_expired: bool = False
    subscription: SubscriptionPayload = Field(default_factory=SubscriptionPayload)
    trial_days_remaining: int = Field(0, ge=0)
    subscription_days_remaining: int = Field(0, ge=0)


class SyncResponse(BackendModel):
    """POST /subscriptions/sync"""
    success: bool
    subscription: SubscriptionPayload = Field(default_factory=SubscriptionPayload)
    status_changed: bool = False


class CancelResponse(BackendModel):
    """POST /subscriptions/cancel"""
    message: Optional[str] = None
    subscription: SubscriptionPayload
    days_remaining: int = Field(0, ge=0)


def status_record(response: StatusResponse) -> BackendSubscriptionRecord:
    """Record from a status response, letting the summary flags win."""
    status = response.subscription.status
    if response.is_cancelled:
        status = SubscriptionStatus.CANCELLED
    elif response.is_expired:
        status = SubscriptionStatus.EXPIRED
    elif response.is_in_trial:
        status = SubscriptionStatus.TRIAL
    elif response.is_premium_active:
        status = SubscriptionStatus.ACTIVE
    record = response.subscription.to_record()
    if record.status == status:
        return record
    return BackendSubscriptionRecord(
        status=status,
        plan=record.plan,
        start_date=record.start_date,
        end_date=record.end_date,
        trial_end_date=record.trial_end_date,
    )
