"""
Data models for the entitlement reconciliation engine.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


SECONDS_PER_DAY = 86400


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def days_until(end: Optional[datetime], now: datetime) -> int:
    """Whole days left until ``end``, rounded up, never negative."""
    if end is None:
        return 0
    remaining = (end - now).total_seconds() / SECONDS_PER_DAY
    return max(0, math.ceil(remaining))


class EntitlementStatus(str, Enum):
    """Reconciled entitlement status."""
    UNKNOWN = "unknown"
    FREE = "free"
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SubscriptionStatus(str, Enum):
    """Status values the backend stores on its subscription record."""
    FREE = "free"
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class EntitlementSource(str, Enum):
    """Which fact decided a reconciliation pass."""
    LOCAL_TRIAL = "local_trial"
    STORE = "store"
    BACKEND = "backend"
    CACHE = "cache"


class Plan(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @classmethod
    def from_product_id(cls, product_id: str) -> "Plan":
        return cls.YEARLY if "yearly" in product_id else cls.MONTHLY


@dataclass(frozen=True)
class TrialState:
    """Persisted local trial window. ``started_at`` is None until the trial starts."""
    started_at: Optional[datetime] = None
    duration: timedelta = timedelta(days=3)

    @property
    def ends_at(self) -> Optional[datetime]:
        if self.started_at is None:
            return None
        return self.started_at + self.duration

    @property
    def was_started(self) -> bool:
        return self.started_at is not None

    def is_active(self, now: datetime) -> bool:
        ends_at = self.ends_at
        return ends_at is not None and now < ends_at

    def days_remaining(self, now: datetime) -> int:
        return days_until(self.ends_at, now)


@dataclass(frozen=True)
class VerifiedTransaction:
    """One store purchase or renewal that passed the store's authenticity check."""
    product_id: str
    transaction_id: str
    purchase_date: datetime
    expiration_date: Optional[datetime] = None
    is_in_introductory_period: bool = False
    original_transaction_id: Optional[str] = None
    revocation_date: Optional[datetime] = None
    environment: str = "Production"
    json_representation: bytes = b""

    @property
    def plan(self) -> Plan:
        return Plan.from_product_id(self.product_id)

    @property
    def is_revoked(self) -> bool:
        return self.revocation_date is not None

    def is_live(self, now: datetime) -> bool:
        """Not revoked and not past its store expiration date."""
        if self.is_revoked:
            return False
        return self.expiration_date is None or self.expiration_date > now


@dataclass(frozen=True)
class BackendSubscriptionRecord:
    """Authoritative server-side subscription record. Read-only on the client."""
    status: SubscriptionStatus
    plan: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None

    @property
    def grants_access(self) -> bool:
        return self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL)

    @property
    def access_ends_at(self) -> Optional[datetime]:
        if self.status == SubscriptionStatus.TRIAL and self.trial_end_date is not None:
            return self.trial_end_date
        return self.end_date

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "plan": self.plan,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "trial_end_date": _iso(self.trial_end_date),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BackendSubscriptionRecord":
        return cls(
            status=SubscriptionStatus(data["status"]),
            plan=data.get("plan"),
            start_date=_parse(data.get("start_date")),
            end_date=_parse(data.get("end_date")),
            trial_end_date=_parse(data.get("trial_end_date")),
        )


@dataclass(frozen=True)
class BackendObservation:
    """A backend record as seen by the engine.

    ``generation`` is the engine generation at the moment the request was
    issued; it orders the observation against store facts.
    """
    record: BackendSubscriptionRecord
    observed_at: datetime
    generation: int
    is_stale: bool = False
    from_cache: bool = False
    trial_days_remaining: Optional[int] = None
    subscription_days_remaining: Optional[int] = None


@dataclass(frozen=True)
class StoreFact:
    """Most recent verified store transaction and its generation."""
    transaction: VerifiedTransaction
    generation: int


@dataclass(frozen=True)
class ReconciliationInputs:
    """Consistent snapshot of every fact a pass consumes.

    ``trial`` is None when trial storage could not be read.
    """
    trial: Optional[TrialState]
    store: Optional[StoreFact]
    backend: Optional[BackendObservation]
    backend_trial_days: Optional[int] = None


class ReconciledEntitlement(BaseModel):
    """The engine's single output. Replaced atomically, never patched."""
    model_config = ConfigDict(frozen=True)

    has_access: bool = Field(..., description="Whether gated functionality is allowed")
    status: EntitlementStatus = Field(..., description="Reconciled status")
    source: EntitlementSource = Field(..., description="Fact that decided this pass")
    as_of: datetime = Field(..., description="When the pass ran")
    is_stale: bool = Field(False, description="Decided from a backend record whose refresh failed")
    plan: Optional[str] = Field(None, description="Subscription plan, when known")
    expires_at: Optional[datetime] = Field(None, description="When the current grant ends, when known")
    trial_days_remaining: Optional[int] = Field(None, description="Displayed trial countdown")
    subscription_days_remaining: Optional[int] = Field(None, description="Days left on the paid period")

    @classmethod
    def initial(cls, now: Optional[datetime] = None) -> "ReconciledEntitlement":
        """Placeholder before the first pass: brand-new sessions fail open."""
        return cls(
            has_access=True,
            status=EntitlementStatus.UNKNOWN,
            source=EntitlementSource.LOCAL_TRIAL,
            as_of=now or utcnow(),
        )


@dataclass(frozen=True)
class CacheEntry:
    """Last reconciled entitlement with its fetch time and TTL."""
    entitlement: ReconciledEntitlement
    fetched_at: datetime
    ttl: timedelta = timedelta(seconds=60)

    def is_fresh(self, now: datetime) -> bool:
        return now - self.fetched_at < self.ttl

    def age_seconds(self, now: datetime) -> float:
        return (now - self.fetched_at).total_seconds()


class AccessDecision(BaseModel):
    """What the rest of the application asks the engine."""
    model_config = ConfigDict(frozen=True)

    allow: bool
    should_show_paywall: bool
    status: EntitlementStatus
    source: EntitlementSource


@dataclass
class AuthSession:
    """Authenticated user for the current process."""
    user_id: Optional[str] = None
    access_token: Optional[str] = None
    onboarding_complete: bool = False

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    def login(self, user_id: str, access_token: Optional[str] = None, onboarding_complete: bool = False):
        self.user_id = user_id
        self.access_token = access_token
        self.onboarding_complete = onboarding_complete

    def logout(self):
        self.user_id = None
        self.access_token = None
        self.onboarding_complete = False


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
