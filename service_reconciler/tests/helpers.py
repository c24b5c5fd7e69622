"""
Test doubles and payload builders for reconciler service tests.
"""

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from service_reconciler.app.models import VerifiedTransaction


T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
BASE_URL = "http://backend.test/api"
MONTHLY = "com.gofitai.premium.monthly"
YEARLY = "com.gofitai.premium.yearly"


class FakeClock:
    """Settable wall clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeBackend:
    """Scriptable subscription backend served through httpx.MockTransport.

    Each endpoint answers from its queue first, then from its default.
    Queue items may be a JSON dict, an ``httpx.Response`` or an exception
    to raise from the transport.
    """

    def __init__(self):
        self.queued: Dict[str, List[Any]] = defaultdict(list)
        self.defaults: Dict[str, Any] = {}
        self.calls: List[str] = []
        self.requests: List[httpx.Request] = []

    def queue(self, endpoint: str, *items: Any):
        self.queued[endpoint].extend(items)

    def set(self, endpoint: str, item: Any):
        self.defaults[endpoint] = item

    def count(self, endpoint: str) -> int:
        return self.calls.count(endpoint)

    def handler(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path[len("/api"):]
        self.calls.append(endpoint)
        self.requests.append(request)

        if self.queued[endpoint]:
            item = self.queued[endpoint].pop(0)
        else:
            item = self.defaults.get(endpoint)

        if item is None:
            return httpx.Response(404, json={"message": "Not found"})
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, json=item)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def subscription_payload(status: str = "active", plan: Optional[str] = "monthly",
                         start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                         trial_end_date: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "status": status,
        "plan": plan,
        "startDate": iso(start_date),
        "endDate": iso(end_date),
        "trialEndDate": iso(trial_end_date),
    }


def status_payload(status: str = "active", plan: Optional[str] = "monthly",
                   end_date: Optional[datetime] = None, trial_end_date: Optional[datetime] = None,
                   trial_days: int = 0, subscription_days: int = 0) -> Dict[str, Any]:
    return {
        "hasActiveSubscription": status in ("active", "trial"),
        "isPremiumActive": status == "active",
        "isInTrial": status == "trial",
        "isCancelled": status == "cancelled",
        "isExpired": status == "expired",
        "subscription": subscription_payload(status, plan, end_date=end_date, trial_end_date=trial_end_date),
        "trialDaysRemaining": trial_days,
        "subscriptionDaysRemaining": subscription_days,
    }


def verify_payload(status: str = "active", plan: str = "monthly", end_date: Optional[datetime] = None,
                   expires_date: Optional[datetime] = None, success: bool = True,
                   is_in_trial: bool = False, trial_days: int = 0) -> Dict[str, Any]:
    return {
        "success": success,
        "subscriptionStatus": status,
        "plan": plan,
        "expiresDate": iso(expires_date),
        "endDate": iso(end_date),
        "trialDaysRemaining": trial_days,
        "subscriptionDaysRemaining": 30,
        "isInTrial": is_in_trial,
    }


def sync_payload(status: str = "active", end_date: Optional[datetime] = None,
                 status_changed: bool = False) -> Dict[str, Any]:
    return {
        "success": True,
        "subscription": subscription_payload(status, end_date=end_date),
        "statusChanged": status_changed,
    }


def make_transaction(product_id: str = MONTHLY, transaction_id: str = "2000",
                     purchase_date: datetime = T0, days: int = 30,
                     revoked: bool = False) -> VerifiedTransaction:
    return VerifiedTransaction(
        product_id=product_id,
        transaction_id=transaction_id,
        original_transaction_id="2000",
        purchase_date=purchase_date,
        expiration_date=purchase_date + timedelta(days=days),
        revocation_date=purchase_date if revoked else None,
        environment="Sandbox",
    )


