"""
Entitlement precedence rules.

``decide`` is a pure function of one consistent snapshot of facts and the
current time. Rules are evaluated top-down and the first match wins:

1. Backend record ``active`` or ``trial``: access.
2. Backend record ``cancelled`` with an end date not yet passed: access
   (grace through the paid-for period).
3. A live store transaction the backend has not answered for yet: access,
   reported optimistically as ``active`` from the store.
4. Backend record ``cancelled`` past its end date, or ``expired``: no
   access. A confirmed expiry is sticky and beats the local trial.
5. Local trial active: access as ``trial``.
6. Local trial never started, or its storage unreadable: access as
   ``unknown``.
7. Otherwise no access, ``expired``.

A cached ``active``/``trial`` record that could not be refreshed keeps
granting until its own end date; after that it no longer counts.
"""

from datetime import datetime
from typing import Optional

from ..models import (
    BackendObservation, EntitlementSource, EntitlementStatus, ReconciledEntitlement,
    ReconciliationInputs, SubscriptionStatus, days_until,
)


def decide(inputs: ReconciliationInputs, now: datetime) -> ReconciledEntitlement:
    """Fold one snapshot of facts into a ``ReconciledEntitlement``."""
    backend = inputs.backend
    trial = inputs.trial
    is_stale = backend.is_stale if backend is not None else False

    trial_days = inputs.backend_trial_days
    if trial_days is None and trial is not None and trial.was_started:
        trial_days = trial.days_remaining(now)

    def entitlement(has_access: bool, status: EntitlementStatus, source: EntitlementSource,
                    plan: Optional[str] = None, expires_at: Optional[datetime] = None,
                    subscription_days: Optional[int] = None) -> ReconciledEntitlement:
        return ReconciledEntitlement(
            has_access=has_access,
            status=status,
            source=source,
            as_of=now,
            is_stale=is_stale,
            plan=plan,
            expires_at=expires_at,
            trial_days_remaining=trial_days,
            subscription_days_remaining=subscription_days,
        )

    def from_backend(has_access: bool, status: EntitlementStatus) -> ReconciledEntitlement:
        record = backend.record
        subscription_days = backend.subscription_days_remaining
        if subscription_days is None and record.end_date is not None:
            subscription_days = days_until(record.end_date, now)
        return entitlement(
            has_access, status, _backend_source(backend),
            plan=record.plan,
            expires_at=record.access_ends_at,
            subscription_days=subscription_days,
        )

    if backend is not None:
        record = backend.record
        if record.grants_access and not _lapsed_while_stale(backend, now):
            return from_backend(True, EntitlementStatus(record.status.value))

        if record.status == SubscriptionStatus.CANCELLED and record.end_date is not None and now <= record.end_date:
            return from_backend(True, EntitlementStatus.CANCELLED)

    store = inputs.store
    if store is not None and store.transaction.is_live(now):
        if backend is None or store.generation > backend.generation:
            transaction = store.transaction
            return entitlement(
                True, EntitlementStatus.ACTIVE, EntitlementSource.STORE,
                plan=transaction.plan.value,
                expires_at=transaction.expiration_date,
                subscription_days=days_until(transaction.expiration_date, now) if transaction.expiration_date else None,
            )

    if backend is not None:
        record = backend.record
        if record.status == SubscriptionStatus.CANCELLED:
            if record.end_date is None:
                return from_backend(False, EntitlementStatus.CANCELLED)
            return from_backend(False, EntitlementStatus.EXPIRED)
        if record.status == SubscriptionStatus.EXPIRED:
            return from_backend(False, EntitlementStatus.EXPIRED)

    if trial is None:
        return entitlement(True, EntitlementStatus.UNKNOWN, EntitlementSource.LOCAL_TRIAL)

    if trial.is_active(now):
        return entitlement(True, EntitlementStatus.TRIAL, EntitlementSource.LOCAL_TRIAL, expires_at=trial.ends_at)

    if not trial.was_started:
        return entitlement(True, EntitlementStatus.UNKNOWN, EntitlementSource.LOCAL_TRIAL)

    if backend is not None and backend.record.grants_access:
        return from_backend(False, EntitlementStatus.EXPIRED)
    return entitlement(False, EntitlementStatus.EXPIRED, EntitlementSource.LOCAL_TRIAL, expires_at=trial.ends_at)


def _backend_source(backend: BackendObservation) -> EntitlementSource:
    if backend.is_stale or backend.from_cache:
        return EntitlementSource.CACHE
    return EntitlementSource.BACKEND


def _lapsed_while_stale(backend: BackendObservation, now: datetime) -> bool:
    if not backend.is_stale:
        return False
    ends_at = backend.record.access_ends_at
    return ends_at is not None and ends_at < now
