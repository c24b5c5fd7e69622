"""
Unit tests for the reconciler.
"""

import asyncio
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx

from shared.errors import RateLimited, StorageUnavailable
from service_reconciler.app.backend.client import BackendSnapshot
from service_reconciler.app.models import (
    BackendSubscriptionRecord, EntitlementSource, EntitlementStatus, SubscriptionStatus,
)
from service_reconciler.app.reconcile.reconciler import SUBSCRIBER_QUEUE_SIZE, Reconciler
from service_reconciler.app.storage.kv_store import backend_record_key
from service_reconciler.tests.helpers import (
    T0, YEARLY, make_transaction, status_payload, verify_payload,
)


def snapshot(status: SubscriptionStatus, end_date=None, trial_days=None) -> BackendSnapshot:
    return BackendSnapshot(
        record=BackendSubscriptionRecord(status=status, plan="monthly", end_date=end_date),
        trial_days_remaining=trial_days,
    )


class TestReconcilerPasses:
    """Test cases for recomputation."""

    @pytest.mark.asyncio
    async def test_initial_entitlement_fails_open(self, reconciler):
        assert reconciler.current.has_access is True
        assert reconciler.current.status == EntitlementStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_reconcile_uses_local_trial(self, reconciler, trial_clock, clock):
        await trial_clock.start()
        clock.advance(hours=2)

        result = await reconciler.reconcile()

        assert result.status == EntitlementStatus.TRIAL
        assert reconciler.current == result

    @pytest.mark.asyncio
    async def test_trial_storage_failure_is_unknown(self, backend_client, status_cache, kv_store, session, clock):
        """Test unreadable trial storage yields unknown access, not denial."""
        trial_clock = MagicMock()
        trial_clock.state = AsyncMock(side_effect=StorageUnavailable("locked"))
        reconciler = Reconciler(trial_clock, backend_client, status_cache, kv_store, session, clock=clock)

        result = await reconciler.reconcile()

        assert result.has_access is True
        assert result.status == EntitlementStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_subscribers_receive_updates(self, reconciler, trial_clock):
        """Test subscribers get the current value, then each new pass."""
        queue = reconciler.subscribe()
        await trial_clock.start()

        await reconciler.reconcile()

        first = queue.get_nowait()
        second = queue.get_nowait()
        assert first.status == EntitlementStatus.UNKNOWN
        assert second.status == EntitlementStatus.TRIAL

        reconciler.unsubscribe(queue)
        await reconciler.reconcile()
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_passes_are_counted(self, reconciler, metrics):
        await reconciler.reconcile()

        assert metrics.sample("reconciliation_passes_total", status="unknown", source="local_trial") == 1.0
        assert metrics.sample("entitlement_has_access") == 1.0


class TestReconcilerFlows:
    """End-to-end flows through the reconciler."""

    @pytest.mark.asyncio
    async def test_verified_purchase_during_trial_is_active(self, reconciler, trial_clock, fake_backend, clock):
        """Test a verified purchase switches to backend active immediately."""
        await trial_clock.start()
        clock.advance(days=1)
        end_date = clock() + timedelta(days=30)
        fake_backend.set("/subscriptions/verify", verify_payload(end_date=end_date))
        transaction = make_transaction(purchase_date=clock())

        await reconciler.record_transaction(transaction)
        result = await reconciler.verify_transaction(transaction)

        assert result.has_access is True
        assert result.status == EntitlementStatus.ACTIVE
        assert result.source == EntitlementSource.BACKEND
        assert result.expires_at == end_date
        assert reconciler.pending_verification == []

    @pytest.mark.asyncio
    async def test_timeout_serves_cached_active_as_stale(self, reconciler, fake_backend, clock):
        """Test a timed-out refresh keeps the cached active decision, flagged stale."""
        fake_backend.set("/subscriptions/status", status_payload("active", end_date=T0 + timedelta(days=30)))
        fresh = await reconciler.refresh_status(force=True)
        assert fresh.status == EntitlementStatus.ACTIVE

        clock.advance(seconds=30)
        fake_backend.set("/subscriptions/status", httpx.ReadTimeout("slow"))

        cached = await reconciler.refresh_status()
        assert cached.status == EntitlementStatus.ACTIVE
        assert fake_backend.count("/subscriptions/status") == 1

        result = await reconciler.refresh_status(force=True)

        assert result.has_access is True
        assert result.status == EntitlementStatus.ACTIVE
        assert result.is_stale is True
        assert result.source == EntitlementSource.CACHE

    @pytest.mark.asyncio
    async def test_offline_purchase_is_optimistic_until_verified(self, reconciler, fake_backend, clock):
        """Test an offline store purchase is optimistic until verify succeeds."""
        fake_backend.set("/subscriptions/verify", httpx.ConnectError("offline"))
        transaction = make_transaction(YEARLY, days=365)

        await reconciler.record_transaction(transaction)
        assert await reconciler.verify_transaction(transaction) is None

        assert reconciler.current.has_access is True
        assert reconciler.current.status == EntitlementStatus.ACTIVE
        assert reconciler.current.source == EntitlementSource.STORE
        assert reconciler.pending_verification == [transaction]

        clock.advance(minutes=10)
        fake_backend.set("/subscriptions/verify", verify_payload(plan="yearly", end_date=T0 + timedelta(days=365)))
        await reconciler.retry_pending_verifications()

        assert reconciler.current.source == EntitlementSource.BACKEND
        assert reconciler.current.plan == "yearly"
        assert reconciler.pending_verification == []

    @pytest.mark.asyncio
    async def test_backend_verdict_corrects_optimistic_purchase(self, reconciler, fake_backend):
        """Test a later backend verdict corrects the optimistic store answer."""
        fake_backend.set("/subscriptions/verify", httpx.ConnectError("offline"))
        transaction = make_transaction(YEARLY, days=365)
        await reconciler.record_transaction(transaction)
        await reconciler.verify_transaction(transaction)

        fake_backend.set("/subscriptions/verify", verify_payload(status="expired", plan="yearly"))
        await reconciler.retry_pending_verifications()

        assert reconciler.current.has_access is False
        assert reconciler.current.status == EntitlementStatus.EXPIRED
        assert reconciler.current.source == EntitlementSource.BACKEND


class TestReconcilerTieBreak:
    """Test cases for store/backend ordering by generation."""

    @pytest.mark.asyncio
    async def test_backend_then_store(self, reconciler):
        """Test a store fact recorded after the backend answer is optimistic."""
        issued = reconciler.issue_generation()
        await reconciler.apply_backend(snapshot(SubscriptionStatus.EXPIRED), issued)

        result = await reconciler.record_transaction(make_transaction(YEARLY, days=365))

        assert result.has_access is True
        assert result.source == EntitlementSource.STORE

    @pytest.mark.asyncio
    async def test_store_then_backend(self, reconciler):
        """Test a backend answer requested after the store fact wins."""
        await reconciler.record_transaction(make_transaction(YEARLY, days=365))

        issued = reconciler.issue_generation()
        result = await reconciler.apply_backend(snapshot(SubscriptionStatus.EXPIRED), issued)

        assert result.has_access is False
        assert result.status == EntitlementStatus.EXPIRED
        assert result.source == EntitlementSource.BACKEND

    @pytest.mark.asyncio
    async def test_backend_requested_before_store_completes_after(self, reconciler):
        """Test a status request that predates the purchase cannot overrule it."""
        issued = reconciler.issue_generation()
        await reconciler.record_transaction(make_transaction(YEARLY, days=365))

        result = await reconciler.apply_backend(snapshot(SubscriptionStatus.EXPIRED), issued)

        assert result.has_access is True
        assert result.source == EntitlementSource.STORE

    @pytest.mark.asyncio
    async def test_older_transaction_does_not_replace_newer(self, reconciler, clock):
        newer = make_transaction(transaction_id="3000", purchase_date=T0 + timedelta(days=1))
        older = make_transaction(transaction_id="2000", purchase_date=T0)

        await reconciler.record_transaction(newer)
        await reconciler.record_transaction(older)

        assert reconciler.store_fact.transaction.transaction_id == "3000"

    @pytest.mark.asyncio
    async def test_concurrent_writes_are_serialized(self, reconciler, fake_backend):
        """Test concurrent passes each see a consistent snapshot."""
        fake_backend.set("/subscriptions/status", status_payload("active", end_date=T0 + timedelta(days=30)))

        results = await asyncio.gather(
            reconciler.refresh_status(force=True),
            reconciler.record_transaction(make_transaction()),
            reconciler.reconcile(),
        )

        assert all(r.has_access for r in results)
        assert reconciler.current.status == EntitlementStatus.ACTIVE


class TestReconcilerBackendFailures:
    """Test cases for backend error handling."""

    @pytest.mark.asyncio
    async def test_rate_limit_propagates_without_touching_state(self, reconciler, fake_backend):
        fake_backend.set("/subscriptions/status", httpx.Response(429))
        before = reconciler.current

        with pytest.raises(RateLimited):
            await reconciler.refresh_status(force=True)

        assert reconciler.current is before
        assert reconciler.cache.entry is None

    @pytest.mark.asyncio
    async def test_rejection_keeps_prior_entitlement(self, reconciler, fake_backend):
        fake_backend.set("/subscriptions/status", status_payload("active", end_date=T0 + timedelta(days=30)))
        prior = await reconciler.refresh_status(force=True)
        fake_backend.set("/subscriptions/status", httpx.Response(403, json={"message": "Forbidden"}))

        result = await reconciler.refresh_status(force=True)

        assert result == prior

    @pytest.mark.asyncio
    async def test_rejected_verify_drops_pending(self, reconciler, fake_backend):
        """Test a transaction the backend refuses is not retried forever."""
        fake_backend.set("/subscriptions/verify", httpx.Response(400, json={"message": "Invalid transaction data"}))
        transaction = make_transaction()
        await reconciler.record_transaction(transaction)

        assert await reconciler.verify_transaction(transaction) is None
        assert reconciler.pending_verification == []

    @pytest.mark.asyncio
    async def test_trial_days_are_sticky(self, reconciler):
        """Test trial days survive a later answer without a trial counter."""
        await reconciler.apply_backend(snapshot(SubscriptionStatus.TRIAL, trial_days=2), reconciler.issue_generation())

        result = await reconciler.apply_backend(
            snapshot(SubscriptionStatus.ACTIVE, end_date=T0 + timedelta(days=30)),
            reconciler.issue_generation()
        )

        assert result.status == EntitlementStatus.ACTIVE
        assert result.trial_days_remaining == 2


class TestReconcilerPersistence:
    """Test cases for the persisted backend record."""

    @pytest.mark.asyncio
    async def test_backend_record_round_trips_as_cache(self, reconciler, kv_store, backend_client,
                                                       status_cache, session, clock, trial_clock):
        """Test a restarted engine starts from the last known record, marked stale."""
        await reconciler.apply_backend(
            snapshot(SubscriptionStatus.ACTIVE, end_date=T0 + timedelta(days=30)),
            reconciler.issue_generation()
        )
        assert await kv_store.get(backend_record_key("user-1")) is not None

        restarted = Reconciler(trial_clock, backend_client, status_cache, kv_store, session, clock=clock)
        result = await restarted.load_persisted()

        assert result.has_access is True
        assert result.status == EntitlementStatus.ACTIVE
        assert result.source == EntitlementSource.CACHE
        assert result.is_stale is True

    @pytest.mark.asyncio
    async def test_reset_drops_backend_facts(self, reconciler, fake_backend):
        fake_backend.set("/subscriptions/verify", verify_payload(end_date=T0 + timedelta(days=30)))
        transaction = make_transaction()
        await reconciler.record_transaction(transaction)
        await reconciler.verify_transaction(transaction)

        result = await reconciler.reset()

        assert reconciler.store_fact is None
        assert reconciler.backend_observation is None
        assert reconciler.cache.entry is None
        assert result.status == EntitlementStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_reset_keeps_unverified_transactions(self, reconciler, session, fake_backend):
        """Test a transaction the backend has not seen survives logout and login."""
        session.logout()
        older = make_transaction(transaction_id="2000")
        newer = make_transaction(YEARLY, transaction_id="2001", purchase_date=T0 + timedelta(hours=1), days=365)
        for transaction in (older, newer):
            await reconciler.record_transaction(transaction)
            assert await reconciler.verify_transaction(transaction) is None
        assert fake_backend.calls == []

        result = await reconciler.reset()

        assert {t.transaction_id for t in reconciler.pending_verification} == {"2000", "2001"}
        assert reconciler.store_fact.transaction == newer
        assert result.source == EntitlementSource.STORE

        session.login("user-1", "token-1")
        fake_backend.set("/subscriptions/verify", verify_payload(plan="yearly", end_date=T0 + timedelta(days=365)))
        await reconciler.retry_pending_verifications()

        assert fake_backend.count("/subscriptions/verify") == 2
        assert reconciler.pending_verification == []
        assert reconciler.current.source == EntitlementSource.BACKEND


class TestReconcilerRateLimits:
    """Test cases for 429 answers to verify."""

    @pytest.fixture
    def pending(self, fake_backend):
        fake_backend.set("/subscriptions/verify", httpx.Response(429, headers={"Retry-After": "30"}))
        return make_transaction()

    @pytest.mark.asyncio
    async def test_single_verify_swallows_rate_limit(self, reconciler, pending):
        await reconciler.record_transaction(pending)

        assert await reconciler.verify_transaction(pending) is None
        assert reconciler.pending_verification == [pending]

    @pytest.mark.asyncio
    async def test_pending_retry_propagates_rate_limit(self, reconciler, pending, fake_backend):
        """Test re-verifying stops at the first 429 and keeps every transaction pending."""
        second = make_transaction(transaction_id="2001", purchase_date=T0 + timedelta(hours=1))
        await reconciler.record_transaction(pending)
        await reconciler.record_transaction(second)

        with pytest.raises(RateLimited) as exc_info:
            await reconciler.retry_pending_verifications()

        assert exc_info.value.retry_after == 30.0
        assert fake_backend.count("/subscriptions/verify") == 1
        assert len(reconciler.pending_verification) == 2


class TestReconcilerSubscribers:
    """Test cases for subscriber queues."""

    @pytest.mark.asyncio
    async def test_slow_subscriber_keeps_latest_values(self, reconciler, trial_clock, clock):
        queue = reconciler.subscribe()
        await trial_clock.start()

        for _ in range(SUBSCRIBER_QUEUE_SIZE + 5):
            clock.advance(hours=1)
            await reconciler.reconcile()

        assert queue.qsize() == SUBSCRIBER_QUEUE_SIZE
        received = [queue.get_nowait() for _ in range(SUBSCRIBER_QUEUE_SIZE)]
        assert received[-1] == reconciler.current
        assert all(entitlement.status == EntitlementStatus.TRIAL for entitlement in received)
