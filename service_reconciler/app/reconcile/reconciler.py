"""
Reconciler: owns the facts and the single current ``ReconciledEntitlement``.
"""

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from shared.errors import (
    BackendError, BackendRejected, NetworkUnreachable, NotAuthenticated, RateLimited, StorageUnavailable,
)
from shared.logging import bound_context, get_logger
from shared.metrics import MetricsCollector
from ..backend.client import BackendClient, BackendSnapshot
from ..cache.status_cache import StatusCache
from ..models import (
    AuthSession, BackendObservation, BackendSubscriptionRecord, ReconciledEntitlement,
    ReconciliationInputs, StoreFact, TrialState, VerifiedTransaction, utcnow,
)
from ..storage.kv_store import KeyValueStore, backend_record_key
from ..trial.clock import TrialClock
from .precedence import decide


SUBSCRIBER_QUEUE_SIZE = 16

class Reconciler:
    """Serializes every write to the entitlement behind one lock.

    Facts (latest store transaction, latest backend observation) are updated
    and a full pass is recomputed inside the same critical section, so
    ``current`` always reflects one consistent snapshot. Network calls happen
    outside the lock; their results are applied in completion order.
    """

    def __init__(self,
                 trial_clock: TrialClock,
                 backend: BackendClient,
                 cache: StatusCache,
                 store: KeyValueStore,
                 session: AuthSession,
                 clock: Callable[[], datetime] = utcnow,
                 metrics: Optional[MetricsCollector] = None):
        self.trial_clock = trial_clock
        self.backend = backend
        self.cache = cache
        self.store = store
        self.session = session
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("reconciler.reconciler")

        self._lock = asyncio.Lock()
        self._generation = 0
        self._store_fact: Optional[StoreFact] = None
        self._backend: Optional[BackendObservation] = None
        self._backend_trial_days: Optional[int] = None
        self._pending_verification: Dict[str, VerifiedTransaction] = {}
        self._current = ReconciledEntitlement.initial(clock())
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def current(self) -> ReconciledEntitlement:
        return self._current

    @property
    def backend_observation(self) -> Optional[BackendObservation]:
        return self._backend

    @property
    def store_fact(self) -> Optional[StoreFact]:
        return self._store_fact

    @property
    def pending_verification(self) -> List[VerifiedTransaction]:
        return list(self._pending_verification.values())

    def issue_generation(self) -> int:
        """Stamp for a backend request about to be issued."""
        self._generation += 1
        return self._generation

    # ------------------------------------------------------------------ passes

    async def reconcile(self) -> ReconciledEntitlement:
        """Recompute from current facts."""
        async with self._lock:
            return await self._pass()

    async def _pass(self) -> ReconciledEntitlement:
        trial = await self._load_trial()
        inputs = ReconciliationInputs(
            trial=trial,
            store=self._store_fact,
            backend=self._backend,
            backend_trial_days=self._backend_trial_days,
        )
        entitlement = decide(inputs, self.clock())
        self._publish(entitlement)
        return entitlement

    async def _load_trial(self) -> Optional[TrialState]:
        try:
            return await self.trial_clock.state()
        except StorageUnavailable as e:
            self.logger.warning("Trial state unknown", error=e.message)
            if self.metrics:
                self.metrics.record_error("storage_unavailable")
            return None

    def _publish(self, entitlement: ReconciledEntitlement):
        previous = self._current
        self._current = entitlement
        self.cache.replace_entitlement(entitlement)
        if self.metrics:
            self.metrics.record_pass(entitlement.status.value, entitlement.source.value, entitlement.has_access)
        if previous.has_access != entitlement.has_access or previous.status != entitlement.status:
            self.logger.info(
                "Entitlement changed",
                has_access=entitlement.has_access,
                status=entitlement.status.value,
                source=entitlement.source.value,
                is_stale=entitlement.is_stale
            )
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(entitlement)

    # ------------------------------------------------------------------ facts

    async def record_transaction(self, transaction: VerifiedTransaction) -> ReconciledEntitlement:
        """Accept a verified store transaction as a new fact."""
        async with self._lock:
            existing = self._store_fact
            if existing is None or transaction.purchase_date >= existing.transaction.purchase_date:
                self._generation += 1
                self._store_fact = StoreFact(transaction=transaction, generation=self._generation)
            self._pending_verification[transaction.transaction_id] = transaction
            self.logger.info(
                "Store transaction recorded",
                transaction_id=transaction.transaction_id,
                product_id=transaction.product_id,
                revoked=transaction.is_revoked
            )
            return await self._pass()

    async def apply_backend(self, snapshot: BackendSnapshot, issued_generation: int) -> ReconciledEntitlement:
        """Adopt a fresh backend answer and cache the resulting decision."""
        async with self._lock:
            now = self.clock()
            self._backend = BackendObservation(
                record=snapshot.record,
                observed_at=now,
                generation=issued_generation,
                trial_days_remaining=snapshot.trial_days_remaining,
                subscription_days_remaining=snapshot.subscription_days_remaining,
            )
            if snapshot.trial_days_remaining is not None:
                self._backend_trial_days = snapshot.trial_days_remaining
            entitlement = await self._pass()
            self.cache.put(entitlement, fetched_at=now)
            await self._persist(self._backend)
            return entitlement

    async def mark_backend_unreachable(self) -> ReconciledEntitlement:
        """Keep the last backend record, flagged stale, and recompute."""
        async with self._lock:
            if self._backend is not None and not self._backend.is_stale:
                self._backend = replace(self._backend, is_stale=True)
            return await self._pass()

    # ------------------------------------------------------------------ backend

    async def refresh_status(self, force: bool = False) -> ReconciledEntitlement:
        """Cache-aside ``status()`` refresh.

        Network failures fail open on the last known record. Rejections keep
        the prior decision. ``RateLimited`` propagates so the caller can skip
        the rest of its cycle without touching the cache.
        """
        if not force:
            entry = self.cache.get_fresh()
            if entry is not None:
                return entry.entitlement

        issued = self.issue_generation()
        try:
            snapshot = await self.backend.status()
        except RateLimited:
            raise
        except NetworkUnreachable as e:
            self.logger.warning("Status refresh failed, serving last known record", error=e.message)
            return await self.mark_backend_unreachable()
        except BackendRejected as e:
            self.logger.error("Status refresh rejected, keeping prior entitlement", code=e.code, error=e.message)
            return self._current
        return await self.apply_backend(snapshot, issued)

    async def verify_transaction(self, transaction: VerifiedTransaction,
                                 raise_rate_limited: bool = False) -> Optional[ReconciledEntitlement]:
        """Route a store transaction through backend verify.

        Returns None when verify could not complete; the transaction then
        stays an optimistic fact and is retried on the next cycle. With
        ``raise_rate_limited`` a 429 propagates instead, so a scheduled
        cycle can stop before its remaining backend calls.
        """
        with bound_context(transaction_id=transaction.transaction_id):
            issued = self.issue_generation()
            try:
                snapshot = await self.backend.verify(transaction)
            except BackendRejected as e:
                self._pending_verification.pop(transaction.transaction_id, None)
                self.logger.error("Backend rejected transaction", code=e.code, error=e.message)
                return None
            except RateLimited as e:
                self.logger.warning("Backend verify rate limited, transaction stays optimistic",
                                    retry_after=e.retry_after)
                if raise_rate_limited:
                    raise
                return None
            except (BackendError, NotAuthenticated) as e:
                self.logger.warning("Backend verify failed, transaction stays optimistic", code=e.code, error=e.message)
                return None

            self._pending_verification.pop(transaction.transaction_id, None)
            return await self.apply_backend(snapshot, issued)

    async def retry_pending_verifications(self):
        """Re-verify every pending transaction; ``RateLimited`` propagates."""
        for transaction in self.pending_verification:
            await self.verify_transaction(transaction, raise_rate_limited=True)

    # ------------------------------------------------------------------ session

    async def load_persisted(self) -> ReconciledEntitlement:
        """Restore the last backend record for the session user, marked stale."""
        async with self._lock:
            if self.session.is_authenticated:
                try:
                    data = await self.store.get(backend_record_key(self.session.user_id))
                except StorageUnavailable as e:
                    self.logger.warning("Cannot load persisted backend record", error=e.message)
                    data = None
                if data:
                    self._backend = BackendObservation(
                        record=BackendSubscriptionRecord.from_dict(data["record"]),
                        observed_at=datetime.fromisoformat(data["observed_at"]),
                        generation=0,
                        is_stale=True,
                        from_cache=True
                    )
                    self._backend_trial_days = data.get("trial_days_remaining")
                    self.logger.info("Loaded persisted backend record", status=self._backend.record.status.value)
            return await self._pass()

    async def _persist(self, observation: BackendObservation):
        if not self.session.is_authenticated:
            return
        payload = {
            "record": observation.record.to_dict(),
            "observed_at": observation.observed_at.isoformat(),
            "trial_days_remaining": self._backend_trial_days,
        }
        try:
            await self.store.set(backend_record_key(self.session.user_id), payload)
        except StorageUnavailable as e:
            self.logger.warning("Cannot persist backend record", error=e.message)

    async def reset(self) -> ReconciledEntitlement:
        """Drop the backend facts, e.g. on login or logout.

        Transactions still waiting for backend verify are kept, since the
        store has already been told they are finished. The newest of them
        stays the store fact until the next cycle verifies it.
        """
        async with self._lock:
            self._backend = None
            self._backend_trial_days = None
            self._store_fact = None
            if self._pending_verification:
                latest = max(self._pending_verification.values(), key=lambda t: t.purchase_date)
                self._generation += 1
                self._store_fact = StoreFact(transaction=latest, generation=self._generation)
                self.logger.info("Keeping unverified transactions across reset",
                                 pending=len(self._pending_verification))
            self.cache.invalidate()
            return await self._pass()

    # ------------------------------------------------------------------ observers

    def subscribe(self) -> asyncio.Queue:
        """Queue receiving the current and every later entitlement.

        The queue is bounded; a subscriber that falls behind loses the
        oldest values, never the latest one.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        queue.put_nowait(self._current)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        self._subscribers.discard(queue)
