"""
Entitlement engine: the process-wide service object owning reconciliation.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import httpx

from shared.circuit_breaker import CircuitBreaker
from shared.config import BaseConfig
from shared.errors import (
    NetworkUnreachable, NotAuthenticated, ProductNotFound, PurchaseCancelled, PurchasePending,
    StorageUnavailable, UnverifiedTransaction,
)
from shared.logging import clear_context, get_logger, set_user_context
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.retry import RetryConfig
from .backend.client import BackendClient
from .cache.status_cache import StatusCache
from .gate import AccessGate
from .models import AccessDecision, AuthSession, ReconciledEntitlement, utcnow
from .reconcile.reconciler import Reconciler
from .scheduler import ReconciliationScheduler, Trigger
from .storage.kv_store import KeyValueStore, create_store
from .store.listener import TransactionListener
from .store.provider import Product, PurchaseOutcome, StoreProvider, check_verified
from .trial.clock import TrialClock


class EntitlementEngine:
    """Composes trial clock, store listener, backend client, cache,
    reconciler, gate and scheduler behind one object.

    Every write to the entitlement goes through the reconciler; callers read
    ``current()`` / ``access()`` or ``subscribe()`` for updates.
    """

    def __init__(self,
                 config: BaseConfig,
                 store_provider: StoreProvider,
                 kv_store: Optional[KeyValueStore] = None,
                 clock: Callable[[], datetime] = utcnow,
                 metrics: Optional[MetricsCollector] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.store_provider = store_provider
        self.clock = clock
        self.metrics = metrics or get_metrics_collector("reconciler")
        self.logger = get_logger("reconciler.engine")

        self.session = AuthSession()
        self.kv_store = kv_store or create_store(
            config.storage_backend,
            path=config.storage_path,
            redis_url=config.redis_url
        )
        self.trial_clock = TrialClock(
            self.kv_store,
            self.session,
            duration=timedelta(days=config.trial_duration_days),
            clock=clock
        )
        self.backend = BackendClient(
            config.backend_base_url,
            self.session,
            timeout=config.backend_timeout_seconds,
            retry_config=RetryConfig(
                max_attempts=config.verify_max_attempts,
                base_delay=config.verify_retry_base_delay,
                max_delay=5.0
            ),
            circuit_breaker=CircuitBreaker(
                failure_threshold=config.circuit_failure_threshold,
                recovery_timeout=config.circuit_recovery_timeout,
                expected_exception=NetworkUnreachable,
                name="subscription_backend"
            ),
            metrics=self.metrics,
            transport=transport
        )
        self.cache = StatusCache(
            ttl=timedelta(seconds=config.cache_ttl_seconds),
            clock=clock,
            metrics=self.metrics
        )
        self.reconciler = Reconciler(
            self.trial_clock,
            self.backend,
            self.cache,
            self.kv_store,
            self.session,
            clock=clock,
            metrics=self.metrics
        )
        self.listener = TransactionListener(
            store_provider,
            self.reconciler,
            restart_delay=config.listener_restart_delay_seconds,
            metrics=self.metrics
        )
        self.scheduler = ReconciliationScheduler(
            self.reconciler,
            self.backend,
            self.session,
            interval=config.poll_interval_seconds,
            metrics=self.metrics
        )
        self.gate = AccessGate()
        self.products: Dict[str, Product] = {}

    @property
    def product_ids(self) -> List[str]:
        return [self.config.monthly_product_id, self.config.yearly_product_id]

    # ------------------------------------------------------------------ lifecycle

    async def start(self):
        """Open storage and the backend client, start background tasks."""
        await self.kv_store.start()
        await self.backend.start()
        await self.listener.start()
        await self.scheduler.start()
        await self.reconciler.reconcile()
        self.logger.info("Entitlement engine started")

    async def stop(self):
        """Cancel background tasks together and release resources."""
        await asyncio.gather(self.scheduler.stop(), self.listener.stop())
        await self.backend.stop()
        await self.kv_store.stop()
        self.logger.info("Entitlement engine stopped")

    # ------------------------------------------------------------------ session

    async def login(self, user_id: str, access_token: str, onboarding_complete: bool = False) -> ReconciledEntitlement:
        """Bind a user, restore their last known backend record, refresh."""
        try:
            await self.trial_clock.on_login(user_id)
        except StorageUnavailable as e:
            self.logger.warning("Cannot record device user", user_id=user_id, error=e.message)

        await self.reconciler.reset()
        self.session.login(user_id, access_token, onboarding_complete)
        set_user_context(user_id)
        self.logger.info("User logged in", user_id=user_id)

        await self.reconciler.load_persisted()
        return await self.scheduler.trigger(Trigger.MANUAL, force=True)

    async def logout(self) -> ReconciledEntitlement:
        """Forget the session. The trial timestamp stays for the same user."""
        self.logger.info("User logged out", user_id=self.session.user_id)
        self.session.logout()
        clear_context()
        return await self.reconciler.reset()

    async def start_trial(self) -> ReconciledEntitlement:
        """Start the local trial for the logged-in user (idempotent)."""
        await self.trial_clock.start()
        return await self.reconciler.reconcile()

    def complete_onboarding(self) -> AccessDecision:
        self.session.onboarding_complete = True
        return self.access()

    # ------------------------------------------------------------------ store

    async def load_products(self) -> List[Product]:
        products = await self.store_provider.load_products(self.product_ids)
        self.products = {product.product_id: product for product in products}
        if not products:
            self.logger.warning("No subscription products available", product_ids=self.product_ids)
        else:
            self.logger.info("Loaded products", count=len(products))
        return products

    async def purchase(self, product_id: str) -> ReconciledEntitlement:
        """Buy ``product_id``. Purchase failures are raised to the caller."""
        if product_id not in self.products:
            raise ProductNotFound(product_id)

        result = await self.store_provider.purchase(product_id)
        if result.outcome == PurchaseOutcome.USER_CANCELLED:
            raise PurchaseCancelled({"product_id": product_id})
        if result.outcome == PurchaseOutcome.PENDING:
            raise PurchasePending({"product_id": product_id})

        transaction = check_verified(result.verification)
        await self.reconciler.record_transaction(transaction)
        await self.reconciler.verify_transaction(transaction)
        await self.store_provider.finish(transaction)
        self.logger.info("Purchase completed", product_id=product_id, transaction_id=transaction.transaction_id)
        return await self.scheduler.trigger(Trigger.PURCHASE_COMPLETED, force=True)

    async def restore(self) -> ReconciledEntitlement:
        """Re-sync with the store and re-verify current entitlements."""

        async def sync_store():
            await self.store_provider.sync()
            for result in await self.store_provider.current_entitlements():
                try:
                    transaction = check_verified(result)
                except UnverifiedTransaction as e:
                    self.logger.warning("Skipping unverified entitlement during restore", **e.details)
                    continue
                await self.reconciler.record_transaction(transaction)

        return await self.scheduler.trigger(Trigger.RESTORE, before=sync_store, force=True)

    # ------------------------------------------------------------------ backend

    async def cancel_subscription(self) -> ReconciledEntitlement:
        """Cancel with the backend; access continues through the paid period."""
        if not self.session.is_authenticated:
            raise NotAuthenticated()
        issued = self.reconciler.issue_generation()
        snapshot = await self.backend.cancel()
        self.logger.info("Subscription cancelled", end_date=snapshot.record.end_date)
        return await self.reconciler.apply_backend(snapshot, issued)

    async def app_did_enter_foreground(self) -> ReconciledEntitlement:
        return await self.scheduler.trigger(Trigger.FOREGROUND)

    async def reconcile_now(self) -> ReconciledEntitlement:
        return await self.scheduler.trigger(Trigger.MANUAL, force=True)

    # ------------------------------------------------------------------ readers

    def current(self) -> ReconciledEntitlement:
        return self.reconciler.current

    def access(self) -> AccessDecision:
        return self.gate.evaluate(self.reconciler.current, self.session.onboarding_complete)

    def subscribe(self) -> asyncio.Queue:
        return self.reconciler.subscribe()

    def unsubscribe(self, queue: asyncio.Queue):
        self.reconciler.unsubscribe(queue)
