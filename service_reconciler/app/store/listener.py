"""
Background drain of the store's transaction update stream.
"""

import asyncio
from typing import Optional, Set

from shared.errors import EntitlementEngineError, UnverifiedTransaction
from shared.logging import bound_context, get_logger
from shared.metrics import MetricsCollector
from ..models import VerifiedTransaction
from ..reconcile.reconciler import Reconciler
from .provider import StoreProvider, VerificationResult, check_verified


class TransactionListener:
    """Drains ``StoreProvider.transaction_updates`` for the life of the process.

    Each verified transaction is recorded with the reconciler, sent to the
    backend verify endpoint on a side task, and acknowledged with the store.
    A failing stream is restarted after ``restart_delay`` seconds.
    """

    def __init__(self,
                 store: StoreProvider,
                 reconciler: Reconciler,
                 restart_delay: float = 1.0,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.reconciler = reconciler
        self.restart_delay = restart_delay
        self.metrics = metrics
        self.logger = get_logger("reconciler.listener")
        self.running = False
        self.restarts = 0
        self._task: Optional[asyncio.Task] = None
        self._pending_acks: Set[asyncio.Task] = set()
        self._verify_tasks: Set[asyncio.Task] = set()

    async def start(self):
        if self._task is not None and not self._task.done():
            return
        self.running = True
        self._task = asyncio.create_task(self._listen_loop(), name="transaction-listener")
        self.logger.info("Transaction listener started")

    async def stop(self):
        """Cancel the drain loop; in-flight acknowledgments complete first."""
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._pending_acks:
            await asyncio.gather(*self._pending_acks, return_exceptions=True)

        for task in list(self._verify_tasks):
            task.cancel()
        if self._verify_tasks:
            await asyncio.gather(*self._verify_tasks, return_exceptions=True)
        self.logger.info("Transaction listener stopped")

    async def _listen_loop(self):
        while self.running:
            try:
                async for result in self.store.transaction_updates():
                    await self.handle(result)
                self.logger.warning("Transaction stream ended, restarting")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Transaction stream failed, restarting", error=str(e), exc_info=True)
                if self.metrics:
                    self.metrics.record_error("transaction_stream")

            self.restarts += 1
            await asyncio.sleep(self.restart_delay)

    async def handle(self, result: VerificationResult) -> Optional[VerifiedTransaction]:
        """Process one stream item. Never raises for a single bad item."""
        try:
            transaction = check_verified(result)
        except UnverifiedTransaction as e:
            self.logger.warning("Discarding unverified transaction", **e.details)
            self._count("unverified")
            return None

        with bound_context(transaction_id=transaction.transaction_id):
            try:
                await self.reconciler.record_transaction(transaction)
            except EntitlementEngineError as e:
                self.logger.error("Failed to record transaction", error=e.message)

            self._spawn_verify(transaction)
            await self._acknowledge(transaction)
        self._count("verified")
        return transaction

    def _spawn_verify(self, transaction: VerifiedTransaction):
        task = asyncio.create_task(self.reconciler.verify_transaction(transaction))
        self._verify_tasks.add(task)
        task.add_done_callback(self._verify_tasks.discard)

    async def _acknowledge(self, transaction: VerifiedTransaction):
        ack = asyncio.ensure_future(self.store.finish(transaction))
        self._pending_acks.add(ack)
        ack.add_done_callback(self._pending_acks.discard)
        try:
            await asyncio.shield(ack)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # finish() is idempotent; the store redelivers unfinished transactions
            self.logger.error("Failed to acknowledge transaction", transaction_id=transaction.transaction_id, error=str(e))

    async def wait_for_verifications(self):
        """Await side-channel verify calls spawned so far."""
        if self._verify_tasks:
            await asyncio.gather(*list(self._verify_tasks), return_exceptions=True)

    def _count(self, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("store_transactions_total", outcome=outcome)
