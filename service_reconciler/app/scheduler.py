"""
Timing backbone: periodic and event-driven reconciliation cycles.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional

from shared.errors import BackendRejected, NetworkUnreachable, RateLimited
from shared.logging import bound_context, get_logger
from shared.metrics import MetricsCollector
from .backend.client import BackendClient
from .models import AuthSession, ReconciledEntitlement
from .reconcile.reconciler import Reconciler


class Trigger(str, Enum):
    PERIODIC = "periodic"
    PURCHASE_COMPLETED = "purchase_completed"
    RESTORE = "restore"
    FOREGROUND = "foreground"
    CANCELLED = "cancelled"
    MANUAL = "manual"


class ReconciliationScheduler:
    """Runs reconciliation cycles, one at a time.

    A cycle retries pending store verifications, calls backend ``sync()``,
    then ``status()`` (uncached when sync reported a change or the trigger
    forces it) and recomputes. Triggers arriving while a cycle is in flight
    join it instead of issuing duplicate backend calls; periodic ticks are
    skipped outright.
    """

    def __init__(self,
                 reconciler: Reconciler,
                 backend: BackendClient,
                 session: AuthSession,
                 interval: float = 300.0,
                 metrics: Optional[MetricsCollector] = None):
        self.reconciler = reconciler
        self.backend = backend
        self.session = session
        self.interval = interval
        self.metrics = metrics
        self.logger = get_logger("reconciler.scheduler")
        self.running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def start(self):
        if self._loop_task is not None and not self._loop_task.done():
            return
        self.running = True
        self._loop_task = asyncio.create_task(self._periodic_loop(), name="reconciliation-scheduler")
        self.logger.info("Reconciliation scheduler started", interval=self.interval)

    async def stop(self):
        self.running = False
        for task in (self._loop_task, self._inflight):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._inflight = None
        self.logger.info("Reconciliation scheduler stopped")

    async def _periodic_loop(self):
        while self.running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Periodic reconciliation failed", error=str(e), exc_info=True)
            await asyncio.sleep(self.interval)

    async def tick(self) -> Optional[ReconciledEntitlement]:
        """One periodic cycle; None when skipped."""
        if not self.session.is_authenticated:
            return None
        if self.in_flight:
            self.logger.debug("Periodic tick suppressed, cycle in flight")
            self._count(Trigger.PERIODIC, "suppressed")
            return None
        return await self._launch(Trigger.PERIODIC, None, False)

    async def trigger(self,
                      trigger: Trigger,
                      before: Optional[Callable[[], Awaitable[None]]] = None,
                      force: bool = False) -> ReconciledEntitlement:
        """Run an out-of-band cycle.

        ``before`` runs inside the cycle ahead of the backend calls, and its
        errors propagate to this caller. Triggers without a ``before`` step
        join an in-flight cycle.
        """
        while self.in_flight:
            inflight = self._inflight
            if before is None:
                self._count(trigger, "coalesced")
                self.logger.debug("Trigger joined in-flight cycle", trigger=trigger.value)
                try:
                    return await asyncio.shield(inflight)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.logger.warning("Joined cycle failed", trigger=trigger.value, error=str(e))
                    return self.reconciler.current
            await asyncio.wait({inflight})
        return await self._launch(trigger, before, force)

    async def _launch(self, trigger: Trigger, before, force: bool) -> ReconciledEntitlement:
        task = asyncio.create_task(self._run_cycle(trigger, before, force))
        self._inflight = task
        return await asyncio.shield(task)

    async def _run_cycle(self, trigger: Trigger, before, force: bool) -> ReconciledEntitlement:
        with bound_context(trigger=trigger.value):
            return await self._cycle(trigger, before, force)

    async def _cycle(self, trigger: Trigger, before, force: bool) -> ReconciledEntitlement:
        if before is not None:
            await before()

        if not self.session.is_authenticated:
            self._count(trigger, "local")
            return await self.reconciler.reconcile()

        try:
            await self.reconciler.retry_pending_verifications()

            force_status = force
            try:
                sync = await self.backend.sync()
                if sync.status_changed:
                    self.logger.info("Backend reported status change", status=sync.snapshot.record.status.value)
                    force_status = True
            except NetworkUnreachable as e:
                self.logger.warning("Backend sync failed, failing open", trigger=trigger.value, error=e.message)
                self._count(trigger, "unreachable")
                return await self.reconciler.mark_backend_unreachable()
            except BackendRejected as e:
                self.logger.error("Backend sync rejected", trigger=trigger.value, code=e.code, error=e.message)

            result = await self.reconciler.refresh_status(force=force_status)
            self._count(trigger, "stale" if result.is_stale else "ok")
            return result

        except RateLimited as e:
            self.logger.warning("Rate limited, skipping cycle", trigger=trigger.value, retry_after=e.retry_after)
            self._count(trigger, "rate_limited")
            return self.reconciler.current
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error("Reconciliation cycle failed", trigger=trigger.value, error=str(e), exc_info=True)
            self._count(trigger, "error")
            return self.reconciler.current

    def _count(self, trigger: Trigger, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("scheduler_cycles_total", trigger=trigger.value, outcome=outcome)
