"""
Status cache for reconciled entitlements.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..models import CacheEntry, ReconciledEntitlement, utcnow


class StatusCache:
    """Cache-aside holder for the last reconciled entitlement.

    A fresh entry lets repeated UI queries skip the backend status call.
    It never gates purchase-critical paths: purchases and ``statusChanged``
    signals bypass it with ``invalidate``.
    """

    def __init__(self,
                 ttl: timedelta = timedelta(seconds=60),
                 clock: Callable[[], datetime] = utcnow,
                 metrics: Optional[MetricsCollector] = None):
        self.ttl = ttl
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("reconciler.status_cache")
        self._entry: Optional[CacheEntry] = None

    @property
    def entry(self) -> Optional[CacheEntry]:
        return self._entry

    def get_fresh(self, now: Optional[datetime] = None) -> Optional[CacheEntry]:
        """Entry within its TTL, else None."""
        now = now or self.clock()
        entry = self._entry
        if entry is not None and entry.is_fresh(now):
            self._count("hit")
            return entry
        self._count("miss" if entry is None else "expired")
        return None

    def put(self, entitlement: ReconciledEntitlement, fetched_at: Optional[datetime] = None) -> CacheEntry:
        """Store an entitlement that was decided from a fresh backend answer."""
        entry = CacheEntry(entitlement=entitlement, fetched_at=fetched_at or self.clock(), ttl=self.ttl)
        self._entry = entry
        self.logger.debug("Status cached", status=entitlement.status.value, ttl=self.ttl.total_seconds())
        return entry

    def replace_entitlement(self, entitlement: ReconciledEntitlement):
        """Swap in a newer decision without refreshing ``fetched_at``."""
        if self._entry is not None:
            self._entry = CacheEntry(entitlement=entitlement, fetched_at=self._entry.fetched_at, ttl=self.ttl)

    def invalidate(self):
        if self._entry is not None:
            self.logger.debug("Status cache invalidated")
        self._entry = None

    def _count(self, result: str):
        if self.metrics:
            self.metrics.increment_counter("status_cache_total", result=result)
