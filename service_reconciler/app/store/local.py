"""
In-process store provider.

Backs the HTTP service in local environments and the test suite. Updates
are pushed with ``emit`` and drained by whoever iterates
``transaction_updates``.
"""

import asyncio
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Dict, List, Optional

from shared.logging import get_logger
from ..models import Plan, VerifiedTransaction, utcnow
from .provider import (
    Product, PurchaseOutcome, PurchaseResult, StoreProvider, VerificationResult,
)


class LocalStoreProvider(StoreProvider):
    """Store emulator keeping its catalog and ledger in memory."""

    def __init__(self, products: Optional[List[Product]] = None, clock: Callable[[], datetime] = utcnow):
        self.products: Dict[str, Product] = {p.product_id: p for p in (products or [])}
        self.clock = clock
        self.logger = get_logger("reconciler.store.local")
        self.finished: List[str] = []
        self.entitlements: Dict[str, VerificationResult] = {}
        self.next_outcome: PurchaseOutcome = PurchaseOutcome.SUCCESS
        self.sync_calls = 0
        self._updates: "asyncio.Queue[VerificationResult]" = asyncio.Queue()
        self._sequence = 0

    def emit(self, result: VerificationResult):
        """Push a transaction update onto the stream."""
        self._updates.put_nowait(result)

    def make_transaction(self, product_id: str, period: Optional[timedelta] = None,
                         revoked: bool = False) -> VerifiedTransaction:
        self._sequence += 1
        now = self.clock()
        if period is None:
            period = timedelta(days=365) if Plan.from_product_id(product_id) == Plan.YEARLY else timedelta(days=30)
        return VerifiedTransaction(
            product_id=product_id,
            transaction_id=str(1000 + self._sequence),
            original_transaction_id="1000",
            purchase_date=now,
            expiration_date=now + period,
            revocation_date=now if revoked else None,
            environment="Sandbox",
            json_representation=f'{{"productID":"{product_id}","transactionID":{1000 + self._sequence}}}'.encode(),
        )

    async def load_products(self, product_ids: List[str]) -> List[Product]:
        return [self.products[pid] for pid in product_ids if pid in self.products]

    async def purchase(self, product_id: str) -> PurchaseResult:
        if self.next_outcome == PurchaseOutcome.USER_CANCELLED:
            return PurchaseResult.user_cancelled()
        if self.next_outcome == PurchaseOutcome.PENDING:
            return PurchaseResult.pending()

        result = VerificationResult(self.make_transaction(product_id))
        self.entitlements[product_id] = result
        self.logger.info("Local purchase completed", product_id=product_id,
                         transaction_id=result.transaction.transaction_id)
        return PurchaseResult.success(result)

    async def transaction_updates(self) -> AsyncIterator[VerificationResult]:
        while True:
            yield await self._updates.get()

    async def current_entitlements(self) -> List[VerificationResult]:
        return list(self.entitlements.values())

    async def finish(self, transaction: VerifiedTransaction) -> None:
        if transaction.transaction_id not in self.finished:
            self.finished.append(transaction.transaction_id)

    async def sync(self) -> None:
        self.sync_calls += 1
