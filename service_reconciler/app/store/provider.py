"""
Platform store collaborator interface.

The engine consumes store events; it never validates receipts itself.
Authenticity is decided by the provider and reported on each
``VerificationResult``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, List, Optional

from shared.errors import UnverifiedTransaction
from ..models import VerifiedTransaction


@dataclass(frozen=True)
class Product:
    """Store catalog entry."""
    product_id: str
    display_name: str
    display_price: str
    has_introductory_offer: bool = False


@dataclass(frozen=True)
class VerificationResult:
    """A store transaction plus the store's authenticity verdict."""
    transaction: VerifiedTransaction
    verified: bool = True
    error: Optional[str] = None


class PurchaseOutcome(str, Enum):
    SUCCESS = "success"
    USER_CANCELLED = "user_cancelled"
    PENDING = "pending"


@dataclass(frozen=True)
class PurchaseResult:
    outcome: PurchaseOutcome
    verification: Optional[VerificationResult] = None

    @classmethod
    def success(cls, verification: VerificationResult) -> "PurchaseResult":
        return cls(PurchaseOutcome.SUCCESS, verification)

    @classmethod
    def user_cancelled(cls) -> "PurchaseResult":
        return cls(PurchaseOutcome.USER_CANCELLED)

    @classmethod
    def pending(cls) -> "PurchaseResult":
        return cls(PurchaseOutcome.PENDING)


def check_verified(result: VerificationResult) -> VerifiedTransaction:
    """Return the transaction or raise ``UnverifiedTransaction``."""
    if not result.verified:
        raise UnverifiedTransaction(details={
            "transaction_id": result.transaction.transaction_id,
            "product_id": result.transaction.product_id,
            "error": result.error,
        })
    return result.transaction


class StoreProvider(ABC):
    """Platform store operations the engine relies on."""

    @abstractmethod
    async def load_products(self, product_ids: List[str]) -> List[Product]:
        ...

    @abstractmethod
    async def purchase(self, product_id: str) -> PurchaseResult:
        ...

    @abstractmethod
    def transaction_updates(self) -> AsyncIterator[VerificationResult]:
        """Infinite stream of transaction updates."""

    @abstractmethod
    async def current_entitlements(self) -> List[VerificationResult]:
        """Transactions the store currently considers entitling, for restore."""

    @abstractmethod
    async def finish(self, transaction: VerifiedTransaction) -> None:
        """Acknowledge a transaction with the store. Idempotent."""

    async def sync(self) -> None:
        """Re-sync purchases with the platform store before a restore."""
