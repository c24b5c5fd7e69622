"""
Subscription backend client.
"""

import base64
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type

import httpx
from pydantic import BaseModel, ValidationError

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import (
    BackendRejected, BackendTimeout, BackendUnavailable, DecodeError,
    NetworkUnreachable, NotAuthenticated, RateLimited,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, retry_call
from ..models import AuthSession, BackendSubscriptionRecord, VerifiedTransaction
from .schemas import (
    CancelResponse, StatusResponse, SyncResponse, VerifyResponse, status_record,
)


@dataclass(frozen=True)
class BackendSnapshot:
    """A backend record plus the day counters that came with it.

    ``trial_days_remaining`` is None unless the backend said the user is in
    trial; a zero for a paid subscriber carries no meaning.
    """
    record: BackendSubscriptionRecord
    trial_days_remaining: Optional[int] = None
    subscription_days_remaining: Optional[int] = None


@dataclass(frozen=True)
class SyncResult:
    snapshot: BackendSnapshot
    status_changed: bool


class BackendClient:
    """JSON-over-HTTPS client for the /subscriptions endpoints."""

    def __init__(self,
                 base_url: str,
                 session: AuthSession,
                 timeout: float = 10.0,
                 retry_config: Optional[RetryConfig] = None,
                 circuit_breaker: Optional[CircuitBreaker] = None,
                 metrics: Optional[MetricsCollector] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.session = session
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("reconciler.backend_client")
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=NetworkUnreachable,
            name="subscription_backend"
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self):
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Accept": "application/json"}
            )

    async def stop(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def verify(self, transaction: VerifiedTransaction) -> BackendSnapshot:
        """Report a verified store transaction. Idempotent server side, so retried."""
        payload = {
            "transactionData": _transaction_data(transaction),
            "productId": transaction.product_id,
            "transactionId": transaction.transaction_id,
        }
        try:
            response = await retry_call(
                self._request,
                "POST", "/subscriptions/verify", VerifyResponse,
                json_body=payload,
                exceptions=(NetworkUnreachable,),
                config=self.retry_config,
            )
        except RetryError as e:
            raise e.last_exception

        if not response.success:
            raise BackendRejected("/subscriptions/verify", 200, "Backend did not accept transaction",
                                  {"transaction_id": transaction.transaction_id})

        self.logger.info(
            "Transaction verified with backend",
            transaction_id=transaction.transaction_id,
            status=response.subscription_status.value,
            plan=response.plan
        )
        return BackendSnapshot(
            record=response.to_record(),
            trial_days_remaining=response.trial_days_remaining if response.is_in_trial else None,
            subscription_days_remaining=response.subscription_days_remaining,
        )

    async def status(self) -> BackendSnapshot:
        """Fetch the authoritative subscription record."""
        response = await self._request("GET", "/subscriptions/status", StatusResponse)
        return BackendSnapshot(
            record=status_record(response),
            trial_days_remaining=response.trial_days_remaining if response.is_in_trial else None,
            subscription_days_remaining=response.subscription_days_remaining,
        )

    async def sync(self) -> SyncResult:
        """Ask the backend to settle its own expiry bookkeeping."""
        response = await self._request("POST", "/subscriptions/sync", SyncResponse)
        return SyncResult(
            snapshot=BackendSnapshot(record=response.subscription.to_record()),
            status_changed=response.status_changed,
        )

    async def cancel(self) -> BackendSnapshot:
        """Cancel the subscription; access continues until its end date."""
        response = await self._request("POST", "/subscriptions/cancel", CancelResponse)
        return BackendSnapshot(
            record=response.subscription.to_record(),
            subscription_days_remaining=response.days_remaining,
        )

    async def _request(self, method: str, path: str, schema: Type[BaseModel],
                       json_body: Optional[Dict[str, Any]] = None) -> Any:
        token = self.session.access_token
        if not token:
            raise NotAuthenticated("Backend calls require a bearer token")

        try:
            return await self.circuit_breaker.call(self._send, method, path, schema, token, json_body)
        except CircuitBreakerOpenException as e:
            self._record(path, "circuit_open")
            raise NetworkUnreachable(path, str(e)) from e

    async def _send(self, method: str, path: str, schema: Type[BaseModel], token: str,
                    json_body: Optional[Dict[str, Any]]) -> Any:
        await self.start()
        start_time = time.time()
        try:
            response = await self._client.request(
                method,
                path,
                json=json_body,
                headers={"Authorization": f"Bearer {token}"}
            )
        except httpx.TimeoutException as e:
            self._record(path, "timeout")
            self.logger.warning("Backend request timed out", path=path, timeout=self.timeout)
            raise BackendTimeout(path, details={"error": str(e)}) from e
        except httpx.TransportError as e:
            self._record(path, "unreachable")
            self.logger.warning("Backend unreachable", path=path, error=str(e))
            raise NetworkUnreachable(path, details={"error": str(e)}) from e
        finally:
            if self.metrics:
                self.metrics.get_metric("backend_request_duration_seconds").labels(
                    endpoint=path).observe(time.time() - start_time)

        if response.status_code == 429:
            self._record(path, "rate_limited")
            raise RateLimited(path, retry_after=_retry_after(response))
        if response.status_code >= 500:
            self._record(path, "server_error")
            self.logger.error("Backend server error", path=path, status_code=response.status_code)
            raise BackendUnavailable(path, response.status_code)
        if response.status_code >= 400:
            self._record(path, "rejected")
            self.logger.error(
                "Backend rejected request",
                path=path,
                status_code=response.status_code,
                body=response.text[:200]
            )
            raise BackendRejected(path, response.status_code, details={"body": response.text[:200]})

        try:
            parsed = schema.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            self._record(path, "decode_error")
            self.logger.error("Malformed backend response", path=path, error=str(e))
            raise DecodeError(path, details={"error": str(e)}) from e

        self._record(path, "ok")
        return parsed

    def _record(self, path: str, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("backend_requests_total", endpoint=path, outcome=outcome)


def _transaction_data(transaction: VerifiedTransaction) -> str:
    raw = transaction.json_representation
    if not raw:
        raw = json.dumps({
            "productID": transaction.product_id,
            "transactionID": transaction.transaction_id,
            "originalTransactionID": transaction.original_transaction_id,
            "purchaseDate": transaction.purchase_date.isoformat(),
            "expiresDate": transaction.expiration_date.isoformat() if transaction.expiration_date else None,
            "revocationDate": transaction.revocation_date.isoformat() if transaction.revocation_date else None,
            "environment": transaction.environment,
        }).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None
