"""
Shared fixtures for reconciler service tests.
"""

from datetime import timedelta

import pytest

from shared.circuit_breaker import CircuitBreaker
from shared.errors import NetworkUnreachable
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig
from service_reconciler.app.backend.client import BackendClient
from service_reconciler.app.cache.status_cache import StatusCache
from service_reconciler.app.models import AuthSession
from service_reconciler.app.reconcile.reconciler import Reconciler
from service_reconciler.app.storage.kv_store import MemoryStore
from service_reconciler.app.trial.clock import TrialClock
from service_reconciler.tests.helpers import BASE_URL, FakeBackend, FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session():
    session = AuthSession()
    session.login("user-1", "token-1", onboarding_complete=True)
    return session


@pytest.fixture
def kv_store():
    return MemoryStore()


@pytest.fixture
def metrics():
    return MetricsCollector("test")


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def backend_client(session, fake_backend, metrics):
    return BackendClient(
        BASE_URL,
        session,
        retry_config=RetryConfig(max_attempts=3, base_delay=0.0, jitter=False),
        circuit_breaker=CircuitBreaker(
            failure_threshold=100,
            recovery_timeout=30.0,
            expected_exception=NetworkUnreachable,
            name="test_backend"
        ),
        metrics=metrics,
        transport=fake_backend.transport
    )


@pytest.fixture
def trial_clock(kv_store, session, clock):
    return TrialClock(kv_store, session, clock=clock)


@pytest.fixture
def status_cache(clock, metrics):
    return StatusCache(ttl=timedelta(seconds=60), clock=clock, metrics=metrics)


@pytest.fixture
def reconciler(trial_clock, backend_client, status_cache, kv_store, session, clock, metrics):
    return Reconciler(
        trial_clock,
        backend_client,
        status_cache,
        kv_store,
        session,
        clock=clock,
        metrics=metrics
    )
