"""
Entitlement reconciler service.
"""

from typing import List, Optional

import httpx
from fastapi import Body
from pydantic import BaseModel

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config

from .engine import EntitlementEngine
from .models import AccessDecision, ReconciledEntitlement
from .storage.kv_store import KeyValueStore
from .store.local import LocalStoreProvider
from .store.provider import Product, StoreProvider


class LoginRequest(BaseModel):
    user_id: str
    access_token: str
    onboarding_complete: bool = False


class PurchaseRequest(BaseModel):
    product_id: str


class ProductResponse(BaseModel):
    product_id: str
    display_name: str
    display_price: str
    has_introductory_offer: bool = False


class EntitlementResponse(BaseModel):
    entitlement: ReconciledEntitlement
    access: AccessDecision


def default_products(config: ServiceConfig) -> List[Product]:
    """Catalog served by the local store provider."""
    return [
        Product(config.monthly_product_id, "Premium Monthly", "$9.99", has_introductory_offer=True),
        Product(config.yearly_product_id, "Premium Yearly", "$59.99", has_introductory_offer=True),
    ]


class ReconcilerService(BaseService):
    """Reconciler service implementation."""

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 store_provider: Optional[StoreProvider] = None,
                 kv_store: Optional[KeyValueStore] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        config = config or get_config("reconciler", 8020)
        super().__init__("reconciler", config.port, config)

        self.store_provider = store_provider or LocalStoreProvider(default_products(self.config))
        self.engine = EntitlementEngine(
            self.config,
            self.store_provider,
            kv_store=kv_store,
            metrics=self.metrics,
            transport=transport
        )

        self._setup_reconciler_routes()

    async def on_startup(self):
        await self.engine.start()
        await self.engine.load_products()
        if self.config.metrics_port:
            self.metrics.start_metrics_server(self.config.metrics_port)
        self.logger.info("Reconciler service started", port=self.port)

    async def on_shutdown(self):
        await self.engine.stop()
        self.logger.info("Reconciler service stopped")

    async def _check_dependencies(self):
        return {
            "backend_circuit": self.engine.backend.circuit_breaker.get_state()["state"],
            "transaction_listener": "running" if self.engine.listener.running else "stopped",
            "scheduler": "running" if self.engine.scheduler.running else "stopped",
        }

    def _entitlement_response(self, entitlement: ReconciledEntitlement) -> EntitlementResponse:
        return EntitlementResponse(entitlement=entitlement, access=self.engine.access())

    def _setup_reconciler_routes(self):
        """Set up reconciler-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "reconciler",
                "message": "Entitlement Engine - Reconciler Service",
                "version": "1.0.0",
                "capabilities": ["local_trial", "store_transactions", "backend_reconciliation", "access_gate"]
            }

        @self.app.get("/entitlement", response_model=ReconciledEntitlement)
        async def get_entitlement():
            """Latest reconciled entitlement."""
            return self.engine.current()

        @self.app.get("/access", response_model=AccessDecision)
        async def get_access():
            return self.engine.access()

        @self.app.post("/session/login", response_model=EntitlementResponse)
        async def login(request: LoginRequest):
            entitlement = await self.engine.login(
                request.user_id,
                request.access_token,
                onboarding_complete=request.onboarding_complete
            )
            return self._entitlement_response(entitlement)

        @self.app.post("/session/logout", response_model=EntitlementResponse)
        async def logout():
            entitlement = await self.engine.logout()
            return self._entitlement_response(entitlement)

        @self.app.post("/trial/start", response_model=EntitlementResponse)
        async def start_trial():
            """Start the local free trial; a second call keeps the original start."""
            entitlement = await self.engine.start_trial()
            return self._entitlement_response(entitlement)

        @self.app.post("/onboarding/complete", response_model=AccessDecision)
        async def complete_onboarding():
            return self.engine.complete_onboarding()

        @self.app.get("/products", response_model=List[ProductResponse])
        async def get_products():
            products = await self.engine.load_products()
            return [
                ProductResponse(
                    product_id=p.product_id,
                    display_name=p.display_name,
                    display_price=p.display_price,
                    has_introductory_offer=p.has_introductory_offer
                )
                for p in products
            ]

        @self.app.post("/purchase", response_model=EntitlementResponse)
        async def purchase(request: PurchaseRequest = Body(...)):
            entitlement = await self.engine.purchase(request.product_id)
            return self._entitlement_response(entitlement)

        @self.app.post("/restore", response_model=EntitlementResponse)
        async def restore():
            entitlement = await self.engine.restore()
            return self._entitlement_response(entitlement)

        @self.app.post("/cancel", response_model=EntitlementResponse)
        async def cancel():
            """Cancel the subscription with the backend."""
            entitlement = await self.engine.cancel_subscription()
            return self._entitlement_response(entitlement)

        @self.app.post("/foreground", response_model=EntitlementResponse)
        async def foreground():
            entitlement = await self.engine.app_did_enter_foreground()
            return self._entitlement_response(entitlement)

        @self.app.post("/reconcile", response_model=EntitlementResponse)
        async def reconcile():
            """Force a reconciliation cycle, bypassing the status cache."""
            entitlement = await self.engine.reconcile_now()
            return self._entitlement_response(entitlement)


def create_app(config: Optional[ServiceConfig] = None,
               store_provider: Optional[StoreProvider] = None,
               kv_store: Optional[KeyValueStore] = None,
               transport: Optional[httpx.AsyncBaseTransport] = None):
    """Create the FastAPI application."""
    service = ReconcilerService(config, store_provider, kv_store, transport)
    return service.app


if __name__ == "__main__":
    service = ReconcilerService()
    service.run()
