"""
Reconciler service package for the entitlement engine.

Decides, at any moment, whether the current user may use premium features
by reconciling three sources of truth:

- app.trial: local free-trial clock persisted per user.
- app.store: platform store provider and the transaction update listener.
- app.backend: client for the subscription backend.

and combining them in:

- app.reconcile: precedence rules and the single-writer reconciler.
- app.cache: TTL cache over backend status results.
- app.gate: allow/deny and paywall decisions for the rest of the app.
- app.scheduler: periodic and event-driven reconciliation cycles.
- app.engine: facade composing every component.
- app.main: FastAPI surface.

Guidelines:
- Only the reconciler writes the entitlement; everything else reads it.
- Backend outages fail open on the last known record.
"""
