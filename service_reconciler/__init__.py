"""
Entitlement reconciler service.
"""
