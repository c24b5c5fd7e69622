"""
Access gate queried by the rest of the application.
"""

from .models import AccessDecision, ReconciledEntitlement


class AccessGate:
    """Pure decision over the latest reconciled entitlement.

    The paywall is shown exactly when access is denied, except while the
    signup/onboarding flow is still running.
    """

    @staticmethod
    def evaluate(entitlement: ReconciledEntitlement, onboarding_complete: bool = True) -> AccessDecision:
        allow = entitlement.has_access
        return AccessDecision(
            allow=allow,
            should_show_paywall=(not allow) and onboarding_complete,
            status=entitlement.status,
            source=entitlement.source,
        )
