"""
Services Module

Reconciliation, actions and session wiring built on the domain layer.
"""

from student_billing.services.actions import SubscriptionActions
from student_billing.services.reconciler import CheckoutPhase, SubscriptionReconciler
from student_billing.services.session import BillingSession

__all__ = [
    "SubscriptionActions",
    "CheckoutPhase",
    "SubscriptionReconciler",
    "BillingSession",
]
