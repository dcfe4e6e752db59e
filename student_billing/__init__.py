"""
Student Billing

Subscription proration, checkout reconciliation and plan actions for the
student progress dashboard.
"""

__version__ = "1.0.0"
