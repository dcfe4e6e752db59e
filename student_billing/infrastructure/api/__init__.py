"""
API Infrastructure Module

HTTP client for the student dashboard endpoints.
"""

from student_billing.infrastructure.api.billing_client import BillingApiClient

__all__ = ["BillingApiClient"]
