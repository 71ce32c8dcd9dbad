"""
Exception taxonomy for order fulfillment

Provider calls never raise for business outcomes; they return ProviderResult values
(see services/provider_results.py). The exceptions below cover everything else:
bad input, missing configuration, storage failures and lost order claims.
"""

from typing import List, Optional


class FulfillmentError(Exception):
    """Base class for fulfillment service errors"""
    pass


class ValidationError(FulfillmentError):
    """Missing or malformed input. Never retried."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class ConfigurationError(FulfillmentError):
    """Required credentials or secrets are not configured"""
    pass


class DatabaseError(FulfillmentError):
    """Storage failure surfaced instead of degrading to an empty result"""
    pass


class ClaimLostError(FulfillmentError):
    """Raised when a guarded order write finds the claim no longer belongs to this attempt"""

    def __init__(self, order_id: str, operation: str):
        super().__init__(f"Claim on order {order_id} lost during {operation}")
        self.order_id = order_id
        self.operation = operation


class ProviderUnavailableError(FulfillmentError):
    """An upstream provider failed while serving a synchronous request (price quote, payment intent)"""

    def __init__(self, provider: str, message: str, code: Optional[str] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.code = code
