"""
Payment validation utilities
Compares the amount charged by the payment provider with the price locked on the order
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = Decimal('0.01')


def cents_to_amount(amount_cents: int) -> Decimal:
    return (Decimal(amount_cents) / 100).quantize(Decimal('0.01'))


def amount_to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def validate_payment_amount(expected: Decimal, received: Decimal, tolerance: Decimal = DEFAULT_TOLERANCE) -> bool:
    """
    Validate payment amount with tolerance

    Args:
        expected: Price locked on the order
        received: Amount the provider reports as charged
        tolerance: Tolerance fraction (default 1%)

    Returns:
        bool: True if the charged amount is acceptable
    """
    try:
        expected = Decimal(expected)
        received = Decimal(received)
    except (InvalidOperation, TypeError, ValueError):
        return False

    if expected == 0:
        return received == 0
    if expected < 0 or received < 0:
        return False
    return abs(expected - received) / expected <= tolerance


def describe_amount_mismatch(expected: Decimal, amount_cents: Optional[int]) -> Optional[str]:
    """Return a description when the charged amount differs from the locked price, else None"""
    if amount_cents is None:
        return None
    received = cents_to_amount(amount_cents)
    if validate_payment_amount(expected, received):
        return None
    return f"charged {received} but order price is {expected}"
