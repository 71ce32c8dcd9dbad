"""
Stripe payment intents for order intake

The Stripe SDK is synchronous, so calls run in a worker thread like the database layer.
Failures are returned as ProviderResult values classified the same way as the
registry and hosting adapters.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import stripe

from fulfillment_config import Settings
from fulfillment_errors import ConfigurationError
from services.provider_results import ErrorKind, ProviderResult

logger = logging.getLogger(__name__)


def _classify_stripe_error(error: 'stripe.StripeError') -> ErrorKind:
    if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)):
        return ErrorKind.TRANSIENT
    status = getattr(error, 'http_status', None) or 0
    if isinstance(error, stripe.APIError) or status >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.TERMINAL


class StripePaymentService:
    """Creates payment intents whose metadata carries the order identifier"""

    def __init__(self, settings: Settings, stripe_module: Any = stripe):
        self.secret_key = settings.stripe_secret_key
        self.currency = settings.payment_currency
        self._stripe = stripe_module

    async def create_payment_intent(self, order_id: str, amount_cents: int,
                                    metadata: Dict[str, str], currency: Optional[str] = None) -> ProviderResult:
        """
        Create a payment intent for an order.

        The order id doubles as the idempotency key so a retried request cannot
        create a second intent for the same order.
        """
        if not self.secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
        if amount_cents <= 0:
            return ProviderResult.fail(ErrorKind.VALIDATION, 'invalid_amount',
                                       f"Payment amount must be positive, got {amount_cents}")

        intent_metadata = dict(metadata)
        intent_metadata['orderId'] = order_id

        def _create():
            return self._stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=(currency or self.currency).lower(),
                metadata=intent_metadata,
                automatic_payment_methods={'enabled': True},
                api_key=self.secret_key,
                idempotency_key=f"order-{order_id}",
            )

        try:
            intent = await asyncio.to_thread(_create)
        except stripe.StripeError as e:
            kind = _classify_stripe_error(e)
            logger.error(f"❌ STRIPE: Payment intent for order {order_id} failed ({kind.value}): {e}")
            return ProviderResult.fail(kind, getattr(e, 'code', None) or type(e).__name__,
                                       getattr(e, 'user_message', None) or str(e))

        logger.info(f"💳 STRIPE: Payment intent {intent['id']} created for order {order_id} ({amount_cents} cents)")
        return ProviderResult.ok({
            'reference': intent['id'],
            'client_secret': intent['client_secret'],
        })
