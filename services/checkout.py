"""
Order intake - quote, create a PENDING order with the price locked, open a payment intent

The payment intent metadata carries everything fulfillment reads back from the
payment-succeeded event: orderId, registrantInfo, initialPlan and hosting credentials.
"""

import json
import logging
from typing import Any, Dict, Optional

from fulfillment_errors import ProviderUnavailableError, ValidationError
from order_models import ContactInfo, DomainAction, normalize_domain_name, parse_years, to_money
from payment_validation import amount_to_cents
from services.contact_registry import ContactRegistry
from services.cpanel import HOSTING_PLANS, suggest_username, validate_account_request
from services.order_store import OrderStore
from services.provider_results import ErrorKind
from services.registrar import RegistrarService
from services.stripe_payments import StripePaymentService

logger = logging.getLogger(__name__)


class CheckoutService:
    """Creates orders and payment intents for the domain wizard"""

    def __init__(self, order_store: OrderStore, contact_registry: ContactRegistry,
                 registrar: RegistrarService, payments: StripePaymentService):
        self.order_store = order_store
        self.contact_registry = contact_registry
        self.registrar = registrar
        self.payments = payments

    async def create_checkout(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """
        Returns {clientSecret, orderId, amount, currency, suggestedHostingUsername}.

        Raises ValidationError for bad input and ProviderUnavailableError when the
        price quote or the payment provider fails.
        """
        if not isinstance(request, dict):
            raise ValidationError("Request body must be a JSON object")

        domain = normalize_domain_name(request.get('domain'))
        years = parse_years(request.get('years'))
        try:
            action = DomainAction(str(request.get('domainAction') or '').upper())
        except ValueError:
            raise ValidationError("domainAction must be REGISTER or TRANSFER")

        epp_code = (request.get('eppCode') or '').strip() or None
        if action is DomainAction.TRANSFER and not epp_code:
            raise ValidationError("eppCode is required for a domain transfer")

        hosting_plan = (request.get('hostingPlan') or '').strip()
        if not hosting_plan:
            raise ValidationError("hostingPlan is required")

        initial_plan = request.get('initialPlan')
        if initial_plan is not None:
            if not isinstance(initial_plan, dict) or initial_plan.get('id') not in HOSTING_PLANS:
                raise ValidationError(f"initialPlan.id must be one of {', '.join(HOSTING_PLANS)}")

        hosting_username = request.get('hostingUsername')
        hosting_password = request.get('hostingPassword')
        if hosting_username or hosting_password:
            problem = validate_account_request(hosting_username, hosting_password)
            if problem:
                raise ValidationError(problem)

        user_id = await self._resolve_user_id(request.get('userId'))
        registrant = request.get('registrantInfo')
        if registrant is not None:
            ContactInfo.from_payload(registrant).validate()
        if user_id is None and registrant is None:
            raise ValidationError("userId or registrantInfo is required")

        quote = await self.registrar.get_pricing('DOMAIN', action.value, domain.rsplit('.', 1)[-1])
        if not quote.success:
            if quote.error.kind is ErrorKind.VALIDATION:
                raise ValidationError(quote.error.message)
            raise ProviderUnavailableError('registrar', quote.error.message, quote.error.code)
        total_price = to_money(quote.data['price'] * years)

        order = await self.order_store.create_order(
            domain_name=domain,
            domain_action=action,
            years=years,
            total_price=total_price,
            hosting_plan=hosting_plan,
            epp_code=epp_code,
            user_id=user_id,
        )

        metadata = {
            'domain': domain,
            'years': str(years),
            'domainAction': action.value,
            'hostingPlan': hosting_plan,
        }
        if user_id is not None:
            metadata['userId'] = str(user_id)
        if registrant is not None:
            metadata['registrantInfo'] = json.dumps(registrant)
        if initial_plan is not None:
            metadata['initialPlan'] = json.dumps({'id': initial_plan['id'], 'name': initial_plan.get('name') or hosting_plan})
        if hosting_username and hosting_password:
            metadata['hostingUsername'] = hosting_username
            metadata['hostingPassword'] = hosting_password

        intent = await self.payments.create_payment_intent(order.id, amount_to_cents(total_price), metadata)
        if not intent.success:
            logger.warning(f"⚠️ CHECKOUT: Order {order.id} left unpaid - payment intent failed: {intent.error.message}")
            if intent.error.kind is ErrorKind.VALIDATION:
                raise ValidationError(intent.error.message)
            raise ProviderUnavailableError('stripe', intent.error.message, intent.error.code)

        logger.info(f"🛒 CHECKOUT: Order {order.id} awaiting payment of {total_price} for {domain}")
        return {
            'clientSecret': intent.data['client_secret'],
            'orderId': order.id,
            'amount': str(total_price),
            'currency': self.payments.currency,
            'suggestedHostingUsername': suggest_username(domain),
        }

    async def _resolve_user_id(self, raw_user_id: Any) -> Optional[int]:
        if raw_user_id in (None, ''):
            return None
        try:
            user_id = int(raw_user_id)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid userId: {raw_user_id!r}")
        if await self.contact_registry.get_user(user_id) is None:
            raise ValidationError(f"Unknown userId: {user_id}")
        return user_id

    async def register_user(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Upsert a user profile by email; returns {userId}"""
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        contact = ContactInfo.from_payload(payload).validate()
        user = await self.contact_registry.upsert_user(contact)
        return {'userId': user['id']}
