"""
Fulfillment Orchestrator - drives a paid order through domain and hosting provisioning

Triggered by a verified payment-succeeded event. The orchestrator holds no state of its own;
everything it knows comes from the event and the current order/user rows.

Architecture:
- Idempotency gate: conditional claim of the PENDING order row (compare-and-set)
- Registrant resolution: stored user row wins, event metadata is the fallback
- Domain step (register or transfer), checkpointed on the order before moving on
- Hosting step, recorded independently; its failure never fails the order
- Final status and attempt record written in one guarded UPDATE

Retry policy: TRANSIENT provider results are retried with exponential backoff up to
provider_max_attempts; VALIDATION and TERMINAL results fail the step immediately.
Nothing is refunded here; FAILED orders raise a CRITICAL operator alert instead.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from admin_alerts import AdminAlertSystem, AlertCategory, AlertSeverity, get_admin_alert_system
from fulfillment_config import Settings
from fulfillment_errors import ClaimLostError, ValidationError
from order_models import (
    ContactInfo, DomainAction, Order, OrderStatus, PaymentSucceededEvent, ProvisioningAttempt, StepOutcome,
)
from payment_validation import describe_amount_mismatch
from services.contact_registry import ContactRegistry
from services.cpanel import CPanelService
from services.order_store import OrderStore
from services.provider_results import ErrorKind, ProviderResult
from services.registrar import RegistrarService

logger = logging.getLogger(__name__)

COMPONENT = "FulfillmentOrchestrator"

# ====================================================================
# OUTCOME
# ====================================================================

@dataclass
class FulfillmentOutcome:
    """What a single fulfillment invocation did"""
    order_id: Optional[str]
    disposition: str
    status: Optional[OrderStatus] = None
    reason: Optional[str] = None
    attempt: Optional[ProvisioningAttempt] = None

    PROCESSED = "processed"
    NOOP = "noop"

    @property
    def is_noop(self) -> bool:
        return self.disposition == self.NOOP

    def to_dict(self) -> Dict[str, Any]:
        return {
            'orderId': self.order_id,
            'disposition': self.disposition,
            'status': self.status.value if self.status else None,
            'reason': self.reason,
            'attempt': self.attempt.to_dict() if self.attempt else None,
        }

# ====================================================================
# ORCHESTRATOR
# ====================================================================

class FulfillmentOrchestrator:
    """Sequences registry, hosting and storage calls for one paid order"""

    def __init__(
        self,
        settings: Settings,
        order_store: OrderStore,
        contact_registry: ContactRegistry,
        registrar: RegistrarService,
        hosting: CPanelService,
        alerts: Optional[AdminAlertSystem] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.order_store = order_store
        self.contact_registry = contact_registry
        self.registrar = registrar
        self.hosting = hosting
        self.alerts = alerts or get_admin_alert_system()
        self._sleep = sleep

    async def fulfill(self, event: PaymentSucceededEvent) -> FulfillmentOutcome:
        """
        Single entry point for payment-succeeded events.

        Safe under at-least-once delivery: a repeated or concurrent event for the same order
        finds the order already claimed or terminal and returns a no-op outcome.
        Unexpected exceptions release the claim, alert an operator and propagate.
        """
        order_id = event.order_id
        if not order_id:
            raise ValidationError("Payment event carries no order identifier")

        claim_token = uuid.uuid4().hex
        order = await self.order_store.claim_order(order_id, claim_token, self.settings.claim_lease_seconds)
        if order is None:
            return await self._noop(order_id)

        logger.info(f"🎯 ORCHESTRATOR: Fulfilling order {order_id} ({order.domain_action.value} "
                    f"{order.domain_name}, payment {event.payment_reference_id})")
        try:
            return await self._drive(order, event, claim_token)
        except ClaimLostError as e:
            logger.warning(f"🚫 ORCHESTRATOR: {e} - another attempt owns the order now")
            return FulfillmentOutcome(order_id, FulfillmentOutcome.NOOP, OrderStatus.PENDING, 'claim_lost')
        except Exception as e:
            logger.error(f"❌ ORCHESTRATOR: Unexpected failure fulfilling order {order_id}: {e}")
            released = await self._release_claim(order_id, claim_token)
            await self._alert(
                AlertSeverity.CRITICAL, AlertCategory.FULFILLMENT,
                f"Fulfillment crashed for order {order_id}: {e}",
                {
                    'order_id': order_id,
                    'domain': order.domain_name,
                    'payment_reference': event.payment_reference_id,
                    'claim_released': released,
                    'exception': type(e).__name__,
                },
            )
            raise

    async def _noop(self, order_id: str) -> FulfillmentOutcome:
        existing = await self.order_store.get_order(order_id)
        if existing is None:
            reason = 'order_not_found'
        elif existing.status.is_terminal:
            reason = f"already_{existing.status.value.lower()}"
        else:
            reason = 'in_progress'
        logger.info(f"🔁 ORCHESTRATOR: No-op for order {order_id} ({reason})")
        return FulfillmentOutcome(order_id, FulfillmentOutcome.NOOP,
                                  existing.status if existing else None, reason)

    async def _release_claim(self, order_id: str, claim_token: str) -> bool:
        try:
            return await self.order_store.release_claim(order_id, claim_token)
        except Exception as release_error:
            # The lease expiry still frees the order for the next delivery
            logger.error(f"❌ ORCHESTRATOR: Could not release claim on {order_id}: {release_error}")
            return False

    # ----------------------------------------------------------------
    # Workflow
    # ----------------------------------------------------------------

    async def _drive(self, order: Order, event: PaymentSucceededEvent, token: str) -> FulfillmentOutcome:
        attempt = order.provisioning_attempt

        await self._guarded(self.order_store.record_payment_reference(order.id, token, event.payment_reference_id),
                            order.id, 'record_payment_reference')
        await self._check_charged_amount(order, event)

        contact, user_id, problem = await self._resolve_registrant(order, event)
        if problem:
            logger.error(f"❌ ORCHESTRATOR: Order {order.id} has no usable registrant: {problem}")
            attempt.domain = StepOutcome.failure(ErrorKind.VALIDATION.value, 'registrant_unavailable', problem)
            return await self._finalize(order, token, OrderStatus.FAILED, attempt, event, problem)

        await self._guarded(self.order_store.attach_user(order.id, token, user_id, event.plan_name),
                            order.id, 'attach_user')

        # Domain step
        if attempt.domain.succeeded:
            logger.info(f"↩️ ORCHESTRATOR: Domain step for {order.id} already succeeded - resuming after it")
        else:
            attempt.domain = await self._run_domain_step(order, contact)
            await self._guarded(self.order_store.save_attempt(order.id, token, attempt), order.id, 'save_attempt')

        if not attempt.domain.succeeded:
            return await self._finalize(order, token, OrderStatus.FAILED, attempt, event,
                                        attempt.domain.error_message)

        # Hosting step
        if attempt.hosting.succeeded:
            logger.info(f"↩️ ORCHESTRATOR: Hosting step for {order.id} already succeeded")
        elif event.has_hosting_request:
            attempt.hosting = await self._run_hosting_step(order, event, contact)
        else:
            logger.warning(f"⚠️ ORCHESTRATOR: Skipping hosting for {order.domain_name}: "
                           f"missing username, password, or plan")
            attempt.hosting = StepOutcome.skipped('missing hosting username, password or plan')

        return await self._finalize(order, token, OrderStatus.COMPLETED, attempt, event)

    async def _guarded(self, write: Awaitable[bool], order_id: str, operation: str) -> None:
        if not await write:
            raise ClaimLostError(order_id, operation)

    async def _check_charged_amount(self, order: Order, event: PaymentSucceededEvent) -> None:
        """The locked price is never overwritten; a differing charge is reported instead"""
        mismatch = describe_amount_mismatch(order.total_price, event.amount_cents)
        if mismatch:
            logger.warning(f"⚠️ ORCHESTRATOR: Payment amount mismatch on {order.id}: {mismatch}")
            await self._alert(
                AlertSeverity.WARNING, AlertCategory.PAYMENT_PROCESSING,
                f"Payment amount mismatch on order {order.id}: {mismatch}",
                {'order_id': order.id, 'payment_reference': event.payment_reference_id},
            )

    async def _resolve_registrant(self, order: Order,
                                  event: PaymentSucceededEvent) -> Tuple[Optional[ContactInfo], Optional[int], Optional[str]]:
        """
        Returns (contact, user_id, None) or (None, None, problem).

        The stored user row wins when the order already references one; event metadata
        is only used (and upserted) when there is no usable stored row.
        """
        problems = []

        if order.user_id is not None:
            row = await self.contact_registry.get_user(order.user_id)
            if row is None:
                problems.append(f"stored user {order.user_id} not found")
            else:
                contact = ContactInfo.from_user_row(row)
                errors = contact.validation_errors()
                if not errors:
                    if event.registrant:
                        logger.info(f"👤 ORCHESTRATOR: Using stored user {row['id']} for {order.id}; "
                                    f"event registrant ignored")
                    return contact, row['id'], None
                problems.append(f"stored user {order.user_id} incomplete: {', '.join(errors)}")

        if event.registrant is None:
            problems.append("no registrant information in payment metadata")
            return None, None, '; '.join(problems)

        try:
            contact = ContactInfo.from_payload(event.registrant).validate()
        except ValidationError as e:
            problems.append(str(e))
            return None, None, '; '.join(problems)

        row = await self.contact_registry.upsert_user(contact)
        return contact, row['id'], None

    async def _run_domain_step(self, order: Order, contact: ContactInfo) -> StepOutcome:
        if order.domain_action is DomainAction.TRANSFER:
            if not (order.epp_code or '').strip():
                logger.error(f"❌ ORCHESTRATOR: EPP code missing for transfer of {order.domain_name}")
                return StepOutcome.failure(ErrorKind.VALIDATION.value, 'missing_epp_code',
                                           f"EPP code missing for transfer of {order.domain_name}")
            result, attempts = await self._call_with_retry(
                f"transfer {order.domain_name}",
                lambda: self.registrar.transfer(order.domain_name, order.epp_code, order.years, contact),
            )
        else:
            result, attempts = await self._call_with_retry(
                f"register {order.domain_name}",
                lambda: self.registrar.register(order.domain_name, order.years, contact),
            )

        if result.success:
            logger.info(f"✅ ORCHESTRATOR: Domain step succeeded for {order.domain_name} "
                        f"(reference {result.reference})")
            return StepOutcome.success(attempts, result.reference)

        error = result.error
        await self._alert(
            AlertSeverity.ERROR, AlertCategory.DOMAIN_REGISTRATION,
            f"{order.domain_action.value} failed for {order.domain_name}: {error.message}",
            {'order_id': order.id, 'kind': error.kind.value, 'code': error.code, 'attempts': attempts},
        )
        return StepOutcome.failure(error.kind.value, error.code, error.message, attempts)

    async def _run_hosting_step(self, order: Order, event: PaymentSucceededEvent,
                                contact: ContactInfo) -> StepOutcome:
        result, attempts = await self._call_with_retry(
            f"create hosting account for {order.domain_name}",
            lambda: self.hosting.create_account(order.domain_name, event.hosting_username,
                                                event.hosting_password, event.plan_id, contact.email_address),
        )

        if result.success:
            logger.info(f"✅ ORCHESTRATOR: Hosting account {result.reference} created for {order.domain_name}")
            return StepOutcome.success(attempts, result.reference)

        error = result.error
        logger.error(f"❌ ORCHESTRATOR: Hosting failed for {order.domain_name} "
                     f"(order stays on track, domain is already provisioned): {error.message}")
        await self._alert(
            AlertSeverity.ERROR, AlertCategory.HOSTING,
            f"Hosting account creation failed for {order.domain_name}: {error.message}",
            {
                'order_id': order.id,
                'username': event.hosting_username,
                'plan': event.plan_id,
                'kind': error.kind.value,
                'code': error.code,
                'attempts': attempts,
            },
        )
        return StepOutcome.failure(error.kind.value, error.code, error.message, attempts)

    async def _call_with_retry(self, label: str,
                               call: Callable[[], Awaitable[ProviderResult]]) -> Tuple[ProviderResult, int]:
        """Run a provider call with a per-call timeout and bounded exponential backoff"""
        max_attempts = max(1, self.settings.provider_max_attempts)
        timeout = self.settings.provider_call_timeout

        for attempt in range(max_attempts):
            attempt_num = attempt + 1
            try:
                result = await asyncio.wait_for(call(), timeout=timeout)
            except asyncio.TimeoutError:
                result = ProviderResult.fail(ErrorKind.TRANSIENT, 'timeout', f"{label} exceeded {timeout}s")

            if result.success or not result.retryable:
                return result, attempt_num

            if attempt_num >= max_attempts:
                logger.error(f"❌ ORCHESTRATOR: {label} failed after {max_attempts} attempts: "
                             f"{result.error.message}")
                return result, attempt_num

            delay = self.settings.provider_retry_base_delay * (2 ** attempt)
            logger.warning(f"⚠️ ORCHESTRATOR: {label} transient failure "
                           f"(attempt {attempt_num}/{max_attempts}), retrying in {delay}s: {result.error.code}")
            await self._sleep(delay)

        raise RuntimeError("retry loop exited without a result")

    async def _finalize(self, order: Order, token: str, status: OrderStatus, attempt: ProvisioningAttempt,
                        event: PaymentSucceededEvent, reason: Optional[str] = None) -> FulfillmentOutcome:
        await self._guarded(self.order_store.finalize_order(order.id, token, status, attempt),
                            order.id, 'finalize_order')

        if status is OrderStatus.FAILED:
            await self._alert(
                AlertSeverity.CRITICAL, AlertCategory.FULFILLMENT,
                f"Order {order.id} FAILED after payment - manual compensation required",
                {
                    'order_id': order.id,
                    'domain': order.domain_name,
                    'action': order.domain_action.value,
                    'payment_reference': event.payment_reference_id,
                    'total_price': str(order.total_price),
                    'reason': reason,
                },
            )
        logger.info(f"🏁 ORCHESTRATOR: Order {order.id} {status.value} "
                    f"(domain={attempt.domain.status.value}, hosting={attempt.hosting.status.value})")
        return FulfillmentOutcome(order.id, FulfillmentOutcome.PROCESSED, status, reason, attempt)

    async def _alert(self, severity: AlertSeverity, category: AlertCategory, message: str,
                     details: Optional[Dict[str, Any]] = None) -> None:
        await self.alerts.send_alert(severity, category, COMPONENT, message, details)
