"""
Fulfillment orchestrator tests
Idempotency, step sequencing, retry policy and failure reporting against in-memory stores
"""

import asyncio
import dataclasses
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from admin_alerts import AlertCategory, AlertSeverity
from factories import OrderFactory, RegistrantFactory
from fakes import FakeRegistrar
from fulfillment_errors import ValidationError
from order_models import (
    ContactInfo, DomainAction, OrderStatus, PaymentSucceededEvent, ProvisioningAttempt, StepOutcome, StepStatus,
)
from services.fulfillment_orchestrator import FulfillmentOrchestrator, FulfillmentOutcome
from services.provider_results import ErrorKind, ProviderResult


def _alerts(mock_alerts, severity=None, category=None):
    calls = [c.args for c in mock_alerts.send_alert.await_args_list]
    return [args for args in calls
            if (severity is None or args[0] is severity) and (category is None or args[1] is category)]


def _event(payment_event_payload, **kwargs) -> PaymentSucceededEvent:
    return PaymentSucceededEvent.from_payload(payment_event_payload(**kwargs))


@pytest.mark.asyncio
class TestSuccessfulFulfillment:
    """Paid orders run the domain step, then the hosting step, then complete"""

    async def test_register_with_hosting_completes(self, orchestrator, order_store, registrar, hosting,
                                                   registrant_payload, registrant, payment_event_payload,
                                                   mock_alerts):
        order_store.add(OrderFactory(id='ord_1', domain_name='example.com'))
        event = _event(payment_event_payload, order_id='ord_1', registrant=registrant_payload,
                       hosting={'username': 'examplecom'})

        outcome = await orchestrator.fulfill(event)

        assert outcome.disposition == FulfillmentOutcome.PROCESSED
        assert outcome.status is OrderStatus.COMPLETED
        assert registrar.register_calls == [('example.com', 1, registrant)]
        assert hosting.create_calls == [
            ('example.com', 'examplecom', 'S3cure-pass', 'webcrtae_basic', registrant.email_address)
        ]

        stored = await order_store.get_order('ord_1')
        assert stored.status is OrderStatus.COMPLETED
        assert stored.payment_reference_id == 'pi_test_1'
        assert stored.user_id == 1
        assert stored.hosting_plan == 'Basic'
        assert stored.completed_at is not None
        assert stored.claim_token is None
        assert stored.provisioning_attempt.domain.provider_reference == 'txn-1001'
        assert stored.provisioning_attempt.hosting.succeeded
        mock_alerts.send_alert.assert_not_awaited()

    async def test_transfer_passes_epp_code(self, orchestrator, order_store, registrar, registrant_payload,
                                            registrant, payment_event_payload):
        order_store.add(OrderFactory(id='ord_t', domain_name='example.net',
                                     domain_action=DomainAction.TRANSFER, epp_code='EPP-123', years=2))

        outcome = await orchestrator.fulfill(_event(payment_event_payload, order_id='ord_t',
                                                    registrant=registrant_payload))

        assert outcome.status is OrderStatus.COMPLETED
        assert registrar.transfer_calls == [('example.net', 'EPP-123', 2, registrant)]
        assert registrar.register_calls == []

    async def test_hosting_skipped_without_credentials(self, orchestrator, order_store, hosting,
                                                      registrant_payload, payment_event_payload):
        order_store.add(OrderFactory(id='ord_1'))

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload))

        assert outcome.status is OrderStatus.COMPLETED
        assert hosting.create_calls == []
        assert outcome.attempt.hosting.status is StepStatus.SKIPPED

    async def test_registrant_is_upserted_from_event(self, orchestrator, order_store, contact_registry,
                                                     registrant_payload, payment_event_payload):
        order_store.add(OrderFactory(id='ord_1'))

        await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload))

        assert len(contact_registry.upserts) == 1
        row = contact_registry.find_by_email(registrant_payload['emailAddress'])
        assert row is not None
        assert (await order_store.get_order('ord_1')).user_id == row['id']


@pytest.mark.asyncio
class TestIdempotency:
    """Replayed and concurrent events provision at most once"""

    async def test_replay_is_noop(self, orchestrator, order_store, registrar, hosting,
                                  registrant_payload, payment_event_payload):
        order_store.add(OrderFactory(id='ord_1', domain_name='example.com'))
        event = _event(payment_event_payload, registrant=registrant_payload,
                       hosting={'username': 'examplecom'})

        first = await orchestrator.fulfill(event)
        second = await orchestrator.fulfill(event)

        assert first.status is OrderStatus.COMPLETED
        assert second.is_noop
        assert second.reason == 'already_completed'
        assert second.status is OrderStatus.COMPLETED
        assert len(registrar.register_calls) == 1
        assert len(hosting.create_calls) == 1

    async def test_replay_of_failed_order_is_noop(self, orchestrator, order_store, registrar,
                                                  registrant_payload, payment_event_payload):
        order_store.add(OrderFactory(id='ord_1'))
        registrar.script(ProviderResult.fail(ErrorKind.TERMINAL, '2303', 'Domain not available'))
        event = _event(payment_event_payload, registrant=registrant_payload)

        first = await orchestrator.fulfill(event)
        second = await orchestrator.fulfill(event)

        assert first.status is OrderStatus.FAILED
        assert second.reason == 'already_failed'
        assert len(registrar.register_calls) == 1

    async def test_unknown_order_is_noop(self, orchestrator, registrar, registrant_payload, payment_event_payload):
        outcome = await orchestrator.fulfill(_event(payment_event_payload, order_id='ord_missing',
                                                    registrant=registrant_payload))

        assert outcome.is_noop
        assert outcome.reason == 'order_not_found'
        assert registrar.call_count == 0

    async def test_missing_order_id_is_rejected(self, orchestrator, registrar, payment_event_payload):
        with pytest.raises(ValidationError):
            await orchestrator.fulfill(_event(payment_event_payload, order_id=None))
        assert registrar.call_count == 0

    async def test_concurrent_deliveries_provision_once(self, settings, order_store, contact_registry, hosting,
                                                        mock_alerts, registrant_payload, payment_event_payload):
        slow_registrar = FakeRegistrar(delay=0.01)
        orchestrator = FulfillmentOrchestrator(settings, order_store, contact_registry, slow_registrar,
                                               hosting, mock_alerts)
        order_store.add(OrderFactory(id='ord_1'))
        event = _event(payment_event_payload, registrant=registrant_payload,
                       hosting={'username': 'examplecom'})

        outcomes = await asyncio.gather(*(orchestrator.fulfill(event) for _ in range(5)))

        processed = [o for o in outcomes if not o.is_noop]
        assert len(processed) == 1
        assert processed[0].status is OrderStatus.COMPLETED
        assert all(o.reason == 'in_progress' for o in outcomes if o.is_noop)
        assert len(slow_registrar.register_calls) == 1
        assert len(hosting.create_calls) == 1

    async def test_live_claim_blocks_second_attempt(self, orchestrator, order_store, registrar,
                                                    registrant_payload, payment_event_payload):
        order_store.add(OrderFactory(id='ord_1'))
        assert await order_store.claim_order('ord_1', 'other-worker', 600)

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload))

        assert outcome.reason == 'in_progress'
        assert registrar.call_count == 0

    async def test_expired_claim_is_taken_over(self, orchestrator, order_store, registrar,
                                               registrant_payload, payment_event_payload):
        order_store.add(OrderFactory(id='ord_1'))
        assert await order_store.claim_order('ord_1', 'crashed-worker', 600)
        order_store.expire_claim('ord_1')

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload))

        assert outcome.status is OrderStatus.COMPLETED
        assert len(registrar.register_calls) == 1

    async def test_status_moves_only_forward(self, orchestrator, order_store, registrant_payload,
                                             payment_event_payload):
        order_store.add(OrderFactory(id='ord_1'))
        event = _event(payment_event_payload, registrant=registrant_payload)

        await orchestrator.fulfill(event)
        await orchestrator.fulfill(event)

        assert order_store.status_history['ord_1'] == [OrderStatus.PENDING, OrderStatus.COMPLETED]
        assert not await order_store.finalize_order('ord_1', 'any-token', OrderStatus.FAILED,
                                                    ProvisioningAttempt())
        assert (await order_store.get_order('ord_1')).status is OrderStatus.COMPLETED

    async def test_lost_claim_stops_without_finalizing(self, orchestrator, order_store, registrar,
                                                       registrant_payload, payment_event_payload):
        order_store.add(OrderFactory(id='ord_1'))

        async def register_and_lose_claim(domain, years, contact, **kwargs):
            order_store.orders['ord_1'].claim_token = 'another-worker'
            return ProviderResult.ok({'reference': 'txn-1'})

        registrar.register = AsyncMock(side_effect=register_and_lose_claim)

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload))

        assert outcome.is_noop
        assert outcome.reason == 'claim_lost'
        stored = await order_store.get_order('ord_1')
        assert stored.status is OrderStatus.PENDING
        assert 'finalize_order' not in order_store.writes


@pytest.mark.asyncio
class TestRegistrantResolution:
    """The stored user row wins; event metadata is the fallback"""

    async def test_stored_user_wins_over_event(self, orchestrator, order_store, contact_registry, registrar,
                                               registrant_payload, payment_event_payload):
        stored_contact = ContactInfo.from_payload(RegistrantFactory())
        user = contact_registry.add_user(stored_contact)
        order_store.add(OrderFactory(id='ord_1', user_id=user['id']))

        await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload))

        assert registrar.register_calls[0][2] == stored_contact
        assert contact_registry.upserts == []

    async def test_incomplete_stored_user_falls_back_to_event(self, orchestrator, order_store, contact_registry,
                                                              registrar, registrant_payload, registrant,
                                                              payment_event_payload):
        incomplete = dataclasses.replace(ContactInfo.from_payload(RegistrantFactory()), phone='')
        user = contact_registry.add_user(incomplete)
        order_store.add(OrderFactory(id='ord_1', user_id=user['id']))

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload))

        assert outcome.status is OrderStatus.COMPLETED
        assert registrar.register_calls[0][2] == registrant

    async def test_missing_registrant_fails_order(self, orchestrator, order_store, registrar, hosting,
                                                  payment_event_payload, mock_alerts):
        order_store.add(OrderFactory(id='ord_1'))

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=None,
                                                    hosting={'username': 'examplecom'}))

        assert outcome.status is OrderStatus.FAILED
        assert outcome.attempt.domain.error_code == 'registrant_unavailable'
        assert registrar.call_count == 0
        assert hosting.create_calls == []
        assert _alerts(mock_alerts, AlertSeverity.CRITICAL, AlertCategory.FULFILLMENT)

    async def test_invalid_event_registrant_fails_order(self, orchestrator, order_store, registrar,
                                                        payment_event_payload):
        order_store.add(OrderFactory(id='ord_1'))
        bad_registrant = RegistrantFactory(phone='555-0100')

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=bad_registrant))

        assert outcome.status is OrderStatus.FAILED
        assert 'phone' in outcome.reason
        assert registrar.call_count == 0


@pytest.mark.asyncio
class TestDomainStepFailures:
    """A failed domain step fails the order and skips hosting"""

    async def test_transfer_without_epp_never_calls_registry(self, orchestrator, order_store, registrar, hosting,
                                                             registrant_payload, payment_event_payload,
                                                             mock_alerts):
        order_store.add(OrderFactory(id='ord_1', domain_action=DomainAction.TRANSFER, epp_code=None))

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload,
                                                    hosting={'username': 'examplecom'}))

        assert outcome.status is OrderStatus.FAILED
        assert outcome.attempt.domain.error_code == 'missing_epp_code'
        assert registrar.call_count == 0
        assert hosting.create_calls == []
        assert outcome.attempt.hosting.status is StepStatus.NOT_ATTEMPTED
        assert _alerts(mock_alerts, AlertSeverity.CRITICAL)

    async def test_terminal_rejection_is_not_retried(self, orchestrator, order_store, registrar, hosting,
                                                     registrant_payload, payment_event_payload, sleeps,
                                                     mock_alerts):
        order_store.add(OrderFactory(id='ord_1'))
        registrar.script(ProviderResult.fail(ErrorKind.TERMINAL, '2303', 'Domain not available'))

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload,
                                                    hosting={'username': 'examplecom'}))

        assert outcome.status is OrderStatus.FAILED
        assert len(registrar.register_calls) == 1
        assert sleeps == []
        assert hosting.create_calls == []
        stored = await order_store.get_order('ord_1')
        assert stored.provisioning_attempt.domain.error_message == 'Domain not available'
        assert _alerts(mock_alerts, AlertSeverity.ERROR, AlertCategory.DOMAIN_REGISTRATION)
        assert _alerts(mock_alerts, AlertSeverity.CRITICAL, AlertCategory.FULFILLMENT)

    async def test_transient_failures_are_retried_with_backoff(self, orchestrator, order_store, registrar,
                                                               registrant_payload, payment_event_payload, sleeps):
        order_store.add(OrderFactory(id='ord_1'))
        registrar.script(
            ProviderResult.fail(ErrorKind.TRANSIENT, 'http_503', 'unavailable'),
            ProviderResult.fail(ErrorKind.TRANSIENT, 'timeout', 'timed out'),
        )

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload))

        assert outcome.status is OrderStatus.COMPLETED
        assert len(registrar.register_calls) == 3
        assert outcome.attempt.domain.attempts == 3
        assert sleeps == [0.5, 1.0]

    async def test_transient_failures_exhaust_attempts(self, orchestrator, order_store, registrar,
                                                       registrant_payload, payment_event_payload, sleeps):
        order_store.add(OrderFactory(id='ord_1'))
        registrar.script(*[ProviderResult.fail(ErrorKind.TRANSIENT, 'http_502', 'bad gateway')] * 3)

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload))

        assert outcome.status is OrderStatus.FAILED
        assert len(registrar.register_calls) == 3
        assert outcome.attempt.domain.error_kind == ErrorKind.TRANSIENT.value
        assert sleeps == [0.5, 1.0]

    async def test_slow_provider_call_times_out(self, settings, order_store, contact_registry, hosting,
                                                mock_alerts, registrant_payload, payment_event_payload):
        slow_registrar = FakeRegistrar(delay=0.2)
        fast_settings = dataclasses.replace(settings, provider_call_timeout=0.05, provider_retry_base_delay=0.0)
        orchestrator = FulfillmentOrchestrator(fast_settings, order_store, contact_registry, slow_registrar,
                                               hosting, mock_alerts)
        order_store.add(OrderFactory(id='ord_1'))

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload))

        assert outcome.status is OrderStatus.FAILED
        assert outcome.attempt.domain.error_code == 'timeout'
        assert len(slow_registrar.register_calls) == 3


@pytest.mark.asyncio
class TestHostingStep:
    """Hosting outcomes never fail an order whose domain step succeeded"""

    async def test_hosting_rejection_still_completes(self, orchestrator, order_store, hosting,
                                                     registrant_payload, payment_event_payload, mock_alerts):
        order_store.add(OrderFactory(id='ord_1', domain_name='example.com'))
        reason = 'Sorry, a group for that username already exists.'
        hosting.script(ProviderResult.fail(ErrorKind.TERMINAL, 'whm_rejected', reason))

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload,
                                                    hosting={'username': 'examplecom'}))

        assert outcome.status is OrderStatus.COMPLETED
        assert len(hosting.create_calls) == 1
        stored = await order_store.get_order('ord_1')
        assert stored.provisioning_attempt.domain.succeeded
        assert stored.provisioning_attempt.hosting.status is StepStatus.FAILED
        assert stored.provisioning_attempt.hosting.error_message == reason
        assert _alerts(mock_alerts, AlertSeverity.ERROR, AlertCategory.HOSTING)
        assert not _alerts(mock_alerts, AlertSeverity.CRITICAL)

    async def test_hosting_transient_failure_is_retried(self, orchestrator, order_store, hosting,
                                                        registrant_payload, payment_event_payload):
        order_store.add(OrderFactory(id='ord_1'))
        hosting.script(ProviderResult.fail(ErrorKind.TRANSIENT, 'http_500', 'WHM server responded with status 500'))

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload,
                                                    hosting={'username': 'examplecom'}))

        assert outcome.status is OrderStatus.COMPLETED
        assert len(hosting.create_calls) == 2
        assert outcome.attempt.hosting.succeeded


@pytest.mark.asyncio
class TestUnexpectedErrors:
    """Crashes release the claim so a redelivery can resume"""

    async def test_exception_releases_claim_and_propagates(self, orchestrator, order_store, registrar,
                                                           registrant_payload, payment_event_payload,
                                                           mock_alerts):
        order_store.add(OrderFactory(id='ord_1'))
        registrar.register = AsyncMock(side_effect=RuntimeError('registry client exploded'))
        event = _event(payment_event_payload, registrant=registrant_payload)

        with pytest.raises(RuntimeError):
            await orchestrator.fulfill(event)

        stored = await order_store.get_order('ord_1')
        assert stored.status is OrderStatus.PENDING
        assert stored.claim_token is None
        critical = _alerts(mock_alerts, AlertSeverity.CRITICAL, AlertCategory.FULFILLMENT)
        assert critical and critical[0][4]['claim_released'] is True

        del registrar.register
        outcome = await orchestrator.fulfill(event)
        assert outcome.status is OrderStatus.COMPLETED

    async def test_redelivery_resumes_after_domain_checkpoint(self, orchestrator, order_store, registrar, hosting,
                                                              registrant_payload, payment_event_payload):
        order_store.add(OrderFactory(id='ord_1'))
        hosting.create_account = AsyncMock(side_effect=RuntimeError('connection reset'))
        event = _event(payment_event_payload, registrant=registrant_payload, hosting={'username': 'examplecom'})

        with pytest.raises(RuntimeError):
            await orchestrator.fulfill(event)
        assert (await order_store.get_order('ord_1')).provisioning_attempt.domain.succeeded

        del hosting.create_account
        outcome = await orchestrator.fulfill(event)

        assert outcome.status is OrderStatus.COMPLETED
        assert len(registrar.register_calls) == 1
        assert len(hosting.create_calls) == 1

    async def test_already_succeeded_domain_step_is_not_repeated(self, orchestrator, order_store, registrar,
                                                                 registrant_payload, payment_event_payload):
        order = OrderFactory(id='ord_1')
        order.provisioning_attempt = ProvisioningAttempt(domain=StepOutcome.success(1, 'txn-earlier'))
        order_store.add(order)

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload))

        assert outcome.status is OrderStatus.COMPLETED
        assert registrar.call_count == 0
        assert outcome.attempt.domain.provider_reference == 'txn-earlier'


@pytest.mark.asyncio
class TestChargedAmount:

    async def test_amount_mismatch_alerts_but_keeps_locked_price(self, orchestrator, order_store,
                                                                 registrant_payload, payment_event_payload,
                                                                 mock_alerts):
        order_store.add(OrderFactory(id='ord_1', total_price=Decimal('12.98')))

        outcome = await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload,
                                                    amount=999))

        assert outcome.status is OrderStatus.COMPLETED
        assert (await order_store.get_order('ord_1')).total_price == Decimal('12.98')
        assert _alerts(mock_alerts, AlertSeverity.WARNING, AlertCategory.PAYMENT_PROCESSING)

    async def test_matching_amount_raises_no_alert(self, orchestrator, order_store, registrant_payload,
                                                   payment_event_payload, mock_alerts):
        order_store.add(OrderFactory(id='ord_1', total_price=Decimal('12.98')))

        await orchestrator.fulfill(_event(payment_event_payload, registrant=registrant_payload, amount=1298))

        assert not _alerts(mock_alerts, AlertSeverity.WARNING)
