"""
Order model and payment validation tests
Contact validation, payment event parsing and charged-amount checks
"""

from decimal import Decimal

import pytest

from factories import RegistrantFactory
from fulfillment_errors import ValidationError
from order_models import (
    ContactInfo, PaymentSucceededEvent, ProvisioningAttempt, StepOutcome, StepStatus, normalize_domain_name,
    parse_years, to_money,
)
from payment_validation import amount_to_cents, cents_to_amount, describe_amount_mismatch, validate_payment_amount


class TestContactInfo:

    def test_payload_is_normalized(self):
        contact = ContactInfo.from_payload(RegistrantFactory(emailAddress=' Owner@Example.ORG ', address2='  '))

        assert contact.email_address == 'owner@example.org'
        assert contact.address2 is None
        assert contact.validation_errors() == []

    def test_email_alias_is_accepted(self):
        payload = RegistrantFactory()
        payload['email'] = payload.pop('emailAddress')

        assert ContactInfo.from_payload(payload).email_address == payload['email']

    @pytest.mark.parametrize('phone', ['5550100', '+1-555-0100', '+1.', '1.5550100'])
    def test_phone_format_is_enforced(self, phone):
        errors = ContactInfo.from_payload(RegistrantFactory(phone=phone)).validation_errors()
        assert any('phone' in error for error in errors)

    def test_missing_fields_are_listed(self):
        with pytest.raises(ValidationError) as exc_info:
            ContactInfo.from_payload({'firstName': 'Ada'}).validate()

        assert 'last_name is required' in exc_info.value.errors
        assert 'email_address is required' in exc_info.value.errors

    def test_non_object_payload_is_rejected(self):
        with pytest.raises(ValidationError):
            ContactInfo.from_payload('Ada Lovelace')


class TestHelpers:

    @pytest.mark.parametrize('raw,expected', [('Example.COM.', 'example.com'), (' shop.co.uk ', 'shop.co.uk')])
    def test_normalize_domain_name(self, raw, expected):
        assert normalize_domain_name(raw) == expected

    @pytest.mark.parametrize('raw', ['', None, 'localhost', '-bad.com', 'exa mple.com'])
    def test_invalid_domain_names(self, raw):
        with pytest.raises(ValidationError):
            normalize_domain_name(raw)

    def test_parse_years(self):
        assert parse_years('3') == 3
        with pytest.raises(ValidationError):
            parse_years(True)

    def test_to_money_rounds_half_up(self):
        assert to_money('1.005') == Decimal('1.01')
        with pytest.raises(ValidationError):
            to_money('NaN')


class TestProvisioningAttempt:

    def test_json_column_round_trip(self):
        attempt = ProvisioningAttempt(domain=StepOutcome.success(2, 'txn-1'),
                                      hosting=StepOutcome.failure('TERMINAL', 'whm_rejected', 'taken', 1))

        restored = ProvisioningAttempt.from_value(attempt.to_json())

        assert restored == attempt

    @pytest.mark.parametrize('value', [None, '', {}])
    def test_empty_column_means_nothing_attempted(self, value):
        attempt = ProvisioningAttempt.from_value(value)
        assert attempt.domain.status is StepStatus.NOT_ATTEMPTED
        assert attempt.hosting.status is StepStatus.NOT_ATTEMPTED


class TestPaymentSucceededEvent:

    def test_metadata_is_decoded(self, payment_event_payload, registrant_payload):
        event = PaymentSucceededEvent.from_payload(payment_event_payload(
            registrant=registrant_payload, hosting={'username': 'examplecom', 'plan': 'webcrtae_pro', 'name': 'Pro'}))

        assert event.order_id == 'ord_1'
        assert event.payment_reference_id == 'pi_test_1'
        assert event.amount_cents == 1298
        assert event.registrant == registrant_payload
        assert event.plan_id == 'webcrtae_pro'
        assert event.plan_name == 'Pro'
        assert event.has_hosting_request
        assert 'S3cure-pass' not in repr(event)

    def test_plan_name_falls_back_to_hosting_plan(self, payment_event_payload):
        event = PaymentSucceededEvent.from_payload(payment_event_payload(hostingPlan='Basic'))

        assert event.plan_name == 'Basic'
        assert not event.has_hosting_request

    def test_invalid_registrant_json_is_ignored(self, payment_event_payload):
        event = PaymentSucceededEvent.from_payload(payment_event_payload(registrantInfo='{not json'))

        assert event.registrant is None

    def test_registrant_object_is_accepted(self, payment_event_payload, registrant_payload):
        payload = payment_event_payload()
        payload['data']['object']['metadata']['registrantInfo'] = registrant_payload

        assert PaymentSucceededEvent.from_payload(payload).registrant == registrant_payload

    def test_missing_order_id(self, payment_event_payload):
        assert PaymentSucceededEvent.from_payload(payment_event_payload(order_id=None)).order_id is None

    @pytest.mark.parametrize('payload', [{}, {'data': {}}, {'data': {'object': 'pi_1'}}])
    def test_missing_intent_is_rejected(self, payload):
        with pytest.raises(ValidationError):
            PaymentSucceededEvent.from_payload(payload)

    def test_non_integer_amount_is_rejected(self, payment_event_payload):
        payload = payment_event_payload()
        payload['data']['object']['amount_received'] = '12.98'

        with pytest.raises(ValidationError):
            PaymentSucceededEvent.from_payload(payload)


class TestPaymentValidation:

    def test_cent_conversions(self):
        assert cents_to_amount(1298) == Decimal('12.98')
        assert amount_to_cents(Decimal('12.98')) == 1298

    @pytest.mark.parametrize('expected,received,ok', [
        (Decimal('100.00'), Decimal('100.00'), True),
        (Decimal('100.00'), Decimal('99.50'), True),
        (Decimal('100.00'), Decimal('98.00'), False),
        (Decimal('0'), Decimal('0'), True),
        (Decimal('0'), Decimal('1'), False),
    ])
    def test_validate_payment_amount(self, expected, received, ok):
        assert validate_payment_amount(expected, received) is ok

    def test_describe_amount_mismatch(self):
        assert describe_amount_mismatch(Decimal('12.98'), 1298) is None
        assert describe_amount_mismatch(Decimal('12.98'), None) is None
        assert describe_amount_mismatch(Decimal('12.98'), 999) == 'charged 9.99 but order price is 12.98'
