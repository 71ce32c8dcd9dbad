"""
Test data factories
"""

from decimal import Decimal

import factory
from factory.declarations import Sequence
from factory.faker import Faker

from order_models import DomainAction, Order, OrderStatus


class RegistrantFactory(factory.Factory):  # type: ignore[misc]
    """Factory for camelCase registrant payloads as sent in payment metadata"""
    class Meta:  # type: ignore[misc]
        model = dict

    firstName = Faker('first_name')
    lastName = Faker('last_name')
    address1 = Faker('street_address')
    city = Faker('city')
    stateProvince = Faker('state_abbr')
    postalCode = Faker('postcode')
    country = 'US'
    phone = Sequence(lambda n: f"+1.{5550100000 + n}")
    emailAddress = Sequence(lambda n: f"registrant{n}@example.org")


class OrderFactory(factory.Factory):  # type: ignore[misc]
    """Factory for PENDING orders"""
    class Meta:  # type: ignore[misc]
        model = Order

    id = Sequence(lambda n: f"ord_test{n}")
    status = OrderStatus.PENDING
    domain_name = Sequence(lambda n: f"shop{n}.com")
    domain_action = DomainAction.REGISTER
    years = 1
    total_price = Decimal('12.98')
    hosting_plan = None
    epp_code = None
    user_id = None
