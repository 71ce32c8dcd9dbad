"""
Order Store - single source of truth for "has this order been fulfilled"

Concurrency control is a compare-and-set on the order row:
- claim_order() moves a PENDING order under a claim token (or takes over an expired claim)
- every later write is guarded by status = 'PENDING' AND claim_token = <token>
- finalize_order() writes the terminal status and the attempt record in one UPDATE

A guarded write that matches no row means the claim was lost; callers get False
and must stop without touching the order again.
"""

import logging
import secrets
from decimal import Decimal
from typing import Optional, Union

from database import execute_query, execute_returning, execute_update
from fulfillment_errors import ValidationError
from order_models import (
    DomainAction, Order, OrderStatus, ProvisioningAttempt, normalize_domain_name, parse_years, to_money,
)

logger = logging.getLogger(__name__)


def new_order_id() -> str:
    return f"ord_{secrets.token_hex(12)}"


class OrderStore:
    """PostgreSQL-backed order repository with compare-and-set transitions"""

    async def create_order(self, domain_name: str, domain_action: Union[DomainAction, str], years: int,
                           total_price: Union[Decimal, str], hosting_plan: Optional[str] = None,
                           epp_code: Optional[str] = None, user_id: Optional[int] = None) -> Order:
        """Create a PENDING order with its price locked"""
        try:
            action = DomainAction(domain_action.upper() if isinstance(domain_action, str) else domain_action)
        except ValueError:
            raise ValidationError(f"Unknown domain action: {domain_action!r}")
        domain_name = normalize_domain_name(domain_name)
        years = parse_years(years)
        price = to_money(total_price)
        if price < 0:
            raise ValidationError("Total price cannot be negative")

        epp_code = (epp_code or '').strip() or None
        if action is DomainAction.TRANSFER and not epp_code:
            raise ValidationError("EPP code is required for a domain transfer")
        if action is DomainAction.REGISTER:
            epp_code = None

        rows = await execute_returning("""
            INSERT INTO orders (id, status, domain_name, domain_action, years, epp_code,
                                hosting_plan, total_price, user_id)
            VALUES (%s, 'PENDING', %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
        """, (new_order_id(), domain_name, action.value, years, epp_code, hosting_plan, price, user_id))

        order = Order.from_row(rows[0])
        logger.info(f"🧾 ORDER STORE: Created order {order.id} ({action.value} {domain_name}, "
                    f"{years}y, {price})")
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        rows = await execute_query("SELECT * FROM orders WHERE id = %s", (order_id,))
        return Order.from_row(rows[0]) if rows else None

    async def claim_order(self, order_id: str, claim_token: str, lease_seconds: int) -> Optional[Order]:
        """
        Idempotency gate: atomically take ownership of a PENDING order.

        Succeeds when the order is PENDING and either unclaimed or its previous claim is
        older than lease_seconds. Returns the claimed order, or None when the order does not
        exist, is terminal, or is held by a live claim.
        """
        rows = await execute_returning("""
            UPDATE orders
            SET claim_token = %s, claimed_at = NOW(), updated_at = NOW()
            WHERE id = %s
              AND status = 'PENDING'
              AND (claim_token IS NULL OR claimed_at < NOW() - make_interval(secs => %s))
            RETURNING *
        """, (claim_token, order_id, lease_seconds))

        if not rows:
            return None
        order = Order.from_row(rows[0])
        logger.info(f"🔒 ORDER STORE: Claimed order {order_id}")
        return order

    async def release_claim(self, order_id: str, claim_token: str) -> bool:
        """Give up a claim so a redelivered event can resume immediately"""
        updated = await execute_update("""
            UPDATE orders
            SET claim_token = NULL, claimed_at = NULL, updated_at = NOW()
            WHERE id = %s AND status = 'PENDING' AND claim_token = %s
        """, (order_id, claim_token))
        return updated > 0

    async def record_payment_reference(self, order_id: str, claim_token: str, payment_reference_id: str) -> bool:
        updated = await execute_update("""
            UPDATE orders
            SET payment_reference_id = %s, updated_at = NOW()
            WHERE id = %s AND status = 'PENDING' AND claim_token = %s
        """, (payment_reference_id, order_id, claim_token))
        return updated > 0

    async def attach_user(self, order_id: str, claim_token: str, user_id: int,
                          hosting_plan: Optional[str] = None) -> bool:
        """Link the resolved registrant and plan name; total_price is never written here"""
        updated = await execute_update("""
            UPDATE orders
            SET user_id = %s, hosting_plan = COALESCE(%s, hosting_plan), updated_at = NOW()
            WHERE id = %s AND status = 'PENDING' AND claim_token = %s
        """, (user_id, hosting_plan, order_id, claim_token))
        return updated > 0

    async def save_attempt(self, order_id: str, claim_token: str, attempt: ProvisioningAttempt) -> bool:
        """Checkpoint step outcomes so an interrupted fulfillment can resume"""
        updated = await execute_update("""
            UPDATE orders
            SET provisioning_attempt = %s::jsonb, updated_at = NOW()
            WHERE id = %s AND status = 'PENDING' AND claim_token = %s
        """, (attempt.to_json(), order_id, claim_token))
        return updated > 0

    async def finalize_order(self, order_id: str, claim_token: str, status: OrderStatus,
                             attempt: ProvisioningAttempt) -> bool:
        """Write the terminal status and attempt record in one guarded UPDATE"""
        if not status.is_terminal:
            raise ValueError(f"finalize_order requires a terminal status, got {status.value}")

        updated = await execute_update("""
            UPDATE orders
            SET status = %s,
                provisioning_attempt = %s::jsonb,
                completed_at = NOW(),
                updated_at = NOW(),
                claim_token = NULL,
                claimed_at = NULL
            WHERE id = %s AND status = 'PENDING' AND claim_token = %s
        """, (status.value, attempt.to_json(), order_id, claim_token))

        if updated:
            logger.info(f"✅ ORDER STORE: Order {order_id} finalized as {status.value}")
        else:
            logger.warning(f"⚠️ ORDER STORE: Finalize of {order_id} matched no row (claim lost or already terminal)")
        return updated > 0
