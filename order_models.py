"""
Data model for domain + hosting orders

Order rows are owned by services/order_store.py, user rows by services/contact_registry.py.
The provisioning attempt record is embedded in the order row as JSONB and is what makes
an interrupted fulfillment resumable.
"""

import json
import re
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from fulfillment_errors import ValidationError

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED_EVENT = 'payment_intent.succeeded'

PHONE_PATTERN = re.compile(r'^\+\d{1,3}\.\d+$')
EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
DOMAIN_PATTERN = re.compile(r'^(?=.{4,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z][a-z0-9-]{0,61}[a-z0-9]$')

MIN_YEARS = 1
MAX_YEARS = 10
CENTS = Decimal('0.01')


# ====================================================================
# ENUMS
# ====================================================================

class OrderStatus(Enum):
    """Order lifecycle states"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class DomainAction(Enum):
    REGISTER = "REGISTER"
    TRANSFER = "TRANSFER"


class StepStatus(Enum):
    """Outcome of one provisioning step"""
    NOT_ATTEMPTED = "NOT_ATTEMPTED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


# ====================================================================
# HELPERS
# ====================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_money(value: Union[str, int, float, Decimal]) -> Decimal:
    """Coerce a price to a two-place Decimal"""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def normalize_domain_name(domain: Optional[str]) -> str:
    """Lowercase and validate a fully-qualified domain name"""
    normalized = (domain or '').strip().lower().rstrip('.')
    if not DOMAIN_PATTERN.match(normalized):
        raise ValidationError(f"Invalid domain name: {domain!r}")
    return normalized


def parse_years(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Years must be an integer between {MIN_YEARS} and {MAX_YEARS}")
    try:
        years = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Years must be an integer between {MIN_YEARS} and {MAX_YEARS}")
    if isinstance(value, float) and value != years:
        raise ValidationError(f"Years must be an integer between {MIN_YEARS} and {MAX_YEARS}")
    if not MIN_YEARS <= years <= MAX_YEARS:
        raise ValidationError(f"Years must be between {MIN_YEARS} and {MAX_YEARS}, got {years}")
    return years


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# ====================================================================
# CONTACT INFORMATION
# ====================================================================

@dataclass(frozen=True)
class ContactInfo:
    """Registrant / tech / admin / billing contact as sent to the registry"""
    first_name: str
    last_name: str
    address1: str
    city: str
    state_province: str
    postal_code: str
    country: str
    phone: str
    email_address: str
    address2: Optional[str] = None
    organization_name: Optional[str] = None
    job_title: Optional[str] = None

    REQUIRED_FIELDS = (
        'first_name', 'last_name', 'address1', 'city', 'state_province',
        'postal_code', 'country', 'phone', 'email_address',
    )

    def validation_errors(self) -> List[str]:
        errors = []
        for name in self.REQUIRED_FIELDS:
            if not (getattr(self, name) or '').strip():
                errors.append(f"{name} is required")
        if self.phone and not PHONE_PATTERN.match(self.phone):
            errors.append("phone must use the format +<country code>.<digits>")
        if self.email_address and not EMAIL_PATTERN.match(self.email_address):
            errors.append("email_address is not a valid email address")
        return errors

    def validate(self) -> 'ContactInfo':
        errors = self.validation_errors()
        if errors:
            raise ValidationError(f"Invalid contact information: {'; '.join(errors)}", errors)
        return self

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'ContactInfo':
        """Build from a camelCase registrant payload (event metadata or API body)"""
        if not isinstance(payload, dict):
            raise ValidationError("Registrant information must be an object")
        return cls(
            first_name=_clean(payload.get('firstName')) or '',
            last_name=_clean(payload.get('lastName')) or '',
            address1=_clean(payload.get('address1')) or '',
            address2=_clean(payload.get('address2')),
            city=_clean(payload.get('city')) or '',
            state_province=_clean(payload.get('stateProvince')) or '',
            postal_code=_clean(payload.get('postalCode')) or '',
            country=_clean(payload.get('country')) or '',
            phone=_clean(payload.get('phone')) or '',
            email_address=(_clean(payload.get('emailAddress') or payload.get('email')) or '').lower(),
            organization_name=_clean(payload.get('organizationName')),
            job_title=_clean(payload.get('jobTitle')),
        )

    @classmethod
    def from_user_row(cls, row: Dict[str, Any]) -> 'ContactInfo':
        return cls(
            first_name=row.get('first_name') or '',
            last_name=row.get('last_name') or '',
            address1=row.get('address1') or '',
            address2=row.get('address2'),
            city=row.get('city') or '',
            state_province=row.get('state_province') or '',
            postal_code=row.get('postal_code') or '',
            country=row.get('country') or '',
            phone=row.get('phone') or '',
            email_address=row.get('email') or '',
            organization_name=row.get('organization_name'),
            job_title=row.get('job_title'),
        )

    def to_user_fields(self) -> Dict[str, Optional[str]]:
        """Column values for the users table"""
        return {
            'email': self.email_address.lower(),
            'first_name': self.first_name,
            'last_name': self.last_name,
            'address1': self.address1,
            'address2': self.address2,
            'city': self.city,
            'state_province': self.state_province,
            'postal_code': self.postal_code,
            'country': self.country,
            'phone': self.phone,
            'organization_name': self.organization_name,
            'job_title': self.job_title,
        }


# ====================================================================
# PROVISIONING ATTEMPT RECORD
# ====================================================================

@dataclass
class StepOutcome:
    """Recorded result of the domain or hosting step"""
    status: StepStatus = StepStatus.NOT_ATTEMPTED
    attempts: int = 0
    error_kind: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    provider_reference: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is StepStatus.SUCCEEDED

    @classmethod
    def success(cls, attempts: int, provider_reference: Optional[str] = None) -> 'StepOutcome':
        return cls(StepStatus.SUCCEEDED, attempts, provider_reference=provider_reference,
                   finished_at=utc_now().isoformat())

    @classmethod
    def failure(cls, error_kind: str, error_code: Optional[str], error_message: str,
                attempts: int = 0) -> 'StepOutcome':
        return cls(StepStatus.FAILED, attempts, error_kind=error_kind, error_code=error_code,
                   error_message=error_message, finished_at=utc_now().isoformat())

    @classmethod
    def skipped(cls, reason: str) -> 'StepOutcome':
        return cls(StepStatus.SKIPPED, 0, error_message=reason, finished_at=utc_now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'StepOutcome':
        if not data:
            return cls()
        return cls(
            status=StepStatus(data.get('status', StepStatus.NOT_ATTEMPTED.value)),
            attempts=int(data.get('attempts') or 0),
            error_kind=data.get('error_kind'),
            error_code=data.get('error_code'),
            error_message=data.get('error_message'),
            provider_reference=data.get('provider_reference'),
            finished_at=data.get('finished_at'),
        )


@dataclass
class ProvisioningAttempt:
    """Per-order record of what each provisioning step did"""
    domain: StepOutcome = field(default_factory=StepOutcome)
    hosting: StepOutcome = field(default_factory=StepOutcome)

    def to_dict(self) -> Dict[str, Any]:
        return {'domain': self.domain.to_dict(), 'hosting': self.hosting.to_dict()}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_value(cls, value: Union[None, str, Dict[str, Any]]) -> 'ProvisioningAttempt':
        """Accept the JSONB column as psycopg2 returns it (dict) or as raw JSON text"""
        if not value:
            return cls()
        if isinstance(value, str):
            value = json.loads(value)
        return cls(
            domain=StepOutcome.from_dict(value.get('domain')),
            hosting=StepOutcome.from_dict(value.get('hosting')),
        )


# ====================================================================
# ORDER
# ====================================================================

@dataclass
class Order:
    """One purchase intent: a domain action plus an optional hosting plan"""
    id: str
    status: OrderStatus
    domain_name: str
    domain_action: DomainAction
    years: int
    total_price: Decimal
    hosting_plan: Optional[str] = None
    epp_code: Optional[str] = None
    user_id: Optional[int] = None
    payment_reference_id: Optional[str] = None
    claim_token: Optional[str] = None
    claimed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    provisioning_attempt: ProvisioningAttempt = field(default_factory=ProvisioningAttempt)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Order':
        return cls(
            id=row['id'],
            status=OrderStatus(row['status']),
            domain_name=row['domain_name'],
            domain_action=DomainAction(row['domain_action']),
            years=int(row['years']),
            total_price=to_money(row['total_price']),
            hosting_plan=row.get('hosting_plan'),
            epp_code=row.get('epp_code'),
            user_id=row.get('user_id'),
            payment_reference_id=row.get('payment_reference_id'),
            claim_token=row.get('claim_token'),
            claimed_at=row.get('claimed_at'),
            created_at=row.get('created_at'),
            updated_at=row.get('updated_at'),
            completed_at=row.get('completed_at'),
            provisioning_attempt=ProvisioningAttempt.from_value(row.get('provisioning_attempt')),
        )

    @property
    def tld(self) -> str:
        return self.domain_name.rsplit('.', 1)[-1]

    def to_public_dict(self) -> Dict[str, Any]:
        """Order view without claim bookkeeping or the EPP code"""
        return {
            'id': self.id,
            'status': self.status.value,
            'domainName': self.domain_name,
            'domainAction': self.domain_action.value,
            'years': self.years,
            'hostingPlan': self.hosting_plan,
            'totalPrice': str(self.total_price),
            'userId': self.user_id,
            'paymentReferenceId': self.payment_reference_id,
            'provisioningAttempt': self.provisioning_attempt.to_dict(),
        }


# ====================================================================
# INBOUND PAYMENT EVENT
# ====================================================================

def _decode_metadata_json(metadata: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
    raw = metadata.get(key)
    if raw is None or raw == '':
        return None
    if isinstance(raw, dict):
        return raw
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ Payment metadata field {key} is not valid JSON - ignoring it")
        return None
    if not isinstance(decoded, dict):
        logger.warning(f"⚠️ Payment metadata field {key} is not an object - ignoring it")
        return None
    return decoded


@dataclass(frozen=True)
class PaymentSucceededEvent:
    """Verified payment-succeeded notification, reduced to what fulfillment needs"""
    payment_reference_id: str
    order_id: Optional[str]
    event_id: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    registrant: Optional[Dict[str, Any]] = None
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    hosting_username: Optional[str] = None
    hosting_password: Optional[str] = field(default=None, repr=False)

    @property
    def has_hosting_request(self) -> bool:
        return bool(self.hosting_username and self.hosting_password and self.plan_id)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'PaymentSucceededEvent':
        """Parse a payment_intent.succeeded event body"""
        data = payload.get('data') if isinstance(payload, dict) else None
        intent = data.get('object') if isinstance(data, dict) else None
        if not isinstance(intent, dict):
            raise ValidationError("Event is missing data.object")

        metadata = intent.get('metadata') or {}
        if not isinstance(metadata, dict):
            raise ValidationError("Event metadata must be an object")

        initial_plan = _decode_metadata_json(metadata, 'initialPlan') or {}

        amount = intent.get('amount_received', intent.get('amount'))
        if isinstance(amount, bool) or not isinstance(amount, (int, type(None))):
            raise ValidationError(f"Invalid payment amount: {amount!r}")

        return cls(
            payment_reference_id=str(intent.get('id') or ''),
            order_id=_clean(metadata.get('orderId')),
            event_id=payload.get('id'),
            amount_cents=amount,
            currency=_clean(intent.get('currency')),
            registrant=_decode_metadata_json(metadata, 'registrantInfo'),
            plan_id=_clean(initial_plan.get('id')),
            plan_name=_clean(initial_plan.get('name')) or _clean(metadata.get('hostingPlan')),
            hosting_username=_clean(metadata.get('hostingUsername')),
            hosting_password=metadata.get('hostingPassword') or None,
        )
