"""
Domain registry adapter (Namecheap XML API)

Every call is a GET against xml.response with ApiUser/ApiKey/UserName/ClientIp/Command
parameters. Responses are XML with ApiResponse Status="OK"|"ERROR".

register() and transfer() are single attempts returning ProviderResult values.
Retries belong to the caller, which uses ErrorKind to tell transient failures
from business rejections.
"""

import time
import logging
import xml.etree.ElementTree as ET
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Tuple

import httpx

from fulfillment_config import Settings
from fulfillment_errors import ConfigurationError, ValidationError
from order_models import ContactInfo, DomainAction, normalize_domain_name, parse_years, to_money
from services.provider_results import ErrorKind, ProviderResult, classify_http_status

logger = logging.getLogger(__name__)

SANDBOX_API_URL = "https://api.sandbox.namecheap.com/xml.response"
PRODUCTION_API_URL = "https://api.namecheap.com/xml.response"

CONTACT_ROLES = ('Registrant', 'Tech', 'Admin', 'AuxBilling')

# Unknown upstream errors reported by the registry; everything else is a business rejection
TRANSIENT_ERROR_CODES = {'3050900', '5050900', '3031510'}


class TLDPriceCache:
    """TTL cache for registry price quotes keyed by (action, tld)"""

    def __init__(self, ttl_seconds: int = 1800):
        self._cache: Dict[Tuple[str, str], Dict] = {}
        self._timestamps: Dict[Tuple[str, str], float] = {}
        self._ttl = ttl_seconds

    def get(self, action: str, tld: str) -> Optional[Dict]:
        key = (action.upper(), tld.lower().strip())
        if key in self._cache:
            if time.time() - self._timestamps[key] < self._ttl:
                return self._cache[key]
            del self._cache[key]
            del self._timestamps[key]
        return None

    def set(self, action: str, tld: str, quote: Dict) -> None:
        key = (action.upper(), tld.lower().strip())
        self._cache[key] = quote
        self._timestamps[key] = time.time()


def _strip_namespaces(root: ET.Element) -> ET.Element:
    for element in root.iter():
        if isinstance(element.tag, str) and '}' in element.tag:
            element.tag = element.tag.split('}', 1)[1]
    return root


def _yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


def add_contact_params(params: Dict[str, str], prefix: str, contact: ContactInfo) -> None:
    """Flatten one contact into <Prefix><Field> request parameters"""
    params[f"{prefix}FirstName"] = contact.first_name
    params[f"{prefix}LastName"] = contact.last_name
    params[f"{prefix}Address1"] = contact.address1
    if contact.address2:
        params[f"{prefix}Address2"] = contact.address2
    params[f"{prefix}City"] = contact.city
    params[f"{prefix}StateProvince"] = contact.state_province
    params[f"{prefix}PostalCode"] = contact.postal_code
    params[f"{prefix}Country"] = contact.country
    params[f"{prefix}Phone"] = contact.phone
    params[f"{prefix}EmailAddress"] = contact.email_address
    if contact.organization_name:
        params[f"{prefix}OrganizationName"] = contact.organization_name
    if contact.job_title:
        params[f"{prefix}JobTitle"] = contact.job_title


class RegistrarService:
    """Namecheap API client for domain registration, transfer and pricing"""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None,
                 price_cache: Optional[TLDPriceCache] = None):
        self.settings = settings
        self.api_url = SANDBOX_API_URL if settings.registrar_sandbox else PRODUCTION_API_URL
        self.timeout = httpx.Timeout(connect=3.0, read=settings.provider_call_timeout, write=6.0, pool=4.0)
        self._client = client
        self._owns_client = client is None
        self.price_cache = price_cache or TLDPriceCache()

    # ----------------------------------------------------------------
    # Transport
    # ----------------------------------------------------------------

    def _auth_params(self) -> Dict[str, str]:
        missing = [name for name, value in (
            ('NAMECHEAP_API_USER', self.settings.registrar_api_user),
            ('NAMECHEAP_API_KEY', self.settings.registrar_api_key),
            ('NAMECHEAP_CLIENT_IP', self.settings.registrar_client_ip),
        ) if not value]
        if missing:
            raise ConfigurationError(f"Registrar configuration error - missing: {', '.join(missing)}")
        return {
            'ApiUser': self.settings.registrar_api_user,
            'ApiKey': self.settings.registrar_api_key,
            'UserName': self.settings.registrar_username or self.settings.registrar_api_user,
            'ClientIp': self.settings.registrar_client_ip,
        }

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _command(self, command: str, params: Dict[str, str]) -> Tuple[Optional[ET.Element], Optional[ProviderResult]]:
        """
        Run one API command.

        Returns (CommandResponse element, None) on success or (None, failure result).
        """
        request_params = dict(self._auth_params())
        request_params['Command'] = command
        request_params.update(params)

        client = await self._ensure_client()
        try:
            response = await client.get(self.api_url, params=request_params)
        except httpx.TimeoutException as e:
            logger.warning(f"⚠️ REGISTRAR: {command} timed out: {e}")
            return None, ProviderResult.fail(ErrorKind.TRANSIENT, 'timeout', f"{command} timed out")
        except httpx.TransportError as e:
            logger.warning(f"⚠️ REGISTRAR: {command} transport error: {e}")
            return None, ProviderResult.fail(ErrorKind.TRANSIENT, 'network_error', f"{command} failed: {e}")

        if response.status_code != 200:
            kind = classify_http_status(response.status_code)
            logger.error(f"❌ REGISTRAR: {command} returned HTTP {response.status_code}")
            return None, ProviderResult.fail(kind, f"http_{response.status_code}",
                                             f"{command} returned HTTP {response.status_code}")

        try:
            root = _strip_namespaces(ET.fromstring(response.content))
        except ET.ParseError as e:
            logger.error(f"❌ REGISTRAR: {command} returned malformed XML: {e}")
            return None, ProviderResult.fail(ErrorKind.TRANSIENT, 'malformed_response',
                                             f"{command} returned malformed XML")

        if root.get('Status', '').upper() == 'ERROR':
            return None, self._error_result(command, root)

        command_response = root.find('CommandResponse')
        if command_response is None:
            return None, ProviderResult.fail(ErrorKind.TRANSIENT, 'malformed_response',
                                             f"{command} response has no CommandResponse")
        return command_response, None

    def _error_result(self, command: str, root: ET.Element) -> ProviderResult:
        errors: List[Tuple[str, str]] = []
        for error in root.findall('./Errors/Error'):
            errors.append((error.get('Number', ''), (error.text or '').strip()))
        if not errors:
            errors.append(('', 'Unknown registry error'))

        code, message = errors[0]
        combined = '; '.join(f"[{number}] {text}" if number else text for number, text in errors)
        kind = ErrorKind.TRANSIENT if code in TRANSIENT_ERROR_CODES else ErrorKind.TERMINAL
        logger.error(f"❌ REGISTRAR: {command} rejected ({kind.value}): {combined}")
        return ProviderResult.fail(kind, code or None, combined)

    # ----------------------------------------------------------------
    # Validation
    # ----------------------------------------------------------------

    @staticmethod
    def _contact_set(registrant: ContactInfo, tech: Optional[ContactInfo], admin: Optional[ContactInfo],
                     aux_billing: Optional[ContactInfo]) -> Dict[str, ContactInfo]:
        # Roles without their own contact default to the registrant
        return {
            'Registrant': registrant,
            'Tech': tech or registrant,
            'Admin': admin or registrant,
            'AuxBilling': aux_billing or registrant,
        }

    @staticmethod
    def _validate_request(domain: str, years: int, contacts: Dict[str, ContactInfo]) -> Tuple[Optional[str], Optional[ProviderResult]]:
        try:
            normalized = normalize_domain_name(domain)
            parse_years(years)
        except ValidationError as e:
            return None, ProviderResult.fail(ErrorKind.VALIDATION, 'invalid_request', str(e))

        problems = []
        for role in CONTACT_ROLES:
            errors = contacts[role].validation_errors()
            if errors:
                problems.append(f"{role}: {', '.join(errors)}")
        if problems:
            return None, ProviderResult.fail(ErrorKind.VALIDATION, 'invalid_contact',
                                             f"Invalid contact information - {'; '.join(problems)}")
        return normalized, None

    # ----------------------------------------------------------------
    # Operations
    # ----------------------------------------------------------------

    async def register(self, domain: str, years: int, registrant: ContactInfo,
                       tech: Optional[ContactInfo] = None, admin: Optional[ContactInfo] = None,
                       aux_billing: Optional[ContactInfo] = None, nameservers: Optional[List[str]] = None,
                       add_free_privacy: bool = True, enable_privacy: bool = True) -> ProviderResult:
        """Register a new domain"""
        contacts = self._contact_set(registrant, tech, admin, aux_billing)
        domain_name, invalid = self._validate_request(domain, years, contacts)
        if invalid:
            return invalid

        params = {
            'DomainName': domain_name,
            'Years': str(years),
            'AddFreeWhoisguard': _yes_no(add_free_privacy),
            'WGEnabled': _yes_no(enable_privacy),
        }
        for role, contact in contacts.items():
            add_contact_params(params, role, contact)
        if nameservers:
            params['Nameservers'] = ','.join(nameservers)

        logger.info(f"🌐 REGISTRAR: Registering {domain_name} for {years} year(s)")
        command_response, failure = await self._command('namecheap.domains.create', params)
        if failure:
            return failure

        result = command_response.find('DomainCreateResult')
        if result is None or result.get('Registered', '').lower() != 'true':
            logger.error(f"❌ REGISTRAR: {domain_name} was not registered")
            return ProviderResult.fail(ErrorKind.TERMINAL, 'not_registered',
                                       f"Registry did not register {domain_name}")

        logger.info(f"✅ REGISTRAR: {domain_name} registered (DomainID {result.get('DomainID')}, "
                    f"TransactionID {result.get('TransactionID')})")
        return ProviderResult.ok({
            'reference': result.get('TransactionID') or result.get('DomainID'),
            'domain': result.get('Domain', domain_name),
            'domain_id': result.get('DomainID'),
            'order_id': result.get('OrderID'),
            'transaction_id': result.get('TransactionID'),
            'charged_amount': result.get('ChargedAmount'),
        })

    async def transfer(self, domain: str, epp_code: str, years: int, registrant: ContactInfo,
                       tech: Optional[ContactInfo] = None, admin: Optional[ContactInfo] = None,
                       aux_billing: Optional[ContactInfo] = None,
                       add_free_privacy: bool = True, enable_privacy: bool = True) -> ProviderResult:
        """Start an inbound transfer from another registrar"""
        if not (epp_code or '').strip():
            return ProviderResult.fail(ErrorKind.VALIDATION, 'missing_epp_code',
                                       "EPP code is required for a transfer")

        contacts = self._contact_set(registrant, tech, admin, aux_billing)
        domain_name, invalid = self._validate_request(domain, years, contacts)
        if invalid:
            return invalid

        params = {
            'DomainName': domain_name,
            'EPPCode': epp_code.strip(),
            'Years': str(years),
            'AddFreeWhoisguard': _yes_no(add_free_privacy),
            'WGEnabled': _yes_no(enable_privacy),
        }
        for role, contact in contacts.items():
            add_contact_params(params, role, contact)

        logger.info(f"🔄 REGISTRAR: Requesting transfer of {domain_name} ({years} year(s))")
        command_response, failure = await self._command('namecheap.domains.transfer.create', params)
        if failure:
            return failure

        result = command_response.find('DomainTransferCreateResult')
        if result is None or result.get('Transfer', '').lower() != 'true':
            logger.error(f"❌ REGISTRAR: transfer of {domain_name} was not accepted")
            return ProviderResult.fail(ErrorKind.TERMINAL, 'transfer_rejected',
                                       f"Registry did not accept the transfer of {domain_name}")

        logger.info(f"✅ REGISTRAR: transfer of {domain_name} accepted (TransferID {result.get('TransferID')})")
        return ProviderResult.ok({
            'reference': result.get('TransferID') or result.get('TransactionID'),
            'domain': result.get('DomainName', domain_name),
            'transfer_id': result.get('TransferID'),
            'status_id': result.get('StatusID'),
            'order_id': result.get('OrderID'),
            'transaction_id': result.get('TransactionID'),
            'charged_amount': result.get('ChargedAmount'),
        })

    async def get_pricing(self, product_type: str, action: str, tld: str) -> ProviderResult:
        """
        Quote the one-year price of a product.

        Returns ProviderResult.ok({'price': Decimal, 'currency': str, 'tld': str}).
        """
        tld = (tld or '').lower().strip().lstrip('.')
        action = (action or '').upper()
        if product_type.upper() == 'DOMAIN' and action not in {a.value for a in DomainAction}:
            return ProviderResult.fail(ErrorKind.VALIDATION, 'invalid_action', f"Unknown domain action: {action!r}")
        if not tld:
            return ProviderResult.fail(ErrorKind.VALIDATION, 'invalid_tld', "TLD is required for a price quote")

        cached = self.price_cache.get(action, tld)
        if cached:
            return ProviderResult.ok(dict(cached))

        command_response, failure = await self._command('namecheap.users.getPricing', {
            'ProductType': product_type.upper(),
            'ProductCategory': action,
            'ProductName': tld,
        })
        if failure:
            return failure

        prices = command_response.findall('./UserGetPricingResult/ProductType/ProductCategory/Product/Price')
        if not prices:
            return ProviderResult.fail(ErrorKind.TERMINAL, 'no_price', f"No {action} price for .{tld}")

        chosen = prices[0]
        for price in prices:
            if price.get('Duration') == '1' and price.get('DurationType', 'YEAR').upper() == 'YEAR':
                chosen = price
                break

        try:
            amount = to_money(chosen.get('Price'))
        except (ValidationError, InvalidOperation):
            return ProviderResult.fail(ErrorKind.TERMINAL, 'invalid_price',
                                       f"Registry returned an invalid price for .{tld}")
        if amount <= Decimal('0'):
            return ProviderResult.fail(ErrorKind.TERMINAL, 'invalid_price',
                                       f"Registry returned a non-positive price for .{tld}")

        quote = {'price': amount, 'currency': chosen.get('Currency', 'USD'), 'tld': tld}
        self.price_cache.set(action, tld, quote)
        logger.info(f"💰 REGISTRAR: {action} .{tld} quoted at {amount} {quote['currency']}")
        return ProviderResult.ok(dict(quote))
