"""
cPanel hosting integration service
Creates hosting accounts through the WHM json-api createacct call
"""

import re
import hashlib
import logging
from typing import Optional

import httpx

from fulfillment_config import Settings
from fulfillment_errors import ConfigurationError
from services.provider_results import ErrorKind, ProviderResult, classify_http_status

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r'^[a-z][a-z0-9]{2,15}$')
MIN_PASSWORD_LENGTH = 8
HOSTING_PLANS = ('webcrtae_basic', 'webcrtae_pro', 'webcrtae_elite')


def suggest_username(domain: str) -> str:
    """
    Derive a default cPanel username from a domain.

    Letters and digits of the first label, forced to start with a letter, plus a
    6-character hash suffix of the full domain so similar domains don't collide.
    """
    label = (domain or '').strip().lower().split('.')[0]
    base = ''.join(c for c in label if c.isascii() and c.isalnum()).lstrip('0123456789')
    if not base:
        base = 'u'
    suffix = hashlib.sha256((domain or '').strip().lower().encode()).hexdigest()[:6]
    return f"{base[:10]}{suffix}"


def validate_account_request(username: Optional[str], password: Optional[str]) -> Optional[str]:
    """Return a human-readable problem, or None when the credentials are acceptable"""
    if not username or not USERNAME_PATTERN.match(username):
        return "Username must be 3-16 characters, start with a letter and contain only lowercase letters and numbers"
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
    return None


class CPanelService:
    """cPanel/WHM API service for hosting account creation"""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.whm_host = settings.whm_host
        self.whm_username = settings.whm_username
        self.whm_api_token = settings.whm_api_token
        self.timeout = httpx.Timeout(connect=3.0, read=settings.provider_call_timeout, write=5.0, pool=10.0)
        self._client = client
        self._owns_client = client is None

    def _api_url(self, function: str) -> str:
        host = (self.whm_host or '').rstrip('/')
        if not host.startswith(('http://', 'https://')):
            host = f"https://{host}:2087"
        return f"{host}/json-api/{function}"

    def _headers(self) -> dict:
        if not (self.whm_host and self.whm_username and self.whm_api_token):
            raise ConfigurationError("WHM credentials not configured - set WHM_HOST, WHM_USERNAME and WHM_API_TOKEN")
        return {'Authorization': f'whm {self.whm_username}:{self.whm_api_token}'}

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(verify=True, timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def create_account(self, domain: str, username: str, password: str, plan: str,
                             contact_email: str) -> ProviderResult:
        """Create a cPanel account; success only when WHM reports metadata.result == 1"""
        problem = validate_account_request(username, password)
        if problem:
            logger.warning(f"⚠️ WHM: rejecting account request for {domain}: {problem}")
            return ProviderResult.fail(ErrorKind.VALIDATION, 'invalid_credentials', problem)
        if not plan:
            return ProviderResult.fail(ErrorKind.VALIDATION, 'invalid_plan', "Hosting plan is required")

        headers = self._headers()
        create_data = {
            'api.version': '1',
            'username': username,
            'domain': domain,
            'password': password,
            'plan': plan,
            'contactemail': contact_email,
        }

        logger.info(f"🖥️ WHM: Creating account {username} for {domain} on plan {plan}")
        client = await self._ensure_client()
        try:
            response = await client.post(self._api_url('createacct'), data=create_data, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"⚠️ WHM: createacct for {domain} timed out: {e}")
            return ProviderResult.fail(ErrorKind.TRANSIENT, 'timeout', "WHM createacct timed out")
        except httpx.TransportError as e:
            logger.warning(f"⚠️ WHM: createacct for {domain} transport error: {e}")
            return ProviderResult.fail(ErrorKind.TRANSIENT, 'network_error', f"Could not reach WHM: {e}")

        if response.status_code != 200:
            logger.error(f"❌ WHM API request failed: {response.status_code}")
            return ProviderResult.fail(classify_http_status(response.status_code), f"http_{response.status_code}",
                                       f"WHM server responded with status {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            logger.error(f"❌ WHM: createacct for {domain} returned a non-JSON body")
            return ProviderResult.fail(ErrorKind.TRANSIENT, 'malformed_response', "WHM returned a non-JSON response")

        metadata = data.get('metadata') or {}
        if metadata.get('result') == 1:
            account_data = data.get('data') or {}
            logger.info(f"✅ cPanel account created: {username}@{domain}")
            return ProviderResult.ok({
                'reference': username,
                'username': username,
                'domain': domain,
                'plan': plan,
                'server_ip': account_data.get('ip'),
                'cpanel_url': f"https://{domain}:2083",
            })

        reason = metadata.get('reason') or 'Unknown error from WHM.'
        logger.error(f"❌ cPanel account creation failed for {username}@{domain}: {reason}")
        return ProviderResult.fail(ErrorKind.TERMINAL, 'whm_rejected', reason)
