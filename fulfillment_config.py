"""
Configuration for the fulfillment service

All secrets and provider credentials are read from the environment exactly once into an
immutable Settings object which is then handed to each component explicitly.
Business logic never calls os.getenv directly.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple, List

from fulfillment_errors import ConfigurationError

logger = logging.getLogger(__name__)

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def _env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = environ.get(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in TRUE_VALUES


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    value = environ.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _parse_admin_users(environ: Mapping[str, str]) -> Tuple[int, ...]:
    """Parse admin chat IDs from ADMIN_USER_ID and ADDITIONAL_ADMIN_USER_IDS"""
    admin_ids: List[int] = []

    primary_admin = environ.get('ADMIN_USER_ID')
    if primary_admin:
        try:
            admin_ids.append(int(primary_admin))
        except ValueError:
            logger.warning(f"Invalid ADMIN_USER_ID format: {primary_admin}")

    for admin_id in environ.get('ADDITIONAL_ADMIN_USER_IDS', '').split(','):
        admin_id = admin_id.strip()
        if not admin_id:
            continue
        try:
            admin_ids.append(int(admin_id))
        except ValueError:
            logger.warning(f"Invalid additional admin ID format: {admin_id}")

    return tuple(admin_ids)


@dataclass(frozen=True)
class Settings:
    """Immutable service configuration"""

    # Inbound payment notifications
    webhook_secret: str = ''
    webhook_ack_window: float = 8.0
    webhook_tolerance_seconds: int = 300

    # Storage
    database_url: Optional[str] = None

    # Payment provider (order intake)
    stripe_secret_key: Optional[str] = None
    payment_currency: str = 'usd'

    # Domain registry
    registrar_api_user: Optional[str] = None
    registrar_api_key: Optional[str] = None
    registrar_username: Optional[str] = None
    registrar_client_ip: Optional[str] = None
    registrar_sandbox: bool = False

    # Hosting control panel
    whm_host: Optional[str] = None
    whm_username: Optional[str] = None
    whm_api_token: Optional[str] = None

    # Operator alerts
    telegram_bot_token: Optional[str] = None
    admin_user_ids: Tuple[int, ...] = field(default_factory=tuple)
    admin_alerts_enabled: bool = True
    alert_min_severity: str = 'WARNING'
    alert_rate_limit_window: int = 300
    alert_max_per_window: int = 10
    alert_suppression_window: int = 3600

    # Orchestration policy
    provider_max_attempts: int = 3
    provider_retry_base_delay: float = 2.0
    provider_call_timeout: float = 30.0
    claim_lease_seconds: int = 600

    # HTTP server
    port: int = 5000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """Build settings from environment variables"""
        env = os.environ if environ is None else environ

        registrar_api_user = env.get('NAMECHEAP_API_USER') or env.get('NAMECHEAP_USERNAME')

        return cls(
            webhook_secret=env.get('PAYMENT_WEBHOOK_SECRET') or env.get('STRIPE_WEBHOOK_SECRET') or '',
            webhook_ack_window=_env_float(env, 'WEBHOOK_ACK_WINDOW', 8.0),
            webhook_tolerance_seconds=_env_int(env, 'WEBHOOK_TOLERANCE_SECONDS', 300),
            database_url=env.get('DATABASE_URL') or None,
            stripe_secret_key=env.get('STRIPE_SECRET_KEY') or None,
            payment_currency=env.get('PAYMENT_CURRENCY', 'usd').lower(),
            registrar_api_user=registrar_api_user or None,
            registrar_api_key=env.get('NAMECHEAP_API_KEY') or None,
            registrar_username=env.get('NAMECHEAP_USERNAME') or registrar_api_user or None,
            registrar_client_ip=env.get('NAMECHEAP_CLIENT_IP') or None,
            registrar_sandbox=_env_bool(env, 'NAMECHEAP_SANDBOX', False),
            whm_host=env.get('WHM_HOST') or None,
            whm_username=env.get('WHM_USERNAME') or None,
            whm_api_token=env.get('WHM_API_TOKEN') or None,
            telegram_bot_token=env.get('TELEGRAM_BOT_TOKEN') or None,
            admin_user_ids=_parse_admin_users(env),
            admin_alerts_enabled=_env_bool(env, 'ADMIN_ALERTS_ENABLED', True),
            alert_min_severity=env.get('ALERT_MIN_SEVERITY', 'WARNING').upper(),
            alert_rate_limit_window=_env_int(env, 'ALERT_RATE_LIMIT_WINDOW', 300),
            alert_max_per_window=_env_int(env, 'ALERT_MAX_PER_WINDOW', 10),
            alert_suppression_window=_env_int(env, 'ALERT_SUPPRESSION_WINDOW', 3600),
            provider_max_attempts=_env_int(env, 'PROVIDER_MAX_ATTEMPTS', 3),
            provider_retry_base_delay=_env_float(env, 'PROVIDER_RETRY_BASE_DELAY', 2.0),
            provider_call_timeout=_env_float(env, 'PROVIDER_CALL_TIMEOUT', 30.0),
            claim_lease_seconds=_env_int(env, 'CLAIM_LEASE_SECONDS', 600),
            port=_env_int(env, 'PORT', 5000),
        )

    @property
    def worst_case_fulfillment_seconds(self) -> float:
        """Longest a claimed order can take: two provider steps, each with every timeout and backoff"""
        attempts = max(1, self.provider_max_attempts)
        backoff = sum(self.provider_retry_base_delay * (2 ** n) for n in range(attempts - 1))
        return 2 * (attempts * self.provider_call_timeout + backoff)

    @property
    def registrar_configured(self) -> bool:
        return all([self.registrar_api_user, self.registrar_api_key, self.registrar_client_ip])

    @property
    def hosting_configured(self) -> bool:
        return all([self.whm_host, self.whm_username, self.whm_api_token])

    def missing_server_settings(self) -> List[str]:
        missing = []
        if not self.webhook_secret:
            missing.append('PAYMENT_WEBHOOK_SECRET')
        if not self.database_url:
            missing.append('DATABASE_URL')
        return missing

    def validate_for_server(self) -> None:
        """Fail fast at startup when the service cannot run safely"""
        missing = self.missing_server_settings()
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        worst_case = self.worst_case_fulfillment_seconds
        if self.claim_lease_seconds <= worst_case:
            # The lease must outlive any single fulfillment run
            raise ConfigurationError(
                f"CLAIM_LEASE_SECONDS ({self.claim_lease_seconds}) must exceed the worst-case fulfillment "
                f"time of {worst_case:.0f}s for the configured provider retry policy")

        if not self.registrar_configured:
            logger.warning("⚠️ Registrar credentials not configured - domain steps will fail with a configuration error")
        if not self.hosting_configured:
            logger.warning("⚠️ WHM credentials not configured - hosting steps will fail with a configuration error")
        if not self.stripe_secret_key:
            logger.warning("⚠️ STRIPE_SECRET_KEY not configured - order intake is disabled")

    def log_summary(self) -> None:
        logger.info("🔧 Fulfillment service configuration:")
        logger.info(f"   • Webhook secret: {'✅ SET' if self.webhook_secret else '❌ NOT SET'}")
        logger.info(f"   • Database: {'✅ SET' if self.database_url else '❌ NOT SET'}")
        logger.info(f"   • Registrar: {'✅ SET' if self.registrar_configured else '❌ NOT SET'}"
                    f" ({'sandbox' if self.registrar_sandbox else 'production'})")
        logger.info(f"   • WHM: {'✅ SET' if self.hosting_configured else '❌ NOT SET'}")
        logger.info(f"   • Stripe: {'✅ SET' if self.stripe_secret_key else '❌ NOT SET'}")
        logger.info(f"   • Retry policy: {self.provider_max_attempts} attempts, "
                    f"base delay {self.provider_retry_base_delay}s, call timeout {self.provider_call_timeout}s")
