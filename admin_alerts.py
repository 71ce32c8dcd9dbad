"""
Operator alert channel for the fulfillment service

Failed orders are never refunded automatically; they are surfaced here for manual
compensation, together with hosting failures and other conditions an operator must act on.

Features:
- Multiple severity levels (CRITICAL, ERROR, WARNING, INFO)
- Rate limiting to prevent alert spam
- Suppression of duplicate alerts
- Delivery to one or more admin chats through the Telegram Bot API
- Log-only mode when no bot token or admin chat is configured

Alert delivery never raises into the caller: a broken alert channel must not turn a
completed order into a failed request.
"""

import html
import json
import hashlib
import logging
from collections import deque
from dataclasses import dataclass, asdict, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Deque, Dict, Optional, Tuple, Union

from telegram import Bot
from telegram.error import TelegramError

from fulfillment_config import Settings

logger = logging.getLogger(__name__)

# ====================================================================
# ALERT SEVERITY LEVELS AND CATEGORIES
# ====================================================================

class AlertSeverity(Enum):
    """Alert severity levels"""
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"

SEVERITY_ORDER = [AlertSeverity.INFO, AlertSeverity.WARNING, AlertSeverity.ERROR, AlertSeverity.CRITICAL]


class AlertCategory(Enum):
    """Alert categories for filtering and organization"""
    FULFILLMENT = "fulfillment"
    DOMAIN_REGISTRATION = "domain_registration"
    HOSTING = "hosting"
    PAYMENT_PROCESSING = "payment_processing"
    WEBHOOK = "webhook"
    DATABASE = "database"
    CONFIGURATION = "configuration"
    SYSTEM_HEALTH = "system_health"


@dataclass
class Alert:
    """One operator-facing event; details are rendered but not part of the dedup key"""
    severity: AlertSeverity
    category: AlertCategory
    component: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    fingerprint: Optional[str] = None

    def __post_init__(self):
        if self.fingerprint is None:
            key = "|".join((self.severity.value, self.category.value, self.component, self.message))
            self.fingerprint = hashlib.sha1(key.encode('utf-8')).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.update(severity=self.severity.value, category=self.category.value,
                    timestamp=self.timestamp.isoformat())
        return data


SEVERITY_ICONS = {
    AlertSeverity.CRITICAL: "🔴",
    AlertSeverity.ERROR: "🟠",
    AlertSeverity.WARNING: "🟡",
    AlertSeverity.INFO: "🔵",
}

CATEGORY_ICONS = {
    AlertCategory.FULFILLMENT: "📦",
    AlertCategory.DOMAIN_REGISTRATION: "🌐",
    AlertCategory.HOSTING: "🖥️",
    AlertCategory.PAYMENT_PROCESSING: "💰",
    AlertCategory.WEBHOOK: "📡",
    AlertCategory.DATABASE: "🗄️",
    AlertCategory.CONFIGURATION: "🔧",
    AlertCategory.SYSTEM_HEALTH: "🏥",
}


def render_alert_html(alert: Alert) -> str:
    """Telegram HTML body for an alert; every interpolated value is escaped"""
    esc = html.escape
    lines = [
        f"{SEVERITY_ICONS.get(alert.severity, '⚠️')} <b>{alert.severity.value}</b> · {esc(alert.component)}",
        f"{CATEGORY_ICONS.get(alert.category, '📋')} {alert.category.value.replace('_', ' ')}",
        f"📝 {esc(alert.message)}",
    ]
    for key, value in (alert.details or {}).items():
        if isinstance(value, dict):
            value = json.dumps(value, default=str, sort_keys=True)
        elif isinstance(value, (list, tuple)):
            value = ", ".join(map(str, value))
        lines.append(f"   • <b>{esc(str(key))}</b>: {esc(str(value))}")
    lines.append(f"🕐 {alert.timestamp:%Y-%m-%d %H:%M:%S} UTC")
    return "\n".join(lines)

# ====================================================================
# ADMIN ALERT CONFIGURATION
# ====================================================================

@dataclass(frozen=True)
class AdminAlertConfig:
    """Configuration for the admin alert system"""
    bot_token: Optional[str] = None
    admin_user_ids: Tuple[int, ...] = ()
    alerts_enabled: bool = True
    min_severity: AlertSeverity = AlertSeverity.WARNING
    rate_limit_window: int = 300
    max_alerts_per_window: int = 10
    suppression_window: int = 3600

    @classmethod
    def from_settings(cls, settings: Settings) -> 'AdminAlertConfig':
        try:
            min_severity = AlertSeverity(settings.alert_min_severity.upper())
        except ValueError:
            logger.warning(f"Invalid ALERT_MIN_SEVERITY {settings.alert_min_severity!r} - using WARNING")
            min_severity = AlertSeverity.WARNING

        config = cls(
            bot_token=settings.telegram_bot_token,
            admin_user_ids=tuple(settings.admin_user_ids),
            alerts_enabled=settings.admin_alerts_enabled,
            min_severity=min_severity,
            rate_limit_window=settings.alert_rate_limit_window,
            max_alerts_per_window=settings.alert_max_per_window,
            suppression_window=settings.alert_suppression_window,
        )
        logger.info(f"✅ Admin Alert Config: enabled={config.alerts_enabled}, "
                    f"admins={len(config.admin_user_ids)}, min_severity={config.min_severity.value}")
        if not config.admin_user_ids or not config.bot_token:
            logger.warning("⚠️ No admin chats or bot token configured - alerts will be logged only")
        return config

# ====================================================================
# ALERT DISPATCH
# ====================================================================

class AdminAlertSystem:
    """Delivers alerts to admin chats with a sliding send window and duplicate muting"""

    def __init__(self, config: Optional[AdminAlertConfig] = None, bot: Optional[Bot] = None):
        self.config = config or AdminAlertConfig()
        self._bot = bot
        if self._bot is None and self.config.bot_token:
            self._bot = Bot(token=self.config.bot_token)
        self._recent_alerts: Deque[Alert] = deque(maxlen=100)
        self._muted_until: Dict[str, datetime] = {}
        self._sent_at: Deque[datetime] = deque()

    def _window_full(self, now: datetime) -> bool:
        horizon = now - timedelta(seconds=self.config.rate_limit_window)
        while self._sent_at and self._sent_at[0] <= horizon:
            self._sent_at.popleft()
        return len(self._sent_at) >= self.config.max_alerts_per_window

    def _sweep_muted(self, now: datetime) -> None:
        expired = [fingerprint for fingerprint, until in self._muted_until.items() if now >= until]
        for fingerprint in expired:
            del self._muted_until[fingerprint]

    def _is_muted(self, fingerprint: str, now: datetime) -> bool:
        self._sweep_muted(now)
        return fingerprint in self._muted_until

    async def _deliver(self, chat_id: int, alert: Alert) -> bool:
        try:
            await self._bot.send_message(chat_id=chat_id, text=render_alert_html(alert), parse_mode='HTML')
        except TelegramError as e:
            logger.error(f"❌ Alert delivery to chat {chat_id} failed: {e}")
            return False
        logger.info(f"📨 Alert delivered to chat {chat_id}: {alert.severity.value} [{alert.component}]")
        return True

    async def send_alert(
        self,
        severity: Union[AlertSeverity, str],
        category: Union[AlertCategory, str],
        component: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Log the alert and forward it to every configured admin chat

        Returns:
            bool: True if at least one chat received it
        """
        severity = AlertSeverity(severity.upper()) if isinstance(severity, str) else severity
        category = AlertCategory(category.lower()) if isinstance(category, str) else category

        logger.log(getattr(logging, severity.value, logging.WARNING),
                   f"🚨 ALERT {severity.value} [{component}] {message}")

        if not self.config.alerts_enabled:
            return False
        if SEVERITY_ORDER.index(severity) < SEVERITY_ORDER.index(self.config.min_severity):
            logger.debug(f"Alert below {self.config.min_severity.value}, not forwarded: {message}")
            return False

        alert = Alert(severity=severity, category=category, component=component,
                      message=message, details=details)
        self._recent_alerts.append(alert)

        now = datetime.now(timezone.utc)
        if self._is_muted(alert.fingerprint, now):
            logger.debug(f"Duplicate alert muted: [{component}] {message}")
            return False
        if self._window_full(now):
            logger.warning(f"⚠️ Alert window full, dropping: [{component}] {message}")
            return False
        if self._bot is None or not self.config.admin_user_ids:
            return False

        delivered = [chat_id for chat_id in self.config.admin_user_ids if await self._deliver(chat_id, alert)]
        if not delivered:
            logger.error(f"❌ Alert reached no admin chat: [{component}] {message}")
            return False

        self._sent_at.append(now)
        self._muted_until[alert.fingerprint] = now + timedelta(seconds=self.config.suppression_window)
        return True

    def get_alert_stats(self) -> Dict[str, Any]:
        recent_by_severity: Dict[str, int] = {}
        for alert in self._recent_alerts:
            recent_by_severity[alert.severity.value] = recent_by_severity.get(alert.severity.value, 0) + 1
        return {
            'enabled': self.config.alerts_enabled,
            'admin_count': len(self.config.admin_user_ids),
            'telegram_configured': self._bot is not None,
            'min_severity': self.config.min_severity.value,
            'recent': recent_by_severity,
            'currently_suppressed': len(self._muted_until),
        }

# ====================================================================
# GLOBAL ADMIN ALERT INSTANCE
# ====================================================================

_admin_alert_system: Optional[AdminAlertSystem] = None


def configure_admin_alerts(settings: Settings, bot: Optional[Bot] = None) -> AdminAlertSystem:
    """Create the process-wide alert system from settings"""
    global _admin_alert_system
    _admin_alert_system = AdminAlertSystem(AdminAlertConfig.from_settings(settings), bot=bot)
    logger.info("✅ Admin alert system initialized")
    return _admin_alert_system


def get_admin_alert_system() -> AdminAlertSystem:
    """Get the global alert system, falling back to a log-only instance"""
    global _admin_alert_system
    if _admin_alert_system is None:
        _admin_alert_system = AdminAlertSystem()
    return _admin_alert_system

