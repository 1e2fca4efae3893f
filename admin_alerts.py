"""
Admin Alert System for the registrar reconciliation engine

Operators are told about records that need a human: verification exhausted, order
aggregates that cannot be found, failed customer notifications, manual overrides.

Features:
- Severity levels (CRITICAL, ERROR, WARNING, INFO)
- Rate limiting to prevent alert spam
- Suppression of duplicate alerts by fingerprint
- Delivery to ADMIN_USER_ID and ADDITIONAL_ADMIN_USER_IDS through the Telegram bot
- Persistence to the admin_alerts table
"""

import os
import json
import hashlib
import logging
from enum import Enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Any, Union

from database import execute_update
from message_utils import escape_html
from utils.environment import is_test_mode

logger = logging.getLogger(__name__)

# ====================================================================
# ALERT SEVERITY LEVELS AND CONFIGURATION
# ====================================================================

class AlertSeverity(Enum):
    """Alert severity levels"""
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


class AlertCategory(Enum):
    """Alert categories for filtering and organization"""
    DOMAIN_REGISTRATION = "domain_registration"
    RECONCILIATION = "reconciliation"
    CUSTOMER_NOTIFICATION = "customer_notification"
    EXTERNAL_API = "external_api"
    DATABASE = "database"
    SYSTEM_HEALTH = "system_health"


SEVERITY_ORDER = [AlertSeverity.INFO, AlertSeverity.WARNING, AlertSeverity.ERROR, AlertSeverity.CRITICAL]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Alert:
    """Structured alert data"""
    severity: AlertSeverity
    category: AlertCategory
    component: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None
    fingerprint: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = _utcnow()
        if self.fingerprint is None:
            self.fingerprint = self._generate_fingerprint()

    def _generate_fingerprint(self) -> str:
        """Generate a fingerprint for alert deduplication"""
        content = f"{self.severity.value}:{self.category.value}:{self.component}:{self.message}"
        return hashlib.md5(content.encode()).hexdigest()

# ====================================================================
# ADMIN ALERT CONFIGURATION
# ====================================================================

def parse_admin_user_ids() -> List[int]:
    """Admin Telegram ids from ADMIN_USER_ID and ADDITIONAL_ADMIN_USER_IDS"""
    admin_ids = []
    raw_ids = [os.getenv('ADMIN_USER_ID', '')] + os.getenv('ADDITIONAL_ADMIN_USER_IDS', '').split(',')
    for raw in raw_ids:
        raw = raw.strip()
        if not raw:
            continue
        try:
            admin_ids.append(int(raw))
        except ValueError:
            logger.warning(f"Invalid admin user id format: {raw}")
    return admin_ids


class AdminAlertConfig:
    """Configuration for admin alert system"""

    def __init__(self):
        self.rate_limit_window = int(os.getenv('ALERT_RATE_LIMIT_WINDOW', '300'))
        self.max_alerts_per_window = int(os.getenv('ALERT_MAX_PER_WINDOW', '10'))
        self.suppression_window = int(os.getenv('ALERT_SUPPRESSION_WINDOW', '3600'))
        self.admin_user_ids = parse_admin_user_ids()
        self.min_severity = AlertSeverity(os.getenv('ALERT_MIN_SEVERITY', 'WARNING').upper())
        self.alerts_enabled = os.getenv('ADMIN_ALERTS_ENABLED', 'true').lower() == 'true'
        self.persist_alerts = not is_test_mode()

        if not self.admin_user_ids:
            logger.warning("⚠️ No admin user IDs configured - alerts will be logged only")
        logger.info(f"✅ Admin Alert Config: enabled={self.alerts_enabled}, "
                    f"admins={len(self.admin_user_ids)}, min_severity={self.min_severity.value}")

# ====================================================================
# ADMIN ALERT SYSTEM - MAIN CLASS
# ====================================================================

class AdminAlertSystem:
    """Admin alert delivery with rate limiting and deduplication"""

    def __init__(self):
        self.config = AdminAlertConfig()
        self._suppressed_alerts: Dict[str, datetime] = {}
        self._rate_limit_tracker: List[datetime] = []
        self._bot_application = None
        self._storage_initialized = False

    async def _init_alert_storage(self):
        await execute_update("""
            CREATE TABLE IF NOT EXISTS admin_alerts (
                id SERIAL PRIMARY KEY,
                severity VARCHAR(20) NOT NULL,
                category VARCHAR(50) NOT NULL,
                component VARCHAR(100) NOT NULL,
                message TEXT NOT NULL,
                details JSONB,
                fingerprint VARCHAR(32) NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                sent_at TIMESTAMPTZ,
                suppressed BOOLEAN DEFAULT FALSE
            )
        """)
        await execute_update("""
            CREATE INDEX IF NOT EXISTS idx_admin_alerts_fingerprint
            ON admin_alerts(fingerprint)
        """)
        logger.info("✅ Admin alert storage initialized")

    def set_bot_application(self, application):
        """Set the bot application used to deliver alerts"""
        self._bot_application = application
        logger.info("✅ Bot application set for admin alerts")

    def _is_rate_limited(self) -> bool:
        cutoff = _utcnow() - timedelta(seconds=self.config.rate_limit_window)
        self._rate_limit_tracker = [ts for ts in self._rate_limit_tracker if ts > cutoff]
        return len(self._rate_limit_tracker) >= self.config.max_alerts_per_window

    def _is_suppressed(self, fingerprint: str) -> bool:
        suppressed_until = self._suppressed_alerts.get(fingerprint)
        if suppressed_until is None:
            return False
        if _utcnow() > suppressed_until:
            del self._suppressed_alerts[fingerprint]
            return False
        return True

    def _suppress_alert(self, fingerprint: str):
        self._suppressed_alerts[fingerprint] = _utcnow() + timedelta(seconds=self.config.suppression_window)

    def _format_alert_message(self, alert: Alert) -> str:
        """Format alert for Telegram (HTML parse mode)"""
        severity_icons = {
            AlertSeverity.CRITICAL: "🔴",
            AlertSeverity.ERROR: "🟠",
            AlertSeverity.WARNING: "🟡",
            AlertSeverity.INFO: "🔵",
        }
        category_icons = {
            AlertCategory.DOMAIN_REGISTRATION: "🌐",
            AlertCategory.RECONCILIATION: "🔁",
            AlertCategory.CUSTOMER_NOTIFICATION: "✉️",
            AlertCategory.EXTERNAL_API: "🔗",
            AlertCategory.DATABASE: "🗄️",
            AlertCategory.SYSTEM_HEALTH: "🏥",
        }

        timestamp_str = alert.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC") if alert.timestamp else "Unknown"
        message_parts = [
            f"{severity_icons.get(alert.severity, '⚠️')} <b>ADMIN ALERT - {alert.severity.value}</b>",
            f"{category_icons.get(alert.category, '📋')} <b>Category:</b> "
            f"{alert.category.value.replace('_', ' ').title()}",
            f"🔧 <b>Component:</b> {escape_html(alert.component)}",
            f"📝 <b>Message:</b> {escape_html(alert.message)}",
            f"🕐 <b>Time:</b> {timestamp_str}",
        ]

        if alert.details:
            message_parts.append("📊 <b>Details:</b>")
            for key, value in alert.details.items():
                if isinstance(value, dict):
                    value = json.dumps(value, default=str)
                elif isinstance(value, (list, tuple)):
                    value = ", ".join(str(v) for v in value)
                message_parts.append(f"   • <b>{escape_html(str(key))}:</b> {escape_html(str(value))}")

        return "\n".join(message_parts)

    async def _send_alert_to_admin(self, admin_id: int, alert: Alert) -> bool:
        if not self._bot_application or not self._bot_application.bot:
            logger.warning("⚠️ Bot application not available for admin alerts")
            return False
        try:
            await self._bot_application.bot.send_message(
                chat_id=admin_id,
                text=self._format_alert_message(alert),
                parse_mode='HTML'
            )
            logger.info(f"✅ Admin alert sent to {admin_id}: {alert.severity.value} - {alert.component}")
            return True
        except Exception as e:
            logger.error(f"❌ Failed to send admin alert to {admin_id}: {e}")
            return False

    async def _store_alert(self, alert: Alert, sent: bool):
        if not self.config.persist_alerts:
            return
        try:
            if not self._storage_initialized:
                await self._init_alert_storage()
                self._storage_initialized = True
            await execute_update("""
                INSERT INTO admin_alerts
                (severity, category, component, message, details, fingerprint, sent_at, suppressed)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """, (
                alert.severity.value,
                alert.category.value,
                alert.component,
                alert.message,
                json.dumps(alert.details, default=str) if alert.details else None,
                alert.fingerprint,
                alert.timestamp if sent else None,
                not sent,
            ))
        except Exception as e:
            logger.error(f"❌ Failed to store admin alert: {e}")

    async def send_alert(
        self,
        severity: Union[AlertSeverity, str],
        category: Union[AlertCategory, str],
        component: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Send an admin alert with rate limiting and deduplication.

        Alert delivery problems are logged and never propagate to the caller.

        Returns:
            bool: True if the alert reached at least one admin
        """
        if isinstance(severity, str):
            severity = AlertSeverity(severity.upper())
        if isinstance(category, str):
            category = AlertCategory(category.lower())

        log_level = getattr(logging, severity.value, logging.WARNING)
        logger.log(log_level, f"🚨 ADMIN ALERT ({severity.value}): [{component}] {message}")

        if not self.config.alerts_enabled:
            return False
        if SEVERITY_ORDER.index(severity) < SEVERITY_ORDER.index(self.config.min_severity):
            return False

        alert = Alert(severity=severity, category=category, component=component,
                      message=message, details=details)

        if alert.fingerprint and self._is_suppressed(alert.fingerprint):
            logger.debug(f"Alert suppressed (duplicate): {component}: {message}")
            await self._store_alert(alert, sent=False)
            return False

        if self._is_rate_limited():
            logger.warning(f"⚠️ Admin alerts rate limited - dropping: {component}: {message}")
            await self._store_alert(alert, sent=False)
            return False

        sent_count = 0
        for admin_id in self.config.admin_user_ids:
            if await self._send_alert_to_admin(admin_id, alert):
                sent_count += 1

        if sent_count > 0:
            self._rate_limit_tracker.append(_utcnow())
            self._suppress_alert(alert.fingerprint)
            await self._store_alert(alert, sent=True)
            return True

        await self._store_alert(alert, sent=False)
        return False

# ====================================================================
# GLOBAL ADMIN ALERT INSTANCE
# ====================================================================

_admin_alert_system = None


def get_admin_alert_system() -> AdminAlertSystem:
    """Get or create the global admin alert system instance"""
    global _admin_alert_system
    if _admin_alert_system is None:
        _admin_alert_system = AdminAlertSystem()
    return _admin_alert_system


def set_admin_alert_bot_application(application):
    get_admin_alert_system().set_bot_application(application)

# ====================================================================
# CONVENIENCE FUNCTIONS FOR EASY INTEGRATION
# ====================================================================

async def send_critical_alert(component: str, message: str, category: str = "reconciliation",
                              details: Optional[Dict[str, Any]] = None) -> bool:
    return await get_admin_alert_system().send_alert(AlertSeverity.CRITICAL, category, component, message, details)


async def send_error_alert(component: str, message: str, category: str = "reconciliation",
                           details: Optional[Dict[str, Any]] = None) -> bool:
    return await get_admin_alert_system().send_alert(AlertSeverity.ERROR, category, component, message, details)


async def send_warning_alert(component: str, message: str, category: str = "reconciliation",
                             details: Optional[Dict[str, Any]] = None) -> bool:
    return await get_admin_alert_system().send_alert(AlertSeverity.WARNING, category, component, message, details)
