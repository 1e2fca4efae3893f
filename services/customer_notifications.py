"""
Customer notification delivery through the Telegram bot

Only localized text is sent; registrar reasons never reach the customer.
"""

import logging
from typing import List, Optional

from localization import detect_user_language, t_html
from services.reconciliation_models import Order, OrderResolution

logger = logging.getLogger(__name__)


class CustomerNotifier:
    """Sends the once-per-order completion message to the customer's Telegram chat"""

    def __init__(self, application=None):
        self._bot_application = application

    def set_bot_application(self, application):
        self._bot_application = application
        logger.info("✅ Bot application set for customer notifications")

    @property
    def is_configured(self) -> bool:
        return self._bot_application is not None and self._bot_application.bot is not None

    def render_order_completed(self, order: Order, resolution: OrderResolution) -> str:
        lang = detect_user_language(order.language_code)
        title, _ = t_html('notifications.order_completed.title', lang, order_id=order.order_id)
        lines: List[str] = [title, ""]

        header, _ = t_html('notifications.order_completed.registered_header', lang)
        lines.append(header)
        for entry in order.successful_domains:
            if entry.expires_at:
                line, _ = t_html('notifications.order_completed.expires_line', lang,
                                 domain_name=entry.domain_name,
                                 expires_at=entry.expires_at.strftime('%Y-%m-%d'))
            else:
                line, _ = t_html('notifications.order_completed.domain_line', lang,
                                 domain_name=entry.domain_name)
            lines.append(line)

        if resolution.failed:
            lines.append("")
            header, _ = t_html('notifications.order_completed.failed_header', lang)
            lines.append(header)
            for domain_name in resolution.failed:
                line, _ = t_html('notifications.order_completed.domain_line', lang, domain_name=domain_name)
                lines.append(line)

        if resolution.invoice_ready:
            lines.append("")
            invoice, _ = t_html('notifications.order_completed.invoice_ready', lang)
            lines.append(invoice)

        return "\n".join(lines)

    async def send_order_completed(self, order: Order, resolution: OrderResolution) -> bool:
        """
        Returns:
            bool: True when Telegram accepted the message
        """
        if not self.is_configured:
            logger.warning(f"⚠️ NOTIFY: Bot not configured - cannot notify user {order.user_id} "
                           f"about order {order.order_id}")
            return False

        text = self.render_order_completed(order, resolution)
        try:
            await self._bot_application.bot.send_message(chat_id=order.user_id, text=text, parse_mode='HTML')
        except Exception as e:
            logger.error(f"❌ NOTIFY: Failed to send completion for order {order.order_id} "
                         f"to user {order.user_id}: {e}")
            return False

        logger.info(f"✉️ NOTIFY: Completion sent for order {order.order_id} to user {order.user_id}")
        return True


_customer_notifier: Optional[CustomerNotifier] = None


def get_customer_notifier() -> CustomerNotifier:
    global _customer_notifier
    if _customer_notifier is None:
        _customer_notifier = CustomerNotifier()
    return _customer_notifier
