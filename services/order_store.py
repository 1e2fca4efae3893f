"""
Order aggregate persistence (domain_orders + order_domains)
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from database import execute_query, execute_update, run_in_transaction
from services.reconciliation_models import Order, OrderDomainStatus

logger = logging.getLogger(__name__)


class OrderStore:
    """PostgreSQL-backed access to orders and their per-domain entries"""

    async def create_order(
        self,
        order_id: str,
        user_id: int,
        domains: List[Dict[str, Any]],
        currency: str = 'INR',
        language_code: Optional[str] = None
    ) -> Order:
        """Insert the order with its domain entries. Re-submitting an existing order is a no-op."""

        def _insert(conn):
            with conn.cursor() as cursor:
                cursor.execute(
                    """INSERT INTO domain_orders (order_id, user_id, currency, language_code)
                       VALUES (%s, %s, %s, %s) ON CONFLICT (order_id) DO NOTHING""",
                    (order_id, user_id, currency, language_code)
                )
                for position, entry in enumerate(domains):
                    cursor.execute(
                        """INSERT INTO order_domains
                               (order_id, position, domain_name, price, registration_period, status)
                           VALUES (%s, %s, %s, %s, %s, %s)
                           ON CONFLICT (order_id, domain_name) DO NOTHING""",
                        (
                            order_id, position, entry['domain_name'], entry.get('price', 0),
                            int(entry.get('registration_period', 1)),
                            entry.get('status', OrderDomainStatus.PROCESSING.value),
                        )
                    )

        await run_in_transaction(_insert)
        logger.info(f"📦 ORDERS: Order {order_id} stored with {len(domains)} domain(s)")
        order = await self.get_order(order_id)
        if order is None:
            raise RuntimeError(f"Order {order_id} missing right after insert")
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        order_rows = await execute_query("SELECT * FROM domain_orders WHERE order_id = %s", (order_id,))
        if not order_rows:
            return None
        entry_rows = await execute_query(
            "SELECT * FROM order_domains WHERE order_id = %s ORDER BY position, id",
            (order_id,)
        )
        return Order.from_rows(order_rows[0], entry_rows)

    async def set_domain_status(
        self,
        order_id: str,
        domain_name: str,
        status: OrderDomainStatus,
        error: Optional[str] = None,
        registrar_order_id: Optional[str] = None,
        registered_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None
    ) -> bool:
        """Write one entry's status. Returns False when the entry does not exist."""
        updated = await execute_update(
            """UPDATE order_domains
               SET status = %s, error = %s,
                   registrar_order_id = COALESCE(%s, registrar_order_id),
                   registered_at = COALESCE(%s, registered_at),
                   expires_at = COALESCE(%s, expires_at),
                   updated_at = NOW()
               WHERE order_id = %s AND domain_name = %s""",
            (OrderDomainStatus(status).value, error, registrar_order_id, registered_at, expires_at,
             order_id, domain_name)
        )
        return updated > 0

    async def claim_notification(self, order_id: str) -> bool:
        """Atomically take the once-only notification slot for an order"""
        claimed = await execute_update(
            """UPDATE domain_orders SET notification_sent = TRUE, notification_sent_at = NOW()
               WHERE order_id = %s AND notification_sent = FALSE""",
            (order_id,)
        )
        return claimed == 1

    async def release_notification(self, order_id: str) -> None:
        """Give the notification slot back after a failed send"""
        await execute_update(
            """UPDATE domain_orders SET notification_sent = FALSE, notification_sent_at = NULL
               WHERE order_id = %s""",
            (order_id,)
        )

    async def list_orders_awaiting_notification(self, limit: int = 50) -> List[str]:
        """Orders that are fully resolved with a registered domain but were never notified"""
        rows = await execute_query(
            """SELECT o.order_id FROM domain_orders o
               WHERE o.notification_sent = FALSE
                 AND EXISTS (SELECT 1 FROM order_domains d
                             WHERE d.order_id = o.order_id AND d.status = 'registered')
                 AND NOT EXISTS (SELECT 1 FROM order_domains d
                                 WHERE d.order_id = o.order_id AND d.status = 'processing')
               ORDER BY o.created_at
               LIMIT %s""",
            (limit,)
        )
        return [row['order_id'] for row in rows]

    async def list_orders_with_failed_domains(self, limit: int = 50) -> List[Order]:
        """Most recent orders holding at least one failed domain entry"""
        rows = await execute_query(
            """SELECT o.order_id FROM domain_orders o
               WHERE EXISTS (SELECT 1 FROM order_domains d
                             WHERE d.order_id = o.order_id AND d.status = 'failed')
               ORDER BY o.created_at DESC
               LIMIT %s""",
            (limit,)
        )
        orders = []
        for row in rows:
            order = await self.get_order(row['order_id'])
            if order is not None:
                orders.append(order)
        return orders
