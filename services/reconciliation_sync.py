"""
Reconciliation Sync - writes resolved outcomes into the order aggregate

Once a pending record exists for an (order, domain) pair, this module is the only writer
of that pair's entry status. The customer completion notification fires from here, at
most once per order, guarded by the durable notification_sent flag.
"""

import logging
from datetime import datetime
from typing import Optional

from admin_alerts import send_error_alert, send_warning_alert
from localization import detect_user_language, t
from services.customer_notifications import CustomerNotifier, get_customer_notifier
from services.order_store import OrderStore
from services.pending_domain_states import PendingDomainStatus
from services.reconciliation_models import (
    Order, OrderDomainStatus, OrderOutcome, OrderResolution, PendingDomain, SyncResult
)

logger = logging.getLogger(__name__)


def compute_order_resolution(order: Order) -> OrderResolution:
    """Derive whether an order may be presented as done and what the customer sees per domain"""
    registered = [e.domain_name for e in order.domains if e.status == OrderDomainStatus.REGISTERED]
    failed = [e.domain_name for e in order.domains if e.status == OrderDomainStatus.FAILED]
    processing = [e.domain_name for e in order.domains if e.status == OrderDomainStatus.PROCESSING]

    all_resolved = bool(order.domains) and not processing
    if not all_resolved:
        outcome = OrderOutcome.PROCESSING
    elif registered and failed:
        outcome = OrderOutcome.PARTIALLY_COMPLETED
    elif registered:
        outcome = OrderOutcome.COMPLETED
    else:
        outcome = OrderOutcome.FAILED

    deliverable = all_resolved and bool(registered)
    lang = detect_user_language(order.language_code)
    return OrderResolution(
        order_id=order.order_id,
        all_resolved=all_resolved,
        outcome=outcome,
        registered=registered,
        failed=failed,
        processing=processing,
        notification_due=deliverable and not order.notification_sent,
        notification_sent=order.notification_sent,
        invoice_ready=deliverable,
        domain_labels={e.domain_name: t(f"domain_status.{e.status.value}", lang) for e in order.domains},
    )


class ReconciliationSync:
    """Propagates resolved pending-domain outcomes to the order and notifies the customer"""

    def __init__(self, order_store: Optional[OrderStore] = None, notifier: Optional[CustomerNotifier] = None):
        self.order_store = order_store or OrderStore()
        self.notifier = notifier or get_customer_notifier()

    async def write_outcome(
        self,
        order_id: str,
        domain_name: str,
        status: OrderDomainStatus,
        error: Optional[str] = None,
        registrar_order_id: Optional[str] = None,
        registered_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        allow_terminal_change: bool = False
    ) -> SyncResult:
        """
        Write one entry status into the order and, for terminal statuses, re-evaluate
        the order and notify when due. Missing orders or entries are reported, never raised.

        A resolved entry only changes status when allow_terminal_change is set, which is
        reserved for pending-domain resolutions and manual overrides.
        """
        status = OrderDomainStatus(status)
        order = await self.order_store.get_order(order_id)
        if order is None:
            logger.warning(f"⚠️ SYNC: Order {order_id} not found while writing {domain_name} -> {status.value}")
            await send_warning_alert(
                "ReconciliationSync",
                f"Order {order_id} not found while syncing {domain_name}",
                "reconciliation",
                {'order_id': order_id, 'domain_name': domain_name, 'status': status.value}
            )
            return SyncResult(order_found=False, entry_found=False)

        entry = order.get_entry(domain_name)
        if entry is None:
            logger.warning(f"⚠️ SYNC: Domain {domain_name} is not part of order {order_id}")
            await send_warning_alert(
                "ReconciliationSync",
                f"Domain {domain_name} missing from order {order_id}",
                "reconciliation",
                {'order_id': order_id, 'domain_name': domain_name, 'status': status.value}
            )
            return SyncResult(order_found=True, entry_found=False)

        if entry.is_terminal and entry.status != status and not allow_terminal_change:
            logger.warning(f"⚠️ SYNC: Refusing to move resolved entry {domain_name} in order {order_id} "
                           f"from {entry.status.value} to {status.value}")
            await send_warning_alert(
                "ReconciliationSync",
                f"Write to resolved entry {domain_name} in order {order_id} refused",
                "reconciliation",
                {'order_id': order_id, 'domain_name': domain_name,
                 'current_status': entry.status.value, 'requested_status': status.value}
            )
            return SyncResult(order_found=True, entry_status=entry.status, conflict=True)

        if entry.status == status and entry.is_terminal:
            logger.debug(f"🔁 SYNC: {domain_name} in order {order_id} already {status.value}")
        else:
            await self.order_store.set_domain_status(
                order_id, domain_name, status,
                error=error if status == OrderDomainStatus.FAILED else None,
                registrar_order_id=registrar_order_id,
                registered_at=registered_at,
                expires_at=expires_at,
            )
            logger.info(f"🔗 SYNC: Order {order_id} entry {domain_name} -> {status.value}")

        if status == OrderDomainStatus.PROCESSING:
            return SyncResult(order_found=True, entry_status=status)

        refreshed = await self.order_store.get_order(order_id)
        resolution = compute_order_resolution(refreshed)
        notified = await self._maybe_notify(refreshed, resolution)
        if notified:
            resolution.notification_due = False
            resolution.notification_sent = True
        return SyncResult(order_found=True, entry_status=status, notification_sent=notified, resolution=resolution)

    async def apply_resolution(self, pending_domain: PendingDomain) -> SyncResult:
        """Write a terminal pending-domain outcome into its order"""
        if pending_domain.status == PendingDomainStatus.COMPLETED:
            return await self.write_outcome(
                pending_domain.order_id,
                pending_domain.domain_name,
                OrderDomainStatus.REGISTERED,
                registrar_order_id=pending_domain.registrar_order_id,
                registered_at=pending_domain.registered_at,
                expires_at=pending_domain.expires_at,
                allow_terminal_change=True,
            )
        if pending_domain.status == PendingDomainStatus.FAILED:
            return await self.write_outcome(
                pending_domain.order_id,
                pending_domain.domain_name,
                OrderDomainStatus.FAILED,
                error=pending_domain.reason,
                allow_terminal_change=True,
            )
        raise ValueError(f"Pending domain {pending_domain.id} is not resolved ({pending_domain.status.value})")

    async def refresh_order(self, order_id: str) -> Optional[OrderResolution]:
        """Re-evaluate an order and send a notification that is due but was never delivered"""
        order = await self.order_store.get_order(order_id)
        if order is None:
            return None
        resolution = compute_order_resolution(order)
        if resolution.notification_due and await self._maybe_notify(order, resolution):
            resolution.notification_due = False
            resolution.notification_sent = True
        return resolution

    async def _maybe_notify(self, order: Order, resolution: OrderResolution) -> bool:
        if not (resolution.all_resolved and resolution.registered):
            return False

        if not await self.order_store.claim_notification(order.order_id):
            logger.debug(f"🔁 SYNC: Notification for order {order.order_id} already sent")
            return False

        sent = await self.notifier.send_order_completed(order, resolution)
        if sent:
            logger.info(f"🎉 SYNC: Order {order.order_id} resolved ({resolution.outcome.value}) - customer notified")
            return True

        await self.order_store.release_notification(order.order_id)
        logger.error(f"❌ SYNC: Completion notification for order {order.order_id} failed - flag released")
        await send_error_alert(
            "ReconciliationSync",
            f"Customer notification failed for order {order.order_id}",
            "customer_notification",
            {'order_id': order.order_id, 'user_id': order.user_id, 'registered': resolution.registered}
        )
        return False

    async def redeliver_due_notifications(self, limit: int = 50) -> int:
        """Retry completion notifications that are due but were never delivered"""
        order_ids = await self.order_store.list_orders_awaiting_notification(limit)
        delivered = 0
        for order_id in order_ids:
            resolution = await self.refresh_order(order_id)
            if resolution is not None and resolution.notification_sent:
                delivered += 1
        if order_ids:
            logger.info(f"✉️ SYNC: Redelivery pass - {delivered}/{len(order_ids)} notifications sent")
        return delivered
