"""
Reconciliation Orchestrator - single entry point for registration outcomes

Architecture:
- The order-processing flow hands every raw registrar response to record_registration_attempt()
- Success and HardFailure are written straight into the order; AmbiguousPending opens a
  pending-domain record and leaves the order entry in processing
- Once a pair has a pending-domain record, every later response goes through that record;
  a pair that is already resolved is never changed by intake
- Admin operations (API and Telegram commands) go through the same instance
"""

import logging
from typing import Any, Dict, List, Optional

from admin_alerts import send_warning_alert
from reconciliation_config import ReconciliationConfig, get_reconciliation_config
from services.batch_verification import BatchVerificationScheduler
from services.domain_verification import DomainVerificationService, registration_expiry
from services.manual_registration import ManualRegistrationService
from services.order_store import OrderStore
from services.pending_domain_states import PendingDomainStatus, coerce_status
from services.pending_domain_store import PendingDomainStore, format_admin_note
from services.reconciliation_errors import (
    InvalidTransitionError, OrderNotFoundError, PendingDomainBusyError, PendingDomainNotFoundError
)
from services.reconciliation_models import (
    IntakeResult, Order, OrderDomainEntry, OrderDomainStatus, OrderResolution, PendingDomain,
    RegistrationAttempt, utc_now
)
from services.reconciliation_sync import ReconciliationSync, compute_order_resolution
from services.resellerclub import ResellerClubService, get_resellerclub_service
from services.response_classifier import Classification, RegistrarResponse, classify_response

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class ReconciliationOrchestrator:
    """Wires the reconciliation services together and exposes the operations callers use"""

    def __init__(
        self,
        store: Optional[PendingDomainStore] = None,
        order_store: Optional[OrderStore] = None,
        registrar: Optional[ResellerClubService] = None,
        sync: Optional[ReconciliationSync] = None,
        config: Optional[ReconciliationConfig] = None,
        notifier=None
    ):
        self.config = config or get_reconciliation_config()
        self.store = store or PendingDomainStore()
        self.order_store = order_store or OrderStore()
        self.registrar = registrar or get_resellerclub_service()
        self.sync = sync or ReconciliationSync(order_store=self.order_store, notifier=notifier)
        self.verifier = DomainVerificationService(self.store, self.registrar, self.sync, self.config)
        self.scheduler = BatchVerificationScheduler(self.verifier, self.store, self.config)
        self.manual = ManualRegistrationService(self.store, self.registrar, self.sync)

    # ------------------------------------------------------------------
    # Order-processing flow
    # ------------------------------------------------------------------

    async def create_order(
        self,
        order_id: str,
        user_id: int,
        domains: List[Dict[str, Any]],
        currency: Optional[str] = None,
        language_code: Optional[str] = None
    ) -> Order:
        """Register an order aggregate; every entry starts in processing unless stated otherwise"""
        if not domains:
            raise ValueError("An order needs at least one domain")
        entries = []
        for domain in domains:
            domain_name = domain.get('domain_name') or domain.get('domainName')
            if not domain_name:
                raise ValueError("Every order domain needs a domainName")
            entries.append({
                'domain_name': str(domain_name).strip().lower(),
                'price': domain.get('price', 0),
                'registration_period': int(domain.get('registration_period') or domain.get('registrationPeriod') or 1),
                'status': OrderDomainStatus(domain.get('status', OrderDomainStatus.PROCESSING.value)).value,
            })
        return await self.order_store.create_order(
            order_id, user_id, entries, currency or self.config.default_currency, language_code
        )

    async def record_registration_attempt(
        self,
        order_id: str,
        domain_name: str,
        registrar_response: RegistrarResponse,
        attempt: Optional[RegistrationAttempt] = None
    ) -> IntakeResult:
        """
        Classify one raw registrar response and apply it.

        Args:
            order_id: Order the domain belongs to
            domain_name: Domain that was submitted
            registrar_response: Unclassified registrar response
            attempt: Customer/contact details; required when the response turns out ambiguous

        Returns:
            IntakeResult with the classification and, for ambiguous responses, the pending record id
        """
        domain_name = domain_name.strip().lower()
        classification = classify_response(registrar_response)
        logger.info(f"🎯 ORCHESTRATOR: {domain_name} (order {order_id}) classified as "
                    f"{classification.outcome.value}: {classification.reason}")

        active = await self.store.get_active(order_id, domain_name)
        if active is None:
            resolved = await self.store.get_latest(order_id, domain_name)
            if resolved is not None:
                return await self._intake_after_resolution(order_id, domain_name, classification, resolved)
            entry = await self._order_entry(order_id, domain_name)
            if entry is not None and entry.is_terminal:
                return await self._intake_after_resolution(
                    order_id, domain_name, classification, None, entry.status
                )

        if classification.is_success:
            return await self._intake_success(order_id, domain_name, classification, attempt, active)
        if classification.is_hard_failure:
            return await self._intake_hard_failure(order_id, domain_name, classification, active)
        return await self._intake_ambiguous(order_id, domain_name, classification, attempt)

    async def _order_entry(self, order_id: str, domain_name: str) -> Optional[OrderDomainEntry]:
        order = await self.order_store.get_order(order_id)
        return order.get_entry(domain_name) if order is not None else None

    async def _intake_success(
        self,
        order_id: str,
        domain_name: str,
        classification: Classification,
        attempt: Optional[RegistrationAttempt],
        active: Optional[PendingDomain]
    ) -> IntakeResult:
        period = active.registration_period if active else (attempt.registration_period if attempt else 1)
        now = utc_now()
        expires_at = registration_expiry(now, period)

        if active is None:
            await self.sync.write_outcome(
                order_id, domain_name, OrderDomainStatus.REGISTERED,
                registrar_order_id=classification.registrar_order_id,
                registered_at=now,
                expires_at=expires_at,
            )
            return IntakeResult(classification, entry_status=OrderDomainStatus.REGISTERED)

        # A late success for an open record goes pending -> processing -> completed
        if active.status == PendingDomainStatus.PENDING:
            await self.store.claim_for_processing(active.id)
        transition = await self.store.transition(
            active.id,
            PendingDomainStatus.COMPLETED,
            "Registration confirmed by registrar response",
            registrar_order_id=classification.registrar_order_id,
            registered_at=now,
            expires_at=expires_at,
        )
        if transition.changed:
            await self.sync.apply_resolution(transition.record)
        return IntakeResult(classification, pending_domain_id=active.id, entry_status=OrderDomainStatus.REGISTERED)

    async def _intake_hard_failure(
        self,
        order_id: str,
        domain_name: str,
        classification: Classification,
        active: Optional[PendingDomain]
    ) -> IntakeResult:
        if active is None:
            await self.sync.write_outcome(order_id, domain_name, OrderDomainStatus.FAILED, error=classification.reason)
            return IntakeResult(classification, entry_status=OrderDomainStatus.FAILED)

        transition = await self.store.transition(active.id, PendingDomainStatus.FAILED, classification.reason)
        if transition.changed:
            await self.sync.apply_resolution(transition.record)
        return IntakeResult(classification, pending_domain_id=active.id, entry_status=OrderDomainStatus.FAILED)

    async def _intake_ambiguous(
        self,
        order_id: str,
        domain_name: str,
        classification: Classification,
        attempt: Optional[RegistrationAttempt]
    ) -> IntakeResult:
        if attempt is None:
            raise ValueError(f"Registration details are required to track ambiguous outcome for {domain_name}")

        record, created = await self.store.upsert_pending(
            order_id, domain_name, attempt, classification.reason, classification.ambiguity
        )
        await self.sync.write_outcome(order_id, domain_name, OrderDomainStatus.PROCESSING)
        if created:
            logger.warning(f"⏳ ORCHESTRATOR: {domain_name} (order {order_id}) awaiting verification "
                           f"as pending domain {record.id}")
        return IntakeResult(
            classification,
            pending_domain_id=record.id,
            created=created,
            entry_status=OrderDomainStatus.PROCESSING,
        )

    async def _intake_after_resolution(
        self,
        order_id: str,
        domain_name: str,
        classification: Classification,
        record: Optional[PendingDomain],
        entry_status: Optional[OrderDomainStatus] = None
    ) -> IntakeResult:
        """
        A response for a pair that is already resolved never changes the outcome.

        It is noted on the pending record when there is one; a response contradicting the
        resolution raises an admin alert. Correcting it is a manual override.
        """
        if record is not None:
            entry_status = (OrderDomainStatus.REGISTERED if record.status == PendingDomainStatus.COMPLETED
                            else OrderDomainStatus.FAILED)
            await self.store.append_admin_note(record.id, format_admin_note(
                "registrar", f"late {classification.outcome.value} response ignored: {classification.reason}"
            ))

        contradicts = (
            (classification.is_success and entry_status == OrderDomainStatus.FAILED)
            or (classification.is_hard_failure and entry_status == OrderDomainStatus.REGISTERED)
        )
        if contradicts:
            logger.warning(f"⚠️ ORCHESTRATOR: {classification.outcome.value} response for {domain_name} "
                           f"(order {order_id}) contradicts resolved status {entry_status.value} - not applied")
            await send_warning_alert(
                "ReconciliationOrchestrator",
                f"Registrar response for {domain_name} contradicts its resolved status",
                "reconciliation",
                {
                    'order_id': order_id,
                    'pending_domain_id': record.id if record else None,
                    'resolved_status': entry_status.value,
                    'outcome': classification.outcome.value,
                    'reason': classification.reason,
                }
            )
        else:
            logger.info(f"🔁 ORCHESTRATOR: {domain_name} (order {order_id}) already {entry_status.value} - "
                        f"{classification.outcome.value} response not applied")

        return IntakeResult(
            classification,
            pending_domain_id=record.id if record else None,
            entry_status=entry_status,
            already_resolved=True,
        )

    async def get_order_resolution(self, order_id: str) -> OrderResolution:
        """
        Raises:
            OrderNotFoundError: unknown order
        """
        order = await self.order_store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return compute_order_resolution(order)

    async def list_failed_domains(self, limit: int = 50) -> Dict[str, Any]:
        """Recent orders with failed domain registrations, newest first, with totals"""
        limit = min(MAX_PAGE_SIZE, max(1, int(limit)))
        orders = await self.order_store.list_orders_with_failed_domains(limit)
        data = []
        for order in orders:
            data.append({
                'orderId': order.order_id,
                'userId': order.user_id,
                'currency': order.currency,
                'failedDomains': [
                    {
                        'domainName': entry.domain_name,
                        'error': entry.error or "Registration failed",
                        'failedAt': entry.updated_at.isoformat() if entry.updated_at else None,
                    }
                    for entry in order.failed_domains
                ],
                'successfulDomains': [entry.domain_name for entry in order.successful_domains],
                'createdAt': order.created_at.isoformat() if order.created_at else None,
            })
        return {
            'items': data,
            'summary': {
                'totalFailedOrders': len(data),
                'totalFailedDomains': sum(len(item['failedDomains']) for item in data),
                'totalSuccessfulDomains': sum(len(item['successfulDomains']) for item in data),
                'lastUpdated': utc_now().isoformat(),
            },
        }

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def list_pending_domains(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        per_page: int = 20
    ) -> Dict[str, Any]:
        page = max(1, int(page))
        per_page = min(MAX_PAGE_SIZE, max(1, int(per_page)))
        records = await self.store.list_by_status(status, per_page, (page - 1) * per_page, search)
        total = await self.store.count(status, search)
        summary = await self.store.status_summary()
        return {
            'items': [record.to_dict() for record in records],
            'total': total,
            'page': page,
            'perPage': per_page,
            'pages': (total + per_page - 1) // per_page,
            'summary': summary,
        }

    async def get_pending_domain(self, pending_domain_id: int) -> PendingDomain:
        record = await self.store.get(pending_domain_id)
        if record is None:
            raise PendingDomainNotFoundError(pending_domain_id)
        return record

    async def update_pending_domain(
        self,
        pending_domain_id: int,
        status: Optional[str] = None,
        admin_notes: Optional[str] = None,
        reason: Optional[str] = None,
        actor: str = "admin"
    ) -> PendingDomain:
        """
        Change status and/or notes of a record.

        Non-terminal records move through the state machine; terminal records can only be
        corrected by a manual override, which is logged and alerted.

        Raises:
            PendingDomainBusyError: the record is claimed by a verifier or manual retry
            InvalidTransitionError: processing was requested; only processors take claims
        """
        record = await self.get_pending_domain(pending_domain_id)

        if status is not None:
            target = coerce_status(status)
            if target == PendingDomainStatus.PROCESSING:
                raise InvalidTransitionError(record.status.value, target.value, pending_domain_id)
            if record.status == PendingDomainStatus.PROCESSING:
                raise PendingDomainBusyError(pending_domain_id)
            if record.is_terminal and target != record.status:
                record = await self._override(record, target, actor, reason)
            elif not record.is_terminal:
                record = await self._admin_transition(record, target, reason or f"Set to {target.value} by {actor}")

        if admin_notes is not None or (reason is not None and status is None):
            record = await self.store.update_admin_fields(pending_domain_id, admin_notes=admin_notes, reason=reason)
        return record

    async def _admin_transition(self, record: PendingDomain, target: PendingDomainStatus, reason: str) -> PendingDomain:
        """Resolve a pending record for an admin; the record is claimed first like any processor would"""
        if target not in (PendingDomainStatus.COMPLETED, PendingDomainStatus.FAILED):
            transition = await self.store.transition(record.id, target, reason)
            return transition.record

        if await self.store.claim_for_processing(record.id) is None:
            raise PendingDomainBusyError(record.id)

        fields: Dict[str, Any] = {'needs_manual_review': False}
        if target == PendingDomainStatus.COMPLETED:
            now = utc_now()
            fields.update(registered_at=now, expires_at=registration_expiry(now, record.registration_period))
        try:
            transition = await self.store.transition(record.id, target, reason, **fields)
        except Exception:
            await self.store.release_claim(record.id)
            raise

        if transition.changed:
            await self.sync.apply_resolution(transition.record)
        return transition.record

    async def _override(
        self,
        record: PendingDomain,
        target: PendingDomainStatus,
        actor: str,
        reason: Optional[str]
    ) -> PendingDomain:
        updated = await self.store.override_status(
            record.id, target, actor, reason or f"Manual correction by {actor}"
        )
        await send_warning_alert(
            "ReconciliationOrchestrator",
            f"Manual override of {record.domain_name}: {record.status.value} -> {target.value}",
            "reconciliation",
            {'pending_domain_id': record.id, 'order_id': record.order_id, 'actor': actor, 'reason': reason}
        )
        if updated.is_terminal:
            await self.sync.apply_resolution(updated)
        else:
            await self.sync.write_outcome(
                updated.order_id, updated.domain_name, OrderDomainStatus.PROCESSING, allow_terminal_change=True
            )
        return updated

    async def close_pending_domain(self, pending_domain_id: int, reason: str, actor: str = "admin") -> PendingDomain:
        """Admin closure: mark a pending domain failed"""
        return await self.update_pending_domain(
            pending_domain_id, status=PendingDomainStatus.FAILED.value, reason=reason, actor=actor
        )

    async def delete_pending_domain(self, pending_domain_id: int) -> None:
        if not await self.store.delete(pending_domain_id):
            raise PendingDomainNotFoundError(pending_domain_id)

    async def register_pending_domain(self, pending_domain_id: int, actor: str = "admin") -> Dict[str, Any]:
        return await self.manual.register(pending_domain_id, actor)

    async def verify_pending_domains(self, pending_domain_ids: Optional[List[int]] = None) -> Dict[str, Any]:
        """Admin-triggered verification; without ids, runs the periodic selection once"""
        return await self.scheduler.run_batch(pending_domain_ids)

    async def close(self):
        await self.registrar.close()


_orchestrator: Optional[ReconciliationOrchestrator] = None


def get_reconciliation_orchestrator() -> ReconciliationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ReconciliationOrchestrator()
    return _orchestrator
