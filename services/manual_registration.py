"""
Manual Registration Retry - operator-triggered re-registration of a pending domain
"""

import logging
from typing import Any, Dict, Optional

from admin_alerts import send_warning_alert
from services.domain_verification import registration_expiry
from services.pending_domain_states import PendingDomainStatus
from services.pending_domain_store import PendingDomainStore, format_admin_note
from services.reconciliation_errors import (
    ManualRetryNotAllowedError, PendingDomainNotFoundError, RegistrarTransportError
)
from services.reconciliation_models import OrderDomainStatus, PendingDomain, utc_now
from services.reconciliation_sync import ReconciliationSync
from services.resellerclub import ResellerClubService, get_resellerclub_service
from services.response_classifier import Classification, classify_response

logger = logging.getLogger(__name__)

BUSY = "busy"
TRANSPORT_ERROR = "transport_error"


class ManualRegistrationService:
    """Re-submits a pending domain to the registrar on an operator's request"""

    def __init__(
        self,
        store: Optional[PendingDomainStore] = None,
        registrar: Optional[ResellerClubService] = None,
        sync: Optional[ReconciliationSync] = None
    ):
        self.store = store or PendingDomainStore()
        self.registrar = registrar or get_resellerclub_service()
        self.sync = sync or ReconciliationSync()

    async def register(self, pending_domain_id: int, actor: str) -> Dict[str, Any]:
        """
        Retry registration of one record.

        Returns a dict with the outcome (completed, failed, pending, busy, transport_error),
        the classification when the registrar answered, and the updated record.

        Raises:
            PendingDomainNotFoundError: no such record
            ManualRetryNotAllowedError: the record is already completed
        """
        record = await self.store.get(pending_domain_id)
        if record is None:
            raise PendingDomainNotFoundError(pending_domain_id)

        if record.status == PendingDomainStatus.COMPLETED:
            raise ManualRetryNotAllowedError(
                f"Pending domain {pending_domain_id} ({record.domain_name}) is already registered"
            )

        if record.status == PendingDomainStatus.FAILED:
            record = await self.store.override_status(
                pending_domain_id, PendingDomainStatus.PENDING, actor, "reopened for manual registration"
            )
            await send_warning_alert(
                "ManualRegistration",
                f"{record.domain_name} reopened from failed by {actor}",
                "reconciliation",
                {'pending_domain_id': pending_domain_id, 'order_id': record.order_id}
            )
            await self.sync.write_outcome(
                record.order_id, record.domain_name, OrderDomainStatus.PROCESSING, allow_terminal_change=True
            )

        claimed = await self.store.claim_for_processing(pending_domain_id)
        if claimed is None:
            logger.info(f"🔒 MANUAL: {record.domain_name} is being processed elsewhere - retry skipped")
            return self._result(BUSY, record, detail="record is being processed")

        logger.info(f"🛠️ MANUAL: {actor} retrying registration of {claimed.domain_name} (order {claimed.order_id})")
        try:
            response = await self.registrar.register_domain(
                claimed.domain_name,
                claimed.registration_period,
                claimed.customer_id,
                claimed.admin_contact,
                claimed.tech_contact,
                claimed.billing_contact,
                nameservers=claimed.name_servers,
            )
        except RegistrarTransportError as e:
            released = await self.store.release_claim(pending_domain_id) or claimed
            noted = await self._note(pending_domain_id, actor, f"manual registration not sent: {e}")
            logger.warning(f"📡 MANUAL: Registrar unreachable for {claimed.domain_name}: {e}")
            return self._result(TRANSPORT_ERROR, noted or released, detail=str(e))
        except Exception:
            await self.store.release_claim(pending_domain_id)
            raise

        classification = classify_response(response)
        try:
            if classification.is_success:
                now = utc_now()
                transition = await self.store.transition(
                    pending_domain_id,
                    PendingDomainStatus.COMPLETED,
                    "Registered by manual retry",
                    registrar_order_id=classification.registrar_order_id,
                    registered_at=now,
                    expires_at=registration_expiry(now, claimed.registration_period),
                )
                outcome = PendingDomainStatus.COMPLETED.value
                if transition.changed:
                    await self.sync.apply_resolution(transition.record)
            elif classification.is_hard_failure:
                transition = await self.store.transition(
                    pending_domain_id, PendingDomainStatus.FAILED, classification.reason
                )
                outcome = PendingDomainStatus.FAILED.value
                if transition.changed:
                    await self.sync.apply_resolution(transition.record)
            else:
                await self.store.release_claim(pending_domain_id, classification.reason)
                outcome = PendingDomainStatus.PENDING.value
        except Exception:
            await self.store.release_claim(pending_domain_id)
            raise

        noted = await self._note(pending_domain_id, actor,
                                 f"manual registration -> {outcome} ({classification.reason})")
        logger.info(f"🛠️ MANUAL: {claimed.domain_name} manual registration -> {outcome}")
        return self._result(outcome, noted, classification=classification)

    async def _note(self, pending_domain_id: int, actor: str, message: str) -> Optional[PendingDomain]:
        return await self.store.append_admin_note(pending_domain_id, format_admin_note(actor, message))

    @staticmethod
    def _result(
        outcome: str,
        record: Optional[PendingDomain],
        classification: Optional[Classification] = None,
        detail: str = ""
    ) -> Dict[str, Any]:
        return {
            'outcome': outcome,
            'detail': detail or (classification.reason if classification else ""),
            'classification': classification.to_dict() if classification else None,
            'pendingDomain': record.to_dict() if record else None,
        }
