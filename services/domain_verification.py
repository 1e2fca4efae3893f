"""
Domain Verification Service - resolves one pending domain through the availability signal

A domain the registrar reports as taken was registered by us; a domain still available
was not. Anything else is inconclusive and retried later, up to the attempt ceiling,
after which the record waits for an operator. Records are never failed for lack of an answer.
Only inconclusive checks count toward the ceiling; a decisive check records last_verified_at.
"""

import logging
from enum import Enum
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from admin_alerts import send_warning_alert
from reconciliation_config import ReconciliationConfig, get_reconciliation_config
from services.pending_domain_states import PendingDomainStatus
from services.pending_domain_store import PendingDomainStore
from services.reconciliation_errors import RegistrarTransportError
from services.reconciliation_models import PendingDomain, utc_now
from services.reconciliation_sync import ReconciliationSync
from services.resellerclub import AvailabilityStatus, ResellerClubService, get_resellerclub_service

logger = logging.getLogger(__name__)

VERIFIED_REGISTERED_REASON = "Domain registration verified with registrar"
VERIFIED_NOT_REGISTERED_REASON = "Verified not registered: domain is still available at the registrar"


class VerificationOutcome(Enum):
    REGISTERED = "registered"
    NOT_REGISTERED = "not_registered"
    INCONCLUSIVE = "inconclusive"
    SKIPPED = "skipped"
    TRANSPORT_ERROR = "transport_error"
    ERROR = "error"


@dataclass
class VerificationResult:
    pending_domain_id: int
    outcome: VerificationOutcome
    detail: str = ""
    flagged: bool = False
    record: Optional[PendingDomain] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pendingDomainId': self.pending_domain_id,
            'domainName': self.record.domain_name if self.record else None,
            'outcome': self.outcome.value,
            'detail': self.detail,
            'flagged': self.flagged,
            'status': self.record.status.value if self.record else None,
        }


def registration_expiry(registered_at, registration_period: int):
    return registered_at + timedelta(days=365 * max(1, registration_period))


class DomainVerificationService:
    """Verifies pending domains against registrar availability"""

    def __init__(
        self,
        store: Optional[PendingDomainStore] = None,
        registrar: Optional[ResellerClubService] = None,
        sync: Optional[ReconciliationSync] = None,
        config: Optional[ReconciliationConfig] = None
    ):
        self.store = store or PendingDomainStore()
        self.registrar = registrar or get_resellerclub_service()
        self.sync = sync or ReconciliationSync()
        self.config = config or get_reconciliation_config()

    async def verify(self, pending_domain_id: int, rate_limiter=None) -> VerificationResult:
        """
        Verify one pending domain.

        Args:
            pending_domain_id: Record to verify
            rate_limiter: Optional shared limiter; acquire() is awaited before the registrar call
        """
        record = await self.store.claim_for_processing(pending_domain_id)
        if record is None:
            current = await self.store.get(pending_domain_id)
            detail = "not found" if current is None else f"record is {current.status.value}"
            logger.info(f"⏭️ VERIFY: Skipping {pending_domain_id} - {detail}")
            return VerificationResult(pending_domain_id, VerificationOutcome.SKIPPED, detail, record=current)

        try:
            if record.verification_attempts >= self.config.max_verification_attempts:
                released = await self.store.release_claim(pending_domain_id)
                logger.info(f"⏭️ VERIFY: {record.domain_name} is at the attempt ceiling - left for manual review")
                return VerificationResult(pending_domain_id, VerificationOutcome.SKIPPED,
                                          "attempt ceiling reached", record=released or record)

            if rate_limiter is not None:
                await rate_limiter.acquire()

            try:
                availability = await self.registrar.check_availability(record.domain_name)
            except RegistrarTransportError as e:
                released = await self.store.release_claim(pending_domain_id)
                logger.warning(f"📡 VERIFY: Registrar unreachable for {record.domain_name}: {e} - claim released")
                return VerificationResult(pending_domain_id, VerificationOutcome.TRANSPORT_ERROR,
                                          str(e), record=released or record)

            if availability.status == AvailabilityStatus.TAKEN:
                return await self._complete(record)

            if availability.status == AvailabilityStatus.AVAILABLE and not record.registrar_may_be_processing:
                return await self._fail(record)

            if availability.status == AvailabilityStatus.AVAILABLE:
                detail = "domain still available while the registrar may be processing the original order"
            else:
                detail = availability.detail or f"registrar status {availability.raw_status or 'unknown'}"
            return await self._inconclusive(record, detail)

        except Exception:
            await self.store.release_claim(pending_domain_id)
            raise

    async def _complete(self, record: PendingDomain) -> VerificationResult:
        now = utc_now()
        result = await self.store.transition(
            record.id,
            PendingDomainStatus.COMPLETED,
            VERIFIED_REGISTERED_REASON,
            registered_at=now,
            expires_at=registration_expiry(now, record.registration_period),
            last_verified_at=now,
        )
        logger.info(f"✅ VERIFY: {record.domain_name} (order {record.order_id}) confirmed registered")
        if result.changed:
            await self.sync.apply_resolution(result.record)
        return VerificationResult(record.id, VerificationOutcome.REGISTERED, VERIFIED_REGISTERED_REASON,
                                  record=result.record)

    async def _fail(self, record: PendingDomain) -> VerificationResult:
        result = await self.store.transition(
            record.id, PendingDomainStatus.FAILED, VERIFIED_NOT_REGISTERED_REASON, last_verified_at=utc_now()
        )
        logger.info(f"❌ VERIFY: {record.domain_name} (order {record.order_id}) verified not registered")
        if result.changed:
            await self.sync.apply_resolution(result.record)
        return VerificationResult(record.id, VerificationOutcome.NOT_REGISTERED, VERIFIED_NOT_REGISTERED_REASON,
                                  record=result.record)

    async def _inconclusive(self, record: PendingDomain, detail: str) -> VerificationResult:
        counted = await self.store.record_attempt(record.id)
        released = await self.store.release_claim(record.id) or counted
        attempts = released.verification_attempts
        max_attempts = self.config.max_verification_attempts
        logger.info(f"❔ VERIFY: {record.domain_name} inconclusive (attempt {attempts}/{max_attempts}): {detail}")

        if attempts < max_attempts:
            return VerificationResult(record.id, VerificationOutcome.INCONCLUSIVE, detail, record=released)

        reason = f"Needs manual verification after {attempts} attempts: {detail}"[:500]
        flagged = await self.store.flag_for_review(record.id, reason)
        await send_warning_alert(
            "DomainVerification",
            f"{record.domain_name} needs manual verification",
            "reconciliation",
            {
                'pending_domain_id': record.id,
                'order_id': record.order_id,
                'attempts': attempts,
                'last_result': detail,
            }
        )
        return VerificationResult(record.id, VerificationOutcome.INCONCLUSIVE, detail, flagged=True, record=flagged)
