"""
Batch Verification Scheduler
Drives verification over the pending-domain backlog with a bounded worker pool and one
token bucket shared by every worker of a run, so the registrar API budget holds however
many records are in flight.
"""

import time
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from admin_alerts import send_warning_alert
from reconciliation_config import ReconciliationConfig, get_reconciliation_config
from services.domain_verification import (
    DomainVerificationService, VerificationOutcome, VerificationResult
)
from services.pending_domain_states import PendingDomainStatus
from services.pending_domain_store import PendingDomainStore

logger = logging.getLogger(__name__)


class TokenBucketRateLimiter:
    """Token bucket: `rate` tokens per second, at most `burst` stored"""

    def __init__(self, rate: float, burst: int, clock: Callable[[], float] = time.monotonic, sleep=asyncio.sleep):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.capacity = max(1, burst)
        self._tokens = float(self.capacity)
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self):
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now

    async def acquire(self):
        """Wait until a token is available and take it"""
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await self._sleep((1 - self._tokens) / self.rate)

    @property
    def available_tokens(self) -> float:
        self._refill()
        return self._tokens


def _empty_report(mode: str) -> Dict[str, Any]:
    return {
        'mode': mode,
        'checked': 0,
        'completed': 0,
        'failed': 0,
        'inconclusive': 0,
        'skipped': 0,
        'transport_errors': 0,
        'errors': 0,
        'flagged': 0,
        'results': [],
    }


_OUTCOME_COUNTERS = {
    VerificationOutcome.REGISTERED: 'completed',
    VerificationOutcome.NOT_REGISTERED: 'failed',
    VerificationOutcome.INCONCLUSIVE: 'inconclusive',
    VerificationOutcome.SKIPPED: 'skipped',
    VerificationOutcome.TRANSPORT_ERROR: 'transport_errors',
    VerificationOutcome.ERROR: 'errors',
}


class BatchVerificationScheduler:
    """
    Runs verification in admin mode (explicit ids) or periodic mode (eligible backlog)
    Per-record failures never abort the run.
    """

    def __init__(
        self,
        verifier: Optional[DomainVerificationService] = None,
        store: Optional[PendingDomainStore] = None,
        config: Optional[ReconciliationConfig] = None
    ):
        self.config = config or get_reconciliation_config()
        self.store = store or PendingDomainStore()
        self.verifier = verifier or DomainVerificationService(store=self.store, config=self.config)
        self._periodic_lock = asyncio.Lock()
        self.last_report: Optional[Dict[str, Any]] = None

    async def _select_admin_targets(self, pending_domain_ids: List[int], report: Dict[str, Any]) -> List[int]:
        unique_ids = list(dict.fromkeys(int(i) for i in pending_domain_ids))
        records = {record.id: record for record in await self.store.get_many(unique_ids)}
        targets = []
        for pending_domain_id in unique_ids:
            record = records.get(pending_domain_id)
            if record is None:
                detail = "not found"
            elif record.status != PendingDomainStatus.PENDING:
                detail = f"record is {record.status.value}"
            elif record.verification_attempts >= self.config.max_verification_attempts:
                detail = "attempt ceiling reached"
            else:
                targets.append(pending_domain_id)
                continue
            self._count(report, VerificationResult(pending_domain_id, VerificationOutcome.SKIPPED,
                                                   detail, record=record))
        return targets

    @staticmethod
    def _count(report: Dict[str, Any], result: VerificationResult):
        report[_OUTCOME_COUNTERS[result.outcome]] += 1
        if result.outcome in (VerificationOutcome.REGISTERED, VerificationOutcome.NOT_REGISTERED,
                              VerificationOutcome.INCONCLUSIVE):
            report['checked'] += 1
        if result.flagged:
            report['flagged'] += 1
        report['results'].append(result.to_dict())

    async def run_batch(self, pending_domain_ids: Optional[List[int]] = None) -> Dict[str, Any]:
        """
        Verify one batch.

        Args:
            pending_domain_ids: Explicit ids (admin mode); None selects eligible records (periodic mode)

        Returns:
            Report with per-outcome counters and per-record results
        """
        mode = 'admin' if pending_domain_ids is not None else 'periodic'
        report = _empty_report(mode)
        start_time = time.time()

        if pending_domain_ids is not None:
            targets = await self._select_admin_targets(pending_domain_ids, report)
        else:
            eligible = await self.store.list_eligible(self.config.max_verification_attempts, self.config.batch_size)
            targets = [record.id for record in eligible]

        if not targets:
            logger.info(f"✅ BATCH: No pending domains to verify ({mode} mode)")
            report['duration_seconds'] = round(time.time() - start_time, 3)
            self.last_report = report
            return report

        logger.info(f"🔄 BATCH: Verifying {len(targets)} pending domain(s) in {mode} mode "
                    f"({self.config.worker_count} workers, {self.config.rate_limit_per_second}/s)")

        limiter = TokenBucketRateLimiter(self.config.rate_limit_per_second, self.config.rate_limit_burst)
        semaphore = asyncio.Semaphore(self.config.worker_count)

        async def worker(pending_domain_id: int) -> VerificationResult:
            async with semaphore:
                try:
                    return await self.verifier.verify(pending_domain_id, limiter)
                except Exception as e:
                    logger.error(f"❌ BATCH: Error verifying pending domain {pending_domain_id}: {e}")
                    return VerificationResult(pending_domain_id, VerificationOutcome.ERROR, str(e))

        for result in await asyncio.gather(*(worker(i) for i in targets)):
            self._count(report, result)

        report['duration_seconds'] = round(time.time() - start_time, 3)
        logger.info(f"✅ BATCH: {mode} run finished - checked={report['checked']} completed={report['completed']} "
                    f"failed={report['failed']} inconclusive={report['inconclusive']} skipped={report['skipped']} "
                    f"transport_errors={report['transport_errors']} errors={report['errors']}")
        if report['errors']:
            await send_warning_alert(
                "BatchVerification",
                f"{report['errors']} pending domain(s) errored during verification",
                "reconciliation",
                {'mode': mode, 'errors': report['errors']}
            )
        self.last_report = report
        return report

    async def run_periodic(self) -> Optional[Dict[str, Any]]:
        """Periodic entry point; overlapping runs in this process are skipped"""
        if not self.config.enabled:
            logger.debug("🔇 BATCH: Reconciliation disabled")
            return None
        if self._periodic_lock.locked():
            logger.info("⏭️ BATCH: Previous periodic run still active - skipping")
            return None
        async with self._periodic_lock:
            await self.recover_stale_claims()
            report = await self.run_batch()
            report['notifications_sent'] = await self.redeliver_notifications()
            return report

    async def redeliver_notifications(self) -> int:
        """Send completion notifications whose first delivery failed"""
        try:
            return await self.verifier.sync.redeliver_due_notifications(self.config.batch_size)
        except Exception as e:
            logger.error(f"❌ BATCH: Notification redelivery failed: {e}")
            return 0

    async def recover_stale_claims(self) -> int:
        """Release processing claims left behind by a crashed worker"""
        released = await self.store.release_stale_claims(self.config.processing_claim_timeout)
        if released:
            await send_warning_alert(
                "BatchVerification",
                f"Released {len(released)} stale processing claim(s)",
                "reconciliation",
                {'pending_domain_ids': [record.id for record in released]}
            )
        return len(released)


_batch_scheduler: Optional[BatchVerificationScheduler] = None


def get_batch_scheduler() -> BatchVerificationScheduler:
    global _batch_scheduler
    if _batch_scheduler is None:
        _batch_scheduler = BatchVerificationScheduler()
    return _batch_scheduler


async def run_periodic_verification(context=None) -> Optional[Dict[str, Any]]:
    """Job queue callback for the periodic verification run"""
    orchestrator = context.bot_data.get('orchestrator') if context is not None else None
    scheduler = orchestrator.scheduler if orchestrator is not None else get_batch_scheduler()
    return await scheduler.run_periodic()


async def periodic_verification_loop(stop_event: asyncio.Event, scheduler: Optional[BatchVerificationScheduler] = None):
    """Fallback scheduler used when the Telegram job queue is not running"""
    scheduler = scheduler or get_batch_scheduler()
    config = scheduler.config
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=config.first_run_delay)
        return
    except asyncio.TimeoutError:
        pass

    while not stop_event.is_set():
        try:
            await scheduler.run_periodic()
        except Exception as e:
            logger.error(f"❌ BATCH: Periodic verification run failed: {e}")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=config.verification_interval)
        except asyncio.TimeoutError:
            continue
