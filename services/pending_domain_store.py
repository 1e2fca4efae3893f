"""
Pending-Domain Store - durable tracking of domains whose registration outcome is unknown

Every status change is a conditional UPDATE (WHERE status = current) so two processors can
never both move the same record. The partial unique index on (order_id, domain_name) for
pending/processing rows keeps at most one open record per pair.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple, Union

import psycopg2.errors

from database import execute_query, execute_returning, execute_update
from services.pending_domain_states import PendingDomainStatus, coerce_status, validate_transition
from services.reconciliation_errors import (
    InvalidTransitionError, PendingDomainNotFoundError, ReconciliationError
)
from services.reconciliation_models import (
    PendingDomain, RegistrationAttempt, TransitionResult, utc_now
)
from services.response_classifier import AmbiguityKind

logger = logging.getLogger(__name__)

# Columns a transition may set alongside the status
TRANSITION_FIELDS = (
    'registered_at', 'expires_at', 'registrar_order_id',
    'needs_manual_review', 'last_verified_at',
)

StatusArg = Union[str, PendingDomainStatus]


def format_admin_note(actor: str, message: str) -> str:
    timestamp = utc_now().strftime('%Y-%m-%d %H:%M:%S UTC')
    return f"[{timestamp}] {actor}: {message}"


class PendingDomainStore:
    """PostgreSQL-backed store for the pending_domains table"""

    async def upsert_pending(
        self,
        order_id: str,
        domain_name: str,
        attempt: RegistrationAttempt,
        reason: str,
        ambiguity: Optional[AmbiguityKind] = None
    ) -> Tuple[PendingDomain, bool]:
        """Create the open record for a pair, or refresh the existing one. Returns (record, created)."""
        rows = await execute_returning(
            """
            INSERT INTO pending_domains
                (order_id, domain_name, price, currency, registration_period, user_id,
                 customer_id, contact_id, admin_contact_id, tech_contact_id, billing_contact_id,
                 name_servers, status, reason, ambiguity)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'pending', %s, %s)
            ON CONFLICT (order_id, domain_name) WHERE status IN ('pending', 'processing')
            DO UPDATE SET
                reason = EXCLUDED.reason,
                ambiguity = COALESCE(EXCLUDED.ambiguity, pending_domains.ambiguity),
                updated_at = NOW()
            RETURNING *, (xmax = 0) AS inserted
            """,
            (
                order_id, domain_name, attempt.price, attempt.currency, attempt.registration_period,
                attempt.user_id, attempt.customer_id, attempt.contact_id, attempt.admin_contact_id,
                attempt.tech_contact_id, attempt.billing_contact_id, attempt.name_servers,
                reason, ambiguity.value if ambiguity else None,
            )
        )
        row = rows[0]
        created = bool(row.pop('inserted'))
        record = PendingDomain.from_row(row)
        if created:
            logger.info(f"📝 PENDING: Created record {record.id} for {domain_name} (order {order_id})")
        else:
            logger.info(f"📝 PENDING: Refreshed open record {record.id} for {domain_name} (order {order_id})")
        return record, created

    async def get(self, pending_domain_id: int) -> Optional[PendingDomain]:
        rows = await execute_query("SELECT * FROM pending_domains WHERE id = %s", (pending_domain_id,))
        return PendingDomain.from_row(rows[0]) if rows else None

    async def get_many(self, pending_domain_ids: List[int]) -> List[PendingDomain]:
        if not pending_domain_ids:
            return []
        rows = await execute_query(
            "SELECT * FROM pending_domains WHERE id = ANY(%s) ORDER BY id",
            (list(pending_domain_ids),)
        )
        return [PendingDomain.from_row(row) for row in rows]

    async def get_active(self, order_id: str, domain_name: str) -> Optional[PendingDomain]:
        rows = await execute_query(
            """SELECT * FROM pending_domains
               WHERE order_id = %s AND domain_name = %s AND status IN ('pending', 'processing')""",
            (order_id, domain_name)
        )
        return PendingDomain.from_row(rows[0]) if rows else None

    async def get_latest(self, order_id: str, domain_name: str) -> Optional[PendingDomain]:
        """Most recent record for the pair in any status"""
        rows = await execute_query(
            """SELECT * FROM pending_domains
               WHERE order_id = %s AND domain_name = %s
               ORDER BY id DESC LIMIT 1""",
            (order_id, domain_name)
        )
        return PendingDomain.from_row(rows[0]) if rows else None

    async def _require(self, pending_domain_id: int) -> PendingDomain:
        record = await self.get(pending_domain_id)
        if record is None:
            raise PendingDomainNotFoundError(pending_domain_id)
        return record

    async def transition(
        self,
        pending_domain_id: int,
        new_status: StatusArg,
        reason: Optional[str] = None,
        **fields: Any
    ) -> TransitionResult:
        """
        Move a record to new_status through the state machine.

        Repeating a terminal transition returns changed=False without writing anything.

        Raises:
            PendingDomainNotFoundError: no such record
            InvalidTransitionError: the state machine forbids the change
        """
        target = coerce_status(new_status)
        unknown = set(fields) - set(TRANSITION_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")

        # A concurrent writer can move the record between read and write; re-validate against the new state
        for _ in range(3):
            record = await self._require(pending_domain_id)
            if not validate_transition(record.status, target, pending_domain_id):
                logger.debug(f"🔁 PENDING: Record {pending_domain_id} already {target.value} - no-op")
                return TransitionResult(record=record, changed=False)

            assignments = ["status = %s", "reason = COALESCE(%s, reason)", "updated_at = NOW()"]
            params: List[Any] = [target.value, reason]
            for name, value in fields.items():
                assignments.append(f"{name} = %s")
                params.append(value)
            params.extend([pending_domain_id, record.status.value])

            rows = await execute_returning(
                f"UPDATE pending_domains SET {', '.join(assignments)} "
                f"WHERE id = %s AND status = %s RETURNING *",
                tuple(params)
            )
            if rows:
                updated = PendingDomain.from_row(rows[0])
                logger.info(f"🔀 PENDING: Record {pending_domain_id} {record.status.value} -> {target.value}")
                return TransitionResult(record=updated, changed=True)

        raise ReconciliationError(f"Pending domain {pending_domain_id} kept changing during transition to {target.value}")

    async def claim_for_processing(self, pending_domain_id: int) -> Optional[PendingDomain]:
        """pending -> processing, or None when another processor holds or finished the record"""
        rows = await execute_returning(
            """UPDATE pending_domains SET status = 'processing', updated_at = NOW()
               WHERE id = %s AND status = 'pending' RETURNING *""",
            (pending_domain_id,)
        )
        if not rows:
            logger.debug(f"🔒 PENDING: Claim lost for record {pending_domain_id}")
            return None
        return PendingDomain.from_row(rows[0])

    async def release_claim(self, pending_domain_id: int, reason: Optional[str] = None) -> Optional[PendingDomain]:
        """processing -> pending"""
        rows = await execute_returning(
            """UPDATE pending_domains SET status = 'pending', reason = COALESCE(%s, reason), updated_at = NOW()
               WHERE id = %s AND status = 'processing' RETURNING *""",
            (reason, pending_domain_id)
        )
        return PendingDomain.from_row(rows[0]) if rows else None

    async def record_attempt(self, pending_domain_id: int) -> PendingDomain:
        rows = await execute_returning(
            """UPDATE pending_domains
               SET verification_attempts = verification_attempts + 1, last_verified_at = NOW(), updated_at = NOW()
               WHERE id = %s RETURNING *""",
            (pending_domain_id,)
        )
        if not rows:
            raise PendingDomainNotFoundError(pending_domain_id)
        return PendingDomain.from_row(rows[0])

    def _filters(self, status: Optional[StatusArg], search: Optional[str]) -> Tuple[str, List[Any]]:
        conditions = []
        params: List[Any] = []
        if status:
            conditions.append("status = %s")
            params.append(coerce_status(status).value)
        if search:
            conditions.append("(domain_name ILIKE %s OR order_id ILIKE %s)")
            pattern = f"%{search.strip()}%"
            params.extend([pattern, pattern])
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return where, params

    async def list_by_status(
        self,
        status: Optional[StatusArg] = None,
        limit: int = 20,
        offset: int = 0,
        search: Optional[str] = None
    ) -> List[PendingDomain]:
        where, params = self._filters(status, search)
        rows = await execute_query(
            f"SELECT * FROM pending_domains {where} ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s",
            tuple(params + [limit, offset])
        )
        return [PendingDomain.from_row(row) for row in rows]

    async def count(self, status: Optional[StatusArg] = None, search: Optional[str] = None) -> int:
        where, params = self._filters(status, search)
        rows = await execute_query(f"SELECT COUNT(*) AS total FROM pending_domains {where}", tuple(params))
        return int(rows[0]['total']) if rows else 0

    async def status_summary(self) -> Dict[str, int]:
        summary = {status.value: 0 for status in PendingDomainStatus}
        rows = await execute_query("SELECT status, COUNT(*) AS total FROM pending_domains GROUP BY status")
        for row in rows:
            summary[row['status']] = int(row['total'])
        return summary

    async def list_eligible(self, max_attempts: int, limit: int) -> List[PendingDomain]:
        """Pending records below the attempt ceiling, least recently verified first"""
        rows = await execute_query(
            """SELECT * FROM pending_domains
               WHERE status = 'pending' AND verification_attempts < %s
               ORDER BY last_verified_at ASC NULLS FIRST, created_at ASC
               LIMIT %s""",
            (max_attempts, limit)
        )
        return [PendingDomain.from_row(row) for row in rows]

    async def flag_for_review(self, pending_domain_id: int, reason: str) -> PendingDomain:
        rows = await execute_returning(
            """UPDATE pending_domains SET needs_manual_review = TRUE, reason = %s, updated_at = NOW()
               WHERE id = %s RETURNING *""",
            (reason, pending_domain_id)
        )
        if not rows:
            raise PendingDomainNotFoundError(pending_domain_id)
        return PendingDomain.from_row(rows[0])

    async def append_admin_note(self, pending_domain_id: int, note: str) -> PendingDomain:
        rows = await execute_returning(
            """UPDATE pending_domains
               SET admin_notes = COALESCE(admin_notes || E'\\n', '') || %s, updated_at = NOW()
               WHERE id = %s RETURNING *""",
            (note, pending_domain_id)
        )
        if not rows:
            raise PendingDomainNotFoundError(pending_domain_id)
        return PendingDomain.from_row(rows[0])

    async def update_admin_fields(
        self,
        pending_domain_id: int,
        admin_notes: Optional[str] = None,
        reason: Optional[str] = None
    ) -> PendingDomain:
        """Replace admin notes and/or reason without touching status"""
        rows = await execute_returning(
            """UPDATE pending_domains
               SET admin_notes = COALESCE(%s, admin_notes), reason = COALESCE(%s, reason), updated_at = NOW()
               WHERE id = %s RETURNING *""",
            (admin_notes, reason, pending_domain_id)
        )
        if not rows:
            raise PendingDomainNotFoundError(pending_domain_id)
        return PendingDomain.from_row(rows[0])

    async def override_status(
        self,
        pending_domain_id: int,
        new_status: StatusArg,
        actor: str,
        reason: str
    ) -> PendingDomain:
        """
        Manual correction of a terminal record, outside the state machine.

        Always logged and written to the record's admin notes.
        """
        target = coerce_status(new_status)
        record = await self._require(pending_domain_id)
        if not record.is_terminal:
            raise InvalidTransitionError(record.status.value, target.value, pending_domain_id)

        note = format_admin_note(actor, f"manual override {record.status.value} -> {target.value}: {reason}")
        try:
            rows = await execute_returning(
                """UPDATE pending_domains
                   SET status = %s, reason = %s, updated_at = NOW(),
                       admin_notes = COALESCE(admin_notes || E'\\n', '') || %s
                   WHERE id = %s AND status = %s RETURNING *""",
                (target.value, reason, note, pending_domain_id, record.status.value)
            )
        except psycopg2.errors.UniqueViolation:
            raise ReconciliationError(
                f"Cannot reopen pending domain {pending_domain_id}: another open record exists for "
                f"{record.domain_name} in order {record.order_id}"
            )
        if not rows:
            raise InvalidTransitionError(record.status.value, target.value, pending_domain_id)

        logger.warning(f"⚠️ PENDING: Manual override by {actor} on record {pending_domain_id}: "
                       f"{record.status.value} -> {target.value} ({reason})")
        return PendingDomain.from_row(rows[0])

    async def release_stale_claims(self, older_than_seconds: int) -> List[PendingDomain]:
        """Return processing records abandoned by a crashed worker to pending"""
        rows = await execute_returning(
            """UPDATE pending_domains
               SET status = 'pending', updated_at = NOW()
               WHERE status = 'processing' AND updated_at < NOW() - (%s * INTERVAL '1 second')
               RETURNING *""",
            (older_than_seconds,)
        )
        records = [PendingDomain.from_row(row) for row in rows]
        if records:
            logger.warning(f"🔄 PENDING: Released {len(records)} stale processing claims: "
                           f"{[r.id for r in records]}")
        return records

    async def delete(self, pending_domain_id: int) -> bool:
        deleted = await execute_update("DELETE FROM pending_domains WHERE id = %s", (pending_domain_id,))
        if deleted:
            logger.warning(f"🗑️ PENDING: Record {pending_domain_id} deleted by admin")
        return deleted > 0
