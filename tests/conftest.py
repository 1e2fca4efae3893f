"""
Shared test fixtures and configuration for the reconciliation test suite
Provides in-memory stores, a scripted registrar and a recording notifier
"""

import os
import copy
import asyncio
import itertools
import logging
from datetime import timedelta
from typing import Dict, List, Optional

import factory
import pytest
from factory.declarations import LazyFunction, Sequence

# Test environment configuration
test_env_vars = {
    'TEST_MODE': '1',  # CRITICAL: Prevent live credential usage during tests
    'REGISTRAR_BACKOFF_BASE': '0',
    'REGISTRAR_MAX_RETRIES': '3',
    'RECONCILIATION_MAX_VERIFICATION_ATTEMPTS': '3',
    'ADMIN_USER_ID': '',
    'ADDITIONAL_ADMIN_USER_IDS': '',
}
for key, value in test_env_vars.items():
    os.environ[key] = value

logging.basicConfig(level=logging.DEBUG)

from reconciliation_config import ReconciliationConfig
from services.pending_domain_states import (
    NON_TERMINAL_STATUSES, PendingDomainStatus, coerce_status, validate_transition
)
from services.pending_domain_store import TRANSITION_FIELDS, format_admin_note
from services.reconciliation_errors import (
    InvalidTransitionError, PendingDomainNotFoundError, ReconciliationError
)
from services.reconciliation_models import (
    Order, OrderDomainEntry, OrderDomainStatus, PendingDomain, RegistrationAttempt, TransitionResult, utc_now
)
from services.reconciliation_orchestrator import ReconciliationOrchestrator
from services.reconciliation_sync import ReconciliationSync
from services.domain_verification import DomainVerificationService
from services.resellerclub import AvailabilityResult, AvailabilityStatus
from services.response_classifier import RegistrarResponse


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class RegistrationAttemptFactory(factory.Factory):  # type: ignore[misc]
    """Factory for registration attempt details"""
    class Meta:  # type: ignore[misc]
        model = RegistrationAttempt

    user_id = Sequence(lambda n: 500000 + n)
    customer_id = Sequence(lambda n: f"cust-{n}")
    contact_id = Sequence(lambda n: f"contact-{n}")
    price = 12.5
    currency = 'INR'
    registration_period = 1
    name_servers = LazyFunction(lambda: ['ns1.example.net', 'ns2.example.net'])


class OrderDomainFactory(factory.Factory):  # type: ignore[misc]
    """Factory for order domain entry dicts as accepted by create_order"""
    class Meta:  # type: ignore[misc]
        model = dict

    domain_name = Sequence(lambda n: f"shop{n}.com")
    price = 12.5
    registration_period = 1
    status = OrderDomainStatus.PROCESSING.value


# ---------------------------------------------------------------------------
# In-memory doubles
# ---------------------------------------------------------------------------

class InMemoryPendingDomainStore:
    """Mirrors PendingDomainStore, including the one-open-record-per-pair rule"""

    def __init__(self):
        self.records: Dict[int, PendingDomain] = {}
        self._ids = itertools.count(1)

    def _copy(self, record: Optional[PendingDomain]) -> Optional[PendingDomain]:
        return copy.deepcopy(record) if record is not None else None

    def _require(self, pending_domain_id: int) -> PendingDomain:
        record = self.records.get(pending_domain_id)
        if record is None:
            raise PendingDomainNotFoundError(pending_domain_id)
        return record

    def _open_record(self, order_id: str, domain_name: str) -> Optional[PendingDomain]:
        for record in self.records.values():
            if (record.order_id == order_id and record.domain_name == domain_name
                    and record.status in NON_TERMINAL_STATUSES):
                return record
        return None

    def _touch(self, record: PendingDomain):
        record.updated_at = utc_now()

    def add(self, **fields) -> PendingDomain:
        """Seed a record directly, bypassing intake"""
        now = utc_now()
        defaults = dict(
            id=next(self._ids), order_id='ORD-1', domain_name='example.com', user_id=1001,
            customer_id='cust-1', contact_id='contact-1', created_at=now, updated_at=now,
        )
        defaults.update(fields)
        record = PendingDomain(**defaults)
        self.records[record.id] = record
        return self._copy(record)

    async def upsert_pending(self, order_id, domain_name, attempt: RegistrationAttempt, reason, ambiguity=None):
        await asyncio.sleep(0)
        existing = self._open_record(order_id, domain_name)
        if existing is not None:
            existing.reason = reason
            if ambiguity is not None:
                existing.ambiguity = ambiguity
            self._touch(existing)
            return self._copy(existing), False

        now = utc_now()
        record = PendingDomain(
            id=next(self._ids), order_id=order_id, domain_name=domain_name,
            user_id=attempt.user_id, customer_id=attempt.customer_id, contact_id=attempt.contact_id,
            price=attempt.price, currency=attempt.currency, registration_period=attempt.registration_period,
            admin_contact_id=attempt.admin_contact_id, tech_contact_id=attempt.tech_contact_id,
            billing_contact_id=attempt.billing_contact_id, name_servers=attempt.name_servers,
            reason=reason, ambiguity=ambiguity, created_at=now, updated_at=now,
        )
        self.records[record.id] = record
        return self._copy(record), True

    async def get(self, pending_domain_id):
        return self._copy(self.records.get(pending_domain_id))

    async def get_many(self, pending_domain_ids):
        return [self._copy(self.records[i]) for i in sorted(set(pending_domain_ids)) if i in self.records]

    async def get_active(self, order_id, domain_name):
        return self._copy(self._open_record(order_id, domain_name))

    async def get_latest(self, order_id, domain_name):
        matches = [r for r in self.records.values() if r.order_id == order_id and r.domain_name == domain_name]
        return self._copy(max(matches, key=lambda r: r.id)) if matches else None

    async def transition(self, pending_domain_id, new_status, reason=None, **fields):
        target = coerce_status(new_status)
        unknown = set(fields) - set(TRANSITION_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")
        record = self._require(pending_domain_id)
        if not validate_transition(record.status, target, pending_domain_id):
            return TransitionResult(record=self._copy(record), changed=False)
        record.status = target
        if reason is not None:
            record.reason = reason
        for name, value in fields.items():
            setattr(record, name, value)
        self._touch(record)
        return TransitionResult(record=self._copy(record), changed=True)

    async def claim_for_processing(self, pending_domain_id):
        record = self.records.get(pending_domain_id)
        if record is None or record.status != PendingDomainStatus.PENDING:
            return None
        record.status = PendingDomainStatus.PROCESSING
        self._touch(record)
        return self._copy(record)

    async def release_claim(self, pending_domain_id, reason=None):
        record = self.records.get(pending_domain_id)
        if record is None or record.status != PendingDomainStatus.PROCESSING:
            return None
        record.status = PendingDomainStatus.PENDING
        if reason is not None:
            record.reason = reason
        self._touch(record)
        return self._copy(record)

    async def record_attempt(self, pending_domain_id):
        record = self._require(pending_domain_id)
        record.verification_attempts += 1
        record.last_verified_at = utc_now()
        self._touch(record)
        return self._copy(record)

    def _filtered(self, status=None, search=None) -> List[PendingDomain]:
        records = list(self.records.values())
        if status:
            target = coerce_status(status)
            records = [r for r in records if r.status == target]
        if search:
            needle = search.strip().lower()
            records = [r for r in records if needle in r.domain_name.lower() or needle in r.order_id.lower()]
        return records

    async def list_by_status(self, status=None, limit=20, offset=0, search=None):
        records = sorted(self._filtered(status, search), key=lambda r: (r.created_at, r.id), reverse=True)
        return [self._copy(r) for r in records[offset:offset + limit]]

    async def count(self, status=None, search=None):
        return len(self._filtered(status, search))

    async def status_summary(self):
        summary = {status.value: 0 for status in PendingDomainStatus}
        for record in self.records.values():
            summary[record.status.value] += 1
        return summary

    async def list_eligible(self, max_attempts, limit):
        eligible = [r for r in self.records.values()
                    if r.status == PendingDomainStatus.PENDING and r.verification_attempts < max_attempts]
        eligible.sort(key=lambda r: (r.last_verified_at is not None, r.last_verified_at or r.created_at, r.created_at))
        return [self._copy(r) for r in eligible[:limit]]

    async def flag_for_review(self, pending_domain_id, reason):
        record = self._require(pending_domain_id)
        record.needs_manual_review = True
        record.reason = reason
        self._touch(record)
        return self._copy(record)

    async def append_admin_note(self, pending_domain_id, note):
        record = self._require(pending_domain_id)
        record.admin_notes = f"{record.admin_notes}\n{note}" if record.admin_notes else note
        self._touch(record)
        return self._copy(record)

    async def update_admin_fields(self, pending_domain_id, admin_notes=None, reason=None):
        record = self._require(pending_domain_id)
        if admin_notes is not None:
            record.admin_notes = admin_notes
        if reason is not None:
            record.reason = reason
        self._touch(record)
        return self._copy(record)

    async def override_status(self, pending_domain_id, new_status, actor, reason):
        target = coerce_status(new_status)
        record = self._require(pending_domain_id)
        if not record.is_terminal:
            raise InvalidTransitionError(record.status.value, target.value, pending_domain_id)
        if target in NON_TERMINAL_STATUSES and self._open_record(record.order_id, record.domain_name):
            raise ReconciliationError(f"Cannot reopen pending domain {pending_domain_id}: another open record exists")
        note = format_admin_note(actor, f"manual override {record.status.value} -> {target.value}: {reason}")
        record.admin_notes = f"{record.admin_notes}\n{note}" if record.admin_notes else note
        record.status = target
        record.reason = reason
        self._touch(record)
        return self._copy(record)

    async def release_stale_claims(self, older_than_seconds):
        cutoff = utc_now() - timedelta(seconds=older_than_seconds)
        released = []
        for record in self.records.values():
            if record.status == PendingDomainStatus.PROCESSING and record.updated_at < cutoff:
                record.status = PendingDomainStatus.PENDING
                self._touch(record)
                released.append(self._copy(record))
        return released

    async def delete(self, pending_domain_id):
        return self.records.pop(pending_domain_id, None) is not None


class InMemoryOrderStore:
    """Mirrors OrderStore"""

    def __init__(self):
        self.orders: Dict[str, Order] = {}
        self.status_writes: List[tuple] = []

    def add(self, order_id='ORD-1', user_id=1001, domains=('example.com',), language_code=None, **entry_fields) -> Order:
        entries = [
            OrderDomainEntry(domain_name=name, position=position, **entry_fields)
            for position, name in enumerate(domains)
        ]
        self.orders[order_id] = Order(order_id=order_id, user_id=user_id, language_code=language_code,
                                      domains=entries, created_at=utc_now())
        return copy.deepcopy(self.orders[order_id])

    async def create_order(self, order_id, user_id, domains, currency='INR', language_code=None):
        if order_id not in self.orders:
            entries = [
                OrderDomainEntry(
                    domain_name=d['domain_name'], price=d.get('price', 0),
                    registration_period=int(d.get('registration_period', 1)),
                    status=OrderDomainStatus(d.get('status', 'processing')), position=position,
                )
                for position, d in enumerate(domains)
            ]
            self.orders[order_id] = Order(order_id=order_id, user_id=user_id, currency=currency,
                                          language_code=language_code, domains=entries, created_at=utc_now())
        return copy.deepcopy(self.orders[order_id])

    async def get_order(self, order_id):
        order = self.orders.get(order_id)
        return copy.deepcopy(order) if order is not None else None

    async def set_domain_status(self, order_id, domain_name, status, error=None, registrar_order_id=None,
                                registered_at=None, expires_at=None):
        order = self.orders.get(order_id)
        entry = order.get_entry(domain_name) if order else None
        if entry is None:
            return False
        entry.status = OrderDomainStatus(status)
        entry.error = error
        entry.registrar_order_id = registrar_order_id or entry.registrar_order_id
        entry.registered_at = registered_at or entry.registered_at
        entry.expires_at = expires_at or entry.expires_at
        entry.updated_at = utc_now()
        self.status_writes.append((order_id, domain_name, entry.status))
        return True

    async def claim_notification(self, order_id):
        order = self.orders.get(order_id)
        if order is None or order.notification_sent:
            return False
        order.notification_sent = True
        order.notification_sent_at = utc_now()
        return True

    async def release_notification(self, order_id):
        order = self.orders.get(order_id)
        if order is not None:
            order.notification_sent = False
            order.notification_sent_at = None

    async def list_orders_awaiting_notification(self, limit=50):
        due = []
        for order in sorted(self.orders.values(), key=lambda o: o.created_at):
            statuses = {entry.status for entry in order.domains}
            if (not order.notification_sent and OrderDomainStatus.REGISTERED in statuses
                    and OrderDomainStatus.PROCESSING not in statuses):
                due.append(order.order_id)
        return due[:limit]

    async def list_orders_with_failed_domains(self, limit=50):
        orders = [o for o in self.orders.values() if o.failed_domains]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return [copy.deepcopy(o) for o in orders[:limit]]


class FakeRegistrar:
    """Scripted registrar: availability per domain and a queue of registration responses"""

    def __init__(self):
        self.availability: Dict[str, object] = {}
        self.registration_responses: List[object] = []
        self.availability_calls: List[str] = []
        self.registration_calls: List[dict] = []
        self.closed = False

    def set_available(self, domain_name):
        self.availability[domain_name] = AvailabilityResult(domain_name, AvailabilityStatus.AVAILABLE, 'available')

    def set_taken(self, domain_name):
        self.availability[domain_name] = AvailabilityResult(domain_name, AvailabilityStatus.TAKEN, 'regthroughus')

    def set_unknown(self, domain_name, detail="registrar status unknown"):
        self.availability[domain_name] = AvailabilityResult(domain_name, AvailabilityStatus.UNKNOWN, None, detail)

    async def check_availability(self, domain_name):
        self.availability_calls.append(domain_name)
        await asyncio.sleep(0)
        result = self.availability.get(domain_name)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return AvailabilityResult(domain_name, AvailabilityStatus.UNKNOWN, None, "no scripted answer")
        return result

    async def register_domain(self, domain_name, years, customer_id, admin_contact_id, tech_contact_id,
                              billing_contact_id, nameservers=None):
        self.registration_calls.append({
            'domain_name': domain_name, 'years': years, 'customer_id': customer_id,
            'admin_contact_id': admin_contact_id, 'tech_contact_id': tech_contact_id,
            'billing_contact_id': billing_contact_id, 'nameservers': nameservers,
        })
        await asyncio.sleep(0)
        response = self.registration_responses.pop(0) if self.registration_responses else RegistrarResponse(
            200, {'status': 'Success', 'entityid': '9001'})
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        self.closed = True


class RecordingNotifier:
    """Collects completion notifications instead of sending them"""

    def __init__(self):
        self.sent: List[tuple] = []
        self.fail = False

    async def send_order_completed(self, order, resolution):
        if self.fail:
            return False
        self.sent.append((order.order_id, list(resolution.registered), list(resolution.failed)))
        return True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config():
    test_config = ReconciliationConfig()
    test_config.max_verification_attempts = 3
    test_config.batch_size = 50
    test_config.worker_count = 4
    test_config.rate_limit_per_second = 1000.0
    test_config.rate_limit_burst = 100
    test_config.processing_claim_timeout = 600
    return test_config


@pytest.fixture
def pending_store():
    return InMemoryPendingDomainStore()


@pytest.fixture
def order_store():
    return InMemoryOrderStore()


@pytest.fixture
def registrar():
    return FakeRegistrar()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def sync(order_store, notifier):
    return ReconciliationSync(order_store=order_store, notifier=notifier)


@pytest.fixture
def verifier(pending_store, registrar, sync, config):
    return DomainVerificationService(store=pending_store, registrar=registrar, sync=sync, config=config)


@pytest.fixture
def orchestrator(pending_store, order_store, registrar, sync, config):
    return ReconciliationOrchestrator(
        store=pending_store, order_store=order_store, registrar=registrar, sync=sync, config=config
    )


@pytest.fixture
def attempt():
    return RegistrationAttemptFactory()


@pytest.fixture
def attempt_factory():
    return RegistrationAttemptFactory


@pytest.fixture
def order_domain_factory():
    return OrderDomainFactory


@pytest.fixture
def locked_response():
    return RegistrarResponse(
        status_code=200,
        body={'status': 'ERROR', 'message': 'Order is locked for processing'},
    )


