"""
Data records shared by the reconciliation services
"""

from enum import Enum
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from services.pending_domain_states import PendingDomainStatus, TERMINAL_STATUSES, coerce_status
from services.response_classifier import AmbiguityKind, Classification

DEFAULT_PENDING_REASON = "Domain registration failed - likely due to insufficient funds"


class OrderDomainStatus(str, Enum):
    """Status of one domain entry inside an order"""
    REGISTERED = "registered"
    FAILED = "failed"
    PROCESSING = "processing"


class OrderOutcome(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _money(value: Any) -> float:
    if value is None:
        return 0.0
    return float(Decimal(str(value)))


def _pick(data: Dict[str, Any], *keys, default=None):
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass
class RegistrationAttempt:
    """Order-side details of one registration attempt, needed to re-register later"""
    user_id: int
    customer_id: str
    contact_id: str
    price: float = 0.0
    currency: str = "INR"
    registration_period: int = 1
    admin_contact_id: Optional[str] = None
    tech_contact_id: Optional[str] = None
    billing_contact_id: Optional[str] = None
    name_servers: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RegistrationAttempt':
        """Accept both camelCase API payloads and snake_case dicts"""
        user_id = _pick(data, 'user_id', 'userId')
        customer_id = _pick(data, 'customer_id', 'customerId')
        contact_id = _pick(data, 'contact_id', 'contactId')
        if user_id is None or customer_id is None or contact_id is None:
            raise ValueError("userId, customerId and contactId are required")

        period = int(_pick(data, 'registration_period', 'registrationPeriod', default=1))
        if period < 1:
            raise ValueError("registrationPeriod must be at least 1")

        name_servers = _pick(data, 'name_servers', 'nameServers')
        return cls(
            user_id=int(user_id),
            customer_id=str(customer_id),
            contact_id=str(contact_id),
            price=_money(_pick(data, 'price', default=0)),
            currency=str(_pick(data, 'currency', default='INR')),
            registration_period=period,
            admin_contact_id=_pick(data, 'admin_contact_id', 'adminContactId'),
            tech_contact_id=_pick(data, 'tech_contact_id', 'techContactId'),
            billing_contact_id=_pick(data, 'billing_contact_id', 'billingContactId'),
            name_servers=list(name_servers) if name_servers else None,
        )


@dataclass
class PendingDomain:
    """A domain whose registration outcome is not yet known"""
    id: int
    order_id: str
    domain_name: str
    user_id: int
    customer_id: str
    contact_id: str
    price: float = 0.0
    currency: str = "INR"
    registration_period: int = 1
    admin_contact_id: Optional[str] = None
    tech_contact_id: Optional[str] = None
    billing_contact_id: Optional[str] = None
    name_servers: Optional[List[str]] = None
    status: PendingDomainStatus = PendingDomainStatus.PENDING
    reason: str = DEFAULT_PENDING_REASON
    ambiguity: Optional[AmbiguityKind] = None
    verification_attempts: int = 0
    needs_manual_review: bool = False
    last_verified_at: Optional[datetime] = None
    registered_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    registrar_order_id: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def registrar_may_be_processing(self) -> bool:
        return self.ambiguity in (AmbiguityKind.IN_FLIGHT, AmbiguityKind.TRANSPORT)

    @property
    def admin_contact(self) -> str:
        return self.admin_contact_id or self.contact_id

    @property
    def tech_contact(self) -> str:
        return self.tech_contact_id or self.contact_id

    @property
    def billing_contact(self) -> str:
        return self.billing_contact_id or self.contact_id

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'PendingDomain':
        ambiguity = row.get('ambiguity')
        return cls(
            id=row['id'],
            order_id=row['order_id'],
            domain_name=row['domain_name'],
            user_id=int(row['user_id']),
            customer_id=str(row['customer_id']),
            contact_id=str(row['contact_id']),
            price=_money(row.get('price')),
            currency=row.get('currency') or 'INR',
            registration_period=int(row.get('registration_period') or 1),
            admin_contact_id=row.get('admin_contact_id'),
            tech_contact_id=row.get('tech_contact_id'),
            billing_contact_id=row.get('billing_contact_id'),
            name_servers=list(row['name_servers']) if row.get('name_servers') else None,
            status=coerce_status(row['status']),
            reason=row.get('reason') or DEFAULT_PENDING_REASON,
            ambiguity=AmbiguityKind(ambiguity) if ambiguity else None,
            verification_attempts=int(row.get('verification_attempts') or 0),
            needs_manual_review=bool(row.get('needs_manual_review')),
            last_verified_at=row.get('last_verified_at'),
            registered_at=row.get('registered_at'),
            expires_at=row.get('expires_at'),
            registrar_order_id=row.get('registrar_order_id'),
            admin_notes=row.get('admin_notes'),
            created_at=row.get('created_at'),
            updated_at=row.get('updated_at'),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Admin-facing JSON representation"""
        return {
            'id': self.id,
            'orderId': self.order_id,
            'domainName': self.domain_name,
            'price': self.price,
            'currency': self.currency,
            'registrationPeriod': self.registration_period,
            'userId': self.user_id,
            'customerId': self.customer_id,
            'contactId': self.contact_id,
            'adminContactId': self.admin_contact_id,
            'techContactId': self.tech_contact_id,
            'billingContactId': self.billing_contact_id,
            'nameServers': self.name_servers,
            'status': self.status.value,
            'reason': self.reason,
            'ambiguity': self.ambiguity.value if self.ambiguity else None,
            'verificationAttempts': self.verification_attempts,
            'needsManualReview': self.needs_manual_review,
            'lastVerifiedAt': _iso(self.last_verified_at),
            'registeredAt': _iso(self.registered_at),
            'expiresAt': _iso(self.expires_at),
            'registrarOrderId': self.registrar_order_id,
            'adminNotes': self.admin_notes,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }


@dataclass
class OrderDomainEntry:
    domain_name: str
    price: float = 0.0
    registration_period: int = 1
    status: OrderDomainStatus = OrderDomainStatus.PROCESSING
    error: Optional[str] = None
    registrar_order_id: Optional[str] = None
    registered_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    position: int = 0
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != OrderDomainStatus.PROCESSING

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'OrderDomainEntry':
        return cls(
            domain_name=row['domain_name'],
            price=_money(row.get('price')),
            registration_period=int(row.get('registration_period') or 1),
            status=OrderDomainStatus(row['status']),
            error=row.get('error'),
            registrar_order_id=row.get('registrar_order_id'),
            registered_at=row.get('registered_at'),
            expires_at=row.get('expires_at'),
            position=int(row.get('position') or 0),
            updated_at=row.get('updated_at'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domainName': self.domain_name,
            'price': self.price,
            'registrationPeriod': self.registration_period,
            'status': self.status.value,
            'error': self.error,
            'registrarOrderId': self.registrar_order_id,
            'registeredAt': _iso(self.registered_at),
            'expiresAt': _iso(self.expires_at),
        }


@dataclass
class Order:
    """Order aggregate as seen by the reconciliation engine"""
    order_id: str
    user_id: int
    currency: str = "INR"
    language_code: Optional[str] = None
    domains: List[OrderDomainEntry] = field(default_factory=list)
    notification_sent: bool = False
    notification_sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def successful_domains(self) -> List[OrderDomainEntry]:
        return [entry for entry in self.domains if entry.status == OrderDomainStatus.REGISTERED]

    @property
    def failed_domains(self) -> List[OrderDomainEntry]:
        return [entry for entry in self.domains if entry.status == OrderDomainStatus.FAILED]

    def get_entry(self, domain_name: str) -> Optional[OrderDomainEntry]:
        for entry in self.domains:
            if entry.domain_name == domain_name:
                return entry
        return None

    @classmethod
    def from_rows(cls, order_row: Dict[str, Any], entry_rows: List[Dict[str, Any]]) -> 'Order':
        entries = sorted((OrderDomainEntry.from_row(r) for r in entry_rows), key=lambda e: e.position)
        return cls(
            order_id=order_row['order_id'],
            user_id=int(order_row['user_id']),
            currency=order_row.get('currency') or 'INR',
            language_code=order_row.get('language_code'),
            domains=entries,
            notification_sent=bool(order_row.get('notification_sent')),
            notification_sent_at=order_row.get('notification_sent_at'),
            created_at=order_row.get('created_at'),
        )


@dataclass
class OrderResolution:
    """Derived view of an order: may it be shown to the customer as done?"""
    order_id: str
    all_resolved: bool
    outcome: OrderOutcome
    registered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    processing: List[str] = field(default_factory=list)
    notification_due: bool = False
    notification_sent: bool = False
    invoice_ready: bool = False
    domain_labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'orderId': self.order_id,
            'allResolved': self.all_resolved,
            'outcome': self.outcome.value,
            'registered': self.registered,
            'failed': self.failed,
            'processing': self.processing,
            'notificationDue': self.notification_due,
            'notificationSent': self.notification_sent,
            'invoiceReady': self.invoice_ready,
            'domains': [
                {'domainName': name, 'label': label}
                for name, label in self.domain_labels.items()
            ],
        }


@dataclass
class TransitionResult:
    record: PendingDomain
    changed: bool


@dataclass
class IntakeResult:
    """What the order-processing flow learns from submitting one registrar response"""
    classification: Classification
    pending_domain_id: Optional[int] = None
    created: bool = False
    entry_status: Optional[OrderDomainStatus] = None
    already_resolved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'classification': self.classification.to_dict(),
            'pendingDomainId': self.pending_domain_id,
            'created': self.created,
            'entryStatus': self.entry_status.value if self.entry_status else None,
            'alreadyResolved': self.already_resolved,
        }


@dataclass
class SyncResult:
    """Outcome of writing one resolution into the order aggregate"""
    order_found: bool
    entry_found: bool = True
    entry_status: Optional[OrderDomainStatus] = None
    notification_sent: bool = False
    resolution: Optional[OrderResolution] = None
    conflict: bool = False
