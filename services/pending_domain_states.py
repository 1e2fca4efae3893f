"""
Pending-domain lifecycle states and the transitions allowed between them
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional, Union

from services.reconciliation_errors import InvalidTransitionError


class PendingDomainStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES: FrozenSet[PendingDomainStatus] = frozenset({
    PendingDomainStatus.COMPLETED,
    PendingDomainStatus.FAILED,
})

NON_TERMINAL_STATUSES: FrozenSet[PendingDomainStatus] = frozenset({
    PendingDomainStatus.PENDING,
    PendingDomainStatus.PROCESSING,
})

# Completed and failed have no outgoing edges; corrections go through a manual override
ALLOWED_TRANSITIONS: Dict[PendingDomainStatus, FrozenSet[PendingDomainStatus]] = {
    PendingDomainStatus.PENDING: frozenset({
        PendingDomainStatus.PROCESSING,
        PendingDomainStatus.FAILED,
    }),
    PendingDomainStatus.PROCESSING: frozenset({
        PendingDomainStatus.COMPLETED,
        PendingDomainStatus.FAILED,
        PendingDomainStatus.PENDING,
    }),
    PendingDomainStatus.COMPLETED: frozenset(),
    PendingDomainStatus.FAILED: frozenset(),
}


def coerce_status(value: Union[str, PendingDomainStatus]) -> PendingDomainStatus:
    """Convert a stored or user-supplied status string into the enum"""
    if isinstance(value, PendingDomainStatus):
        return value
    try:
        return PendingDomainStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unknown pending domain status: {value!r}")


def is_terminal(status: Union[str, PendingDomainStatus]) -> bool:
    return coerce_status(status) in TERMINAL_STATUSES


def validate_transition(
    current: Union[str, PendingDomainStatus],
    new: Union[str, PendingDomainStatus],
    pending_domain_id: Optional[int] = None
) -> bool:
    """
    Check a status change against the state machine.

    Returns:
        True when the transition should be applied, False when it is a repeat of
        an already-applied terminal transition (a no-op)

    Raises:
        InvalidTransitionError: the transition is not allowed
    """
    current_status = coerce_status(current)
    new_status = coerce_status(new)

    if current_status == new_status and current_status in TERMINAL_STATUSES:
        return False

    if new_status not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidTransitionError(current_status.value, new_status.value, pending_domain_id)

    return True
