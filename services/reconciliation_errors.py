"""
Exception types raised by the reconciliation engine
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base exception for reconciliation processing errors"""
    pass


class InvalidTransitionError(ReconciliationError):
    """Raised when a pending-domain status change is not allowed by the state machine"""

    def __init__(self, current_status: str, new_status: str, pending_domain_id: Optional[int] = None):
        self.current_status = current_status
        self.new_status = new_status
        self.pending_domain_id = pending_domain_id
        target = f" for pending domain {pending_domain_id}" if pending_domain_id is not None else ""
        super().__init__(f"Transition {current_status} -> {new_status} is not allowed{target}")


class PendingDomainNotFoundError(ReconciliationError):
    """Raised when a pending-domain record does not exist"""

    def __init__(self, pending_domain_id: int):
        self.pending_domain_id = pending_domain_id
        super().__init__(f"Pending domain {pending_domain_id} not found")


class ManualRetryNotAllowedError(ReconciliationError):
    """Raised when a manual registration is requested for a completed record"""
    pass


class OrderNotFoundError(ReconciliationError):
    """Raised when an order aggregate does not exist"""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class RegistrarTransportError(ReconciliationError):
    """Raised when the registrar could not be reached after all HTTP-level retries"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PendingDomainBusyError(ReconciliationError):
    """Raised when an admin status change targets a record a processor currently holds"""

    def __init__(self, pending_domain_id: int):
        self.pending_domain_id = pending_domain_id
        super().__init__(f"Pending domain {pending_domain_id} is being processed - retry later")
