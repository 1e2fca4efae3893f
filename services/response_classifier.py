"""
Registrar Response Classifier - single place where raw registration responses become outcomes

The registrar is known to answer with success HTTP codes carrying failure payloads and with
messages that are neither success nor failure ("order locked for processing", "already exists").
Every response is reduced to one of three outcomes:

- SUCCESS: explicit success marker and no error-shaped text anywhere in the body
- HARD_FAILURE: explicit rejection with no sign the registrar may still act on the order
- AMBIGUOUS_PENDING: everything else

Conservative bias: when a response could be read either as a hard failure or as ambiguous,
it is ambiguous. Telling a customer a registered domain failed is the worse mistake.
"""

import re
import json
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500


class RegistrationOutcome(Enum):
    """Closed set of classification outcomes"""
    SUCCESS = "success"
    HARD_FAILURE = "hard_failure"
    AMBIGUOUS_PENDING = "ambiguous_pending"


class AmbiguityKind(Enum):
    """Why an ambiguous response could not be decided"""
    IN_FLIGHT = "in_flight"
    ALREADY_EXISTS = "already_exists"
    ERROR_PAYLOAD = "error_payload"
    TRANSPORT = "transport"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class RegistrarResponse:
    """Raw outcome of one registrar call as seen at the HTTP layer"""
    status_code: Optional[int]
    body: Any = None
    transport_error: Optional[str] = None


@dataclass(frozen=True)
class Classification:
    """Result of classifying one registration response"""
    outcome: RegistrationOutcome
    reason: str
    ambiguity: Optional[AmbiguityKind] = None
    registrar_order_id: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.outcome is RegistrationOutcome.SUCCESS

    @property
    def is_hard_failure(self) -> bool:
        return self.outcome is RegistrationOutcome.HARD_FAILURE

    @property
    def is_ambiguous(self) -> bool:
        return self.outcome is RegistrationOutcome.AMBIGUOUS_PENDING

    @property
    def registrar_may_be_processing(self) -> bool:
        """True when the registrar may still complete the original order on its own"""
        return self.ambiguity in (AmbiguityKind.IN_FLIGHT, AmbiguityKind.TRANSPORT)

    def to_dict(self):
        return {
            'outcome': self.outcome.value,
            'reason': self.reason,
            'ambiguity': self.ambiguity.value if self.ambiguity else None,
            'registrarOrderId': self.registrar_order_id,
        }


# ====================================================================
# MARKER PATTERNS
# ====================================================================

IN_FLIGHT_PATTERNS = [
    r"locked for processing",
    r"order (is )?locked",
    r"currently (being )?processed",
    r"is being processed",
    r"(is )?in progress",
    r"pending (approval|processing|execution|completion)",
    r"queued for processing",
]

ALREADY_EXISTS_PATTERNS = [
    r"already exists",
    r"already registered",
    r"already (been )?(booked|taken|in use)",
    r"duplicate (order|request|submission)",
]

HARD_FAILURE_PATTERNS = [
    r"invalid domain",
    r"domain name is (invalid|not valid)",
    r"not a valid domain",
    r"invalid (tld|extension)",
    r"(tld|extension) (is )?not supported",
    r"unsupported (tld|extension)",
    r"premium domain",
    r"is a premium",
    r"reserved (domain|name)",
    r"restricted (domain|name|tld)",
    r"insufficient (funds|balance|credit)",
    r"payment (declined|rejected|failed)",
    r"authentication failed",
    r"invalid (api[- ]?key|credentials|auth)",
]

ERROR_SHAPED_PATTERN = re.compile(
    r"\b(error|errors|failed|failure|fail|exception|unable|could not|cannot|can't|denied|rejected|invalid)\b"
)

# Domain-like tokens are removed before scanning so a name like error-pages.com is not read as an error
DOMAIN_TOKEN_PATTERN = re.compile(r"\b[\w-]+(?:\.[\w-]+)+\b")

SUCCESS_STATUS_VALUES = {'success', 'successful', 'ok', 'completed'}
ERROR_STATUS_VALUES = {'error', 'failed', 'failure', 'fail'}

STATUS_KEYS = ('status', 'actionstatus', 'result')
MESSAGE_KEYS = ('message', 'msg', 'error', 'description', 'desc', 'actionstatusdesc', 'reason', 'details')
ORDER_ID_KEYS = ('entityid', 'orderid', 'order_id', 'order-id')

_compiled = {
    'in_flight': [re.compile(p) for p in IN_FLIGHT_PATTERNS],
    'already_exists': [re.compile(p) for p in ALREADY_EXISTS_PATTERNS],
    'hard': [re.compile(p) for p in HARD_FAILURE_PATTERNS],
}


# ====================================================================
# BODY INSPECTION HELPERS
# ====================================================================

def _normalize_body(body: Any) -> Any:
    if isinstance(body, bytes):
        body = body.decode('utf-8', errors='replace')
    if isinstance(body, str):
        stripped = body.strip()
        if stripped.startswith('{') or stripped.startswith('['):
            try:
                return json.loads(stripped)
            except ValueError:
                return body
    return body


def _iter_strings(value: Any, depth: int = 0) -> Iterable[str]:
    if depth > 5 or value is None:
        return
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from _iter_strings(item, depth + 1)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_strings(item, depth + 1)
    elif isinstance(value, (int, float, bool)):
        return
    else:
        yield str(value)


def _iter_dicts(value: Any, depth: int = 0) -> Iterable[dict]:
    if depth > 5:
        return
    if isinstance(value, dict):
        yield value
        for item in value.values():
            yield from _iter_dicts(item, depth + 1)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_dicts(item, depth + 1)


def _status_values(body: Any) -> List[str]:
    values = []
    for data in _iter_dicts(body):
        for key in STATUS_KEYS:
            value = data.get(key)
            if isinstance(value, str):
                values.append(value.strip().lower())
    return values


def _scan_text(body: Any) -> str:
    text = ' '.join(_iter_strings(body)).lower()
    return DOMAIN_TOKEN_PATTERN.sub(' ', text)


def _matches(kind: str, text: str) -> bool:
    return any(pattern.search(text) for pattern in _compiled[kind])


def _extract_reason(body: Any) -> str:
    for data in _iter_dicts(body):
        for key in MESSAGE_KEYS:
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            if isinstance(value, list) and value:
                return '; '.join(str(v) for v in value)
    if isinstance(body, str) and body.strip():
        return body.strip()
    for data in _iter_dicts(body):
        for key in STATUS_KEYS:
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return ''


def _extract_order_id(body: Any) -> Optional[str]:
    for data in _iter_dicts(body):
        for key in ORDER_ID_KEYS:
            value = data.get(key)
            if value not in (None, ''):
                return str(value)
    return None


def _truncate(reason: str) -> str:
    reason = ' '.join(reason.split())
    if len(reason) > MAX_REASON_LENGTH:
        return reason[:MAX_REASON_LENGTH - 3] + '...'
    return reason


# ====================================================================
# CLASSIFIER
# ====================================================================

def classify_registration_response(
    status_code: Optional[int],
    body: Any = None,
    transport_error: Optional[str] = None
) -> Classification:
    """
    Classify one raw registrar registration response.

    Args:
        status_code: HTTP status code, None when no response was received
        body: Parsed JSON, raw text or bytes returned by the registrar
        transport_error: Description of a transport failure (timeout, connection reset)

    Returns:
        Classification with outcome, admin-facing reason and ambiguity kind
    """
    body = _normalize_body(body)
    text = _scan_text(body)
    message = _extract_reason(body)
    order_id = _extract_order_id(body)

    def ambiguous(kind: AmbiguityKind, fallback: str) -> Classification:
        return Classification(
            outcome=RegistrationOutcome.AMBIGUOUS_PENDING,
            reason=_truncate(message or fallback),
            ambiguity=kind,
            registrar_order_id=order_id,
        )

    if status_code is None and transport_error:
        return Classification(
            outcome=RegistrationOutcome.AMBIGUOUS_PENDING,
            reason=_truncate(f"Registrar call did not complete: {transport_error}"),
            ambiguity=AmbiguityKind.TRANSPORT,
        )

    if _matches('in_flight', text):
        return ambiguous(AmbiguityKind.IN_FLIGHT, "Registrar reports the order is still being processed")

    if _matches('already_exists', text):
        return ambiguous(AmbiguityKind.ALREADY_EXISTS, "Registrar reports the domain already exists")

    if _matches('hard', text):
        return Classification(
            outcome=RegistrationOutcome.HARD_FAILURE,
            reason=_truncate(message or "Registrar rejected the registration"),
            registrar_order_id=order_id,
        )

    statuses = _status_values(body)
    explicit_success = any(value in SUCCESS_STATUS_VALUES for value in statuses)
    explicit_error = any(value in ERROR_STATUS_VALUES for value in statuses)
    error_shaped = explicit_error or bool(ERROR_SHAPED_PATTERN.search(text))

    if explicit_success and not error_shaped:
        return Classification(
            outcome=RegistrationOutcome.SUCCESS,
            reason=_truncate(message or "Domain registered"),
            registrar_order_id=order_id,
        )

    if status_code in (401, 403):
        return Classification(
            outcome=RegistrationOutcome.HARD_FAILURE,
            reason=_truncate(message or f"Registrar rejected credentials (HTTP {status_code})"),
            registrar_order_id=order_id,
        )

    if status_code is not None and (status_code >= 500 or status_code == 408):
        return ambiguous(AmbiguityKind.TRANSPORT, f"Registrar server error (HTTP {status_code})")

    if status_code == 409:
        return ambiguous(AmbiguityKind.ALREADY_EXISTS, "Registrar reported a conflict (HTTP 409)")

    if error_shaped:
        return ambiguous(AmbiguityKind.ERROR_PAYLOAD, "Registrar returned an error payload")

    return ambiguous(AmbiguityKind.UNRECOGNIZED, f"Unrecognized registrar response (HTTP {status_code})")


def classify_response(response: RegistrarResponse) -> Classification:
    """Classify a RegistrarResponse produced by the registrar client"""
    classification = classify_registration_response(
        response.status_code, response.body, response.transport_error
    )
    logger.debug(f"🔎 CLASSIFIER: HTTP {response.status_code} -> {classification.outcome.value} ({classification.reason})")
    return classification
