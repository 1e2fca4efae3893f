"""
ResellerClub HTTP API integration
Handles domain registration and exact-pair availability checks for reconciliation
"""

import os
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple, Type

import httpx
import idna

from reconciliation_config import get_reconciliation_config
from services.reconciliation_errors import RegistrarTransportError
from services.response_classifier import RegistrarResponse
from utils.environment import is_test_mode

logger = logging.getLogger(__name__)

PRODUCTION_API_URL = "https://httpapi.com"
TEST_API_URL = "https://test.httpapi.com"

# Public suffixes made of two labels; the registrar expects them as a single TLD
MULTI_LABEL_SUFFIXES = {
    'co.in', 'net.in', 'org.in', 'firm.in', 'gen.in', 'ind.in',
    'co.uk', 'org.uk', 'me.uk', 'ltd.uk', 'plc.uk',
    'com.au', 'net.au', 'org.au',
    'co.nz', 'net.nz', 'org.nz',
    'com.br', 'com.mx', 'co.za', 'com.sg', 'com.my',
    'com.cn', 'com.tw', 'com.hk', 'co.jp',
}

TAKEN_STATUSES = {'regthroughus', 'regthroughothers'}

# Registration is only retried when the request provably never left this process
REGISTRATION_RETRY_ERRORS: Tuple[Type[Exception], ...] = (
    httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout,
)
AVAILABILITY_RETRY_ERRORS: Tuple[Type[Exception], ...] = (
    httpx.TimeoutException, httpx.ConnectError, httpx.RemoteProtocolError, httpx.ReadError,
)
AVAILABILITY_RETRY_STATUSES: Set[int] = {429, 500, 502, 503, 504}


class AvailabilityStatus(Enum):
    AVAILABLE = "available"
    TAKEN = "taken"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class AvailabilityResult:
    """Availability of one exact (name, TLD) pair"""
    domain_name: str
    status: AvailabilityStatus
    raw_status: Optional[str] = None
    detail: str = ""


def split_domain(domain_name: str) -> Tuple[str, str]:
    """
    Split a domain into (base name, TLD) in IDNA ASCII form.

    Multi-label suffixes such as co.in stay whole: example.co.in -> ('example', 'co.in')

    Raises:
        ValueError: the name is not a valid domain
    """
    name = (domain_name or '').strip().lower().rstrip('.')
    if '.' not in name:
        raise ValueError(f"Domain must contain a name and a TLD: {domain_name!r}")
    try:
        ascii_name = idna.encode(name, uts46=True).decode('ascii')
    except idna.IDNAError as e:
        raise ValueError(f"Invalid domain name {domain_name!r}: {e}")

    labels = ascii_name.split('.')
    if len(labels) >= 3 and '.'.join(labels[-2:]) in MULTI_LABEL_SUFFIXES:
        return '.'.join(labels[:-2]), '.'.join(labels[-2:])
    return '.'.join(labels[:-1]), labels[-1]


class ResellerClubService:
    """ResellerClub API client with a persistent connection pool and transport-level retries"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        auth_userid: Optional[str] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.config = get_reconciliation_config()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        # SECURITY: Check TEST_MODE to prevent live credential usage during tests
        if is_test_mode():
            logger.info("🔒 TEST_MODE active - using mock ResellerClub configuration")
            self.base_url = base_url or TEST_API_URL
            self.auth_userid = auth_userid or 'test_reseller'
            self.api_key = api_key or 'test_api_key'
        else:
            self.base_url = base_url or os.getenv('RESELLERCLUB_API_URL', PRODUCTION_API_URL)
            self.auth_userid = auth_userid or os.getenv('RESELLERCLUB_API_ID')
            self.api_key = api_key or os.getenv('RESELLERCLUB_API_KEY')

        self.invoice_option = os.getenv('RESELLERCLUB_INVOICE_OPTION', 'NoInvoice')
        default_ns = os.getenv('RESELLERCLUB_DEFAULT_NAMESERVERS', '')
        self.default_nameservers = [ns.strip() for ns in default_ns.split(',') if ns.strip()]

    @property
    def is_configured(self) -> bool:
        return bool(self.auth_userid and self.api_key)

    def _init_client(self):
        """Initialize HTTP client with connection pooling and explicit timeouts"""
        limits = httpx.Limits(
            max_connections=20,
            max_keepalive_connections=10,
            keepalive_expiry=30.0
        )
        timeout = httpx.Timeout(self.config.registrar_timeout, connect=5.0, pool=5.0)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            limits=limits,
            timeout=timeout,
            transport=self._transport,
            headers={'User-Agent': f"{os.getenv('PLATFORM_NAME', 'DomainReconciler')}/1.0"},
        )
        logger.info(f"🚀 Initialized ResellerClub HTTP client ({self.base_url}, "
                    f"{self.config.registrar_timeout}s timeout)")

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._init_client()
        return self._client

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _auth_params(self) -> Dict[str, Any]:
        if not self.is_configured:
            raise RegistrarTransportError("ResellerClub credentials are not configured")
        return {'auth-userid': self.auth_userid, 'api-key': self.api_key}

    async def _make_request_with_retry(
        self,
        method: str,
        path: str,
        params: Dict[str, Any],
        retry_errors: Tuple[Type[Exception], ...],
        retry_statuses: Optional[Set[int]] = None
    ) -> httpx.Response:
        """Make an HTTP request, retrying only the given transport errors and status codes"""
        max_retries = self.config.registrar_max_retries
        base_delay = self.config.registrar_backoff_base
        retry_statuses = retry_statuses or set()

        for attempt in range(max_retries):
            client = await self._ensure_client()
            attempt_num = attempt + 1
            try:
                response = await client.request(method, path, params={**params, **self._auth_params()})
            except retry_errors as e:
                if attempt_num >= max_retries:
                    logger.error(f"❌ REGISTRAR: {method} {path} failed after {max_retries} attempts: {e!r}")
                    raise
                delay = base_delay * (2 ** attempt)
                logger.warning(f"⚠️ REGISTRAR: {type(e).__name__} on {path} "
                               f"(attempt {attempt_num}/{max_retries}), retrying in {delay}s")
                await asyncio.sleep(delay)
                continue

            if response.status_code in retry_statuses and attempt_num < max_retries:
                delay = base_delay * (2 ** attempt)
                logger.warning(f"⚠️ REGISTRAR: HTTP {response.status_code} on {path} "
                               f"(attempt {attempt_num}/{max_retries}), retrying in {delay}s")
                await asyncio.sleep(delay)
                continue
            return response

        raise RegistrarTransportError(f"{method} {path} failed after {max_retries} attempts")

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    async def register_domain(
        self,
        domain_name: str,
        years: int,
        customer_id: str,
        admin_contact_id: str,
        tech_contact_id: str,
        billing_contact_id: str,
        nameservers: Optional[List[str]] = None
    ) -> RegistrarResponse:
        """
        Submit one registration order.

        The raw response is returned unclassified. Failures after the request may have reached
        the registrar come back as a RegistrarResponse with transport_error set, never raised.

        Raises:
            RegistrarTransportError: the request was never delivered to the registrar
        """
        params = {
            'domain-name': domain_name,
            'years': years,
            'customer-id': customer_id,
            'ns': nameservers or self.default_nameservers,
            'reg-contact-id': admin_contact_id,
            'admin-contact-id': admin_contact_id,
            'tech-contact-id': tech_contact_id,
            'billing-contact-id': billing_contact_id,
            'invoice-option': self.invoice_option,
        }
        logger.info(f"🚀 REGISTRAR: Registering {domain_name} for {years} year(s), customer {customer_id}")

        try:
            response = await self._make_request_with_retry(
                'POST', '/api/domains/register.json', params, REGISTRATION_RETRY_ERRORS
            )
        except REGISTRATION_RETRY_ERRORS as e:
            raise RegistrarTransportError(f"Registrar unreachable for {domain_name}: {e!r}")
        except httpx.HTTPError as e:
            logger.warning(f"⚠️ REGISTRAR: Registration of {domain_name} interrupted after send: {e!r}")
            return RegistrarResponse(status_code=None, body=None, transport_error=f"{type(e).__name__}: {e}")

        body = self._parse_body(response)
        logger.info(f"📨 REGISTRAR: Registration response for {domain_name}: HTTP {response.status_code}")
        return RegistrarResponse(status_code=response.status_code, body=body)

    async def check_availability(self, domain_name: str) -> AvailabilityResult:
        """
        Check availability of exactly this (name, TLD) pair.

        Raises:
            RegistrarTransportError: the registrar could not be reached after retries
        """
        try:
            base, tld = split_domain(domain_name)
        except ValueError as e:
            return AvailabilityResult(domain_name, AvailabilityStatus.UNKNOWN, detail=str(e))

        full_name = f"{base}.{tld}"
        try:
            response = await self._make_request_with_retry(
                'GET', '/api/domains/available.json',
                {'domain-name': base, 'tlds': tld},
                AVAILABILITY_RETRY_ERRORS, AVAILABILITY_RETRY_STATUSES
            )
        except httpx.HTTPError as e:
            raise RegistrarTransportError(f"Availability check for {full_name} failed: {e!r}")

        if response.status_code in AVAILABILITY_RETRY_STATUSES:
            raise RegistrarTransportError(
                f"Availability check for {full_name} failed with HTTP {response.status_code}",
                status_code=response.status_code
            )

        body = self._parse_body(response)
        if response.status_code != 200 or not isinstance(body, dict):
            logger.warning(f"⚠️ REGISTRAR: Unusable availability response for {full_name}: "
                           f"HTTP {response.status_code}")
            return AvailabilityResult(full_name, AvailabilityStatus.UNKNOWN,
                                      detail=f"HTTP {response.status_code}: {str(body)[:200]}")

        entry = body.get(full_name)
        if entry is None:
            entry = next((v for k, v in body.items() if str(k).lower() == full_name), None)
        if not isinstance(entry, dict):
            return AvailabilityResult(full_name, AvailabilityStatus.UNKNOWN,
                                      detail="No exact match for the domain in the registrar response")

        raw_status = str(entry.get('status', '')).strip().lower()
        if raw_status == 'available':
            status = AvailabilityStatus.AVAILABLE
        elif raw_status in TAKEN_STATUSES:
            status = AvailabilityStatus.TAKEN
        else:
            status = AvailabilityStatus.UNKNOWN

        logger.info(f"🔍 REGISTRAR: {full_name} availability: {raw_status or 'missing'} -> {status.value}")
        return AvailabilityResult(full_name, status, raw_status=raw_status or None,
                                  detail=str(entry.get('message') or entry.get('error') or ''))


_resellerclub_service: Optional[ResellerClubService] = None


def get_resellerclub_service() -> ResellerClubService:
    """Get the global ResellerClub service instance"""
    global _resellerclub_service
    if _resellerclub_service is None:
        _resellerclub_service = ResellerClubService()
    return _resellerclub_service
