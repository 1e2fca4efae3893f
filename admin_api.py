"""
Admin and order HTTP API
aiohttp server exposing pending-domain administration and the order-processing entry points
"""

import hmac
import json
import time
import logging
from typing import Any, Dict, List, Optional

from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

from reconciliation_config import get_reconciliation_config
from services.reconciliation_errors import (
    InvalidTransitionError, ManualRetryNotAllowedError, OrderNotFoundError,
    PendingDomainBusyError, PendingDomainNotFoundError, ReconciliationError, RegistrarTransportError
)
from services.reconciliation_models import RegistrationAttempt
from services.reconciliation_orchestrator import ReconciliationOrchestrator, get_reconciliation_orchestrator
from services.response_classifier import RegistrarResponse
from utils.environment import get_admin_api_host, get_admin_api_port, get_admin_api_token

logger = logging.getLogger(__name__)

# Successful requests are not worth an access log line each
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

ORCHESTRATOR_KEY = web.AppKey("orchestrator", ReconciliationOrchestrator)
TOKEN_KEY = web.AppKey("admin_token", str)

PUBLIC_PATHS = {'/', '/health', '/healthz'}

_admin_server: Optional[web.AppRunner] = None


def _error(status: int, message: str) -> Response:
    return web.json_response({'error': message}, status=status)


@web.middleware
async def auth_middleware(request: Request, handler):
    if request.path in PUBLIC_PATHS:
        return await handler(request)

    expected = request.app[TOKEN_KEY]
    received = request.headers.get('X-Admin-Token', '')
    if not expected or not received or not hmac.compare_digest(received, expected):
        logger.warning(f"🛡️ ADMIN API: Rejected {request.method} {request.path} - invalid admin token")
        return _error(401, 'Unauthorized')
    return await handler(request)


@web.middleware
async def error_middleware(request: Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except (PendingDomainNotFoundError, OrderNotFoundError) as e:
        return _error(404, str(e))
    except (InvalidTransitionError, ManualRetryNotAllowedError, PendingDomainBusyError) as e:
        return _error(409, str(e))
    except RegistrarTransportError as e:
        return _error(502, str(e))
    except ReconciliationError as e:
        return _error(409, str(e))
    except ValueError as e:
        return _error(400, str(e))
    except Exception as e:
        logger.error(f"❌ ADMIN API: {request.method} {request.path} failed: {e}", exc_info=True)
        return _error(500, 'Internal server error')


async def _json_body(request: Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except json.JSONDecodeError:
        raise ValueError("Request body must be valid JSON")
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _pending_domain_id(request: Request) -> int:
    raw_id = request.match_info['pending_domain_id']
    try:
        return int(raw_id)
    except ValueError:
        raise ValueError(f"Invalid pending domain id: {raw_id!r}")


def _parse_ids(raw_ids: Any) -> Optional[List[int]]:
    if raw_ids is None:
        return None
    if not isinstance(raw_ids, list):
        raise ValueError("ids must be a list of pending domain ids")
    try:
        return [int(i) for i in raw_ids]
    except (TypeError, ValueError):
        raise ValueError("ids must be a list of pending domain ids")


async def health_handler(request: Request) -> Response:
    config = get_reconciliation_config()
    last_report = request.app[ORCHESTRATOR_KEY].scheduler.last_report
    last_run = None
    if last_report:
        last_run = {key: value for key, value in last_report.items() if key != 'results'}
    return web.json_response({
        'status': 'healthy',
        'service': 'registrar_reconciliation',
        'timestamp': time.time(),
        'reconciliation_enabled': config.enabled,
        'last_verification_run': last_run,
    })


async def list_pending_domains_handler(request: Request) -> Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    query = request.query
    try:
        page = int(query.get('page', 1))
        per_page = int(query.get('per_page', query.get('perPage', 20)))
    except ValueError:
        raise ValueError("page and per_page must be integers")
    result = await orchestrator.list_pending_domains(
        status=query.get('status') or None,
        search=query.get('search') or None,
        page=page,
        per_page=per_page,
    )
    return web.json_response(result)


async def get_pending_domain_handler(request: Request) -> Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    record = await orchestrator.get_pending_domain(_pending_domain_id(request))
    return web.json_response(record.to_dict())


async def update_pending_domain_handler(request: Request) -> Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    data = await _json_body(request)
    if not any(key in data for key in ('status', 'adminNotes', 'reason')):
        raise ValueError("Nothing to update: provide status, adminNotes or reason")
    record = await orchestrator.update_pending_domain(
        _pending_domain_id(request),
        status=data.get('status'),
        admin_notes=data.get('adminNotes'),
        reason=data.get('reason'),
        actor=str(data.get('actor') or 'admin-api'),
    )
    return web.json_response(record.to_dict())


async def delete_pending_domain_handler(request: Request) -> Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    pending_domain_id = _pending_domain_id(request)
    await orchestrator.delete_pending_domain(pending_domain_id)
    return web.json_response({'deleted': pending_domain_id})


async def register_pending_domain_handler(request: Request) -> Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    data = await _json_body(request)
    result = await orchestrator.register_pending_domain(
        _pending_domain_id(request), actor=str(data.get('actor') or 'admin-api')
    )
    return web.json_response(result, status=409 if result['outcome'] == 'busy' else 200)


async def verify_pending_domains_handler(request: Request) -> Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    data = await _json_body(request)
    report = await orchestrator.verify_pending_domains(_parse_ids(data.get('ids')))
    return web.json_response(report)


async def failed_domains_handler(request: Request) -> Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    try:
        limit = int(request.query.get('limit', 50))
    except ValueError:
        raise ValueError("limit must be an integer")
    return web.json_response(await orchestrator.list_failed_domains(limit))


async def order_resolution_handler(request: Request) -> Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    resolution = await orchestrator.get_order_resolution(request.match_info['order_id'])
    return web.json_response(resolution.to_dict())


async def create_order_handler(request: Request) -> Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    data = await _json_body(request)
    order_id = data.get('orderId')
    user_id = data.get('userId')
    if not order_id or user_id is None:
        raise ValueError("orderId and userId are required")
    order = await orchestrator.create_order(
        str(order_id),
        int(user_id),
        data.get('domains') or [],
        currency=data.get('currency'),
        language_code=data.get('languageCode'),
    )
    return web.json_response({
        'orderId': order.order_id,
        'domains': [entry.to_dict() for entry in order.domains],
    }, status=201)


async def registration_attempt_handler(request: Request) -> Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    data = await _json_body(request)
    domain_name = data.get('domainName')
    raw_response = data.get('registrarResponse')
    if not domain_name or not isinstance(raw_response, dict):
        raise ValueError("domainName and registrarResponse are required")

    status_code = raw_response.get('statusCode')
    registrar_response = RegistrarResponse(
        status_code=int(status_code) if status_code is not None else None,
        body=raw_response.get('body'),
        transport_error=raw_response.get('transportError'),
    )
    attempt = RegistrationAttempt.from_dict(data['attempt']) if data.get('attempt') else None
    result = await orchestrator.record_registration_attempt(
        request.match_info['order_id'], domain_name, registrar_response, attempt
    )
    return web.json_response(result.to_dict())


def create_admin_app(
    orchestrator: Optional[ReconciliationOrchestrator] = None,
    admin_token: Optional[str] = None
) -> web.Application:
    app = web.Application(middlewares=[error_middleware, auth_middleware])
    app[ORCHESTRATOR_KEY] = orchestrator or get_reconciliation_orchestrator()
    app[TOKEN_KEY] = admin_token if admin_token is not None else get_admin_api_token()

    app.router.add_get('/', health_handler)
    app.router.add_get('/health', health_handler)
    app.router.add_get('/healthz', health_handler)

    app.router.add_get('/admin/pending-domains', list_pending_domains_handler)
    app.router.add_post('/admin/pending-domains/verify', verify_pending_domains_handler)
    app.router.add_get('/admin/pending-domains/{pending_domain_id}', get_pending_domain_handler)
    app.router.add_patch('/admin/pending-domains/{pending_domain_id}', update_pending_domain_handler)
    app.router.add_delete('/admin/pending-domains/{pending_domain_id}', delete_pending_domain_handler)
    app.router.add_post('/admin/pending-domains/{pending_domain_id}/register', register_pending_domain_handler)
    app.router.add_get('/admin/failed-domains', failed_domains_handler)

    app.router.add_post('/orders', create_order_handler)
    app.router.add_get('/orders/{order_id}/resolution', order_resolution_handler)
    app.router.add_post('/orders/{order_id}/registration-attempts', registration_attempt_handler)
    return app


async def start_admin_server(
    orchestrator: Optional[ReconciliationOrchestrator] = None,
    host: Optional[str] = None,
    port: Optional[int] = None
) -> web.AppRunner:
    """Start the aiohttp server in the running event loop"""
    global _admin_server

    host = host or get_admin_api_host()
    port = port or get_admin_api_port()
    runner = web.AppRunner(create_admin_app(orchestrator))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    _admin_server = runner
    logger.info(f"✅ ADMIN API: Listening on http://{host}:{port}")
    return runner


async def stop_admin_server():
    global _admin_server
    if _admin_server:
        await _admin_server.cleanup()
        _admin_server = None
    logger.info("✅ ADMIN API: Server stopped")
