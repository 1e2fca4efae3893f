"""
Admin and order HTTP API tests
Runs the aiohttp application against in-memory stores
"""

import pytest
from aiohttp.test_utils import TestClient, TestServer
from unittest.mock import AsyncMock, patch

from admin_api import create_admin_app
from services.pending_domain_states import PendingDomainStatus
from services.reconciliation_models import OrderDomainStatus

TOKEN = 'test-admin-token'
HEADERS = {'X-Admin-Token': TOKEN}


@pytest.fixture
async def client(orchestrator):
    app = create_admin_app(orchestrator, admin_token=TOKEN)
    async with TestClient(TestServer(app)) as test_client:
        yield test_client


@pytest.mark.asyncio
class TestAuthentication:

    async def test_health_is_public(self, client):
        response = await client.get('/health')

        assert response.status == 200
        data = await response.json()
        assert data['status'] == 'healthy'
        assert data['last_verification_run'] is None

    async def test_health_reports_last_verification_run(self, client, orchestrator):
        await orchestrator.verify_pending_domains([])

        data = await (await client.get('/health')).json()

        assert data['last_verification_run']['mode'] == 'admin'
        assert 'results' not in data['last_verification_run']

    async def test_missing_token(self, client):
        response = await client.get('/admin/pending-domains')

        assert response.status == 401

    async def test_wrong_token(self, client):
        response = await client.get('/admin/pending-domains', headers={'X-Admin-Token': 'nope'})

        assert response.status == 401

    async def test_empty_configured_token_rejects_everything(self, orchestrator):
        app = create_admin_app(orchestrator, admin_token='')
        async with TestClient(TestServer(app)) as test_client:
            response = await test_client.get('/admin/pending-domains', headers={'X-Admin-Token': ''})

        assert response.status == 401


@pytest.mark.asyncio
class TestPendingDomainEndpoints:

    async def test_list(self, client, pending_store):
        pending_store.add(domain_name='a.com')
        pending_store.add(domain_name='b.com', status=PendingDomainStatus.FAILED)

        response = await client.get('/admin/pending-domains', params={'status': 'pending'}, headers=HEADERS)
        data = await response.json()

        assert response.status == 200
        assert data['total'] == 1
        assert data['items'][0]['domainName'] == 'a.com'
        assert data['summary']['failed'] == 1

    async def test_list_rejects_unknown_status(self, client):
        response = await client.get('/admin/pending-domains', params={'status': 'lost'}, headers=HEADERS)

        assert response.status == 400

    async def test_list_rejects_non_numeric_page(self, client):
        response = await client.get('/admin/pending-domains', params={'page': 'two'}, headers=HEADERS)

        assert response.status == 400

    async def test_get_and_not_found(self, client, pending_store):
        record = pending_store.add()

        found = await client.get(f"/admin/pending-domains/{record.id}", headers=HEADERS)
        missing = await client.get('/admin/pending-domains/999', headers=HEADERS)
        invalid = await client.get('/admin/pending-domains/abc', headers=HEADERS)

        assert found.status == 200
        assert (await found.json())['id'] == record.id
        assert missing.status == 404
        assert invalid.status == 400

    async def test_patch_status(self, client, pending_store, order_store):
        order_store.add(order_id='ORD-1', domains=('example.com',))
        record = pending_store.add()

        response = await client.patch(
            f"/admin/pending-domains/{record.id}",
            json={'status': 'failed', 'reason': 'registrar confirmed rejection', 'actor': 'ops'},
            headers=HEADERS,
        )
        data = await response.json()

        assert response.status == 200
        assert data['status'] == 'failed'
        assert data['reason'] == 'registrar confirmed rejection'

    async def test_patch_forbidden_transition_is_conflict(self, client, pending_store):
        record = pending_store.add()

        response = await client.patch(f"/admin/pending-domains/{record.id}", json={'status': 'pending'},
                                      headers=HEADERS)

        assert response.status == 409

    async def test_patch_record_being_processed_is_conflict(self, client, pending_store):
        record = pending_store.add(status=PendingDomainStatus.PROCESSING)

        response = await client.patch(f"/admin/pending-domains/{record.id}", json={'status': 'failed'},
                                      headers=HEADERS)

        assert response.status == 409
        assert 'being processed' in (await response.json())['error']
        assert pending_store.records[record.id].status == PendingDomainStatus.PROCESSING

    async def test_patch_terminal_override(self, client, pending_store):
        record = pending_store.add(status=PendingDomainStatus.COMPLETED)

        with patch('services.reconciliation_orchestrator.send_warning_alert', new_callable=AsyncMock):
            response = await client.patch(
                f"/admin/pending-domains/{record.id}",
                json={'status': 'failed', 'reason': 'registered to another reseller'},
                headers=HEADERS,
            )

        assert response.status == 200
        assert pending_store.records[record.id].status == PendingDomainStatus.FAILED

    async def test_patch_without_fields(self, client, pending_store):
        record = pending_store.add()

        response = await client.patch(f"/admin/pending-domains/{record.id}", json={}, headers=HEADERS)

        assert response.status == 400

    async def test_patch_invalid_json(self, client, pending_store):
        record = pending_store.add()

        response = await client.patch(f"/admin/pending-domains/{record.id}", data='not json',
                                      headers={**HEADERS, 'Content-Type': 'application/json'})

        assert response.status == 400

    async def test_delete(self, client, pending_store):
        record = pending_store.add()

        response = await client.delete(f"/admin/pending-domains/{record.id}", headers=HEADERS)
        again = await client.delete(f"/admin/pending-domains/{record.id}", headers=HEADERS)

        assert response.status == 200
        assert (await response.json()) == {'deleted': record.id}
        assert again.status == 404

    async def test_register(self, client, pending_store, registrar):
        record = pending_store.add()

        response = await client.post(f"/admin/pending-domains/{record.id}/register", headers=HEADERS)
        data = await response.json()

        assert response.status == 200
        assert data['outcome'] == 'completed'
        assert data['pendingDomain']['status'] == 'completed'

    async def test_register_completed_is_conflict(self, client, pending_store):
        record = pending_store.add(status=PendingDomainStatus.COMPLETED)

        response = await client.post(f"/admin/pending-domains/{record.id}/register", headers=HEADERS)

        assert response.status == 409

    async def test_register_busy_is_conflict(self, client, pending_store):
        record = pending_store.add(status=PendingDomainStatus.PROCESSING)

        response = await client.post(f"/admin/pending-domains/{record.id}/register", headers=HEADERS)

        assert response.status == 409
        assert (await response.json())['outcome'] == 'busy'

    async def test_verify(self, client, pending_store, registrar):
        record = pending_store.add()
        registrar.set_unknown('example.com')

        response = await client.post('/admin/pending-domains/verify', json={'ids': [record.id]}, headers=HEADERS)
        data = await response.json()

        assert response.status == 200
        assert data['mode'] == 'admin'
        assert data['inconclusive'] == 1

    async def test_verify_rejects_bad_ids(self, client):
        response = await client.post('/admin/pending-domains/verify', json={'ids': 'all'}, headers=HEADERS)

        assert response.status == 400


@pytest.mark.asyncio
class TestOrderEndpoints:

    async def test_order_flow(self, client, notifier):
        created = await client.post('/orders', json={
            'orderId': 'ORD-7', 'userId': 42,
            'domains': [{'domainName': 'a.com'}, {'domainName': 'b.io'}],
        }, headers=HEADERS)
        assert created.status == 201

        attempt = {'userId': 42, 'customerId': 'cust-42', 'contactId': 'contact-42'}
        success = await client.post('/orders/ORD-7/registration-attempts', json={
            'domainName': 'a.com',
            'registrarResponse': {'statusCode': 200, 'body': {'status': 'Success', 'entityid': '1'}},
        }, headers=HEADERS)
        locked = await client.post('/orders/ORD-7/registration-attempts', json={
            'domainName': 'b.io',
            'registrarResponse': {'statusCode': 200,
                                  'body': {'status': 'ERROR', 'message': 'Order is locked for processing'}},
            'attempt': attempt,
        }, headers=HEADERS)

        assert (await success.json())['entryStatus'] == 'registered'
        locked_data = await locked.json()
        assert locked_data['classification']['outcome'] == 'ambiguous_pending'
        assert locked_data['pendingDomainId'] is not None

        resolution = await client.get('/orders/ORD-7/resolution', headers=HEADERS)
        data = await resolution.json()
        assert data['allResolved'] is False
        assert data['registered'] == ['a.com']
        assert data['processing'] == ['b.io']
        assert notifier.sent == []

    async def test_transport_error_attempt(self, client, order_store):
        order_store.add(order_id='ORD-8', domains=('a.com',))

        response = await client.post('/orders/ORD-8/registration-attempts', json={
            'domainName': 'a.com',
            'registrarResponse': {'transportError': 'ReadTimeout: timed out'},
            'attempt': {'userId': 1, 'customerId': 'c', 'contactId': 'k'},
        }, headers=HEADERS)

        assert response.status == 200
        assert (await response.json())['classification']['ambiguity'] == 'transport'

    async def test_ambiguous_attempt_without_details(self, client, order_store):
        order_store.add(order_id='ORD-8', domains=('a.com',))

        response = await client.post('/orders/ORD-8/registration-attempts', json={
            'domainName': 'a.com',
            'registrarResponse': {'statusCode': 200, 'body': {'status': 'ERROR', 'message': 'Order is locked'}},
        }, headers=HEADERS)

        assert response.status == 400

    async def test_missing_fields(self, client):
        response = await client.post('/orders', json={'domains': []}, headers=HEADERS)

        assert response.status == 400

    async def test_unknown_order_resolution(self, client):
        response = await client.get('/orders/nope/resolution', headers=HEADERS)

        assert response.status == 404

    async def test_late_response_for_resolved_domain(self, client, order_store):
        order_store.add(order_id='ORD-9', domains=('a.com',), status=OrderDomainStatus.REGISTERED)

        response = await client.post('/orders/ORD-9/registration-attempts', json={
            'domainName': 'a.com',
            'registrarResponse': {'statusCode': 200,
                                  'body': {'status': 'ERROR', 'message': 'Domain already exists'}},
        }, headers=HEADERS)

        assert response.status == 200
        data = await response.json()
        assert data['alreadyResolved'] is True
        assert data['entryStatus'] == 'registered'


@pytest.mark.asyncio
class TestFailedDomainsEndpoint:

    async def test_lists_failed_registrations(self, client, order_store):
        order_store.add(order_id='ORD-1', domains=('a.com', 'b.io'))
        order_store.orders['ORD-1'].domains[0].status = OrderDomainStatus.REGISTERED
        order_store.orders['ORD-1'].domains[1].status = OrderDomainStatus.FAILED
        order_store.orders['ORD-1'].domains[1].error = 'Invalid domain name'
        order_store.add(order_id='ORD-2', domains=('c.com',), status=OrderDomainStatus.REGISTERED)

        response = await client.get('/admin/failed-domains', headers=HEADERS)

        assert response.status == 200
        data = await response.json()
        assert [item['orderId'] for item in data['items']] == ['ORD-1']
        assert data['items'][0]['failedDomains'][0]['error'] == 'Invalid domain name'
        assert data['items'][0]['successfulDomains'] == ['a.com']
        assert data['summary']['totalFailedDomains'] == 1

    async def test_requires_token(self, client):
        response = await client.get('/admin/failed-domains')

        assert response.status == 401

    async def test_rejects_non_numeric_limit(self, client):
        response = await client.get('/admin/failed-domains', params={'limit': 'all'}, headers=HEADERS)

        assert response.status == 400
