"""
Telegram admin command tests
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from admin_handlers import (
    close_pending_command, failed_domains_command, pending_command, register_pending_command,
    verify_pending_command
)
from services.pending_domain_states import PendingDomainStatus
from services.reconciliation_models import OrderDomainStatus

ADMIN_ID = 4242


@pytest.fixture(autouse=True)
def admin_env(monkeypatch):
    monkeypatch.setenv('ADMIN_USER_ID', str(ADMIN_ID))


def make_update(user_id=ADMIN_ID, language_code='en'):
    update = MagicMock()
    update.effective_user.id = user_id
    update.effective_user.language_code = language_code
    update.effective_message.reply_text = AsyncMock()
    return update


def make_context(orchestrator, args=None):
    context = MagicMock()
    context.bot_data = {'orchestrator': orchestrator}
    context.args = args or []
    return context


def replies(update):
    return [call.args[0] for call in update.effective_message.reply_text.await_args_list]


@pytest.mark.asyncio
class TestAdminAccess:

    async def test_non_admin_is_denied(self, orchestrator, pending_store):
        pending_store.add()
        update = make_update(user_id=1)

        await pending_command(update, make_context(orchestrator))

        assert 'Access denied' in replies(update)[0]

    async def test_denial_is_localized(self, orchestrator):
        update = make_update(user_id=1, language_code='fr')

        await close_pending_command(update, make_context(orchestrator, ['1', 'x']))

        assert 'Accès refusé' in replies(update)[0]


@pytest.mark.asyncio
class TestPendingCommands:

    async def test_pending_lists_records(self, orchestrator, pending_store):
        pending_store.add(domain_name='waiting.com')
        pending_store.add(domain_name='done.com', status=PendingDomainStatus.COMPLETED)
        update = make_update()

        await pending_command(update, make_context(orchestrator))

        text = replies(update)[0]
        assert 'waiting.com' in text
        assert 'done.com' not in text

    async def test_pending_rejects_unknown_status(self, orchestrator):
        update = make_update()

        await pending_command(update, make_context(orchestrator, ['lost']))

        assert 'Unknown status' in replies(update)[0]

    async def test_verify_reports_counts(self, orchestrator, pending_store, registrar):
        record = pending_store.add()
        registrar.set_unknown('example.com')
        update = make_update()

        await verify_pending_command(update, make_context(orchestrator, [str(record.id)]))

        texts = replies(update)
        assert len(texts) == 2
        assert 'Inconclusive: 1' in texts[1]

    async def test_verify_rejects_bad_id(self, orchestrator, registrar):
        update = make_update()

        await verify_pending_command(update, make_context(orchestrator, ['abc']))

        assert 'Invalid pending domain id' in replies(update)[0]
        assert registrar.availability_calls == []

    async def test_register_usage(self, orchestrator):
        update = make_update()

        await register_pending_command(update, make_context(orchestrator))

        assert 'Usage' in replies(update)[0]

    async def test_register_result(self, orchestrator, pending_store):
        record = pending_store.add()
        update = make_update()

        await register_pending_command(update, make_context(orchestrator, [str(record.id)]))

        assert 'example.com: manual registration -> completed' in replies(update)[0]

    async def test_register_completed_record_reports_error(self, orchestrator, pending_store, registrar):
        record = pending_store.add(status=PendingDomainStatus.COMPLETED)
        update = make_update()

        await register_pending_command(update, make_context(orchestrator, [str(record.id)]))

        assert 'already registered' in replies(update)[0]
        assert registrar.registration_calls == []

    async def test_close(self, orchestrator, pending_store):
        record = pending_store.add()
        update = make_update()

        await close_pending_command(update, make_context(orchestrator, [str(record.id), 'customer', 'cancelled']))

        assert pending_store.records[record.id].status == PendingDomainStatus.FAILED
        assert pending_store.records[record.id].reason == 'customer cancelled'
        assert 'closed as failed' in replies(update)[0]

    async def test_close_missing_record(self, orchestrator):
        update = make_update()

        await close_pending_command(update, make_context(orchestrator, ['99', 'gone']))

        assert 'not found' in replies(update)[0]

    async def test_close_record_being_processed_reports_busy(self, orchestrator, pending_store):
        record = pending_store.add(status=PendingDomainStatus.PROCESSING)
        update = make_update()

        await close_pending_command(update, make_context(orchestrator, [str(record.id), 'gone']))

        assert 'being processed' in replies(update)[0]
        assert pending_store.records[record.id].status == PendingDomainStatus.PROCESSING


@pytest.mark.asyncio
class TestFailedDomainsCommand:

    async def test_lists_failed_registrations(self, orchestrator, order_store):
        order_store.add(order_id='ORD-1', domains=('bad.com',), status=OrderDomainStatus.FAILED, error='Invalid')
        update = make_update()

        await failed_domains_command(update, make_context(orchestrator))

        text = replies(update)[0]
        assert 'Failed domain registrations' in text
        assert 'ORD-1' in text
        assert 'bad.com' in text

    async def test_non_admin_is_denied(self, orchestrator):
        update = make_update(user_id=1)

        await failed_domains_command(update, make_context(orchestrator))

        assert 'Access denied' in replies(update)[0]
