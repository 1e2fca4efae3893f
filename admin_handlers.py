"""
Admin Handlers for Telegram Bot
Pending-domain administration commands plus the failed-registration report
"""

import logging
from typing import List, Optional, Tuple

from telegram import Update
from telegram.constants import ParseMode
from telegram.ext import Application, CommandHandler, ContextTypes

from admin_alerts import parse_admin_user_ids
from localization import detect_user_language, t, t_html
from message_utils import format_batch_report, format_failed_domains, format_pending_domain_list
from services.pending_domain_states import coerce_status
from services.reconciliation_errors import ReconciliationError
from services.reconciliation_orchestrator import ReconciliationOrchestrator, get_reconciliation_orchestrator

logger = logging.getLogger(__name__)

MAX_IDS_PER_COMMAND = 50


def _get_orchestrator(context: ContextTypes.DEFAULT_TYPE) -> ReconciliationOrchestrator:
    return context.bot_data.get('orchestrator') or get_reconciliation_orchestrator()


async def _require_admin(update: Update, command: str) -> Optional[Tuple[str, str]]:
    """Returns (actor, admin language) for admins; replies with a denial otherwise"""
    user = update.effective_user
    message = update.effective_message
    if not user or not message:
        logger.error(f"Missing user or message in /{command}")
        return None

    lang = detect_user_language(user.language_code)
    if user.id not in parse_admin_user_ids():
        logger.error(f"🚫 SECURITY: Non-admin user {user.id} attempted to use /{command}")
        await message.reply_text(
            t('admin.access.denied', lang) + "\n\n" + t('admin.access.restricted', lang),
            parse_mode=ParseMode.HTML
        )
        return None
    return f"telegram:{user.id}", lang


def _parse_id(value: str) -> int:
    pending_domain_id = int(value)
    if pending_domain_id <= 0:
        raise ValueError(value)
    return pending_domain_id


async def pending_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/pending [status] - list pending domains, newest first"""
    admin = await _require_admin(update, 'pending')
    if admin is None:
        return
    _, lang = admin
    message = update.effective_message

    args = context.args or []
    raw_status = args[0] if args else 'pending'
    try:
        status = coerce_status(raw_status).value
    except ValueError:
        text, parse_mode = t_html('admin.pending.invalid_status', lang, status=raw_status)
        await message.reply_text(text, parse_mode=parse_mode)
        return

    listing = await _get_orchestrator(context).list_pending_domains(status=status, per_page=20)
    title = t('admin.pending.title', lang, status=status)
    await message.reply_text(
        format_pending_domain_list(listing['items'], listing['summary'], title),
        parse_mode=ParseMode.HTML
    )


async def verify_pending_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/verify_pending [ids...] - verify the given records, or the eligible backlog"""
    admin = await _require_admin(update, 'verify_pending')
    if admin is None:
        return
    actor, lang = admin
    message = update.effective_message

    ids: Optional[List[int]] = None
    if context.args:
        try:
            ids = [_parse_id(arg) for arg in context.args[:MAX_IDS_PER_COMMAND]]
        except ValueError:
            text, parse_mode = t_html('admin.pending.invalid_id', lang, value=" ".join(context.args))
            await message.reply_text(text, parse_mode=parse_mode)
            return

    await message.reply_text(t('admin.pending.verify_started', lang))
    logger.info(f"🔁 ADMIN: {actor} triggered verification of {ids if ids else 'eligible backlog'}")
    report = await _get_orchestrator(context).verify_pending_domains(ids)
    await message.reply_text(format_batch_report(report), parse_mode=ParseMode.HTML)


async def register_pending_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/register_pending <id> - retry registration of one record"""
    admin = await _require_admin(update, 'register_pending')
    if admin is None:
        return
    actor, lang = admin
    message = update.effective_message

    args = context.args or []
    if len(args) != 1:
        await message.reply_text(t('admin.pending.register_usage', lang), parse_mode=ParseMode.HTML)
        return
    try:
        pending_domain_id = _parse_id(args[0])
    except ValueError:
        text, parse_mode = t_html('admin.pending.invalid_id', lang, value=args[0])
        await message.reply_text(text, parse_mode=parse_mode)
        return

    try:
        result = await _get_orchestrator(context).register_pending_domain(pending_domain_id, actor)
    except ReconciliationError as e:
        text, parse_mode = t_html('admin.pending.error', lang, error=str(e))
        await message.reply_text(text, parse_mode=parse_mode)
        return

    record = result.get('pendingDomain') or {}
    text, parse_mode = t_html(
        'admin.pending.register_result', lang,
        domain_name=record.get('domainName', pending_domain_id),
        outcome=result['outcome'],
        detail=result.get('detail', ''),
    )
    await message.reply_text(text, parse_mode=parse_mode)


async def close_pending_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/close_pending <id> <reason> - mark a record failed"""
    admin = await _require_admin(update, 'close_pending')
    if admin is None:
        return
    actor, lang = admin
    message = update.effective_message

    args = context.args or []
    if len(args) < 2:
        await message.reply_text(t('admin.pending.close_usage', lang), parse_mode=ParseMode.HTML)
        return
    try:
        pending_domain_id = _parse_id(args[0])
    except ValueError:
        text, parse_mode = t_html('admin.pending.invalid_id', lang, value=args[0])
        await message.reply_text(text, parse_mode=parse_mode)
        return

    reason = " ".join(args[1:])
    try:
        record = await _get_orchestrator(context).close_pending_domain(pending_domain_id, reason, actor)
    except ReconciliationError as e:
        text, parse_mode = t_html('admin.pending.error', lang, error=str(e))
        await message.reply_text(text, parse_mode=parse_mode)
        return

    logger.info(f"❌ ADMIN: {actor} closed pending domain {pending_domain_id} ({record.domain_name}): {reason}")
    text, parse_mode = t_html('admin.pending.closed', lang, domain_name=record.domain_name, reason=reason)
    await message.reply_text(text, parse_mode=parse_mode)


async def failed_domains_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/failed_domains - recent orders with failed registrations"""
    admin = await _require_admin(update, 'failed_domains')
    if admin is None:
        return
    _, lang = admin

    listing = await _get_orchestrator(context).list_failed_domains(limit=20)
    await update.effective_message.reply_text(
        format_failed_domains(listing, t('admin.failed.title', lang)),
        parse_mode=ParseMode.HTML
    )


def register_admin_handlers(application: Application):
    application.add_handler(CommandHandler('pending', pending_command))
    application.add_handler(CommandHandler('verify_pending', verify_pending_command))
    application.add_handler(CommandHandler('register_pending', register_pending_command))
    application.add_handler(CommandHandler('close_pending', close_pending_command))
    application.add_handler(CommandHandler('failed_domains', failed_domains_command))
    logger.info("✅ Admin pending-domain commands registered")
