#!/usr/bin/env python3
"""
Registrar Reconciliation Service - Single Event Loop Implementation
Runs the Telegram admin bot, the admin/order HTTP API and periodic verification in one asyncio loop
"""

import os
import sys
import signal
import asyncio
import logging
from typing import Optional

from telegram.ext import Application, ContextTypes, Defaults

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=os.getenv('LOG_LEVEL', 'INFO').upper()
)

# httpx logs full request URLs, which carry bot tokens and registrar api keys
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

from admin_alerts import send_critical_alert, set_admin_alert_bot_application
from admin_api import start_admin_server, stop_admin_server
from admin_handlers import register_admin_handlers
from database import close_connection_pool, init_database
from reconciliation_config import get_reconciliation_config
from services.batch_verification import periodic_verification_loop, run_periodic_verification
from services.customer_notifications import get_customer_notifier
from services.reconciliation_orchestrator import get_reconciliation_orchestrator

shutdown_event: Optional[asyncio.Event] = None


def request_shutdown(signum: int):
    """Handle shutdown signals gracefully"""
    logger.info(f"🛑 Shutdown signal received ({signum}), initiating graceful shutdown...")
    if shutdown_event is not None:
        shutdown_event.set()


def setup_periodic_jobs(app: Application) -> bool:
    """Schedule periodic verification on the job queue. Returns False when no job queue exists."""
    config = get_reconciliation_config()
    if not config.enabled:
        logger.info("🔇 Reconciliation disabled - periodic verification not scheduled")
        return True

    job_queue = app.job_queue
    if not job_queue:
        logger.warning("⚠️ Job queue not available - falling back to asyncio loop")
        return False

    async def safe_verification_job(context: ContextTypes.DEFAULT_TYPE):
        try:
            await run_periodic_verification(context)
        except Exception as verification_error:
            logger.warning(f"⚠️ Periodic verification job error: {verification_error}")

    job_queue.run_repeating(
        safe_verification_job,
        interval=config.verification_interval,
        first=config.first_run_delay,
        name='pending_domain_verification'
    )
    logger.info(f"✅ Pending-domain verification scheduled every {config.verification_interval}s")
    return True


async def global_error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Global error handler for unhandled exceptions"""
    error_str = str(context.error)
    if "ReadError" in error_str or "NetworkError" in error_str or "ConnectionError" in error_str:
        logger.info("🌐 Network timeout recovered automatically by retry mechanism")
    else:
        logger.warning(f"⚠️ Unhandled application error: {context.error}")


async def main_loop():
    """Main event loop - runs everything in a single asyncio loop"""
    global shutdown_event
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, request_shutdown, signum)

    app: Optional[Application] = None
    api_runner = None
    fallback_task: Optional[asyncio.Task] = None

    try:
        logger.info("🔄 Initializing database...")
        await init_database()

        orchestrator = get_reconciliation_orchestrator()
        token = os.getenv('TELEGRAM_BOT_TOKEN')

        if token:
            defaults = Defaults(parse_mode='HTML')
            app = Application.builder().token(token).defaults(defaults).build()
            app.add_error_handler(global_error_handler)
            app.bot_data['orchestrator'] = orchestrator
            register_admin_handlers(app)

            set_admin_alert_bot_application(app)
            get_customer_notifier().set_bot_application(app)

            await app.initialize()
            await app.start()
            if app.updater:
                await app.updater.start_polling(drop_pending_updates=True)
            logger.info("✅ Telegram application started")
        else:
            logger.warning("⚠️ TELEGRAM_BOT_TOKEN not set - admin commands, alerts and customer notifications disabled")

        api_runner = await start_admin_server(orchestrator)

        if app is None or not setup_periodic_jobs(app):
            if get_reconciliation_config().enabled:
                fallback_task = asyncio.create_task(
                    periodic_verification_loop(shutdown_event, orchestrator.scheduler)
                )
                logger.info("✅ Pending-domain verification running on fallback asyncio loop")

        logger.info("✅ Reconciliation service running")
        await shutdown_event.wait()
        logger.info("🛑 Shutdown requested - cleaning up...")
        return True

    except Exception as runtime_error:
        logger.error(f"❌ Application runtime error: {runtime_error}")
        await send_critical_alert(
            "Service",
            f"Reconciliation service crashed: {runtime_error}",
            "system_health"
        )
        logger.error("💥 FAIL FAST: Exiting for supervisor restart")
        return False

    finally:
        if fallback_task is not None:
            fallback_task.cancel()
            try:
                await fallback_task
            except asyncio.CancelledError:
                pass
        if app is not None:
            if app.updater and app.updater.running:
                await app.updater.stop()
            await app.stop()
            await app.shutdown()
        if api_runner is not None:
            await stop_admin_server()
        await get_reconciliation_orchestrator().close()
        close_connection_pool()
        logger.info("✅ Cleanup completed")


def main():
    """Main entry point"""
    logger.info("🚀 Starting registrar reconciliation service...")
    result = asyncio.run(main_loop())
    logger.info("✅ Service stopped normally" if result else "⚠️ Service stopped with error")
    if not result:
        sys.exit(1)


if __name__ == '__main__':
    main()
