"""
Reconciliation Engine Configuration
Environment-driven settings for verification pacing, attempt ceilings and registrar access
"""

import os
import logging

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}: {raw!r} - using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid number for {name}: {raw!r} - using default {default}")
        return default


class ReconciliationConfig:
    """Configuration for the pending-domain reconciliation engine"""

    def __init__(self):
        # Attempt ceiling: records at this count are no longer auto-verified
        self.max_verification_attempts = max(1, _env_int('RECONCILIATION_MAX_VERIFICATION_ATTEMPTS', 5))

        # Batch sizing and worker pool
        self.batch_size = max(1, _env_int('RECONCILIATION_BATCH_SIZE', 50))
        self.worker_count = max(1, _env_int('RECONCILIATION_WORKERS', 5))

        # Registrar API budget shared by all workers of a batch run
        self.rate_limit_per_second = max(0.1, _env_float('REGISTRAR_RATE_LIMIT_PER_SECOND', 2.0))
        self.rate_limit_burst = max(1, _env_int('REGISTRAR_RATE_LIMIT_BURST', 5))

        # Periodic scheduling (seconds)
        self.verification_interval = max(30, _env_int('RECONCILIATION_INTERVAL', 900))
        self.first_run_delay = max(0, _env_int('RECONCILIATION_FIRST_RUN_DELAY', 120))

        # Claims older than this are considered abandoned by a crashed worker
        self.processing_claim_timeout = max(60, _env_int('RECONCILIATION_CLAIM_TIMEOUT', 600))

        # Registrar HTTP behaviour
        self.registrar_timeout = max(1.0, _env_float('REGISTRAR_TIMEOUT_SECONDS', 30.0))
        self.registrar_max_retries = max(1, _env_int('REGISTRAR_MAX_RETRIES', 3))
        self.registrar_backoff_base = max(0.0, _env_float('REGISTRAR_BACKOFF_BASE', 1.0))

        self.default_currency = os.getenv('DEFAULT_CURRENCY', 'INR')
        self.enabled = os.getenv('RECONCILIATION_ENABLED', 'true').lower() == 'true'

        logger.info(f"✅ Reconciliation Config: enabled={self.enabled}, "
                    f"max_attempts={self.max_verification_attempts}, batch={self.batch_size}, "
                    f"workers={self.worker_count}, rate={self.rate_limit_per_second}/s")


_reconciliation_config = None


def get_reconciliation_config() -> ReconciliationConfig:
    """Get or create the global reconciliation configuration"""
    global _reconciliation_config
    if _reconciliation_config is None:
        _reconciliation_config = ReconciliationConfig()
    return _reconciliation_config
