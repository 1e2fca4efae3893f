"""Environment detection utilities for production vs development"""

import os
import logging

logger = logging.getLogger(__name__)


def is_test_mode() -> bool:
    """TEST_MODE=1 disables live registrar credentials and alert persistence"""
    return os.getenv('TEST_MODE') == '1'


def is_production_environment() -> bool:
    """
    Check if we're running in production

    Returns:
        bool: True if in production, False if in development
    """
    return os.getenv('ENVIRONMENT', 'development').lower() == 'production'


def get_admin_api_host() -> str:
    return os.getenv('ADMIN_API_HOST', '0.0.0.0')


def get_admin_api_port() -> int:
    """
    Port of the admin/order HTTP API

    Returns:
        int: ADMIN_API_PORT, or PORT as set by most hosting platforms, or 8080
    """
    raw_port = os.getenv('ADMIN_API_PORT') or os.getenv('PORT') or '8080'
    try:
        return int(raw_port)
    except ValueError:
        logger.warning(f"⚠️ Invalid admin API port {raw_port!r} - using 8080")
        return 8080


def get_admin_api_token() -> str:
    token = os.getenv('ADMIN_API_TOKEN', '')
    if not token and is_production_environment():
        logger.warning("⚠️ ADMIN_API_TOKEN is not set - admin API requests will be rejected")
    return token
