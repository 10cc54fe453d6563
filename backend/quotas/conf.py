"""
Settings access for the quotas application.

Deployments override the defaults from ``constants.py`` through two
dictionaries in Django settings::

    QUOTA_ENGINE = {
        'STRATEGY': 'pessimistic',      # or 'optimistic'
        'DATABASE': 'default',
        'RETRY': {'MAX_ATTEMPTS': 5, 'BASE_DELAY': 0.05, ...},
    }
    QUOTA_RECONCILIATION = {'ENABLED': True, 'SCHEDULE': '0 3 * * *'}

Settings are read on every call so ``override_settings`` works in tests.
"""

from typing import Any, Dict, Optional

from django.conf import settings

from .constants import (
    DEFAULT_STRATEGY,
    RECONCILIATION_ENABLED,
    RECONCILIATION_SCHEDULE,
    RETRY_BASE_DELAY,
    RETRY_JITTER,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY,
    RETRY_MULTIPLIER,
)

DEFAULT_RETRY = {
    'MAX_ATTEMPTS': RETRY_MAX_ATTEMPTS,
    'BASE_DELAY': RETRY_BASE_DELAY,
    'MULTIPLIER': RETRY_MULTIPLIER,
    'MAX_DELAY': RETRY_MAX_DELAY,
    'JITTER': RETRY_JITTER,
}


def engine_settings() -> Dict[str, Any]:
    user = getattr(settings, 'QUOTA_ENGINE', {}) or {}
    return {
        'STRATEGY': user.get('STRATEGY') or DEFAULT_STRATEGY,
        'DATABASE': user.get('DATABASE') or 'default',
        'RETRY': {**DEFAULT_RETRY, **(user.get('RETRY') or {})},
    }


def reconciliation_settings() -> Dict[str, Any]:
    user = getattr(settings, 'QUOTA_RECONCILIATION', {}) or {}
    return {
        'ENABLED': user.get('ENABLED', RECONCILIATION_ENABLED),
        'SCHEDULE': user.get('SCHEDULE', RECONCILIATION_SCHEDULE),
    }


def ledger_database(using: Optional[str] = None) -> str:
    """Database alias holding the quota ledger: ``using`` or ``QUOTA_ENGINE['DATABASE']``."""
    return using or engine_settings()['DATABASE']
