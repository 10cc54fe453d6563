"""
Utilities package for the quotas application.

This package contains quota provisioning and lookup helpers and the
retry-with-backoff combinator used by the optimistic engine.
"""

from .provisioning import (
    get_organisation_quota,
    get_project_quota,
    list_project_quotas,
    organisation_usage,
    quota_usage,
    upsert_organisation_quota,
    upsert_project_quota,
    validate_byte_count,
    validate_limit,
)
from .retry import RetryPolicy, retry_with_backoff

__all__ = [
    'get_organisation_quota',
    'get_project_quota',
    'list_project_quotas',
    'organisation_usage',
    'quota_usage',
    'upsert_organisation_quota',
    'upsert_project_quota',
    'validate_byte_count',
    'validate_limit',
    'RetryPolicy',
    'retry_with_backoff',
]
