"""
Constants and configuration values for the quotas application.

This module contains all configuration constants used throughout the quotas app,
following the principle of avoiding magic numbers and centralized configuration.
Values that deployments are expected to change live in Django settings and are
merged over these defaults by ``quotas.conf``.
"""

# Byte units
KB = 1024
MB = 1024 * KB
GB = 1024 * MB

# Upper bound for any counter or limit (well below BigInteger limit for safety)
MAX_SAFE_BYTES = 2**62

# Concurrency strategies
STRATEGY_PESSIMISTIC = 'pessimistic'
STRATEGY_OPTIMISTIC = 'optimistic'
DEFAULT_STRATEGY = STRATEGY_PESSIMISTIC

# Optimistic retry policy: 5 attempts, 50ms doubling, randomised jitter
RETRY_MAX_ATTEMPTS = 5
RETRY_BASE_DELAY = 0.05  # seconds
RETRY_MULTIPLIER = 2.0
RETRY_MAX_DELAY = 2.0  # seconds
RETRY_JITTER = True

# Reconciliation
RECONCILIATION_ENABLED = True
RECONCILIATION_SCHEDULE = '0 3 * * *'  # 3 AM daily, run from cron

# Stored object lifecycle
OBJECT_STATUS_ACTIVE = 'ACTIVE'
OBJECT_STATUS_DELETED = 'DELETED'
STORAGE_KEY_TEMPLATE = 'org-{org_id}/proj-{project_id}/{name}{ext}'

# Field constraints
MAX_FILENAME_LENGTH = 255
MAX_CONTENT_TYPE_LENGTH = 100
MAX_STORAGE_KEY_LENGTH = 1000

# Quota scopes
SCOPE_PROJECT = 'project'
SCOPE_ORGANISATION = 'organisation'

# Error messages
ERROR_QUOTA_NOT_PROVISIONED = 'Storage quota not provisioned'
ERROR_PROJECT_NOT_PROVISIONED = (
    'Storage quota not provisioned for org={org_id} project={project_id}. '
    'Ask your admin to provision quota first.'
)
ERROR_ORG_NOT_PROVISIONED = 'Organisation storage quota not provisioned for org={org_id}'
ERROR_ORG_REQUIRED_FOR_PROJECT = (
    'Cannot provision project quota: org quota for org={org_id} does not exist. '
    'Provision org quota first.'
)
ERROR_QUOTA_EXCEEDED = 'Storage Quota Exceeded'
ERROR_QUOTA_EXCEEDED_DETAIL = (
    '{scope} storage quota exceeded. Available: {remaining} bytes, required: {requested} bytes'
)
ERROR_CONCURRENCY_CONFLICT = 'Quota update conflicted with concurrent writers, please retry'
ERROR_CONCURRENCY_CONFLICT_DETAIL = 'Quota update still conflicting after {attempts} attempt(s)'
ERROR_INVALID_SIZE = 'size_bytes must be a non-negative integer, got {value!r}'
ERROR_INVALID_LIMIT = 'max_bytes must be a non-negative integer, got {value!r}'
ERROR_NO_TRANSACTION = (
    'Pessimistic quota {operation} must run inside the caller\'s transaction.atomic() block'
)
ERROR_UNKNOWN_STRATEGY = 'Unknown quota engine strategy {strategy!r}; expected one of {choices}'

# Logging
LOG_QUOTA_RESERVED = (
    'Quota reserved ({strategy}): org={org_id} project={project_id} size={size} | '
    'orgUsed={org_used}/{org_max} projUsed={project_used}/{project_max}'
)
LOG_QUOTA_RELEASED = 'Quota released ({strategy}): org={org_id} project={project_id} size={size}'
LOG_DRIFT_DETECTED = '{scope} drift detected: org={org_id} project={project_id} recorded={recorded} actual={actual}'
