"""
Quota provisioning and lookup.

This module provides the administrative operations on the quota ledger:
creating or updating organisation and project limits, reading rows back,
and building usage reports. Reservation and release live in
``quotas.engines``.
"""

import logging
from typing import Optional

from django.db import transaction
from django.db.models import QuerySet

from ..conf import ledger_database
from ..constants import (
    ERROR_INVALID_LIMIT,
    ERROR_ORG_REQUIRED_FOR_PROJECT,
    MAX_SAFE_BYTES,
    SCOPE_ORGANISATION,
)
from ..exceptions import QuotaNotProvisioned
from ..models import OrganisationQuota, ProjectQuota, QuotaCounter

logger = logging.getLogger(__name__)

LIMIT_FIELDS = ['max_bytes', 'version', 'updated_at']


def validate_byte_count(value: int, message: str) -> int:
    """Return ``value`` if it is an integer in ``[0, MAX_SAFE_BYTES]``, else raise ValueError."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(message.format(value=value))
    if value < 0 or value > MAX_SAFE_BYTES:
        raise ValueError(message.format(value=value))
    return value


def validate_limit(max_bytes: int) -> int:
    """Validate a quota limit in bytes."""
    return validate_byte_count(max_bytes, ERROR_INVALID_LIMIT)


def _apply_limit(quota: QuotaCounter, max_bytes: int, using: str) -> None:
    if quota.max_bytes == max_bytes:
        return
    if max_bytes < quota.used_bytes:
        logger.warning(
            f"New limit for {quota!r} is below current usage "
            f"({max_bytes} < {quota.used_bytes}); reservations blocked until usage drops"
        )
    quota.max_bytes = max_bytes
    # Bump version so optimistic writers that read the old limit retry
    quota.version += 1
    quota.save(using=using, update_fields=LIMIT_FIELDS)


def upsert_organisation_quota(org_id: int, max_bytes: int, using: Optional[str] = None) -> OrganisationQuota:
    """
    Create or update the organisation-level quota limit. Idempotent.

    Args:
        org_id: Organisation identifier
        max_bytes: New limit in bytes; usage is never touched

    Returns:
        OrganisationQuota: The stored row

    Example:
        >>> quota = upsert_organisation_quota(7, 10 * GB)
        >>> quota.used_bytes
        0
    """
    max_bytes = validate_limit(max_bytes)
    using = ledger_database(using)

    with transaction.atomic(using=using):
        quota, created = OrganisationQuota.objects.using(using).select_for_update().get_or_create(
            org_id=org_id,
            defaults={'max_bytes': max_bytes}
        )
        if created:
            logger.info(f"Creating org quota: orgId={org_id} maxBytes={max_bytes}")
        else:
            logger.info(f"Updating org quota: orgId={org_id} maxBytes={max_bytes}")
            _apply_limit(quota, max_bytes, using)

    return quota


def upsert_project_quota(org_id: int, project_id: int, max_bytes: int,
                         using: Optional[str] = None) -> ProjectQuota:
    """
    Create or update the project-level quota limit. Idempotent.

    Raises:
        QuotaNotProvisioned: If the organisation quota does not exist yet
    """
    max_bytes = validate_limit(max_bytes)
    using = ledger_database(using)

    with transaction.atomic(using=using):
        if not OrganisationQuota.objects.using(using).filter(org_id=org_id).exists():
            raise QuotaNotProvisioned(
                org_id,
                project_id,
                scope=SCOPE_ORGANISATION,
                message=ERROR_ORG_REQUIRED_FOR_PROJECT.format(org_id=org_id),
            )

        quota, created = ProjectQuota.objects.using(using).select_for_update().get_or_create(
            organisation_id=org_id,
            project_id=project_id,
            defaults={'max_bytes': max_bytes}
        )
        if created:
            logger.info(f"Creating project quota: orgId={org_id} projectId={project_id} maxBytes={max_bytes}")
        else:
            logger.info(f"Updating project quota: orgId={org_id} projectId={project_id} maxBytes={max_bytes}")
            _apply_limit(quota, max_bytes, using)

    return quota


def get_organisation_quota(org_id: int, using: Optional[str] = None) -> Optional[OrganisationQuota]:
    using = ledger_database(using)
    return OrganisationQuota.objects.using(using).filter(org_id=org_id).first()


def get_project_quota(org_id: int, project_id: int, using: Optional[str] = None) -> Optional[ProjectQuota]:
    using = ledger_database(using)
    return ProjectQuota.objects.using(using).filter(
        organisation_id=org_id,
        project_id=project_id,
    ).first()


def list_project_quotas(org_id: int, using: Optional[str] = None) -> QuerySet:
    """All project quotas under an organisation, ordered by project id."""
    using = ledger_database(using)
    return ProjectQuota.objects.using(using).filter(organisation_id=org_id).order_by('project_id')


def quota_usage(quota: QuotaCounter) -> dict:
    """
    Build a usage report for a quota row.

    Returns:
        dict: A dictionary containing:
            - max_bytes: Limit in bytes
            - used_bytes: Current usage in bytes
            - remaining_bytes: Capacity left (never negative)
            - usage_percentage: Percentage of the limit in use
    """
    usage_percentage = (quota.used_bytes / quota.max_bytes * 100) if quota.max_bytes > 0 else 0
    return {
        'max_bytes': quota.max_bytes,
        'used_bytes': quota.used_bytes,
        'remaining_bytes': quota.remaining_bytes,
        'usage_percentage': round(usage_percentage, 2),
    }


def organisation_usage(org_id: int, using: Optional[str] = None) -> Optional[dict]:
    """
    Usage report for an organisation including a per-project breakdown.

    Returns None when the organisation is not provisioned.
    """
    using = ledger_database(using)
    quota = get_organisation_quota(org_id, using=using)
    if quota is None:
        return None

    projects = [
        {'project_id': project.project_id, **quota_usage(project)}
        for project in list_project_quotas(org_id, using=using)
    ]
    return {
        'org_id': quota.org_id,
        **quota_usage(quota),
        'allocated_to_projects': sum(project['max_bytes'] for project in projects),
        'projects': projects,
    }
