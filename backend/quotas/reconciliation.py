"""
Quota reconciliation.

Recomputes quota counters from ground truth and corrects drift left behind
by partial failures, crashes and bulk deletes that bypass reserve/release:

1. Each project's ``used_bytes`` is reset to the total size of its active
   stored objects.
2. Each organisation's ``used_bytes`` is then reset to the total of its
   projects' counters. This step always runs after every project correction
   of the same pass because it derives from them.

No locks are taken. Every correction is its own atomic write, so a crash
mid-run leaves a valid, partially corrected ledger and the job can simply be
run again. Running it twice with no storage changes in between corrects
nothing the second time.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Callable, List, Optional

from django.db import DatabaseError, transaction
from django.db.models import F, Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from .conf import ledger_database
from .constants import LOG_DRIFT_DETECTED, SCOPE_ORGANISATION, SCOPE_PROJECT
from .models import OrganisationQuota, ProjectQuota, QuotaCounter, StoredObject

logger = logging.getLogger(__name__)

# (org_id, project_id) -> bytes held by active stored objects
ActiveBytesSource = Callable[[int, int], int]


@dataclass(frozen=True)
class DriftCorrection:
    """A detected divergence between a counter and its ground truth."""

    scope: str
    org_id: int
    project_id: Optional[int]
    recorded_bytes: int
    actual_bytes: int

    @property
    def delta(self) -> int:
        return self.actual_bytes - self.recorded_bytes

    def to_dict(self) -> dict:
        return {
            'scope': self.scope,
            'org_id': self.org_id,
            'project_id': self.project_id,
            'recorded_bytes': self.recorded_bytes,
            'actual_bytes': self.actual_bytes,
        }


@dataclass
class ReconciliationReport:
    """Outcome of one reconciliation pass."""

    started_at: datetime
    dry_run: bool = False
    finished_at: Optional[datetime] = None
    projects_checked: int = 0
    organisations_checked: int = 0
    corrections: List[DriftCorrection] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def projects_fixed(self) -> int:
        return sum(1 for c in self.corrections if c.scope == SCOPE_PROJECT)

    @property
    def organisations_fixed(self) -> int:
        return sum(1 for c in self.corrections if c.scope == SCOPE_ORGANISATION)

    def to_dict(self) -> dict:
        return {
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'dry_run': self.dry_run,
            'projects_checked': self.projects_checked,
            'organisations_checked': self.organisations_checked,
            'projects_fixed': self.projects_fixed,
            'organisations_fixed': self.organisations_fixed,
            'corrections': [c.to_dict() for c in self.corrections],
            'errors': list(self.errors),
        }


def active_object_bytes(org_id: int, project_id: int, using: str = 'default') -> int:
    """Total size of the project's active stored objects."""
    return StoredObject.objects.using(using).for_project(org_id, project_id).active().aggregate(
        total=Coalesce(Sum('size'), 0)
    )['total']


def project_usage_total(org_id: int, using: str = 'default') -> int:
    """Total of the organisation's project counters."""
    return ProjectQuota.objects.using(using).filter(organisation_id=org_id).aggregate(
        total=Coalesce(Sum('used_bytes'), 0)
    )['total']


def reconcile_quotas(
    *,
    source: Optional[ActiveBytesSource] = None,
    dry_run: bool = False,
    using: Optional[str] = None,
) -> ReconciliationReport:
    """
    Run one reconciliation pass over every provisioned project and organisation.

    Args:
        source: Ground-truth query for a project's stored bytes; defaults to
                the active ``StoredObject`` rows
        dry_run: Detect and log drift without writing corrections
        using: Database alias of the ledger

    Returns:
        ReconciliationReport: Rows checked, corrections made and per-row errors
    """
    using = ledger_database(using)
    source = source or partial(active_object_bytes, using=using)
    report = ReconciliationReport(started_at=timezone.now(), dry_run=dry_run)

    logger.info(f"Starting quota reconciliation job (dry_run={dry_run})")

    project_keys = list(
        ProjectQuota.objects.using(using)
        .order_by('organisation_id', 'project_id')
        .values_list('pk', 'organisation_id', 'project_id')
    )
    for pk, org_id, project_id in project_keys:
        report.projects_checked += 1
        label = f"{SCOPE_PROJECT} org={org_id} project={project_id}"
        try:
            actual = source(org_id, project_id)
        except Exception as exc:
            # Ground truth may come from an external store with its own errors
            _record_failure(report, label, exc)
            continue
        try:
            project = ProjectQuota.objects.using(using).filter(pk=pk).first()
            if project is not None:
                _correct(project, actual, SCOPE_PROJECT, org_id, project_id, report, using)
        except DatabaseError as exc:
            _record_failure(report, label, exc)

    org_ids = list(OrganisationQuota.objects.using(using).order_by('org_id').values_list('org_id', flat=True))
    for org_id in org_ids:
        report.organisations_checked += 1
        try:
            actual = project_usage_total(org_id, using=using)
            if dry_run:
                # Project corrections were not written; account for them here
                actual += sum(
                    c.delta for c in report.corrections
                    if c.scope == SCOPE_PROJECT and c.org_id == org_id
                )
            organisation = OrganisationQuota.objects.using(using).filter(org_id=org_id).first()
            if organisation is not None:
                _correct(organisation, actual, SCOPE_ORGANISATION, org_id, None, report, using)
        except DatabaseError as exc:
            _record_failure(report, f"{SCOPE_ORGANISATION} org={org_id}", exc)

    report.finished_at = timezone.now()
    logger.info(
        f"Quota reconciliation complete. Projects fixed: {report.projects_fixed}, "
        f"Orgs fixed: {report.organisations_fixed}, Errors: {len(report.errors)}"
    )
    return report


def _record_failure(report: ReconciliationReport, label: str, exc: Exception) -> None:
    logger.error(f"Reconciliation failed for {label}: {exc}", exc_info=True)
    report.errors.append(f"{label}: {exc}")


def _correct(row: QuotaCounter, actual: int, scope: str, org_id: int,
             project_id: Optional[int], report: ReconciliationReport, using: str) -> None:
    if row.used_bytes == actual:
        return

    correction = DriftCorrection(
        scope=scope,
        org_id=org_id,
        project_id=project_id,
        recorded_bytes=row.used_bytes,
        actual_bytes=actual,
    )
    logger.warning(LOG_DRIFT_DETECTED.format(
        scope=scope.capitalize(),
        org_id=org_id,
        project_id=project_id,
        recorded=row.used_bytes,
        actual=actual,
    ))

    if not report.dry_run:
        with transaction.atomic(using=using):
            type(row).objects.using(using).filter(pk=row.pk).update(
                used_bytes=actual,
                version=F('version') + 1,
                updated_at=timezone.now(),
            )

    report.corrections.append(correction)
