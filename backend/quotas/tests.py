"""
Test Suite for the Storage Quota Ledger.

PART 1 - Ledger and Engines:
    - TestQuotaModels: Counter helpers, constraints and stored object queries
    - TestRetryPolicy: Backoff shape and the retry combinator
    - TestPessimisticEngine: Row-lock reservations inside the caller's transaction
    - TestPessimisticEngineTransactionRequired: Reservations outside a transaction
    - TestOptimisticEngine: Version-checked reservations with retry
    - TestEngineSelection: Strategy selection from settings

PART 2 - Provisioning, Reconciliation and Uploads:
    - TestProvisioning: Idempotent upserts and usage reports
    - TestReconciliation: Drift detection and correction
    - TestReconcileCommand: The reconcile_quotas management command
    - TestUploadOrchestration: Admitting and removing stored objects
    - TestExceptionHandler: Error to HTTP response mapping
    - TestQuotaAPI: Internal provisioning endpoints
    - TestConcurrentReservations: Real concurrent writers on separate connections
    - TestLedgerDatabase: Routing to the configured ledger database alias
"""

import json
import random
import threading
from io import StringIO
from unittest.mock import Mock, patch

from django.core.exceptions import ImproperlyConfigured
from django.core.management import call_command
from django.db import DatabaseError, IntegrityError, connection, transaction
from django.db.models import F, ProtectedError
from django.db.transaction import TransactionManagementError
from django.utils.connection import ConnectionDoesNotExist
from django.test import TestCase, TransactionTestCase, override_settings
from rest_framework import status
from rest_framework.test import APITestCase

from .constants import (
    OBJECT_STATUS_ACTIVE,
    OBJECT_STATUS_DELETED,
    SCOPE_ORGANISATION,
    SCOPE_PROJECT,
)
from .engines import (
    OptimisticQuotaEngine,
    PessimisticQuotaEngine,
    get_quota_engine,
    validate_size,
)
from .exceptions import (
    ConcurrencyConflict,
    QuotaExceeded,
    QuotaNotProvisioned,
    custom_exception_handler,
)
from .models import OrganisationQuota, ProjectQuota, StoredObject, storage_key_for
from .reconciliation import reconcile_quotas
from .uploads import admit_object, remove_object
from .utils import (
    RetryPolicy,
    get_project_quota,
    organisation_usage,
    retry_with_backoff,
    upsert_organisation_quota,
    upsert_project_quota,
    validate_limit,
)
from .views import OrganisationQuotaViewSet, ProjectQuotaViewSet

ORG_ID = 1
PROJECT_ID = 10
OTHER_PROJECT_ID = 11

NO_WAIT = RetryPolicy(base_delay=0, jitter=False)


def provision(org_max=1000, project_max=500, org_used=0, project_used=0,
              org_id=ORG_ID, project_id=PROJECT_ID):
    """Provision an org/project pair and force its counters."""
    upsert_organisation_quota(org_id, org_max)
    upsert_project_quota(org_id, project_id, project_max)
    OrganisationQuota.objects.filter(org_id=org_id).update(used_bytes=org_used)
    ProjectQuota.objects.filter(organisation_id=org_id, project_id=project_id).update(used_bytes=project_used)


def counters(org_id=ORG_ID, project_id=PROJECT_ID):
    """Return ((project_used, project_max), (org_used, org_max)) as stored."""
    project = ProjectQuota.objects.get(organisation_id=org_id, project_id=project_id)
    organisation = OrganisationQuota.objects.get(org_id=org_id)
    return (project.used_bytes, project.max_bytes), (organisation.used_bytes, organisation.max_bytes)


def make_object(size, project_id=PROJECT_ID, org_id=ORG_ID, status=OBJECT_STATUS_ACTIVE, name='report.pdf'):
    return StoredObject.objects.create(
        org_id=org_id,
        project_id=project_id,
        original_filename=name,
        content_type='application/pdf',
        size=size,
        storage_key=storage_key_for(org_id, project_id, name),
        status=status,
    )


def inject_conflicts(engine, count):
    """
    Make the next ``count`` optimistic attempts lose their version check.

    The project row's version is bumped right after the engine reads it, the
    way a concurrent committed writer would.
    """
    original = engine._fetch_in_lock_order
    calls = {'count': 0}

    def fetch(org_id, project_id, **kwargs):
        calls['count'] += 1
        rows = original(org_id, project_id, **kwargs)
        if calls['count'] <= count:
            ProjectQuota.objects.filter(
                organisation_id=org_id, project_id=project_id
            ).update(version=F('version') + 1)
        return rows

    engine._fetch_in_lock_order = fetch
    return calls


# ============================================================================
# PART 1: LEDGER AND ENGINES
# ============================================================================


# ============================================================================
# MODEL TESTS
# ============================================================================


class TestQuotaModels(TestCase):
    """Test cases for the quota ledger models."""

    def setUp(self):
        provision(org_max=1000, project_max=500)
        self.project = ProjectQuota.objects.get(organisation_id=ORG_ID, project_id=PROJECT_ID)

    def test_remaining_bytes_never_negative(self):
        """Test that remaining bytes clamp at zero when usage is above the limit"""
        self.project.used_bytes = 700
        self.assertEqual(self.project.remaining_bytes, 0)

    def test_has_capacity_exact_fit(self):
        """Test that a reservation exactly filling the quota fits"""
        self.project.used_bytes = 400
        self.assertTrue(self.project.has_capacity(100))
        self.assertFalse(self.project.has_capacity(101))

    def test_increment_usage_bumps_version(self):
        """Test that incrementing usage bumps the version"""
        version = self.project.version
        self.project.increment_usage(50)
        self.assertEqual(self.project.used_bytes, 50)
        self.assertEqual(self.project.version, version + 1)

    def test_decrement_usage_clamps_at_zero(self):
        """Test that over-release stops at zero and logs a warning"""
        self.project.used_bytes = 30
        with self.assertLogs('quotas.models', level='WARNING'):
            self.project.decrement_usage(100)
        self.assertEqual(self.project.used_bytes, 0)

    def test_project_org_id_property(self):
        """Test that a project quota exposes its organisation id"""
        self.assertEqual(self.project.org_id, ORG_ID)

    def test_project_unique_per_organisation(self):
        """Test that a project can only be provisioned once per organisation"""
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                ProjectQuota.objects.create(organisation_id=ORG_ID, project_id=PROJECT_ID, max_bytes=1)

    def test_used_bytes_check_constraint(self):
        """Test that the database rejects negative usage"""
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                ProjectQuota.objects.filter(pk=self.project.pk).update(used_bytes=-1)

    def test_organisation_with_projects_cannot_be_deleted(self):
        """Test that org rows are protected while projects reference them"""
        with self.assertRaises(ProtectedError):
            OrganisationQuota.objects.get(org_id=ORG_ID).delete()

    def test_storage_key_format(self):
        """Test the provider-neutral storage key layout"""
        key = storage_key_for(7, 42, 'Invoice.PDF')
        self.assertRegex(key, r'^org-7/proj-42/[0-9a-f-]{36}\.pdf$')
        self.assertNotEqual(key, storage_key_for(7, 42, 'Invoice.PDF'))

    def test_stored_object_queryset(self):
        """Test active and per-project object filtering"""
        make_object(100)
        make_object(200, status=OBJECT_STATUS_DELETED)
        make_object(300, project_id=OTHER_PROJECT_ID)

        self.assertEqual(StoredObject.objects.for_project(ORG_ID, PROJECT_ID).count(), 2)
        self.assertEqual(StoredObject.objects.for_project(ORG_ID, PROJECT_ID).active().count(), 1)
        self.assertTrue(StoredObject.objects.active().first().is_active)


# ============================================================================
# RETRY TESTS
# ============================================================================


class TestRetryPolicy(TestCase):
    """Test cases for the retry-with-backoff combinator."""

    def test_defaults(self):
        """Test the default policy: 5 attempts, 50ms doubling"""
        policy = RetryPolicy()
        self.assertEqual(policy.max_attempts, 5)
        self.assertEqual(policy.base_delay, 0.05)
        self.assertEqual(policy.multiplier, 2.0)

    def test_invalid_policy_rejected(self):
        """Test that nonsensical policies are rejected"""
        with self.assertRaises(ValueError):
            RetryPolicy(max_attempts=0)
        with self.assertRaises(ValueError):
            RetryPolicy(base_delay=-1)
        with self.assertRaises(ValueError):
            RetryPolicy(multiplier=0.5)

    def test_exponential_delays_without_jitter(self):
        """Test that delays grow by the multiplier and stop at the cap"""
        policy = RetryPolicy(base_delay=0.1, multiplier=2.0, max_delay=0.5, jitter=False)
        delays = [policy.delay_for(attempt) for attempt in range(1, 6)]
        self.assertEqual(delays, [0.1, 0.2, 0.4, 0.5, 0.5])

    def test_jitter_stays_within_bounds(self):
        """Test that jittered delays stay within one multiplier step"""
        policy = RetryPolicy(base_delay=0.1, multiplier=2.0, max_delay=10.0, jitter=True)
        rng = random.Random(42)
        for _ in range(50):
            delay = policy.delay_for(2, rng=rng)
            self.assertGreaterEqual(delay, 0.2)
            self.assertLessEqual(delay, 0.4)

    def test_from_settings(self):
        """Test building a policy from a settings mapping"""
        policy = RetryPolicy.from_settings({
            'MAX_ATTEMPTS': 3, 'BASE_DELAY': 0.01, 'MULTIPLIER': 3, 'MAX_DELAY': 1, 'JITTER': False,
        })
        self.assertEqual(policy, RetryPolicy(3, 0.01, 3.0, 1.0, False))

    def test_succeeds_after_retries(self):
        """Test that a transient failure is retried until success"""
        sleeps = []
        func = Mock(side_effect=[ConcurrencyConflict(), ConcurrencyConflict(), 'done'])

        result = retry_with_backoff(
            func, 'arg', policy=NO_WAIT, retry_on=(ConcurrencyConflict,), sleep=sleeps.append
        )

        self.assertEqual(result, 'done')
        self.assertEqual(func.call_count, 3)
        self.assertEqual(len(sleeps), 2)
        func.assert_called_with('arg')

    def test_gives_up_after_max_attempts(self):
        """Test that the last error is re-raised once attempts are spent"""
        sleeps = []
        func = Mock(side_effect=ConcurrencyConflict())

        with self.assertRaises(ConcurrencyConflict):
            retry_with_backoff(
                func, policy=RetryPolicy(max_attempts=3, base_delay=0, jitter=False),
                retry_on=(ConcurrencyConflict,), sleep=sleeps.append,
            )

        self.assertEqual(func.call_count, 3)
        self.assertEqual(len(sleeps), 2)

    def test_other_errors_not_retried(self):
        """Test that exceptions outside retry_on propagate immediately"""
        sleeps = []
        func = Mock(side_effect=KeyError('boom'))

        with self.assertRaises(KeyError):
            retry_with_backoff(func, policy=NO_WAIT, retry_on=(ConcurrencyConflict,), sleep=sleeps.append)

        self.assertEqual(func.call_count, 1)
        self.assertEqual(sleeps, [])


# ============================================================================
# PESSIMISTIC ENGINE TESTS
# ============================================================================


class TestPessimisticEngine(TestCase):
    """Test cases for the row-lock reservation engine."""

    def setUp(self):
        provision(org_max=1000, project_max=500, org_used=900, project_used=400)
        self.engine = PessimisticQuotaEngine()

    def test_reserve_release_scenario(self):
        """Test reserve to the limit, reject one more byte, then release"""
        with transaction.atomic():
            self.engine.reserve(ORG_ID, PROJECT_ID, 100)
        self.assertEqual(counters(), ((500, 500), (1000, 1000)))

        with self.assertRaises(QuotaExceeded) as ctx:
            with transaction.atomic():
                self.engine.reserve(ORG_ID, PROJECT_ID, 1)
        self.assertEqual(ctx.exception.scope, SCOPE_PROJECT)
        self.assertEqual(ctx.exception.remaining_bytes, 0)
        self.assertEqual(counters(), ((500, 500), (1000, 1000)))

        with transaction.atomic():
            self.engine.release(ORG_ID, PROJECT_ID, 500)
        self.assertEqual(counters(), ((0, 500), (500, 1000)))

    def test_one_byte_over_leaves_remaining_unchanged(self):
        """Test that a rejected reservation reports and keeps the remaining capacity"""
        with self.assertRaises(QuotaExceeded) as ctx:
            with transaction.atomic():
                self.engine.reserve(ORG_ID, PROJECT_ID, 101)
        self.assertEqual(ctx.exception.remaining_bytes, 100)
        self.assertEqual(ctx.exception.requested_bytes, 101)
        self.assertEqual(counters(), ((400, 500), (900, 1000)))

    def test_organisation_scope_exceeded(self):
        """Test that the org limit is enforced after the project check passes"""
        ProjectQuota.objects.filter(project_id=PROJECT_ID).update(used_bytes=0)
        with self.assertRaises(QuotaExceeded) as ctx:
            with transaction.atomic():
                self.engine.reserve(ORG_ID, PROJECT_ID, 150)
        self.assertEqual(ctx.exception.scope, SCOPE_ORGANISATION)
        self.assertEqual(ctx.exception.remaining_bytes, 100)
        self.assertEqual(counters(), ((0, 500), (900, 1000)))

    def test_release_more_than_reserved_clamps(self):
        """Test that release is safe to call more times than reserve"""
        with transaction.atomic():
            self.engine.release(ORG_ID, PROJECT_ID, 400)
            self.engine.release(ORG_ID, PROJECT_ID, 400)
        self.assertEqual(counters(), ((0, 500), (100, 1000)))

    def test_unprovisioned_project(self):
        """Test that reserving against a missing project row fails"""
        with self.assertRaises(QuotaNotProvisioned) as ctx:
            with transaction.atomic():
                self.engine.reserve(ORG_ID, 999, 1)
        self.assertEqual(ctx.exception.scope, SCOPE_PROJECT)
        self.assertEqual(ctx.exception.status_code, status.HTTP_404_NOT_FOUND)

    def test_release_skips_missing_project_row(self):
        """Test that release skips a missing project row but still releases the org row"""
        with transaction.atomic():
            self.engine.release(ORG_ID, 999, 10)
        self.assertEqual(counters(), ((400, 500), (890, 1000)))

    def test_release_unprovisioned_org_is_noop(self):
        """Test that releasing against an unknown org touches nothing"""
        with transaction.atomic():
            self.engine.release(404, 999, 10)
        self.assertEqual(counters(), ((400, 500), (900, 1000)))

    def test_rollback_undoes_reservation(self):
        """Test that the reservation rolls back with the caller's transaction"""
        with self.assertRaises(RuntimeError):
            with transaction.atomic():
                self.engine.reserve(ORG_ID, PROJECT_ID, 50)
                raise RuntimeError("object write failed")
        self.assertEqual(counters(), ((400, 500), (900, 1000)))

    def test_reserve_bumps_version(self):
        """Test that every counter write bumps the row version"""
        before = ProjectQuota.objects.get(project_id=PROJECT_ID).version
        with transaction.atomic():
            self.engine.reserve(ORG_ID, PROJECT_ID, 10)
        self.assertEqual(ProjectQuota.objects.get(project_id=PROJECT_ID).version, before + 1)

    def test_invalid_sizes_rejected(self):
        """Test that negative, fractional and boolean sizes are rejected"""
        for size in (-1, 1.5, True, '10'):
            with self.assertRaises(ValueError):
                validate_size(size)
        with self.assertRaises(ValueError):
            with transaction.atomic():
                self.engine.reserve(ORG_ID, PROJECT_ID, -5)

    def test_zero_size_reservation(self):
        """Test that a zero-byte reservation succeeds even on a full quota"""
        ProjectQuota.objects.filter(project_id=PROJECT_ID).update(used_bytes=500)
        with transaction.atomic():
            self.engine.reserve(ORG_ID, PROJECT_ID, 0)
        self.assertEqual(counters()[0], (500, 500))


class TestPessimisticEngineTransactionRequired(TransactionTestCase):
    """Test cases for calling the pessimistic engine without a transaction."""

    def setUp(self):
        provision(org_max=1000, project_max=500)

    def test_reserve_requires_transaction(self):
        """Test that reserve outside transaction.atomic() is refused"""
        with self.assertRaises(TransactionManagementError):
            PessimisticQuotaEngine().reserve(ORG_ID, PROJECT_ID, 10)
        self.assertEqual(counters(), ((0, 500), (0, 1000)))

    def test_release_requires_transaction(self):
        """Test that release outside transaction.atomic() is refused"""
        with self.assertRaises(TransactionManagementError):
            PessimisticQuotaEngine().release(ORG_ID, PROJECT_ID, 10)


# ============================================================================
# OPTIMISTIC ENGINE TESTS
# ============================================================================


class TestOptimisticEngine(TestCase):
    """Test cases for the version-checked reservation engine."""

    def setUp(self):
        provision(org_max=1000, project_max=500, org_used=900, project_used=400)
        self.sleeps = []
        self.engine = OptimisticQuotaEngine(policy=NO_WAIT, sleep=self.sleeps.append)

    def test_reserve_release_scenario(self):
        """Test reserve to the limit, reject one more byte, then release"""
        self.engine.reserve(ORG_ID, PROJECT_ID, 100)
        self.assertEqual(counters(), ((500, 500), (1000, 1000)))

        with self.assertRaises(QuotaExceeded) as ctx:
            self.engine.reserve(ORG_ID, PROJECT_ID, 1)
        self.assertEqual(ctx.exception.scope, SCOPE_PROJECT)
        self.assertEqual(ctx.exception.remaining_bytes, 0)

        self.engine.release(ORG_ID, PROJECT_ID, 500)
        self.assertEqual(counters(), ((0, 500), (500, 1000)))

    def test_succeeds_within_retry_budget(self):
        """Test that injected conflicts are retried without double-applying"""
        calls = inject_conflicts(self.engine, count=2)
        version = ProjectQuota.objects.get(project_id=PROJECT_ID).version

        self.engine.reserve(ORG_ID, PROJECT_ID, 50)

        self.assertEqual(calls['count'], 3)
        self.assertEqual(len(self.sleeps), 2)
        self.assertEqual(counters(), ((450, 500), (950, 1000)))
        self.assertEqual(ProjectQuota.objects.get(project_id=PROJECT_ID).version, version + 1)

    def test_fails_after_retry_budget(self):
        """Test that persistent conflicts surface as ConcurrencyConflict"""
        calls = inject_conflicts(self.engine, count=100)

        with self.assertRaises(ConcurrencyConflict) as ctx:
            self.engine.reserve(ORG_ID, PROJECT_ID, 50)

        self.assertEqual(ctx.exception.attempts, NO_WAIT.max_attempts)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(calls['count'], NO_WAIT.max_attempts)
        self.assertEqual(counters(), ((400, 500), (900, 1000)))

    def test_quota_exceeded_not_retried(self):
        """Test that capacity failures propagate without retrying"""
        calls = inject_conflicts(self.engine, count=0)
        with self.assertRaises(QuotaExceeded):
            self.engine.reserve(ORG_ID, PROJECT_ID, 101)
        self.assertEqual(calls['count'], 1)
        self.assertEqual(self.sleeps, [])

    def test_release_retries_on_conflict(self):
        """Test that release is also retried on version conflicts"""
        inject_conflicts(self.engine, count=1)
        self.engine.release(ORG_ID, PROJECT_ID, 1000)
        self.assertEqual(counters(), ((0, 500), (0, 1000)))

    def test_unprovisioned_project(self):
        """Test that reserving against a missing project row fails"""
        with self.assertRaises(QuotaNotProvisioned):
            self.engine.reserve(ORG_ID, 999, 1)

    def test_cannot_nest_in_caller_transaction(self):
        """Test that each attempt refuses to join an outer transaction"""
        with self.assertRaises(RuntimeError):
            with transaction.atomic():
                self.engine.reserve(ORG_ID, PROJECT_ID, 10)


# ============================================================================
# ENGINE SELECTION TESTS
# ============================================================================


class TestEngineSelection(TestCase):
    """Test cases for choosing an engine from settings."""

    @override_settings(QUOTA_ENGINE={})
    def test_default_is_pessimistic(self):
        """Test that the pessimistic engine is the default"""
        engine = get_quota_engine()
        self.assertIsInstance(engine, PessimisticQuotaEngine)
        self.assertTrue(engine.requires_transaction)
        self.assertEqual(engine.using, 'default')

    @override_settings(QUOTA_ENGINE={'STRATEGY': 'optimistic', 'RETRY': {'MAX_ATTEMPTS': 3}})
    def test_optimistic_opt_in(self):
        """Test selecting the optimistic engine and merging retry settings"""
        engine = get_quota_engine()
        self.assertIsInstance(engine, OptimisticQuotaEngine)
        self.assertFalse(engine.requires_transaction)
        self.assertEqual(engine.policy.max_attempts, 3)
        self.assertEqual(engine.policy.base_delay, 0.05)

    def test_explicit_strategy_argument(self):
        """Test that an explicit strategy overrides settings"""
        self.assertIsInstance(get_quota_engine('optimistic'), OptimisticQuotaEngine)

    def test_unknown_strategy(self):
        """Test that an unknown strategy name is a configuration error"""
        with self.assertRaises(ImproperlyConfigured):
            get_quota_engine('eventual')


# ============================================================================
# PART 2: PROVISIONING, RECONCILIATION AND UPLOADS
# ============================================================================


# ============================================================================
# PROVISIONING TESTS
# ============================================================================


class TestProvisioning(TestCase):
    """Test cases for quota provisioning and lookup."""

    def test_upsert_organisation_is_idempotent(self):
        """Test that repeating an org upsert creates one row"""
        upsert_organisation_quota(ORG_ID, 1000)
        quota = upsert_organisation_quota(ORG_ID, 1000)
        self.assertEqual(OrganisationQuota.objects.count(), 1)
        self.assertEqual(quota.version, 0)

    def test_update_limit_keeps_usage(self):
        """Test that changing a limit never touches usage and bumps the version"""
        provision(org_max=1000, project_max=500, org_used=300, project_used=300)
        quota = upsert_organisation_quota(ORG_ID, 2000)
        quota.refresh_from_db()
        self.assertEqual(quota.max_bytes, 2000)
        self.assertEqual(quota.used_bytes, 300)
        self.assertEqual(quota.version, 1)

    def test_project_requires_organisation(self):
        """Test that a project quota cannot exist without its org quota"""
        with self.assertRaises(QuotaNotProvisioned) as ctx:
            upsert_project_quota(ORG_ID, PROJECT_ID, 500)
        self.assertEqual(ctx.exception.scope, SCOPE_ORGANISATION)
        self.assertFalse(ProjectQuota.objects.exists())

    def test_upsert_project_is_idempotent(self):
        """Test that repeating a project upsert creates one row"""
        upsert_organisation_quota(ORG_ID, 1000)
        upsert_project_quota(ORG_ID, PROJECT_ID, 500)
        upsert_project_quota(ORG_ID, PROJECT_ID, 600)
        self.assertEqual(ProjectQuota.objects.count(), 1)
        self.assertEqual(get_project_quota(ORG_ID, PROJECT_ID).max_bytes, 600)

    def test_limit_below_usage_blocks_reservations(self):
        """Test that lowering a limit below usage is allowed but blocks new reservations"""
        provision(org_max=1000, project_max=500, org_used=400, project_used=400)
        with self.assertLogs('quotas.utils.provisioning', level='WARNING'):
            upsert_project_quota(ORG_ID, PROJECT_ID, 100)

        with self.assertRaises(QuotaExceeded):
            with transaction.atomic():
                PessimisticQuotaEngine().reserve(ORG_ID, PROJECT_ID, 1)
        self.assertEqual(counters()[0], (400, 100))

    def test_invalid_limit(self):
        """Test that negative limits are rejected"""
        with self.assertRaises(ValueError):
            upsert_organisation_quota(ORG_ID, -1)

    def test_validators_name_the_rejected_field(self):
        """Test that limit and size validation share bounds but report their own field"""
        with self.assertRaisesRegex(ValueError, 'max_bytes'):
            validate_limit(2**62 + 1)
        with self.assertRaisesRegex(ValueError, 'size_bytes'):
            validate_size(2**62 + 1)
        self.assertEqual(validate_limit(2**62), 2**62)

    def test_lookup_missing(self):
        """Test that lookups for missing rows return None"""
        self.assertIsNone(get_project_quota(ORG_ID, PROJECT_ID))
        self.assertIsNone(organisation_usage(ORG_ID))

    def test_organisation_usage_report(self):
        """Test the org usage report with its project breakdown"""
        provision(org_max=1000, project_max=500, org_used=250, project_used=250)
        upsert_project_quota(ORG_ID, OTHER_PROJECT_ID, 300)

        report = organisation_usage(ORG_ID)

        self.assertEqual(report['used_bytes'], 250)
        self.assertEqual(report['remaining_bytes'], 750)
        self.assertEqual(report['usage_percentage'], 25.0)
        self.assertEqual(report['allocated_to_projects'], 800)
        self.assertEqual([p['project_id'] for p in report['projects']], [PROJECT_ID, OTHER_PROJECT_ID])


# ============================================================================
# RECONCILIATION TESTS
# ============================================================================


class TestReconciliation(TestCase):
    """Test cases for drift detection and correction."""

    def setUp(self):
        provision(org_max=10000, project_max=5000, org_used=999, project_used=100)
        upsert_project_quota(ORG_ID, OTHER_PROJECT_ID, 5000)
        ProjectQuota.objects.filter(project_id=OTHER_PROJECT_ID).update(used_bytes=50)

        make_object(300)
        make_object(200)
        make_object(1000, status=OBJECT_STATUS_DELETED)

    def test_corrects_projects_then_organisation(self):
        """Test that projects are reset to stored bytes and orgs to project totals"""
        with self.assertLogs('quotas.reconciliation', level='WARNING'):
            report = reconcile_quotas()

        self.assertEqual(counters(), ((500, 5000), (500, 10000)))
        self.assertEqual(counters(project_id=OTHER_PROJECT_ID)[0], (0, 5000))
        self.assertEqual(report.projects_checked, 2)
        self.assertEqual(report.organisations_checked, 1)
        self.assertEqual(report.projects_fixed, 2)
        self.assertEqual(report.organisations_fixed, 1)
        self.assertEqual(report.corrections[-1].scope, SCOPE_ORGANISATION)
        self.assertEqual(report.errors, [])

    def test_correction_bumps_version(self):
        """Test that corrected rows invalidate optimistic readers"""
        before = ProjectQuota.objects.get(project_id=PROJECT_ID).version
        reconcile_quotas()
        self.assertEqual(ProjectQuota.objects.get(project_id=PROJECT_ID).version, before + 1)

    def test_second_run_is_noop(self):
        """Test that reconciliation is idempotent"""
        reconcile_quotas()
        report = reconcile_quotas()
        self.assertEqual(report.corrections, [])

    def test_dry_run_writes_nothing(self):
        """Test that a dry run reports drift including the org's derived total"""
        report = reconcile_quotas(dry_run=True)

        self.assertEqual(counters(), ((100, 5000), (999, 10000)))
        org_correction = [c for c in report.corrections if c.scope == SCOPE_ORGANISATION][0]
        self.assertEqual(org_correction.recorded_bytes, 999)
        self.assertEqual(org_correction.actual_bytes, 500)
        self.assertEqual(org_correction.delta, -499)
        self.assertTrue(report.to_dict()['dry_run'])

    def test_row_failure_is_skipped(self):
        """Test that one failing row does not abort the run"""
        def source(org_id, project_id):
            if project_id == PROJECT_ID:
                raise DatabaseError("read failed")
            return 0

        with self.assertLogs('quotas.reconciliation', level='ERROR'):
            report = reconcile_quotas(source=source)

        self.assertEqual(len(report.errors), 1)
        self.assertEqual(counters()[0], (100, 5000))
        self.assertEqual(counters(project_id=OTHER_PROJECT_ID)[0], (0, 5000))
        self.assertEqual(counters()[1], (100, 10000))

    def test_source_outage_is_skipped(self):
        """Test that a non-database failure of the ground-truth source skips only that row"""
        def source(org_id, project_id):
            if project_id == PROJECT_ID:
                raise ConnectionError("object store unreachable")
            return 0

        with self.assertLogs('quotas.reconciliation', level='ERROR'):
            report = reconcile_quotas(source=source)

        self.assertEqual(report.projects_checked, 2)
        self.assertEqual(len(report.errors), 1)
        self.assertIn('object store unreachable', report.errors[0])
        self.assertEqual(counters(project_id=OTHER_PROJECT_ID)[0], (0, 5000))
        self.assertIsNotNone(report.finished_at)

    def test_custom_source(self):
        """Test that an external ground-truth source can be supplied"""
        reconcile_quotas(source=lambda org_id, project_id: 42)
        self.assertEqual(counters()[1], (84, 10000))


class TestReconcileCommand(TestCase):
    """Test cases for the reconcile_quotas management command."""

    def setUp(self):
        provision(org_max=1000, project_max=500, org_used=10, project_used=10)
        make_object(100)

    def run_command(self, *args):
        out = StringIO()
        call_command('reconcile_quotas', *args, stdout=out)
        return out.getvalue()

    def test_fixes_drift(self):
        """Test that the command corrects drift and prints a summary"""
        output = self.run_command()
        self.assertIn('Projects fixed: 1', output)
        self.assertEqual(counters(), ((100, 500), (100, 1000)))

    def test_dry_run(self):
        """Test that --dry-run leaves the ledger untouched"""
        output = self.run_command('--dry-run')
        self.assertIn('dry run', output)
        self.assertEqual(counters(), ((10, 500), (10, 1000)))

    def test_json_output(self):
        """Test the JSON report"""
        report = json.loads(self.run_command('--json'))
        self.assertEqual(report['projects_fixed'], 1)
        self.assertEqual(report['corrections'][0]['actual_bytes'], 100)

    @override_settings(QUOTA_RECONCILIATION={'ENABLED': False})
    def test_disabled(self):
        """Test that a disabled job only runs with --force"""
        self.assertIn('disabled', self.run_command())
        self.assertEqual(counters()[0], (10, 500))

        self.run_command('--force')
        self.assertEqual(counters()[0], (100, 500))


# ============================================================================
# UPLOAD ORCHESTRATION TESTS
# ============================================================================


class TestUploadOrchestration(TestCase):
    """Test cases for admitting and removing stored objects."""

    def setUp(self):
        provision(org_max=1000, project_max=500)
        self.persist = Mock()

    def admit(self, engine, size=100, name='notes.txt'):
        return admit_object(
            ORG_ID, PROJECT_ID,
            size=size,
            original_filename=name,
            content_type='text/plain',
            persist=self.persist,
            engine=engine,
        )

    def test_pessimistic_admit(self):
        """Test that an admitted object is stored and reserved"""
        stored = self.admit(PessimisticQuotaEngine())

        self.assertTrue(stored.is_active)
        self.assertTrue(stored.storage_key.startswith(f'org-{ORG_ID}/proj-{PROJECT_ID}/'))
        self.persist.assert_called_once_with(stored.storage_key)
        self.assertEqual(counters(), ((100, 500), (100, 1000)))

    def test_pessimistic_persist_failure_rolls_back(self):
        """Test that a failed byte write rolls the reservation back"""
        self.persist.side_effect = OSError("disk full")

        with self.assertRaises(OSError):
            self.admit(PessimisticQuotaEngine())

        self.assertEqual(counters(), ((0, 500), (0, 1000)))
        self.assertFalse(StoredObject.objects.exists())

    def test_quota_exceeded_stores_nothing(self):
        """Test that a rejected upload never reaches storage"""
        with self.assertRaises(QuotaExceeded):
            self.admit(PessimisticQuotaEngine(), size=501)
        self.persist.assert_not_called()
        self.assertFalse(StoredObject.objects.exists())

    def test_optimistic_persist_failure_compensates(self):
        """Test that the optimistic path releases after a failed write"""
        self.persist.side_effect = OSError("disk full")

        with self.assertRaises(OSError):
            self.admit(OptimisticQuotaEngine(policy=NO_WAIT))

        self.assertEqual(counters(), ((0, 500), (0, 1000)))
        self.assertFalse(StoredObject.objects.exists())

    def test_failed_compensation_is_logged(self):
        """Test that a failed compensating release leaves drift for reconciliation"""
        engine = OptimisticQuotaEngine(policy=NO_WAIT)
        self.persist.side_effect = OSError("disk full")

        with patch.object(engine, 'release', side_effect=DatabaseError("connection lost")):
            with self.assertLogs('quotas.uploads', level='ERROR'):
                with self.assertRaises(OSError):
                    self.admit(engine)

        self.assertEqual(counters(), ((100, 500), (100, 1000)))
        reconcile_quotas()
        self.assertEqual(counters(), ((0, 500), (0, 1000)))

    def test_remove_releases_once(self):
        """Test that deleting an object twice releases its bytes once"""
        engine = PessimisticQuotaEngine()
        stored = self.admit(engine, size=200)

        self.assertTrue(remove_object(stored, engine=engine))
        self.assertFalse(remove_object(stored, engine=engine))

        stored.refresh_from_db()
        self.assertEqual(stored.status, OBJECT_STATUS_DELETED)
        self.assertIsNotNone(stored.deleted_at)
        self.assertEqual(counters(), ((0, 500), (0, 1000)))

    def test_optimistic_remove(self):
        """Test removal with the optimistic engine"""
        engine = OptimisticQuotaEngine(policy=NO_WAIT)
        stored = self.admit(engine, size=200)

        self.assertTrue(remove_object(stored, engine=engine))
        self.assertFalse(stored.is_active)
        self.assertEqual(counters(), ((0, 500), (0, 1000)))


# ============================================================================
# EXCEPTION HANDLER TESTS
# ============================================================================


class TestExceptionHandler(TestCase):
    """Test cases for mapping errors to HTTP responses."""

    def test_quota_exceeded(self):
        """Test that QuotaExceeded maps to 507 with diagnostic fields"""
        exc = QuotaExceeded(SCOPE_PROJECT, ORG_ID, PROJECT_ID, requested_bytes=10, remaining_bytes=3)
        response = custom_exception_handler(exc, {})

        self.assertEqual(response.status_code, status.HTTP_507_INSUFFICIENT_STORAGE)
        self.assertEqual(response.data['code'], 'storage_quota_exceeded')
        self.assertEqual(response.data['remaining_bytes'], 3)
        self.assertIn('Project storage quota exceeded', response.data['detail'])

    def test_concurrency_conflict(self):
        """Test that ConcurrencyConflict maps to 409"""
        response = custom_exception_handler(ConcurrencyConflict(attempts=5), {})
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertIn('5 attempt(s)', response.data['detail'])

    def test_value_error(self):
        """Test that ValueError maps to 400"""
        response = custom_exception_handler(ValueError("bad size"), {})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_unexpected_error_hidden(self):
        """Test that unexpected errors return a generic 500"""
        with self.assertLogs('quotas.exceptions', level='ERROR'):
            response = custom_exception_handler(KeyError("secret"), {})
        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertNotIn('secret', json.dumps(response.data))


# ============================================================================
# API TESTS
# ============================================================================


class TestQuotaAPI(APITestCase):
    """Test cases for the internal quota provisioning API."""

    def test_upsert_and_get_org(self):
        """Test creating, updating and reading an org quota"""
        response = self.client.put('/internal/quota/org/', {'org_id': ORG_ID, 'max_bytes': 1000}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['used_bytes'], 0)

        self.client.put('/internal/quota/org/', {'org_id': ORG_ID, 'max_bytes': 2000}, format='json')
        response = self.client.get(f'/internal/quota/org/{ORG_ID}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['max_bytes'], 2000)
        self.assertEqual(response.data['remaining_bytes'], 2000)

    def test_get_missing_org(self):
        """Test that an unknown org returns 404"""
        response = self.client.get('/internal/quota/org/404/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_invalid_payload(self):
        """Test that negative limits are rejected"""
        response = self.client.put('/internal/quota/org/', {'org_id': ORG_ID, 'max_bytes': -1}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('max_bytes', response.data)

    def test_project_without_org(self):
        """Test that provisioning a project under a missing org returns 404"""
        response = self.client.put(
            '/internal/quota/project/',
            {'org_id': ORG_ID, 'project_id': PROJECT_ID, 'max_bytes': 500},
            format='json',
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['code'], 'quota_not_provisioned')

    def test_upsert_and_get_project(self):
        """Test creating and reading a project quota"""
        upsert_organisation_quota(ORG_ID, 1000)
        response = self.client.put(
            '/internal/quota/project/',
            {'org_id': ORG_ID, 'project_id': PROJECT_ID, 'max_bytes': 500},
            format='json',
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)

        response = self.client.get(f'/internal/quota/project/{ORG_ID}/{PROJECT_ID}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['org_id'], ORG_ID)
        self.assertEqual(response.data['project_id'], PROJECT_ID)

        response = self.client.get(f'/internal/quota/project/{ORG_ID}/999/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_list_projects_with_filter(self):
        """Test the paginated project listing and its usage filter"""
        provision(org_max=1000, project_max=500, project_used=300)
        upsert_project_quota(ORG_ID, OTHER_PROJECT_ID, 500)

        response = self.client.get(f'/internal/quota/org/{ORG_ID}/projects/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 2)

        response = self.client.get(f'/internal/quota/org/{ORG_ID}/projects/', {'min_used_bytes': 100})
        self.assertEqual(response.data['count'], 1)
        self.assertEqual(response.data['results'][0]['project_id'], PROJECT_ID)

    def test_list_projects_missing_org(self):
        """Test that listing projects of an unknown org returns 404"""
        response = self.client.get('/internal/quota/org/404/projects/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_usage(self):
        """Test the org usage endpoint"""
        provision(org_max=1000, project_max=500, org_used=100, project_used=100)
        response = self.client.get(f'/internal/quota/org/{ORG_ID}/usage/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['usage_percentage'], 10.0)
        self.assertEqual(len(response.data['projects']), 1)


# ============================================================================
# CONCURRENCY TESTS - row locks on PostgreSQL, IMMEDIATE transactions on SQLite
# ============================================================================


class TestConcurrentReservations(TransactionTestCase):
    """Test cases with concurrent writers on separate connections."""

    WORKERS = 10
    SIZE = 100

    def setUp(self):
        provision(org_max=10000, project_max=500)

    def run_concurrently(self, func):
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(self.WORKERS)

        def worker():
            barrier.wait()
            try:
                func()
                outcome = 'ok'
            except QuotaExceeded:
                outcome = 'exceeded'
            except ConcurrencyConflict:
                outcome = 'conflict'
            except Exception as exc:
                outcome = repr(exc)
            finally:
                connection.close()
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(self.WORKERS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results

    def test_pessimistic_never_oversubscribes(self):
        """Test that exactly the capacity is admitted under contention"""
        engine = PessimisticQuotaEngine()

        def reserve():
            with transaction.atomic():
                engine.reserve(ORG_ID, PROJECT_ID, self.SIZE)

        results = self.run_concurrently(reserve)

        self.assertEqual(results.count('ok'), 5)
        self.assertEqual(results.count('exceeded'), 5)
        self.assertEqual(counters(), ((500, 500), (500, 10000)))

    def test_optimistic_never_oversubscribes(self):
        """Test that optimistic writers never exceed the limit or double-apply"""
        engine = OptimisticQuotaEngine(policy=RetryPolicy(max_attempts=50, base_delay=0.001, max_delay=0.05))

        results = self.run_concurrently(lambda: engine.reserve(ORG_ID, PROJECT_ID, self.SIZE))

        self.assertTrue(set(results) <= {'ok', 'exceeded', 'conflict'}, results)
        (project_used, project_max), (org_used, _) = counters()
        self.assertEqual(project_used, results.count('ok') * self.SIZE)
        self.assertLessEqual(project_used, project_max)
        self.assertEqual(org_used, project_used)

    def test_mixed_projects_do_not_deadlock(self):
        """Test reservations and releases across two projects of one org"""
        upsert_project_quota(ORG_ID, OTHER_PROJECT_ID, 500)
        engine = PessimisticQuotaEngine()
        picks = iter(range(self.WORKERS))
        picks_lock = threading.Lock()

        def work():
            with picks_lock:
                index = next(picks)
            project_id = PROJECT_ID if index % 2 else OTHER_PROJECT_ID
            with transaction.atomic():
                engine.reserve(ORG_ID, project_id, 10)
            with transaction.atomic():
                engine.release(ORG_ID, project_id, 10)

        results = self.run_concurrently(work)

        self.assertEqual(results, ['ok'] * self.WORKERS)
        self.assertEqual(counters()[1], (0, 10000))

    def test_optimistic_interleaved_reserve_release(self):
        """Test that interleaved optimistic reserves and releases net out exactly"""
        engine = OptimisticQuotaEngine(policy=RetryPolicy(max_attempts=50, base_delay=0.001, max_delay=0.05))

        def work():
            engine.reserve(ORG_ID, PROJECT_ID, 50)
            engine.release(ORG_ID, PROJECT_ID, 50)

        results = self.run_concurrently(work)

        self.assertEqual(results, ['ok'] * self.WORKERS)
        self.assertEqual(counters(), ((0, 500), (0, 10000)))
        # One version bump per write on the project row
        self.assertEqual(ProjectQuota.objects.get(project_id=PROJECT_ID).version, 2 * self.WORKERS)


# ============================================================================
# LEDGER DATABASE TESTS
# ============================================================================


@override_settings(QUOTA_ENGINE={'DATABASE': 'ledger'})
class TestLedgerDatabase(TestCase):
    """Test cases for routing every ledger access to QUOTA_ENGINE['DATABASE']."""

    def test_provisioning_uses_ledger_alias(self):
        """Test that upserts and lookups go to the configured alias, not 'default'"""
        with self.assertRaises(ConnectionDoesNotExist):
            upsert_organisation_quota(ORG_ID, 1000)
        with self.assertRaises(ConnectionDoesNotExist):
            upsert_project_quota(ORG_ID, PROJECT_ID, 500)
        with self.assertRaises(ConnectionDoesNotExist):
            get_project_quota(ORG_ID, PROJECT_ID)
        self.assertFalse(OrganisationQuota.objects.using('default').exists())

    def test_explicit_alias_wins(self):
        """Test that an explicit using argument overrides the setting"""
        quota = upsert_organisation_quota(ORG_ID, 1000, using='default')
        self.assertEqual(quota._state.db, 'default')

    def test_engines_and_views_use_ledger_alias(self):
        """Test that engines and API querysets read from the ledger alias"""
        self.assertEqual(get_quota_engine().using, 'ledger')
        self.assertEqual(OrganisationQuotaViewSet().get_queryset().db, 'ledger')
        self.assertEqual(ProjectQuotaViewSet().get_queryset().db, 'ledger')
