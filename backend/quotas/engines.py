"""
Quota reservation engines.

Both strategies implement the ``QuotaEngine`` interface (``reserve`` and
``release``) and are selected through ``settings.QUOTA_ENGINE['STRATEGY']``:

- ``PessimisticQuotaEngine`` (default) joins the caller's transaction and
  holds row locks until it commits, so the counter increment commits or rolls
  back together with the caller's own write.
- ``OptimisticQuotaEngine`` runs every attempt as its own short durable
  transaction guarded by the row version and retries on conflict. Callers must
  ``release`` explicitly if their subsequent write fails.

Organisation and project identifiers are always explicit arguments; no engine
reads request state.
"""

import logging
import time
from abc import ABC, abstractmethod
from functools import partial
from typing import Callable, Optional, Tuple

from django.core.exceptions import ImproperlyConfigured
from django.db import transaction
from django.db.transaction import TransactionManagementError

from .conf import engine_settings, ledger_database
from .constants import (
    ERROR_INVALID_SIZE,
    ERROR_NO_TRANSACTION,
    ERROR_UNKNOWN_STRATEGY,
    LOG_QUOTA_RELEASED,
    LOG_QUOTA_RESERVED,
    SCOPE_ORGANISATION,
    SCOPE_PROJECT,
    STRATEGY_OPTIMISTIC,
    STRATEGY_PESSIMISTIC,
)
from .exceptions import ConcurrencyConflict, QuotaExceeded, QuotaNotProvisioned
from .models import OrganisationQuota, ProjectQuota, QuotaCounter
from .utils import RetryPolicy, retry_with_backoff, validate_byte_count

logger = logging.getLogger(__name__)

COUNTER_FIELDS = ['used_bytes', 'version', 'updated_at']

RowCheck = Callable[[str, QuotaCounter], None]


def validate_size(size_bytes: int) -> int:
    """Validate a reservation or release size in bytes."""
    return validate_byte_count(size_bytes, ERROR_INVALID_SIZE)


class QuotaEngine(ABC):
    """
    Reserve and release storage bytes against a project and its organisation.
    """

    strategy: str = ''

    # True when reserve/release join the caller's transaction and roll back
    # with it; False when the caller must compensate with release() itself.
    requires_transaction: bool = False

    def __init__(self, using: Optional[str] = None):
        self.using = ledger_database(using)

    @abstractmethod
    def reserve(self, org_id: int, project_id: int, size_bytes: int) -> None:
        """
        Check capacity at project then organisation scope and add ``size_bytes``.

        Raises:
            QuotaNotProvisioned: If either ledger row is missing
            QuotaExceeded: If either scope lacks capacity; nothing is written
        """

    @abstractmethod
    def release(self, org_id: int, project_id: int, size_bytes: int) -> None:
        """
        Subtract ``size_bytes`` from both counters, clamping each at zero.

        Missing rows are skipped: a release may fire against a row that was
        corrected or never provisioned.
        """

    def _fetch_in_lock_order(
        self,
        org_id: int,
        project_id: int,
        *,
        lock: bool,
        required: bool,
        check: Optional[RowCheck] = None,
    ) -> Tuple[Optional[ProjectQuota], Optional[OrganisationQuota]]:
        """
        Fetch the project row, then its organisation row.

        This is the only code path that reads both rows for a mutation, so
        with ``lock=True`` the project lock is always taken before the
        organisation lock. ``check`` runs on each row as soon as it is
        fetched, before the next row is touched.
        """
        rows = []
        for scope, model, lookup in (
            (SCOPE_PROJECT, ProjectQuota, {'organisation_id': org_id, 'project_id': project_id}),
            (SCOPE_ORGANISATION, OrganisationQuota, {'org_id': org_id}),
        ):
            queryset = model.objects.using(self.using)
            if lock:
                queryset = queryset.select_for_update()
            try:
                row = queryset.get(**lookup)
            except model.DoesNotExist:
                if required:
                    raise QuotaNotProvisioned(org_id, project_id, scope=scope)
                rows.append(None)
                continue
            if check is not None:
                check(scope, row)
            rows.append(row)
        project, organisation = rows
        return project, organisation

    def _ensure_capacity(self, org_id: int, project_id: int, size_bytes: int,
                         scope: str, row: QuotaCounter) -> None:
        if not row.has_capacity(size_bytes):
            logger.warning(
                f"Quota exceeded at {scope} scope: org={org_id} project={project_id} "
                f"need {size_bytes}, have {row.remaining_bytes} available"
            )
            raise QuotaExceeded(
                scope=scope,
                org_id=org_id,
                project_id=project_id,
                requested_bytes=size_bytes,
                remaining_bytes=row.remaining_bytes,
            )

    def _log_reserved(self, org_id, project_id, size_bytes, project, organisation) -> None:
        logger.debug(LOG_QUOTA_RESERVED.format(
            strategy=self.strategy,
            org_id=org_id,
            project_id=project_id,
            size=size_bytes,
            org_used=organisation.used_bytes,
            org_max=organisation.max_bytes,
            project_used=project.used_bytes,
            project_max=project.max_bytes,
        ))

    def _log_released(self, org_id, project_id, size_bytes) -> None:
        logger.debug(LOG_QUOTA_RELEASED.format(
            strategy=self.strategy, org_id=org_id, project_id=project_id, size=size_bytes,
        ))

    def __repr__(self) -> str:
        return f'<{type(self).__name__} using={self.using!r}>'


class PessimisticQuotaEngine(QuotaEngine):
    """
    Row-lock strategy. Must be called inside the caller's ``transaction.atomic()``.

    Locks are held until the enclosing transaction ends; if it rolls back,
    the counter change rolls back with it and no compensation is needed.

    Example:
        >>> engine = PessimisticQuotaEngine()
        >>> with transaction.atomic():
        ...     engine.reserve(org_id, project_id, upload.size)
        ...     StoredObject.objects.create(...)
    """

    strategy = STRATEGY_PESSIMISTIC
    requires_transaction = True

    def reserve(self, org_id: int, project_id: int, size_bytes: int) -> None:
        size_bytes = validate_size(size_bytes)
        self._require_transaction('reserve')

        project, organisation = self._fetch_in_lock_order(
            org_id, project_id,
            lock=True,
            required=True,
            check=partial(self._ensure_capacity, org_id, project_id, size_bytes),
        )

        for row in (project, organisation):
            row.increment_usage(size_bytes)
            row.save(using=self.using, update_fields=COUNTER_FIELDS)

        self._log_reserved(org_id, project_id, size_bytes, project, organisation)

    def release(self, org_id: int, project_id: int, size_bytes: int) -> None:
        size_bytes = validate_size(size_bytes)
        self._require_transaction('release')

        for row in self._fetch_in_lock_order(org_id, project_id, lock=True, required=False):
            if row is not None:
                row.decrement_usage(size_bytes)
                row.save(using=self.using, update_fields=COUNTER_FIELDS)

        self._log_released(org_id, project_id, size_bytes)

    def _require_transaction(self, operation: str) -> None:
        if not transaction.get_connection(self.using).in_atomic_block:
            raise TransactionManagementError(ERROR_NO_TRANSACTION.format(operation=operation))


class OptimisticQuotaEngine(QuotaEngine):
    """
    Version-check strategy with bounded retry.

    Each attempt reads both rows without locks, checks capacity and writes
    back with ``UPDATE ... WHERE version = <read version>``. A zero-row update
    means another writer committed first: the attempt's transaction is rolled
    back and the whole cycle runs again after a backoff. Once the retry budget
    is spent ``ConcurrencyConflict`` reaches the caller.
    """

    strategy = STRATEGY_OPTIMISTIC

    def __init__(self, using: Optional[str] = None, policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], None] = time.sleep):
        super().__init__(using)
        self.policy = policy or RetryPolicy.from_settings(engine_settings()['RETRY'])
        self.sleep = sleep

    def reserve(self, org_id: int, project_id: int, size_bytes: int) -> None:
        size_bytes = validate_size(size_bytes)
        self._with_retry(self._reserve_once, org_id, project_id, size_bytes)

    def release(self, org_id: int, project_id: int, size_bytes: int) -> None:
        size_bytes = validate_size(size_bytes)
        self._with_retry(self._release_once, org_id, project_id, size_bytes)

    def _with_retry(self, attempt: Callable[..., None], *args) -> None:
        try:
            retry_with_backoff(
                attempt, *args,
                policy=self.policy,
                retry_on=(ConcurrencyConflict,),
                sleep=self.sleep,
            )
        except ConcurrencyConflict as exc:
            raise ConcurrencyConflict(attempts=self.policy.max_attempts) from exc

    def _reserve_once(self, org_id: int, project_id: int, size_bytes: int) -> None:
        # durable: a fresh transaction per attempt, never nested in the caller's
        with transaction.atomic(using=self.using, durable=True):
            project, organisation = self._fetch_in_lock_order(
                org_id, project_id,
                lock=False,
                required=True,
                check=partial(self._ensure_capacity, org_id, project_id, size_bytes),
            )
            for row in (project, organisation):
                self._write_if_unchanged(row, partial(row.increment_usage, size_bytes))

        self._log_reserved(org_id, project_id, size_bytes, project, organisation)

    def _release_once(self, org_id: int, project_id: int, size_bytes: int) -> None:
        with transaction.atomic(using=self.using, durable=True):
            for row in self._fetch_in_lock_order(org_id, project_id, lock=False, required=False):
                if row is not None:
                    self._write_if_unchanged(row, partial(row.decrement_usage, size_bytes))

        self._log_released(org_id, project_id, size_bytes)

    def _write_if_unchanged(self, row: QuotaCounter, mutate: Callable[[], None]) -> None:
        read_version = row.version
        mutate()
        updated = type(row).objects.using(self.using).filter(
            pk=row.pk,
            version=read_version,
        ).update(
            used_bytes=row.used_bytes,
            version=row.version,
            updated_at=row.updated_at,
        )
        if updated == 0:
            logger.debug(f"Version conflict on {row!r} (read version {read_version})")
            raise ConcurrencyConflict()


ENGINES = {
    STRATEGY_PESSIMISTIC: PessimisticQuotaEngine,
    STRATEGY_OPTIMISTIC: OptimisticQuotaEngine,
}


def get_quota_engine(strategy: Optional[str] = None, **kwargs) -> QuotaEngine:
    """
    Build the engine named by ``strategy`` or by ``QUOTA_ENGINE['STRATEGY']``.

    Raises:
        ImproperlyConfigured: For an unknown strategy name
    """
    name = strategy or engine_settings()['STRATEGY']
    try:
        engine_class = ENGINES[name]
    except KeyError:
        raise ImproperlyConfigured(
            ERROR_UNKNOWN_STRATEGY.format(strategy=name, choices=sorted(ENGINES))
        )
    return engine_class(**kwargs)
