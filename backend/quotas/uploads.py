"""
Upload orchestration against the quota engines.

Shows how a caller admits and removes stored objects under either strategy:

- With the pessimistic engine the reservation, the byte write and the
  ``StoredObject`` insert share one ``transaction.atomic()`` block; any
  failure rolls the reservation back with it.
- With the optimistic engine the reservation commits on its own, so a failed
  byte write or insert is compensated by an explicit ``release``. A failed
  compensation is logged and left for reconciliation.

The storage backend is passed in as ``persist(storage_key)``; this module
never decides where bytes live.
"""

import logging
from typing import Callable, Optional

from django.db import DatabaseError, transaction
from django.utils import timezone

from .constants import OBJECT_STATUS_ACTIVE, OBJECT_STATUS_DELETED
from .engines import QuotaEngine, get_quota_engine
from .exceptions import QuotaError
from .models import StoredObject, storage_key_for

logger = logging.getLogger(__name__)

PersistFunc = Callable[[str], None]


def admit_object(
    org_id: int,
    project_id: int,
    *,
    size: int,
    original_filename: str,
    content_type: str,
    persist: PersistFunc,
    engine: Optional[QuotaEngine] = None,
) -> StoredObject:
    """
    Reserve quota, store the bytes and record the object.

    Args:
        org_id: Owning organisation
        project_id: Owning project
        size: Object size in bytes
        original_filename: Name supplied by the uploader
        content_type: MIME type of the object
        persist: Storage backend call that writes the bytes under the given key
        engine: Quota engine; defaults to the configured strategy

    Returns:
        StoredObject: The committed record

    Raises:
        QuotaNotProvisioned, QuotaExceeded: Nothing is stored
        ConcurrencyConflict: Optimistic retries exhausted; nothing is stored
    """
    engine = engine or get_quota_engine()
    storage_key = storage_key_for(org_id, project_id, original_filename)

    def store() -> StoredObject:
        persist(storage_key)
        return StoredObject.objects.using(engine.using).create(
            org_id=org_id,
            project_id=project_id,
            original_filename=original_filename,
            content_type=content_type or 'application/octet-stream',
            size=size,
            storage_key=storage_key,
        )

    if engine.requires_transaction:
        with transaction.atomic(using=engine.using):
            engine.reserve(org_id, project_id, size)
            stored = store()
    else:
        engine.reserve(org_id, project_id, size)
        try:
            stored = store()
        except Exception:
            _compensate(engine, org_id, project_id, size)
            raise

    logger.info(
        f"Upload complete: key={stored.storage_key} size={size} "
        f"org={org_id} project={project_id} strategy={engine.strategy}"
    )
    return stored


def remove_object(stored_object: StoredObject, engine: Optional[QuotaEngine] = None) -> bool:
    """
    Soft-delete a stored object and release its bytes.

    The status flip is conditional on the object still being active, so two
    concurrent deletes release the bytes once.

    Returns:
        bool: True if this call deleted the object, False if it was already gone
    """
    engine = engine or get_quota_engine()
    org_id, project_id, size = stored_object.org_id, stored_object.project_id, stored_object.size

    with transaction.atomic(using=engine.using):
        deleted = StoredObject.objects.using(engine.using).filter(
            pk=stored_object.pk,
            status=OBJECT_STATUS_ACTIVE,
        ).update(status=OBJECT_STATUS_DELETED, deleted_at=timezone.now())

        if deleted and engine.requires_transaction:
            engine.release(org_id, project_id, size)

    if not deleted:
        logger.info(f"Delete skipped, object already removed: {stored_object.pk}")
        return False

    if not engine.requires_transaction:
        _compensate(engine, org_id, project_id, size)

    stored_object.refresh_from_db(using=engine.using, fields=['status', 'deleted_at'])
    logger.info(f"Object removed: {stored_object.pk} ({size} bytes) org={org_id} project={project_id}")
    return True


def _compensate(engine: QuotaEngine, org_id: int, project_id: int, size: int) -> None:
    try:
        engine.release(org_id, project_id, size)
        logger.info(f"Quota released: org={org_id} project={project_id} size={size}")
    except (QuotaError, DatabaseError):
        # Counter stays high until the next reconciliation run
        logger.error(
            f"Failed to release quota: org={org_id} project={project_id} size={size}",
            exc_info=True
        )
