"""
Quota ledger models for the storage quota service.

This module defines the persisted quota state and the record of stored
objects that reconciliation treats as ground truth.
- OrganisationQuota: byte limit and usage for a tenant.
- ProjectQuota: byte limit and usage for a project within a tenant.
- StoredObject: one row per stored file, with its size and lifecycle status.

Counters are only mutated through ``quotas.engines`` and
``quotas.reconciliation``; both bump ``version`` on every write.
"""

import logging
import os
import uuid

from django.db import models
from django.db.models import Q
from django.utils import timezone

from .constants import (
    MAX_CONTENT_TYPE_LENGTH,
    MAX_FILENAME_LENGTH,
    MAX_STORAGE_KEY_LENGTH,
    OBJECT_STATUS_ACTIVE,
    OBJECT_STATUS_DELETED,
    STORAGE_KEY_TEMPLATE,
)

logger = logging.getLogger(__name__)


def storage_key_for(org_id: int, project_id: int, filename: str) -> str:
    """
    Generate a provider-neutral storage key for a new object.

    Example:
        >>> storage_key_for(7, 42, 'invoice.pdf')
        'org-7/proj-42/3f0c...e1.pdf'
    """
    _, ext = os.path.splitext(filename or '')
    return STORAGE_KEY_TEMPLATE.format(
        org_id=org_id,
        project_id=project_id,
        name=uuid.uuid4(),
        ext=ext.lower(),
    )


class QuotaCounter(models.Model):
    """
    Shared shape of a quota row: a limit, a usage counter and a version.
    """

    max_bytes = models.BigIntegerField(
        help_text="Maximum storage allowed in bytes"
    )

    used_bytes = models.BigIntegerField(
        default=0,
        help_text="Bytes currently reserved against this quota"
    )

    version = models.BigIntegerField(
        default=0,
        help_text="Optimistic lock version, incremented on every counter write"
    )

    created_at = models.DateTimeField(
        auto_now_add=True,
        help_text="When this quota record was created"
    )

    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="When this quota was last updated"
    )

    class Meta:
        abstract = True

    @property
    def remaining_bytes(self) -> int:
        return max(0, self.max_bytes - self.used_bytes)

    def has_capacity(self, size_bytes: int) -> bool:
        return (self.used_bytes + size_bytes) <= self.max_bytes

    def increment_usage(self, size_bytes: int) -> None:
        self.used_bytes += size_bytes
        self.version += 1
        self.updated_at = timezone.now()

    def decrement_usage(self, size_bytes: int) -> None:
        """Decrement usage, clamping at zero against double-release."""
        new_usage = self.used_bytes - size_bytes
        if new_usage < 0:
            logger.warning(
                f"Storage usage would be negative for {self!r}. "
                f"Current: {self.used_bytes}, Delta: {-size_bytes}. "
                f"Setting to 0."
            )
            new_usage = 0
        self.used_bytes = new_usage
        self.version += 1
        self.updated_at = timezone.now()


class OrganisationQuota(QuotaCounter):
    """
    Storage limit and usage for one organisation (tenant).
    """

    org_id = models.BigIntegerField(
        primary_key=True,
        help_text="Organisation identifier"
    )

    class Meta:
        """Model metadata."""
        db_table = 'org_storage'
        verbose_name = "Organisation Quota"
        verbose_name_plural = "Organisation Quotas"
        constraints = [
            models.CheckConstraint(condition=Q(used_bytes__gte=0), name='org_storage_used_non_negative'),
            models.CheckConstraint(condition=Q(max_bytes__gte=0), name='org_storage_max_non_negative'),
        ]

    def __str__(self) -> str:
        return f"org {self.org_id}: {self.used_bytes}/{self.max_bytes} bytes"

    def __repr__(self) -> str:
        return f'<OrganisationQuota: {self.org_id}>'


class ProjectQuota(QuotaCounter):
    """
    Storage limit and usage for one project inside an organisation.

    A project quota can only exist under a provisioned organisation quota;
    the foreign key enforces that at the database level.
    """

    organisation = models.ForeignKey(
        OrganisationQuota,
        on_delete=models.PROTECT,
        related_name='projects',
        db_column='org_id',
        help_text="Parent organisation quota"
    )

    project_id = models.BigIntegerField(
        help_text="Project identifier, unique within the organisation"
    )

    class Meta:
        """Model metadata."""
        db_table = 'project_storage'
        ordering = ['organisation_id', 'project_id']
        verbose_name = "Project Quota"
        verbose_name_plural = "Project Quotas"
        constraints = [
            models.UniqueConstraint(fields=['organisation', 'project_id'], name='project_storage_org_project_uniq'),
            models.CheckConstraint(condition=Q(used_bytes__gte=0), name='project_storage_used_non_negative'),
            models.CheckConstraint(condition=Q(max_bytes__gte=0), name='project_storage_max_non_negative'),
        ]

    @property
    def org_id(self) -> int:
        return self.organisation_id

    def __str__(self) -> str:
        return f"org {self.organisation_id} / project {self.project_id}: {self.used_bytes}/{self.max_bytes} bytes"

    def __repr__(self) -> str:
        return f'<ProjectQuota: {self.organisation_id}/{self.project_id}>'


class StoredObjectQuerySet(models.QuerySet):

    def active(self):
        return self.filter(status=OBJECT_STATUS_ACTIVE)

    def for_project(self, org_id: int, project_id: int):
        return self.filter(org_id=org_id, project_id=project_id)


class StoredObject(models.Model):
    """
    Record of a stored file. Active rows are the ground truth for quota usage.
    """

    STATUS_CHOICES = [
        (OBJECT_STATUS_ACTIVE, 'Active'),
        (OBJECT_STATUS_DELETED, 'Deleted'),
    ]

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the object (UUID format)"
    )

    org_id = models.BigIntegerField(
        help_text="Owning organisation"
    )

    project_id = models.BigIntegerField(
        help_text="Owning project"
    )

    original_filename = models.CharField(
        max_length=MAX_FILENAME_LENGTH,
        help_text="Original filename as provided during upload"
    )

    content_type = models.CharField(
        max_length=MAX_CONTENT_TYPE_LENGTH,
        help_text="MIME type of the object (e.g., application/pdf)"
    )

    size = models.BigIntegerField(
        help_text="Object size in bytes"
    )

    storage_key = models.CharField(
        max_length=MAX_STORAGE_KEY_LENGTH,
        unique=True,
        help_text="Provider-specific key: org-{id}/proj-{id}/{uuid}.{ext}"
    )

    status = models.CharField(
        max_length=16,
        choices=STATUS_CHOICES,
        default=OBJECT_STATUS_ACTIVE,
        db_index=True
    )

    created_at = models.DateTimeField(
        auto_now_add=True,
        help_text="Timestamp when the object was stored"
    )

    deleted_at = models.DateTimeField(
        null=True,
        blank=True
    )

    objects = StoredObjectQuerySet.as_manager()

    class Meta:
        """Model metadata."""
        db_table = 'stored_object'
        ordering = ['-created_at']
        verbose_name = "Stored Object"
        verbose_name_plural = "Stored Objects"
        indexes = [
            models.Index(fields=['org_id', 'project_id'], name='stored_object_org_proj_idx'),
            models.Index(fields=['org_id', 'project_id', 'status'], name='stored_object_active_idx'),
        ]

    def __str__(self) -> str:
        return self.original_filename

    def __repr__(self) -> str:
        return f'<StoredObject: {self.id} - {self.original_filename}>'

    @property
    def is_active(self) -> bool:
        return self.status == OBJECT_STATUS_ACTIVE
