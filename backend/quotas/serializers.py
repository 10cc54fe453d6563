"""
Serializers for the internal quota API.

Request serializers validate provisioning input; the model serializers render
ledger rows. Rows are never written through a serializer: provisioning goes
through ``quotas.utils.provisioning`` so upserts stay idempotent.
"""

from rest_framework import serializers

from .constants import MAX_SAFE_BYTES
from .models import OrganisationQuota, ProjectQuota


class OrganisationQuotaRequestSerializer(serializers.Serializer):
    """Body of ``PUT /internal/quota/org/``."""

    org_id = serializers.IntegerField(min_value=0)
    max_bytes = serializers.IntegerField(min_value=0, max_value=MAX_SAFE_BYTES)


class ProjectQuotaRequestSerializer(OrganisationQuotaRequestSerializer):
    """Body of ``PUT /internal/quota/project/``."""

    project_id = serializers.IntegerField(min_value=0)


class OrganisationQuotaSerializer(serializers.ModelSerializer):
    """
    Read representation of an organisation quota row.
    """

    remaining_bytes = serializers.IntegerField(read_only=True)

    class Meta:
        """Serializer metadata configuration."""
        model = OrganisationQuota
        fields = [
            'org_id',
            'max_bytes',
            'used_bytes',
            'remaining_bytes',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


class ProjectQuotaSerializer(serializers.ModelSerializer):
    """
    Read representation of a project quota row.
    """

    org_id = serializers.IntegerField(source='organisation_id', read_only=True)
    remaining_bytes = serializers.IntegerField(read_only=True)

    class Meta:
        """Serializer metadata configuration."""
        model = ProjectQuota
        fields = [
            'org_id',
            'project_id',
            'max_bytes',
            'used_bytes',
            'remaining_bytes',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields
