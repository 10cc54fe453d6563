"""
Internal API views for quota provisioning and lookup.

Called by the organisation service, not by end users.

Endpoints:
    PUT    /internal/quota/org/                              - Create or update an org quota
    GET    /internal/quota/org/{org_id}/                     - Get an org quota
    GET    /internal/quota/org/{org_id}/projects/            - List the org's project quotas
    GET    /internal/quota/org/{org_id}/usage/               - Usage report with project breakdown
    PUT    /internal/quota/project/                          - Create or update a project quota
    GET    /internal/quota/project/{org_id}/{project_id}/    - Get a project quota
"""

import logging

from django.http import Http404
from django_filters.rest_framework import DjangoFilterBackend
from rest_framework import mixins, viewsets
from rest_framework.decorators import action
from rest_framework.request import Request
from rest_framework.response import Response

from .conf import ledger_database
from .filters import ProjectQuotaFilter
from .models import OrganisationQuota, ProjectQuota
from .serializers import (
    OrganisationQuotaRequestSerializer,
    OrganisationQuotaSerializer,
    ProjectQuotaRequestSerializer,
    ProjectQuotaSerializer,
)
from .utils import (
    get_organisation_quota,
    get_project_quota,
    list_project_quotas,
    organisation_usage,
    upsert_organisation_quota,
    upsert_project_quota,
)

logger = logging.getLogger(__name__)


class OrganisationQuotaViewSet(mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    """
    ViewSet for provisioning and reading organisation quotas.
    """

    queryset = OrganisationQuota.objects.all()
    serializer_class = OrganisationQuotaSerializer
    lookup_field = 'org_id'

    def get_queryset(self):
        return super().get_queryset().using(ledger_database())

    def upsert(self, request: Request) -> Response:
        """Create or update an organisation quota limit."""
        payload = OrganisationQuotaRequestSerializer(data=request.data)
        payload.is_valid(raise_exception=True)

        logger.info(
            f"Upsert org quota: orgId={payload.validated_data['org_id']} "
            f"maxBytes={payload.validated_data['max_bytes']}"
        )
        quota = upsert_organisation_quota(**payload.validated_data)
        return Response(OrganisationQuotaSerializer(quota).data)

    def retrieve(self, request: Request, *args, **kwargs) -> Response:
        """Get an organisation quota."""
        try:
            return super().retrieve(request, *args, **kwargs)
        except Http404:
            logger.warning(f"Org quota not found for org={kwargs.get('org_id')}")
            raise Http404(f"Org quota not found for org={kwargs.get('org_id')}")

    @action(detail=True, methods=['get'])
    def usage(self, request: Request, org_id: int = None) -> Response:
        """Usage statistics for an organisation and each of its projects."""
        organisation = self.get_object()
        return Response(organisation_usage(organisation.org_id))


class ProjectQuotaViewSet(viewsets.GenericViewSet):
    """
    ViewSet for provisioning and reading project quotas.
    """

    queryset = ProjectQuota.objects.all()
    serializer_class = ProjectQuotaSerializer
    filter_backends = [DjangoFilterBackend]
    filterset_class = ProjectQuotaFilter

    def get_queryset(self):
        return super().get_queryset().using(ledger_database())

    def upsert(self, request: Request) -> Response:
        """Create or update a project quota limit; the org quota must exist."""
        payload = ProjectQuotaRequestSerializer(data=request.data)
        payload.is_valid(raise_exception=True)

        logger.info(
            f"Upsert project quota: orgId={payload.validated_data['org_id']} "
            f"projectId={payload.validated_data['project_id']} "
            f"maxBytes={payload.validated_data['max_bytes']}"
        )
        quota = upsert_project_quota(**payload.validated_data)
        return Response(ProjectQuotaSerializer(quota).data)

    def list_for_organisation(self, request: Request, org_id: int = None) -> Response:
        """List the project quotas of an organisation, filtered and paginated."""
        if get_organisation_quota(org_id) is None:
            logger.warning(f"Org quota not found for org={org_id}")
            raise Http404(f"Org quota not found for org={org_id}")

        queryset = self.filter_queryset(list_project_quotas(org_id))
        page = self.paginate_queryset(queryset)
        if page is not None:
            return self.get_paginated_response(self.get_serializer(page, many=True).data)
        return Response(self.get_serializer(queryset, many=True).data)

    def retrieve(self, request: Request, org_id: int = None, project_id: int = None) -> Response:
        """Get a project quota."""
        quota = get_project_quota(org_id, project_id)
        if quota is None:
            logger.warning(f"Project quota not found for org={org_id} project={project_id}")
            raise Http404(f"Project quota not found for org={org_id} project={project_id}")
        return Response(ProjectQuotaSerializer(quota).data)
