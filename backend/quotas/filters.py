"""Filters for project quota listings."""

import django_filters

from .models import ProjectQuota


class ProjectQuotaFilter(django_filters.FilterSet):
    min_used_bytes = django_filters.NumberFilter(field_name='used_bytes', lookup_expr='gte')
    max_used_bytes = django_filters.NumberFilter(field_name='used_bytes', lookup_expr='lte')
    min_max_bytes = django_filters.NumberFilter(field_name='max_bytes', lookup_expr='gte')

    class Meta:
        model = ProjectQuota
        fields = ['project_id']
