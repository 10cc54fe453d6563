from django.urls import path

from .views import OrganisationQuotaViewSet, ProjectQuotaViewSet

org_upsert = OrganisationQuotaViewSet.as_view({'put': 'upsert'})
org_detail = OrganisationQuotaViewSet.as_view({'get': 'retrieve'})
org_projects = ProjectQuotaViewSet.as_view({'get': 'list_for_organisation'})
org_usage = OrganisationQuotaViewSet.as_view({'get': 'usage'})
project_upsert = ProjectQuotaViewSet.as_view({'put': 'upsert'})
project_detail = ProjectQuotaViewSet.as_view({'get': 'retrieve'})

urlpatterns = [
    path('org/', org_upsert, name='org-quota-upsert'),
    path('org/<int:org_id>/', org_detail, name='org-quota-detail'),
    path('org/<int:org_id>/projects/', org_projects, name='org-quota-projects'),
    path('org/<int:org_id>/usage/', org_usage, name='org-quota-usage'),
    path('project/', project_upsert, name='project-quota-upsert'),
    path('project/<int:org_id>/<int:project_id>/', project_detail, name='project-quota-detail'),
]
