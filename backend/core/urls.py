"""
URL configuration for core project.

The quota service exposes an internal provisioning API under /internal/quota/
plus the Django admin for operators.
"""
from django.contrib import admin
from django.urls import path, include
from django.http import JsonResponse
from django.views.decorators.http import require_http_methods

@require_http_methods(["GET"])
def index(request):
    """Root endpoint providing API information"""
    return JsonResponse({
        'message': 'Storage Quota Ledger API',
        'version': '1.0',
        'endpoints': {
            'quota': '/internal/quota/',
            'admin': '/admin/',
        },
        'documentation': {
            'upsert_org_quota': 'PUT /internal/quota/org/',
            'get_org_quota': 'GET /internal/quota/org/<org_id>/',
            'list_project_quotas': 'GET /internal/quota/org/<org_id>/projects/',
            'org_usage': 'GET /internal/quota/org/<org_id>/usage/',
            'upsert_project_quota': 'PUT /internal/quota/project/',
            'get_project_quota': 'GET /internal/quota/project/<org_id>/<project_id>/',
        }
    })

urlpatterns = [
    path('', index, name='index'),
    path('admin/', admin.site.urls),
    path('internal/quota/', include('quotas.urls')),
]
