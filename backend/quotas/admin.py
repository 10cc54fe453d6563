from django.contrib import admin

from .models import OrganisationQuota, ProjectQuota, StoredObject


@admin.register(OrganisationQuota)
class OrganisationQuotaAdmin(admin.ModelAdmin):
    list_display = ('org_id', 'used_bytes', 'max_bytes', 'updated_at')
    search_fields = ('org_id',)
    # Counters change only through reserve/release and reconciliation
    readonly_fields = ('used_bytes', 'version', 'created_at', 'updated_at')


@admin.register(ProjectQuota)
class ProjectQuotaAdmin(admin.ModelAdmin):
    list_display = ('organisation', 'project_id', 'used_bytes', 'max_bytes', 'updated_at')
    list_filter = ('organisation',)
    readonly_fields = ('used_bytes', 'version', 'created_at', 'updated_at')


@admin.register(StoredObject)
class StoredObjectAdmin(admin.ModelAdmin):
    list_display = ('original_filename', 'org_id', 'project_id', 'size', 'status', 'created_at')
    list_filter = ('status',)
    search_fields = ('original_filename', 'storage_key')
    readonly_fields = ('size', 'storage_key', 'status', 'created_at', 'deleted_at')
