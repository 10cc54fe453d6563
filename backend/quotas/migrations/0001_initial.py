import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='OrganisationQuota',
            fields=[
                ('max_bytes', models.BigIntegerField(help_text='Maximum storage allowed in bytes')),
                ('used_bytes', models.BigIntegerField(default=0, help_text='Bytes currently reserved against this quota')),
                ('version', models.BigIntegerField(default=0, help_text='Optimistic lock version, incremented on every counter write')),
                ('created_at', models.DateTimeField(auto_now_add=True, help_text='When this quota record was created')),
                ('updated_at', models.DateTimeField(auto_now=True, help_text='When this quota was last updated')),
                ('org_id', models.BigIntegerField(help_text='Organisation identifier', primary_key=True, serialize=False)),
            ],
            options={
                'verbose_name': 'Organisation Quota',
                'verbose_name_plural': 'Organisation Quotas',
                'db_table': 'org_storage',
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('used_bytes__gte', 0)), name='org_storage_used_non_negative'),
                    models.CheckConstraint(condition=models.Q(('max_bytes__gte', 0)), name='org_storage_max_non_negative'),
                ],
            },
        ),
        migrations.CreateModel(
            name='StoredObject',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, help_text='Unique identifier for the object (UUID format)', primary_key=True, serialize=False)),
                ('org_id', models.BigIntegerField(help_text='Owning organisation')),
                ('project_id', models.BigIntegerField(help_text='Owning project')),
                ('original_filename', models.CharField(help_text='Original filename as provided during upload', max_length=255)),
                ('content_type', models.CharField(help_text='MIME type of the object (e.g., application/pdf)', max_length=100)),
                ('size', models.BigIntegerField(help_text='Object size in bytes')),
                ('storage_key', models.CharField(help_text='Provider-specific key: org-{id}/proj-{id}/{uuid}.{ext}', max_length=1000, unique=True)),
                ('status', models.CharField(choices=[('ACTIVE', 'Active'), ('DELETED', 'Deleted')], db_index=True, default='ACTIVE', max_length=16)),
                ('created_at', models.DateTimeField(auto_now_add=True, help_text='Timestamp when the object was stored')),
                ('deleted_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'verbose_name': 'Stored Object',
                'verbose_name_plural': 'Stored Objects',
                'db_table': 'stored_object',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['org_id', 'project_id'], name='stored_object_org_proj_idx'),
                    models.Index(fields=['org_id', 'project_id', 'status'], name='stored_object_active_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='ProjectQuota',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('max_bytes', models.BigIntegerField(help_text='Maximum storage allowed in bytes')),
                ('used_bytes', models.BigIntegerField(default=0, help_text='Bytes currently reserved against this quota')),
                ('version', models.BigIntegerField(default=0, help_text='Optimistic lock version, incremented on every counter write')),
                ('created_at', models.DateTimeField(auto_now_add=True, help_text='When this quota record was created')),
                ('updated_at', models.DateTimeField(auto_now=True, help_text='When this quota was last updated')),
                ('project_id', models.BigIntegerField(help_text='Project identifier, unique within the organisation')),
                ('organisation', models.ForeignKey(db_column='org_id', help_text='Parent organisation quota', on_delete=django.db.models.deletion.PROTECT, related_name='projects', to='quotas.organisationquota')),
            ],
            options={
                'verbose_name': 'Project Quota',
                'verbose_name_plural': 'Project Quotas',
                'db_table': 'project_storage',
                'ordering': ['organisation_id', 'project_id'],
                'constraints': [
                    models.UniqueConstraint(fields=('organisation', 'project_id'), name='project_storage_org_project_uniq'),
                    models.CheckConstraint(condition=models.Q(('used_bytes__gte', 0)), name='project_storage_used_non_negative'),
                    models.CheckConstraint(condition=models.Q(('max_bytes__gte', 0)), name='project_storage_max_non_negative'),
                ],
            },
        ),
    ]
