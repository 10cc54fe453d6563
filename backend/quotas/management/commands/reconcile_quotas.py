"""
Nightly quota reconciliation.

Schedule from cron with the expression in
``settings.QUOTA_RECONCILIATION['SCHEDULE']``, e.g.::

    0 3 * * *  cd /srv/backend && python manage.py reconcile_quotas
"""

import json
import logging

from django.core.management.base import BaseCommand

from quotas.conf import reconciliation_settings
from quotas.reconciliation import reconcile_quotas

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Recompute project and organisation storage usage from stored objects and fix drift."

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help="Report drift without writing corrections.",
        )
        parser.add_argument(
            '--force',
            action='store_true',
            help="Run even when QUOTA_RECONCILIATION['ENABLED'] is false.",
        )
        parser.add_argument(
            '--database',
            default=None,
            help="Database alias holding the quota ledger.",
        )
        parser.add_argument(
            '--json',
            action='store_true',
            help="Print the full report as JSON.",
        )

    def handle(self, *args, **options):
        if not reconciliation_settings()['ENABLED'] and not options['force']:
            logger.info("Quota reconciliation disabled, skipping")
            self.stdout.write("Quota reconciliation is disabled (use --force to run anyway).")
            return

        report = reconcile_quotas(dry_run=options['dry_run'], using=options['database'])

        if options['json']:
            self.stdout.write(json.dumps(report.to_dict(), indent=2))
            return

        summary = (
            f"Checked {report.projects_checked} project(s) and {report.organisations_checked} "
            f"organisation(s). Projects fixed: {report.projects_fixed}, "
            f"Orgs fixed: {report.organisations_fixed}"
        )
        if report.dry_run:
            summary += " (dry run, nothing written)"

        if report.errors:
            self.stdout.write(self.style.WARNING(f"{summary}. Errors: {len(report.errors)}"))
            for error in report.errors:
                self.stdout.write(self.style.WARNING(f"  {error}"))
        else:
            self.stdout.write(self.style.SUCCESS(summary))
