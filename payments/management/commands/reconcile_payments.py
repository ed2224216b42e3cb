"""
Management command to run the payment reconciliation sweep once.

Usage:
    python manage.py reconcile_payments
    python manage.py reconcile_payments --recheck-pending  # Also poll stale PENDING payments
"""
import json

from django.core.management.base import BaseCommand

from payments.gateway import get_gateway_client
from payments.reconciliation import recheck_pending_transactions, run_reconciliation_sweep


class Command(BaseCommand):
    help = 'Complete orders whose gateway transaction is paid but whose order is not'

    def add_arguments(self, parser):
        parser.add_argument(
            '--recheck-pending',
            action='store_true',
            help='Query the gateway for stale PENDING transactions first',
        )

    def handle(self, *args, **options):
        if options['recheck_pending']:
            self.stdout.write('Rechecking pending transactions...')
            recheck = recheck_pending_transactions(get_gateway_client())
            self.stdout.write(json.dumps(recheck, indent=2))

        report = run_reconciliation_sweep()
        self.stdout.write(json.dumps(report, indent=2))

        if report['errors']:
            self.stdout.write(self.style.WARNING(f"{len(report['errors'])} orders could not be reconciled"))
        else:
            self.stdout.write(self.style.SUCCESS(
                f"Reconciliation complete: {len(report['fixed'])} fixed"
            ))
