"""
Celery tasks for payment reconciliation.

Tasks:
    - reconcile_payments: Periodic sweep of paid-but-not-completed orders
    - recheck_pending_transactions: Poll the gateway for stale PENDING payments
"""
import logging
from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task
def reconcile_payments():
    """Run the reconciliation sweep. Scheduled by celery beat."""
    from payments.reconciliation import run_reconciliation_sweep

    report = run_reconciliation_sweep()
    if report['errors']:
        logger.warning(f"Reconciliation sweep reported {len(report['errors'])} errors")
    return report


@shared_task
def recheck_pending_transactions():
    """Re-run status reconciliation for transactions stuck in PENDING."""
    from payments.gateway import get_gateway_client
    from payments.reconciliation import recheck_pending_transactions as recheck

    return recheck(get_gateway_client())
