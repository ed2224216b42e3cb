"""
Out-of-band payment auditing.

run_reconciliation_sweep() re-drives completion for every payment the
gateway has confirmed but whose order does not say so (missed or failed
callbacks). recheck_pending_transactions() polls the gateway for
transactions that never received a terminal notification.
Failures are reported per item and never stop the batch.
"""
import logging
from datetime import timedelta

from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from orders.models import PaymentStatus
from orders.services import complete_order
from .models import GatewayTransaction, StagedOrder
from .services import check_payment_status

logger = logging.getLogger(__name__)


def out_of_sync_transactions():
    """COMPLETED transactions whose order is missing or not yet completed."""
    unmaterialized = Q(order__isnull=True) & Q(
        tracking_id__in=StagedOrder.objects.values('tracking_id')
    )
    # Refunded orders are terminal and never re-completed
    lagging = Q(order__isnull=False) & ~Q(
        order__payment_status__in=[PaymentStatus.COMPLETED, PaymentStatus.REFUNDED]
    )

    return (
        GatewayTransaction.objects
        .filter(status=GatewayTransaction.Status.COMPLETED)
        .filter(unmaterialized | lagging)
        .order_by('created_at')
    )


def run_reconciliation_sweep() -> dict:
    """
    Complete every order whose gateway transaction is COMPLETED.

    Returns:
        Report dict: total_checked, fixed, already_completed, errors
    """
    candidates = list(out_of_sync_transactions().values_list('tracking_id', 'order_id'))
    report = {
        'total_checked': len(candidates),
        'fixed': [],
        'already_completed': [],
        'errors': [],
    }

    logger.info(f"Reconciliation sweep: {len(candidates)} transactions out of sync")

    for tracking_id, order_id in candidates:
        try:
            result = complete_order(tracking_id=tracking_id)
        except Exception as e:
            logger.exception(f"Reconciliation failed for {tracking_id}")
            report['errors'].append({
                'orderId': str(order_id) if order_id else None,
                'trackingId': tracking_id,
                'error': str(e),
            })
            continue

        if result.already_completed:
            report['already_completed'].append(str(result.order.pk))
        else:
            report['fixed'].append(str(result.order.pk))

    logger.info(
        f"Reconciliation sweep done: {len(report['fixed'])} fixed, "
        f"{len(report['already_completed'])} already completed, "
        f"{len(report['errors'])} errors"
    )
    return report


def recheck_pending_transactions(client, older_than_minutes=None, max_age_hours=None) -> dict:
    """
    Query the gateway for PENDING transactions older than the threshold.

    Transactions older than max_age_hours are treated as abandoned and left
    alone.
    """
    if older_than_minutes is None:
        older_than_minutes = settings.PAYMENT_PENDING_RECHECK_MINUTES
    if max_age_hours is None:
        max_age_hours = settings.PAYMENT_PENDING_MAX_AGE_HOURS

    now = timezone.now()
    tracking_ids = list(
        GatewayTransaction.objects.filter(
            status=GatewayTransaction.Status.PENDING,
            created_at__lt=now - timedelta(minutes=older_than_minutes),
            created_at__gte=now - timedelta(hours=max_age_hours),
        ).order_by('created_at').values_list('tracking_id', flat=True)
    )

    report = {'total_checked': len(tracking_ids), 'statuses': {}, 'errors': []}
    for tracking_id in tracking_ids:
        try:
            result = check_payment_status(client, tracking_id=tracking_id)
        except Exception as e:
            logger.exception(f"Pending recheck failed for {tracking_id}")
            report['errors'].append({'trackingId': tracking_id, 'error': str(e)})
            continue
        report['statuses'][tracking_id] = result.status

    if tracking_ids:
        logger.info(f"Rechecked {len(tracking_ids)} pending transactions")
    return report
