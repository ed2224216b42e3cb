"""
Celery tasks for order processing.

Tasks:
    - notify_order_completed: Admin dashboard notification after payment completes
"""
import logging
from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def notify_order_completed(self, order_id: str):
    """
    Record an admin notification for a newly paid order.

    Args:
        order_id: ID of the completed order

    Returns:
        Dict with notification details
    """
    from orders.models import AdminNotification, Order

    try:
        order = Order.objects.get(pk=order_id)
    except Order.DoesNotExist:
        logger.error(f"Order {order_id} not found for completion notification")
        return {'status': 'error', 'message': f'Order {order_id} not found'}

    if not order.is_paid:
        logger.warning(
            f"Order {order_id} is not paid (status: {order.payment_status}), "
            "skipping notification"
        )
        return {'status': 'skipped', 'message': f'Order {order_id} is not paid'}

    notification, created = AdminNotification.objects.get_or_create(
        order=order,
        type=AdminNotification.Type.ORDER,
        defaults={
            'title': 'New Order Completed',
            'message': (
                f"Order from {order.customer_name or 'Unknown Customer'} "
                f"for KES {order.total_amount} has been completed."
            ),
        }
    )

    if created:
        logger.info(f"Admin notification created for order {order.pk}")

    return {
        'status': 'success' if created else 'duplicate',
        'order_id': str(order.pk),
        'notification_id': notification.pk,
    }
