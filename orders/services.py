"""
Order Service Layer - payment completion and status transitions.

complete_order() is the only place an Order is created and the only place
stock is deducted. It is idempotent:
1. Lock the gateway transaction row (serializes work per checkout)
2. Materialize the Order from staged checkout data if it does not exist yet
3. Conditionally flip payment_status to completed; the affected row count
   decides whether this call performs the deduction
4. Lock product rows in id order and decrement stock, floored at zero
Any failure rolls the whole block back, so a retry starts from scratch.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from django.core.exceptions import ValidationError
from django.db import models, transaction
from django.db.models import F, Value
from django.db.models.functions import Greatest
from django.utils import timezone

from inventory.models import Product
from payments.exceptions import (
    OrderNotFound,
    PaymentError,
    ProductNotFound,
    StagedOrderMissing,
    TransactionNotFound,
)
from payments.models import GatewayTransaction, StagedOrder
from .models import Order, OrderItem, PaymentStatus
from .transitions import (
    InvalidTransition,
    PaymentEvent,
    completable_statuses,
    delivery_status_after,
    delivery_update_warnings,
    next_payment_status,
)

logger = logging.getLogger(__name__)


@dataclass
class StockUpdate:
    product_id: int
    old_stock: int
    new_stock: int

    def to_dict(self) -> dict:
        return {
            'productId': self.product_id,
            'oldStock': self.old_stock,
            'newStock': self.new_stock,
        }


@dataclass
class CompletionResult:
    order: Order
    stock_updates: List[StockUpdate] = field(default_factory=list)
    already_completed: bool = False
    created: bool = False


def complete_order(order_id=None, tracking_id: Optional[str] = None) -> CompletionResult:
    """
    Mark an order paid and deduct its stock exactly once.

    Args:
        order_id: Existing order to complete
        tracking_id: Gateway tracking id; used when the order may not exist yet

    Raises:
        OrderNotFound / TransactionNotFound: Identifier does not resolve
        StagedOrderMissing: No order and no staged data to create one from
        InvalidTransition: Order is in a status that cannot become completed
    """
    if order_id is None and not tracking_id:
        raise ValueError("order_id or tracking_id is required")

    with transaction.atomic():
        created = False
        if order_id is not None:
            try:
                order = Order.objects.select_for_update().get(pk=order_id)
            except (Order.DoesNotExist, ValidationError):
                raise OrderNotFound(f"Order {order_id} not found")
        else:
            try:
                gateway_txn = GatewayTransaction.objects.select_for_update().get(
                    tracking_id=tracking_id
                )
            except GatewayTransaction.DoesNotExist:
                raise TransactionNotFound(f"No transaction for tracking id {tracking_id}")

            if gateway_txn.order_id is None:
                order = _materialize_order(gateway_txn)
                created = True
            else:
                order = gateway_txn.order

        now = timezone.now()
        updated = Order.objects.filter(
            pk=order.pk,
            payment_status__in=completable_statuses()
        ).update(payment_status=PaymentStatus.COMPLETED, paid_at=now, updated_at=now)

        if not updated:
            order.refresh_from_db()
            if order.payment_status == PaymentStatus.COMPLETED:
                logger.info(f"Order {order.pk} already completed, skipping stock deduction")
                return CompletionResult(order=order, already_completed=True)
            raise InvalidTransition(order.payment_status, PaymentEvent.COMPLETED)

        stock_updates = _deduct_stock(order)
        order.refresh_from_db()

        logger.info(
            f"Order {order.pk} completed: {len(stock_updates)} stock updates, "
            f"total KES {order.total_amount}"
        )

        transaction.on_commit(lambda: _queue_completion_notification(order.pk))

    return CompletionResult(order=order, stock_updates=stock_updates, created=created)


def _materialize_order(gateway_txn: GatewayTransaction) -> Order:
    """Create the Order and its items from staged checkout data."""
    staged = StagedOrder.objects.filter(tracking_id=gateway_txn.tracking_id).first()
    if staged is None:
        raise StagedOrderMissing(
            f"No staged order data for tracking id {gateway_txn.tracking_id}"
        )

    product_ids = [item['product_id'] for item in staged.items]
    products = Product.objects.in_bulk(product_ids)
    missing = set(product_ids) - set(products.keys())
    if missing:
        raise ProductNotFound(missing)

    customer = staged.customer_info or {}
    delivery = staged.delivery_info or {}
    coordinates = delivery.get('coordinates') or {}

    order = Order.objects.create(
        user_id=staged.user_id,
        customer_name=customer.get('full_name', ''),
        customer_email=customer.get('email', ''),
        customer_phone=customer.get('phone', ''),
        customer_address=customer.get('address', ''),
        delivery_address=delivery.get('address', ''),
        delivery_zone=delivery.get('zone', ''),
        delivery_fee=Decimal(str(delivery.get('fee') or 0)),
        delivery_latitude=_optional_decimal(coordinates.get('lat')),
        delivery_longitude=_optional_decimal(coordinates.get('lng')),
        delivery_distance_km=_optional_decimal(delivery.get('distance_km')),
        delivery_estimated_minutes=delivery.get('estimated_time'),
        total_amount=staged.total_amount,
        payment_status=PaymentStatus.PENDING,
    )

    OrderItem.objects.bulk_create([
        OrderItem(
            order=order,
            product=products[item['product_id']],
            quantity=item['quantity'],
            unit_price=Decimal(str(item['unit_price'])),
        )
        for item in staged.items
    ])

    now = timezone.now()
    gateway_txn.order = order
    gateway_txn.save(update_fields=['order', 'updated_at'])
    StagedOrder.objects.filter(pk=staged.pk).update(consumed_at=now)

    logger.info(
        f"Materialized order {order.pk} from {gateway_txn.merchant_reference} "
        f"({len(staged.items)} items)"
    )
    return order


def _optional_decimal(value) -> Optional[Decimal]:
    if value is None or value == '':
        return None
    return Decimal(str(value))


def _deduct_stock(order: Order) -> List[StockUpdate]:
    items = list(order.items.all())
    if not items:
        raise PaymentError(f"Order {order.pk} has no items to deduct")

    # Lock in id order to prevent deadlocks between concurrent completions
    locked = {
        p.pk: p for p in Product.objects.select_for_update().filter(
            pk__in={item.product_id for item in items}
        ).order_by('pk')
    }

    now = timezone.now()
    stock_updates = []
    for item in items:
        product = locked.get(item.product_id)
        if product is None:
            raise ProductNotFound([item.product_id])

        Product.objects.filter(pk=product.pk).update(
            stock=Greatest(
                F('stock') - item.quantity,
                Value(0),
                output_field=models.IntegerField()
            ),
            updated_at=now,
        )
        old_stock = product.stock
        product.stock = max(0, old_stock - item.quantity)
        stock_updates.append(StockUpdate(product.pk, old_stock, product.stock))

        logger.debug(
            f"Order {order.pk}: deducted {item.quantity} of {product.name}, "
            f"stock {old_stock} -> {product.stock}"
        )

    return stock_updates


def _queue_completion_notification(order_id) -> None:
    try:
        from .tasks import notify_order_completed
        notify_order_completed.delay(str(order_id))
        logger.info(f"Triggered completion notification for order {order_id}")
    except Exception as e:
        # Don't fail the payment if task queuing fails
        logger.error(f"Failed to queue completion notification: {e}")


def apply_payment_event(order_id, event: PaymentEvent) -> Order:
    """
    Apply a non-completion gateway event (failed, cancelled, reversed).

    Failed payments also cancel delivery. Completion must go through
    complete_order() so stock is handled.
    """
    if event == PaymentEvent.COMPLETED:
        raise ValueError("Use complete_order() for completion events")

    with transaction.atomic():
        try:
            order = Order.objects.select_for_update().get(pk=order_id)
        except Order.DoesNotExist:
            raise OrderNotFound(f"Order {order_id} not found")

        target = next_payment_status(order.payment_status, event)
        if target == order.payment_status:
            return order

        previous = order.payment_status
        order.payment_status = target
        order.delivery_status = delivery_status_after(target, order.delivery_status)
        order.save(update_fields=['payment_status', 'delivery_status', 'updated_at'])

    logger.info(f"Order {order.pk} payment {previous} -> {target} ({event.value})")
    return order


def update_delivery_status(order: Order, delivery_status: str):
    """
    Change an order's delivery status.

    Returns:
        Tuple of (Order, list of warnings). Advancing delivery on an unpaid
        order is allowed but reported.
    """
    warnings = delivery_update_warnings(order.payment_status, delivery_status)
    for warning in warnings:
        logger.warning(f"Order {order.pk}: {warning}")

    order.delivery_status = delivery_status
    order.save(update_fields=['delivery_status', 'updated_at'])
    return order, warnings
